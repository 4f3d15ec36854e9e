from __future__ import annotations

import json
import re
from typing import Any

from review_engine.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryAuditLogsRepository:
    def __init__(self, audit_logs: list[dict[str, Any]] | None = None) -> None:
        self._audit_logs = audit_logs if audit_logs is not None else []

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        self._audit_logs.append(item)
        return item

    def last(self) -> dict[str, Any] | None:
        if not self._audit_logs:
            return None
        return dict(self._audit_logs[-1])

    def list_for_document(self, *, document_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._audit_logs if x.get("document_id") == document_id]

    def list_all(self) -> list[dict[str, Any]]:
        return [dict(x) for x in self._audit_logs]


class PostgresAuditLogsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "curation_audit_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @property
    def table_name(self) -> str:
        return self._table_name

    def ensure_schema(self) -> None:
        table = self._table_name

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        seq BIGSERIAL,
                        audit_id TEXT PRIMARY KEY,
                        document_id TEXT,
                        action TEXT NOT NULL,
                        actor TEXT,
                        occurred_at TEXT NOT NULL,
                        audit_hash TEXT NOT NULL,
                        payload JSONB NOT NULL
                    )
                    """
                )
                cur.execute(f"CREATE INDEX IF NOT EXISTS {table}_document_idx ON {table} (document_id, seq)")

        self._tx_runner.run_in_tx(fn=_op)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, document_id, action, actor, occurred_at, audit_hash, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(audit_id) DO NOTHING
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        item.get("document_id"),
                        item.get("action"),
                        item.get("actor"),
                        item.get("occurred_at"),
                        item.get("audit_hash"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    @staticmethod
    def _payloads(rows: list[Any]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for row in rows:
            payload = row[0]
            if isinstance(payload, str):
                payload = json.loads(payload)
            if isinstance(payload, dict):
                out.append(payload)
        return out

    def last(self) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            ORDER BY seq DESC
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            loaded = self._payloads(rows)
            return loaded[0] if loaded else None

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_document(self, *, document_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE document_id = %s
            ORDER BY seq ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                rows = cur.fetchall() or []
            return self._payloads(rows)

        return self._tx_runner.run_in_tx(fn=_op)

    def list_all(self) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            ORDER BY seq ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            return self._payloads(rows)

        return self._tx_runner.run_in_tx(fn=_op)
