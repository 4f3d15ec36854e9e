from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from review_engine.db.postgres import PostgresTxRunner
from review_engine.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from review_engine.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)

CURATION_ACTIONS = frozenset(
    {
        "start_review",
        "approve",
        "reject",
        "flag",
        "assign",
        "add_tags",
        "remove_tags",
    }
)


class CurationAuditTrail:
    """Append-only, hash-chained log of curation actions.

    Each record stores the hash of its predecessor (`prev_hash`) and a SHA-256
    over its own content plus that link (`audit_hash`), so editing or dropping
    a stored record breaks `verify_integrity`.
    """

    def __init__(self, repository: InMemoryAuditLogsRepository | PostgresAuditLogsRepository | None = None) -> None:
        self._repository = repository if repository is not None else InMemoryAuditLogsRepository()
        self._lock = threading.Lock()

    @property
    def repository(self) -> InMemoryAuditLogsRepository | PostgresAuditLogsRepository:
        return self._repository

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def _compute_audit_hash(*, log: dict[str, Any], prev_hash: str) -> str:
        material = {key: value for key, value in log.items() if key not in {"audit_hash", "prev_hash"}}
        material["prev_hash"] = prev_hash
        blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"), default=str)
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def log_curation_action(
        self,
        action: str,
        document_id: str,
        details: Mapping[str, Any] | None = None,
        *,
        actor: str,
    ) -> dict[str, Any]:
        if action not in CURATION_ACTIONS:
            raise ValueError(f"unknown curation action: {action}")
        entry: dict[str, Any] = {
            "audit_id": f"audit_{uuid.uuid4().hex[:12]}",
            "action": action,
            "document_id": document_id,
            "actor": actor,
            "details": dict(details or {}),
            "occurred_at": self._utcnow_iso(),
        }
        with self._lock:
            previous = self._repository.last()
            prev_hash = str((previous or {}).get("audit_hash") or "")
            entry["prev_hash"] = prev_hash
            entry["audit_hash"] = self._compute_audit_hash(log=entry, prev_hash=prev_hash)
            saved = self._repository.append(log=entry)
        logger.debug("curation_audit_appended action=%s document_id=%s audit_id=%s", action, document_id, entry["audit_id"])
        return saved

    def list_for_document(self, document_id: str) -> list[dict[str, Any]]:
        return self._repository.list_for_document(document_id=document_id)

    def verify_integrity(self) -> dict[str, Any]:
        rows = self._repository.list_all()
        prev_hash = ""
        for idx, row in enumerate(rows):
            stored_prev = str(row.get("prev_hash") or "")
            if stored_prev != prev_hash:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            expected = self._compute_audit_hash(log=row, prev_hash=stored_prev)
            actual = str(row.get("audit_hash") or "")
            if actual != expected:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "audit_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            prev_hash = actual
        return {
            "valid": True,
            "checked_count": len(rows),
            "last_hash": prev_hash,
        }


def create_audit_trail_from_env(environ: Mapping[str, str] | None = None) -> CurationAuditTrail:
    env = os.environ if environ is None else environ
    backend = env.get("REVIEW_AUDIT_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return CurationAuditTrail(InMemoryAuditLogsRepository())
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            if true_stack_required(env):
                raise RuntimeError("POSTGRES_DSN must be set when REVIEW_AUDIT_BACKEND=postgres")
            logger.warning("audit_backend_fallback backend=postgres reason=missing_dsn fallback=memory")
            return CurationAuditTrail(InMemoryAuditLogsRepository())
        table_name = env.get("REVIEW_AUDIT_TABLE", "curation_audit_logs").strip() or "curation_audit_logs"
        repository = PostgresAuditLogsRepository(tx_runner=PostgresTxRunner(dsn), table_name=table_name)
        return CurationAuditTrail(repository)
    raise RuntimeError(f"unsupported audit backend: {backend}")
