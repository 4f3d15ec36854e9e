#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from review_engine.db.postgres import PostgresTxRunner
from review_engine.repositories.audit_logs import PostgresAuditLogsRepository


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the curation audit log table in PostgreSQL")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument(
        "--table",
        default=os.getenv("REVIEW_AUDIT_TABLE", "curation_audit_logs"),
        help="audit table name",
    )
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    repository = PostgresAuditLogsRepository(tx_runner=PostgresTxRunner(dsn), table_name=args.table.strip())
    repository.ensure_schema()
    print(json.dumps({"table": repository.table_name, "status": "ready"}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
