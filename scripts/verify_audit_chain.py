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

from review_engine.audit import create_audit_trail_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Walk the curation audit hash chain and report the first mismatch")
    parser.add_argument("--document-id", default="", help="also print the audit records of one document")
    args = parser.parse_args()

    trail = create_audit_trail_from_env(os.environ)
    report = trail.verify_integrity()
    if args.document_id.strip():
        report["records"] = trail.list_for_document(args.document_id.strip())
    print(json.dumps(report, ensure_ascii=True, sort_keys=True, indent=2))
    return 0 if report.get("valid") else 1


if __name__ == "__main__":
    raise SystemExit(main())
