"""
Reconciliation worker.

Runs the billing reconciliation job once; meant for cron. Detect-only by
default, --fix resolves open billing alerts.
"""
from __future__ import annotations

import argparse
import json
import os
from datetime import datetime, timezone
from typing import Optional

from tierpay.core.config import settings
from tierpay.core.database import create_all_tables
from tierpay.core.logging import configure_logging
from tierpay.features.billing.reconcile_job import run_reconcile_job


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile subscription state against the payment ledger.")
    parser.add_argument("--fix", dest="fix", action="store_true", help="Mark open billing alerts resolved.")
    parser.add_argument("--limit", dest="limit", type=int, default=int(os.getenv("TIERPAY_RECONCILE_LIMIT", "100")))
    parser.set_defaults(fix=_parse_bool(os.getenv("TIERPAY_RECONCILE_FIX"), False))
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    create_all_tables()
    result = run_reconcile_job(datetime.now(timezone.utc), fix=args.fix, limit=args.limit)
    print(json.dumps({k: v for k, v in result.items() if k != "issues"}))
    # Non-zero exit lets cron wrappers alert on drift
    return 1 if result["issues_found"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
