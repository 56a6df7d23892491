"""
Period-end reconciliation worker.

Meant to be run by cron (or any scheduler) at least once per billing cycle:

    python -m tierflow.workers.reconcile_worker
    python -m tierflow.workers.reconcile_worker --subscription-id <id>
    python -m tierflow.workers.reconcile_worker --now 2025-06-01T00:00:00+00:00

Exit code is 0 when every due subscription reconciled, 1 otherwise.
"""
from __future__ import annotations

import argparse
import json
import os
from datetime import datetime, timezone
from typing import List, Optional

from dotenv import load_dotenv


def _parse_now(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Apply scheduled plan changes and expire lapsed subscriptions.")
    parser.add_argument("--now", help="Reconcile as of this ISO-8601 timestamp (default: current time).")
    parser.add_argument("--limit", type=int, default=None, help="Max subscriptions per run.")
    parser.add_argument("--subscription-id", help="Reconcile a single subscription.")
    args = parser.parse_args(argv)

    if "PYTEST_CURRENT_TEST" not in os.environ:
        load_dotenv()

    # Settings are read at import time, after .env is loaded
    from tierflow.core.config import settings
    from tierflow.core.logging import configure_logging
    from tierflow.features.subscriptions.reconcile_job import reconcile_subscription, run_reconcile_job

    configure_logging(settings.ENV)
    now = _parse_now(args.now)

    if args.subscription_id:
        result = reconcile_subscription(args.subscription_id, now)
        print(json.dumps(result))
        return 0

    report = run_reconcile_job(now=now, limit=args.limit)
    print(json.dumps(report))
    return 0 if report["status"] == "success" else 1


if __name__ == "__main__":
    raise SystemExit(main())
