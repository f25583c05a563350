#!/usr/bin/env python3
"""Retry queued and failed seller transfers; meant for a cron or scheduler."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

from marketplace_ledger.core.config import get_ledger_settings  # noqa: E402
from marketplace_ledger.core.database import SessionLocal  # noqa: E402
from marketplace_ledger.core.logging_setup import configure_logging  # noqa: E402
import marketplace_ledger.models  # noqa: E402,F401
from marketplace_ledger.payments.service import get_payment_rail  # noqa: E402
from marketplace_ledger.services.transfers import dispatch_pending_transfers  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dispatch pending seller transfers to the payout rail.")
    parser.add_argument("--limit", type=int, default=50, help="Maximum transfers to process")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    configure_logging()
    settings = get_ledger_settings()
    if not settings.auto_transfers_enabled:
        print("Automatic transfers are disabled. Set ENABLE_AUTO_TRANSFERS=1 to dispatch.")
        return 1

    db = SessionLocal()
    try:
        result = dispatch_pending_transfers(db, rail=get_payment_rail(), settings=settings, limit=args.limit)
    finally:
        db.close()

    if not result.success:
        print(f"Dispatch failed: {result.error}")
        return 1
    summary = result.data
    print(
        f"Processed {summary['processed']} transfers: accepted={summary['accepted']} "
        f"skipped={summary['skipped']} failed={summary['failed']}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
