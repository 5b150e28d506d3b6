"""Cleanup job for usage ledger retention."""
from __future__ import annotations

import argparse
from typing import Optional

from tightship.core.config import settings
from tightship.core.logging import configure_logging
from tightship.features.store.sql import SqlRepository
from tightship.features.usage.service import UsageLedger


def cleanup_usage(
    *,
    retention_months: Optional[int] = None,
    dry_run: bool = False,
    ledger: Optional[UsageLedger] = None,
) -> dict:
    ledger = ledger or UsageLedger(SqlRepository())
    return ledger.cleanup_usage(retention_months=retention_months, dry_run=dry_run)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delete usage ledger rows past the retention window.")
    parser.add_argument("--retention-months", dest="retention_months", type=int, default=None)
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Only count candidate rows.")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    print(cleanup_usage(retention_months=args.retention_months, dry_run=args.dry_run))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
