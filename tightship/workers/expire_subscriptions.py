"""
Expiry sweep: move ACTIVE subscriptions past their grace window to PAST_DUE.

    python -m tightship.workers.expire_subscriptions --once
    python -m tightship.workers.expire_subscriptions --loop --interval 3600
"""
from __future__ import annotations

import argparse
import logging
import time
from typing import Callable, Dict, Optional

from tightship.core.config import settings
from tightship.core.logging import configure_logging
from tightship.features.entitlements.service import SubscriptionService
from tightship.features.grace_period.service import GracePeriodService
from tightship.features.store.sql import SqlRepository

logger = logging.getLogger("tightship.workers.expiry")


def build_service() -> GracePeriodService:
    return GracePeriodService(SubscriptionService(SqlRepository()))


def run_once(grace: Optional[GracePeriodService] = None) -> Dict[str, int]:
    return (grace or build_service()).process_expired_subscriptions()


def run_loop(
    grace: Optional[GracePeriodService] = None,
    *,
    interval_seconds: float,
    max_iterations: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Sweep every `interval_seconds`; a failed sweep is logged and retried next tick."""
    service = grace or build_service()
    iterations = 0
    while max_iterations is None or iterations < max_iterations:
        iterations += 1
        try:
            service.process_expired_subscriptions()
        except Exception as exc:
            logger.error("[expiry] sweep failed", extra={"error": str(exc), "iteration": iterations})
        if max_iterations is None or iterations < max_iterations:
            sleep(interval_seconds)
    return iterations


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Suspend subscriptions whose grace period has ended.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", dest="loop", action="store_false", help="Run a single sweep (default).")
    mode.add_argument("--loop", dest="loop", action="store_true", help="Sweep forever.")
    parser.add_argument(
        "--interval",
        dest="interval",
        type=float,
        default=settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
        help="Seconds between sweeps with --loop.",
    )
    parser.set_defaults(loop=False)
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    if args.loop:
        run_loop(interval_seconds=args.interval)
        return 0
    print(run_once())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
