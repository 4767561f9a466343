"""
Woza Mali Engine - Ledger Reconciliation Worker

Credits collections whose settlement never reached the wallet ledger.

Usage:
    python -m backend.workers.reconcile_ledger --once
    python -m backend.workers.reconcile_ledger --limit 500 --verbose

Loop mode sleeps RECONCILE_POLL_SECONDS between passes. A pass that fails
outright (store unreachable, catalog unavailable) backs off exponentially
(RECONCILE_BACKOFF_BASE_MS doubling up to RECONCILE_BACKOFF_CAP_MS) and the
worker exits non-zero after RECONCILE_MAX_FAILURES consecutive failures so
the supervisor can restart it.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional

from dotenv import load_dotenv

from ..core.config import Settings, get_settings
from ..core.error_taxonomy import TransientStoreError, log_classified_error
from ..core.logging import configure_structured_logging
from ..db import create_store
from ..services.material_catalog import MaterialCatalog
from ..services.reconciliation import LedgerReconciler, ReconciliationReport
from .backoff import BackoffState

logger = logging.getLogger(__name__)


async def _build_reconciler(settings: Settings) -> LedgerReconciler:
    store = await create_store(settings)
    catalog = await MaterialCatalog.load(store)
    return LedgerReconciler(store, catalog, min_age_seconds=settings.RECONCILE_MIN_AGE_SECONDS)


async def run_once(settings: Settings, limit: Optional[int] = None) -> ReconciliationReport:
    reconciler = await _build_reconciler(settings)
    return await reconciler.run_once(limit or settings.RECONCILE_BATCH_SIZE)


async def run_forever(settings: Settings, limit: Optional[int] = None) -> int:
    """Run passes until too many consecutive failures; returns an exit code."""
    backoff = BackoffState(
        base_ms=settings.RECONCILE_BACKOFF_BASE_MS,
        cap_ms=settings.RECONCILE_BACKOFF_CAP_MS,
        max_attempts=settings.RECONCILE_MAX_FAILURES,
    )
    reconciler: Optional[LedgerReconciler] = None
    logger.info("Reconciliation worker started (poll=%.0fs)", settings.RECONCILE_POLL_SECONDS)

    while True:
        try:
            if reconciler is None:
                reconciler = await _build_reconciler(settings)
            report = await reconciler.run_once(limit or settings.RECONCILE_BATCH_SIZE)
        except TransientStoreError as exc:
            log_classified_error(exc, {"worker": "reconcile_ledger"})
            reconciler = None
            delay = backoff.record_failure()
            if backoff.exhausted:
                logger.error(
                    "Giving up after %d consecutive failed passes",
                    backoff.consecutive_failures,
                )
                return 1
            logger.warning("Pass failed; retrying in %.1fs", delay)
            await asyncio.sleep(delay)
            continue

        backoff.record_success()
        if not report.is_clean:
            logger.warning("Pass finished with %d failed collection(s)", report.failed)
        await asyncio.sleep(settings.RECONCILE_POLL_SECONDS)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Credit collections missing from the wallet ledger")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--limit", type=int, default=None, help="Collections scanned per pass")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args(argv)

    load_dotenv()
    settings = get_settings()
    configure_structured_logging(
        level="DEBUG" if args.verbose else settings.LOG_LEVEL,
        json_output=settings.LOG_JSON,
        service_name="reconcile_ledger",
    )

    if args.once:
        report = asyncio.run(run_once(settings, args.limit))
        print(
            f"Scanned {report.scanned}, credited {report.credited}, "
            f"skipped {report.skipped}, failed {report.failed}"
        )
        return 0 if report.is_clean else 2

    try:
        return asyncio.run(run_forever(settings, args.limit))
    except KeyboardInterrupt:
        logger.info("Reconciliation worker interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
