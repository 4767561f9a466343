"""
Woza Mali Engine - Ledger Reconciliation Service

Finds collections that were persisted but never credited (step 8 of the
intake pipeline failed, or the process died after step 1) and replays the
settlement steps for them:

- recompute aggregates from the stored line items (and repair the record)
- recompute impact, points and the fund split
- post the wallet credit (idempotent per collection)

Usage:
    from backend.services.reconciliation import LedgerReconciler

    reconciler = LedgerReconciler(store, catalog)
    report = await reconciler.run_once(limit=100)
    print(report.credited)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import ValidationError

from ..core.error_taxonomy import CollectionEngineError
from ..core.logging import LogContext
from ..core.models import CollectionRecord, CollectionStatus, LedgerEntry, LineItem
from ..db import COLLECTIONS_TABLE, LEDGER_TABLE, LINE_ITEMS_TABLE
from .intake_service import compute_aggregates, settle
from .ledger_service import SettlementLedger, describe_credit
from .material_catalog import MaterialCatalog

if TYPE_CHECKING:
    from ..db import CollectionStore

logger = logging.getLogger(__name__)

# Long enough for an in-flight submission to reach its ledger step
DEFAULT_MIN_AGE_SECONDS = 600.0


def _has_weight(row: Dict[str, Any]) -> bool:
    weight = row.get("kilograms")
    if weight is None:
        return False
    try:
        return float(weight) > 0
    except (TypeError, ValueError):
        # Not a number at all; let model validation report it
        return True


# =============================================================================
# ENUMS & DATA CLASSES
# =============================================================================


class Outcome(str, Enum):
    """What happened to one collection during a pass."""

    CREDITED = "credited"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RecordOutcome:
    record_id: str
    outcome: Outcome
    reason: Optional[str] = None
    ledger_entry_id: Optional[str] = None
    aggregates_repaired: bool = False


@dataclass
class ReconciliationReport:
    """Result of one reconciliation pass."""

    scanned: int = 0
    outcomes: List[RecordOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def _count(self, outcome: Outcome) -> int:
        return sum(1 for item in self.outcomes if item.outcome is outcome)

    @property
    def credited(self) -> int:
        return self._count(Outcome.CREDITED)

    @property
    def skipped(self) -> int:
        return self._count(Outcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(Outcome.FAILED)

    @property
    def is_clean(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "credited": self.credited,
            "skipped": self.skipped,
            "failed": self.failed,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "failures": [
                {"record_id": o.record_id, "reason": o.reason}
                for o in self.outcomes
                if o.outcome is Outcome.FAILED
            ],
        }


# =============================================================================
# RECONCILER
# =============================================================================


class LedgerReconciler:
    """
    Replays settlement for un-credited collections.

    Collections younger than `min_age_seconds` are left alone; they may
    still be inside a live submission. Older ones are paged through newest
    first until `limit` un-credited records are found.
    """

    def __init__(
        self,
        store: "CollectionStore",
        catalog: MaterialCatalog,
        ledger: Optional[SettlementLedger] = None,
        min_age_seconds: float = DEFAULT_MIN_AGE_SECONDS,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._ledger = ledger or SettlementLedger(store)
        self._min_age = timedelta(seconds=min_age_seconds)

    async def find_uncredited(self, limit: int = 100) -> tuple[int, List[CollectionRecord]]:
        """Return (records scanned, up to `limit` records with no ledger entry)."""
        cutoff = (datetime.now(timezone.utc) - self._min_age).isoformat()
        scanned = 0
        pending: List[CollectionRecord] = []

        while len(pending) < limit:
            rows = await self._store.select_rows(
                COLLECTIONS_TABLE,
                neq={"status": CollectionStatus.REJECTED.value},
                lt={"created_at": cutoff},
                order_by="created_at",
                descending=True,
                limit=limit,
                offset=scanned,
            )
            if not rows:
                break
            scanned += len(rows)
            records = [CollectionRecord.from_row(row) for row in rows]
            credited_rows = await self._store.select_rows(
                LEDGER_TABLE,
                columns="collection_id",
                in_={"collection_id": [record.id for record in records]},
            )
            credited = {str(row["collection_id"]) for row in credited_rows}
            pending.extend(record for record in records if record.id not in credited)
            if len(rows) < limit:
                break

        return scanned, pending[:limit]

    async def reconcile_record(self, record: CollectionRecord) -> RecordOutcome:
        """Replay aggregates + settlement for one collection."""
        with LogContext(record_id=record.id, depositor_id=record.depositor_id):
            rows = await self._store.select_rows(
                LINE_ITEMS_TABLE, eq={"collection_id": record.id}
            )
            weighed = [row for row in rows if _has_weight(row)]
            if len(weighed) < len(rows):
                logger.warning(
                    "Ignoring %d line item(s) without a positive weight on %s",
                    len(rows) - len(weighed),
                    record.id,
                )
            items = [LineItem.from_row(row) for row in weighed]
            if not items:
                logger.warning("Collection %s has no line items; leaving un-credited", record.id)
                return RecordOutcome(record.id, Outcome.SKIPPED, reason="no line items")

            total_kg, total_value = compute_aggregates(items, self._catalog)
            repaired = False
            if not (
                math.isclose(record.aggregate_weight, total_kg, abs_tol=1e-9)
                and math.isclose(record.aggregate_value, total_value, abs_tol=0.005)
            ):
                await self._store.update_rows(
                    COLLECTIONS_TABLE,
                    {"total_kg": total_kg, "total_value": total_value},
                    id=record.id,
                )
                repaired = True
                logger.info(
                    "Repaired aggregates for %s: %.3fkg / %.2f",
                    record.id,
                    total_kg,
                    total_value,
                )

            _, points, split = settle(items, self._catalog, total_value)
            entry: LedgerEntry = await self._ledger.post(
                depositor_id=record.depositor_id,
                record_id=record.id,
                points=points,
                amount=split.wallet_amount,
                description=describe_credit(total_kg, points),
                fund_amount=split.fund_amount,
            )
            return RecordOutcome(
                record.id,
                Outcome.CREDITED,
                ledger_entry_id=entry.id,
                aggregates_repaired=repaired,
            )

    async def run_once(self, limit: int = 100) -> ReconciliationReport:
        """
        Run one pass.

        A failure on one collection is recorded and the pass continues;
        failures listing the collections are returned in the report.
        """
        report = ReconciliationReport()
        report.scanned, pending = await self.find_uncredited(limit)
        logger.info(
            "Reconciliation scanned %d collection(s), %d un-credited",
            report.scanned,
            len(pending),
            extra={"count": len(pending)},
        )

        for record in pending:
            try:
                outcome = await self.reconcile_record(record)
            except CollectionEngineError as exc:
                logger.error(
                    "Reconciliation failed for %s: %s",
                    record.id,
                    exc,
                    extra={"record_id": record.id, "error_code": str(exc.error_code)},
                )
                outcome = RecordOutcome(record.id, Outcome.FAILED, reason=str(exc))
            except ValidationError as exc:
                logger.error(
                    "Reconciliation failed for %s: stored rows are invalid: %s",
                    record.id,
                    exc,
                    extra={"record_id": record.id},
                )
                outcome = RecordOutcome(record.id, Outcome.FAILED, reason=f"invalid stored data: {exc}")
            report.outcomes.append(outcome)

        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            "Reconciliation pass done: %d credited, %d skipped, %d failed",
            report.credited,
            report.skipped,
            report.failed,
        )
        return report
