"""
Woza Mali Engine - Collection Intake Service

Turns a field-recorded set of materials into a durable, credited collection:

  1. create the `collections` row (status=submitted, zero aggregates)
  2. persist the line items
  3. (material resolution, checked before step 1 so a catalog gap never
     leaves an orphan record)
  4. persist evidence photos (best effort)
  5. compute aggregates from the persisted items and write them back
  6. compute impact + points
  7. compute the fund split
  8. post the wallet ledger credit
  9. return the SettlementResult

Each step is its own store round trip; there is no cross-step transaction.
Failures after step 1 leave the record in place. A failed step 8 leaves a
valid but un-credited record, which LedgerReconciler later settles.

Usage:
    from backend.services.intake_service import CollectionIntakePipeline

    pipeline = CollectionIntakePipeline(store, catalog)
    result = await pipeline.submit(depositor_id, collector_id, line_items)
    print(result.to_contract())
"""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Generator, Iterable, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from ..core.error_taxonomy import (
    ERR_VALIDATION_INPUT,
    CollectionEngineError,
    InvalidInputError,
    LedgerPostingError,
    TransientStoreError,
)
from ..core.logging import LogContext, Timer
from ..core.models import (
    CollectionRecord,
    CollectionStatus,
    FundSplit,
    ImpactSummary,
    LineItem,
    LineItemInput,
    PhotoAttachment,
    PhotoInput,
    SettlementResult,
    SubmissionRequest,
    round_half_up,
)
from ..db import COLLECTIONS_TABLE, LINE_ITEMS_TABLE, PHOTOS_TABLE
from .allocation_service import allocate
from .impact_service import calculate_impact, calculate_points
from .ledger_service import SettlementLedger, describe_credit
from .material_catalog import MaterialCatalog

if TYPE_CHECKING:
    from ..db import CollectionStore

logger = logging.getLogger(__name__)

LineItemLike = Union[LineItemInput, Mapping[str, Any]]
PhotoLike = Union[PhotoInput, Mapping[str, Any]]


@contextmanager
def _stage(name: str) -> Generator[None, None, None]:
    """Bind the step name to log lines and to any engine error raised inside."""
    with LogContext(step=name):
        try:
            yield
        except CollectionEngineError as exc:
            if exc.step is None:
                exc.step = name
            raise


def compute_aggregates(
    items: Iterable[LineItem], catalog: MaterialCatalog
) -> tuple[float, float]:
    """(total kg, total value) for persisted line items."""
    items = list(items)
    total_kg = math.fsum(item.weight_kg for item in items)
    total_value = round_half_up(
        math.fsum(item.weight_kg * catalog.require(item.material_id).rate_per_kg for item in items)
    )
    return total_kg, total_value


def settle(
    items: Sequence[LineItem], catalog: MaterialCatalog, total_value: float
) -> tuple[ImpactSummary, int, FundSplit]:
    """Steps 6-7: pure math over already-validated items."""
    pairs = [(item.material_id, item.weight_kg) for item in items]
    impact = calculate_impact(pairs, catalog)
    points = calculate_points(pairs, catalog)
    split = allocate(pairs, catalog, total_value=total_value)
    return impact, points, split


class CollectionIntakePipeline:
    """Orchestrates a single collection submission against the store."""

    def __init__(
        self,
        store: "CollectionStore",
        catalog: MaterialCatalog,
        ledger: Optional[SettlementLedger] = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._ledger = ledger or SettlementLedger(store)

    @property
    def catalog(self) -> MaterialCatalog:
        return self._catalog

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(
        self,
        depositor_id: str,
        collector_id: str,
        line_items: Sequence[LineItemLike],
        notes: Optional[str] = None,
        photos: Optional[Sequence[PhotoLike]] = None,
        **extra: Any,
    ) -> SettlementResult:
        """
        Submit one collection.

        Args:
            depositor_id: Resident whose wallet is credited
            collector_id: Field agent recording the pickup
            line_items: LineItemInput objects or dicts
                (material_id, weight_kg|kilograms, contamination_pct, notes)
            notes: Free-text note on the collection
            photos: PhotoInput objects or dicts (url, photo_type, description)
            **extra: address_id, lat, lng, scale_photo, recyclables_photo

        Returns:
            SettlementResult

        Raises:
            InvalidInputError: no line item with weight > 0
            MaterialNotFoundError: an entered material is not in the catalog
            TransientStoreError: a store write failed (record may exist)
            LedgerPostingError: the record is complete but un-credited
        """
        try:
            request = SubmissionRequest(
                depositor_id=depositor_id,
                collector_id=collector_id,
                line_items=list(line_items),
                notes=notes,
                **extra,
            )
        except ValidationError as exc:
            raise InvalidInputError(
                f"Submission failed validation: {exc.error_count()} error(s)",
                step="validate",
                error_code=ERR_VALIDATION_INPUT,
                context={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
        # Photos stay unvalidated until step 4 so a bad one cannot sink the submission
        return await self.submit_request(request, extra_photos=photos)

    async def submit_request(
        self,
        request: SubmissionRequest,
        extra_photos: Optional[Sequence[PhotoLike]] = None,
    ) -> SettlementResult:
        with LogContext(depositor_id=request.depositor_id, collector_id=request.collector_id):
            with Timer() as timer:
                valid_items = self._preflight(request)

                with _stage("create_record"):
                    record = await self._create_record(request)

                photos: list[PhotoLike] = [*request.photo_inputs(), *(extra_photos or [])]
                with LogContext(record_id=record.id):
                    result = await self._complete(record, valid_items, photos)

            logger.info(
                "Collection %s settled: %.2fkg, %.2f value, %d points (%.0fms)",
                result.record_id,
                result.total_kg,
                result.total_value,
                result.points_earned,
                timer.elapsed_ms,
                extra={"record_id": result.record_id, "duration_ms": round(timer.elapsed_ms, 2)},
            )
            return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _preflight(self, request: SubmissionRequest) -> list[LineItemInput]:
        """Filter non-positive weights, then insist every remaining material resolves."""
        with _stage("resolve_materials"):
            valid = [item for item in request.line_items if item.weight_kg > 0]
            dropped = len(request.line_items) - len(valid)
            if dropped:
                logger.info("Dropped %d line item(s) with non-positive weight", dropped)
            for item in valid:
                self._catalog.require(item.material_id)
            if not valid:
                raise InvalidInputError(
                    "Submission contains no line items with weight > 0",
                    context={"submitted_items": len(request.line_items)},
                )
            return valid

    async def _create_record(self, request: SubmissionRequest) -> CollectionRecord:
        now = datetime.now(timezone.utc).isoformat()
        row = await self._store.insert_row(
            COLLECTIONS_TABLE,
            {
                "depositor_id": request.depositor_id,
                "collector_id": request.collector_id,
                "address_id": request.address_id,
                "status": CollectionStatus.SUBMITTED.value,
                "notes": request.notes,
                "lat": request.lat,
                "lng": request.lng,
                "submitted_at": now,
                "total_kg": 0,
                "total_value": 0,
            },
        )
        record = CollectionRecord.from_row(row)
        logger.info("Collection record created", extra={"record_id": record.id})
        return record

    async def _complete(
        self,
        record: CollectionRecord,
        valid_items: Sequence[LineItemInput],
        photos: Sequence[PhotoLike],
    ) -> SettlementResult:
        with _stage("persist_items"):
            items = await self._persist_items(record.id, valid_items)

        with _stage("persist_photos"):
            await self._persist_photos(record.id, photos)

        with _stage("write_aggregates"):
            total_kg, total_value = compute_aggregates(items, self._catalog)
            await self._store.update_rows(
                COLLECTIONS_TABLE,
                {"total_kg": total_kg, "total_value": total_value},
                id=record.id,
            )

        with _stage("compute_metrics"):
            impact, points, split = settle(items, self._catalog, total_value)

        with _stage("post_ledger"):
            try:
                entry = await self._ledger.post(
                    depositor_id=record.depositor_id,
                    record_id=record.id,
                    points=points,
                    amount=split.wallet_amount,
                    description=describe_credit(total_kg, points),
                    fund_amount=split.fund_amount,
                )
            except TransientStoreError as exc:
                logger.error(
                    "Collection %s persisted but not credited: %s",
                    record.id,
                    exc,
                    extra={"record_id": record.id, "error_code": str(exc.error_code)},
                )
                raise LedgerPostingError(record.id, exc) from exc

        return SettlementResult(
            record_id=record.id,
            total_kg=total_kg,
            total_value=total_value,
            points_earned=points,
            environmental_impact=impact,
            fund_allocation=split,
            ledger_entry_id=entry.id,
        )

    async def _persist_items(
        self, record_id: str, valid_items: Sequence[LineItemInput]
    ) -> list[LineItem]:
        items = [
            LineItem(
                collection_id=record_id,
                material_id=item.material_id,
                weight_kg=item.weight_kg,
                contamination_pct=item.contamination_pct,
                notes=item.notes,
            )
            for item in valid_items
        ]
        rows = await self._store.insert_rows(LINE_ITEMS_TABLE, [item.to_row() for item in items])
        if len(rows) != len(items):
            raise TransientStoreError(
                f"Expected {len(items)} stored line items, store returned {len(rows)}",
                table=LINE_ITEMS_TABLE,
                operation="insert",
            )
        logger.info("Persisted %d line item(s)", len(rows), extra={"count": len(rows)})
        return [LineItem.from_row(row) for row in rows]

    async def _persist_photos(self, record_id: str, photos: Sequence[PhotoLike]) -> int:
        """Best effort: returns the number of photos stored, never raises."""
        if not photos:
            return 0
        try:
            attachments = [
                PhotoAttachment(
                    collection_id=record_id,
                    photo_url=photo.url,
                    photo_type=photo.photo_type,
                    description=photo.description,
                )
                for photo in (
                    p if isinstance(p, PhotoInput) else PhotoInput.model_validate(p)
                    for p in photos
                )
            ]
            await self._store.insert_rows(PHOTOS_TABLE, [a.to_row() for a in attachments])
        except Exception as exc:  # noqa: BLE001 - best effort step
            logger.warning("Failed to save collection photos (continuing): %s", exc, exc_info=True)
            return 0
        logger.info("%d photo(s) saved", len(attachments), extra={"count": len(attachments)})
        return len(attachments)
