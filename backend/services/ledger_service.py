"""
Woza Mali Engine - Settlement Ledger

Append-only wallet credits. Entries are never updated or deleted here;
corrections are separate compensating entries.

Posting is idempotent per source collection: if a credit for the
collection already exists it is returned instead of inserting a second
one. The lookup and the insert are separate round trips, so the
`wallet_ledger.collection_id` unique constraint is what settles a race
between the intake pipeline and the reconciler: the losing insert gets a
unique violation and the winner's entry is returned.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from ..core.error_taxonomy import TransientStoreError
from ..core.models import LedgerEntry, round_half_up
from ..db import LEDGER_TABLE, PG_UNIQUE_VIOLATION

if TYPE_CHECKING:
    from ..db import CollectionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletSummary:
    """Running totals for one depositor."""

    depositor_id: str
    points: int
    amount: float
    entries: int


def describe_credit(total_kg: float, points: int) -> str:
    """Human-readable audit line stored with each credit."""
    return f"Collection of {total_kg:g}kg - {points} points earned"


class SettlementLedger:
    """Writes and reads `wallet_ledger` rows."""

    def __init__(self, store: "CollectionStore") -> None:
        self._store = store

    async def find_entry_for(self, record_id: str) -> Optional[LedgerEntry]:
        row = await self._store.select_one(LEDGER_TABLE, collection_id=record_id)
        return LedgerEntry.from_row(row) if row else None

    async def has_entry_for(self, record_id: str) -> bool:
        return await self.find_entry_for(record_id) is not None

    async def post(
        self,
        depositor_id: str,
        record_id: str,
        points: int,
        amount: float,
        description: str,
        fund_amount: float = 0.0,
    ) -> LedgerEntry:
        """
        Credit a depositor for one collection.

        Args:
            depositor_id: Wallet owner
            record_id: Source collection (idempotency key)
            points: Reward points
            amount: Currency credited to the wallet
            description: Audit text
            fund_amount: Beneficiary-fund share, stored for reporting only

        Returns:
            The stored entry, or the pre-existing one for this collection

        Raises:
            TransientStoreError: the store read or insert failed
        """
        existing = await self.find_entry_for(record_id)
        if existing is not None:
            logger.info(
                "Ledger entry already exists for collection %s; not posting again",
                record_id,
                extra={"record_id": record_id},
            )
            return existing

        try:
            row = await self._store.insert_row(
                LEDGER_TABLE,
                {
                    "depositor_id": depositor_id,
                    "collection_id": record_id,
                    "points": int(points),
                    "amount": round_half_up(amount),
                    "fund_allocation": round_half_up(fund_amount),
                    "description": description,
                },
            )
        except TransientStoreError as exc:
            if exc.context.get("pg_code") != PG_UNIQUE_VIOLATION:
                raise
            existing = await self.find_entry_for(record_id)
            if existing is None:
                raise
            logger.info(
                "Collection %s was credited concurrently; keeping entry %s",
                record_id,
                existing.id,
                extra={"record_id": record_id},
            )
            return existing
        entry = LedgerEntry.from_row(row)
        logger.info(
            "Wallet credited: %d points, %.2f to depositor %s",
            entry.points,
            entry.amount,
            depositor_id,
            extra={"record_id": record_id, "depositor_id": depositor_id},
        )
        return entry

    async def entries_for(self, depositor_id: str) -> list[LedgerEntry]:
        rows = await self._store.select_rows(
            LEDGER_TABLE,
            eq={"depositor_id": depositor_id},
            order_by="created_at",
            descending=True,
        )
        return [LedgerEntry.from_row(row) for row in rows]

    async def wallet_summary(self, depositor_id: str) -> WalletSummary:
        entries = await self.entries_for(depositor_id)
        return WalletSummary(
            depositor_id=depositor_id,
            points=sum(entry.points for entry in entries),
            amount=round_half_up(math.fsum(entry.amount for entry in entries)),
            entries=len(entries),
        )
