"""
tests/helpers.py

In-memory stand-ins for the Supabase-backed store and realtime client.

FakeStore implements the CollectionStore surface the services use
(insert/update/select plus channel factory methods) over plain dicts, with
per-(table, operation) failure injection and the unique constraint on
wallet_ledger.collection_id. FakeRealtime hands out
FakeChannel objects whose subscribe outcome the test controls.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from backend.core.error_taxonomy import ERR_STORE_EMPTY_RESULT, TransientStoreError
from backend.db import LEDGER_TABLE, PG_UNIQUE_VIOLATION

Row = Dict[str, Any]

_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)

UNIQUE_COLUMNS: Dict[str, str] = {LEDGER_TABLE: "collection_id"}


# =============================================================================
# Store
# =============================================================================


class FakeStore:
    """Dict-backed CollectionStore with deterministic ids and timestamps."""

    def __init__(self, realtime: Optional["FakeRealtime"] = None) -> None:
        self.tables: Dict[str, List[Row]] = {}
        self.calls: List[tuple[str, str]] = []
        self.realtime = realtime or FakeRealtime()
        self._failures: Dict[tuple[str, str], Optional[int]] = {}
        self._ids = itertools.count(1)
        self._clock = itertools.count(0)

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def fail(self, table: str, operation: str, times: Optional[int] = None) -> None:
        """Make `operation` on `table` raise TransientStoreError (`times` calls, or forever)."""
        self._failures[(table, operation)] = times

    def heal(self) -> None:
        self._failures.clear()

    def seed(self, table: str, rows: Iterable[Mapping[str, Any]]) -> List[Row]:
        return [self._store_row(table, row) for row in rows]

    def rows(self, table: str) -> List[Row]:
        return list(self.tables.get(table, []))

    def writes(self) -> List[tuple[str, str]]:
        return [call for call in self.calls if call[1] in ("insert", "update")]

    # ------------------------------------------------------------------
    # CollectionStore surface
    # ------------------------------------------------------------------

    async def insert_row(self, table: str, row: Mapping[str, Any]) -> Row:
        rows = await self.insert_rows(table, [row])
        if not rows:
            raise TransientStoreError(
                f"Insert into {table} returned no row",
                table=table,
                operation="insert",
                error_code=ERR_STORE_EMPTY_RESULT,
            )
        return rows[0]

    async def insert_rows(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
        if not rows:
            return []
        self._check(table, "insert")
        self._check_unique(table, rows)
        return [dict(self._store_row(table, row)) for row in rows]

    async def update_rows(self, table: str, values: Mapping[str, Any], **eq: Any) -> List[Row]:
        self._check(table, "update")
        updated = []
        for row in self.tables.get(table, []):
            if all(row.get(column) == value for column, value in eq.items()):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def select_one(self, table: str, *, columns: str = "*", **eq: Any) -> Optional[Row]:
        rows = await self.select_rows(table, columns=columns, eq=eq, limit=1)
        return rows[0] if rows else None

    async def select_rows(
        self,
        table: str,
        *,
        columns: str = "*",
        eq: Optional[Mapping[str, Any]] = None,
        neq: Optional[Mapping[str, Any]] = None,
        in_: Optional[Mapping[str, Iterable[Any]]] = None,
        lt: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        self._check(table, "select")
        rows = [dict(row) for row in self.tables.get(table, [])]
        for column, value in (eq or {}).items():
            rows = [row for row in rows if row.get(column) == value]
        for column, value in (neq or {}).items():
            rows = [row for row in rows if row.get(column) != value]
        for column, values in (in_ or {}).items():
            allowed = set(values)
            rows = [row for row in rows if row.get(column) in allowed]
        for column, value in (lt or {}).items():
            rows = [row for row in rows if row.get(column) is not None and row[column] < value]
        if order_by:
            rows.sort(key=lambda row: row.get(order_by), reverse=descending)
        if limit is not None:
            rows = rows[offset : offset + limit]
        if columns != "*":
            wanted = [name.strip() for name in columns.split(",")]
            rows = [{name: row.get(name) for name in wanted} for row in rows]
        return rows

    def channel(self, name: str) -> "FakeChannel":
        return self.realtime.channel(name)

    async def remove_channel(self, channel: "FakeChannel") -> None:
        await self.realtime.remove_channel(channel)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check(self, table: str, operation: str) -> None:
        self.calls.append((table, operation))
        key = (table, operation)
        if key not in self._failures:
            return
        remaining = self._failures[key]
        if remaining is not None:
            if remaining <= 1:
                del self._failures[key]
            else:
                self._failures[key] = remaining - 1
        raise TransientStoreError(
            f"{operation} on {table} failed: injected failure",
            table=table,
            operation=operation,
        )

    def _check_unique(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        column = UNIQUE_COLUMNS.get(table)
        if column is None:
            return
        taken = {row.get(column) for row in self.tables.get(table, [])}
        for row in rows:
            if row.get(column) in taken:
                raise TransientStoreError(
                    f"insert on {table} failed: duplicate key value violates unique constraint",
                    table=table,
                    operation="insert",
                    context={"pg_code": PG_UNIQUE_VIOLATION},
                )
            taken.add(row.get(column))

    def _store_row(self, table: str, row: Mapping[str, Any]) -> Row:
        stored = dict(row)
        stored.setdefault("id", f"{table}-{next(self._ids)}")
        stored.setdefault(
            "created_at", (_EPOCH + timedelta(seconds=next(self._clock))).isoformat()
        )
        self.tables.setdefault(table, []).append(stored)
        return stored


# =============================================================================
# Realtime
# =============================================================================


class FakeChannel:
    """Records handler bindings and reports the subscribe outcome chosen by FakeRealtime."""

    def __init__(self, name: str, realtime: "FakeRealtime") -> None:
        self.name = name
        self.bindings: List[Dict[str, Any]] = []
        self.removed = False
        self._realtime = realtime
        self._callback: Any = None

    def on_postgres_changes(
        self,
        event: str,
        callback: Any,
        table: str = "*",
        schema: str = "public",
        filter: Optional[str] = None,
    ) -> "FakeChannel":
        self.bindings.append(
            {"event": event, "callback": callback, "table": table, "schema": schema, "filter": filter}
        )
        return self

    async def subscribe(self, callback: Any = None) -> "FakeChannel":
        self._callback = callback
        state = self._realtime.next_state()
        if state is not None and callback is not None:
            callback(state, None if state == "SUBSCRIBED" else RuntimeError(f"join {state.lower()}"))
        return self

    def emit(self, state: str, error: Optional[Exception] = None) -> None:
        """Report a later state change (e.g. CHANNEL_ERROR after a drop)."""
        self._callback(state, error)


class FakeRealtime:
    """
    Channel factory.

    Subscribe outcomes: `fail_all` makes every join report CHANNEL_ERROR,
    `fail_next` fails that many upcoming joins, `silent` never answers.
    """

    def __init__(self) -> None:
        self.channels: List[FakeChannel] = []
        self.removed: List[FakeChannel] = []
        self.fail_all = False
        self.fail_next = 0
        self.silent = False

    def channel(self, name: str) -> FakeChannel:
        channel = FakeChannel(name, self)
        self.channels.append(channel)
        return channel

    async def remove_channel(self, channel: FakeChannel) -> None:
        channel.removed = True
        self.removed.append(channel)

    def next_state(self) -> Optional[str]:
        if self.silent:
            return None
        if self.fail_all:
            return "CHANNEL_ERROR"
        if self.fail_next > 0:
            self.fail_next -= 1
            return "CHANNEL_ERROR"
        return "SUBSCRIBED"

    def created(self, name: str) -> List[FakeChannel]:
        return [channel for channel in self.channels if channel.name == name]

    def live(self) -> List[FakeChannel]:
        return [channel for channel in self.channels if not channel.removed]


# =============================================================================
# Catalog fixtures
# =============================================================================

MATERIAL_ROWS: List[Row] = [
    {
        "id": "mat-alu",
        "name": "Aluminium Cans",
        "rate_per_kg": 18.55,
        "co2_per_kg": 9.0,
        "water_l_per_kg": 12.0,
        "landfill_l_per_kg": 3.0,
        "points_per_currency_unit": 1.0,
        "category": "Aluminium",
    },
    {
        "id": "mat-pet",
        "name": "PET Bottles",
        "rate_per_kg": 1.50,
        "co2_per_kg": 1.5,
        "water_l_per_kg": 4.0,
        "landfill_l_per_kg": 6.0,
        "points_per_currency_unit": 1.0,
        "category": "PET",
    },
    {
        "id": "mat-paper",
        "name": "Paper",
        "rate_per_kg": 1.20,
        "co2_per_kg": 0.9,
        "water_l_per_kg": 26.0,
        "landfill_l_per_kg": 2.5,
        "points_per_currency_unit": 1.0,
        "category": "Paper",
    },
    {
        "id": "mat-glass",
        "name": "Glass",
        "rate_per_kg": 0.40,
        "co2_per_kg": 0.3,
        "water_l_per_kg": 0.0,
        "landfill_l_per_kg": 1.0,
        "points_per_currency_unit": 2.0,
        "category": None,
    },
]
