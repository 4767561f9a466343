# backend/db.py
"""
Woza Mali Engine - Store Layer

Thin async adapter over the Supabase client (PostgREST for rows, Realtime
for change feeds). Every failure leaving this module is a
TransientStoreError naming the table and operation, so the services above
never see postgrest/httpx exception types.

Tables:
- collections             parent record per field visit
- collection_line_items   one row per material line
- collection_photos       optional evidence photos
- materials               read-only catalog
- wallet_ledger           append-only depositor credits, unique on collection_id
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import httpx
from loguru import logger
from postgrest.exceptions import APIError

from supabase import AsyncClient, AsyncClientOptions, acreate_client

from .core.config import Settings, get_settings
from .core.error_taxonomy import (
    ERR_STORE_EMPTY_RESULT,
    ERR_STORE_NETWORK,
    TransientStoreError,
)

# ---------------------------------------------------------------------------
# Table names
# ---------------------------------------------------------------------------

COLLECTIONS_TABLE = "collections"
LINE_ITEMS_TABLE = "collection_line_items"
PHOTOS_TABLE = "collection_photos"
MATERIALS_TABLE = "materials"
LEDGER_TABLE = "wallet_ledger"

# Postgres SQLSTATE for a unique constraint violation
PG_UNIQUE_VIOLATION = "23505"

ALL_TABLES = (
    COLLECTIONS_TABLE,
    LINE_ITEMS_TABLE,
    PHOTOS_TABLE,
    MATERIALS_TABLE,
    LEDGER_TABLE,
)

Row = Dict[str, Any]


class CollectionStore:
    """
    Point reads/writes and change-feed channels against the relational store.

    The adapter holds no cached state; two submissions only ever race on
    store-level writes.
    """

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    @property
    def client(self) -> AsyncClient:
        return self._client

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_row(self, table: str, row: Mapping[str, Any]) -> Row:
        """Insert one row and return it as stored (ids, defaults filled in)."""
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
        payload = [dict(row) for row in rows]
        response = await self._execute(
            table, "insert", self._client.table(table).insert(payload)
        )
        logger.debug("Inserted {} row(s) into {}", len(payload), table)
        return list(response.data or [])

    async def update_rows(
        self, table: str, values: Mapping[str, Any], **eq: Any
    ) -> List[Row]:
        query = self._client.table(table).update(dict(values))
        for column, value in eq.items():
            query = query.eq(column, value)
        response = await self._execute(table, "update", query)
        return list(response.data or [])

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

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
        query = self._client.table(table).select(columns)
        for column, value in (eq or {}).items():
            query = query.eq(column, value)
        for column, value in (neq or {}).items():
            query = query.neq(column, value)
        for column, values in (in_ or {}).items():
            query = query.in_(column, list(values))
        for column, value in (lt or {}).items():
            query = query.lt(column, value)
        if order_by:
            query = query.order(order_by, desc=descending)
        if limit is not None and offset:
            query = query.range(offset, offset + limit - 1)
        elif limit is not None:
            query = query.limit(limit)
        response = await self._execute(table, "select", query)
        return list(response.data or [])

    # ------------------------------------------------------------------
    # Change feeds
    # ------------------------------------------------------------------

    def channel(self, name: str) -> Any:
        """Create (but do not subscribe) a realtime channel."""
        return self._client.channel(name)

    async def remove_channel(self, channel: Any) -> None:
        await self._client.remove_channel(channel)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute(self, table: str, operation: str, query: Any) -> Any:
        try:
            return await query.execute()
        except APIError as exc:
            logger.warning("PostgREST {} on {} failed: {}", operation, table, exc)
            raise TransientStoreError(
                f"{operation} on {table} failed: {exc.message or exc}",
                table=table,
                operation=operation,
                context={"pg_code": exc.code} if exc.code else None,
            ) from exc
        except (httpx.HTTPError, OSError) as exc:
            logger.warning("Network failure during {} on {}: {}", operation, table, exc)
            raise TransientStoreError(
                f"{operation} on {table} failed: {exc}",
                table=table,
                operation=operation,
                error_code=ERR_STORE_NETWORK,
            ) from exc


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


async def create_store(settings: Settings | None = None) -> CollectionStore:
    """Build a CollectionStore backed by a service-role async Supabase client."""
    settings = settings or get_settings()
    url, key = settings.require_supabase_credentials()
    options = AsyncClientOptions(schema=settings.SUPABASE_SCHEMA)
    client = await acreate_client(url, key, options=options)
    logger.info(
        "Initialized Supabase client for environment='{}' (schema={})",
        settings.ENVIRONMENT,
        settings.SUPABASE_SCHEMA,
    )
    return CollectionStore(client)
