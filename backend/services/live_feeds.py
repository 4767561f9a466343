"""
Woza Mali Engine - Dashboard Change Feeds

Named subscriptions the dashboards use to observe the intake pipeline's
writes. Each helper registers a SubscriptionSpec on the RealtimeSyncManager,
so the feed is recreated verbatim after every reconnect.

Usage:
    name = await watch_depositor_collections(manager, depositor_id, on_change)
    ...
    await manager.unsubscribe(name)
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Literal, Optional

from ..db import COLLECTIONS_TABLE, LEDGER_TABLE, LINE_ITEMS_TABLE, MATERIALS_TABLE
from .realtime_manager import RealtimeSyncManager, SetupFn

ChangeEvent = Literal["*", "INSERT", "UPDATE", "DELETE"]
ChangeCallback = Callable[[Dict[str, Any]], None]

CHANGE_EVENTS = ("*", "INSERT", "UPDATE", "DELETE")


def postgres_changes(
    table: str,
    callback: ChangeCallback,
    event: str = "*",
    filter: Optional[str] = None,
    schema: str = "public",
) -> SetupFn:
    """Build a setup function binding one table/event pair to a channel."""
    normalised = event.upper() if event != "*" else event
    if normalised not in CHANGE_EVENTS:
        raise ValueError(f"Unsupported change event '{event}'; expected one of {CHANGE_EVENTS}")

    def setup(channel: Any) -> None:
        channel.on_postgres_changes(
            normalised,
            callback=callback,
            table=table,
            schema=schema,
            filter=filter,
        )

    return setup


async def watch_depositor_collections(
    manager: RealtimeSyncManager, depositor_id: str, callback: ChangeCallback
) -> str:
    name = f"depositor_collections_{depositor_id}"
    await manager.subscribe(
        name,
        postgres_changes(COLLECTIONS_TABLE, callback, filter=f"depositor_id=eq.{depositor_id}"),
    )
    return name


async def watch_collection_items(
    manager: RealtimeSyncManager, record_id: str, callback: ChangeCallback
) -> str:
    name = f"collection_items_{record_id}"
    await manager.subscribe(
        name,
        postgres_changes(LINE_ITEMS_TABLE, callback, filter=f"collection_id=eq.{record_id}"),
    )
    return name


async def watch_wallet_ledger(
    manager: RealtimeSyncManager, depositor_id: str, callback: ChangeCallback
) -> str:
    # Ledger rows are insert-only
    name = f"depositor_wallet_{depositor_id}"
    await manager.subscribe(
        name,
        postgres_changes(
            LEDGER_TABLE, callback, event="INSERT", filter=f"depositor_id=eq.{depositor_id}"
        ),
    )
    return name


async def watch_all_collections(manager: RealtimeSyncManager, callback: ChangeCallback) -> str:
    """Admin view: every collection insert/update/delete."""
    name = "admin_collections"

    def setup(channel: Any) -> None:
        postgres_changes(COLLECTIONS_TABLE, callback)(channel)
        postgres_changes(LINE_ITEMS_TABLE, callback, event="INSERT")(channel)

    await manager.subscribe(name, setup)
    return name


async def watch_materials(manager: RealtimeSyncManager, callback: ChangeCallback) -> str:
    name = "materials_changes"
    await manager.subscribe(name, postgres_changes(MATERIALS_TABLE, callback))
    return name
