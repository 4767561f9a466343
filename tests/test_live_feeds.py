"""
Tests for backend/services/live_feeds.py - dashboard change feeds.
"""

from __future__ import annotations

import pytest

from backend.services.live_feeds import (
    postgres_changes,
    watch_all_collections,
    watch_collection_items,
    watch_depositor_collections,
    watch_materials,
    watch_wallet_ledger,
)
from backend.services.realtime_manager import RealtimeSyncManager
from tests.helpers import FakeChannel, FakeRealtime


def _noop(payload):
    return None


@pytest.fixture
def manager(realtime: FakeRealtime) -> RealtimeSyncManager:
    # Specs registered before start() are attached when the manager starts
    return RealtimeSyncManager(realtime, settle_delay_ms=0)


class TestPostgresChanges:
    def test_binds_table_event_and_filter(self, realtime: FakeRealtime):
        channel = FakeChannel("c", realtime)

        postgres_changes("collections", _noop, event="update", filter="id=eq.1")(channel)

        assert channel.bindings == [
            {
                "event": "UPDATE",
                "callback": _noop,
                "table": "collections",
                "schema": "public",
                "filter": "id=eq.1",
            }
        ]

    def test_rejects_unknown_event(self):
        with pytest.raises(ValueError, match="Unsupported change event"):
            postgres_changes("collections", _noop, event="TRUNCATE")


class TestWatchers:
    """Each helper registers a named, filtered subscription."""

    @pytest.mark.asyncio
    async def test_depositor_collections(self, manager: RealtimeSyncManager, realtime: FakeRealtime):
        name = await watch_depositor_collections(manager, "dep-9", _noop)
        await manager.start()

        assert name == "depositor_collections_dep-9"
        [binding] = realtime.created(name)[0].bindings
        assert binding["table"] == "collections"
        assert binding["filter"] == "depositor_id=eq.dep-9"
        assert binding["event"] == "*"

    @pytest.mark.asyncio
    async def test_collection_items(self, manager: RealtimeSyncManager, realtime: FakeRealtime):
        name = await watch_collection_items(manager, "col-3", _noop)
        await manager.start()

        [binding] = realtime.created(name)[0].bindings
        assert binding["table"] == "collection_line_items"
        assert binding["filter"] == "collection_id=eq.col-3"

    @pytest.mark.asyncio
    async def test_wallet_ledger_inserts_only(
        self, manager: RealtimeSyncManager, realtime: FakeRealtime
    ):
        name = await watch_wallet_ledger(manager, "dep-9", _noop)
        await manager.start()

        [binding] = realtime.created(name)[0].bindings
        assert binding["table"] == "wallet_ledger"
        assert binding["event"] == "INSERT"

    @pytest.mark.asyncio
    async def test_admin_feed_binds_two_tables(
        self, manager: RealtimeSyncManager, realtime: FakeRealtime
    ):
        name = await watch_all_collections(manager, _noop)
        await manager.start()

        tables = [b["table"] for b in realtime.created(name)[0].bindings]
        assert name == "admin_collections"
        assert tables == ["collections", "collection_line_items"]

    @pytest.mark.asyncio
    async def test_feeds_survive_reconnect(
        self, manager: RealtimeSyncManager, realtime: FakeRealtime
    ):
        name = await watch_materials(manager, _noop)
        await manager.start()

        manager.reconnect_now()
        await manager.wait_idle()

        old, new = realtime.created(name)
        assert old.removed and not new.removed
        assert new.bindings[0]["table"] == "materials"
