"""
tests/conftest.py

Pytest configuration and shared fixtures for the Woza Mali Engine test suite.

Every test runs against the in-memory FakeStore / FakeRealtime from
tests/helpers.py. Tests that need a live Supabase project are marked
`integration` and are skipped unless SUPABASE_URL is set.
"""

from __future__ import annotations

import os

import pytest

from backend.core.config import reset_settings
from backend.services.ledger_service import SettlementLedger
from backend.services.material_catalog import MaterialCatalog
from tests.helpers import MATERIAL_ROWS, FakeRealtime, FakeStore

# =============================================================================
# GLOBAL TEST CONFIGURATION
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """
    Registers custom markers:
      - integration: Tests that require a live Supabase project
    """
    config.addinivalue_line(
        "markers",
        "integration: marks tests as requiring external services (PostgREST, Realtime)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if os.environ.get("SUPABASE_URL"):
        return
    skip = pytest.mark.skip(reason="SUPABASE_URL not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Never leak a cached Settings between tests."""
    reset_settings()
    yield
    reset_settings()


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def catalog() -> MaterialCatalog:
    return MaterialCatalog.from_rows(MATERIAL_ROWS)


@pytest.fixture
def realtime() -> FakeRealtime:
    return FakeRealtime()


@pytest.fixture
def store(realtime: FakeRealtime) -> FakeStore:
    return FakeStore(realtime)


@pytest.fixture
def ledger(store: FakeStore) -> SettlementLedger:
    return SettlementLedger(store)  # type: ignore[arg-type]
