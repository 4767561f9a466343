"""
Tests for backend/core/error_taxonomy.py.
"""

from __future__ import annotations

import logging

import httpx

from backend.core.error_taxonomy import (
    ERR_CATALOG_MATERIAL_MISSING,
    ERR_INTERNAL_UNKNOWN,
    ERR_LEDGER_POST,
    ERR_STORE_NETWORK,
    ErrorCategory,
    InvalidInputError,
    LedgerPostingError,
    MaterialNotFoundError,
    TransientStoreError,
    classify_exception,
    log_classified_error,
)


class TestExceptions:
    """Typed engine errors carry a code, a step and context."""

    def test_material_not_found(self):
        exc = MaterialNotFoundError("mat-9", step="resolve_materials")

        assert exc.error_code == ERR_CATALOG_MATERIAL_MISSING
        assert exc.to_dict() == {
            "error": "WME-CATALOG-600",
            "category": "CATALOG",
            "message": "Material 'mat-9' not found in catalog",
            "retryable": False,
            "step": "resolve_materials",
            "context": {"material_id": "mat-9"},
        }

    def test_transient_store_error_drops_empty_context(self):
        exc = TransientStoreError("boom", table="collections")
        assert exc.context == {"table": "collections"}
        assert exc.retryable is True

    def test_ledger_posting_error_is_transient(self):
        cause = TransientStoreError("insert failed", table="wallet_ledger")
        exc = LedgerPostingError("col-1", cause)

        assert isinstance(exc, TransientStoreError)
        assert exc.error_code == ERR_LEDGER_POST
        assert exc.step == "post_ledger"
        assert exc.record_id == "col-1"
        assert "col-1" in str(exc)

    def test_invalid_input_not_retryable(self):
        assert InvalidInputError("no items").retryable is False


class TestClassifyException:
    def test_engine_error_keeps_code_and_step(self):
        exc = TransientStoreError("down", table="materials", step="load_catalog")

        structured = classify_exception(exc, {"worker": "reconcile"})

        assert str(structured.error_code) == "WME-STORE-100"
        assert structured.context["step"] == "load_catalog"
        assert structured.context["worker"] == "reconcile"

    def test_httpx_error_is_network(self):
        structured = classify_exception(httpx.ConnectError("refused"))
        assert structured.error_code == ERR_STORE_NETWORK
        assert structured.error_code.category is ErrorCategory.STORE

    def test_unknown_exception(self):
        structured = classify_exception(KeyError("x"))
        assert structured.error_code == ERR_INTERNAL_UNKNOWN
        assert structured.traceback_str is not None

    def test_log_classified_error(self, caplog):
        with caplog.at_level(logging.WARNING, logger="backend.core.error_taxonomy"):
            log_classified_error(InvalidInputError("nothing to do"), level=logging.WARNING)

        assert "[WME-VALIDATION-500] nothing to do" in caplog.text
