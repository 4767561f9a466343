"""
Woza Mali Engine - Error Taxonomy

Stable error codes plus the exception types raised by the intake pipeline.

Error Code Format: WME-{CATEGORY}-{NUMBER}
- VALIDATION (500-599): caller supplied an unusable submission
- CATALOG (600-699): material catalog gaps
- STORE (100-199): relational store / network failures
- LEDGER (700-799): wallet ledger posting failures
- REALTIME (800-899): change-feed subscription failures
- INTERNAL (900-999): unexpected internal errors

Propagation policy:
- InvalidInputError / MaterialNotFoundError: hard failures, never retried
- TransientStoreError: retryable by the caller; steps after record creation
  leave a record in place
- LedgerPostingError: the record is valid but un-credited; the ledger
  reconciler picks it up
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================


class ErrorCategory(str, Enum):
    """Error category for classification."""

    VALIDATION = "VALIDATION"
    CATALOG = "CATALOG"
    STORE = "STORE"
    LEDGER = "LEDGER"
    REALTIME = "REALTIME"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class ErrorCode:
    """Immutable error code definition."""

    code: str
    category: ErrorCategory
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return self.code


ERR_STORE_REQUEST = ErrorCode(
    code="WME-STORE-100",
    category=ErrorCategory.STORE,
    message="Relational store request failed",
    retryable=True,
)
ERR_STORE_NETWORK = ErrorCode(
    code="WME-STORE-101",
    category=ErrorCategory.STORE,
    message="Network failure talking to the relational store",
    retryable=True,
)
ERR_STORE_EMPTY_RESULT = ErrorCode(
    code="WME-STORE-110",
    category=ErrorCategory.STORE,
    message="Store write returned no row",
    retryable=True,
)

ERR_VALIDATION_NO_ITEMS = ErrorCode(
    code="WME-VALIDATION-500",
    category=ErrorCategory.VALIDATION,
    message="Submission has no valid line items",
)
ERR_VALIDATION_INPUT = ErrorCode(
    code="WME-VALIDATION-501",
    category=ErrorCategory.VALIDATION,
    message="Submission failed schema validation",
)

ERR_CATALOG_MATERIAL_MISSING = ErrorCode(
    code="WME-CATALOG-600",
    category=ErrorCategory.CATALOG,
    message="Material not found in catalog",
)

ERR_LEDGER_POST = ErrorCode(
    code="WME-LEDGER-700",
    category=ErrorCategory.LEDGER,
    message="Ledger entry could not be posted; collection is un-credited",
    retryable=True,
)

ERR_REALTIME_SUBSCRIBE = ErrorCode(
    code="WME-REALTIME-800",
    category=ErrorCategory.REALTIME,
    message="Change-feed subscription failed",
    retryable=True,
)

ERR_INTERNAL_UNKNOWN = ErrorCode(
    code="WME-INTERNAL-900",
    category=ErrorCategory.INTERNAL,
    message="Unknown internal error",
)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class CollectionEngineError(Exception):
    """Base class for every typed error the engine raises."""

    default_code: ErrorCode = ERR_INTERNAL_UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        error_code: ErrorCode | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.error_code = error_code or self.default_code
        self.context = dict(context or {})

    @property
    def retryable(self) -> bool:
        return self.error_code.retryable

    def to_dict(self) -> dict[str, Any]:
        """Payload for thin API layers."""
        payload: dict[str, Any] = {
            "error": str(self.error_code),
            "category": self.error_code.category.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.step:
            payload["step"] = self.step
        if self.context:
            payload["context"] = self.context
        return payload


class InvalidInputError(CollectionEngineError):
    """No usable line items after filtering; caller error."""

    default_code = ERR_VALIDATION_NO_ITEMS


class MaterialNotFoundError(CollectionEngineError):
    """A material the caller entered is absent from the catalog."""

    default_code = ERR_CATALOG_MATERIAL_MISSING

    def __init__(self, material_id: str, *, step: str | None = None) -> None:
        super().__init__(
            f"Material '{material_id}' not found in catalog",
            step=step,
            context={"material_id": material_id},
        )
        self.material_id = material_id


class TransientStoreError(CollectionEngineError):
    """A store round trip failed (network, PostgREST error, empty write)."""

    default_code = ERR_STORE_REQUEST

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        operation: str | None = None,
        step: str | None = None,
        error_code: ErrorCode | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        merged = {"table": table, "operation": operation, **(context or {})}
        super().__init__(
            message,
            step=step,
            error_code=error_code,
            context={k: v for k, v in merged.items() if v is not None},
        )
        self.table = table
        self.operation = operation


class LedgerPostingError(TransientStoreError):
    """Step 8 failed: the collection exists but its depositor was not credited."""

    default_code = ERR_LEDGER_POST

    def __init__(self, record_id: str, cause: Exception) -> None:
        super().__init__(
            f"Ledger posting failed for collection {record_id}: {cause}",
            table="wallet_ledger",
            operation="insert",
            step="post_ledger",
            context={"record_id": record_id},
        )
        self.record_id = record_id


# =============================================================================
# STRUCTURED ERROR
# =============================================================================


@dataclass
class StructuredError:
    """Structured error for logging and reporting."""

    error_code: ErrorCode
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: dict[str, Any] = field(default_factory=dict)
    original_exception: Exception | None = None
    traceback_str: str | None = None

    def __post_init__(self):
        if self.original_exception and not self.traceback_str:
            self.traceback_str = "".join(
                traceback.format_exception(
                    type(self.original_exception),
                    self.original_exception,
                    self.original_exception.__traceback__,
                )
            )

    def to_log_dict(self) -> dict[str, Any]:
        """Convert to dict suitable for structured logging."""
        return {
            "error_code": str(self.error_code),
            "error_category": self.error_code.category.value,
            "error_message": self.message,
            "retryable": self.error_code.retryable,
            "timestamp": self.timestamp.isoformat(),
            **self.context,
        }

    def log(self, level: int = logging.ERROR) -> None:
        """Log this error with structured context."""
        logger.log(
            level,
            "[%s] %s",
            self.error_code,
            self.message,
            extra=self.to_log_dict(),
            exc_info=self.original_exception,
        )


# =============================================================================
# ERROR CLASSIFIER
# =============================================================================


def classify_exception(exc: Exception, context: dict[str, Any] | None = None) -> StructuredError:
    """
    Classify an exception into a structured error.

    Typed engine errors keep their own code; everything else is mapped by
    exception type name the way PostgREST/httpx failures surface.
    """
    context = dict(context or {})
    exc_type = type(exc).__name__
    exc_msg = str(exc)

    if isinstance(exc, CollectionEngineError):
        error_code = exc.error_code
        context = {**exc.context, **context}
        if exc.step:
            context.setdefault("step", exc.step)
    elif "APIError" in exc_type or "postgrest" in type(exc).__module__.lower():
        error_code = ERR_STORE_REQUEST
    elif (
        "Timeout" in exc_type
        or "ConnectError" in exc_type
        or "ConnectionError" in exc_type
        or isinstance(exc, OSError)
    ):
        error_code = ERR_STORE_NETWORK
    elif "ValidationError" in exc_type:
        error_code = ERR_VALIDATION_INPUT
    else:
        error_code = ERR_INTERNAL_UNKNOWN

    return StructuredError(
        error_code=error_code,
        message=exc_msg,
        context={"exception_type": exc_type, **context},
        original_exception=exc,
    )


def log_classified_error(
    exc: Exception,
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> StructuredError:
    """Classify and log an exception in one call."""
    structured = classify_exception(exc, context)
    structured.log(level)
    return structured
