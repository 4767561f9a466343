"""
Woza Mali Engine - Core Module

Configuration, logging, error taxonomy and domain models shared by the
services and workers.
"""

from .config import Settings, get_settings, reset_settings
from .error_taxonomy import (
    CollectionEngineError,
    InvalidInputError,
    LedgerPostingError,
    MaterialNotFoundError,
    TransientStoreError,
)
from .logging import LogContext, configure_structured_logging

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "reset_settings",
    # Errors
    "CollectionEngineError",
    "InvalidInputError",
    "MaterialNotFoundError",
    "TransientStoreError",
    "LedgerPostingError",
    # Logging
    "LogContext",
    "configure_structured_logging",
]
