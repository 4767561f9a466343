"""
Woza Mali Engine - Business Services
"""

from .intake_service import CollectionIntakePipeline
from .ledger_service import SettlementLedger
from .material_catalog import MaterialCatalog
from .realtime_manager import ConnectionStatus, RealtimeSyncManager
from .reconciliation import LedgerReconciler

__all__ = [
    "MaterialCatalog",
    "SettlementLedger",
    # Intake
    "CollectionIntakePipeline",
    "LedgerReconciler",
    # Realtime
    "RealtimeSyncManager",
    "ConnectionStatus",
]
