"""
Woza Mali Engine - Backend Workers

NOTE: Worker modules are run directly via:
    python -m backend.workers.reconcile_ledger

Do NOT import worker modules here to avoid sys.modules RuntimeWarning
when running workers as __main__.
"""
