"""
Woza Mali Engine - Collection Intake & Settlement Backend

Records recycling collections, prices them against the material catalog,
credits depositors' wallets, and keeps dashboard change feeds alive.
Backed by Supabase (PostgREST + Realtime).
"""

__version__ = "0.1.0"
