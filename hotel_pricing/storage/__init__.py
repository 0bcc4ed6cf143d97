"""
Persistence for calculation records and the override ledger.
"""
