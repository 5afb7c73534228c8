"""
Per-domain repository modules for database access.

Repositories add and flush; the calling service owns the commit so that a
scan, a ledger entry or a binding lands atomically with its audit record.
"""
