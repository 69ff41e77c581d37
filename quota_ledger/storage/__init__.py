"""
Ledger storage: SQLite connections, records and repository.
"""
