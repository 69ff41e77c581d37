"""
Core modules for the quota ledger.

This package contains pricing, subscription tiers, usage accounting and
quota enforcement.
"""
