"""
Quota Ledger.

Usage accounting and subscription quota enforcement for LLM-backed features.
"""

__version__ = "0.1.0"
