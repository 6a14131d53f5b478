"""
Ledger Kernel - double-entry ledger core

An append-only, multi-currency accounting core with:
- Chart of accounts (main/sub hierarchy) and account groups
- Balanced multi-leg postings, reversal by mirrored legs
- Per-account / per-group balance ceilings
- Opening-balance-carrying account statements
"""

__version__ = "0.1.0"
