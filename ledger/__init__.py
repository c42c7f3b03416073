"""
Wallet Ledger for the subscriber boost service

This module provides:
- User accounts with balance and total-spent counters
- Debit, credit and refund flows, each paired with one ledger entry
- Deposit lifecycle driven by the payment gateway: pending → completed / failed
- Withdrawals with a daily limit, referral bonuses
- Per-user locking so concurrent mutations never lose updates
"""

from .models import (
    TransactionKind,
    EntryStatus,
    LedgerEntry,
    UserAccount,
    UserBalance,
)
from .service import LedgerService, InsufficientFundsError

__all__ = [
    "TransactionKind",
    "EntryStatus",
    "LedgerEntry",
    "UserAccount",
    "UserBalance",
    "LedgerService",
    "InsufficientFundsError",
]
