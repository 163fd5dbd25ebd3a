"""
Kirda tournament wallet

This package provides:
- Three wallets per user: deposit, withdrawal and referral
- Tournament entry settlement (deposit wallet first, referral wallet second)
- 7% referral commission on every deposit of a referred user
- At-most-once crediting of gateway deposits (verify endpoint and webhook)
- An append-only transaction log as the audit trail
"""

from .models import (
    TransactionType,
    Transaction,
    TournamentEntry,
    UserProfile,
    UserStats,
)
from .service import LedgerService

__all__ = [
    "TransactionType",
    "Transaction",
    "TournamentEntry",
    "UserProfile",
    "UserStats",
    "LedgerService",
]
