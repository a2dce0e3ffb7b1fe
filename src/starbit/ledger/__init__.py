"""Ledger module: balances, audit trail and pipeline records."""

from starbit.ledger.database import get_db, init_db
from starbit.ledger.models import (
    AuditLog,
    AuditLogType,
    Balance,
    Cryptocurrency,
    Deposit,
    DepositStatus,
    OfferSide,
    OfferStatus,
    P2POffer,
    P2PTrade,
    PaymentMethod,
    ProofType,
    TradeMessage,
    TradeStatus,
    User,
    Withdrawal,
    WithdrawalStatus,
)
from starbit.ledger.repository import LedgerRepository

__all__ = [
    # Models
    "User",
    "Balance",
    "AuditLog",
    "Cryptocurrency",
    "PaymentMethod",
    "Deposit",
    "Withdrawal",
    "P2POffer",
    "P2PTrade",
    "TradeMessage",
    # Enums
    "AuditLogType",
    "DepositStatus",
    "ProofType",
    "WithdrawalStatus",
    "OfferSide",
    "OfferStatus",
    "TradeStatus",
    # Database
    "get_db",
    "init_db",
    "LedgerRepository",
]
