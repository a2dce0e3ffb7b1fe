"""SQLAlchemy models for the ledger and the three transaction pipelines."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# SQLite has no decimal type and returns floats; round them back to 8 places
# (satoshi precision). Dialects with native decimals ignore the return scale.
AMOUNT = Numeric(36, 18, decimal_return_scale=8)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DepositStatus(str, Enum):
    """Status of a deposit."""

    PENDING = "pending"          # Submitted, no confirmations yet
    VERIFYING = "verifying"      # Confirmations accruing
    CONFIRMED = "confirmed"      # Credited exactly once
    FAILED = "failed"            # Rejected, no ledger effect
    MISMATCH = "mismatch"        # Received amount differs, held for manual resolution


class ProofType(str, Enum):
    """How a deposit claim is evidenced."""

    HASH = "hash"
    FILE = "file"


class WithdrawalStatus(str, Enum):
    """Status of a withdrawal."""

    PENDING = "pending"          # Gross amount locked, waiting for admin
    COMPLETED = "completed"      # Paid out, locked funds removed
    CANCELLED = "cancelled"      # Refunded to available


class OfferSide(str, Enum):
    """Direction of a P2P offer, from the poster's point of view."""

    BUY = "buy"
    SELL = "sell"


class OfferStatus(str, Enum):
    """Status of a P2P offer."""

    ACTIVE = "active"
    CLOSED = "closed"


class TradeStatus(str, Enum):
    """Status of a P2P trade."""

    PENDING = "pending"          # Escrow locked, waiting for buyer payment
    PAID = "paid"                # Buyer claims payment sent
    COMPLETED = "completed"      # Seller released escrow to buyer
    CANCELLED = "cancelled"      # Expired or refunded, escrow back to seller
    DISPUTED = "disputed"        # Frozen until an admin resolves it


class AuditLogType(str, Enum):
    """Kind of balance mutation recorded in the audit log."""

    CREDIT = "credit"
    LOCK = "lock"
    UNLOCK = "unlock"
    SETTLE = "settle"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"


class User(Base):
    """Account holder, keyed by the subject of their bearer token."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Balance(Base):
    """User balance for a specific asset.

    ``available`` can be spent; ``locked`` is earmarked by an open withdrawal
    or escrow. Neither may go negative.
    """

    __tablename__ = "balances"
    __table_args__ = (Index("ix_balances_user_asset", "user_id", "asset", unique=True),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)  # e.g., BTC, USDT, USD
    available: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    locked: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @property
    def total(self) -> Decimal:
        return self.available + self.locked


class AuditLog(Base):
    """One row per balance mutation, with before/after snapshots."""

    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_reference", "reference_type", "reference_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    log_type: Mapped[AuditLogType] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    available_before: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    available_after: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    locked_before: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    locked_after: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    reference_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    actor: Mapped[str] = mapped_column(String(64), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Cryptocurrency(Base):
    """A depositable coin and its confirmation policy."""

    __tablename__ = "cryptocurrencies"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    network: Mapped[str] = mapped_column(String(50), nullable=False)
    required_confirmations: Mapped[int] = mapped_column(default=1)
    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PaymentMethod(Base):
    """Deposit destination for a cryptocurrency, with amount limits."""

    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    cryptocurrency_id: Mapped[int] = mapped_column(ForeignKey("cryptocurrencies.id"), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(255), nullable=False)
    network: Mapped[str] = mapped_column(String(50), nullable=False)
    min_amount: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    max_amount: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class Deposit(Base):
    """User-submitted deposit claim and its verification state."""

    __tablename__ = "deposits"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    payment_method_id: Mapped[int] = mapped_column(ForeignKey("payment_methods.id"), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    network: Mapped[str] = mapped_column(String(50), nullable=False)
    expected_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    actual_amount: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    credited_amount: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    proof_type: Mapped[ProofType] = mapped_column(String(10), nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    proof_file: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[DepositStatus] = mapped_column(
        String(20), default=DepositStatus.PENDING, nullable=False
    )
    confirmations: Mapped[int] = mapped_column(default=0)
    verification_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verified_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class Withdrawal(Base):
    """Record of a withdrawal request."""

    __tablename__ = "withdrawals"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)  # gross
    fee_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)  # amount - fee
    method: Mapped[str] = mapped_column(String(50), nullable=False)  # crypto, bank_transfer, ...
    network: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[WithdrawalStatus] = mapped_column(
        String(20), default=WithdrawalStatus.PENDING, nullable=False
    )
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def reference(self) -> str:
        return f"W-{self.id:06d}"


class P2POffer(Base):
    """Standing buy/sell offer that trades are opened against."""

    __tablename__ = "p2p_offers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    side: Mapped[OfferSide] = mapped_column(String(10), nullable=False)
    coin: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    price: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)  # USD per coin
    available_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)  # coin
    min_limit: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)  # USD
    max_limit: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)  # USD
    payment_methods: Mapped[str] = mapped_column(Text, nullable=False)  # JSON list
    terms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[OfferStatus] = mapped_column(
        String(20), default=OfferStatus.ACTIVE, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class P2PTrade(Base):
    """Two-party escrow trade opened against an offer."""

    __tablename__ = "p2p_trades"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    offer_id: Mapped[int] = mapped_column(ForeignKey("p2p_offers.id"), nullable=False, index=True)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    coin: Mapped[str] = mapped_column(String(20), nullable=False)
    price: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    crypto_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    status: Mapped[TradeStatus] = mapped_column(
        String(20), default=TradeStatus.PENDING, nullable=False, index=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    disputed_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # release, refund
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def party_role(self, user_id: int) -> Optional[str]:
        """Return ``buyer``/``seller`` for a participant, else None."""
        if user_id == self.buyer_id:
            return "buyer"
        if user_id == self.seller_id:
            return "seller"
        return None


class TradeMessage(Base):
    """Append-only chat message attached to a trade."""

    __tablename__ = "trade_messages"
    __table_args__ = (Index("ix_trade_messages_order", "trade_id", "created_at", "id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    trade_id: Mapped[int] = mapped_column(ForeignKey("p2p_trades.id"), nullable=False)
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
