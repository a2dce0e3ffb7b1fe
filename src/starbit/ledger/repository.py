"""Repository for ledger operations.

Every balance mutation is one read-modify-write on a single (account, asset)
row, loaded with a row lock where the dialect supports it, and leaves an
``AuditLog`` entry behind. Nothing here commits: the caller's session scope
decides whether the whole operation lands.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from starbit.errors import ConflictError, InsufficientBalance, ValidationError
from starbit.ledger.database import locking
from starbit.ledger.models import (
    AuditLog,
    AuditLogType,
    Balance,
    Cryptocurrency,
    Deposit,
    DepositStatus,
    OfferStatus,
    P2POffer,
    P2PTrade,
    PaymentMethod,
    TradeMessage,
    TradeStatus,
    User,
    Withdrawal,
    WithdrawalStatus,
)

ZERO = Decimal("0")


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # User operations
    async def get_or_create_user(
        self,
        external_id: str,
        username: Optional[str] = None,
    ) -> User:
        """Get existing user or create a new one."""
        user = await self.get_user_by_external_id(external_id)

        if user is None:
            user = User(external_id=external_id, username=username)
            self.session.add(user)
            await self.session.flush()
        elif username and user.username != username:
            user.username = username
            await self.session.flush()

        return user

    async def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        stmt = select(User).where(User.external_id == external_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.session.get(User, user_id)

    # Versioned transitions
    async def flush_transition(self, entity, label: str) -> None:
        """Flush a status change guarded by the entity's version column.

        The UPDATE carries ``WHERE version = <loaded version>``; if another
        transaction moved the row first, no row matches and SQLAlchemy raises
        ``StaleDataError``, reported here as ``ConflictError``.
        """
        entity_id = entity.id
        try:
            await self.session.flush()
        except StaleDataError:
            raise ConflictError(
                f"{label} {entity_id} was modified concurrently; reload and retry"
            ) from None

    # Balance reads
    async def get_balance(self, user_id: int, asset: str) -> Optional[Balance]:
        """Get user balance for a specific asset."""
        stmt = select(Balance).where(Balance.user_id == user_id, Balance.asset == asset.upper())
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_all_balances(self, user_id: int) -> list[Balance]:
        """Get all balances for a user."""
        stmt = select(Balance).where(Balance.user_id == user_id).order_by(Balance.asset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _balance_for_update(self, user_id: int, asset: str) -> Balance:
        """Load (or create) a balance row, row-locked for the rest of the transaction."""
        stmt = locking(
            self.session,
            select(Balance).where(Balance.user_id == user_id, Balance.asset == asset.upper()),
        )
        result = await self.session.execute(stmt)
        balance = result.scalar_one_or_none()
        if balance is None:
            balance = Balance(
                user_id=user_id, asset=asset.upper(), available=ZERO, locked=ZERO
            )
            self.session.add(balance)
            await self.session.flush()
        return balance

    # Balance mutations
    async def _apply(
        self,
        user_id: int,
        asset: str,
        log_type: AuditLogType,
        amount: Decimal,
        available_delta: Decimal,
        locked_delta: Decimal,
        reference_type: Optional[str],
        reference_id: Optional[int],
        actor: str,
    ) -> Balance:
        if amount <= 0:
            raise ValidationError(f"Ledger amount must be positive, got {amount}")

        balance = await self._balance_for_update(user_id, asset)
        available_before = balance.available
        locked_before = balance.locked
        available_after = available_before + available_delta
        locked_after = locked_before + locked_delta

        if available_after < 0:
            raise InsufficientBalance(
                f"Insufficient balance: have {available_before} {asset.upper()}, need {amount}"
            )
        if locked_after < 0:
            raise InsufficientBalance(
                f"Insufficient locked balance: have {locked_before} {asset.upper()}, need {amount}"
            )

        balance.available = available_after
        balance.locked = locked_after

        self.session.add(
            AuditLog(
                user_id=user_id,
                asset=asset.upper(),
                log_type=log_type,
                amount=amount,
                available_before=available_before,
                available_after=available_after,
                locked_before=locked_before,
                locked_after=locked_after,
                reference_type=reference_type,
                reference_id=reference_id,
                actor=actor,
            )
        )
        await self.session.flush()
        return balance

    async def credit(
        self,
        user_id: int,
        asset: str,
        amount: Decimal,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        actor: str = "system",
    ) -> Balance:
        """Add amount to available balance."""
        return await self._apply(
            user_id, asset, AuditLogType.CREDIT, amount, amount, ZERO,
            reference_type, reference_id, actor,
        )

    async def lock(
        self,
        user_id: int,
        asset: str,
        amount: Decimal,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        actor: str = "system",
    ) -> Balance:
        """Move amount from available to locked. Raises InsufficientBalance."""
        return await self._apply(
            user_id, asset, AuditLogType.LOCK, amount, -amount, amount,
            reference_type, reference_id, actor,
        )

    async def unlock(
        self,
        user_id: int,
        asset: str,
        amount: Decimal,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        actor: str = "system",
    ) -> Balance:
        """Return locked amount to available in full."""
        return await self._apply(
            user_id, asset, AuditLogType.UNLOCK, amount, amount, -amount,
            reference_type, reference_id, actor,
        )

    async def settle_locked(
        self,
        user_id: int,
        asset: str,
        amount: Decimal,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        actor: str = "system",
    ) -> Balance:
        """Remove locked funds permanently (paid out of the system)."""
        return await self._apply(
            user_id, asset, AuditLogType.SETTLE, amount, ZERO, -amount,
            reference_type, reference_id, actor,
        )

    async def transfer_locked(
        self,
        from_user_id: int,
        to_user_id: int,
        asset: str,
        amount: Decimal,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        actor: str = "system",
    ) -> tuple[Balance, Balance]:
        """Move locked funds of one account into another account's available."""
        source = await self._apply(
            from_user_id, asset, AuditLogType.TRANSFER_OUT, amount, ZERO, -amount,
            reference_type, reference_id, actor,
        )
        target = await self._apply(
            to_user_id, asset, AuditLogType.TRANSFER_IN, amount, amount, ZERO,
            reference_type, reference_id, actor,
        )
        return source, target

    # Audit log
    async def get_audit_logs_by_reference(
        self, reference_type: str, reference_id: int
    ) -> list[AuditLog]:
        """Get audit logs for a specific deposit, withdrawal or trade."""
        stmt = (
            select(AuditLog)
            .where(
                AuditLog.reference_type == reference_type,
                AuditLog.reference_id == reference_id,
            )
            .order_by(AuditLog.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_user_audit_logs(
        self, user_id: int, asset: Optional[str] = None, limit: int = 50
    ) -> list[AuditLog]:
        stmt = select(AuditLog).where(AuditLog.user_id == user_id)
        if asset:
            stmt = stmt.where(AuditLog.asset == asset.upper())
        stmt = stmt.order_by(AuditLog.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Deposit configuration
    async def get_cryptocurrency(self, crypto_id: int) -> Optional[Cryptocurrency]:
        return await self.session.get(Cryptocurrency, crypto_id)

    async def get_payment_method(self, method_id: int) -> Optional[PaymentMethod]:
        return await self.session.get(PaymentMethod, method_id)

    async def get_payment_method_fresh(
        self, method_id: int
    ) -> Optional[tuple[PaymentMethod, Cryptocurrency]]:
        """Load a method with its coin, bypassing anything cached in the session."""
        stmt = (
            select(PaymentMethod, Cryptocurrency)
            .join(Cryptocurrency, PaymentMethod.cryptocurrency_id == Cryptocurrency.id)
            .where(PaymentMethod.id == method_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.one_or_none()
        return (row[0], row[1]) if row else None

    async def list_payment_methods(
        self, active_only: bool = True
    ) -> list[tuple[PaymentMethod, Cryptocurrency]]:
        stmt = select(PaymentMethod, Cryptocurrency).join(
            Cryptocurrency, PaymentMethod.cryptocurrency_id == Cryptocurrency.id
        )
        if active_only:
            stmt = stmt.where(PaymentMethod.is_active.is_(True), Cryptocurrency.is_active.is_(True))
        stmt = stmt.order_by(Cryptocurrency.symbol, PaymentMethod.id)
        result = await self.session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    # Deposits
    async def get_deposit(self, deposit_id: int) -> Optional[Deposit]:
        return await self.session.get(Deposit, deposit_id)

    async def get_deposit_by_txid(self, tx_hash: str) -> Optional[Deposit]:
        """Get deposit by transaction hash (duplicate check)."""
        stmt = select(Deposit).where(Deposit.tx_hash == tx_hash)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_deposits(
        self,
        user_id: Optional[int] = None,
        status: Optional[DepositStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Deposit], int]:
        stmt = select(Deposit)
        count_stmt = select(func.count(Deposit.id))
        if user_id is not None:
            stmt = stmt.where(Deposit.user_id == user_id)
            count_stmt = count_stmt.where(Deposit.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Deposit.status == status)
            count_stmt = count_stmt.where(Deposit.status == status)
        stmt = stmt.order_by(Deposit.created_at.desc(), Deposit.id.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        total = await self.session.scalar(count_stmt) or 0
        return list(result.scalars().all()), total

    # Withdrawals
    async def get_withdrawal(self, withdrawal_id: int) -> Optional[Withdrawal]:
        return await self.session.get(Withdrawal, withdrawal_id)

    async def list_withdrawals(
        self,
        user_id: Optional[int] = None,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Withdrawal], int]:
        stmt = select(Withdrawal)
        count_stmt = select(func.count(Withdrawal.id))
        if user_id is not None:
            stmt = stmt.where(Withdrawal.user_id == user_id)
            count_stmt = count_stmt.where(Withdrawal.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Withdrawal.status == status)
            count_stmt = count_stmt.where(Withdrawal.status == status)
        stmt = (
            stmt.order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        total = await self.session.scalar(count_stmt) or 0
        return list(result.scalars().all()), total

    # P2P offers
    async def get_offer(self, offer_id: int) -> Optional[P2POffer]:
        return await self.session.get(P2POffer, offer_id)

    async def search_offers(
        self,
        coin: Optional[str] = None,
        search: Optional[str] = None,
        side: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[tuple[P2POffer, User]]:
        """Active offers with remaining capacity, best price first."""
        stmt = (
            select(P2POffer, User)
            .join(User, P2POffer.user_id == User.id)
            .where(P2POffer.status == OfferStatus.ACTIVE, P2POffer.available_amount > 0)
        )
        if coin:
            stmt = stmt.where(P2POffer.coin == coin.upper())
        if side:
            stmt = stmt.where(P2POffer.side == side)
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(
                func.lower(User.username).like(pattern)
                | func.lower(P2POffer.coin).like(pattern)
                | func.lower(P2POffer.payment_methods).like(pattern)
            )
        stmt = stmt.order_by(P2POffer.price, P2POffer.id).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    # P2P trades
    async def get_trade(self, trade_id: int) -> Optional[P2PTrade]:
        return await self.session.get(P2PTrade, trade_id)

    async def list_user_trades(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> list[P2PTrade]:
        stmt = (
            select(P2PTrade)
            .where((P2PTrade.buyer_id == user_id) | (P2PTrade.seller_id == user_id))
            .order_by(P2PTrade.created_at.desc(), P2PTrade.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_expired_pending_trades(self, now) -> list[P2PTrade]:
        stmt = (
            select(P2PTrade)
            .where(P2PTrade.status == TradeStatus.PENDING, P2PTrade.expires_at <= now)
            .order_by(P2PTrade.expires_at, P2PTrade.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Trade messages
    async def add_message(self, trade_id: int, sender_id: int, body: str) -> TradeMessage:
        message = TradeMessage(trade_id=trade_id, sender_id=sender_id, body=body)
        self.session.add(message)
        await self.session.flush()
        return message

    async def get_trade_messages(self, trade_id: int) -> list[TradeMessage]:
        """Messages of a trade in creation order, ties broken by id."""
        stmt = (
            select(TradeMessage)
            .where(TradeMessage.trade_id == trade_id)
            .order_by(TradeMessage.created_at, TradeMessage.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
