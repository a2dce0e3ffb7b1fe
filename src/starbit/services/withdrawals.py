"""Withdrawal processing pipeline.

The gross amount is locked the moment a withdrawal is requested. An admin then
either processes it (locked funds leave the system) or cancels it (locked
funds return to available in full, no fee kept).
"""

import logging
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from starbit.config import Settings, get_settings
from starbit.errors import InvalidStateError, NotFoundError, ValidationError
from starbit.ledger.models import Withdrawal, WithdrawalStatus, utcnow
from starbit.ledger.repository import LedgerRepository
from starbit.ledger.states import WithdrawalAction, withdrawal_transition
from starbit.utils.locks import hold_account_locks

logger = logging.getLogger(__name__)

REFERENCE_TYPE = "withdrawal"
CENTS = Decimal("0.01")

CRYPTO_METHOD = "crypto"

# ETH, BTC legacy, BTC bech32 and TRON address formats
WALLET_ADDRESS_PATTERNS = (
    re.compile(r"^0x[a-fA-F0-9]{40}$"),
    re.compile(r"^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$"),
    re.compile(r"^bc1[a-zA-HJ-NP-Z0-9]{39,59}$"),
    re.compile(r"^T[a-zA-HJ-NP-Z0-9]{33}$"),
)


def is_valid_wallet_address(address: Optional[str]) -> bool:
    address = (address or "").strip()
    return any(pattern.match(address) for pattern in WALLET_ADDRESS_PATTERNS)


def quote_fee(amount: Decimal, settings: Optional[Settings] = None) -> dict:
    """Fee breakdown for a gross amount. The fee is rounded to cents."""
    settings = settings or get_settings()
    if amount is None or amount <= 0:
        raise ValidationError("Withdrawal amount must be positive")
    fee_percent = settings.withdrawal_fee_percent
    fee = (amount * fee_percent / Decimal("100")).quantize(CENTS, rounding=ROUND_HALF_UP)
    return {
        "asset": settings.withdrawal_asset.upper(),
        "amount": amount,
        "fee_percent": fee_percent,
        "fee_amount": fee,
        "net_amount": amount - fee,
        "processing_time": settings.withdrawal_processing_time,
    }


class WithdrawalPipeline:
    """Withdrawal state machine on top of the ledger."""

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.repo = LedgerRepository(session)
        self.settings = settings or get_settings()

    @property
    def asset(self) -> str:
        return self.settings.withdrawal_asset.upper()

    async def get(self, withdrawal_id: int) -> Withdrawal:
        withdrawal = await self.repo.get_withdrawal(withdrawal_id)
        if withdrawal is None:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    async def request(
        self,
        user_id: int,
        gross_amount: Decimal,
        method: str,
        wallet_address: Optional[str] = None,
        network: Optional[str] = None,
        details: Optional[str] = None,
    ) -> Withdrawal:
        """Lock ``gross_amount`` and record a pending withdrawal.

        Raises:
            ValidationError: amount outside limits or destination incomplete
            InsufficientBalance: available balance does not cover the amount
        """
        if gross_amount is None or gross_amount <= 0:
            raise ValidationError("Withdrawal amount must be positive")
        if gross_amount < self.settings.withdrawal_min_amount:
            raise ValidationError(
                f"Minimum withdrawal is {self.settings.withdrawal_min_amount} {self.asset}"
            )
        if gross_amount > self.settings.withdrawal_max_amount:
            raise ValidationError(
                f"Maximum withdrawal is {self.settings.withdrawal_max_amount} {self.asset}"
            )

        method = (method or "").strip().lower()
        if not method:
            raise ValidationError("Withdrawal method is required")
        wallet_address = wallet_address.strip() if wallet_address else None
        if method == CRYPTO_METHOD and not wallet_address:
            raise ValidationError("Wallet address is required for crypto withdrawals")
        if method == CRYPTO_METHOD and not is_valid_wallet_address(wallet_address):
            raise ValidationError("Invalid wallet address format")
        if method != CRYPTO_METHOD and not (details and details.strip()):
            raise ValidationError(f"Payout details are required for {method} withdrawals")

        quote = quote_fee(gross_amount, self.settings)

        await hold_account_locks(self.session, user_id, operation="withdrawal_request")

        withdrawal = Withdrawal(
            user_id=user_id,
            asset=self.asset,
            amount=gross_amount,
            fee_amount=quote["fee_amount"],
            net_amount=quote["net_amount"],
            method=method,
            network=network,
            wallet_address=wallet_address,
            details=details,
            status=WithdrawalStatus.PENDING,
        )
        self.session.add(withdrawal)
        await self.session.flush()

        # Raises InsufficientBalance; the session rollback discards the row too
        await self.repo.lock(
            user_id,
            self.asset,
            gross_amount,
            reference_type=REFERENCE_TYPE,
            reference_id=withdrawal.id,
        )

        logger.info(
            f"Withdrawal {withdrawal.reference} requested by user {user_id}: "
            f"{gross_amount} {self.asset} (fee {withdrawal.fee_amount}) via {method}"
        )
        return withdrawal

    async def process(
        self, withdrawal_id: int, admin: str, tx_hash: Optional[str] = None
    ) -> Withdrawal:
        """Complete a pending withdrawal and remove its locked funds."""
        withdrawal = await self.get(withdrawal_id)
        self._move(withdrawal, WithdrawalAction.PROCESS, admin)
        withdrawal.tx_hash = tx_hash.strip() if tx_hash else None
        withdrawal.processed_by = admin
        withdrawal.processed_at = utcnow()

        await hold_account_locks(self.session, withdrawal.user_id, operation="withdrawal_process")
        await self.repo.flush_transition(withdrawal, "Withdrawal")
        await self.repo.settle_locked(
            withdrawal.user_id,
            withdrawal.asset,
            withdrawal.amount,
            reference_type=REFERENCE_TYPE,
            reference_id=withdrawal.id,
            actor=admin,
        )
        return withdrawal

    async def cancel(
        self, withdrawal_id: int, admin: str, reason: Optional[str] = None
    ) -> Withdrawal:
        """Cancel a pending withdrawal and refund the gross amount."""
        withdrawal = await self.get(withdrawal_id)
        self._move(withdrawal, WithdrawalAction.CANCEL, admin)
        withdrawal.cancel_reason = reason
        withdrawal.processed_by = admin
        withdrawal.processed_at = utcnow()

        await hold_account_locks(self.session, withdrawal.user_id, operation="withdrawal_cancel")
        await self.repo.flush_transition(withdrawal, "Withdrawal")
        await self.repo.unlock(
            withdrawal.user_id,
            withdrawal.asset,
            withdrawal.amount,
            reference_type=REFERENCE_TYPE,
            reference_id=withdrawal.id,
            actor=admin,
        )
        return withdrawal

    def _move(self, withdrawal: Withdrawal, action: WithdrawalAction, admin: str) -> None:
        previous = WithdrawalStatus(withdrawal.status)
        try:
            withdrawal.status = withdrawal_transition(previous, action)
        except InvalidStateError:
            logger.warning(
                f"Withdrawal {withdrawal.reference}: {admin} tried {action.value} in {previous.value}"
            )
            raise
        logger.info(
            f"Withdrawal {withdrawal.reference}: {previous.value} -> "
            f"{WithdrawalStatus(withdrawal.status).value} by {admin}"
        )
