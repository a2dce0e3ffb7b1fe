"""Deposit verification pipeline.

A deposit is a user's claim that funds were sent to one of the configured
payment methods. It starts ``pending``, moves to ``verifying`` once the
on-chain monitor reports confirmations and ends in exactly one of
``confirmed`` (ledger credited once), ``failed`` or ``mismatch``.
"""

import hashlib
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from starbit.config import Settings, get_settings
from starbit.errors import (
    InvalidStateError,
    MethodInactiveError,
    NotFoundError,
    ValidationError,
)
from starbit.ledger.models import Deposit, DepositStatus, ProofType, utcnow
from starbit.ledger.repository import LedgerRepository
from starbit.ledger.states import DEPOSIT_TERMINAL, DepositAction, deposit_transition
from starbit.utils.locks import hold_account_locks

logger = logging.getLogger(__name__)

REFERENCE_TYPE = "deposit"


def file_proof_reference(filename: str, content: bytes) -> str:
    """Reference recorded for an uploaded proof image (bytes are not stored)."""
    digest = hashlib.sha256(content).hexdigest()
    return f"sha256:{digest}:{filename}"


def within_tolerance(expected: Decimal, received: Decimal, tolerance: Decimal) -> bool:
    """True when ``received`` is within ``tolerance`` (relative) of ``expected``."""
    return abs(received - expected) <= expected * tolerance


class DepositPipeline:
    """Deposit state machine on top of the ledger."""

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.repo = LedgerRepository(session)
        self.settings = settings or get_settings()

    async def get(self, deposit_id: int) -> Deposit:
        deposit = await self.repo.get_deposit(deposit_id)
        if deposit is None:
            raise NotFoundError(f"Deposit {deposit_id} not found")
        return deposit

    async def submit(
        self,
        user_id: int,
        method_id: int,
        declared_amount: Decimal,
        proof_type: ProofType,
        tx_hash: Optional[str] = None,
        proof_file: Optional[str] = None,
    ) -> Deposit:
        """Record a deposit claim in ``pending``.

        Limits are checked against the method as currently stored, never a
        copy the client may have cached.
        """
        proof_type = ProofType(proof_type)
        tx_hash = tx_hash.strip() if tx_hash else None
        if proof_type == ProofType.HASH:
            if not tx_hash:
                raise ValidationError("Transaction hash is required for hash proofs")
            if proof_file:
                raise ValidationError("Provide either a transaction hash or a proof file, not both")
        else:
            if not proof_file:
                raise ValidationError("Proof file is required for file proofs")
            if tx_hash:
                raise ValidationError("Provide either a transaction hash or a proof file, not both")

        if declared_amount is None or declared_amount <= 0:
            raise ValidationError("Deposit amount must be positive")

        found = await self.repo.get_payment_method_fresh(method_id)
        if found is None:
            raise NotFoundError(f"Payment method {method_id} not found")
        method, crypto = found

        if not method.is_active or not crypto.is_active:
            raise MethodInactiveError(
                f"Deposits via {crypto.symbol} ({method.network}) are currently disabled"
            )
        if declared_amount < method.min_amount:
            raise ValidationError(
                f"Minimum deposit is {method.min_amount} {crypto.symbol}"
            )
        if method.max_amount is not None and declared_amount > method.max_amount:
            raise ValidationError(
                f"Maximum deposit is {method.max_amount} {crypto.symbol}"
            )

        if tx_hash and await self.repo.get_deposit_by_txid(tx_hash):
            raise ValidationError("This transaction hash was already submitted")

        deposit = Deposit(
            user_id=user_id,
            payment_method_id=method.id,
            asset=crypto.symbol.upper(),
            network=method.network,
            expected_amount=declared_amount,
            proof_type=proof_type,
            tx_hash=tx_hash,
            proof_file=proof_file,
            status=DepositStatus.PENDING,
            confirmations=0,
        )
        self.session.add(deposit)
        await self.session.flush()

        logger.info(
            f"Deposit {deposit.id} submitted: {declared_amount} {deposit.asset} "
            f"by user {user_id} ({proof_type.value} proof)"
        )
        return deposit

    async def advance(
        self,
        deposit_id: int,
        confirmations: int,
        received_amount: Optional[Decimal] = None,
    ) -> Deposit:
        """Apply an external confirmation signal.

        Confirmation counts only grow. Once the coin's required count is met
        the received amount decides between ``confirmed`` and ``mismatch``.
        Signals for a deposit that already reached a terminal status are
        ignored and the deposit is returned unchanged.
        """
        if confirmations < 0:
            raise ValidationError("Confirmations cannot be negative")
        if received_amount is not None and received_amount <= 0:
            raise ValidationError("Received amount must be positive")

        deposit = await self.get(deposit_id)
        status = DepositStatus(deposit.status)
        if status in DEPOSIT_TERMINAL:
            logger.info(f"Deposit {deposit.id} already {status.value}; signal ignored")
            return deposit

        found = await self.repo.get_payment_method_fresh(deposit.payment_method_id)
        required = found[1].required_confirmations if found else 1

        if confirmations > deposit.confirmations:
            deposit.confirmations = confirmations
        if received_amount is not None:
            deposit.actual_amount = received_amount

        if status == DepositStatus.PENDING and (
            deposit.confirmations > 0 or deposit.confirmations >= required
        ):
            status = self._move(deposit, DepositAction.CONFIRMATION)

        credit_amount = None
        if status == DepositStatus.VERIFYING and deposit.confirmations >= required:
            if deposit.actual_amount is None:
                logger.info(
                    f"Deposit {deposit.id} has {deposit.confirmations}/{required} "
                    "confirmations but no received amount yet"
                )
            elif within_tolerance(
                deposit.expected_amount,
                deposit.actual_amount,
                self.settings.deposit_amount_tolerance,
            ):
                status = self._move(deposit, DepositAction.VERIFY)
                deposit.credited_amount = deposit.actual_amount
                deposit.verified_at = utcnow()
                deposit.verified_by = "system"
                credit_amount = deposit.actual_amount
            else:
                status = self._move(deposit, DepositAction.REJECT_AMOUNT)
                deposit.verification_error = (
                    f"Received {deposit.actual_amount} {deposit.asset}, "
                    f"expected {deposit.expected_amount} {deposit.asset}"
                )
                logger.warning(f"Deposit {deposit.id} amount mismatch: {deposit.verification_error}")

        if credit_amount is not None:
            await hold_account_locks(self.session, deposit.user_id, operation="deposit_credit")
        await self.repo.flush_transition(deposit, "Deposit")

        if credit_amount is not None:
            await self.repo.credit(
                deposit.user_id,
                deposit.asset,
                credit_amount,
                reference_type=REFERENCE_TYPE,
                reference_id=deposit.id,
            )
            logger.info(f"Deposit {deposit.id} credited {credit_amount} {deposit.asset}")

        return deposit

    async def admin_manual_confirm(
        self,
        deposit_id: int,
        admin: str,
        amount: Optional[Decimal] = None,
    ) -> Deposit:
        """Confirm a deposit by hand and credit it.

        Credits ``amount`` if given, else the expected amount. Calling it on
        a deposit that is already confirmed is a no-op.
        """
        if amount is not None and amount <= 0:
            raise ValidationError("Credit amount must be positive")

        deposit = await self.get(deposit_id)
        if DepositStatus(deposit.status) == DepositStatus.CONFIRMED:
            logger.info(f"Deposit {deposit.id} already confirmed; manual confirm is a no-op")
            return deposit

        self._move(deposit, DepositAction.MANUAL_CONFIRM)
        credit_amount = amount if amount is not None else deposit.expected_amount
        deposit.credited_amount = credit_amount
        deposit.verified_at = utcnow()
        deposit.verified_by = admin
        deposit.verification_error = None

        await hold_account_locks(self.session, deposit.user_id, operation="deposit_manual_confirm")
        await self.repo.flush_transition(deposit, "Deposit")
        await self.repo.credit(
            deposit.user_id,
            deposit.asset,
            credit_amount,
            reference_type=REFERENCE_TYPE,
            reference_id=deposit.id,
            actor=admin,
        )

        logger.info(f"Deposit {deposit.id} manually confirmed by {admin}: {credit_amount} {deposit.asset}")
        return deposit

    async def admin_fail(self, deposit_id: int, admin: str, reason: str) -> Deposit:
        """Reject a deposit. No ledger effect."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to fail a deposit")

        deposit = await self.get(deposit_id)
        self._move(deposit, DepositAction.FAIL)
        deposit.verification_error = reason
        deposit.verified_by = admin
        deposit.verified_at = utcnow()
        await self.repo.flush_transition(deposit, "Deposit")

        logger.info(f"Deposit {deposit.id} failed by {admin}: {reason}")
        return deposit

    def _move(self, deposit: Deposit, action: DepositAction) -> DepositStatus:
        previous = DepositStatus(deposit.status)
        try:
            new_status = deposit_transition(previous, action)
        except InvalidStateError:
            logger.warning(f"Deposit {deposit.id}: rejected {action.value} in {previous.value}")
            raise
        deposit.status = new_status
        logger.info(f"Deposit {deposit.id}: {previous.value} -> {new_status.value}")
        return new_status
