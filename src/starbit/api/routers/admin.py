"""Admin API endpoints (admin role required).

Overrides that short-circuit the normal pipelines: manual deposit
confirmation, forced failure, withdrawal processing and cancellation, and
dispute resolution. Also the deposit-method configuration the deposit limits
are validated against.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, select

from starbit.api.auth import Principal, require_admin
from starbit.api.routes.p2p import get_hub, run_transition
from starbit.contracts import DepositOut, Page, PaymentMethodOut, WithdrawalOut, ok
from starbit.contracts.deposits import (
    CryptocurrencyCreate,
    CryptocurrencyOut,
    CryptocurrencyUpdate,
    FailRequest,
    ManualConfirmRequest,
    PaymentMethodCreate,
    PaymentMethodUpdate,
)
from starbit.contracts.p2p import ResolveRequest
from starbit.contracts.withdrawals import CancelRequest, ProcessRequest
from starbit.errors import NotFoundError, ValidationError
from starbit.ledger.database import get_db
from starbit.ledger.models import (
    Cryptocurrency,
    Deposit,
    DepositStatus,
    P2PTrade,
    PaymentMethod,
    TradeStatus,
    User,
    Withdrawal,
    WithdrawalStatus,
)
from starbit.ledger.repository import LedgerRepository
from starbit.services.deposits import DepositPipeline
from starbit.services.withdrawals import WithdrawalPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


@router.get("/stats")
async def get_stats(_: Principal = Depends(require_admin)):
    """Counts of the records that need attention."""
    async with get_db() as session:
        users = await session.scalar(select(func.count(User.id))) or 0
        pending_deposits = await session.scalar(
            select(func.count(Deposit.id)).where(
                Deposit.status.in_([DepositStatus.PENDING, DepositStatus.VERIFYING])
            )
        ) or 0
        mismatched_deposits = await session.scalar(
            select(func.count(Deposit.id)).where(Deposit.status == DepositStatus.MISMATCH)
        ) or 0
        pending_withdrawals = await session.scalar(
            select(func.count(Withdrawal.id)).where(Withdrawal.status == WithdrawalStatus.PENDING)
        ) or 0
        disputed_trades = await session.scalar(
            select(func.count(P2PTrade.id)).where(P2PTrade.status == TradeStatus.DISPUTED)
        ) or 0

        return ok(
            {
                "users": users,
                "pending_deposits": pending_deposits,
                "mismatched_deposits": mismatched_deposits,
                "pending_withdrawals": pending_withdrawals,
                "disputed_trades": disputed_trades,
            }
        )


# Deposits

@router.get("/deposits")
async def list_deposits(
    status: Optional[DepositStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _: Principal = Depends(require_admin),
):
    async with get_db() as session:
        repo = LedgerRepository(session)
        items, total = await repo.list_deposits(status=status, limit=limit, offset=offset)
        return ok(
            Page(
                items=[DepositOut.model_validate(d) for d in items],
                total=total,
                limit=limit,
                offset=offset,
            )
        )


@router.post("/deposits/{deposit_id}/manual-confirm")
async def manual_confirm_deposit(
    deposit_id: int,
    body: Optional[ManualConfirmRequest] = None,
    admin: Principal = Depends(require_admin),
):
    """Confirm and credit a deposit by hand. Repeating it is a no-op."""
    async with get_db() as session:
        deposit = await DepositPipeline(session).admin_manual_confirm(
            deposit_id, admin.actor, amount=body.amount if body else None
        )
        return ok(DepositOut.model_validate(deposit))


@router.post("/deposits/{deposit_id}/fail")
async def fail_deposit(
    deposit_id: int, body: FailRequest, admin: Principal = Depends(require_admin)
):
    async with get_db() as session:
        deposit = await DepositPipeline(session).admin_fail(deposit_id, admin.actor, body.reason)
        return ok(DepositOut.model_validate(deposit))


# Withdrawals

@router.get("/withdrawals")
async def list_withdrawals(
    status: Optional[WithdrawalStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _: Principal = Depends(require_admin),
):
    async with get_db() as session:
        repo = LedgerRepository(session)
        items, total = await repo.list_withdrawals(status=status, limit=limit, offset=offset)
        return ok(
            Page(
                items=[WithdrawalOut.model_validate(w) for w in items],
                total=total,
                limit=limit,
                offset=offset,
            )
        )


@router.get("/withdrawals/{withdrawal_id}")
async def get_withdrawal(withdrawal_id: int, _: Principal = Depends(require_admin)):
    async with get_db() as session:
        withdrawal = await WithdrawalPipeline(session).get(withdrawal_id)
        return ok(WithdrawalOut.model_validate(withdrawal))


@router.post("/withdrawals/{withdrawal_id}/process")
async def process_withdrawal(
    withdrawal_id: int,
    body: Optional[ProcessRequest] = None,
    admin: Principal = Depends(require_admin),
):
    async with get_db() as session:
        withdrawal = await WithdrawalPipeline(session).process(
            withdrawal_id, admin.actor, tx_hash=body.tx_hash if body else None
        )
        return ok(WithdrawalOut.model_validate(withdrawal))


@router.post("/withdrawals/{withdrawal_id}/cancel")
async def cancel_withdrawal(
    withdrawal_id: int,
    body: Optional[CancelRequest] = None,
    admin: Principal = Depends(require_admin),
):
    async with get_db() as session:
        withdrawal = await WithdrawalPipeline(session).cancel(
            withdrawal_id, admin.actor, reason=body.reason if body else None
        )
        return ok(WithdrawalOut.model_validate(withdrawal))


# P2P disputes

@router.post("/p2p/trades/{trade_id}/resolve")
async def resolve_dispute(
    trade_id: int,
    body: ResolveRequest,
    request: Request,
    admin: Principal = Depends(require_admin),
):
    """Release a disputed trade to the buyer or refund the seller."""
    return await run_transition(
        get_hub(request),
        trade_id,
        lambda engine: engine.resolve_dispute(trade_id, admin.actor, body.outcome),
    )


# Deposit configuration

@router.get("/cryptocurrencies")
async def list_cryptocurrencies(_: Principal = Depends(require_admin)):
    async with get_db() as session:
        result = await session.execute(select(Cryptocurrency).order_by(Cryptocurrency.symbol))
        return ok([CryptocurrencyOut.model_validate(c) for c in result.scalars().all()])


@router.post("/cryptocurrencies")
async def create_cryptocurrency(
    body: CryptocurrencyCreate, admin: Principal = Depends(require_admin)
):
    async with get_db() as session:
        crypto = Cryptocurrency(**body.model_dump())
        session.add(crypto)
        await session.flush()
        logger.info(f"Cryptocurrency {crypto.symbol} ({crypto.network}) added by {admin.actor}")
        return ok(CryptocurrencyOut.model_validate(crypto))


@router.patch("/cryptocurrencies/{crypto_id}")
async def update_cryptocurrency(
    crypto_id: int, body: CryptocurrencyUpdate, admin: Principal = Depends(require_admin)
):
    async with get_db() as session:
        crypto = await LedgerRepository(session).get_cryptocurrency(crypto_id)
        if crypto is None:
            raise NotFoundError(f"Cryptocurrency {crypto_id} not found")
        for field, value in body.model_dump(exclude_unset=True).items():
            setattr(crypto, field, value)
        await session.flush()
        logger.info(f"Cryptocurrency {crypto.symbol} updated by {admin.actor}")
        return ok(CryptocurrencyOut.model_validate(crypto))


@router.get("/payment-methods")
async def list_payment_methods(_: Principal = Depends(require_admin)):
    async with get_db() as session:
        rows = await LedgerRepository(session).list_payment_methods(active_only=False)
        return ok([PaymentMethodOut.from_row(method, crypto) for method, crypto in rows])


@router.post("/payment-methods")
async def create_payment_method(
    body: PaymentMethodCreate, admin: Principal = Depends(require_admin)
):
    if body.max_amount is not None and body.min_amount > body.max_amount:
        raise ValidationError("min_amount cannot exceed max_amount")
    async with get_db() as session:
        repo = LedgerRepository(session)
        crypto = await repo.get_cryptocurrency(body.cryptocurrency_id)
        if crypto is None:
            raise NotFoundError(f"Cryptocurrency {body.cryptocurrency_id} not found")
        method = PaymentMethod(**body.model_dump())
        session.add(method)
        await session.flush()
        logger.info(f"Payment method {method.id} ({crypto.symbol}/{method.network}) added by {admin.actor}")
        return ok(PaymentMethodOut.from_row(method, crypto))


@router.patch("/payment-methods/{method_id}")
async def update_payment_method(
    method_id: int, body: PaymentMethodUpdate, admin: Principal = Depends(require_admin)
):
    """Change limits or activation. New deposits are checked against the result at once."""
    async with get_db() as session:
        repo = LedgerRepository(session)
        found = await repo.get_payment_method_fresh(method_id)
        if found is None:
            raise NotFoundError(f"Payment method {method_id} not found")
        method, crypto = found
        for field, value in body.model_dump(exclude_unset=True).items():
            setattr(method, field, value)
        if method.max_amount is not None and method.min_amount > method.max_amount:
            raise ValidationError("min_amount cannot exceed max_amount")
        await session.flush()
        logger.info(f"Payment method {method.id} updated by {admin.actor}")
        return ok(PaymentMethodOut.from_row(method, crypto))
