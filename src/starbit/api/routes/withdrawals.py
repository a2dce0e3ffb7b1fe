"""Withdrawal requests and history."""

from fastapi import APIRouter, Depends, Query

from starbit.api.auth import Principal, get_current_principal
from starbit.contracts import FeeQuote, Page, WithdrawalOut, ok
from starbit.contracts.withdrawals import FeeRequest, WithdrawalCreate
from starbit.errors import AuthorizationError
from starbit.ledger.database import get_db
from starbit.ledger.repository import LedgerRepository
from starbit.services.withdrawals import WithdrawalPipeline, quote_fee

router = APIRouter()


@router.post("/withdrawals/fee")
async def fee_preview(body: FeeRequest, principal: Principal = Depends(get_current_principal)):
    """Fee and net amount for a gross withdrawal amount."""
    return ok(FeeQuote(**quote_fee(body.amount)))


@router.post("/withdrawals")
async def request_withdrawal(
    body: WithdrawalCreate, principal: Principal = Depends(get_current_principal)
):
    """Lock the gross amount and queue the withdrawal for an admin."""
    async with get_db() as session:
        withdrawal = await WithdrawalPipeline(session).request(
            principal.user_id,
            body.amount,
            body.method,
            wallet_address=body.wallet_address,
            network=body.network,
            details=body.details,
        )
        return ok(WithdrawalOut.model_validate(withdrawal))


@router.get("/withdrawals")
async def withdrawal_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
):
    async with get_db() as session:
        repo = LedgerRepository(session)
        items, total = await repo.list_withdrawals(
            user_id=principal.user_id, limit=limit, offset=offset
        )
        return ok(
            Page(
                items=[WithdrawalOut.model_validate(w) for w in items],
                total=total,
                limit=limit,
                offset=offset,
            )
        )


@router.get("/withdrawals/{withdrawal_id}")
async def get_withdrawal(withdrawal_id: int, principal: Principal = Depends(get_current_principal)):
    async with get_db() as session:
        withdrawal = await WithdrawalPipeline(session).get(withdrawal_id)
        if withdrawal.user_id != principal.user_id and not principal.is_admin:
            raise AuthorizationError("Not your withdrawal")
        return ok(WithdrawalOut.model_validate(withdrawal))
