"""Server-authoritative balances of the caller."""

from fastapi import APIRouter, Depends

from starbit.api.auth import Principal, get_current_principal
from starbit.contracts import BalanceOut, ok
from starbit.ledger.database import get_db
from starbit.ledger.repository import LedgerRepository

router = APIRouter()


@router.get("/balances")
async def list_balances(principal: Principal = Depends(get_current_principal)):
    """All balances of the caller. Clients must not trust a cached copy."""
    async with get_db() as session:
        repo = LedgerRepository(session)
        balances = await repo.get_all_balances(principal.user_id)
        return ok([BalanceOut.model_validate(b) for b in balances])
