"""Balance contracts."""

from decimal import Decimal

from pydantic import Field

from starbit.contracts.common import ORMModel, UtcDatetime


class BalanceOut(ORMModel):
    """Server-authoritative balance of one asset."""

    asset: str = Field(..., description="Asset symbol (BTC, USDT, USD, ...)")
    available: Decimal = Field(..., description="Spendable amount")
    locked: Decimal = Field(..., description="Held by open withdrawals or escrow")
    total: Decimal
    updated_at: UtcDatetime
