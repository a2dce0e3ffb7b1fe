"""Withdrawal contracts."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from starbit.contracts.common import ORMModel, UtcDatetime
from starbit.ledger.models import WithdrawalStatus


class WithdrawalCreate(BaseModel):
    """Withdrawal request. ``amount`` is gross; the fee comes out of it."""

    amount: Decimal = Field(..., gt=0, description="Gross amount to withdraw")
    method: str = Field(..., min_length=1, max_length=50, description="crypto, bank_transfer, ...")
    wallet_address: Optional[str] = Field(None, max_length=255)
    network: Optional[str] = Field(None, max_length=50)
    details: Optional[str] = Field(None, max_length=2000, description="Off-chain payout details")


class FeeRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class FeeQuote(BaseModel):
    asset: str
    amount: Decimal
    fee_percent: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    processing_time: str


class ProcessRequest(BaseModel):
    tx_hash: Optional[str] = Field(None, max_length=255)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class WithdrawalOut(ORMModel):
    id: int
    reference: str
    user_id: int
    asset: str
    amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    method: str
    network: Optional[str] = None
    wallet_address: Optional[str] = None
    details: Optional[str] = None
    tx_hash: Optional[str] = None
    status: WithdrawalStatus
    cancel_reason: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[UtcDatetime] = None
    created_at: UtcDatetime
    version: int
