"""Deposit and payment-method contracts."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from starbit.contracts.common import ORMModel, UtcDatetime
from starbit.ledger.models import Cryptocurrency, DepositStatus, PaymentMethod, ProofType


class CryptocurrencyOut(ORMModel):
    id: int
    name: str
    symbol: str
    network: str
    required_confirmations: int
    is_active: bool


class PaymentMethodOut(BaseModel):
    """A deposit destination with its coin and current limits."""

    id: int
    cryptocurrency_id: int
    symbol: str
    name: str
    network: str
    wallet_address: str
    min_amount: Decimal
    max_amount: Optional[Decimal] = None
    required_confirmations: int
    is_active: bool

    @classmethod
    def from_row(cls, method: PaymentMethod, crypto: Cryptocurrency) -> "PaymentMethodOut":
        return cls(
            id=method.id,
            cryptocurrency_id=crypto.id,
            symbol=crypto.symbol,
            name=crypto.name,
            network=method.network,
            wallet_address=method.wallet_address,
            min_amount=method.min_amount,
            max_amount=method.max_amount,
            required_confirmations=crypto.required_confirmations,
            is_active=method.is_active and crypto.is_active,
        )


class DepositOut(ORMModel):
    id: int
    user_id: int
    payment_method_id: int
    asset: str
    network: str
    expected_amount: Decimal
    actual_amount: Optional[Decimal] = None
    credited_amount: Optional[Decimal] = None
    proof_type: ProofType
    tx_hash: Optional[str] = None
    proof_file: Optional[str] = None
    status: DepositStatus
    confirmations: int
    verification_error: Optional[str] = None
    verified_by: Optional[str] = None
    verified_at: Optional[UtcDatetime] = None
    created_at: UtcDatetime
    version: int


class DepositWebhookPayload(BaseModel):
    """Confirmation signal from the on-chain monitor."""

    deposit_id: int = Field(..., gt=0)
    confirmations: int = Field(..., ge=0, le=100000, description="Confirmations observed so far")
    received_amount: Optional[Decimal] = Field(
        None, gt=0, description="Amount actually received, once known"
    )


class ManualConfirmRequest(BaseModel):
    amount: Optional[Decimal] = Field(
        None, gt=0, description="Amount to credit (defaults to the declared amount)"
    )


class FailRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Reason cannot be blank")
        return v


class CryptocurrencyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    symbol: str = Field(..., min_length=1, max_length=20)
    network: str = Field(..., min_length=1, max_length=50)
    required_confirmations: int = Field(default=1, ge=0, le=1000)
    is_active: bool = True

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()


class CryptocurrencyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    required_confirmations: Optional[int] = Field(None, ge=0, le=1000)
    is_active: Optional[bool] = None


class PaymentMethodCreate(BaseModel):
    cryptocurrency_id: int
    wallet_address: str = Field(..., min_length=1, max_length=255)
    network: str = Field(..., min_length=1, max_length=50)
    min_amount: Decimal = Field(default=Decimal("0"), ge=0)
    max_amount: Optional[Decimal] = Field(None, gt=0)
    is_active: bool = True


class PaymentMethodUpdate(BaseModel):
    wallet_address: Optional[str] = Field(None, min_length=1, max_length=255)
    network: Optional[str] = Field(None, min_length=1, max_length=50)
    min_amount: Optional[Decimal] = Field(None, ge=0)
    max_amount: Optional[Decimal] = Field(None, gt=0)
    is_active: Optional[bool] = None
