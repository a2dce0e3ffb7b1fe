"""P2P offer, trade and chat contracts."""

import json
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from starbit.contracts.common import ORMModel, UtcDatetime
from starbit.ledger.models import OfferSide, OfferStatus, TradeStatus


class OfferCreate(BaseModel):
    side: OfferSide
    coin: str = Field(..., min_length=1, max_length=20)
    price: Decimal = Field(..., gt=0, description="USD per coin")
    available_amount: Decimal = Field(..., gt=0, description="Coin amount offered")
    min_limit: Decimal = Field(..., gt=0, description="Smallest trade in USD")
    max_limit: Decimal = Field(..., gt=0, description="Largest trade in USD")
    payment_methods: list[str] = Field(..., min_length=1)
    terms: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def check_limits(self) -> "OfferCreate":
        if self.min_limit > self.max_limit:
            raise ValueError("min_limit cannot exceed max_limit")
        return self


class OfferOut(ORMModel):
    id: int
    user_id: int
    username: Optional[str] = None
    side: OfferSide
    coin: str
    price: Decimal
    available_amount: Decimal
    min_limit: Decimal
    max_limit: Decimal
    payment_methods: list[str]
    terms: Optional[str] = None
    status: OfferStatus
    created_at: UtcDatetime
    version: int

    @field_validator("payment_methods", mode="before")
    @classmethod
    def decode_methods(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v else []
        return v


class TradeCreate(BaseModel):
    amount_usd: Decimal = Field(..., gt=0, description="Trade size in USD")


class TransitionRequest(BaseModel):
    """Optional optimistic version the client last saw."""

    version: Optional[int] = Field(None, ge=1)


class DisputeRequest(TransitionRequest):
    reason: Optional[str] = Field(None, max_length=2000)


class ResolveRequest(BaseModel):
    outcome: Literal["release", "refund"]


class MessageCreate(BaseModel):
    message: str = Field(..., min_length=1)


class TradeOut(ORMModel):
    id: int
    offer_id: int
    buyer_id: int
    seller_id: int
    coin: str
    price: Decimal
    amount_usd: Decimal
    crypto_amount: Decimal
    status: TradeStatus
    expires_at: UtcDatetime
    paid_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    cancelled_at: Optional[UtcDatetime] = None
    disputed_by: Optional[int] = None
    dispute_reason: Optional[str] = None
    resolution: Optional[str] = None
    created_at: UtcDatetime
    version: int


class MessageOut(ORMModel):
    id: int
    trade_id: int
    sender_id: int
    body: str
    created_at: UtcDatetime


class TradeDetail(BaseModel):
    """Polling payload: the trade and its complete, ordered chat history."""

    trade: TradeOut
    messages: list[MessageOut]
    poll_interval: int


def trade_payload(trade) -> dict:
    return TradeOut.model_validate(trade).model_dump(mode="json")


def message_payload(message) -> dict:
    return MessageOut.model_validate(message).model_dump(mode="json")
