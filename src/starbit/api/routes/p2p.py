"""P2P offers, trades and trade chat.

Status changes and chat messages are pushed on the trade's channel only after
the session has committed, inside the channel's send lock.
"""

from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Query, Request

from starbit.api.auth import Principal, get_current_principal
from starbit.config import get_settings
from starbit.contracts import MessageOut, OfferOut, TradeDetail, TradeOut, ok
from starbit.contracts.p2p import (
    DisputeRequest,
    MessageCreate,
    OfferCreate,
    TradeCreate,
    TransitionRequest,
    message_payload,
    trade_payload,
)
from starbit.ledger.database import get_db
from starbit.ledger.models import P2PTrade
from starbit.notifications.channel import TradeChannelHub
from starbit.services.p2p import EscrowEngine

router = APIRouter(prefix="/p2p")


def get_hub(request: Request) -> TradeChannelHub:
    return request.app.state.hub


async def run_transition(
    hub: TradeChannelHub,
    trade_id: int,
    operation: Callable[[EscrowEngine], Awaitable[P2PTrade]],
) -> dict:
    """Apply one trade transition, commit it, then push ``trade.updated``."""
    async with hub.sending(trade_id):
        async with get_db() as session:
            trade = await operation(EscrowEngine(session))
            payload = trade_payload(trade)
        await hub.publish_status(trade_id, payload)
    return ok(payload)


# Offers

@router.get("/offers")
async def list_offers(
    coin: Optional[str] = None,
    search: Optional[str] = None,
    side: Optional[str] = Query(None, pattern="^(buy|sell)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Active offers with capacity left, best price first."""
    async with get_db() as session:
        rows = await EscrowEngine(session).list_offers(
            coin=coin, search=search, side=side, limit=limit, offset=offset
        )
        return ok(
            [
                OfferOut.model_validate(offer).model_copy(update={"username": user.username})
                for offer, user in rows
            ]
        )


@router.post("/offers")
async def create_offer(body: OfferCreate, principal: Principal = Depends(get_current_principal)):
    async with get_db() as session:
        offer = await EscrowEngine(session).create_offer(
            principal.user_id,
            body.side,
            body.coin,
            body.price,
            body.available_amount,
            body.min_limit,
            body.max_limit,
            body.payment_methods,
            terms=body.terms,
        )
        return ok(OfferOut.model_validate(offer).model_copy(update={"username": principal.username}))


@router.post("/offers/{offer_id}/close")
async def close_offer(offer_id: int, principal: Principal = Depends(get_current_principal)):
    async with get_db() as session:
        offer = await EscrowEngine(session).close_offer(offer_id, principal.user_id)
        return ok(OfferOut.model_validate(offer))


@router.post("/offers/{offer_id}/trade")
async def open_trade(
    offer_id: int, body: TradeCreate, principal: Principal = Depends(get_current_principal)
):
    """Take an offer. The seller's crypto is locked until the trade ends."""
    async with get_db() as session:
        trade = await EscrowEngine(session).create_trade(
            offer_id, principal.user_id, body.amount_usd
        )
        return ok({"trade_id": trade.id, "trade": trade_payload(trade)})


# Trades

@router.get("/trades")
async def list_trades(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
):
    async with get_db() as session:
        trades = await EscrowEngine(session).list_trades(principal.user_id, limit=limit, offset=offset)
        return ok([TradeOut.model_validate(t) for t in trades])


@router.get("/trades/{trade_id}")
async def get_trade(trade_id: int, principal: Principal = Depends(get_current_principal)):
    """Trade and full chat history; the source of truth for polling clients."""
    async with get_db() as session:
        trade, messages = await EscrowEngine(session).get_trade_detail(
            trade_id, principal.user_id, is_admin=principal.is_admin
        )
        return ok(
            TradeDetail(
                trade=TradeOut.model_validate(trade),
                messages=[MessageOut.model_validate(m) for m in messages],
                poll_interval=get_settings().chat_poll_interval_seconds,
            )
        )


@router.post("/trades/{trade_id}/pay")
async def mark_paid(
    trade_id: int,
    body: Optional[TransitionRequest] = None,
    principal: Principal = Depends(get_current_principal),
    hub: TradeChannelHub = Depends(get_hub),
):
    version = body.version if body else None
    return await run_transition(
        hub, trade_id, lambda engine: engine.mark_paid(trade_id, principal.user_id, version)
    )


@router.post("/trades/{trade_id}/release")
async def release(
    trade_id: int,
    body: Optional[TransitionRequest] = None,
    principal: Principal = Depends(get_current_principal),
    hub: TradeChannelHub = Depends(get_hub),
):
    version = body.version if body else None
    return await run_transition(
        hub, trade_id, lambda engine: engine.release(trade_id, principal.user_id, version)
    )


@router.post("/trades/{trade_id}/dispute")
async def dispute(
    trade_id: int,
    body: Optional[DisputeRequest] = None,
    principal: Principal = Depends(get_current_principal),
    hub: TradeChannelHub = Depends(get_hub),
):
    body = body or DisputeRequest()
    return await run_transition(
        hub,
        trade_id,
        lambda engine: engine.dispute(trade_id, principal.user_id, body.reason, body.version),
    )


@router.post("/trades/{trade_id}/messages")
async def post_message(
    trade_id: int,
    body: MessageCreate,
    principal: Principal = Depends(get_current_principal),
    hub: TradeChannelHub = Depends(get_hub),
):
    """Persist a chat message, then push it to the channel."""
    async with hub.sending(trade_id):
        async with get_db() as session:
            message = await EscrowEngine(session).post_message(
                trade_id, principal.user_id, body.message, is_admin=principal.is_admin
            )
            payload = message_payload(message)
        await hub.publish_message(trade_id, payload)
    return ok(payload)
