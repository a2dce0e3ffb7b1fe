"""WebSocket endpoint for trade channels (``p2p.trade.{id}``)."""

import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from starbit.api.auth import authenticate
from starbit.errors import EngineError
from starbit.ledger.database import get_db
from starbit.services.p2p import EscrowEngine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/p2p.trade.{trade_id}")
async def trade_channel(websocket: WebSocket, trade_id: int, token: Optional[str] = None):
    """Join a trade channel as its buyer, its seller or an admin.

    Browsers cannot set headers on WebSocket requests, so the bearer token
    travels as the ``token`` query parameter.
    """
    hub = websocket.app.state.hub
    try:
        principal = await authenticate(token)
        async with get_db() as session:
            await EscrowEngine(session).get_trade_detail(
                trade_id, principal.user_id, is_admin=principal.is_admin
            )
    except EngineError as e:
        logger.info(f"Channel p2p.trade.{trade_id} refused: {e.message}")
        # Close codes only reach the client on an accepted socket.
        await websocket.accept()
        await websocket.close(code=4000 + e.status_code, reason=e.message)
        return

    await websocket.accept()
    await hub.join(trade_id, websocket, principal.member_info())
    logger.info(f"User {principal.user_id} connected to p2p.trade.{trade_id}")

    try:
        while True:
            text = await websocket.receive_text()
            if text.strip().lower() == "ping":
                await websocket.send_json({"event": "pong"})
    except WebSocketDisconnect:
        logger.info(f"User {principal.user_id} disconnected from p2p.trade.{trade_id}")
    finally:
        await hub.leave(trade_id, websocket)
