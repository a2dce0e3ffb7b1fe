"""Per-trade real-time channel.

Each trade has one channel, ``p2p.trade.{id}``, joined by its buyer, its
seller and admins. Members receive:

- ``here``: the current member list, sent only to a connection that just joined
- ``joining`` / ``leaving``: a member's first connection opened / last one closed
- ``message``: a chat message that is already committed
- ``trade.updated``: the trade after a status change

The hub is in-process. Connections are anything with an async
``send_json(data)`` (FastAPI's ``WebSocket`` in production).
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Protocol

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


def channel_name(trade_id: int) -> str:
    return f"p2p.trade.{trade_id}"


def parse_channel_name(name: str) -> int:
    """Trade id from ``p2p.trade.{id}``; ValueError for anything else."""
    prefix = "p2p.trade."
    if not name.startswith(prefix):
        raise ValueError(f"Unknown channel {name!r}")
    return int(name[len(prefix):])


class TradeChannelHub:
    """Routes presence and message events to the members of each trade channel."""

    def __init__(self):
        # channel -> user id -> open connections
        self._connections: dict[str, dict[int, set[Connection]]] = defaultdict(dict)
        # channel -> user id -> public member info
        self._members: dict[str, dict[int, dict]] = defaultdict(dict)
        self._send_locks: dict[str, asyncio.Lock] = {}
        # channel -> number of callers inside or waiting on sending()
        self._send_users: dict[str, int] = {}

    def members(self, trade_id: int) -> list[dict]:
        return list(self._members.get(channel_name(trade_id), {}).values())

    def connection_count(self, trade_id: int) -> int:
        return sum(len(c) for c in self._connections.get(channel_name(trade_id), {}).values())

    async def join(self, trade_id: int, connection: Connection, member: dict) -> None:
        """Register a connection. ``member`` must carry the user's ``id``."""
        name = channel_name(trade_id)
        user_id = member["id"]
        user_connections = self._connections[name].setdefault(user_id, set())
        first_connection = not user_connections
        user_connections.add(connection)
        self._members[name][user_id] = member

        here = {"event": "here", "channel": name, "data": self.members(trade_id)}
        try:
            await connection.send_json(here)
        except Exception as e:
            # Never announced, so removed without a leaving event.
            logger.warning(f"{name}: connection closed while joining ({e})")
            self._remove(name, connection)
            return
        if first_connection:
            await self._broadcast(
                name, {"event": "joining", "channel": name, "data": member}, exclude=connection
            )
        logger.debug(f"{name}: user {user_id} joined ({len(user_connections)} connection(s))")

    async def leave(self, trade_id: int, connection: Connection) -> None:
        """Drop a connection; announce ``leaving`` when it was the member's last."""
        name = channel_name(trade_id)
        await self._drop(name, connection)

    @asynccontextmanager
    async def sending(self, trade_id: int) -> AsyncIterator[None]:
        """Serialise persist-then-push for one channel.

        Hold it from before the message is written until after it is pushed,
        so the push order of a channel equals its commit order.
        """
        name = channel_name(trade_id)
        lock = self._send_locks.get(name)
        if lock is None:
            lock = self._send_locks[name] = asyncio.Lock()
        self._send_users[name] = self._send_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._send_users[name] -= 1
            if not self._send_users[name]:
                del self._send_users[name]
                del self._send_locks[name]

    async def publish_message(self, trade_id: int, message: dict) -> int:
        name = channel_name(trade_id)
        return await self._broadcast(name, {"event": "message", "channel": name, "data": message})

    async def publish_status(self, trade_id: int, trade: dict) -> int:
        name = channel_name(trade_id)
        return await self._broadcast(name, {"event": "trade.updated", "channel": name, "data": trade})

    async def _broadcast(self, name: str, event: dict, exclude: Optional[Connection] = None) -> int:
        """Send to every connection of a channel. Returns the number reached."""
        delivered = 0
        targets = [
            conn
            for conns in self._connections.get(name, {}).values()
            for conn in conns
            if conn is not exclude
        ]
        for connection in targets:
            if await self._send(name, connection, event):
                delivered += 1
        return delivered

    async def _send(self, name: str, connection: Connection, event: dict) -> bool:
        try:
            await connection.send_json(event)
            return True
        except Exception as e:
            logger.warning(f"{name}: dropping dead connection ({e})")
            await self._drop(name, connection)
            return False

    def _remove(self, name: str, connection: Connection) -> Optional[dict]:
        """Forget a connection. Returns the member when it was their last one."""
        connections = self._connections.get(name, {})
        for user_id, user_connections in list(connections.items()):
            if connection not in user_connections:
                continue
            user_connections.discard(connection)
            if user_connections:
                return None
            del connections[user_id]
            member = self._members[name].pop(user_id, {"id": user_id})
            logger.debug(f"{name}: user {user_id} left")
            if not connections:
                self._connections.pop(name, None)
                self._members.pop(name, None)
            return member
        return None

    async def _drop(self, name: str, connection: Connection) -> None:
        member = self._remove(name, connection)
        if member is not None and name in self._connections:
            await self._broadcast(name, {"event": "leaving", "channel": name, "data": member})
