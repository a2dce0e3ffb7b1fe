"""Background sweep that cancels pending P2P trades past their expiry."""

import asyncio
import logging
from typing import Optional

from starbit.config import get_settings
from starbit.contracts.p2p import trade_payload
from starbit.errors import ConflictError
from starbit.ledger.database import get_db
from starbit.notifications.channel import TradeChannelHub
from starbit.services.p2p import EscrowEngine

logger = logging.getLogger(__name__)


class TradeExpirySweeper:
    """Runs ``EscrowEngine.cancel_expired`` on a fixed interval."""

    def __init__(self, hub: Optional[TradeChannelHub] = None, interval: Optional[int] = None):
        self.hub = hub
        self.interval = interval if interval is not None else get_settings().p2p_expiry_sweep_interval
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> int:
        """Run a single sweep in its own transaction.

        Returns:
            Number of trades cancelled
        """
        async with get_db() as session:
            trades = await EscrowEngine(session).cancel_expired()
            payloads = [(trade.id, trade_payload(trade)) for trade in trades]

        if self.hub is not None:
            for trade_id, payload in payloads:
                await self.hub.publish_status(trade_id, payload)
        return len(payloads)

    async def run(self) -> None:
        """Run the sweep loop until cancelled."""
        logger.info(f"Starting trade expiry sweeper (interval: {self.interval}s)")
        while True:
            try:
                await self.sweep_once()
            except ConflictError as e:
                # A party acted on a trade mid-sweep; the next pass picks up the rest
                logger.warning(f"Expiry sweep lost a race: {e.message}")
            except Exception as e:
                logger.error(f"Expiry sweep error: {e}")

            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.interval <= 0:
            logger.info("Trade expiry sweeper disabled")
            return
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Trade expiry sweeper stopped")
