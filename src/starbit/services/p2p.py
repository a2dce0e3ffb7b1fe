"""P2P escrow engine.

Offers are standing quotes; a trade taken against an offer locks the seller's
crypto for the life of the trade::

    pending --mark_paid--> paid --release--> completed
    pending|paid --dispute--> disputed --resolve--> completed|cancelled
    pending --expiry--> cancelled

Every transition writes through the trade's version column, so of two requests
that loaded the same version only the first lands; the other gets
``ConflictError``. Callers may also pass the version they last saw.
"""

import json
import logging
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from starbit.config import Settings, get_settings
from starbit.errors import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from starbit.ledger.models import (
    OfferSide,
    OfferStatus,
    P2POffer,
    P2PTrade,
    TradeMessage,
    TradeStatus,
    User,
    as_utc,
    utcnow,
)
from starbit.ledger.repository import LedgerRepository
from starbit.ledger.states import TradeAction, trade_transition
from starbit.utils.locks import hold_account_locks

logger = logging.getLogger(__name__)

REFERENCE_TYPE = "p2p_trade"


class ResolveOutcome:
    RELEASE = "release"
    REFUND = "refund"

    ALL = (RELEASE, REFUND)


class EscrowEngine:
    """Offers, trades and trade chat for one session."""

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.repo = LedgerRepository(session)
        self.settings = settings or get_settings()

    @property
    def crypto_quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.settings.p2p_crypto_decimals)

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    async def create_offer(
        self,
        user_id: int,
        side: OfferSide,
        coin: str,
        price: Decimal,
        available_amount: Decimal,
        min_limit: Decimal,
        max_limit: Decimal,
        payment_methods: list[str],
        terms: Optional[str] = None,
    ) -> P2POffer:
        side = OfferSide(side)
        coin = (coin or "").strip().upper()
        if not coin:
            raise ValidationError("Coin is required")
        if price <= 0:
            raise ValidationError("Price must be positive")
        if available_amount <= 0:
            raise ValidationError("Available amount must be positive")
        if min_limit <= 0 or max_limit <= 0:
            raise ValidationError("Trade limits must be positive")
        if min_limit > max_limit:
            raise ValidationError("Minimum limit cannot exceed maximum limit")
        methods = [m.strip() for m in payment_methods or [] if m and m.strip()]
        if not methods:
            raise ValidationError("At least one payment method is required")

        offer = P2POffer(
            user_id=user_id,
            side=side,
            coin=coin,
            price=price,
            available_amount=available_amount,
            min_limit=min_limit,
            max_limit=max_limit,
            payment_methods=json.dumps(methods),
            terms=terms,
            status=OfferStatus.ACTIVE,
        )
        self.session.add(offer)
        await self.session.flush()

        logger.info(
            f"Offer {offer.id} created by user {user_id}: {side.value} {available_amount} {coin} @ {price}"
        )
        return offer

    async def get_offer(self, offer_id: int) -> P2POffer:
        offer = await self.repo.get_offer(offer_id)
        if offer is None:
            raise NotFoundError(f"Offer {offer_id} not found")
        return offer

    async def close_offer(self, offer_id: int, user_id: int) -> P2POffer:
        """Withdraw an offer from the book. Open trades on it carry on."""
        offer = await self.get_offer(offer_id)
        if offer.user_id != user_id:
            raise AuthorizationError("Only the offer's owner can close it")
        if OfferStatus(offer.status) != OfferStatus.ACTIVE:
            raise InvalidStateError(f"Offer {offer.id} is already closed")
        offer.status = OfferStatus.CLOSED
        await self.repo.flush_transition(offer, "Offer")
        logger.info(f"Offer {offer.id} closed by user {user_id}")
        return offer

    async def list_offers(
        self,
        coin: Optional[str] = None,
        search: Optional[str] = None,
        side: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[tuple[P2POffer, User]]:
        if side:
            side = OfferSide(side).value
        return await self.repo.search_offers(
            coin=coin, search=search, side=side, limit=limit, offset=offset
        )

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def get_trade(self, trade_id: int) -> P2PTrade:
        trade = await self.repo.get_trade(trade_id)
        if trade is None:
            raise NotFoundError(f"Trade {trade_id} not found")
        return trade

    async def create_trade(self, offer_id: int, taker_id: int, amount_usd: Decimal) -> P2PTrade:
        """Open a trade against an offer and lock the seller's crypto.

        Raises:
            ValidationError: amount outside the offer's limits or capacity
            InsufficientBalance: seller cannot cover the escrow
            ConflictError: the offer changed underneath this request
        """
        offer = await self.get_offer(offer_id)
        if OfferStatus(offer.status) != OfferStatus.ACTIVE:
            raise InvalidStateError(f"Offer {offer.id} is closed")
        if offer.user_id == taker_id:
            raise ValidationError("You cannot trade on your own offer")
        if amount_usd is None or amount_usd <= 0:
            raise ValidationError("Trade amount must be positive")
        if amount_usd < offer.min_limit or amount_usd > offer.max_limit:
            raise ValidationError(
                f"Trade amount must be between {offer.min_limit} and {offer.max_limit} USD"
            )

        crypto_amount = (amount_usd / offer.price).quantize(self.crypto_quantum, rounding=ROUND_DOWN)
        if crypto_amount <= 0:
            raise ValidationError("Trade amount is too small for this price")
        if crypto_amount > offer.available_amount:
            raise ValidationError(
                f"Offer has only {offer.available_amount} {offer.coin} available"
            )

        if OfferSide(offer.side) == OfferSide.SELL:
            seller_id, buyer_id = offer.user_id, taker_id
        else:
            seller_id, buyer_id = taker_id, offer.user_id

        await hold_account_locks(self.session, seller_id, operation="p2p_escrow_lock")

        offer.available_amount = offer.available_amount - crypto_amount
        await self.repo.flush_transition(offer, "Offer")

        now = utcnow()
        trade = P2PTrade(
            offer_id=offer.id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            coin=offer.coin,
            price=offer.price,
            amount_usd=amount_usd,
            crypto_amount=crypto_amount,
            status=TradeStatus.PENDING,
            expires_at=now + timedelta(minutes=self.settings.p2p_trade_expiry_minutes),
            created_at=now,
        )
        self.session.add(trade)
        await self.session.flush()

        await self.repo.lock(
            seller_id,
            trade.coin,
            crypto_amount,
            reference_type=REFERENCE_TYPE,
            reference_id=trade.id,
        )

        logger.info(
            f"Trade {trade.id} opened on offer {offer.id}: buyer {buyer_id}, seller {seller_id}, "
            f"{amount_usd} USD = {crypto_amount} {trade.coin}"
        )
        return trade

    async def mark_paid(
        self, trade_id: int, actor_id: int, expected_version: Optional[int] = None
    ) -> P2PTrade:
        """Buyer declares the off-platform payment sent.

        Repeating the call once the trade is ``paid`` returns it unchanged.
        """
        trade = await self.get_trade(trade_id)
        if trade.buyer_id != actor_id:
            raise AuthorizationError("Only the buyer can mark a trade as paid")
        if TradeStatus(trade.status) == TradeStatus.PAID:
            return trade

        new_status = self._next(trade, TradeAction.MARK_PAID, actor_id)
        self._check_version(trade, expected_version)
        now = utcnow()
        if as_utc(trade.expires_at) <= now:
            raise InvalidStateError(f"Trade {trade.id} has expired")

        trade.status = new_status
        trade.paid_at = now
        await self.repo.flush_transition(trade, "Trade")
        self._log_transition(trade, TradeStatus.PENDING, actor_id)
        return trade

    async def release(
        self, trade_id: int, actor_id: int, expected_version: Optional[int] = None
    ) -> P2PTrade:
        """Seller releases escrow: seller locked -> buyer available, atomically."""
        trade = await self.get_trade(trade_id)
        if trade.seller_id != actor_id:
            raise AuthorizationError("Only the seller can release a trade")
        previous = TradeStatus(trade.status)
        new_status = self._next(trade, TradeAction.RELEASE, actor_id)
        self._check_version(trade, expected_version)

        await hold_account_locks(
            self.session, trade.buyer_id, trade.seller_id, operation="p2p_release"
        )
        trade.status = new_status
        trade.completed_at = utcnow()
        await self.repo.flush_transition(trade, "Trade")
        await self.repo.transfer_locked(
            trade.seller_id,
            trade.buyer_id,
            trade.coin,
            trade.crypto_amount,
            reference_type=REFERENCE_TYPE,
            reference_id=trade.id,
        )
        self._log_transition(trade, previous, actor_id)
        return trade

    async def dispute(
        self,
        trade_id: int,
        actor_id: int,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> P2PTrade:
        """Either party freezes the trade for admin resolution."""
        trade = await self.get_trade(trade_id)
        if trade.party_role(actor_id) is None:
            raise AuthorizationError("Only a trade participant can open a dispute")
        previous = TradeStatus(trade.status)
        new_status = self._next(trade, TradeAction.DISPUTE, actor_id)
        self._check_version(trade, expected_version)

        trade.status = new_status
        trade.disputed_by = actor_id
        trade.dispute_reason = reason.strip() if reason else None
        await self.repo.flush_transition(trade, "Trade")
        self._log_transition(trade, previous, actor_id)
        return trade

    async def resolve_dispute(self, trade_id: int, admin: str, outcome: str) -> P2PTrade:
        """Admin settles a disputed trade by releasing to the buyer or refunding the seller."""
        if outcome not in ResolveOutcome.ALL:
            raise ValidationError(f"Outcome must be one of {', '.join(ResolveOutcome.ALL)}")
        trade = await self.get_trade(trade_id)
        action = (
            TradeAction.RESOLVE_RELEASE
            if outcome == ResolveOutcome.RELEASE
            else TradeAction.RESOLVE_REFUND
        )
        previous = TradeStatus(trade.status)
        new_status = self._next(trade, action, admin)

        await hold_account_locks(
            self.session, trade.buyer_id, trade.seller_id, operation="p2p_resolve"
        )
        trade.status = new_status
        trade.resolution = outcome
        if outcome == ResolveOutcome.RELEASE:
            trade.completed_at = utcnow()
            await self.repo.flush_transition(trade, "Trade")
            await self.repo.transfer_locked(
                trade.seller_id,
                trade.buyer_id,
                trade.coin,
                trade.crypto_amount,
                reference_type=REFERENCE_TYPE,
                reference_id=trade.id,
                actor=admin,
            )
        else:
            trade.cancelled_at = utcnow()
            await self.repo.flush_transition(trade, "Trade")
            await self._refund_escrow(trade, actor=admin)

        self._log_transition(trade, previous, admin)
        return trade

    async def cancel_expired(self, now: Optional[datetime] = None) -> list[P2PTrade]:
        """Cancel every ``pending`` trade past its expiry and refund its escrow.

        ``paid`` trades are never touched here.
        """
        now = now or utcnow()
        cancelled = []
        trades = await self.repo.get_expired_pending_trades(now)
        if trades:
            await hold_account_locks(
                self.session, *{t.seller_id for t in trades}, operation="p2p_expire"
            )
        for trade in trades:
            new_status = self._next(trade, TradeAction.EXPIRE, "system")
            trade.status = new_status
            trade.cancelled_at = now
            await self.repo.flush_transition(trade, "Trade")
            await self._refund_escrow(trade, actor="system")
            self._log_transition(trade, TradeStatus.PENDING, "system")
            cancelled.append(trade)

        if cancelled:
            logger.info(f"Expired {len(cancelled)} pending trade(s)")
        return cancelled

    async def list_trades(self, user_id: int, limit: int = 20, offset: int = 0) -> list[P2PTrade]:
        return await self.repo.list_user_trades(user_id, limit=limit, offset=offset)

    async def get_trade_detail(
        self, trade_id: int, viewer_id: int, is_admin: bool = False
    ) -> tuple[P2PTrade, list[TradeMessage]]:
        """Trade plus its full message history, the polling source of truth."""
        trade = await self.get_trade(trade_id)
        self._check_member(trade, viewer_id, is_admin)
        messages = await self.repo.get_trade_messages(trade.id)
        return trade, messages

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def post_message(
        self, trade_id: int, sender_id: int, body: str, is_admin: bool = False
    ) -> TradeMessage:
        """Append a chat message. Allowed in any trade status."""
        body = (body or "").strip()
        if not body:
            raise ValidationError("Message cannot be empty")
        if len(body) > self.settings.chat_message_max_length:
            raise ValidationError(
                f"Message is longer than {self.settings.chat_message_max_length} characters"
            )
        trade = await self.get_trade(trade_id)
        self._check_member(trade, sender_id, is_admin)
        message = await self.repo.add_message(trade.id, sender_id, body)
        logger.debug(f"Trade {trade.id}: message {message.id} from user {sender_id}")
        return message

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _refund_escrow(self, trade: P2PTrade, actor: str) -> None:
        await self.repo.unlock(
            trade.seller_id,
            trade.coin,
            trade.crypto_amount,
            reference_type=REFERENCE_TYPE,
            reference_id=trade.id,
            actor=actor,
        )
        offer = await self.repo.get_offer(trade.offer_id)
        if offer is not None:
            offer.available_amount = offer.available_amount + trade.crypto_amount
            await self.repo.flush_transition(offer, "Offer")

    def _next(self, trade: P2PTrade, action: TradeAction, actor) -> TradeStatus:
        try:
            return trade_transition(trade.status, action)
        except InvalidStateError:
            logger.warning(
                f"Trade {trade.id}: {actor} tried {action.value} in {TradeStatus(trade.status).value}"
            )
            raise

    @staticmethod
    def _check_version(trade: P2PTrade, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != trade.version:
            raise ConflictError(
                f"Trade {trade.id} changed since version {expected_version} "
                f"(now {trade.version}); reload and retry"
            )

    @staticmethod
    def _check_member(trade: P2PTrade, user_id: int, is_admin: bool) -> None:
        if not is_admin and trade.party_role(user_id) is None:
            raise AuthorizationError("You are not a participant of this trade")

    @staticmethod
    def _log_transition(trade: P2PTrade, previous: TradeStatus, actor) -> None:
        logger.info(
            f"Trade {trade.id}: {previous.value} -> {TradeStatus(trade.status).value} by {actor}"
        )
