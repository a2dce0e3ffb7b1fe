"""Ledger integrity tests.

These tests ensure that:
1. Every pipeline flow leaves balances equal to the replayed audit trail
2. Escrow moves value between accounts without creating or destroying it
3. Confirmed deposits are credited exactly once
4. Tampering is reported by reconciliation
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from starbit.ledger.models import Balance, DepositStatus, OfferSide, ProofType, utcnow
from starbit.ledger.reconcile import check_balances, check_deposit_credits, reconcile
from starbit.ledger.repository import LedgerRepository
from starbit.services.deposits import DepositPipeline
from starbit.services.p2p import EscrowEngine, ResolveOutcome
from starbit.services.withdrawals import WithdrawalPipeline


async def total_of(session, asset: str) -> Decimal:
    balances = await session.execute(Balance.__table__.select().where(Balance.asset == asset))
    return sum((row.available + row.locked for row in balances), Decimal("0"))


@pytest.mark.asyncio
async def test_empty_ledger_is_consistent(db_session):
    assert await reconcile(db_session) == []


@pytest.mark.asyncio
async def test_all_flows_reconcile(db_session, settings, users, btc_method):
    """Deposits, withdrawals and trades together leave no discrepancy."""
    alice, bob, carol = users
    deposits = DepositPipeline(db_session, settings)
    withdrawals = WithdrawalPipeline(db_session, settings)
    escrow = EscrowEngine(db_session, settings)

    deposit = await deposits.submit(alice.id, btc_method.id, Decimal("0.05"), ProofType.HASH, "0x1")
    await deposits.advance(deposit.id, 2, Decimal("0.05"))
    mismatch = await deposits.submit(bob.id, btc_method.id, Decimal("0.05"), ProofType.HASH, "0x2")
    await deposits.advance(mismatch.id, 2, Decimal("0.04"))

    await db_session.commit()

    await deposits.admin_manual_confirm(mismatch.id, "admin:root", Decimal("0.04"))
    await db_session.commit()

    offer = await escrow.create_offer(
        alice.id, OfferSide.SELL, "BTC", Decimal("50000"), Decimal("0.05"),
        Decimal("10"), Decimal("2500"), ["Bank Transfer"],
    )
    completed = await escrow.create_trade(offer.id, bob.id, Decimal("100"))
    await escrow.mark_paid(completed.id, bob.id)
    await escrow.release(completed.id, alice.id)
    expired = await escrow.create_trade(offer.id, carol.id, Decimal("250"))
    await escrow.cancel_expired(now=expired.expires_at + timedelta(seconds=1))
    refunded = await escrow.create_trade(offer.id, carol.id, Decimal("500"))
    await escrow.dispute(refunded.id, carol.id)
    await escrow.resolve_dispute(refunded.id, "admin:root", ResolveOutcome.REFUND)
    await db_session.commit()

    await LedgerRepository(db_session).credit(carol.id, "USD", Decimal("300"))
    tron = "TLa2f6VPqDgRE67v1736s7bJ8Ray5wYjU7"
    first = await withdrawals.request(carol.id, Decimal("100"), "crypto", wallet_address=tron)
    second = await withdrawals.request(carol.id, Decimal("200"), "crypto", wallet_address=tron)
    await withdrawals.process(first.id, "admin:root")
    await withdrawals.cancel(second.id, "admin:root")
    await db_session.commit()

    assert await reconcile(db_session) == []
    assert await total_of(db_session, "BTC") == Decimal("0.09")
    assert await total_of(db_session, "USD") == Decimal("200")


@pytest.mark.asyncio
async def test_escrow_preserves_total(db_session, settings, users, ledger_repo):
    """Value only moves between seller and buyer."""
    alice, bob, _ = users
    await ledger_repo.credit(alice.id, "BTC", Decimal("1"))
    escrow = EscrowEngine(db_session, settings)
    offer = await escrow.create_offer(
        alice.id, OfferSide.SELL, "BTC", Decimal("50000"), Decimal("1"),
        Decimal("10"), Decimal("10000"), ["Cash"],
    )

    trade = await escrow.create_trade(offer.id, bob.id, Decimal("1000"))
    assert await total_of(db_session, "BTC") == Decimal("1")

    await escrow.mark_paid(trade.id, bob.id)
    await escrow.release(trade.id, alice.id)
    assert await total_of(db_session, "BTC") == Decimal("1")


@pytest.mark.asyncio
async def test_balance_drift_detected(db_session, users, ledger_repo):
    alice, _, _ = users
    balance = await ledger_repo.credit(alice.id, "USD", Decimal("100"))

    balance.available = Decimal("150")
    await db_session.flush()

    problems = await check_balances(db_session)
    assert [p["kind"] for p in problems] == ["balance_drift"]


@pytest.mark.asyncio
async def test_uncredited_confirmation_detected(db_session, settings, users, btc_method):
    """A deposit marked confirmed without its ledger credit is reported."""
    alice, _, _ = users
    pipeline = DepositPipeline(db_session, settings)
    deposit = await pipeline.submit(alice.id, btc_method.id, Decimal("0.05"), ProofType.HASH, "0x9")

    deposit.status = DepositStatus.CONFIRMED
    await db_session.flush()

    problems = await check_deposit_credits(db_session)
    assert problems == [{"kind": "credit_count", "deposit_id": deposit.id, "credits": 0}]


@pytest.mark.asyncio
async def test_paid_trade_keeps_escrow_past_expiry(db_session, settings, users, ledger_repo):
    alice, bob, _ = users
    await ledger_repo.credit(alice.id, "BTC", Decimal("0.01"))
    escrow = EscrowEngine(db_session, settings)
    offer = await escrow.create_offer(
        alice.id, OfferSide.SELL, "BTC", Decimal("50000"), Decimal("0.01"),
        Decimal("10"), Decimal("500"), ["Cash"],
    )
    trade = await escrow.create_trade(offer.id, bob.id, Decimal("100"))
    await escrow.mark_paid(trade.id, bob.id)

    await escrow.cancel_expired(now=utcnow() + timedelta(days=1))

    balance = await ledger_repo.get_balance(alice.id, "BTC")
    assert balance.locked == Decimal("0.002")
    assert await reconcile(db_session) == []
