"""Ledger reconciliation checks.

Balances are only ever changed through ``LedgerRepository._apply``, which
writes an audit row per mutation. These checks replay the audit trail and
report every place it disagrees with the stored balances or pipelines.
"""

import logging
from collections import defaultdict
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from starbit.ledger.models import AuditLog, AuditLogType, Balance, Deposit, DepositStatus

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


async def check_balances(session: AsyncSession) -> list[dict]:
    """Compare each balance row with the replay of its audit trail."""
    problems = []
    logs = await session.execute(select(AuditLog).order_by(AuditLog.id))
    replay: dict[tuple[int, str], tuple[Decimal, Decimal]] = defaultdict(lambda: (ZERO, ZERO))

    for log in logs.scalars():
        key = (log.user_id, log.asset)
        available, locked = replay[key]
        if log.available_before != available or log.locked_before != locked:
            problems.append(
                {
                    "kind": "broken_chain",
                    "user_id": log.user_id,
                    "asset": log.asset,
                    "audit_log_id": log.id,
                    "expected": (available, locked),
                    "found": (log.available_before, log.locked_before),
                }
            )
        replay[key] = (log.available_after, log.locked_after)

    balances = await session.execute(select(Balance))
    seen = set()
    for balance in balances.scalars():
        key = (balance.user_id, balance.asset)
        seen.add(key)
        available, locked = replay.get(key, (ZERO, ZERO))
        if balance.available != available or balance.locked != locked:
            problems.append(
                {
                    "kind": "balance_drift",
                    "user_id": balance.user_id,
                    "asset": balance.asset,
                    "expected": (available, locked),
                    "found": (balance.available, balance.locked),
                }
            )
        if balance.available < 0 or balance.locked < 0:
            problems.append(
                {"kind": "negative_balance", "user_id": balance.user_id, "asset": balance.asset}
            )

    for key in set(replay) - seen:
        problems.append({"kind": "missing_balance", "user_id": key[0], "asset": key[1]})

    return problems


async def check_deposit_credits(session: AsyncSession) -> list[dict]:
    """Every confirmed deposit is credited exactly once; no other deposit is."""
    problems = []
    stmt = (
        select(AuditLog.reference_id, func.count(AuditLog.id))
        .where(AuditLog.reference_type == "deposit", AuditLog.log_type == AuditLogType.CREDIT)
        .group_by(AuditLog.reference_id)
    )
    credits = {row[0]: row[1] for row in (await session.execute(stmt)).all()}

    deposits = await session.execute(select(Deposit))
    for deposit in deposits.scalars():
        count = credits.get(deposit.id, 0)
        confirmed = deposit.status == DepositStatus.CONFIRMED
        if confirmed and count != 1:
            problems.append({"kind": "credit_count", "deposit_id": deposit.id, "credits": count})
        elif not confirmed and count:
            problems.append(
                {"kind": "unexpected_credit", "deposit_id": deposit.id, "status": deposit.status}
            )
    return problems


async def reconcile(session: AsyncSession) -> list[dict]:
    """Run every check and return the combined list of problems."""
    problems = await check_balances(session) + await check_deposit_credits(session)
    for problem in problems:
        logger.warning(f"Reconciliation problem: {problem}")
    return problems
