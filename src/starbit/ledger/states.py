"""Transition tables for the deposit, withdrawal and trade state machines.

Each entity has a closed set of actions. ``transition()`` accepts only the
(current status, action) pairs listed in the table and raises
``InvalidStateError`` for everything else, so callers never compare status
strings themselves.
"""

from enum import Enum
from typing import TypeVar

from starbit.errors import InvalidStateError
from starbit.ledger.models import DepositStatus, TradeStatus, WithdrawalStatus


class DepositAction(str, Enum):
    CONFIRMATION = "confirmation"      # first confirmation observed
    VERIFY = "verify"                  # enough confirmations, amount matches
    REJECT_AMOUNT = "reject_amount"    # enough confirmations, amount differs
    MANUAL_CONFIRM = "manual_confirm"
    FAIL = "fail"


class WithdrawalAction(str, Enum):
    PROCESS = "process"
    CANCEL = "cancel"


class TradeAction(str, Enum):
    MARK_PAID = "mark_paid"
    RELEASE = "release"
    DISPUTE = "dispute"
    EXPIRE = "expire"
    RESOLVE_RELEASE = "resolve_release"
    RESOLVE_REFUND = "resolve_refund"


DEPOSIT_TRANSITIONS: dict[tuple[DepositStatus, DepositAction], DepositStatus] = {
    (DepositStatus.PENDING, DepositAction.CONFIRMATION): DepositStatus.VERIFYING,
    (DepositStatus.VERIFYING, DepositAction.VERIFY): DepositStatus.CONFIRMED,
    (DepositStatus.VERIFYING, DepositAction.REJECT_AMOUNT): DepositStatus.MISMATCH,
    (DepositStatus.PENDING, DepositAction.MANUAL_CONFIRM): DepositStatus.CONFIRMED,
    (DepositStatus.VERIFYING, DepositAction.MANUAL_CONFIRM): DepositStatus.CONFIRMED,
    (DepositStatus.MISMATCH, DepositAction.MANUAL_CONFIRM): DepositStatus.CONFIRMED,
    (DepositStatus.PENDING, DepositAction.FAIL): DepositStatus.FAILED,
    (DepositStatus.VERIFYING, DepositAction.FAIL): DepositStatus.FAILED,
    (DepositStatus.MISMATCH, DepositAction.FAIL): DepositStatus.FAILED,
}

WITHDRAWAL_TRANSITIONS: dict[tuple[WithdrawalStatus, WithdrawalAction], WithdrawalStatus] = {
    (WithdrawalStatus.PENDING, WithdrawalAction.PROCESS): WithdrawalStatus.COMPLETED,
    (WithdrawalStatus.PENDING, WithdrawalAction.CANCEL): WithdrawalStatus.CANCELLED,
}

TRADE_TRANSITIONS: dict[tuple[TradeStatus, TradeAction], TradeStatus] = {
    (TradeStatus.PENDING, TradeAction.MARK_PAID): TradeStatus.PAID,
    (TradeStatus.PAID, TradeAction.RELEASE): TradeStatus.COMPLETED,
    (TradeStatus.PENDING, TradeAction.DISPUTE): TradeStatus.DISPUTED,
    (TradeStatus.PAID, TradeAction.DISPUTE): TradeStatus.DISPUTED,
    (TradeStatus.PENDING, TradeAction.EXPIRE): TradeStatus.CANCELLED,
    (TradeStatus.DISPUTED, TradeAction.RESOLVE_RELEASE): TradeStatus.COMPLETED,
    (TradeStatus.DISPUTED, TradeAction.RESOLVE_REFUND): TradeStatus.CANCELLED,
}

# Statuses no automatic signal may move out of.
DEPOSIT_TERMINAL = frozenset(
    {DepositStatus.CONFIRMED, DepositStatus.FAILED, DepositStatus.MISMATCH}
)
WITHDRAWAL_TERMINAL = frozenset({WithdrawalStatus.COMPLETED, WithdrawalStatus.CANCELLED})
TRADE_TERMINAL = frozenset({TradeStatus.COMPLETED, TradeStatus.CANCELLED})

S = TypeVar("S", bound=Enum)
A = TypeVar("A", bound=Enum)


def transition(table: dict[tuple[S, A], S], current, action: A, entity: str = "entity") -> S:
    """Return the next status for ``action`` or raise ``InvalidStateError``."""
    status_type = type(next(iter(table))[0])
    current = status_type(current)
    try:
        return table[(current, action)]
    except KeyError:
        raise InvalidStateError(
            f"Cannot {action.value.replace('_', ' ')} {entity} in status {current.value}"
        ) from None


def deposit_transition(current, action: DepositAction) -> DepositStatus:
    return transition(DEPOSIT_TRANSITIONS, current, action, "deposit")


def withdrawal_transition(current, action: WithdrawalAction) -> WithdrawalStatus:
    return transition(WITHDRAWAL_TRANSITIONS, current, action, "withdrawal")


def trade_transition(current, action: TradeAction) -> TradeStatus:
    return transition(TRADE_TRANSITIONS, current, action, "trade")
