"""Request and response contracts for the API layer.

Decimal amounts are serialised as strings so no precision is lost in JSON.
"""

from starbit.contracts.balances import BalanceOut
from starbit.contracts.common import ErrorResponse, Page, ok
from starbit.contracts.deposits import DepositOut, PaymentMethodOut
from starbit.contracts.p2p import MessageOut, OfferOut, TradeDetail, TradeOut
from starbit.contracts.withdrawals import FeeQuote, WithdrawalOut

__all__ = [
    "ok",
    "Page",
    "ErrorResponse",
    "BalanceOut",
    "DepositOut",
    "PaymentMethodOut",
    "WithdrawalOut",
    "FeeQuote",
    "OfferOut",
    "TradeOut",
    "MessageOut",
    "TradeDetail",
]
