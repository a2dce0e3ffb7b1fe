"""Transaction pipelines built on the ledger."""

from starbit.services.deposits import DepositPipeline
from starbit.services.p2p import EscrowEngine
from starbit.services.withdrawals import WithdrawalPipeline

__all__ = [
    "DepositPipeline",
    "WithdrawalPipeline",
    "EscrowEngine",
]
