"""Utility modules for Starbit."""

from starbit.utils.locks import get_account_lock, hold_account_locks

__all__ = ["get_account_lock", "hold_account_locks"]
