"""Utility modules for the bridge relay."""

from bridgerelay.utils.locks import LockTimeoutError, get_signer_lock, signer_lock
from bridgerelay.utils.retry import Backoff

__all__ = ["Backoff", "LockTimeoutError", "get_signer_lock", "signer_lock"]
