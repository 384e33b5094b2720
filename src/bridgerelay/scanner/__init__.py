"""Chain watchers and lock event parsers."""

from bridgerelay.scanner.base import ChainWatcher, RawEvent
from bridgerelay.scanner.evm import EVMWatcher
from bridgerelay.scanner.parsers import (
    ContractLockParser,
    EventParser,
    LockEvent,
    NativeLockParser,
)
from bridgerelay.scanner.solana import SolanaWatcher

__all__ = [
    "ChainWatcher",
    "ContractLockParser",
    "EVMWatcher",
    "EventParser",
    "LockEvent",
    "NativeLockParser",
    "RawEvent",
    "SolanaWatcher",
]
