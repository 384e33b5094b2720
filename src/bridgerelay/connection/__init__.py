"""Chain connections holding the RPC handle and admin identity per ledger."""

from bridgerelay.connection.base import BridgeState, ChainConnection, ConnectionHealth
from bridgerelay.connection.evm import EVMConnection
from bridgerelay.connection.solana import SolanaConnection

__all__ = [
    "BridgeState",
    "ChainConnection",
    "ConnectionHealth",
    "EVMConnection",
    "SolanaConnection",
]
