"""Chain identifiers, bridge directions and address helpers.

The relay speaks to exactly two ledgers:
- SOLANA: the native-asset chain (lamports, 9 decimals)
- EVM: the smart-contract chain (bridge token, 18 decimals)
"""

import re
from enum import Enum

from solders.pubkey import Pubkey
from web3 import Web3

EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
EVM_TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
EVM_ZERO_ADDRESS = "0x" + "0" * 40


class ChainId(str, Enum):
    """Ledgers the relay is connected to."""

    SOLANA = "solana"
    EVM = "evm"


class Direction(str, Enum):
    """Bridge directions; each runs as its own pipeline."""

    NATIVE_TO_CONTRACT = "native_to_contract"
    CONTRACT_TO_NATIVE = "contract_to_native"

    @property
    def source(self) -> ChainId:
        return ChainId.SOLANA if self is Direction.NATIVE_TO_CONTRACT else ChainId.EVM

    @property
    def destination(self) -> ChainId:
        return ChainId.EVM if self is Direction.NATIVE_TO_CONTRACT else ChainId.SOLANA

    @classmethod
    def from_source(cls, chain: ChainId) -> "Direction":
        if chain is ChainId.SOLANA:
            return cls.NATIVE_TO_CONTRACT
        return cls.CONTRACT_TO_NATIVE


def is_evm_address(address: str) -> bool:
    """Validate EVM address format (0x + 40 hex chars)."""
    return bool(address) and EVM_ADDRESS_RE.match(address) is not None


def is_solana_address(address: str) -> bool:
    """Validate a base58-encoded 32-byte Solana public key."""
    if not address or len(address) < 32 or len(address) > 44:
        return False
    try:
        Pubkey.from_string(address)
    except Exception:
        return False
    return True


def source_tx_binding(chain: ChainId, tx_id: str) -> bytes:
    """Derive the 32-byte hash that binds a release to its source transaction.

    Solana signatures are 64 bytes, so they are hashed with keccak256 over
    their base58 text. EVM transaction hashes are already 32 bytes and are
    used verbatim, which is also the key the contract's own
    ``markSourceTransactionProcessed`` bookkeeping expects.
    """
    if chain is ChainId.EVM:
        if not EVM_TX_HASH_RE.match(tx_id):
            raise ValueError(f"Not an EVM transaction hash: {tx_id}")
        return bytes.fromhex(tx_id[2:])
    return bytes(Web3.keccak(text=tx_id))
