"""Base chain connection interface.

A ChainConnection owns the RPC handle and the admin signing identity for one
ledger. The ReleaseDispatcher and the acknowledgement reconciler only talk to
chains through this interface.
"""

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from bridgerelay.chains import ChainId
from bridgerelay.errors import ConfigurationError, ConnectivityError, DispatchError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Signed transactions kept per connection for re-broadcast
MAX_SIGNED_TRANSACTIONS = 256


class BroadcastState(str, Enum):
    """What a re-broadcast attempt found out about a submitted transaction."""

    UNKNOWN = "unknown"      # No signed bytes held, nothing resent
    LANDED = "landed"        # Ledger already knows the transaction
    RESENT = "resent"        # Same signed bytes broadcast again
    EXPIRED = "expired"      # Can never land; a new transaction is needed


@dataclass
class SignedTransaction:
    """Signed bytes of a submitted transaction."""

    raw: bytes
    valid_until: Optional[int] = None  # last block height it can land in


@dataclass
class ConnectionHealth:
    """Last observed state of a chain connection."""

    reachable: bool = False
    head: Optional[int] = None  # slot or block number
    fee_balance: Optional[int] = None  # admin balance in smallest units
    last_error: Optional[str] = None
    last_checked: Optional[datetime] = None


@dataclass
class BridgeState:
    """Read-only snapshot of the bridge's on-chain state."""

    chain: ChainId
    admin: str
    total_locked: int
    fetched_at: datetime

    def to_dict(self) -> dict:
        return {
            "chain": self.chain.value,
            "admin": self.admin,
            "total_locked": str(self.total_locked),
            "fetched_at": self.fetched_at.isoformat(),
        }


class ChainConnection(ABC):
    """Abstract connection to one ledger."""

    def __init__(self, chain_id: ChainId, endpoint: str, ws_endpoint: str = ""):
        self.chain_id = chain_id
        self.endpoint = endpoint
        self.ws_endpoint = ws_endpoint
        self.health = ConnectionHealth()
        self._signed: OrderedDict[str, SignedTransaction] = OrderedDict()

    @property
    @abstractmethod
    def identity(self) -> str:
        """Address of the admin signing identity."""
        pass

    @property
    @abstractmethod
    def bridge_address(self) -> str:
        """Address of the bridge program or contract."""
        pass

    @abstractmethod
    async def connect(self) -> None:
        """Open the RPC handle."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the RPC handle."""
        pass

    @abstractmethod
    async def get_head(self) -> int:
        """Return the latest slot or block number."""
        pass

    @abstractmethod
    async def get_fee_balance(self) -> int:
        """Return the admin identity's balance in smallest units."""
        pass

    @abstractmethod
    async def get_bridge_state(self) -> BridgeState:
        """Fetch admin identity and aggregate locked amount from the chain."""
        pass

    @abstractmethod
    async def submit_release(
        self,
        recipient: str,
        amount: int,
        binding: bytes,
        source_tx_id: Optional[str] = None,
    ) -> str:
        """Sign and broadcast a release.

        Args:
            recipient: Destination address on this chain
            amount: Amount in this chain's smallest units
            binding: 32-byte hash binding the release to its source transaction
            source_tx_id: Source transaction id, for error context only

        Returns:
            Destination transaction id

        Raises:
            RetryableDispatchError: transient failure; carries the tx id when
                the signed transaction may have reached the node
            FatalDispatchError: the ledger rejected the release
            ConnectivityError: endpoint unreachable
        """
        pass

    @abstractmethod
    async def wait_for_confirmation(
        self,
        tx_id: str,
        timeout: float,
        source_tx_id: Optional[str] = None,
    ) -> int:
        """Wait until a submitted transaction is confirmed.

        Returns:
            Slot or block the transaction landed in

        Raises:
            ConfirmationTimeout: not confirmed within ``timeout``
            FatalDispatchError: the transaction landed but failed
        """
        pass

    @abstractmethod
    async def is_release_processed(self, binding: bytes) -> bool:
        """Ask the ledger whether a release for ``binding`` already happened."""
        pass

    async def rebroadcast(
        self, tx_id: str, source_tx_id: Optional[str] = None
    ) -> BroadcastState:
        """Send a submitted transaction's signed bytes again if the ledger lost it.

        Re-sending identical bytes cannot produce a second release: the
        transaction id is the same.

        Raises:
            RetryableDispatchError: the ledger could not be asked, or refused
                the bytes for a transient reason
        """
        return BroadcastState.UNKNOWN

    def remember_signed(self, tx_id: str, signed: SignedTransaction) -> None:
        self._signed[tx_id] = signed
        self._signed.move_to_end(tx_id)
        while len(self._signed) > MAX_SIGNED_TRANSACTIONS:
            self._signed.popitem(last=False)

    def signed_transaction(self, tx_id: str) -> Optional[SignedTransaction]:
        return self._signed.get(tx_id)

    def forget_signed(self, tx_id: str) -> None:
        self._signed.pop(tx_id, None)

    async def mark_source_processed(
        self, binding: bytes, source_tx_id: Optional[str] = None
    ) -> str:
        """Acknowledge on this chain that one of its locks was released elsewhere."""
        raise DispatchError(
            "Origin acknowledgement not supported", chain=self.chain_id.value
        )

    async def is_source_processed(self, binding: bytes) -> bool:
        raise DispatchError(
            "Origin acknowledgement not supported", chain=self.chain_id.value
        )

    async def check_liveness(self, min_balance: int) -> ConnectionHealth:
        """Verify the endpoint is reachable and the admin can pay fees.

        Raises:
            ConfigurationError: if the chain is unreachable or the admin
                balance is below ``min_balance``
        """
        try:
            head = await self.get_head()
            balance = await self.get_fee_balance()
        except ConnectivityError as e:
            self._record_failure(e)
            raise ConfigurationError(
                f"Chain unreachable at startup: {e.message}", chain=self.chain_id.value
            ) from e

        self.health = ConnectionHealth(
            reachable=True,
            head=head,
            fee_balance=balance,
            last_checked=datetime.now(timezone.utc),
        )

        if balance < min_balance:
            raise ConfigurationError(
                f"Admin {self.identity} balance {balance} below required {min_balance}",
                chain=self.chain_id.value,
            )

        logger.info(
            f"{self.chain_id.value} live: head={head}, admin={self.identity}, balance={balance}"
        )
        return self.health

    async def with_reconnect(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        is_transport_error: Callable[[BaseException], bool],
    ) -> T:
        """Run ``call``; on a transport failure reopen the handle and try once more.

        Raises:
            ConnectivityError: if the second attempt also fails at the transport level
        """
        try:
            return await call()
        except Exception as e:
            if not is_transport_error(e):
                raise
            logger.warning(f"{self.chain_id.value} {operation} failed ({e}); reconnecting")
            self._record_failure(e)

        await self.close()
        await self.connect()
        try:
            result = await call()
        except Exception as e:
            if not is_transport_error(e):
                raise
            self._record_failure(e)
            raise ConnectivityError(
                f"{operation} failed after reconnect: {e}", chain=self.chain_id.value
            ) from e

        self.health.reachable = True
        self.health.last_error = None
        return result

    def _record_failure(self, error: Any) -> None:
        self.health.reachable = False
        self.health.last_error = str(error)
        self.health.last_checked = datetime.now(timezone.utc)
