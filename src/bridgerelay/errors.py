"""Error taxonomy for the relay.

Every error carries the chain and source transaction it concerns (when
known) so that log lines can always be traced back to an on-chain event.

Handling summary:
- ConnectivityError: retried with backoff, isolated to its own direction
- ParseError / ValidationError: event dropped, never retried
- RetryableDispatchError: retried up to the configured bound
- FatalDispatchError: record parked as failed for manual remediation
- ConfigurationError: process does not start
"""

from typing import Optional


class BridgeRelayError(Exception):
    """Base class for all relay errors."""

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        source_tx_id: Optional[str] = None,
    ):
        self.message = message
        self.chain = chain
        self.source_tx_id = source_tx_id
        super().__init__(message)

    def __str__(self) -> str:
        context = []
        if self.chain:
            context.append(f"chain={self.chain}")
        if self.source_tx_id:
            context.append(f"source_tx={self.source_tx_id}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class ConfigurationError(BridgeRelayError):
    """Missing or invalid configuration detected at startup."""

    pass


class ConnectivityError(BridgeRelayError):
    """RPC or websocket endpoint unreachable."""

    pass


class WatcherExhaustedError(ConnectivityError):
    """A watcher could not re-establish its subscription within the retry bound."""

    pass


class ParseError(BridgeRelayError):
    """Raw payload does not have the expected lock shape."""

    pass


class ValidationError(BridgeRelayError):
    """Amount or address outside the accepted bounds/format."""

    pass


class DispatchError(BridgeRelayError):
    """Base class for release submission failures."""

    pass


class RetryableDispatchError(DispatchError):
    """Transient submission failure (network, nonce conflict, stale blockhash).

    ``tx_id`` is set when a signed transaction may have reached the network,
    so a retry can re-send or poll it instead of building a second release.
    """

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        source_tx_id: Optional[str] = None,
        tx_id: Optional[str] = None,
    ):
        self.tx_id = tx_id
        super().__init__(message, chain=chain, source_tx_id=source_tx_id)


class ConfirmationTimeout(RetryableDispatchError):
    """Submitted transaction was not confirmed within the timeout."""

    def __init__(
        self,
        message: str,
        tx_id: str,
        chain: Optional[str] = None,
        source_tx_id: Optional[str] = None,
    ):
        super().__init__(message, chain=chain, source_tx_id=source_tx_id, tx_id=tx_id)


class FatalDispatchError(DispatchError):
    """Destination ledger rejected the release; must not be retried automatically."""

    def __init__(
        self,
        message: str,
        reason: str = "rejected",
        chain: Optional[str] = None,
        source_tx_id: Optional[str] = None,
    ):
        self.reason = reason
        super().__init__(message, chain=chain, source_tx_id=source_tx_id)
