"""Base interface for chain watchers.

A watcher keeps a websocket subscription to everything touching the bridge
address on one chain and yields each new item as a RawEvent. Dropped
connections are re-established with exponential backoff and jitter; after a
reconnect the watcher replays what landed while it was away.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional

import websockets

from bridgerelay.chains import ChainId
from bridgerelay.errors import ConnectivityError, WatcherExhaustedError
from bridgerelay.utils.retry import Backoff

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawEvent:
    """A transaction or log touching the bridge, exactly as delivered."""

    chain: ChainId
    tx_id: str
    payload: Any  # log lines (solana) or a JSON-RPC log object (evm)
    position: Optional[int] = None  # slot or block number
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ChainWatcher(ABC):
    """Abstract websocket subscription to one chain's bridge address."""

    def __init__(
        self,
        chain_id: ChainId,
        ws_url: str,
        backoff: Optional[Backoff] = None,
        max_reconnect_attempts: int = 10,
        session_cache_size: int = 10_000,
        subscription_timeout: float = 15.0,
        message_timeout: float = 60.0,
        connect: Optional[Callable[..., Any]] = None,
    ):
        """Initialize watcher.

        Args:
            chain_id: Chain being watched
            ws_url: Websocket endpoint
            backoff: Reconnect delay policy
            max_reconnect_attempts: Consecutive failures before giving up
            session_cache_size: Transaction ids remembered for session dedup
            subscription_timeout: Seconds to wait for the subscribe reply
            message_timeout: Idle seconds before the connection is pinged
            connect: Websocket connect factory (defaults to websockets.connect)
        """
        self.chain_id = chain_id
        self.ws_url = ws_url
        self.backoff = backoff or Backoff()
        self.max_reconnect_attempts = max_reconnect_attempts
        self.session_cache_size = session_cache_size
        self.subscription_timeout = subscription_timeout
        self.message_timeout = message_timeout
        self._connect = connect or websockets.connect
        self._running = False
        self._ws = None
        self._seen: OrderedDict[str, None] = OrderedDict()
        self.last_tx_id: Optional[str] = None
        self.last_position: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @abstractmethod
    def subscription_request(self) -> dict:
        """JSON-RPC subscribe request sent after each (re)connect."""
        pass

    @abstractmethod
    def events_from_message(self, message: dict) -> list[RawEvent]:
        """Extract RawEvents from one websocket message (may be empty)."""
        pass

    @abstractmethod
    async def catch_up(self) -> list[RawEvent]:
        """Fetch events that landed since the last delivered one, oldest first."""
        pass

    async def subscribe(self) -> AsyncIterator[RawEvent]:
        """Yield RawEvents until stop() is called.

        Raises:
            WatcherExhaustedError: after too many consecutive reconnect failures
        """
        self._running = True
        failures = 0
        resumed = False

        while self._running:
            try:
                async with self._connect(self.ws_url, max_size=10 * 1024 * 1024) as ws:
                    self._ws = ws
                    subscription_id = await self._open_subscription(ws)
                    logger.info(
                        f"{self.chain_id.value} watcher subscribed (id={subscription_id})"
                    )
                    failures = 0

                    if resumed:
                        replayed = 0
                        for event in await self.catch_up():
                            if self._remember(event):
                                replayed += 1
                                yield event
                        if replayed:
                            logger.info(
                                f"{self.chain_id.value} watcher replayed {replayed} missed events"
                            )
                    resumed = True

                    while self._running:
                        message = await self._receive(ws)
                        if message is None:
                            continue
                        for event in self.events_from_message(message):
                            if self._remember(event):
                                yield event
                            else:
                                logger.debug(
                                    f"{self.chain_id.value} duplicate delivery of {event.tx_id} ignored"
                                )

            except asyncio.CancelledError:
                raise
            except (
                websockets.exceptions.WebSocketException,
                ConnectivityError,
                OSError,
                asyncio.TimeoutError,
                json.JSONDecodeError,
            ) as e:
                if not self._running:
                    break
                failures += 1
                if failures > self.max_reconnect_attempts:
                    logger.critical(
                        f"{self.chain_id.value} watcher exhausted "
                        f"{self.max_reconnect_attempts} reconnect attempts: {e}"
                    )
                    raise WatcherExhaustedError(
                        f"Subscription lost after {self.max_reconnect_attempts} reconnect attempts",
                        chain=self.chain_id.value,
                    ) from e
                delay = self.backoff.delay(failures)
                logger.warning(
                    f"{self.chain_id.value} watcher connection lost: {e}. "
                    f"Retry {failures}/{self.max_reconnect_attempts} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
            finally:
                self._ws = None

        logger.info(f"{self.chain_id.value} watcher stopped")

    async def stop(self) -> None:
        """Stop the subscription loop and close the socket."""
        self._running = False
        if self._ws is not None:
            await self._ws.close()

    async def _open_subscription(self, ws) -> Any:
        await ws.send(json.dumps(self.subscription_request()))
        response = json.loads(
            await asyncio.wait_for(ws.recv(), timeout=self.subscription_timeout)
        )
        if response.get("error"):
            raise ConnectivityError(
                f"Subscription rejected: {response['error']}", chain=self.chain_id.value
            )
        return response.get("result")

    async def _receive(self, ws) -> Optional[dict]:
        """Wait for the next message; ping the node if the line goes quiet."""
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=self.message_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"{self.chain_id.value} watcher idle, pinging")
            pong_waiter = await ws.ping()
            await asyncio.wait_for(pong_waiter, timeout=self.subscription_timeout)
            return None
        return json.loads(raw)

    def _remember(self, event: RawEvent) -> bool:
        """Record an event for session dedup. Returns False if already seen."""
        if event.tx_id in self._seen:
            self._seen.move_to_end(event.tx_id)
            return False
        self._seen[event.tx_id] = None
        if len(self._seen) > self.session_cache_size:
            self._seen.popitem(last=False)
        self.last_tx_id = event.tx_id
        if event.position is not None:
            self.last_position = max(self.last_position or 0, event.position)
        return True
