"""One bridge direction: watcher -> parser -> dedup claim -> dispatcher."""

import asyncio
import logging
from typing import Optional

from bridgerelay.chains import Direction
from bridgerelay.errors import WatcherExhaustedError
from bridgerelay.ledger.dedup import ClaimResult, DedupStore
from bridgerelay.metrics import RelayMetrics
from bridgerelay.relay.dispatcher import DispatchOutcome, ReleaseDispatcher
from bridgerelay.scanner.base import ChainWatcher, RawEvent
from bridgerelay.scanner.parsers import EventParser

logger = logging.getLogger(__name__)


class DirectionPipeline:
    """Supervised pipeline for one direction.

    The watcher feeds a bounded queue; a single consumer handles events
    strictly in delivery order. Stopping closes the watcher, after which the
    consumer drains whatever was already queued. A dispatch in progress is
    never cancelled.
    """

    def __init__(
        self,
        direction: Direction,
        watcher: ChainWatcher,
        parser: EventParser,
        store: DedupStore,
        dispatcher: ReleaseDispatcher,
        queue_size: int = 1000,
        metrics: Optional[RelayMetrics] = None,
    ):
        self.direction = direction
        self.watcher = watcher
        self.parser = parser
        self.store = store
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.queue: asyncio.Queue[Optional[RawEvent]] = asyncio.Queue(maxsize=queue_size)
        self.error: Optional[BaseException] = None

    @property
    def name(self) -> str:
        return self.direction.value

    async def run(self) -> None:
        """Run until the watcher stops or fails, then drain the queue."""
        logger.info(f"Direction {self.name} starting")
        producer = asyncio.create_task(self._produce(), name=f"{self.name}-watcher")
        try:
            await self._consume()
        finally:
            if not producer.done():
                await self.watcher.stop()
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)
            if self.metrics:
                self.metrics.set_watcher_up(self.name, False)
        logger.info(f"Direction {self.name} stopped")

    async def stop(self) -> None:
        """Stop accepting new events; queued ones are still processed."""
        logger.info(f"Direction {self.name} stopping")
        await self.watcher.stop()

    async def _produce(self) -> None:
        if self.metrics:
            self.metrics.set_watcher_up(self.name, True)
        try:
            async for raw in self.watcher.subscribe():
                await self.queue.put(raw)
        except WatcherExhaustedError as e:
            logger.critical(f"Direction {self.name} halted, watcher gave up: {e}")
            self.error = e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Direction {self.name} watcher crashed: {e}")
            self.error = e
        if self.metrics:
            self.metrics.set_watcher_up(self.name, False)
        await self.queue.put(None)

    async def _consume(self) -> None:
        while True:
            raw = await self.queue.get()
            try:
                if raw is None:
                    return
                await self.handle(raw)
            finally:
                self.queue.task_done()

    async def handle(self, raw: RawEvent) -> Optional[DispatchOutcome]:
        """Process one raw event through parse, claim and dispatch."""
        event = self.parser.parse(raw)
        if event is None:
            self._count("dropped")
            return None

        claim = await self.store.try_claim(
            event.source_chain,
            event.source_tx_id,
            source_address=event.source_address,
            destination_address=event.destination_address,
            amount=event.amount,
        )
        if claim is ClaimResult.ALREADY_CLAIMED:
            logger.info(f"Skipping {event.source_chain.value}/{event.source_tx_id}: already claimed")
            self._count("duplicate")
            return None

        loop = asyncio.get_running_loop()
        started = loop.time()
        outcome = await self.dispatcher.dispatch(event)
        if self.metrics:
            self.metrics.observe_dispatch(self.name, loop.time() - started)
        self._count("confirmed" if outcome.confirmed else "failed")
        return outcome

    def _count(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_event(self.name, outcome)
