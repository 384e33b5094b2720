"""Bridge relay orchestrator.

Wires both directions:

- native_to_contract: Solana lock log -> EVM ``release``
- contract_to_native: EVM ``Locked`` event -> Solana ``release``, then
  ``markSourceTransactionProcessed`` on the EVM contract

Each direction runs as its own supervised task; a direction that fails is
logged and the other keeps running. Alongside them a status reporter
publishes record counts and a reconciler retries failed acknowledgements.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from bridgerelay.chains import ChainId, Direction
from bridgerelay.config import Settings, get_settings
from bridgerelay.connection.base import ChainConnection
from bridgerelay.connection.evm import EVMConnection
from bridgerelay.connection.solana import SolanaConnection
from bridgerelay.errors import ConfigurationError
from bridgerelay.ledger.database import create_engine_for_url, create_session_factory, init_db
from bridgerelay.ledger.dedup import DedupStore
from bridgerelay.metrics import RelayMetrics
from bridgerelay.relay.conversion import AmountConverter
from bridgerelay.relay.direction import DirectionPipeline
from bridgerelay.relay.dispatcher import ReleaseDispatcher
from bridgerelay.relay.reconcile import AcknowledgementReconciler, ReconcileReport
from bridgerelay.scanner.base import ChainWatcher
from bridgerelay.scanner.evm import EVMWatcher
from bridgerelay.scanner.parsers import ContractLockParser, NativeLockParser
from bridgerelay.scanner.solana import SolanaWatcher
from bridgerelay.utils.retry import Backoff

logger = logging.getLogger(__name__)


class BridgeRelay:
    """Runs both bridge directions against one pair of chain connections."""

    def __init__(
        self,
        settings: Settings,
        solana: ChainConnection,
        evm: ChainConnection,
        store: DedupStore,
        watchers: Optional[dict[Direction, ChainWatcher]] = None,
        engine: Optional[AsyncEngine] = None,
        metrics: Optional[RelayMetrics] = None,
    ):
        """Initialize relay.

        Args:
            settings: Relay settings
            solana: Native chain connection
            evm: Contract chain connection
            store: Dedup store shared by both directions
            watchers: Watcher per direction (built from the connections if omitted)
            engine: Engine backing ``store``; its tables are created on start
            metrics: Metrics sink (a private registry is created if omitted)
        """
        self.settings = settings
        self.connections: dict[ChainId, ChainConnection] = {
            ChainId.SOLANA: solana,
            ChainId.EVM: evm,
        }
        self.store = store
        self.engine = engine
        self.metrics = metrics or RelayMetrics()
        self._stop_event = asyncio.Event()
        self._stop_task: Optional[asyncio.Task] = None

        to_contract = AmountConverter(
            settings.native_decimals,
            settings.contract_decimals,
            rate=settings.exchange_rate,
            rounding=settings.rounding,
        )
        retry_backoff = Backoff(
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.reconnect_jitter,
        )

        self.dispatchers: dict[Direction, ReleaseDispatcher] = {
            Direction.NATIVE_TO_CONTRACT: ReleaseDispatcher(
                Direction.NATIVE_TO_CONTRACT,
                destination=evm,
                store=store,
                converter=to_contract,
                min_amount=settings.native_min_amount,
                max_amount=settings.native_max_amount,
                confirmation_timeout=settings.confirmation_timeout,
                max_attempts=settings.max_dispatch_attempts,
                backoff=retry_backoff,
                metrics=self.metrics,
            ),
            Direction.CONTRACT_TO_NATIVE: ReleaseDispatcher(
                Direction.CONTRACT_TO_NATIVE,
                destination=solana,
                store=store,
                converter=to_contract.inverse(),
                min_amount=settings.contract_min_amount,
                max_amount=settings.contract_max_amount,
                origin=evm,
                confirmation_timeout=settings.confirmation_timeout,
                max_attempts=settings.max_dispatch_attempts,
                backoff=retry_backoff,
                metrics=self.metrics,
            ),
        }
        parsers = {
            Direction.NATIVE_TO_CONTRACT: NativeLockParser(
                settings.solana_program_id,
                settings.native_min_amount,
                settings.native_max_amount,
            ),
            Direction.CONTRACT_TO_NATIVE: ContractLockParser(
                settings.contract_min_amount, settings.contract_max_amount
            ),
        }
        watchers = watchers or self._build_watchers()

        self.pipelines: dict[Direction, DirectionPipeline] = {
            direction: DirectionPipeline(
                direction,
                watcher=watchers[direction],
                parser=parsers[direction],
                store=store,
                dispatcher=self.dispatchers[direction],
                queue_size=settings.event_queue_size,
                metrics=self.metrics,
            )
            for direction in Direction
        }
        self.reconciler = AcknowledgementReconciler(
            store, self.dispatchers[Direction.CONTRACT_TO_NATIVE]
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BridgeRelay":
        """Build a relay with real chain connections and a SQL dedup store.

        Raises:
            ConfigurationError: if required settings are missing or invalid
        """
        settings = settings or get_settings()
        settings.validate_for_relay()

        engine = create_engine_for_url(settings.database_url)
        store = DedupStore(create_session_factory(engine))
        return cls(
            settings,
            solana=SolanaConnection.from_settings(settings),
            evm=EVMConnection.from_settings(settings),
            store=store,
            engine=engine,
        )

    def _build_watchers(self) -> dict[Direction, ChainWatcher]:
        settings = self.settings
        options = dict(
            max_reconnect_attempts=settings.watcher_max_reconnect_attempts,
            session_cache_size=settings.session_cache_size,
        )
        return {
            Direction.NATIVE_TO_CONTRACT: SolanaWatcher(
                self.connections[ChainId.SOLANA], backoff=self._reconnect_backoff(), **options
            ),
            Direction.CONTRACT_TO_NATIVE: EVMWatcher(
                self.connections[ChainId.EVM], backoff=self._reconnect_backoff(), **options
            ),
        }

    def _reconnect_backoff(self) -> Backoff:
        return Backoff(
            base_delay=self.settings.reconnect_base_delay,
            max_delay=self.settings.reconnect_max_delay,
            jitter=self.settings.reconnect_jitter,
        )

    def _min_fee_balance(self, chain: ChainId) -> int:
        if chain is ChainId.SOLANA:
            return self.settings.min_fee_balance_lamports
        return self.settings.min_fee_balance_wei

    async def _init_store(self) -> None:
        if self.engine is not None:
            await init_db(self.engine)

    async def start(self) -> None:
        """Verify everything needed before any subscription is opened.

        Raises:
            ConfigurationError: on invalid settings, an unreachable chain or
                an admin identity that cannot pay fees
        """
        logger.info("Starting bridge relay...")
        logger.info(f"Configuration: {self.settings.get_safe_dict()}")
        self.settings.validate_for_relay()

        await self._init_store()
        logger.info("Dedup store initialized")

        for chain, connection in self.connections.items():
            try:
                await connection.connect()
                await connection.check_liveness(self._min_fee_balance(chain))
            except ConfigurationError:
                raise
            except Exception as e:
                raise ConfigurationError(
                    f"Startup check failed: {e}", chain=chain.value
                ) from e
        logger.info("Both chains verified; bridge relay ready")

    async def run(self) -> None:
        """Run both directions until they stop, then stop the background jobs."""
        self._stop_event.clear()
        pipelines = list(self.pipelines.values())
        direction_tasks = [
            asyncio.create_task(pipeline.run(), name=pipeline.name) for pipeline in pipelines
        ]
        background = [
            asyncio.create_task(self._report_loop(), name="status-reporter"),
            asyncio.create_task(
                self.reconciler.run_forever(self.settings.reconcile_interval, self._stop_event),
                name="ack-reconciler",
            ),
        ]

        results = await asyncio.gather(*direction_tasks, return_exceptions=True)
        for pipeline, result in zip(pipelines, results):
            if isinstance(result, BaseException):
                logger.error(f"Direction {pipeline.name} crashed: {result!r}")
            elif pipeline.error is not None:
                logger.error(f"Direction {pipeline.name} ended: {pipeline.error}")

        self._stop_event.set()
        await asyncio.gather(*background, return_exceptions=True)
        await self.report_status()
        logger.info("Bridge relay stopped")

    async def stop(self) -> None:
        """Stop accepting events; in-flight dispatches are allowed to finish."""
        logger.info("Shutdown requested")
        self._stop_event.set()
        await asyncio.gather(*(pipeline.stop() for pipeline in self.pipelines.values()))

    def shutdown(self) -> None:
        """Signal-handler friendly wrapper around stop()."""
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self.stop())

    async def close(self) -> None:
        """Release chain handles and database connections."""
        for connection in self.connections.values():
            await connection.close()
        if self.engine is not None:
            await self.engine.dispose()

    async def report_status(self) -> dict[str, dict[str, int]]:
        """Publish per-direction record counts to metrics and the log."""
        summary = {}
        for direction in Direction:
            counts = await self.store.count_by_status(direction.source)
            self.metrics.set_record_counts(direction.value, counts)
            summary[direction.value] = counts

        logger.info(
            "Status: "
            + "; ".join(
                f"{name} confirmed={counts['confirmed']} failed={counts['failed']} "
                f"in_flight={counts['pending'] + counts['submitted']}"
                for name, counts in summary.items()
            )
        )
        return summary

    async def _report_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.settings.status_interval
                )
            except asyncio.TimeoutError:
                try:
                    await self.report_status()
                except Exception as e:
                    logger.error(f"Status report failed: {e}")

    async def reconcile_once(self) -> ReconcileReport:
        """Run one acknowledgement reconciliation pass outside the main loop."""
        await self._init_store()
        await self.connections[ChainId.EVM].connect()
        return await self.reconciler.run_once()

    async def bridge_states(self) -> dict[str, dict]:
        """Fetch both on-chain bridge mirrors (errors are reported, not raised)."""
        states = {}
        for chain, connection in self.connections.items():
            try:
                await connection.connect()
                states[chain.value] = (await connection.get_bridge_state()).to_dict()
            except Exception as e:
                states[chain.value] = {"error": str(e)}
        return states

    async def status(self) -> dict:
        """Record counts per direction plus both bridge mirrors."""
        await self._init_store()
        records = {}
        for direction in Direction:
            records[direction.value] = await self.store.count_by_status(direction.source)
        return {"records": records, "bridge_state": await self.bridge_states()}
