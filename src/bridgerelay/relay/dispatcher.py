"""Release dispatcher.

Takes a lock that has already been claimed in the dedup store and performs
the matching release on the destination chain:

1. convert the amount into destination units and check it against bounds
2. submit the release from the admin identity (serialized per chain)
3. wait for confirmation and classify the outcome
4. finalize the record
5. for locks taken on the contract chain, acknowledge the origin transaction

A new release transaction is built at most once per lock while an earlier one
can still land. Once a submission has produced a transaction id, retries send
that same signed transaction again if the ledger never saw it, then poll it.
Only when it can no longer land, or no id is known, does a retry ask the
destination whether the release already happened and build a new one.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from bridgerelay.chains import ChainId, Direction, source_tx_binding
from bridgerelay.connection.base import BroadcastState, ChainConnection
from bridgerelay.errors import (
    ConnectivityError,
    DispatchError,
    FatalDispatchError,
    RetryableDispatchError,
    ValidationError,
)
from bridgerelay.ledger.dedup import DedupStore
from bridgerelay.ledger.models import AckStatus, RecordStatus
from bridgerelay.metrics import RelayMetrics
from bridgerelay.relay.conversion import AmountConverter
from bridgerelay.scanner.parsers import LockEvent
from bridgerelay.utils.locks import LockTimeoutError, signer_lock
from bridgerelay.utils.retry import Backoff

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (RetryableDispatchError, ConnectivityError, LockTimeoutError)


@dataclass
class DispatchOutcome:
    """Terminal result of one dispatch."""

    status: RecordStatus
    destination_tx_id: Optional[str] = None
    destination_amount: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    ack_status: Optional[AckStatus] = None

    @property
    def confirmed(self) -> bool:
        return self.status == RecordStatus.CONFIRMED


class ReleaseDispatcher:
    """Perform releases for one bridge direction."""

    def __init__(
        self,
        direction: Direction,
        destination: ChainConnection,
        store: DedupStore,
        converter: AmountConverter,
        min_amount: int,
        max_amount: int,
        origin: Optional[ChainConnection] = None,
        confirmation_timeout: float = 120.0,
        max_attempts: int = 5,
        backoff: Optional[Backoff] = None,
        lock_timeout: Optional[float] = 60.0,
        metrics: Optional[RelayMetrics] = None,
    ):
        """Initialize dispatcher.

        Args:
            direction: Bridge direction served
            destination: Connection to the chain releases are paid on
            store: Dedup store holding the claimed records
            converter: Source-to-destination unit converter
            min_amount: Minimum lock amount, source smallest units
            max_amount: Maximum lock amount, source smallest units
            origin: Connection to acknowledge origin transactions on
                (None when the direction needs no acknowledgement)
            confirmation_timeout: Seconds to wait for each confirmation
            max_attempts: Dispatch attempts before parking the record
            backoff: Delay policy between attempts
            lock_timeout: Seconds to wait for the chain's signer lock
            metrics: Optional metrics sink
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.direction = direction
        self.destination = destination
        self.origin = origin
        self.store = store
        self.converter = converter
        self.min_destination_amount = converter.convert(min_amount)
        self.max_destination_amount = converter.convert(max_amount)
        self.confirmation_timeout = confirmation_timeout
        self.max_attempts = max_attempts
        self.backoff = backoff or Backoff()
        self.lock_timeout = lock_timeout
        self.metrics = metrics

    @property
    def requires_acknowledgement(self) -> bool:
        return self.origin is not None

    def convert(self, event: LockEvent) -> int:
        """Convert the lock amount, enforcing destination bounds.

        Raises:
            ValidationError: converted amount is zero or out of bounds
        """
        amount = self.converter.convert(event.amount)
        if amount <= 0:
            raise ValidationError(
                f"Amount {event.amount} converts to zero",
                chain=event.source_chain.value,
                source_tx_id=event.source_tx_id,
            )
        if amount < self.min_destination_amount or amount > self.max_destination_amount:
            raise ValidationError(
                f"Converted amount {amount} outside "
                f"[{self.min_destination_amount}, {self.max_destination_amount}]",
                chain=event.source_chain.value,
                source_tx_id=event.source_tx_id,
            )
        return amount

    async def dispatch(self, event: LockEvent) -> DispatchOutcome:
        """Release the converted amount for a claimed lock.

        Never raises for per-event failures; the outcome is written to the
        store and returned.
        """
        source_chain = event.source_chain
        source_tx_id = event.source_tx_id
        destination = self.direction.destination.value

        try:
            amount = self.convert(event)
        except ValidationError as e:
            logger.error(f"Release not attempted on {destination}: {e}")
            await self.store.finalize(
                source_chain, source_tx_id, None, RecordStatus.FAILED, error=str(e)
            )
            return DispatchOutcome(RecordStatus.FAILED, error=str(e))

        binding = source_tx_binding(source_chain, source_tx_id)
        tx_id: Optional[str] = None
        last_error: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                if tx_id is not None and attempt > 1:
                    state = await self._rebroadcast(event, tx_id)
                    if state == BroadcastState.EXPIRED:
                        logger.warning(
                            f"Release {tx_id} for {source_chain.value}/{source_tx_id} "
                            f"can no longer land on {destination}"
                        )
                        tx_id = None

                if tx_id is None:
                    if attempt > 1 and await self.destination.is_release_processed(binding):
                        logger.info(
                            f"Release for {source_chain.value}/{source_tx_id} already "
                            f"processed on {destination}; treating as confirmed"
                        )
                        return await self._confirmed(event, None, amount, attempt)
                    tx_id = await self._submit(event, amount, binding)

                await self.destination.wait_for_confirmation(
                    tx_id, self.confirmation_timeout, source_tx_id
                )
                return await self._confirmed(event, tx_id, amount, attempt)

            except FatalDispatchError as e:
                logger.error(f"Release rejected on {destination} ({e.reason}): {e}")
                await self.store.finalize(
                    source_chain, source_tx_id, tx_id, RecordStatus.FAILED,
                    error=str(e), attempts=attempt,
                )
                return DispatchOutcome(
                    RecordStatus.FAILED, tx_id, amount, attempt, error=str(e)
                )

            except RETRYABLE_ERRORS as e:
                if isinstance(e, RetryableDispatchError) and e.tx_id and tx_id is None:
                    tx_id = e.tx_id
                    await self.store.mark_submitted(source_chain, source_tx_id, tx_id, amount)
                last_error = str(e)
                await self.store.record_attempt(source_chain, source_tx_id, last_error)
                if self.metrics:
                    self.metrics.record_event(self.direction.value, "retried")

                if attempt < self.max_attempts:
                    delay = self.backoff.delay(attempt)
                    logger.warning(
                        f"Release attempt {attempt}/{self.max_attempts} for "
                        f"{source_chain.value}/{source_tx_id} failed: {e}. Retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)

        error = f"Gave up after {self.max_attempts} attempts: {last_error}"
        logger.error(
            f"Release for {source_chain.value}/{source_tx_id} parked on {destination}: {error}"
        )
        await self.store.finalize(
            source_chain, source_tx_id, tx_id, RecordStatus.FAILED,
            error=error, attempts=self.max_attempts,
        )
        return DispatchOutcome(
            RecordStatus.FAILED, tx_id, amount, self.max_attempts, error=error
        )

    async def _submit(self, event: LockEvent, amount: int, binding: bytes) -> str:
        """Submit under the destination signer lock and record the tx id."""
        destination = self.direction.destination
        async with signer_lock(
            destination.value, timeout=self.lock_timeout, operation=f"release {event.source_tx_id}"
        ):
            tx_id = await self.destination.submit_release(
                event.destination_address, amount, binding, event.source_tx_id
            )
        await self.store.mark_submitted(event.source_chain, event.source_tx_id, tx_id, amount)
        logger.info(
            f"Submitted release {tx_id} on {destination.value} for "
            f"{event.source_chain.value}/{event.source_tx_id} ({event.amount} -> {amount})"
        )
        return tx_id

    async def _rebroadcast(self, event: LockEvent, tx_id: str) -> BroadcastState:
        """Send an unseen release again under the destination signer lock."""
        async with signer_lock(
            self.direction.destination.value,
            timeout=self.lock_timeout,
            operation=f"rebroadcast {event.source_tx_id}",
        ):
            return await self.destination.rebroadcast(tx_id, event.source_tx_id)

    async def _confirmed(
        self, event: LockEvent, tx_id: Optional[str], amount: int, attempts: int
    ) -> DispatchOutcome:
        await self.store.finalize(
            event.source_chain, event.source_tx_id, tx_id, RecordStatus.CONFIRMED,
            attempts=attempts,
        )
        logger.info(
            f"Release confirmed on {self.direction.destination.value}: {tx_id} "
            f"for {event.source_chain.value}/{event.source_tx_id}"
        )

        ack_status = None
        if self.requires_acknowledgement:
            ack_status = await self.acknowledge(event.source_chain, event.source_tx_id)
        return DispatchOutcome(
            RecordStatus.CONFIRMED, tx_id, amount, attempts, ack_status=ack_status
        )

    async def acknowledge(self, source_chain: ChainId, source_tx_id: str) -> AckStatus:
        """Mark the origin transaction processed on its own chain (best effort).

        The release is already final; a failure here is only recorded so the
        reconciler can try again.
        """
        if self.origin is None:
            return AckStatus.NOT_REQUIRED

        binding = source_tx_binding(source_chain, source_tx_id)
        origin_chain = self.origin.chain_id.value
        try:
            async with signer_lock(
                origin_chain, timeout=self.lock_timeout, operation=f"acknowledge {source_tx_id}"
            ):
                if await self.origin.is_source_processed(binding):
                    logger.info(f"Origin {origin_chain}/{source_tx_id} already acknowledged")
                else:
                    ack_tx = await self.origin.mark_source_processed(binding, source_tx_id)
                    logger.info(f"Origin {origin_chain}/{source_tx_id} acknowledged in {ack_tx}")
            status = AckStatus.DONE
        except (DispatchError, ConnectivityError, LockTimeoutError) as e:
            logger.error(
                f"Acknowledgement failed for {origin_chain}/{source_tx_id}, "
                f"left for reconciliation: {e}"
            )
            status = AckStatus.FAILED

        await self.store.set_origin_ack(source_chain, source_tx_id, status)
        return status
