"""Reconciliation of origin acknowledgements.

Releases for contract-chain locks are followed by a best-effort
``markSourceTransactionProcessed`` call on the contract. When that call fails
the release stands and the record keeps ``origin_ack_status`` pending or
failed; this job retries those acknowledgements.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from bridgerelay.chains import ChainId
from bridgerelay.ledger.dedup import DedupStore
from bridgerelay.ledger.models import AckStatus
from bridgerelay.relay.dispatcher import ReleaseDispatcher

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    checked: int = 0
    acknowledged: int = 0
    failed: int = 0


class AcknowledgementReconciler:
    """Retry outstanding origin acknowledgements."""

    def __init__(self, store: DedupStore, dispatcher: ReleaseDispatcher, batch_size: int = 100):
        if not dispatcher.requires_acknowledgement:
            raise ValueError("dispatcher has no origin connection to acknowledge on")
        self.store = store
        self.dispatcher = dispatcher
        self.batch_size = batch_size

    async def run_once(self) -> ReconcileReport:
        """One pass over the outstanding acknowledgements."""
        report = ReconcileReport()
        for record in await self.store.pending_acknowledgements(limit=self.batch_size):
            report.checked += 1
            status = await self.dispatcher.acknowledge(
                ChainId(record.source_chain), record.source_tx_id
            )
            if status is AckStatus.DONE:
                report.acknowledged += 1
            else:
                report.failed += 1

        if report.checked:
            logger.info(
                f"Acknowledgement reconciliation: {report.acknowledged}/{report.checked} done, "
                f"{report.failed} still failing"
            )
        return report

    async def run_forever(self, interval: float, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run a pass every ``interval`` seconds until ``stop_event`` is set.

        The first pass runs after one interval. An acknowledgement the
        dispatcher is still issuing is never marked twice: both paths hold the
        origin chain's signer lock and check ``is_source_processed`` first.
        """
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Reconciliation pass failed: {e}")
