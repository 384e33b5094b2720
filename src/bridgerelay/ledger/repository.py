"""Repository for processed-record operations."""

from typing import Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bridgerelay.ledger.models import AckStatus, ProcessedRecord, RecordStatus


class ProcessedRecordRepository:
    """Queries and conditional updates over the ``processed_records`` table.

    The repository never commits; callers own the transaction boundary.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert(
        self,
        source_chain: str,
        source_tx_id: str,
        destination_chain: str,
        source_address: str,
        destination_address: str,
        amount: int,
        origin_ack_status: Optional[str] = None,
    ) -> ProcessedRecord:
        """Insert a pending record. Raises IntegrityError on a duplicate key."""
        record = ProcessedRecord(
            source_chain=source_chain,
            source_tx_id=source_tx_id,
            destination_chain=destination_chain,
            source_address=source_address,
            destination_address=destination_address,
            amount=str(amount),
            status=RecordStatus.PENDING.value,
            attempts=0,
            origin_ack_status=origin_ack_status,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def get(self, source_chain: str, source_tx_id: str) -> Optional[ProcessedRecord]:
        """Get a record by its source key."""
        stmt = select(ProcessedRecord).where(
            ProcessedRecord.source_chain == source_chain,
            ProcessedRecord.source_tx_id == source_tx_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_unless_confirmed(
        self, source_chain: str, source_tx_id: str, **values
    ) -> bool:
        """Apply ``values`` to a record that has not reached ``confirmed``.

        Returns:
            True if a row was updated
        """
        stmt = (
            update(ProcessedRecord)
            .where(
                ProcessedRecord.source_chain == source_chain,
                ProcessedRecord.source_tx_id == source_tx_id,
                ProcessedRecord.status != RecordStatus.CONFIRMED.value,
            )
            .values(**values)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def increment_attempts(
        self, source_chain: str, source_tx_id: str, error: Optional[str]
    ) -> bool:
        stmt = (
            update(ProcessedRecord)
            .where(
                ProcessedRecord.source_chain == source_chain,
                ProcessedRecord.source_tx_id == source_tx_id,
            )
            .values(attempts=ProcessedRecord.attempts + 1, last_error=error)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def set_origin_ack(
        self, source_chain: str, source_tx_id: str, ack_status: str
    ) -> bool:
        stmt = (
            update(ProcessedRecord)
            .where(
                ProcessedRecord.source_chain == source_chain,
                ProcessedRecord.source_tx_id == source_tx_id,
            )
            .values(origin_ack_status=ack_status)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def count_by_status(self, source_chain: str) -> dict[str, int]:
        """Count records per status for one source chain (all statuses present)."""
        stmt = (
            select(ProcessedRecord.status, func.count(ProcessedRecord.id))
            .where(ProcessedRecord.source_chain == source_chain)
            .group_by(ProcessedRecord.status)
        )
        result = await self.session.execute(stmt)
        counts = {status.value: 0 for status in RecordStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def list_pending_acknowledgements(self, limit: int = 100) -> Sequence[ProcessedRecord]:
        """Confirmed records whose origin acknowledgement is still outstanding."""
        stmt = (
            select(ProcessedRecord)
            .where(
                ProcessedRecord.status == RecordStatus.CONFIRMED.value,
                ProcessedRecord.origin_ack_status.in_(
                    [AckStatus.PENDING.value, AckStatus.FAILED.value]
                ),
            )
            .order_by(ProcessedRecord.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_status(
        self, source_chain: str, status: RecordStatus, limit: int = 100
    ) -> Sequence[ProcessedRecord]:
        stmt = (
            select(ProcessedRecord)
            .where(
                ProcessedRecord.source_chain == source_chain,
                ProcessedRecord.status == status.value,
            )
            .order_by(ProcessedRecord.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
