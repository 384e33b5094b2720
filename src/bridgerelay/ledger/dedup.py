"""Durable replay guard for relayed locks.

The unique index on ``(source_chain, source_tx_id)`` is the only arbiter of
who owns a source transaction: ``try_claim`` is a single INSERT, so two
coroutines (or two relay processes sharing the database) racing on the same
lock cannot both win.
"""

import logging
from enum import Enum
from typing import Optional, Sequence, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bridgerelay.chains import ChainId, Direction
from bridgerelay.ledger.database import get_db
from bridgerelay.ledger.models import AckStatus, ProcessedRecord, RecordStatus
from bridgerelay.ledger.repository import ProcessedRecordRepository

logger = logging.getLogger(__name__)

ChainLike = Union[ChainId, str]


class ClaimResult(str, Enum):
    """Outcome of a claim attempt."""

    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


def _chain_key(chain: ChainLike) -> str:
    return ChainId(chain).value


class DedupStore:
    """Processed-transaction store backed by SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def try_claim(
        self,
        chain_id: ChainLike,
        source_tx_id: str,
        source_address: str = "",
        destination_address: str = "",
        amount: int = 0,
    ) -> ClaimResult:
        """Atomically claim a source transaction for processing.

        Args:
            chain_id: Chain the lock was observed on
            source_tx_id: Lock transaction id on that chain
            source_address: Locker's address
            destination_address: Recipient on the other chain
            amount: Locked amount in source smallest units

        Returns:
            ClaimResult.CLAIMED if this caller now owns the record,
            ClaimResult.ALREADY_CLAIMED if a record already existed
        """
        chain = ChainId(chain_id)
        session = self.session_factory()
        try:
            repo = ProcessedRecordRepository(session)
            await repo.insert(
                source_chain=chain.value,
                source_tx_id=source_tx_id,
                destination_chain=Direction.from_source(chain).destination.value,
                source_address=source_address,
                destination_address=destination_address,
                amount=amount,
                origin_ack_status=(
                    AckStatus.NOT_REQUIRED if chain is ChainId.SOLANA else AckStatus.PENDING
                ).value,
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.debug(f"Already claimed: {chain.value}/{source_tx_id}")
            return ClaimResult.ALREADY_CLAIMED
        finally:
            await session.close()

        logger.info(f"Claimed {chain.value}/{source_tx_id} (amount={amount})")
        return ClaimResult.CLAIMED

    async def mark_submitted(
        self,
        chain_id: ChainLike,
        source_tx_id: str,
        destination_tx_id: str,
        destination_amount: Optional[int] = None,
    ) -> bool:
        """Record that a release was broadcast for the claimed lock."""
        values = {
            "status": RecordStatus.SUBMITTED.value,
            "destination_tx_id": destination_tx_id,
        }
        if destination_amount is not None:
            values["destination_amount"] = str(destination_amount)
        async with get_db(self.session_factory) as session:
            repo = ProcessedRecordRepository(session)
            return await repo.update_unless_confirmed(
                _chain_key(chain_id), source_tx_id, **values
            )

    async def finalize(
        self,
        chain_id: ChainLike,
        source_tx_id: str,
        destination_tx_id: Optional[str],
        status: RecordStatus,
        error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> bool:
        """Move a record to its terminal status.

        A record that is already ``confirmed`` is left untouched.

        Returns:
            True if the record was updated
        """
        if status not in (RecordStatus.CONFIRMED, RecordStatus.FAILED):
            raise ValueError(f"Not a terminal status: {status}")

        values = {"status": status.value, "last_error": error}
        if destination_tx_id is not None:
            values["destination_tx_id"] = destination_tx_id
        if attempts is not None:
            values["attempts"] = attempts

        async with get_db(self.session_factory) as session:
            repo = ProcessedRecordRepository(session)
            updated = await repo.update_unless_confirmed(
                _chain_key(chain_id), source_tx_id, **values
            )

        if not updated:
            logger.warning(
                f"Finalize to {status.value} ignored for {_chain_key(chain_id)}/{source_tx_id}: "
                f"record missing or already confirmed"
            )
        return updated

    async def record_attempt(
        self, chain_id: ChainLike, source_tx_id: str, error: Optional[str] = None
    ) -> None:
        async with get_db(self.session_factory) as session:
            repo = ProcessedRecordRepository(session)
            await repo.increment_attempts(_chain_key(chain_id), source_tx_id, error)

    async def set_origin_ack(
        self, chain_id: ChainLike, source_tx_id: str, ack_status: AckStatus
    ) -> None:
        async with get_db(self.session_factory) as session:
            repo = ProcessedRecordRepository(session)
            await repo.set_origin_ack(_chain_key(chain_id), source_tx_id, ack_status.value)

    async def get(self, chain_id: ChainLike, source_tx_id: str) -> Optional[ProcessedRecord]:
        async with get_db(self.session_factory) as session:
            repo = ProcessedRecordRepository(session)
            return await repo.get(_chain_key(chain_id), source_tx_id)

    async def is_processed(self, chain_id: ChainLike, source_tx_id: str) -> bool:
        """True once the release for this lock is confirmed."""
        record = await self.get(chain_id, source_tx_id)
        return record is not None and record.status == RecordStatus.CONFIRMED.value

    async def count_by_status(self, chain_id: ChainLike) -> dict[str, int]:
        async with get_db(self.session_factory) as session:
            repo = ProcessedRecordRepository(session)
            return await repo.count_by_status(_chain_key(chain_id))

    async def pending_acknowledgements(self, limit: int = 100) -> Sequence[ProcessedRecord]:
        async with get_db(self.session_factory) as session:
            repo = ProcessedRecordRepository(session)
            return await repo.list_pending_acknowledgements(limit=limit)

    async def recent(
        self, chain_id: ChainLike, status: RecordStatus, limit: int = 10
    ) -> Sequence[ProcessedRecord]:
        async with get_db(self.session_factory) as session:
            repo = ProcessedRecordRepository(session)
            return await repo.list_by_status(_chain_key(chain_id), status, limit=limit)
