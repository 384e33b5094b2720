"""SQLAlchemy models for the relay's dedup ledger."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class RecordStatus(str, Enum):
    """Status of a relayed lock."""

    PENDING = "pending"          # Claimed, nothing submitted yet
    SUBMITTED = "submitted"      # Release broadcast, awaiting confirmation
    CONFIRMED = "confirmed"      # Release confirmed on the destination chain
    FAILED = "failed"            # Parked for manual remediation


class AckStatus(str, Enum):
    """Status of the origin-chain acknowledgement after a release."""

    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class ProcessedRecord(Base):
    """One row per source transaction that has ever been claimed.

    The row is the bridge's replay guard and audit trail. It is never deleted.
    Amounts are stored as decimal strings since uint256 values do not fit SQL
    integer columns.
    """

    __tablename__ = "processed_records"
    __table_args__ = (
        Index("ix_processed_records_source", "source_chain", "source_tx_id", unique=True),
        Index("ix_processed_records_status", "source_chain", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_chain: Mapped[str] = mapped_column(String(20), nullable=False)
    source_tx_id: Mapped[str] = mapped_column(String(128), nullable=False)
    destination_chain: Mapped[str] = mapped_column(String(20), nullable=False)
    destination_tx_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    source_address: Mapped[str] = mapped_column(String(128), nullable=False)
    destination_address: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[str] = mapped_column(String(80), nullable=False)  # source smallest units
    destination_amount: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=RecordStatus.PENDING.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    origin_ack_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def source_amount(self) -> int:
        return int(self.amount)
