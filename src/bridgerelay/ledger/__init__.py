"""Durable ledger of relayed locks."""

from bridgerelay.ledger.dedup import ClaimResult, DedupStore
from bridgerelay.ledger.models import AckStatus, ProcessedRecord, RecordStatus

__all__ = ["AckStatus", "ClaimResult", "DedupStore", "ProcessedRecord", "RecordStatus"]
