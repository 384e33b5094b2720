"""Lock event parsers.

Each parser turns a RawEvent from its chain into a LockEvent, or into nothing
when the payload is not a bridge lock. Payloads that look like a lock but
carry an invalid address or an out-of-bounds amount are dropped as well;
neither case is ever retried.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from bridgerelay.chains import ChainId, is_solana_address
from bridgerelay.connection.evm import LOCKED_TOPIC
from bridgerelay.errors import ParseError, ValidationError
from bridgerelay.scanner.base import RawEvent

logger = logging.getLogger(__name__)

NATIVE_LOCK_PATTERN = re.compile(
    r"Locked (\d+) lamports from (\w+) to destination (0x[a-fA-F0-9]{40})$"
)
PROGRAM_INVOKE_PATTERN = re.compile(r"^Program (\w+) invoke \[\d+\]$")
PROGRAM_EXIT_PATTERN = re.compile(r"^Program (\w+) (?:success|failed)")
PROGRAM_LOG_PREFIX = "Program log: "
LOCKED_DATA_TYPES = ["uint256", "string", "uint256"]


@dataclass(frozen=True)
class LockEvent:
    """A validated lock, ready to be claimed and relayed."""

    source_chain: ChainId
    source_tx_id: str
    source_address: str
    destination_address: str
    amount: int  # source chain smallest units
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventParser(ABC):
    """Base parser enforcing the direction's amount bounds."""

    chain_id: ChainId

    def __init__(self, min_amount: int, max_amount: int):
        if min_amount < 0 or min_amount > max_amount:
            raise ValueError(f"Invalid bounds [{min_amount}, {max_amount}]")
        self.min_amount = min_amount
        self.max_amount = max_amount

    @abstractmethod
    def extract(self, raw: RawEvent) -> LockEvent:
        """Decode a lock from ``raw``.

        Raises:
            ParseError: payload is not a lock
            ValidationError: payload is a lock with invalid fields
        """
        pass

    def parse(self, raw: RawEvent) -> Optional[LockEvent]:
        """Return the LockEvent carried by ``raw``, or None."""
        try:
            return self.extract(raw)
        except ParseError as e:
            logger.debug(f"No lock in {raw.chain.value}/{raw.tx_id}: {e.message}")
        except ValidationError as e:
            logger.warning(f"Dropped invalid lock: {e}")
        return None

    def check_amount(self, amount: int, raw: RawEvent) -> int:
        if amount < self.min_amount or amount > self.max_amount:
            raise ValidationError(
                f"Amount {amount} outside [{self.min_amount}, {self.max_amount}]",
                chain=raw.chain.value,
                source_tx_id=raw.tx_id,
            )
        return amount


def program_logs(lines: list[str], program_id: str) -> list[str]:
    """Messages logged while ``program_id`` was the innermost running program.

    Solana prints ``Program <id> invoke [depth]`` when a program is entered and
    ``Program <id> success`` (or ``failed``) when it returns, so ``Program log:``
    lines can be attributed by keeping a call stack. Lines outside any frame
    belong to no program.
    """
    stack: list[str] = []
    messages = []
    for line in lines:
        invoke = PROGRAM_INVOKE_PATTERN.match(line)
        if invoke:
            stack.append(invoke.group(1))
            continue
        if PROGRAM_EXIT_PATTERN.match(line):
            if stack:
                stack.pop()
            continue
        if line.startswith(PROGRAM_LOG_PREFIX) and stack and stack[-1] == program_id:
            messages.append(line[len(PROGRAM_LOG_PREFIX):])
    return messages


class NativeLockParser(EventParser):
    """Match the ``Locked ... lamports`` line logged by the bridge program itself.

    The subscription delivers every transaction that mentions the program, so
    the same text printed by any other program is ignored.
    """

    chain_id = ChainId.SOLANA

    def __init__(self, program_id: str, min_amount: int, max_amount: int):
        super().__init__(min_amount, max_amount)
        self.program_id = program_id

    def extract(self, raw: RawEvent) -> LockEvent:
        lines = [raw.payload] if isinstance(raw.payload, str) else list(raw.payload or [])

        match = None
        for message in program_logs(lines, self.program_id):
            match = NATIVE_LOCK_PATTERN.match(message)
            if match:
                break
        if match is None:
            raise ParseError(
                "No lock logged by the bridge program",
                chain=raw.chain.value,
                source_tx_id=raw.tx_id,
            )

        amount_text, source, destination = match.groups()
        if not is_solana_address(source):
            raise ValidationError(
                f"Invalid source account {source}",
                chain=raw.chain.value,
                source_tx_id=raw.tx_id,
            )

        return LockEvent(
            source_chain=ChainId.SOLANA,
            source_tx_id=raw.tx_id,
            source_address=source,
            destination_address=destination,
            amount=self.check_amount(int(amount_text), raw),
            observed_at=raw.received_at,
        )


class ContractLockParser(EventParser):
    """Decode the contract's ``Locked(address,uint256,string,uint256)`` event."""

    chain_id = ChainId.EVM

    def extract(self, raw: RawEvent) -> LockEvent:
        log = raw.payload if isinstance(raw.payload, dict) else {}
        topics = [str(topic).lower() for topic in log.get("topics") or []]

        if not topics or topics[0] != LOCKED_TOPIC.lower():
            raise ParseError("Not a Locked event", chain=raw.chain.value, source_tx_id=raw.tx_id)
        if len(topics) < 2:
            raise ParseError(
                "Locked event without sender topic",
                chain=raw.chain.value,
                source_tx_id=raw.tx_id,
            )

        data = log.get("data") or "0x"
        try:
            amount, destination, _timestamp = decode(
                LOCKED_DATA_TYPES, bytes.fromhex(data[2:] if data.startswith("0x") else data)
            )
        except (DecodingError, ValueError) as e:
            raise ParseError(
                f"Undecodable Locked data: {e}",
                chain=raw.chain.value,
                source_tx_id=raw.tx_id,
            ) from e

        if not is_solana_address(destination):
            raise ValidationError(
                f"Invalid destination address {destination!r}",
                chain=raw.chain.value,
                source_tx_id=raw.tx_id,
            )

        sender = Web3.to_checksum_address("0x" + topics[1][-40:])
        return LockEvent(
            source_chain=ChainId.EVM,
            source_tx_id=raw.tx_id,
            source_address=sender,
            destination_address=destination,
            amount=self.check_amount(amount, raw),
            observed_at=raw.received_at,
        )
