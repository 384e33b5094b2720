"""Tests for lock event parsers."""

import pytest

from bridgerelay.chains import ChainId
from bridgerelay.scanner.base import RawEvent
from bridgerelay.scanner.parsers import ContractLockParser, NativeLockParser, program_logs

from conftest import (
    EVM_RECIPIENT,
    EVM_USER,
    PROGRAM_ID,
    SOLANA_RECIPIENT,
    SOLANA_USER,
    evm_tx_hash,
    lock_line,
    locked_log,
)

SIGNATURE = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW"
OTHER_PROGRAM = "Evi1111111111111111111111111111111111111111"


def native_event(lines, tx_id=SIGNATURE):
    return RawEvent(chain=ChainId.SOLANA, tx_id=tx_id, payload=lines, position=10)


def framed(*lines, program=PROGRAM_ID):
    return [f"Program {program} invoke [1]", *lines, f"Program {program} success"]


def contract_event(log):
    return RawEvent(chain=ChainId.EVM, tx_id=evm_tx_hash(1), payload=log, position=16)


class TestNativeLockParser:
    """Solana program log lines."""

    @pytest.fixture
    def parser(self):
        return NativeLockParser(PROGRAM_ID, min_amount=1_000, max_amount=1_000_000_000)

    def test_parses_lock_line(self, parser):
        raw = native_event(framed(
            "Program log: Instruction: Lock",
            lock_line(100_000_000),
            f"Program {PROGRAM_ID} consumed 5120 of 200000 compute units",
        ))

        event = parser.parse(raw)

        assert event is not None
        assert event.source_chain == ChainId.SOLANA
        assert event.source_tx_id == SIGNATURE
        assert event.source_address == SOLANA_USER
        assert event.destination_address == EVM_RECIPIENT
        assert event.amount == 100_000_000
        assert event.observed_at == raw.received_at

    def test_lock_line_from_other_program_dropped(self, parser):
        raw = native_event(framed(lock_line(1_000_000_000), program=OTHER_PROGRAM))
        assert parser.parse(raw) is None

    def test_lock_line_from_program_invoked_by_bridge_dropped(self, parser):
        raw = native_event(framed(
            f"Program {OTHER_PROGRAM} invoke [2]",
            lock_line(1_000_000_000),
            f"Program {OTHER_PROGRAM} success",
        ))
        assert parser.parse(raw) is None

    def test_lock_line_after_inner_call_returns(self, parser):
        raw = native_event(framed(
            "Program 11111111111111111111111111111111 invoke [2]",
            "Program 11111111111111111111111111111111 success",
            lock_line(5_000),
        ))
        assert parser.parse(raw).amount == 5_000

    def test_lock_line_outside_any_program_dropped(self, parser):
        assert parser.parse(native_event([lock_line(5_000)])) is None

    def test_lock_text_embedded_in_other_message_dropped(self, parser):
        line = "Program log: echo: " + lock_line(5_000)[len("Program log: "):]
        assert parser.parse(native_event(framed(line))) is None

    def test_unrelated_logs_dropped(self, parser):
        raw = native_event(framed("Program log: Instruction: Initialize", "Program log: done"))
        assert parser.parse(raw) is None

    def test_empty_payload_dropped(self, parser):
        assert parser.parse(native_event([])) is None

    def test_min_bound_inclusive(self, parser):
        assert parser.parse(native_event(framed(lock_line(1_000)))).amount == 1_000

    def test_below_min_dropped(self, parser):
        assert parser.parse(native_event(framed(lock_line(999)))) is None

    def test_max_bound_inclusive(self, parser):
        event = parser.parse(native_event(framed(lock_line(1_000_000_000))))
        assert event.amount == 1_000_000_000

    def test_above_max_dropped(self, parser):
        assert parser.parse(native_event(framed(lock_line(1_000_000_001)))) is None

    def test_invalid_source_dropped(self, parser):
        raw = native_event(framed(lock_line(5_000, source="notAnAccount")))
        assert parser.parse(raw) is None

    def test_malformed_destination_dropped(self, parser):
        line = "Program log: Locked 5000 lamports from " + SOLANA_USER + " to destination 0x1234"
        assert parser.parse(native_event(framed(line))) is None

    def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            NativeLockParser(PROGRAM_ID, min_amount=10, max_amount=5)


class TestProgramLogs:
    def test_attributes_lines_to_innermost_program(self):
        lines = [
            f"Program {PROGRAM_ID} invoke [1]",
            "Program log: outer",
            f"Program {OTHER_PROGRAM} invoke [2]",
            "Program log: inner",
            f"Program {OTHER_PROGRAM} failed: custom program error: 0x1",
            "Program log: outer again",
            f"Program {PROGRAM_ID} success",
            "Program log: stray",
        ]
        assert program_logs(lines, PROGRAM_ID) == ["outer", "outer again"]
        assert program_logs(lines, OTHER_PROGRAM) == ["inner"]


class TestContractLockParser:
    """EVM Locked(address,uint256,string,uint256) logs."""

    @pytest.fixture
    def parser(self):
        return ContractLockParser(min_amount=10**9, max_amount=10**18)

    def test_parses_locked_log(self, parser):
        event = parser.parse(contract_event(locked_log(5 * 10**17)))

        assert event is not None
        assert event.source_chain == ChainId.EVM
        assert event.source_tx_id == evm_tx_hash(1)
        assert event.source_address == EVM_USER
        assert event.destination_address == SOLANA_RECIPIENT
        assert event.amount == 5 * 10**17

    def test_other_event_dropped(self, parser):
        log = locked_log(5 * 10**17)
        log["topics"][0] = "0x" + "ab" * 32
        assert parser.parse(contract_event(log)) is None

    def test_missing_sender_topic_dropped(self, parser):
        log = locked_log(5 * 10**17)
        log["topics"] = log["topics"][:1]
        assert parser.parse(contract_event(log)) is None

    def test_undecodable_data_dropped(self, parser):
        log = locked_log(5 * 10**17)
        log["data"] = "0x1234"
        assert parser.parse(contract_event(log)) is None

    def test_invalid_destination_dropped(self, parser):
        log = locked_log(5 * 10**17, destination="not-a-solana-address")
        assert parser.parse(contract_event(log)) is None

    def test_bounds(self, parser):
        assert parser.parse(contract_event(locked_log(10**9))).amount == 10**9
        assert parser.parse(contract_event(locked_log(10**9 - 1))) is None
        assert parser.parse(contract_event(locked_log(10**18))).amount == 10**18
        assert parser.parse(contract_event(locked_log(10**18 + 1))) is None

    def test_non_dict_payload_dropped(self, parser):
        raw = RawEvent(chain=ChainId.EVM, tx_id=evm_tx_hash(1), payload=["Locked"])
        assert parser.parse(raw) is None
