"""Tests for the per-direction pipelines and the relay orchestrator."""

import asyncio

import pytest

from bridgerelay.chains import ChainId, Direction, source_tx_binding
from bridgerelay.errors import ConfigurationError, RetryableDispatchError, WatcherExhaustedError
from bridgerelay.ledger.models import AckStatus, RecordStatus
from bridgerelay.relay.bridge import BridgeRelay
from bridgerelay.scanner.base import RawEvent

from conftest import (
    EVM_RECIPIENT,
    SOLANA_RECIPIENT,
    FakeWatcher,
    contract_raw,
    direction_watchers,
    evm_tx_hash,
    native_raw,
)

SIG_A = "2ZE7Rz8QnLrTq1CxbyfYj7Nwxd9MZ4Gk2wTzpVn8aQbL5uYcK3fXhS6mJ1eR9tW4vP7oN2iD8gA5sC3kB6jH1yFx"
SIG_B = "3MtkC5vX9eJ2Yq8Rw1NfH7bZp4LgD6sA9kT3uV5nQ2cW8xE1mP7iG4oB6hF9jS2yK5dR3aL8tU1vN4wZ6qX7cMe"


@pytest.fixture
def make_relay(settings, store, db_engine, solana_chain, evm_chain):
    def factory(watchers=None, **kwargs):
        return BridgeRelay(
            settings,
            solana=solana_chain,
            evm=evm_chain,
            store=store,
            watchers=watchers or direction_watchers(**kwargs),
            engine=db_engine,
        )

    return factory


async def until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestNativeToContract:
    """Solana locks relayed onto the EVM contract."""

    @pytest.mark.asyncio
    async def test_lock_released_on_evm(self, make_relay, store, evm_chain):
        relay = make_relay(a_events=[native_raw(SIG_A, 100_000_000)])

        await relay.run()

        assert evm_chain.submitted == [
            (EVM_RECIPIENT, 100_000_000 * 10**9, source_tx_binding(ChainId.SOLANA, SIG_A))
        ]
        record = await store.get(ChainId.SOLANA, SIG_A)
        assert record.status == RecordStatus.CONFIRMED.value
        assert record.origin_ack_status == AckStatus.NOT_REQUIRED.value
        assert relay.metrics.event_count("native_to_contract", "confirmed") == 1

    @pytest.mark.asyncio
    async def test_duplicate_delivery_released_once(self, make_relay, evm_chain):
        event = native_raw(SIG_A, 100_000_000)
        relay = make_relay(a_events=[event, event])

        await relay.run()

        assert len(evm_chain.submitted) == 1
        assert relay.metrics.event_count("native_to_contract", "duplicate") == 1

    @pytest.mark.asyncio
    async def test_unrelated_transaction_ignored(self, make_relay, store, evm_chain):
        unrelated = RawEvent(
            chain=ChainId.SOLANA,
            tx_id=SIG_A,
            payload=["Program log: Instruction: Initialize"],
        )
        relay = make_relay(a_events=[unrelated])

        await relay.run()

        assert evm_chain.submitted == []
        assert await store.get(ChainId.SOLANA, SIG_A) is None
        assert relay.metrics.event_count("native_to_contract", "dropped") == 1

    @pytest.mark.asyncio
    async def test_replay_after_restart_not_released(self, make_relay, evm_chain):
        await make_relay(a_events=[native_raw(SIG_A, 100_000_000)]).run()

        restarted = make_relay(a_events=[native_raw(SIG_A, 100_000_000)])
        await restarted.run()

        assert len(evm_chain.submitted) == 1
        assert restarted.metrics.event_count("native_to_contract", "duplicate") == 1

    @pytest.mark.asyncio
    async def test_events_processed_in_delivery_order(self, make_relay, evm_chain):
        relay = make_relay(a_events=[native_raw(SIG_A, 1_000), native_raw(SIG_B, 2_000)])

        await relay.run()

        assert [amount for _, amount, _ in evm_chain.submitted] == [1_000 * 10**9, 2_000 * 10**9]


class TestContractToNative:
    """EVM locks relayed onto the Solana program."""

    @pytest.mark.asyncio
    async def test_lock_released_and_acknowledged(self, make_relay, store, solana_chain, evm_chain):
        tx_hash = evm_tx_hash(42)
        relay = make_relay(b_events=[contract_raw(tx_hash, 5 * 10**17)])

        await relay.run()

        binding = source_tx_binding(ChainId.EVM, tx_hash)
        assert solana_chain.submitted == [(SOLANA_RECIPIENT, 5 * 10**8, binding)]
        assert binding in evm_chain.acknowledged
        record = await store.get(ChainId.EVM, tx_hash)
        assert record.status == RecordStatus.CONFIRMED.value
        assert record.origin_ack_status == AckStatus.DONE.value

    @pytest.mark.asyncio
    async def test_failed_acknowledgement_picked_up_by_reconciler(
        self, make_relay, store, evm_chain
    ):
        tx_hash = evm_tx_hash(43)
        evm_chain.ack_errors = [RetryableDispatchError("nonce too low")]
        relay = make_relay(b_events=[contract_raw(tx_hash, 5 * 10**17)])
        await relay.run()
        assert (await store.get(ChainId.EVM, tx_hash)).origin_ack_status == AckStatus.FAILED.value

        report = await relay.reconcile_once()

        assert report.acknowledged == 1
        assert (await store.get(ChainId.EVM, tx_hash)).origin_ack_status == AckStatus.DONE.value


class TestSupervision:
    """Both directions run independently."""

    @pytest.mark.asyncio
    async def test_direction_failure_isolated(self, make_relay, solana_chain):
        tx_hash = evm_tx_hash(7)
        watchers = {
            Direction.NATIVE_TO_CONTRACT: FakeWatcher(
                ChainId.SOLANA,
                error=WatcherExhaustedError("gave up", chain="solana"),
            ),
            Direction.CONTRACT_TO_NATIVE: FakeWatcher(
                ChainId.EVM, [contract_raw(tx_hash, 5 * 10**17)]
            ),
        }
        relay = make_relay(watchers=watchers)

        await relay.run()

        assert isinstance(relay.pipelines[Direction.NATIVE_TO_CONTRACT].error, WatcherExhaustedError)
        assert relay.pipelines[Direction.CONTRACT_TO_NATIVE].error is None
        assert len(solana_chain.submitted) == 1

    @pytest.mark.asyncio
    async def test_stop_finishes_in_flight_work(self, make_relay, evm_chain):
        evm_chain.submit_delay = 0.05
        relay = make_relay(a_events=[native_raw(SIG_A, 1_000)], stay_open=True)

        task = asyncio.create_task(relay.run())
        await until(lambda: evm_chain.in_flight == 1)
        await relay.stop()
        await asyncio.wait_for(task, timeout=5)

        assert len(evm_chain.submitted) == 1
        assert all(pipeline.watcher.stopped for pipeline in relay.pipelines.values())

    @pytest.mark.asyncio
    async def test_report_status(self, make_relay):
        relay = make_relay(
            a_events=[native_raw(SIG_A, 1_000)],
            b_events=[contract_raw(evm_tx_hash(9), 5 * 10**17)],
        )
        await relay.run()

        summary = await relay.report_status()

        assert summary["native_to_contract"]["confirmed"] == 1
        assert summary["contract_to_native"]["confirmed"] == 1
        assert relay.metrics.registry.get_sample_value(
            "bridge_relay_records",
            {"direction": "native_to_contract", "status": "confirmed"},
        ) == 1


class TestStartup:
    """Liveness checks before any subscription is opened."""

    @pytest.mark.asyncio
    async def test_start_succeeds(self, make_relay, solana_chain):
        relay = make_relay()
        await relay.start()
        assert solana_chain.health.reachable

    @pytest.mark.asyncio
    async def test_unreachable_chain(self, make_relay, evm_chain):
        evm_chain.reachable = False
        with pytest.raises(ConfigurationError):
            await make_relay().start()

    @pytest.mark.asyncio
    async def test_admin_cannot_pay_fees(self, make_relay, solana_chain):
        solana_chain.balance = 0
        with pytest.raises(ConfigurationError):
            await make_relay().start()

    @pytest.mark.asyncio
    async def test_missing_settings(self, make_relay, settings):
        relay = make_relay()
        relay.settings = settings.model_copy(update={"evm_admin_private_key": None})
        with pytest.raises(ConfigurationError) as exc_info:
            await relay.start()
        assert "EVM_ADMIN_PRIVATE_KEY" in str(exc_info.value)
