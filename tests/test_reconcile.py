"""Tests for origin acknowledgement reconciliation."""

import asyncio

import pytest

from bridgerelay.chains import ChainId, Direction, source_tx_binding
from bridgerelay.errors import ConnectivityError
from bridgerelay.ledger.models import AckStatus, RecordStatus
from bridgerelay.relay.conversion import AmountConverter
from bridgerelay.relay.dispatcher import ReleaseDispatcher
from bridgerelay.relay.reconcile import AcknowledgementReconciler

from conftest import NO_DELAY, evm_tx_hash


@pytest.fixture
def dispatcher(store, solana_chain, evm_chain):
    return ReleaseDispatcher(
        Direction.CONTRACT_TO_NATIVE,
        destination=solana_chain,
        store=store,
        converter=AmountConverter(18, 9),
        min_amount=10**9,
        max_amount=10**18,
        origin=evm_chain,
        backoff=NO_DELAY,
    )


async def released(store, n, ack=AckStatus.FAILED):
    tx_hash = evm_tx_hash(n)
    await store.try_claim(ChainId.EVM, tx_hash, amount=10**18)
    await store.finalize(ChainId.EVM, tx_hash, f"sig-{n}", RecordStatus.CONFIRMED)
    await store.set_origin_ack(ChainId.EVM, tx_hash, ack)
    return tx_hash


class TestReconciler:
    @pytest.mark.asyncio
    async def test_retries_outstanding_acknowledgements(self, store, evm_chain, dispatcher):
        failed = await released(store, 1, AckStatus.FAILED)
        pending = await released(store, 2, AckStatus.PENDING)
        done = await released(store, 3, AckStatus.DONE)

        report = await AcknowledgementReconciler(store, dispatcher).run_once()

        assert (report.checked, report.acknowledged, report.failed) == (2, 2, 0)
        assert evm_chain.acknowledged == {
            source_tx_binding(ChainId.EVM, failed),
            source_tx_binding(ChainId.EVM, pending),
        }
        assert (await store.get(ChainId.EVM, done)).origin_ack_status == AckStatus.DONE.value
        assert await store.pending_acknowledgements() == []

    @pytest.mark.asyncio
    async def test_still_failing_reported(self, store, evm_chain, dispatcher):
        tx_hash = await released(store, 1)
        evm_chain.ack_errors = [ConnectivityError("rpc down", chain="evm")]

        report = await AcknowledgementReconciler(store, dispatcher).run_once()

        assert report.failed == 1
        assert (await store.get(ChainId.EVM, tx_hash)).origin_ack_status == AckStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_unconfirmed_records_ignored(self, store, dispatcher):
        await store.try_claim(ChainId.EVM, evm_tx_hash(4), amount=10**18)

        report = await AcknowledgementReconciler(store, dispatcher).run_once()

        assert report.checked == 0

    @pytest.mark.asyncio
    async def test_concurrent_acknowledgement_marked_once(self, store, evm_chain, dispatcher):
        tx_hash = await released(store, 1, AckStatus.PENDING)
        evm_chain.ack_delay = 0.05

        status, report = await asyncio.gather(
            dispatcher.acknowledge(ChainId.EVM, tx_hash),
            AcknowledgementReconciler(store, dispatcher).run_once(),
        )

        assert status == AckStatus.DONE
        assert report.acknowledged == 1
        assert evm_chain.ack_calls == [source_tx_binding(ChainId.EVM, tx_hash)]

    @pytest.mark.asyncio
    async def test_run_forever_stops(self, store, evm_chain, dispatcher):
        await released(store, 1)
        stop = asyncio.Event()
        reconciler = AcknowledgementReconciler(store, dispatcher)

        task = asyncio.create_task(reconciler.run_forever(0.01, stop))
        for _ in range(200):
            if evm_chain.acknowledged:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert evm_chain.acknowledged

    def test_requires_origin(self, store, solana_chain):
        dispatcher = ReleaseDispatcher(
            Direction.NATIVE_TO_CONTRACT,
            destination=solana_chain,
            store=store,
            converter=AmountConverter(9, 18),
            min_amount=1,
            max_amount=10,
        )
        with pytest.raises(ValueError):
            AcknowledgementReconciler(store, dispatcher)
