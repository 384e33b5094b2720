"""Pytest configuration and fixtures."""

import asyncio
import os
from datetime import datetime, timezone
from typing import Optional

import pytest
import pytest_asyncio
from eth_abi import encode

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "true"

from bridgerelay.chains import ChainId, Direction
from bridgerelay.config import Settings, get_settings
from bridgerelay.connection.base import BridgeState, ChainConnection
from bridgerelay.connection.evm import LOCKED_TOPIC
from bridgerelay.errors import ConnectivityError
from bridgerelay.ledger.database import create_engine_for_url, create_session_factory, init_db
from bridgerelay.ledger.dedup import DedupStore
from bridgerelay.scanner.base import RawEvent
from bridgerelay.utils.locks import clear_signer_locks
from bridgerelay.utils.retry import Backoff

PROGRAM_ID = "6TosvM79pTn5ZmCyYUMuSeDcWjESY4bT7wmdyEArKia5"
SOLANA_USER = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
SOLANA_RECIPIENT = "SysvarRent111111111111111111111111111111111"
EVM_CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
EVM_USER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
EVM_RECIPIENT = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
EVM_ADMIN_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"

NO_DELAY = Backoff(base_delay=0, max_delay=0, jitter=0)


def evm_tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


@pytest.fixture(autouse=True)
def reset_globals():
    """Signer locks and cached settings must not leak between tests."""
    clear_signer_locks()
    get_settings.cache_clear()
    yield
    clear_signer_locks()
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Complete relay settings with instant retries."""
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}",
        solana_rpc_url="http://127.0.0.1:8899",
        solana_program_id=PROGRAM_ID,
        solana_admin_keypair="test-keypair",
        evm_rpc_url="http://127.0.0.1:8545",
        evm_contract_address=EVM_CONTRACT,
        evm_admin_private_key=EVM_ADMIN_KEY,
        retry_base_delay=0,
        retry_max_delay=0,
        reconnect_base_delay=0,
        reconnect_max_delay=0,
        reconnect_jitter=0,
        confirmation_timeout=1,
        status_interval=3600,
        reconcile_interval=3600,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine with the schema created."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'dedup.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(db_engine) -> DedupStore:
    return DedupStore(create_session_factory(db_engine))


class FakeChain(ChainConnection):
    """In-memory ledger standing in for a chain connection.

    Errors queued in ``submit_errors`` / ``confirm_errors`` / ``ack_errors``
    are raised one per call before the operation starts succeeding.
    """

    def __init__(self, chain_id: ChainId, balance: int = 10**18, reachable: bool = True):
        super().__init__(chain_id, f"fake://{chain_id.value}")
        self.balance = balance
        self.reachable = reachable
        self.submit_errors: list[Exception] = []
        self.confirm_errors: list[Exception] = []
        self.ack_errors: list[Exception] = []
        self.submitted: list[tuple[str, int, bytes]] = []
        self.released: set[bytes] = set()
        self.acknowledged: set[bytes] = set()
        self.ack_calls: list[bytes] = []
        self.submit_delay = 0.0
        self.ack_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self._pending: dict[str, bytes] = {}

    @property
    def identity(self) -> str:
        return f"{self.chain_id.value}-admin"

    @property
    def bridge_address(self) -> str:
        return f"{self.chain_id.value}-bridge"

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def get_head(self) -> int:
        if not self.reachable:
            raise ConnectivityError("connection refused", chain=self.chain_id.value)
        return 100

    async def get_fee_balance(self) -> int:
        return self.balance

    async def get_bridge_state(self) -> BridgeState:
        return BridgeState(self.chain_id, self.identity, 0, datetime.now(timezone.utc))

    async def submit_release(self, recipient, amount, binding, source_tx_id=None) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.submit_delay:
                await asyncio.sleep(self.submit_delay)
            if self.submit_errors:
                raise self.submit_errors.pop(0)
            self.submitted.append((recipient, amount, binding))
            tx_id = f"{self.chain_id.value}-release-{len(self.submitted)}"
            self._pending[tx_id] = binding
            return tx_id
        finally:
            self.in_flight -= 1

    async def wait_for_confirmation(self, tx_id, timeout, source_tx_id=None) -> int:
        if self.confirm_errors:
            raise self.confirm_errors.pop(0)
        self.released.add(self._pending[tx_id])
        return 101

    async def is_release_processed(self, binding: bytes) -> bool:
        return binding in self.released

    async def mark_source_processed(self, binding: bytes, source_tx_id=None) -> str:
        self.ack_calls.append(binding)
        if self.ack_delay:
            await asyncio.sleep(self.ack_delay)
        if self.ack_errors:
            raise self.ack_errors.pop(0)
        self.acknowledged.add(binding)
        return f"{self.chain_id.value}-ack-{len(self.acknowledged)}"

    async def is_source_processed(self, binding: bytes) -> bool:
        return binding in self.acknowledged


class FakeWatcher:
    """Watcher yielding a fixed list of events.

    With ``stay_open`` the subscription stays alive after the scripted events
    until stop() is called; ``error`` is raised once the events are exhausted.
    """

    def __init__(self, chain_id: ChainId, events=(), stay_open: bool = False,
                 error: Optional[BaseException] = None):
        self.chain_id = chain_id
        self.events = list(events)
        self.stay_open = stay_open
        self.error = error
        self.stopped = False
        self._stop_event: Optional[asyncio.Event] = None

    def _event(self) -> asyncio.Event:
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        return self._stop_event

    async def subscribe(self):
        for event in self.events:
            if self._event().is_set():
                return
            yield event
        if self.error is not None:
            raise self.error
        if self.stay_open:
            await self._event().wait()

    async def stop(self) -> None:
        self.stopped = True
        self._event().set()


@pytest.fixture
def solana_chain() -> FakeChain:
    return FakeChain(ChainId.SOLANA)


@pytest.fixture
def evm_chain() -> FakeChain:
    return FakeChain(ChainId.EVM)


def direction_watchers(a_events=(), b_events=(), **kwargs) -> dict:
    return {
        Direction.NATIVE_TO_CONTRACT: FakeWatcher(ChainId.SOLANA, a_events, **kwargs),
        Direction.CONTRACT_TO_NATIVE: FakeWatcher(ChainId.EVM, b_events, **kwargs),
    }


def lock_line(amount: int, source: str = SOLANA_USER, destination: str = EVM_RECIPIENT) -> str:
    """Log line emitted by the bridge program's lock instruction."""
    return f"Program log: Locked {amount} lamports from {source} to destination {destination}"


def native_raw(tx_id: str, amount: int, destination: str = EVM_RECIPIENT, slot: int = 10) -> RawEvent:
    lines = [
        f"Program {PROGRAM_ID} invoke [1]",
        lock_line(amount, destination=destination),
        f"Program {PROGRAM_ID} success",
    ]
    return RawEvent(chain=ChainId.SOLANA, tx_id=tx_id, payload=lines, position=slot)


def locked_log(amount: int, destination: str = SOLANA_RECIPIENT, sender: str = EVM_USER,
               tx_hash: Optional[str] = None, block: int = 16) -> dict:
    """JSON-RPC log object for a Locked event."""
    data = encode(["uint256", "string", "uint256"], [amount, destination, 1_700_000_000])
    return {
        "address": EVM_CONTRACT,
        "topics": [LOCKED_TOPIC, "0x" + "0" * 24 + sender[2:].lower()],
        "data": "0x" + data.hex(),
        "blockNumber": hex(block),
        "transactionHash": tx_hash or evm_tx_hash(1),
        "removed": False,
    }


def contract_raw(tx_hash: str, amount: int, destination: str = SOLANA_RECIPIENT) -> RawEvent:
    log = locked_log(amount, destination=destination, tx_hash=tx_hash)
    return RawEvent(chain=ChainId.EVM, tx_id=tx_hash, payload=log, position=16)
