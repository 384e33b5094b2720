"""EVM connection for the bridge contract.

Uses web3.py's AsyncWeb3 for reads and eth_account for local signing. The
contract owner key is the admin identity.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import (
    ContractCustomError,
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    TransactionNotFound,
    Web3RPCError,
)

from bridgerelay.chains import EVM_ZERO_ADDRESS, ChainId, is_evm_address
from bridgerelay.connection.base import (
    BridgeState,
    BroadcastState,
    ChainConnection,
    SignedTransaction,
)
from bridgerelay.errors import (
    ConfigurationError,
    ConfirmationTimeout,
    DispatchError,
    FatalDispatchError,
    RetryableDispatchError,
)

logger = logging.getLogger(__name__)

LOCKED_EVENT_SIGNATURE = "Locked(address,uint256,string,uint256)"
LOCKED_TOPIC = Web3.to_hex(Web3.keccak(text=LOCKED_EVENT_SIGNATURE))

BRIDGE_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "sourceTxHash", "type": "bytes32"},
        ],
        "name": "release",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "destinationAddress", "type": "string"},
        ],
        "name": "lock",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "sourceTxHash", "type": "bytes32"}],
        "name": "markSourceTransactionProcessed",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "sourceTxHash", "type": "bytes32"}],
        "name": "isSourceTransactionProcessed",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "txHash", "type": "bytes32"}],
        "name": "isTxProcessed",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getBridgeBalance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "destinationAddress", "type": "string"},
            {"indexed": False, "name": "timestamp", "type": "uint256"},
        ],
        "name": "Locked",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": True, "name": "sourceTxHash", "type": "bytes32"},
            {"indexed": False, "name": "timestamp", "type": "uint256"},
        ],
        "name": "Released",
        "type": "event",
    },
]

# Custom error selector -> FatalDispatchError reason
CUSTOM_ERRORS = {
    "TransactionAlreadyProcessed()": "already_processed",
    "InvalidAmount()": "invalid_amount",
    "InvalidRecipient()": "invalid_recipient",
    "InsufficientBalance()": "insufficient_balance",
    "TransferFailed()": "transfer_failed",
    "OwnableUnauthorizedAccount(address)": "unauthorized",
}
ERROR_SELECTORS = {
    bytes(Web3.keccak(text=signature))[:4].hex(): reason
    for signature, reason in CUSTOM_ERRORS.items()
}

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, ProviderConnectionError)


def is_transport_error(error: BaseException) -> bool:
    return isinstance(error, TRANSPORT_ERRORS)


def custom_error_reason(error: ContractLogicError) -> str:
    """Map a contract revert onto a FatalDispatchError reason."""
    data = error.data if isinstance(error.data, str) else ""
    selector = data[2:10].lower() if data.startswith("0x") else data[:8].lower()
    return ERROR_SELECTORS.get(selector, "reverted")


def normalize_log(log: Any) -> dict:
    """Turn a web3 log (HexBytes fields) into plain JSON-RPC style hex strings."""
    return {
        "address": log["address"],
        "topics": [Web3.to_hex(topic) for topic in log["topics"]],
        "data": Web3.to_hex(log["data"]),
        "blockNumber": log["blockNumber"],
        "transactionHash": Web3.to_hex(log["transactionHash"]),
        "logIndex": log["logIndex"],
        "removed": log.get("removed", False),
    }


class EVMConnection(ChainConnection):
    """Connection to the EVM bridge contract."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        ws_url: str = "",
        poll_interval: float = 2.0,
        confirmation_timeout: float = 120.0,
        w3: Optional[AsyncWeb3] = None,
    ):
        super().__init__(ChainId.EVM, rpc_url, ws_url)
        if not is_evm_address(contract_address):
            raise ConfigurationError(
                f"Invalid bridge contract address: {contract_address}", chain=ChainId.EVM.value
            )
        try:
            self.account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                "Invalid EVM admin private key", chain=ChainId.EVM.value
            ) from e
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.poll_interval = poll_interval
        self.confirmation_timeout = confirmation_timeout
        self.w3 = w3
        self.contract = None
        if w3 is not None:
            self.contract = w3.eth.contract(address=self.contract_address, abi=BRIDGE_ABI)

    @classmethod
    def from_settings(cls, settings) -> "EVMConnection":
        return cls(
            rpc_url=settings.evm_rpc_url,
            contract_address=settings.evm_contract_address,
            private_key=settings.evm_admin_private_key,
            ws_url=settings.evm_websocket_url,
            poll_interval=settings.confirmation_poll_interval,
            confirmation_timeout=settings.confirmation_timeout,
        )

    @property
    def identity(self) -> str:
        return self.account.address

    @property
    def bridge_address(self) -> str:
        return self.contract_address

    async def connect(self) -> None:
        if self.w3 is None:
            self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self.endpoint))
            self.contract = self.w3.eth.contract(address=self.contract_address, abi=BRIDGE_ABI)

    async def close(self) -> None:
        if self.w3 is not None:
            await self.w3.provider.disconnect()
            self.w3 = None
            self.contract = None

    async def _read(self, operation: str, call):
        await self.connect()
        return await self.with_reconnect(operation, call, is_transport_error)

    async def get_head(self) -> int:
        return await self._read("eth_blockNumber", lambda: self.w3.eth.block_number)

    async def get_fee_balance(self) -> int:
        return await self._read(
            "eth_getBalance", lambda: self.w3.eth.get_balance(self.account.address)
        )

    async def get_bridge_state(self) -> BridgeState:
        owner = await self._read("owner", lambda: self.contract.functions.owner().call())
        balance = await self._read(
            "getBridgeBalance", lambda: self.contract.functions.getBridgeBalance().call()
        )
        return BridgeState(
            chain=ChainId.EVM,
            admin=owner,
            total_locked=balance,
            fetched_at=datetime.now(timezone.utc),
        )

    async def is_release_processed(self, binding: bytes) -> bool:
        return await self._read(
            "isTxProcessed", lambda: self.contract.functions.isTxProcessed(binding).call()
        )

    async def is_source_processed(self, binding: bytes) -> bool:
        return await self._read(
            "isSourceTransactionProcessed",
            lambda: self.contract.functions.isSourceTransactionProcessed(binding).call(),
        )

    async def get_locked_logs(self, from_block: int, to_block: Optional[int] = None) -> list[dict]:
        """Locked logs emitted by the bridge contract in a block range."""
        params = {
            "address": self.contract_address,
            "topics": [LOCKED_TOPIC],
            "fromBlock": from_block,
            "toBlock": to_block if to_block is not None else "latest",
        }
        logs = await self._read("eth_getLogs", lambda: self.w3.eth.get_logs(params))
        return [normalize_log(log) for log in logs]

    async def submit_release(
        self,
        recipient: str,
        amount: int,
        binding: bytes,
        source_tx_id: Optional[str] = None,
    ) -> str:
        if not is_evm_address(recipient) or recipient.lower() == EVM_ZERO_ADDRESS:
            raise FatalDispatchError(
                f"Invalid recipient {recipient}",
                reason="invalid_recipient",
                chain=ChainId.EVM.value,
                source_tx_id=source_tx_id,
            )
        await self.connect()
        function = self.contract_function(
            "release", Web3.to_checksum_address(recipient), amount, binding
        )
        tx_hash = await self._send(function, "release", source_tx_id)
        logger.info(f"Release submitted on evm: {tx_hash} ({amount} wei -> {recipient})")
        return tx_hash

    async def mark_source_processed(
        self, binding: bytes, source_tx_id: Optional[str] = None
    ) -> str:
        await self.connect()
        function = self.contract_function("markSourceTransactionProcessed", binding)
        tx_hash = await self._send(function, "markSourceTransactionProcessed", source_tx_id)
        await self.wait_for_confirmation(tx_hash, self.confirmation_timeout, source_tx_id)
        return tx_hash

    def contract_function(self, name: str, *args):
        if self.contract is None:
            raise DispatchError("EVM connection not open", chain=ChainId.EVM.value)
        return getattr(self.contract.functions, name)(*args)

    async def _send(self, function, operation: str, source_tx_id: Optional[str]) -> str:
        """Build, sign and broadcast a contract call from the admin account.

        Raises:
            FatalDispatchError: the call reverts in simulation
            RetryableDispatchError: transport failure or transient node rejection
        """
        chain = ChainId.EVM.value
        try:
            nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            chain_id = await self.w3.eth.chain_id
            tx = await function.build_transaction(
                {"from": self.account.address, "nonce": nonce, "chainId": chain_id}
            )
        except (ContractCustomError, ContractLogicError) as e:
            reason = custom_error_reason(e)
            raise FatalDispatchError(
                f"{operation} reverted: {reason}", reason=reason, chain=chain,
                source_tx_id=source_tx_id,
            ) from e
        except TRANSPORT_ERRORS as e:
            raise RetryableDispatchError(
                f"{operation} build failed: {e}", chain=chain, source_tx_id=source_tx_id
            ) from e

        signed = self.account.sign_transaction(tx)
        tx_hash = Web3.to_hex(signed.hash)
        self.remember_signed(tx_hash, SignedTransaction(bytes(signed.raw_transaction)))
        try:
            await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except TRANSPORT_ERRORS as e:
            raise RetryableDispatchError(
                f"{operation} broadcast failed: {e}", chain=chain,
                source_tx_id=source_tx_id, tx_id=tx_hash,
            ) from e
        except Web3RPCError as e:
            message = str(e).lower()
            if "already known" in message:
                return tx_hash
            if "insufficient funds" in message:
                raise FatalDispatchError(
                    f"{operation} rejected: admin cannot pay gas", reason="insufficient_fee_balance",
                    chain=chain, source_tx_id=source_tx_id,
                ) from e
            raise RetryableDispatchError(
                f"{operation} rejected by node: {e}", chain=chain, source_tx_id=source_tx_id
            ) from e

        return tx_hash

    async def rebroadcast(
        self, tx_id: str, source_tx_id: Optional[str] = None
    ) -> BroadcastState:
        signed = self.signed_transaction(tx_id)
        if signed is None:
            return BroadcastState.UNKNOWN

        chain = ChainId.EVM.value
        await self.connect()
        try:
            await self.w3.eth.get_transaction(tx_id)
            return BroadcastState.LANDED
        except TransactionNotFound:
            pass
        except TRANSPORT_ERRORS as e:
            raise RetryableDispatchError(
                f"Lookup of {tx_id} failed: {e}", chain=chain,
                source_tx_id=source_tx_id, tx_id=tx_id,
            ) from e

        try:
            await self.w3.eth.send_raw_transaction(signed.raw)
        except TRANSPORT_ERRORS as e:
            raise RetryableDispatchError(
                f"Re-broadcast of {tx_id} failed: {e}", chain=chain,
                source_tx_id=source_tx_id, tx_id=tx_id,
            ) from e
        except Web3RPCError as e:
            message = str(e).lower()
            if "already known" in message:
                return BroadcastState.LANDED
            if "nonce too low" in message:
                # Nonce taken by another transaction; these bytes can never land
                logger.warning(f"Release {tx_id} superseded: {e}")
                self.forget_signed(tx_id)
                return BroadcastState.EXPIRED
            raise RetryableDispatchError(
                f"Re-broadcast of {tx_id} rejected by node: {e}", chain=chain,
                source_tx_id=source_tx_id, tx_id=tx_id,
            ) from e

        logger.info(f"Release {tx_id} re-broadcast on evm")
        return BroadcastState.RESENT

    async def wait_for_confirmation(
        self,
        tx_id: str,
        timeout: float,
        source_tx_id: Optional[str] = None,
    ) -> int:
        await self.connect()
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_id, timeout=timeout, poll_latency=self.poll_interval
            )
        except TimeExhausted as e:
            raise ConfirmationTimeout(
                f"Transaction {tx_id} not confirmed after {timeout}s",
                tx_id=tx_id, chain=ChainId.EVM.value, source_tx_id=source_tx_id,
            ) from e
        except TRANSPORT_ERRORS as e:
            raise RetryableDispatchError(
                f"Receipt poll for {tx_id} failed: {e}",
                chain=ChainId.EVM.value, source_tx_id=source_tx_id, tx_id=tx_id,
            ) from e

        if receipt["status"] == 0:
            raise FatalDispatchError(
                f"Transaction {tx_id} reverted (gasUsed={receipt.get('gasUsed')})",
                reason="reverted", chain=ChainId.EVM.value, source_tx_id=source_tx_id,
            )
        return receipt["blockNumber"]
