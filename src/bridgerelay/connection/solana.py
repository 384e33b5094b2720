"""Solana connection for the bridge program.

JSON-RPC is spoken directly over httpx; transactions are built and signed
with solders. The bridge program is an Anchor program, so instruction data
starts with the 8-byte ``sha256("global:<name>")`` discriminator.
"""

import asyncio
import base64
import hashlib
import json
import logging
import re
import struct
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import httpx
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction

from bridgerelay.chains import ChainId
from bridgerelay.connection.base import (
    BridgeState,
    BroadcastState,
    ChainConnection,
    SignedTransaction,
)
from bridgerelay.errors import (
    ConfigurationError,
    ConfirmationTimeout,
    ConnectivityError,
    FatalDispatchError,
    RetryableDispatchError,
)

logger = logging.getLogger(__name__)

BRIDGE_STATE_SEED = b"bridge_state"
PROCESSED_SEED = b"processed"

# Anchor account layout: discriminator(8) + admin(32) + total_locked(8) + bump(1)
BRIDGE_STATE_SIZE = 8 + 32 + 8 + 1

# JSON-RPC codes for node conditions that say nothing about the transaction
RETRYABLE_RPC_CODES = {-32004, -32005, -32007, -32009, -32014, -32016, 429}
RETRYABLE_MESSAGES = (
    "blockhash not found",
    "node is behind",
    "node is unhealthy",
    "rate limit",
    "too many requests",
)
# Preflight simulation failure, signature verification failure
REJECTED_RPC_CODES = {-32002, -32003}


def anchor_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256("global:<name>")."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


RELEASE_DISCRIMINATOR = anchor_discriminator("release")

BASE58_SECRET_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{80,90}$")


class SolanaRPCError(Exception):
    """JSON-RPC error object returned by the node."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC error {code}: {message}")

    @property
    def logs(self) -> list[str]:
        if isinstance(self.data, dict):
            return self.data.get("logs") or []
        return []


def is_transport_error(error: BaseException) -> bool:
    """True for failures that say nothing about the request itself."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return False


def _keypair_from_json(text: str) -> Keypair:
    secret = bytes(json.loads(text))
    if len(secret) != 64:
        raise ValueError(f"expected 64 secret key bytes, got {len(secret)}")
    return Keypair.from_bytes(secret)


def load_keypair(value: str) -> Keypair:
    """Load a keypair from a base58 secret, a JSON byte array or a keypair file.

    Raises:
        ConfigurationError: if the value cannot be decoded
    """
    value = value.strip()
    try:
        if value.startswith("["):
            return _keypair_from_json(value)
        path = Path(value).expanduser()
        if path.is_file():
            return _keypair_from_json(path.read_text())
        if not BASE58_SECRET_RE.match(value):
            raise ValueError("not a keypair file, JSON byte array or base58 secret key")
        return Keypair.from_base58_string(value)
    except (ValueError, TypeError, OSError) as e:
        raise ConfigurationError(
            f"Invalid Solana admin keypair: {e}", chain=ChainId.SOLANA.value
        ) from e


def find_bridge_state_address(program_id: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address([BRIDGE_STATE_SEED], program_id)
    return address


def find_processed_address(program_id: Pubkey, binding: bytes) -> Pubkey:
    """PDA whose existence marks ``binding`` as released."""
    address, _ = Pubkey.find_program_address([PROCESSED_SEED, binding], program_id)
    return address


def build_release_instruction(
    program_id: Pubkey,
    admin: Pubkey,
    recipient: Pubkey,
    amount: int,
    binding: bytes,
) -> Instruction:
    """Build the program's ``release(amount: u64, source_tx_hash: [u8; 32])`` call."""
    if len(binding) != 32:
        raise ValueError(f"binding must be 32 bytes, got {len(binding)}")
    if not 0 < amount < 2**64:
        raise ValueError(f"amount out of u64 range: {amount}")

    data = RELEASE_DISCRIMINATOR + struct.pack("<Q", amount) + binding
    accounts = [
        AccountMeta(find_bridge_state_address(program_id), is_signer=False, is_writable=True),
        AccountMeta(find_processed_address(program_id, binding), is_signer=False, is_writable=True),
        AccountMeta(admin, is_signer=True, is_writable=True),
        AccountMeta(recipient, is_signer=False, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, data, accounts)


def decode_bridge_state(data: bytes) -> tuple[str, int]:
    """Decode ``(admin, total_locked)`` from the raw bridge_state account."""
    if len(data) < BRIDGE_STATE_SIZE:
        raise ValueError(f"bridge_state account too short: {len(data)} bytes")
    admin = Pubkey.from_bytes(data[8:40])
    (total_locked,) = struct.unpack_from("<Q", data, 40)
    return str(admin), total_locked


class SolanaConnection(ChainConnection):
    """Connection to the Solana bridge program."""

    def __init__(
        self,
        rpc_url: str,
        program_id: str,
        keypair: Keypair,
        ws_url: str = "",
        commitment: str = "confirmed",
        poll_interval: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(ChainId.SOLANA, rpc_url, ws_url)
        try:
            self.program_id = Pubkey.from_string(program_id)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid Solana program id: {program_id}", chain=ChainId.SOLANA.value
            ) from e
        self.keypair = keypair
        self.commitment = commitment
        self.poll_interval = poll_interval
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

    @classmethod
    def from_settings(cls, settings) -> "SolanaConnection":
        return cls(
            rpc_url=settings.solana_rpc_url,
            program_id=settings.solana_program_id,
            keypair=load_keypair(settings.solana_admin_keypair),
            ws_url=settings.solana_websocket_url,
            commitment=settings.solana_commitment,
            poll_interval=settings.confirmation_poll_interval,
        )

    @property
    def identity(self) -> str:
        return str(self.keypair.pubkey())

    @property
    def bridge_address(self) -> str:
        return str(self.program_id)

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0, transport=self._transport)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _rpc(self, method: str, params: Optional[list] = None) -> Any:
        """Send one JSON-RPC request and return its ``result``.

        Raises:
            SolanaRPCError: the node answered with an error object
            httpx.HTTPError: transport or HTTP status failure
        """
        await self.connect()
        self._request_id += 1
        response = await self._client.post(
            self.endpoint,
            json={
                "jsonrpc": "2.0",
                "id": self._request_id,
                "method": method,
                "params": params or [],
            },
        )
        response.raise_for_status()
        data = response.json()
        if data.get("error"):
            error = data["error"]
            raise SolanaRPCError(error.get("code", 0), error.get("message", ""), error.get("data"))
        return data.get("result")

    async def _read(self, method: str, params: Optional[list] = None) -> Any:
        return await self.with_reconnect(
            method, lambda: self._rpc(method, params), is_transport_error
        )

    async def get_head(self) -> int:
        return await self._read("getSlot", [{"commitment": self.commitment}])

    async def get_fee_balance(self) -> int:
        result = await self._read("getBalance", [self.identity, {"commitment": self.commitment}])
        return int(result["value"])

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        result = await self._read(
            "getAccountInfo",
            [str(address), {"encoding": "base64", "commitment": self.commitment}],
        )
        value = result.get("value") if result else None
        if value is None:
            return None
        encoded, _encoding = value["data"]
        return base64.b64decode(encoded)

    async def get_bridge_state(self) -> BridgeState:
        data = await self.get_account_data(find_bridge_state_address(self.program_id))
        if data is None:
            raise ConfigurationError(
                "bridge_state account not found; program not initialized",
                chain=ChainId.SOLANA.value,
            )
        admin, total_locked = decode_bridge_state(data)
        return BridgeState(
            chain=ChainId.SOLANA,
            admin=admin,
            total_locked=total_locked,
            fetched_at=datetime.now(timezone.utc),
        )

    async def is_release_processed(self, binding: bytes) -> bool:
        data = await self.get_account_data(find_processed_address(self.program_id, binding))
        return data is not None

    async def get_signatures_since(self, until: Optional[str], limit: int = 1000) -> list[dict]:
        """Signatures touching the program newer than ``until``, oldest first."""
        options: dict = {"limit": limit, "commitment": self.commitment}
        if until:
            options["until"] = until
        result = await self._read("getSignaturesForAddress", [self.bridge_address, options])
        return list(reversed(result or []))

    async def get_transaction_logs(self, signature: str) -> Optional[dict]:
        """Return ``{"slot", "err", "logs"}`` for a landed transaction, or None."""
        result = await self._read(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not result:
            return None
        meta = result.get("meta") or {}
        return {
            "slot": result.get("slot"),
            "err": meta.get("err"),
            "logs": meta.get("logMessages") or [],
        }

    async def submit_release(
        self,
        recipient: str,
        amount: int,
        binding: bytes,
        source_tx_id: Optional[str] = None,
    ) -> str:
        try:
            recipient_key = Pubkey.from_string(recipient)
        except ValueError as e:
            raise FatalDispatchError(
                f"Invalid recipient {recipient}",
                reason="invalid_recipient",
                chain=ChainId.SOLANA.value,
                source_tx_id=source_tx_id,
            ) from e

        try:
            latest = await self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        except SolanaRPCError as e:
            raise RetryableDispatchError(
                f"getLatestBlockhash failed: {e.message}",
                chain=ChainId.SOLANA.value,
                source_tx_id=source_tx_id,
            ) from e
        except httpx.HTTPError as e:
            raise RetryableDispatchError(
                f"getLatestBlockhash transport failure: {e}",
                chain=ChainId.SOLANA.value,
                source_tx_id=source_tx_id,
            ) from e

        blockhash = Hash.from_string(latest["value"]["blockhash"])
        instruction = build_release_instruction(
            self.program_id, self.keypair.pubkey(), recipient_key, amount, binding
        )
        message = Message.new_with_blockhash([instruction], self.keypair.pubkey(), blockhash)
        tx = Transaction([self.keypair], message, blockhash)
        signature = str(tx.signatures[0])
        self.remember_signed(
            signature,
            SignedTransaction(bytes(tx), latest["value"].get("lastValidBlockHeight")),
        )

        await self._broadcast(signature, source_tx_id)
        logger.info(f"Release submitted on solana: {signature} ({amount} lamports -> {recipient})")
        return signature

    async def _broadcast(self, signature: str, source_tx_id: Optional[str]) -> None:
        """Send the remembered signed bytes of ``signature``."""
        encoded = base64.b64encode(self.signed_transaction(signature).raw).decode()
        try:
            await self._rpc(
                "sendTransaction",
                [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
            )
        except SolanaRPCError as e:
            raise self._classify_send_error(e, source_tx_id) from e
        except httpx.HTTPError as e:
            # The transaction may have reached the node; its signature is known
            raise RetryableDispatchError(
                f"sendTransaction transport failure: {e}",
                chain=ChainId.SOLANA.value,
                source_tx_id=source_tx_id,
                tx_id=signature,
            ) from e

    async def rebroadcast(
        self, tx_id: str, source_tx_id: Optional[str] = None
    ) -> BroadcastState:
        signed = self.signed_transaction(tx_id)
        if signed is None:
            return BroadcastState.UNKNOWN

        try:
            # Height first: once past valid_until the status below is final
            height = await self._rpc("getBlockHeight", [{"commitment": self.commitment}])
            status = await self._signature_status(tx_id)
        except (SolanaRPCError, httpx.HTTPError) as e:
            raise RetryableDispatchError(
                f"Status check for {tx_id} failed: {e}",
                chain=ChainId.SOLANA.value,
                source_tx_id=source_tx_id,
                tx_id=tx_id,
            ) from e

        if status is not None:
            return BroadcastState.LANDED
        if signed.valid_until is not None and height > signed.valid_until:
            logger.warning(f"Release {tx_id} expired unseen at block height {height}")
            self.forget_signed(tx_id)
            return BroadcastState.EXPIRED

        try:
            await self._broadcast(tx_id, source_tx_id)
        except FatalDispatchError as e:
            if e.reason == "duplicate":
                return BroadcastState.LANDED
            raise
        logger.info(f"Release {tx_id} re-broadcast on solana")
        return BroadcastState.RESENT

    def _classify_send_error(
        self, error: SolanaRPCError, source_tx_id: Optional[str]
    ) -> Exception:
        """Map a sendTransaction error object onto retryable or fatal.

        Fatal is reserved for the ledger rejecting the release itself: a
        failed simulation, a program error or signature failure. Node
        health, rate limits and stale blockhashes are retried.
        """
        text = f"{error.message} {' '.join(error.logs)}"
        lowered = text.lower()
        if (
            error.code in RETRYABLE_RPC_CODES
            or any(marker in lowered for marker in RETRYABLE_MESSAGES)
        ):
            return RetryableDispatchError(
                f"sendTransaction rejected transiently: {error.message}",
                chain=ChainId.SOLANA.value,
                source_tx_id=source_tx_id,
            )

        if "already been processed" in lowered:
            reason = "duplicate"
        elif "already in use" in lowered:
            reason = "already_processed"
        elif "insufficient" in lowered:
            reason = "insufficient_balance"
        elif (
            error.logs
            or "custom program error" in lowered
            or error.code in REJECTED_RPC_CODES
        ):
            reason = "rejected"
        else:
            return RetryableDispatchError(
                f"sendTransaction failed: {error}",
                chain=ChainId.SOLANA.value,
                source_tx_id=source_tx_id,
            )
        return FatalDispatchError(
            f"Release rejected: {error.message}",
            reason=reason,
            chain=ChainId.SOLANA.value,
            source_tx_id=source_tx_id,
        )

    async def _signature_status(self, signature: str) -> Optional[dict]:
        result = await self._rpc(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
        )
        return ((result or {}).get("value") or [None])[0]

    async def wait_for_confirmation(
        self,
        tx_id: str,
        timeout: float,
        source_tx_id: Optional[str] = None,
    ) -> int:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                status = await self._signature_status(tx_id)
            except (SolanaRPCError, httpx.HTTPError) as e:
                logger.warning(f"Status poll for {tx_id} failed: {e}")
                status = None

            if status is not None:
                if status.get("err") is not None:
                    raise FatalDispatchError(
                        f"Release {tx_id} failed on chain: {status['err']}",
                        reason="failed_on_chain",
                        chain=ChainId.SOLANA.value,
                        source_tx_id=source_tx_id,
                    )
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return int(status.get("slot") or 0)

            if loop.time() >= deadline:
                raise ConfirmationTimeout(
                    f"Release {tx_id} not confirmed after {timeout}s",
                    tx_id=tx_id,
                    chain=ChainId.SOLANA.value,
                    source_tx_id=source_tx_id,
                )
            await asyncio.sleep(self.poll_interval)
