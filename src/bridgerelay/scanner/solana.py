"""Solana watcher using logsSubscribe on the bridge program."""

import logging
from typing import Optional

from bridgerelay.chains import ChainId
from bridgerelay.connection.solana import SolanaConnection
from bridgerelay.scanner.base import ChainWatcher, RawEvent

logger = logging.getLogger(__name__)


class SolanaWatcher(ChainWatcher):
    """Watch program logs mentioning the bridge program."""

    def __init__(self, connection: SolanaConnection, ws_url: Optional[str] = None, **kwargs):
        super().__init__(ChainId.SOLANA, ws_url or connection.ws_endpoint, **kwargs)
        self.connection = connection

    def subscription_request(self) -> dict:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [
                {"mentions": [self.connection.bridge_address]},
                {"commitment": self.connection.commitment},
            ],
        }

    def events_from_message(self, message: dict) -> list[RawEvent]:
        if message.get("method") != "logsNotification":
            return []

        result = message.get("params", {}).get("result", {})
        value = result.get("value") or {}
        signature = value.get("signature")
        if not signature:
            return []
        if value.get("err") is not None:
            logger.debug(f"Skipping failed transaction {signature}: {value['err']}")
            return []

        return [
            RawEvent(
                chain=ChainId.SOLANA,
                tx_id=signature,
                payload=value.get("logs") or [],
                position=result.get("context", {}).get("slot"),
            )
        ]

    async def catch_up(self) -> list[RawEvent]:
        if self.last_tx_id is None:
            return []

        events = []
        for entry in await self.connection.get_signatures_since(self.last_tx_id):
            if entry.get("err") is not None:
                continue
            tx = await self.connection.get_transaction_logs(entry["signature"])
            if tx is None or tx["err"] is not None:
                continue
            events.append(
                RawEvent(
                    chain=ChainId.SOLANA,
                    tx_id=entry["signature"],
                    payload=tx["logs"],
                    position=tx["slot"],
                )
            )
        return events
