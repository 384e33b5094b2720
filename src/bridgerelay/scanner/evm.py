"""EVM watcher using eth_subscribe("logs") on the bridge contract."""

import logging
from typing import Optional

from bridgerelay.chains import ChainId
from bridgerelay.connection.evm import LOCKED_TOPIC, EVMConnection
from bridgerelay.scanner.base import ChainWatcher, RawEvent

logger = logging.getLogger(__name__)


def _block_number(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


class EVMWatcher(ChainWatcher):
    """Watch Locked logs emitted by the bridge contract."""

    def __init__(self, connection: EVMConnection, ws_url: Optional[str] = None, **kwargs):
        super().__init__(ChainId.EVM, ws_url or connection.ws_endpoint, **kwargs)
        self.connection = connection

    def subscription_request(self) -> dict:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": [
                "logs",
                {"address": self.connection.bridge_address, "topics": [LOCKED_TOPIC]},
            ],
        }

    def events_from_message(self, message: dict) -> list[RawEvent]:
        if message.get("method") != "eth_subscription":
            return []

        log = message.get("params", {}).get("result")
        if not log or not log.get("transactionHash"):
            return []
        return self._events_from_logs([log])

    async def catch_up(self) -> list[RawEvent]:
        if self.last_position is None:
            return []
        logs = await self.connection.get_locked_logs(self.last_position)
        return self._events_from_logs(logs)

    def _events_from_logs(self, logs: list[dict]) -> list[RawEvent]:
        events = []
        for log in logs:
            if log.get("removed"):
                logger.debug(f"Skipping removed log in {log.get('transactionHash')}")
                continue
            events.append(
                RawEvent(
                    chain=ChainId.EVM,
                    tx_id=log["transactionHash"].lower(),
                    payload=log,
                    position=_block_number(log.get("blockNumber")),
                )
            )
        return events
