"""Concurrency control for admin signing identities.

Each chain's admin key is a single exclusive resource: releases into that
chain and acknowledgements issued on it must be submitted one at a time so
they never race for the same nonce / blockhash slot.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registry: chain id -> asyncio.Lock
_signer_locks: dict[str, asyncio.Lock] = {}
_registry_lock = asyncio.Lock()


async def get_signer_lock(chain_id: str) -> asyncio.Lock:
    """Get or create the submission lock for a chain.

    Args:
        chain_id: Chain identifier (e.g. "solana", "evm")

    Returns:
        asyncio.Lock guarding the chain's admin identity
    """
    async with _registry_lock:
        if chain_id not in _signer_locks:
            _signer_locks[chain_id] = asyncio.Lock()
        return _signer_locks[chain_id]


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


@asynccontextmanager
async def signer_lock(
    chain_id: str,
    timeout: Optional[float] = 60.0,
    operation: str = "submit",
):
    """Hold the chain's signer lock for the duration of the block.

    Args:
        chain_id: Chain identifier
        timeout: Maximum time to wait for the lock (None = wait forever)
        operation: Description for logging

    Example:
        async with signer_lock("evm", operation="release"):
            tx_id = await connection.submit_release(...)
    """
    lock = await get_signer_lock(chain_id)
    acquired = False

    try:
        if timeout:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        else:
            await lock.acquire()
        acquired = True
    except asyncio.TimeoutError:
        logger.warning(f"Signer lock timeout for {chain_id} after {timeout}s: {operation}")
        raise LockTimeoutError(
            f"Could not acquire signer lock for {chain_id} within {timeout}s"
        )

    logger.debug(f"Signer lock acquired for {chain_id}: {operation}")
    try:
        yield
    finally:
        if acquired:
            lock.release()
            logger.debug(f"Signer lock released for {chain_id}: {operation}")


def clear_signer_locks() -> None:
    """Clear all signer locks (useful for testing)."""
    _signer_locks.clear()
