import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from apex_engine.endpoint_pool import Endpoint_Pool
from apex_engine.errors import TransportExhausted

logger = logging.getLogger("Nonce_Core")


class Nonce_Core:
    """
    Hands out nonces for the signing account in strict program order.

    Every read or write of the counter happens under ``self.lock``. A nonce
    reserved through ``reserve()`` keeps the lock until the caller's submit
    has returned, so allocate-then-submit steps never interleave.
    """

    MAX_RETRIES = 3
    RETRY_DELAY = 1.0

    def __init__(self, pool: Endpoint_Pool, address: str):
        self.pool = pool
        self.address = address
        self.lock = asyncio.Lock()
        self.nonce: Optional[int] = None

    async def initialize(self) -> None:
        """Initialize the counter from the network, retrying with backoff."""
        async with self.lock:
            self.nonce = await self._fetch_pending_nonce_with_retries()
            logger.debug(f"Nonce_Core initialized for {self.address[:10]}... at {self.nonce}")

    async def next(self) -> int:
        """Return the current nonce and advance the counter."""
        async with self.lock:
            return await self._allocate()

    async def resync(self) -> int:
        """Replace the local counter with the network's pending view."""
        async with self.lock:
            return await self._resync_locked()

    @asynccontextmanager
    async def reserve(self) -> AsyncIterator[int]:
        """
        Allocate a nonce and hold the allocator until the block exits.

        Any exception inside the block means the nonce may or may not have
        reached the network, so the counter is resynced before the lock is
        released. If that read fails too, or the block was cancelled, the
        counter is marked stale and the next allocation resyncs first.
        """
        async with self.lock:
            nonce = await self._allocate()
            try:
                yield nonce
            except Exception:
                try:
                    await self._resync_locked()
                except TransportExhausted as e:
                    logger.warning(f"Nonce resync failed, marking stale: {e}")
                    self.nonce = None
                raise
            except BaseException:
                # Cancelled mid-submit
                self.nonce = None
                raise

    async def _allocate(self) -> int:
        if self.nonce is None:
            await self._resync_locked()
        nonce = self.nonce
        self.nonce = nonce + 1
        logger.debug(f"Allocated nonce {nonce} for {self.address[:10]}...")
        return nonce

    async def _resync_locked(self) -> int:
        self.nonce = await self.pool.query("get_transaction_count", self.address, "pending")
        logger.info(f"Nonce synchronized to {self.nonce}")
        return self.nonce

    async def _fetch_pending_nonce_with_retries(self) -> int:
        """Fetch the pending nonce with exponential backoff."""
        backoff = self.RETRY_DELAY
        for attempt in range(self.MAX_RETRIES):
            try:
                return await self.pool.query("get_transaction_count", self.address, "pending")
            except TransportExhausted as e:
                if attempt == self.MAX_RETRIES - 1:
                    logger.error(f"Nonce fetch failed after retries: {e}")
                    raise
                logger.warning(f"Nonce fetch attempt {attempt + 1} failed: {e}. Retrying in {backoff}s...")
                await asyncio.sleep(backoff)
                backoff *= 2

    async def stop(self) -> None:
        async with self.lock:
            self.nonce = None
        logger.debug("Nonce Core stopped successfully.")
