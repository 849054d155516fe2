import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from dispatcher import SeenKeys
from rpc_client import RateLimitedClient, find_initialized_mint

logger = logging.getLogger("TokenWatcher")

MintCallback = Callable[[str, str, dict], Awaitable[Any]]


class TokenCreationWatcher:
    """
    Polls an address every `interval_sec` for new token mints.
    Runs as a task until `stop()`.
    """

    def __init__(
        self,
        client: RateLimitedClient,
        address: str,
        on_mint: MintCallback,
        interval_sec: float = 10.0,
        page_size: int = 3,
        seen_capacity: int = 100,
    ):
        self.client = client
        self.address = address
        self.on_mint = on_mint
        self.interval_sec = interval_sec
        self.page_size = page_size
        self.seen = SeenKeys(seen_capacity)
        self.check_count = 0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop.clear()
            logger.info(f"👀 Watching {self.address} for token creation every {self.interval_sec}s")
            self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self):
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self):
        while not self._stop.is_set():
            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"❌ Error in token watch: {e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_sec)
            except asyncio.TimeoutError:
                pass

    async def check_once(self) -> int:
        """One polling pass. Returns the number of mints reported."""
        self.check_count += 1
        logger.debug(f"🔍 Check #{self.check_count} on {self.address[:8]}")
        found = 0
        for sig in await self.client.get_signatures(self.address, limit=self.page_size):
            signature = sig.get("signature") if isinstance(sig, dict) else None
            if not signature or signature in self.seen:
                continue
            tx = await self.client.get_transaction(signature)
            self.seen.check_and_add(signature)
            if not tx:
                continue
            mint = find_initialized_mint(tx)
            if not mint:
                continue
            logger.info(f"🚨 NEW TOKEN CREATED! {mint} https://solscan.io/token/{mint}")
            found += 1
            await self.on_mint(mint, signature, tx)
        if not found:
            logger.debug("😴 No new token creation detected")
        return found
