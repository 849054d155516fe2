import asyncio
import itertools
import logging
import time
from collections import deque
from decimal import Decimal
from typing import Any, Awaitable, Callable, Deque, List, Optional

import aiohttp

from errors import RateLimitError, RetriesExhaustedError, TransientRequestError, UpstreamError

logger = logging.getLogger("RateLimitedClient")

RATE_LIMIT_CODE = -32429
LAMPORTS_PER_SOL = Decimal(10) ** 9
MINT_INSTRUCTIONS = ("initializeMint", "initializeMint2")


def lamports_to_sol(lamports) -> Decimal:
    return Decimal(int(lamports)) / LAMPORTS_PER_SOL


def account_keys(tx: dict) -> List[str]:
    """Account keys of a transaction, jsonParsed ({"pubkey": ...}) or plain strings."""
    message = ((tx or {}).get("transaction") or {}).get("message") or {}
    keys = []
    for k in message.get("accountKeys") or []:
        if isinstance(k, dict):
            keys.append(str(k.get("pubkey", "") or ""))
        else:
            keys.append(str(k or ""))
    return keys


def _all_instructions(tx: dict) -> List[dict]:
    message = ((tx or {}).get("transaction") or {}).get("message") or {}
    instructions = list(message.get("instructions") or [])
    for inner in ((tx or {}).get("meta") or {}).get("innerInstructions") or []:
        instructions.extend((inner or {}).get("instructions") or [])
    return [ix for ix in instructions if isinstance(ix, dict)]


def find_initialized_mint(tx: dict) -> Optional[str]:
    """Mint address of an spl-token initializeMint(2) instruction, outer or inner."""
    for ix in _all_instructions(tx):
        parsed = ix.get("parsed")
        if isinstance(parsed, dict) and parsed.get("type") in MINT_INSTRUCTIONS:
            mint = (parsed.get("info") or {}).get("mint")
            if mint:
                return str(mint)
    return None


class RateWindow:
    """Sliding window of admission timestamps.

    Never holds more than `max_requests` timestamps younger than `window_sec`.
    """

    def __init__(self, window_sec: float, max_requests: int):
        if window_sec <= 0 or max_requests < 1:
            raise ValueError("window_sec must be > 0 and max_requests >= 1")
        self.window_sec = window_sec
        self.max_requests = max_requests
        self.timestamps: Deque[float] = deque()

    def prune(self, now: float):
        while self.timestamps and now - self.timestamps[0] >= self.window_sec:
            self.timestamps.popleft()

    def wait_time(self, now: float) -> float:
        """Seconds until a slot frees up, 0 when one is available now."""
        self.prune(now)
        if len(self.timestamps) < self.max_requests:
            return 0.0
        return max(0.0, self.window_sec - (now - self.timestamps[0]))

    def record(self, now: float):
        self.timestamps.append(now)

    def count(self, now: float) -> int:
        self.prune(now)
        return len(self.timestamps)


class RateLimitedClient:
    """
    Solana JSON-RPC over HTTP with a shared request quota.

    Rate-limit answers (-32429 / HTTP 429) wait a whole window, transient
    failures wait `transient_backoff_sec`. Both spend one unit of the same
    retry budget; when it is gone the caller gets RetriesExhaustedError.
    """

    def __init__(
        self,
        rpc_url: str,
        window_sec: float = 2.0,
        max_requests: int = 4,
        retries: int = 3,
        transient_backoff_sec: float = 1.0,
        request_timeout_sec: float = 20.0,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.rpc_url = rpc_url
        self.window = RateWindow(window_sec, max_requests)
        self.retries = retries
        self.transient_backoff_sec = transient_backoff_sec
        self.request_timeout_sec = request_timeout_sec
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, rpc_url: str, rate_limit) -> "RateLimitedClient":
        return cls(
            rpc_url,
            window_sec=rate_limit.window_sec,
            max_requests=rate_limit.max_requests,
            retries=rate_limit.retries,
            transient_backoff_sec=rate_limit.transient_backoff_sec,
            request_timeout_sec=rate_limit.request_timeout_sec,
        )

    async def _admit(self):
        # One admission at a time keeps the window single-writer.
        async with self._lock:
            while True:
                now = self._clock()
                wait = self.window.wait_time(now)
                if wait <= 0:
                    self.window.record(now)
                    return
                logger.debug(f"Rate window full, waiting {wait:.3f}s")
                await self._sleep(wait)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout_sec)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _send(self, payload: dict) -> dict:
        session = await self._get_session()
        try:
            async with session.post(self.rpc_url, json=payload) as resp:
                if resp.status == 429:
                    raise RateLimitError(429, await resp.text())
                if resp.status >= 500:
                    raise TransientRequestError(f"HTTP {resp.status} from RPC")
                if resp.status != 200:
                    raise UpstreamError(resp.status, await resp.text())
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise TransientRequestError(f"Undecodable RPC body: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRequestError(f"{type(e).__name__}: {e}") from e

    async def _call_once(self, method: str, params: list):
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        data = await self._send(payload)
        error = data.get("error") if isinstance(data, dict) else None
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            if code == RATE_LIMIT_CODE:
                raise RateLimitError(code, error)
            raise UpstreamError(code, error)
        return data.get("result") if isinstance(data, dict) else None

    async def call(self, method: str, params: list, retries: Optional[int] = None):
        remaining = self.retries if retries is None else retries
        while True:
            await self._admit()
            try:
                return await self._call_once(method, params)
            except RateLimitError as e:
                if remaining <= 0:
                    raise RetriesExhaustedError(method, e) from e
                remaining -= 1
                logger.warning(f"⏳ Rate limit hit on {method}, waiting {self.window.window_sec}s before retry ({remaining} left)")
                await self._sleep(self.window.window_sec)
            except TransientRequestError as e:
                if remaining <= 0:
                    raise RetriesExhaustedError(method, e) from e
                remaining -= 1
                logger.warning(f"⚠️ {method} failed ({e}), retrying in {self.transient_backoff_sec}s ({remaining} left)")
                await self._sleep(self.transient_backoff_sec)

    async def get_signatures(self, address: str, limit: int = 20) -> List[dict]:
        result = await self.call("getSignaturesForAddress", [address, {"limit": limit}])
        if result is None:
            return []
        if not isinstance(result, list):
            raise UpstreamError(None, f"Invalid signature list: {result}")
        return [s for s in result if isinstance(s, dict)]

    async def get_transaction(self, signature: str, commitment: str = "confirmed") -> Optional[dict]:
        return await self.call(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": commitment}],
        )

    async def get_balance(self, address: str) -> Decimal:
        result = await self.call("getBalance", [address])
        value = result.get("value") if isinstance(result, dict) else result
        if not isinstance(value, int):
            raise UpstreamError(None, f"Invalid balance response: {result}")
        return lamports_to_sol(value)

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
