import asyncio
import enum
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import websockets

from errors import MaxRetriesExceededError, NotConnectedError

logger = logging.getLogger("StreamTransport")

EVENTS = ("opened", "message", "error", "closed", "max_retries_exceeded")


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


@dataclass
class Subscription:
    id: Any
    filter_criteria: Any
    commitment: str = "confirmed"
    method: str = "logsSubscribe"

    def to_message(self) -> str:
        return json.dumps({
            "jsonrpc": "2.0",
            "id": self.id,
            "method": self.method,
            "params": [self.filter_criteria, {"commitment": self.commitment}],
        })


def reconnect_delay(retry_count: int, initial_backoff: float, max_backoff: float) -> float:
    return min(initial_backoff * (2 ** retry_count), max_backoff)


class StreamTransport:
    """
    One live websocket subscription connection with reconnect/backoff.

    Callers register callbacks with `add_listener` and receive
    opened / message / error / closed / max_retries_exceeded events.
    Message callbacks run one at a time in arrival order.
    """

    def __init__(
        self,
        url: str,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        max_retries: Optional[int] = None,
        debug: bool = False,
        connector: Callable[[str], Any] = websockets.connect,
    ):
        self.url = url
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.max_retries = max_retries
        self.debug = debug
        self.connector = connector

        self.state = ConnectionState.DISCONNECTED
        self.retry_count = 0
        self.subscriptions: List[Subscription] = []
        self.backoff_history: List[float] = []

        self._listeners: Dict[str, List[Callable]] = {name: [] for name in EVENTS}
        self._outbox: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    @classmethod
    def from_settings(cls, transport, **kwargs) -> "StreamTransport":
        return cls(
            transport.url,
            initial_backoff=transport.initial_backoff_sec,
            max_backoff=transport.max_backoff_sec,
            max_retries=transport.max_retries,
            debug=transport.debug,
            **kwargs,
        )

    def add_listener(self, event: str, callback: Callable):
        if event not in self._listeners:
            raise ValueError(f"Unknown transport event: {event}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, *args):
        for callback in list(self._listeners[event]):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Listener for '{event}' failed: {e}")

    def subscribe(self, subscription: Subscription):
        self.subscriptions.append(subscription)
        if self.state is ConnectionState.OPEN:
            self.send(subscription.to_message())

    async def connect(self):
        if self._closing:
            raise NotConnectedError("transport was closed")
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    def send(self, payload):
        if self.state is not ConnectionState.OPEN or self._outbox is None:
            raise NotConnectedError("WebSocket is not connected")
        if not isinstance(payload, str):
            payload = json.dumps(payload)
        self._outbox.put_nowait(payload)

    async def close(self):
        self._closing = True
        was_open = self.state is ConnectionState.OPEN
        self.state = ConnectionState.CLOSING
        task = self._task
        if task is not None and not task.done():
            # Also cancels a pending reconnect sleep.
            task.cancel()
            # From inside a listener the cancellation lands at the next suspension point.
            if task is not asyncio.current_task():
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self.subscriptions.clear()
        self.state = ConnectionState.DISCONNECTED
        if was_open:
            await self._emit("closed")

    async def wait_closed(self):
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _writer(self, websocket, outbox: asyncio.Queue):
        while True:
            payload = await outbox.get()
            await websocket.send(payload)

    async def _session(self, websocket):
        self.retry_count = 0
        self.state = ConnectionState.OPEN
        self._outbox = asyncio.Queue()
        writer = asyncio.create_task(self._writer(websocket, self._outbox))
        try:
            if self.debug:
                logger.info("WebSocket connected")
            await self._emit("opened")
            for sub in self.subscriptions:
                self.send(sub.to_message())
            async for message in websocket:
                await self._emit("message", message)
                if writer.done():
                    writer.result()
        finally:
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"WebSocket writer stopped: {e}")
            self._outbox = None

    async def _run(self):
        while not self._closing:
            self.state = ConnectionState.CONNECTING
            try:
                async with self.connector(self.url) as websocket:
                    await self._session(websocket)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ WebSocket error: {e}")
                await self._emit("error", e)

            if self._closing:
                break
            self.state = ConnectionState.DISCONNECTED
            await self._emit("closed")

            if self.max_retries is not None and self.retry_count >= self.max_retries:
                logger.error(f"🛑 Max reconnect attempts ({self.max_retries}) reached, giving up")
                await self._emit("max_retries_exceeded", MaxRetriesExceededError(self.retry_count))
                return

            delay = reconnect_delay(self.retry_count, self.initial_backoff, self.max_backoff)
            self.backoff_history.append(delay)
            self.retry_count += 1
            logger.warning(f"WebSocket closed. Reconnecting in {delay:.1f}s (attempt {self.retry_count})...")
            await asyncio.sleep(delay)
