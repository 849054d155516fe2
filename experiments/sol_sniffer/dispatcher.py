import asyncio
import json
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Collection, Deque, Iterable, List, Optional, Sequence, Set

from listener import StreamTransport, Subscription
from risk_engine import PolicyChecker
from rpc_client import RateLimitedClient, account_keys, find_initialized_mint
from settings import BuySettings, LiquidityPool
from sniper import ExecutionResult

logger = logging.getLogger("EventDispatcher")

SOL_MINT = "So11111111111111111111111111111111111111112"


class InstructionLogMatcher:
    """Log-line classifier: an event is of interest when any line contains any needle."""

    def __init__(self, needles: Iterable[str], name: str = "instructions"):
        self.needles = tuple(n for n in needles if n)
        self.name = name

    def __call__(self, logs: Sequence[str]) -> bool:
        return any(
            isinstance(line, str) and any(needle in line for needle in self.needles)
            for line in logs
        )

    def __repr__(self):
        return f"InstructionLogMatcher({self.name})"


TRANSFER_MATCHER = InstructionLogMatcher(
    ["Instruction: Transfer", "Instruction: TransferChecked", "Instruction: Swap", "Program: Jupiter"],
    name="transfers",
)


def pool_creation_matcher(pools: Iterable[LiquidityPool]) -> InstructionLogMatcher:
    enabled = [p for p in pools if p.enabled]
    return InstructionLogMatcher([p.instruction for p in enabled], name="+".join(p.name for p in enabled))


def pool_subscriptions(pools: Iterable[LiquidityPool], commitment: str = "processed") -> List[Subscription]:
    return [
        Subscription(id=p.id, filter_criteria={"mentions": [p.program]}, commitment=commitment)
        for p in pools
        if p.enabled
    ]


def mentions_subscription(addresses: Sequence[str], sub_id: Any = 1, commitment: str = "confirmed") -> Subscription:
    return Subscription(id=sub_id, filter_criteria={"mentions": list(addresses)}, commitment=commitment)


class SeenKeys:
    """
    Bounded dedup memory. Re-checking a key refreshes it, so eviction drops
    the key that has gone longest without being seen.
    """

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._keys: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def check_and_add(self, key: str) -> bool:
        """True when the key is new."""
        if key in self._keys:
            self._keys.move_to_end(key)
            return False
        self._keys[key] = None
        while len(self._keys) > self.capacity:
            self._keys.popitem(last=False)
        return True

    def discard(self, key: str):
        self._keys.pop(key, None)

    def clear(self):
        self._keys.clear()


class ConcurrencyGate:
    def __init__(self, max_active: int):
        if max_active < 1:
            raise ValueError("max_active must be >= 1")
        self.max_active = max_active
        self.active = 0
        self.peak = 0

    def try_acquire(self) -> bool:
        if self.active >= self.max_active:
            return False
        self.active += 1
        self.peak = max(self.peak, self.active)
        return True

    def release(self):
        if self.active <= 0:
            raise RuntimeError("ConcurrencyGate released more often than acquired")
        self.active -= 1


@dataclass
class PendingEvent:
    signature: str
    raw_payload: Any = None
    logs: List[str] = field(default_factory=list)
    transaction: Optional[dict] = None


@dataclass
class DispatchOutcome:
    signature: str
    status: str
    mint: Optional[str] = None
    reason: Optional[str] = None
    execution_signature: Optional[str] = None


EventHandler = Callable[[PendingEvent, dict], Awaitable[Optional[DispatchOutcome]]]


def extract_mint(tx: dict) -> Optional[str]:
    mint = find_initialized_mint(tx)
    if mint:
        return mint
    for balance in ((tx or {}).get("meta") or {}).get("postTokenBalances") or []:
        mint = (balance or {}).get("mint")
        if mint and mint != SOL_MINT:
            return str(mint)
    return None


def payer_of(tx: dict) -> Optional[str]:
    keys = account_keys(tx)
    return keys[0] if keys and keys[0] else None


class EventDispatcher:
    """
    Consumes the transport feed: parse -> predicate -> dedup -> gate -> task.

    Filtering and dedup happen synchronously in arrival order; admitted events
    run as tasks (detail fetch, then `on_event`) and may finish in any order.
    At capacity new events are dropped, never queued.
    """

    def __init__(
        self,
        transport: StreamTransport,
        client: RateLimitedClient,
        predicate: Callable[[Sequence[str]], bool],
        max_concurrent: int = 1,
        seen_capacity: int = 1000,
        history_size: int = 500,
    ):
        self.transport = transport
        self.client = client
        self.predicate = predicate
        self.gate = ConcurrencyGate(max_concurrent)
        self.seen = SeenKeys(seen_capacity)
        self.outcomes: Deque[DispatchOutcome] = deque(maxlen=history_size)
        self.running = False
        self._on_event: Optional[EventHandler] = None
        self._tasks: Set[asyncio.Task] = set()
        self._listening = False

    def open(self, on_event: EventHandler):
        """Accept `submit()`ted events without touching the stream."""
        self._on_event = on_event
        self.running = True

    async def start(self, subscriptions: Iterable[Subscription], on_event: EventHandler):
        self.open(on_event)
        if not self._listening:
            self.transport.add_listener("message", self._on_message)
            self._listening = True
        for sub in subscriptions:
            self.transport.subscribe(sub)
        logger.info(f"🚀 Dispatcher started (predicate={self.predicate!r}, max_concurrent={self.gate.max_active})")
        await self.transport.connect()

    async def stop(self):
        self.running = False
        await self.transport.close()
        # In-flight work runs to completion; each task frees its own slot.
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("🛑 Dispatcher stopped")

    def _on_message(self, raw):
        self.handle_message(raw)

    def parse_message(self, raw) -> Optional[PendingEvent]:
        try:
            data = json.loads(raw if isinstance(raw, (str, bytes, bytearray)) else str(raw))
        except ValueError as e:
            logger.error(f"Dropping undecodable feed message: {e}")
            return None
        if not isinstance(data, dict):
            logger.debug("Dropping non-object feed message")
            return None

        if data.get("error"):
            logger.error(f"🚫 RPC Error: {data['error']}")
            return None
        if "result" in data and "params" not in data:
            logger.info(f"✅ Subscription confirmed (id={data.get('id')}, sub={data.get('result')})")
            return None

        value = ((data.get("params") or {}).get("result") or {}).get("value") or {}
        logs = value.get("logs")
        signature = value.get("signature")
        if not isinstance(logs, list) or not isinstance(signature, str) or not signature:
            logger.debug("Dropping notification without logs/signature")
            return None
        if value.get("err"):
            logger.debug(f"Dropping failed transaction {signature}")
            return None
        return PendingEvent(signature=signature, raw_payload=data, logs=logs)

    def handle_message(self, raw) -> Optional[asyncio.Task]:
        event = self.parse_message(raw)
        if event is None:
            return None
        if not self.predicate(event.logs):
            logger.debug(f"Discarding {event.signature[:16]}: no match for {self.predicate!r}")
            return None
        return self.submit(event)

    def submit(self, event: PendingEvent) -> Optional[asyncio.Task]:
        if not self.running or self._on_event is None:
            logger.warning(f"Dispatcher not running, dropping {event.signature[:16]}")
            return None
        if not self.seen.check_and_add(event.signature):
            logger.info(f"⏭️ Skipping duplicate signature {event.signature[:16]}")
            return None
        if not self.gate.try_acquire():
            # Forget it so a later redelivery is not mistaken for a duplicate.
            self.seen.discard(event.signature)
            logger.warning(f"⏳ Max concurrent transactions reached ({self.gate.max_active}), dropping {event.signature[:16]}")
            return None
        task = asyncio.create_task(self._dispatch(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _dispatch(self, event: PendingEvent) -> DispatchOutcome:
        try:
            outcome = await self._process(event)
        except Exception as e:
            logger.error(f"❌ Error processing {event.signature}: {e}")
            outcome = DispatchOutcome(event.signature, "failed", reason=str(e))
        finally:
            self.gate.release()
        self.outcomes.append(outcome)
        return outcome

    async def _process(self, event: PendingEvent) -> DispatchOutcome:
        tx = event.transaction
        if tx is None:
            tx = await self.client.get_transaction(event.signature)
        if not tx:
            logger.warning(f"Transaction {event.signature[:16]} not found, skipping")
            return DispatchOutcome(event.signature, "skipped", reason="transaction not found")
        event.transaction = tx
        outcome = await self._on_event(event, tx)
        return outcome or DispatchOutcome(event.signature, "handled")


class TradeAction:
    """Trading `on_event`: mint extraction, dedup by mint, policy checks, buy."""

    def __init__(
        self,
        policy: PolicyChecker,
        executor,
        buy: BuySettings,
        seen_capacity: int = 1000,
        payer_filter: Optional[Collection[str]] = None,
    ):
        self.policy = policy
        self.executor = executor
        self.buy = buy
        self.seen_mints = SeenKeys(seen_capacity)
        self.payer_filter = set(payer_filter) if payer_filter else None

    async def __call__(self, event: PendingEvent, transaction: dict) -> DispatchOutcome:
        sig = event.signature
        logger.info("=" * 64)
        logger.info(f"💦 New signature found: https://solscan.io/tx/{sig}")

        if self.payer_filter is not None:
            payer = payer_of(transaction)
            if payer not in self.payer_filter:
                logger.info(f"Payer {str(payer)[:8]} is not a followed wallet, skipping")
                return DispatchOutcome(sig, "skipped", reason="payer not followed")
            logger.info(f"🔍 Detected activity by {payer[:8]}...")

        mint = extract_mint(transaction)
        if not mint:
            logger.info("❌ No valid token CA could be extracted")
            return DispatchOutcome(sig, "skipped", reason="no mint")

        if not self.seen_mints.check_and_add(mint):
            logger.info(f"⏭️ Skipping duplicate mint {mint}")
            return DispatchOutcome(sig, "skipped", mint=mint, reason="duplicate mint")

        rejection = await self.policy.evaluate(mint)
        if rejection is not None:
            return DispatchOutcome(sig, "rejected", mint=mint, reason=f"{rejection.check}: {rejection.reason}")

        if self.buy.simulation_mode:
            logger.info(f"🧻 Token {mint} not swapped! Simulation Mode turned on.")
            return DispatchOutcome(sig, "simulated", mint=mint)

        result: ExecutionResult = await self.executor.execute(
            mint,
            self.buy.sol_amount,
            self.buy.auto_sell,
            self.buy.take_profit_percent,
            self.buy.stop_loss_percent,
        )
        if not result.success:
            logger.error(f"❌ Token {mint} not swapped: {result.error}")
            return DispatchOutcome(sig, "failed", mint=mint, reason=result.error or "execution failed")

        logger.info(f"✅ Token swapped: {mint}")
        logger.info(f"👽 GMGN: https://gmgn.ai/sol/token/{mint}")
        logger.info(f"😈 BullX: https://neo.bullx.io/terminal?chainId=1399811149&address={mint}")
        return DispatchOutcome(sig, "executed", mint=mint, execution_signature=result.signature)
