import argparse
import asyncio
import logging
import sys
from decimal import Decimal
from typing import List, Optional

from solana.rpc.async_api import AsyncClient

from dispatcher import (
    TRANSFER_MATCHER,
    EventDispatcher,
    PendingEvent,
    TradeAction,
    mentions_subscription,
    pool_creation_matcher,
    pool_subscriptions,
)
from errors import ConfigError
from listener import StreamTransport
from risk_engine import PolicyChecker, RiskEngine
from rpc_client import RateLimitedClient
from settings import Settings, load_settings
from sniffer import WalletActivityTracker
from sniper import Sniper
from tracer import (
    GraphTracer,
    build_backtrace_export,
    build_trace_export,
    export_trace,
    format_chain,
    format_tree,
)
from watcher import TokenCreationWatcher

logger = logging.getLogger("Monitor")

TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


class Runtime:
    """Shared clients for one process run."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.client = RateLimitedClient.from_settings(settings.rpc_url, settings.rate_limit)
        self.solana = AsyncClient(settings.rpc_url)
        self.transport = StreamTransport.from_settings(settings.transport)
        self.stopped = asyncio.Event()
        self.transport.add_listener("max_retries_exceeded", lambda exc: self.stopped.set())

    def trade_action(self, payer_filter=None) -> TradeAction:
        risk_engine = RiskEngine(self.solana)
        policy = PolicyChecker.from_settings(self.settings.checks, risk_engine.get_token_authorities)
        sniper = Sniper(self.settings.sniperoo_api_key, self.settings.sniperoo_pubkey)
        return TradeAction(policy, sniper, self.settings.buy, seen_capacity=self.settings.seen_capacity, payer_filter=payer_filter)

    def dispatcher(self, predicate) -> EventDispatcher:
        return EventDispatcher(
            self.transport,
            self.client,
            predicate,
            max_concurrent=self.settings.max_concurrent,
            seen_capacity=self.settings.seen_capacity,
        )

    async def close(self):
        await self.transport.close()
        await self.client.close()
        await self.solana.close()


async def _serve(runtime: Runtime, dispatcher: EventDispatcher, duration: Optional[float] = None):
    try:
        if duration:
            try:
                await asyncio.wait_for(runtime.stopped.wait(), timeout=duration)
            except asyncio.TimeoutError:
                pass
        else:
            await runtime.stopped.wait()
    finally:
        await dispatcher.stop()


async def run_snipe(runtime: Runtime):
    pools = runtime.settings.pools
    logger.info(f"🚀 Starting Solana token sniper on {', '.join(p.name for p in pools)}...")
    dispatcher = runtime.dispatcher(pool_creation_matcher(pools))
    await dispatcher.start(pool_subscriptions(pools), runtime.trade_action())
    await _serve(runtime, dispatcher)


async def run_copytrade(runtime: Runtime, wallets: List[str]):
    logger.info("🔄 Starting copytrading strategy...")
    for wallet in wallets:
        logger.info(f"   👥 {wallet}")
    dispatcher = runtime.dispatcher(TRANSFER_MATCHER)
    await dispatcher.start([mentions_subscription(wallets)], runtime.trade_action(payer_filter=wallets))
    await _serve(runtime, dispatcher)


async def run_sniffer(runtime: Runtime, duration: float):
    logger.info(f"🔍 Starting transaction sniffer for {duration:.0f}s...")
    tracker = WalletActivityTracker()
    dispatcher = runtime.dispatcher(TRANSFER_MATCHER)
    await dispatcher.start([mentions_subscription([TOKEN_PROGRAM])], tracker)
    await _serve(runtime, dispatcher, duration=duration)
    for line in tracker.summary():
        print(line)


async def run_watch(runtime: Runtime, address: str):
    dispatcher = runtime.dispatcher(lambda logs: True)
    dispatcher.open(runtime.trade_action())

    async def on_mint(mint: str, signature: str, tx: dict):
        dispatcher.submit(PendingEvent(signature=signature, raw_payload=tx, transaction=tx))

    watcher = TokenCreationWatcher(runtime.client, address, on_mint)
    watcher.start()
    try:
        await runtime.stopped.wait()
    finally:
        await watcher.stop()
        await dispatcher.stop()


async def run_follow(runtime: Runtime, start: str):
    logger.info("🚀 Starting fund-following trace...")
    tracer = GraphTracer(runtime.client)
    last = await tracer.find_last_node(start)
    try:
        balance = await runtime.client.get_balance(last)
        logger.info(f"📊 Final wallet balance: {balance:.4f} SOL")
    except Exception as e:
        logger.warning(f"Could not read balance of {last}: {e}")
    await tracer.find_minted_token(last)
    await run_watch(runtime, last)


async def run_trace(runtime: Runtime, root: str, min_amount: Decimal, max_amount: Decimal, max_depth: int):
    print(f"\n🔍 Starting fund tracing from {root} ({min_amount} - {max_amount} SOL, depth {max_depth})\n")
    tracer = GraphTracer(runtime.client)
    tree = await tracer.trace_forward(root, min_amount, max_amount, max_depth)
    doc = build_trace_export(root, min_amount, max_amount, max_depth, tree, len(tracer.last_run.visited))
    path = export_trace(doc, runtime.settings.export_dir)

    print("\n📊 Transfer Tree:\n================\n")
    for line in format_tree(tree):
        print(line)
    if not tree:
        print("No transfers found within the specified range.")
    stats = doc["stats"]
    print("\n📈 Statistics:\n================")
    print(f"Total addresses analyzed: {stats['total_addresses']}")
    print(f"Total SOL transferred: {stats['total_amount']:.4f} SOL")
    print(f"Maximum depth reached: {stats['max_depth_reached']}")
    print(f"\n💾 Results exported to: {path}")


async def run_backtrace(runtime: Runtime, target: str, min_amount: Decimal, max_amount: Decimal, max_depth: int):
    print(f"\n🔍 Starting fund backtracing to {target} ({min_amount} - {max_amount} SOL, depth {max_depth})\n")
    tracer = GraphTracer(runtime.client)
    chains = await tracer.trace_backward(target, min_amount, max_amount, max_depth)
    doc = build_backtrace_export(target, min_amount, max_amount, max_depth, chains, len(tracer.last_run.visited))
    path = export_trace(doc, runtime.settings.export_dir)

    print("\n📊 Transfer Chains:\n================\n")
    for node in chains:
        print(format_chain(node))
        print(f"🔍 View latest transfer: https://solscan.io/tx/{node.signature}\n")
    if not chains:
        print("No transfers found within the specified range.")
    stats = doc["stats"]
    print("\n📈 Statistics:\n================")
    print(f"Total addresses analyzed: {stats['total_addresses']}")
    print(f"Total SOL transferred: {stats['total_amount']:.4f} SOL")
    print(f"Maximum depth reached: {stats['max_depth_reached']}")
    print(f"Date range: {stats['oldest_transaction']} → {stats['newest_transaction']}")
    print(f"\n💾 Results exported to: {path}")


def _address(value: str) -> str:
    if len(value) not in (43, 44):
        raise argparse.ArgumentTypeError("Please enter a valid Solana address (43-44 characters)")
    return value


def _depth(value: str) -> int:
    depth = int(value)
    if not 0 < depth <= 200:
        raise argparse.ArgumentTypeError("Depth must be between 1 and 200")
    return depth


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Solana stream sniffer, sniper and fund tracer")
    sub = parser.add_subparsers(dest="mode", required=True)

    sub.add_parser("snipe", help="Snipe new liquidity pools / token launches")

    p = sub.add_parser("copytrade", help="Copy buys of followed wallets")
    p.add_argument("wallets", nargs="+", type=_address)

    p = sub.add_parser("sniff", help="Count token buys per wallet")
    p.add_argument("--duration", type=float, default=120.0)

    p = sub.add_parser("watch", help="Poll an address for token creations")
    p.add_argument("address", type=_address)

    p = sub.add_parser("follow", help="Follow funds to the last wallet, then watch it")
    p.add_argument("address", type=_address)

    for name, default_depth in (("trace", 3), ("backtrace", 5)):
        p = sub.add_parser(name, help=f"Recursive {name} of SOL transfers")
        p.add_argument("address", type=_address)
        p.add_argument("--min", dest="min_amount", type=Decimal, default=Decimal("0.1"))
        p.add_argument("--max", dest="max_amount", type=Decimal, default=Decimal("100"))
        p.add_argument("--depth", type=_depth, default=default_depth)
    return parser


async def run(args: argparse.Namespace, settings: Settings):
    runtime = Runtime(settings)
    try:
        if args.mode == "snipe":
            await run_snipe(runtime)
        elif args.mode == "copytrade":
            await run_copytrade(runtime, args.wallets)
        elif args.mode == "sniff":
            await run_sniffer(runtime, args.duration)
        elif args.mode == "watch":
            await run_watch(runtime, args.address)
        elif args.mode == "follow":
            await run_follow(runtime, args.address)
        elif args.mode == "trace":
            await run_trace(runtime, args.address, args.min_amount, args.max_amount, args.depth)
        elif args.mode == "backtrace":
            await run_backtrace(runtime, args.address, args.min_amount, args.max_amount, args.depth)
    finally:
        await runtime.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.mode in ("trace", "backtrace") and args.max_amount <= args.min_amount:
        print("Maximum amount must be greater than minimum amount", file=sys.stderr)
        return 2
    try:
        settings = load_settings()
    except ConfigError as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    try:
        asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        print("\n🛑 Stopping...")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
