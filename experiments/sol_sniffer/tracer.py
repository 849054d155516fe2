import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Set, Tuple

from rpc_client import LAMPORTS_PER_SOL, RateLimitedClient, account_keys, find_initialized_mint

logger = logging.getLogger("GraphTracer")

FORWARD_PAGE_SIZE = 20
BACKWARD_PAGE_SIZE = 50


def generate_links(address: str) -> Dict[str, str]:
    return {
        "solscan": f"https://solscan.io/account/{address}",
        "bullx": f"https://neo.bullx.io/terminal?chainId=1399811149&address={address}",
    }


@dataclass(eq=False)
class TransferNode:
    address: str
    amount: Decimal
    depth: int
    timestamp: Optional[str] = None
    signature: Optional[str] = None
    # Forward traces own their children.
    children: List["TransferNode"] = field(default_factory=list)
    # Backward traces point at the node one hop closer to the target. Not owned.
    parent: Optional["TransferNode"] = field(default=None, repr=False)

    @property
    def links(self) -> Dict[str, str]:
        return generate_links(self.address)

    def walk(self) -> Iterator["TransferNode"]:
        """This node and its owned subtree, depth-first. Never follows `parent`."""
        yield self
        for child in self.children:
            yield from child.walk()

    def chain(self) -> List["TransferNode"]:
        nodes = []
        current: Optional[TransferNode] = self
        while current is not None:
            nodes.append(current)
            current = current.parent
        return nodes

    def to_dict(self) -> dict:
        data = {
            "address": self.address,
            "amount": float(self.amount),
            "depth": self.depth,
            "links": self.links,
        }
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        if self.signature is not None:
            data["signature"] = self.signature
        if self.parent is not None:
            data["parent"] = self.parent.address
        else:
            data["children"] = [c.to_dict() for c in self.children]
        return data


def balance_deltas(tx: dict) -> List[Tuple[str, Decimal]]:
    """(address, post - pre in SOL) per account, positions aligned with accountKeys."""
    meta = (tx or {}).get("meta") or {}
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    keys = account_keys(tx)
    n = min(len(keys), len(pre), len(post))
    return [(keys[i], (Decimal(int(post[i])) - Decimal(int(pre[i]))) / LAMPORTS_PER_SOL) for i in range(n)]


def _block_time_iso(tx: dict) -> Optional[str]:
    block_time = (tx or {}).get("blockTime")
    if block_time is None:
        return None
    return datetime.fromtimestamp(int(block_time), tz=timezone.utc).isoformat()


@dataclass
class TraceRun:
    """State of a single trace invocation."""
    min_amount: Decimal
    max_amount: Decimal
    max_depth: int
    visited: Set[str] = field(default_factory=set)
    expansions: List[str] = field(default_factory=list)

    def in_range(self, amount: Decimal) -> bool:
        return self.min_amount <= amount <= self.max_amount


class GraphTracer:
    """
    Recursive exploration of SOL transfers between wallets.

    A visited set shared by every branch of one run stops cycles and
    re-expansion, so the result is a tree over first-visit order. Requests are
    issued one after another through the shared rate-limited client.
    """

    def __init__(
        self,
        client: RateLimitedClient,
        forward_page_size: int = FORWARD_PAGE_SIZE,
        backward_page_size: int = BACKWARD_PAGE_SIZE,
    ):
        self.client = client
        self.forward_page_size = forward_page_size
        self.backward_page_size = backward_page_size
        self.last_run: Optional[TraceRun] = None

    def _new_run(self, min_amount, max_amount, max_depth: int) -> TraceRun:
        if max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        lo, hi = Decimal(str(min_amount)), Decimal(str(max_amount))
        if lo > hi:
            raise ValueError("min_amount must not exceed max_amount")
        run = TraceRun(lo, hi, max_depth)
        self.last_run = run
        return run

    async def _transactions(self, address: str, limit: int) -> List[Tuple[str, dict]]:
        """Recent (signature, transaction) pairs; fetch failures are logged and skipped."""
        try:
            signatures = await self.client.get_signatures(address, limit=limit)
        except Exception as e:
            logger.error(f"Error listing signatures for {address}: {e}")
            return []
        if not isinstance(signatures, list):
            logger.error(f"Unexpected signature listing for {address}: {signatures!r}")
            return []
        out = []
        for sig in signatures:
            if not isinstance(sig, dict):
                continue
            signature = sig.get("signature")
            if not signature:
                continue
            try:
                tx = await self.client.get_transaction(signature)
            except Exception as e:
                logger.error(f"Error fetching {signature[:16]} for {address[:8]}: {e}")
                continue
            if tx:
                out.append((signature, tx))
        return out

    async def trace_forward(self, root: str, min_amount, max_amount, max_depth: int) -> List[TransferNode]:
        run = self._new_run(min_amount, max_amount, max_depth)
        return await self._forward(root, run, 0)

    async def _forward(self, address: str, run: TraceRun, depth: int) -> List[TransferNode]:
        if depth >= run.max_depth or address in run.visited:
            return []
        run.visited.add(address)
        run.expansions.append(address)

        nodes: List[TransferNode] = []
        for signature, tx in await self._transactions(address, self.forward_page_size):
            try:
                deltas = balance_deltas(tx)
            except (TypeError, ValueError) as e:
                logger.error(f"Malformed balances in {signature[:16]}: {e}")
                continue
            for i, (key, delta) in enumerate(deltas):
                if key != address or not run.in_range(-delta):
                    continue
                for j, (dest, received) in enumerate(deltas):
                    if i == j or not run.in_range(received):
                        continue
                    logger.info(f"🔍 [Depth {depth}] {address[:8]}... → Sent {received:.4f} SOL to {dest[:8]}...")
                    children = await self._forward(dest, run, depth + 1)
                    nodes.append(TransferNode(
                        address=dest,
                        amount=received,
                        depth=depth,
                        timestamp=_block_time_iso(tx),
                        signature=signature,
                        children=children,
                    ))
        return nodes

    async def trace_backward(self, target: str, min_amount, max_amount, max_depth: int) -> List[TransferNode]:
        run = self._new_run(min_amount, max_amount, max_depth)
        return await self._backward(target, run, 0, None)

    async def _backward(self, address: str, run: TraceRun, depth: int, parent: Optional[TransferNode]) -> List[TransferNode]:
        if depth >= run.max_depth or address in run.visited:
            return []
        run.visited.add(address)
        run.expansions.append(address)

        nodes: List[TransferNode] = []
        for signature, tx in await self._transactions(address, self.backward_page_size):
            try:
                deltas = balance_deltas(tx)
            except (TypeError, ValueError) as e:
                logger.error(f"Malformed balances in {signature[:16]}: {e}")
                continue
            for i, (key, received) in enumerate(deltas):
                if key != address or not run.in_range(received):
                    continue
                for j, (source, delta) in enumerate(deltas):
                    if i == j or not run.in_range(-delta):
                        continue
                    sent = -delta
                    logger.info(f"🔍 [Depth {depth}] {source[:8]}... → Sent {sent:.4f} SOL to {address[:8]}...")
                    node = TransferNode(
                        address=source,
                        amount=sent,
                        depth=depth,
                        timestamp=_block_time_iso(tx),
                        signature=signature,
                        parent=parent,
                    )
                    nodes.append(node)
                    nodes.extend(await self._backward(source, run, depth + 1, node))
        return nodes

    async def first_outgoing_transfer(self, address: str, min_amount, max_amount, limit: int = 10) -> Optional[str]:
        lo, hi = Decimal(str(min_amount)), Decimal(str(max_amount))
        for signature, tx in await self._transactions(address, limit):
            try:
                deltas = balance_deltas(tx)
            except (TypeError, ValueError) as e:
                logger.error(f"Malformed balances in {signature[:16]}: {e}")
                continue
            for i, (key, delta) in enumerate(deltas):
                if key != address or not (lo <= -delta <= hi):
                    continue
                for j, (dest, received) in enumerate(deltas):
                    if i != j and lo <= received <= hi:
                        logger.info(f"➡ {address} → {dest} | {received:.4f} SOL")
                        return dest
        return None

    async def find_last_node(self, start: str, min_amount=Decimal("0.01"), max_amount=Decimal("1000000"), max_hops: int = 200) -> str:
        """Follows the first qualifying outgoing transfer until the funds stop moving."""
        visited: Set[str] = set()
        current = start
        for _ in range(max_hops):
            visited.add(current)
            nxt = await self.first_outgoing_transfer(current, min_amount, max_amount)
            if not nxt or nxt in visited:
                break
            current = nxt
        logger.info(f"✅ Final wallet found: {current}")
        return current

    async def find_minted_token(self, address: str, limit: int = 20) -> Optional[str]:
        for signature, tx in await self._transactions(address, limit):
            mint = find_initialized_mint(tx)
            if mint:
                logger.info(f"🪙 Detected token mint by {address[:8]}: {mint}")
                return mint
        logger.info(f"📭 No token mint activity found for {address[:8]}")
        return None


def tree_stats(tree: List[TransferNode]) -> Tuple[Decimal, int]:
    total = Decimal(0)
    max_depth = 0
    for root in tree:
        for node in root.walk():
            total += node.amount
            max_depth = max(max_depth, node.depth)
    return total, max_depth


def chain_stats(chains: List[TransferNode]) -> dict:
    total = sum((n.amount for n in chains), Decimal(0))
    max_depth = max((n.depth for n in chains), default=0)
    stamps = sorted(n.timestamp for n in chains if n.timestamp)
    return {
        "total_amount": total,
        "max_depth_reached": max_depth,
        "oldest_transaction": stamps[0] if stamps else None,
        "newest_transaction": stamps[-1] if stamps else None,
    }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_trace_export(root: str, min_amount, max_amount, max_depth: int, tree: List[TransferNode], total_addresses: int, timestamp: Optional[str] = None) -> dict:
    total, depth_reached = tree_stats(tree)
    return {
        "config": {
            "root_address": root,
            "min_amount": float(min_amount),
            "max_amount": float(max_amount),
            "max_depth": max_depth,
        },
        "timestamp": timestamp or _now_iso(),
        "tree": [node.to_dict() for node in tree],
        "stats": {
            "total_addresses": total_addresses,
            "total_amount": float(total),
            "max_depth_reached": depth_reached,
        },
    }


def build_backtrace_export(target: str, min_amount, max_amount, max_depth: int, chains: List[TransferNode], total_addresses: int, timestamp: Optional[str] = None) -> dict:
    stats = chain_stats(chains)
    return {
        "config": {
            "target_address": target,
            "min_amount": float(min_amount),
            "max_amount": float(max_amount),
            "max_depth": max_depth,
        },
        "timestamp": timestamp or _now_iso(),
        "chains": [node.to_dict() for node in chains],
        "stats": {
            "total_addresses": total_addresses,
            "total_amount": float(stats["total_amount"]),
            "max_depth_reached": stats["max_depth_reached"],
            "oldest_transaction": stats["oldest_transaction"],
            "newest_transaction": stats["newest_transaction"],
        },
    }


def export_filename(prefix: str, address: str, timestamp: str) -> str:
    safe_ts = timestamp.replace(":", "-").replace(".", "-").replace("+", "-")
    return f"{prefix}_{address[:8]}_{safe_ts}.json"


def export_trace(doc: dict, export_dir: str = "exports") -> str:
    config = doc.get("config", {})
    if "target_address" in config:
        prefix, address = "backtrace", config["target_address"]
    else:
        prefix, address = "trace", config.get("root_address", "unknown")
    os.makedirs(export_dir, exist_ok=True)
    path = os.path.join(export_dir, export_filename(prefix, address, doc["timestamp"]))
    with open(path, "w", encoding="utf-8") as f:
        json.dump(doc, f, indent=2)
    return path


def format_tree(tree: List[TransferNode], prefix: str = "") -> List[str]:
    lines = []
    for node in tree:
        lines.append(f"{prefix}{node.address[:8]}... ({node.amount:.4f} SOL)")
        lines.append(f"{prefix}🔍 Solscan: {node.links['solscan']}")
        lines.append(f"{prefix}📊 BullX: {node.links['bullx']}")
        lines.extend(format_tree(node.children, prefix + "  "))
    return lines


def format_chain(node: TransferNode) -> str:
    return " → ".join(f"{n.address[:8]}... ({n.amount:.4f} SOL)" for n in node.chain())
