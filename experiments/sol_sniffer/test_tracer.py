import asyncio
import json
import os
from decimal import Decimal

import pytest

from errors import RetriesExhaustedError, TransientRequestError
from tracer import (
    GraphTracer,
    balance_deltas,
    build_backtrace_export,
    build_trace_export,
    export_filename,
    export_trace,
    format_chain,
)

LAMPORTS = 1_000_000_000


def transfer(source, dest, sol, block_time=None):
    lamports = int(Decimal(str(sol)) * LAMPORTS)
    tx = {
        "transaction": {"message": {"accountKeys": [{"pubkey": source}, {"pubkey": dest}], "instructions": []}},
        "meta": {
            "preBalances": [100 * LAMPORTS, 5 * LAMPORTS],
            "postBalances": [100 * LAMPORTS - lamports, 5 * LAMPORTS + lamports],
        },
    }
    if block_time is not None:
        tx["blockTime"] = block_time
    return tx


class FakeLedger:
    """Scripted getSignaturesForAddress / getTransaction responder."""

    def __init__(self, transactions, history, broken=()):
        self.transactions = transactions
        self.history = history
        self.broken = set(broken)
        self.signature_requests = []

    async def get_signatures(self, address, limit=20):
        self.signature_requests.append(address)
        return [{"signature": s} for s in self.history.get(address, [])][:limit]

    async def get_transaction(self, signature):
        if signature in self.broken:
            raise RetriesExhaustedError("getTransaction", TransientRequestError("timeout"))
        return self.transactions.get(signature)


def ledger(*transfers, broken=()):
    """Each transfer is (signature, source, dest, sol[, block_time]); both parties list it."""
    transactions, history = {}, {}
    for sig, source, dest, sol, *rest in transfers:
        transactions[sig] = transfer(source, dest, sol, *rest)
        history.setdefault(source, []).append(sig)
        history.setdefault(dest, []).append(sig)
    return FakeLedger(transactions, history, broken)


def test_single_hop_tree():
    tracer = GraphTracer(ledger(("sigAB", "WalletA", "WalletB", "0.5")))

    tree = asyncio.run(tracer.trace_forward("WalletA", Decimal("0.1"), Decimal("10"), 2))

    assert len(tree) == 1
    node = tree[0].to_dict()
    assert node["address"] == "WalletB"
    assert node["amount"] == 0.5
    assert node["depth"] == 0
    assert node["children"] == []
    assert tree[0].amount == Decimal("0.5")


def test_cycle_expands_each_address_once():
    rpc = ledger(
        ("sigAB", "WalletA", "WalletB", "1"),
        ("sigBA", "WalletB", "WalletA", "1"),
        ("sigBC", "WalletB", "WalletC", "2"),
        ("sigCA", "WalletC", "WalletA", "0.5"),
    )
    tracer = GraphTracer(rpc)

    tree = asyncio.run(tracer.trace_forward("WalletA", "0.1", "10", 10))

    expansions = tracer.last_run.expansions
    assert len(expansions) == len(set(expansions))
    assert set(expansions) == {"WalletA", "WalletB", "WalletC"}
    assert [n.address for n in tree] == ["WalletB"]
    assert sorted(c.address for c in tree[0].children) == ["WalletA", "WalletC"]


def test_depth_never_exceeds_limit():
    rpc = ledger(
        ("s1", "W0", "W1", "1"),
        ("s2", "W1", "W2", "1"),
        ("s3", "W2", "W3", "1"),
        ("s4", "W3", "W4", "1"),
    )
    tracer = GraphTracer(rpc)

    tree = asyncio.run(tracer.trace_forward("W0", "0.1", "10", 2))

    depths = [n.depth for root in tree for n in root.walk()]
    assert depths == [0, 1]
    assert max(depths) < 2
    assert tracer.last_run.expansions == ["W0", "W1"]


def test_amounts_outside_range_are_ignored():
    rpc = ledger(("dust", "WalletA", "WalletB", "0.001"), ("whale", "WalletA", "WalletC", "500"))
    tree = asyncio.run(GraphTracer(rpc).trace_forward("WalletA", "0.1", "10", 3))
    assert tree == []


def test_backward_chains_point_toward_target():
    rpc = ledger(
        ("sigAB", "WalletA", "WalletB", "2", 1_700_000_000),
        ("sigBT", "WalletB", "Target", "1.5", 1_700_000_100),
    )
    tracer = GraphTracer(rpc)

    chains = asyncio.run(tracer.trace_backward("Target", "0.1", "10", 3))

    assert [(n.address, n.depth) for n in chains] == [("WalletB", 0), ("WalletA", 1)]
    origin = chains[1]
    assert [n.address for n in origin.chain()] == ["WalletA", "WalletB"]
    assert origin.to_dict()["parent"] == "WalletB"
    assert "children" not in origin.to_dict()
    assert format_chain(origin).startswith("WalletA")


def test_failed_fetch_does_not_abort_trace():
    rpc = ledger(
        ("bad", "WalletA", "WalletX", "1"),
        ("good", "WalletA", "WalletB", "1"),
        broken=["bad"],
    )
    tree = asyncio.run(GraphTracer(rpc).trace_forward("WalletA", "0.1", "10", 2))
    assert [n.address for n in tree] == ["WalletB"]


def test_invalid_trace_arguments():
    tracer = GraphTracer(ledger())
    with pytest.raises(ValueError):
        asyncio.run(tracer.trace_forward("WalletA", "0.1", "10", 0))
    with pytest.raises(ValueError):
        asyncio.run(tracer.trace_backward("WalletA", "5", "1", 3))


def test_balance_deltas_align_with_keys():
    deltas = balance_deltas(transfer("WalletA", "WalletB", "0.25"))
    assert deltas == [("WalletA", Decimal("-0.25")), ("WalletB", Decimal("0.25"))]


def test_find_last_node_follows_funds_and_stops_on_cycle():
    chain = ledger(("s1", "W0", "W1", "1"), ("s2", "W1", "W2", "1"))
    assert asyncio.run(GraphTracer(chain).find_last_node("W0")) == "W2"

    loop = ledger(("s1", "W0", "W1", "1"), ("s2", "W1", "W0", "1"))
    assert asyncio.run(GraphTracer(loop).find_last_node("W0")) == "W1"


def test_find_minted_token():
    rpc = ledger(("s1", "Dev", "Other", "1"))
    rpc.transactions["mintSig"] = {
        "transaction": {"message": {"accountKeys": ["Dev"], "instructions": [
            {"parsed": {"type": "initializeMint2", "info": {"mint": "NewMint"}}},
        ]}},
        "meta": {},
    }
    rpc.history["Dev"].append("mintSig")

    assert asyncio.run(GraphTracer(rpc).find_minted_token("Dev")) == "NewMint"
    assert asyncio.run(GraphTracer(rpc).find_minted_token("Other")) is None


def test_trace_export_document(tmp_path):
    tracer = GraphTracer(ledger(("s1", "RootWallet1", "ChildWallet", "0.5"), ("s2", "ChildWallet", "Grandchild", "0.3")))
    tree = asyncio.run(tracer.trace_forward("RootWallet1", "0.1", "10", 3))
    stamp = "2024-01-02T03:04:05.678+00:00"

    doc = build_trace_export("RootWallet1", Decimal("0.1"), Decimal("10"), 3, tree, len(tracer.last_run.visited), timestamp=stamp)
    path = export_trace(doc, str(tmp_path / "exports"))

    assert os.path.basename(path) == "trace_RootWall_2024-01-02T03-04-05-678-00-00.json"
    with open(path, encoding="utf-8") as f:
        saved = json.load(f)
    assert saved["config"] == {"root_address": "RootWallet1", "min_amount": 0.1, "max_amount": 10.0, "max_depth": 3}
    assert saved["stats"] == {"total_addresses": 3, "total_amount": 0.8, "max_depth_reached": 1}
    assert saved["tree"][0]["children"][0]["address"] == "Grandchild"


def test_backtrace_export_stats():
    tracer = GraphTracer(ledger(
        ("s1", "Origin", "Middle", "2", 1_700_000_000),
        ("s2", "Middle", "Target", "1", 1_700_003_600),
    ))
    chains = asyncio.run(tracer.trace_backward("Target", "0.1", "10", 5))

    doc = build_backtrace_export("Target", "0.1", "10", 5, chains, len(tracer.last_run.visited), timestamp="t")

    assert doc["config"]["target_address"] == "Target"
    assert doc["stats"]["total_amount"] == 3.0
    assert doc["stats"]["max_depth_reached"] == 1
    assert doc["stats"]["oldest_transaction"] == "2023-11-14T22:13:20+00:00"
    assert doc["stats"]["newest_transaction"] == "2023-11-14T23:13:20+00:00"


def test_export_filename_is_filesystem_safe():
    name = export_filename("backtrace", "ABCDEFGHIJK", "2024-05-06T07:08:09.123+00:00")
    assert name == "backtrace_ABCDEFGH_2024-05-06T07-08-09-123-00-00.json"


def test_malformed_signature_listing_fails_only_that_node():
    class OddLedger(FakeLedger):
        async def get_signatures(self, address, limit=20):
            if address == "WalletB":
                return {"unexpected": "shape"}
            listing = await super().get_signatures(address, limit)
            return [None, "garbage"] + listing

    base = ledger(("sigAB", "WalletA", "WalletB", "1"), ("sigAC", "WalletA", "WalletC", "1"))
    rpc = OddLedger(base.transactions, base.history)

    tree = asyncio.run(GraphTracer(rpc).trace_forward("WalletA", "0.1", "10", 3))

    assert sorted(n.address for n in tree) == ["WalletB", "WalletC"]
    assert all(n.children == [] for n in tree)
