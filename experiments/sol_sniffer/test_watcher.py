import asyncio

from watcher import TokenCreationWatcher


def creation(mint):
    return {
        "transaction": {"message": {"accountKeys": ["Dev"], "instructions": [
            {"parsed": {"type": "initializeMint", "info": {"mint": mint}}},
        ]}},
        "meta": {},
    }


class FakeRpc:
    def __init__(self, history, transactions):
        self.history = history
        self.transactions = transactions
        self.fetched = []

    async def get_signatures(self, address, limit=20):
        return [{"signature": s} for s in self.history][:limit]

    async def get_transaction(self, signature):
        self.fetched.append(signature)
        return self.transactions.get(signature)


def test_check_once_reports_each_mint_once():
    rpc = FakeRpc(["s1", "s2", "s3"], {"s1": creation("MintA"), "s2": {"meta": {}}})
    found = []

    async def on_mint(mint, signature, tx):
        found.append((mint, signature))

    watcher = TokenCreationWatcher(rpc, "Dev", on_mint)

    async def run():
        assert await watcher.check_once() == 1
        assert await watcher.check_once() == 0

    asyncio.run(run())
    assert found == [("MintA", "s1")]
    assert rpc.fetched == ["s1", "s2", "s3"]


def test_loop_survives_errors_and_stops():
    calls = []

    class FlakyRpc(FakeRpc):
        async def get_signatures(self, address, limit=20):
            calls.append(address)
            if len(calls) == 1:
                raise RuntimeError("rpc down")
            return await super().get_signatures(address, limit)

    rpc = FlakyRpc(["s1"], {"s1": creation("MintB")})
    found = []

    async def on_mint(mint, signature, tx):
        found.append(mint)

    watcher = TokenCreationWatcher(rpc, "Dev", on_mint, interval_sec=0.001)

    async def run():
        watcher.start()
        while not found:
            await asyncio.sleep(0.001)
        assert watcher.running
        await watcher.stop()

    asyncio.run(run())
    assert found == ["MintB"]
    assert len(calls) >= 2
    assert not watcher.running
