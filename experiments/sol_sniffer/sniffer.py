import logging
from collections import Counter
from typing import List, Tuple

from dispatcher import TRANSFER_MATCHER, DispatchOutcome, PendingEvent, payer_of

logger = logging.getLogger("Sniffer")


class WalletActivityTracker:
    """`on_event` action counting buy-like transactions per paying wallet."""

    def __init__(self, matcher=TRANSFER_MATCHER, report_every: int = 10):
        self.matcher = matcher
        self.report_every = report_every
        self.buys: Counter = Counter()
        self.processed = 0

    async def __call__(self, event: PendingEvent, transaction: dict) -> DispatchOutcome:
        self.processed += 1
        logs = ((transaction or {}).get("meta") or {}).get("logMessages") or event.logs
        if not self.matcher(logs):
            return DispatchOutcome(event.signature, "skipped", reason="not a buy")

        payer = payer_of(transaction)
        if not payer:
            return DispatchOutcome(event.signature, "skipped", reason="no payer")

        self.buys[payer] += 1
        logger.info(f"🛒 {payer[:8]}... made a purchase - Total buys: {self.buys[payer]}")
        if self.report_every and self.processed % self.report_every == 0:
            logger.info(f"📊 Processed {self.processed} transactions, tracking {len(self.buys)} wallets")
        return DispatchOutcome(event.signature, "handled", reason=payer)

    def top(self, n: int = 20, min_buys: int = 1) -> List[Tuple[str, int]]:
        return [(w, c) for w, c in self.buys.most_common(n) if c >= min_buys]

    def summary(self) -> List[str]:
        lines = ["🤖 Wallet Buy Activity:"]
        for wallet, count in self.top():
            lines.append(f"  {wallet[:8]}...{wallet[-4:]}  {count}")
        lines.append(f"👥 Total wallets tracked: {len(self.buys)}")
        lines.append(f"📊 Total transactions processed: {self.processed}")
        return lines

    def reset(self):
        self.buys.clear()
        self.processed = 0
