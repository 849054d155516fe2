import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

logger = logging.getLogger("Sniper")

SNIPEROO_BUY_URL = "https://api.sniperoo.xyz/v1/buy"


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None


class Sniper:
    """Buy orders go to the Sniperoo API; the service owns execution and auto-sell."""

    def __init__(
        self,
        api_key: str,
        wallet_pubkey: str,
        buy_url: str = SNIPEROO_BUY_URL,
        timeout_sec: float = 25.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.wallet_pubkey = wallet_pubkey
        self.buy_url = buy_url
        self.timeout_sec = timeout_sec
        self._session = session

    def build_request(
        self,
        token_id: str,
        sol_amount: float,
        auto_sell_enabled: bool,
        take_profit_percent: float,
        stop_loss_percent: float,
    ) -> dict:
        if not take_profit_percent or not stop_loss_percent:
            auto_sell_enabled = False
        return {
            "walletAddresses": [self.wallet_pubkey],
            "tokenAddress": token_id,
            "inputAmount": sol_amount,
            "autoSell": {
                "enabled": auto_sell_enabled,
                "strategy": {
                    "strategyName": "simple",
                    "profitPercentage": take_profit_percent,
                    "stopLossPercentage": stop_loss_percent,
                },
            },
        }

    async def _post_json(self, payload: dict):
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if self._session is not None:
            async with self._session.post(self.buy_url, json=payload, headers=headers) as resp:
                return resp.status, await resp.json(content_type=None)
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.buy_url, json=payload, headers=headers) as resp:
                return resp.status, await resp.json(content_type=None)

    async def execute(
        self,
        token_id: str,
        sol_amount: float,
        auto_sell_enabled: bool,
        take_profit_percent: float,
        stop_loss_percent: float,
    ) -> ExecutionResult:
        token_id = (token_id or "").strip()
        if not token_id:
            return ExecutionResult(False, error="invalid_token")
        if sol_amount <= 0:
            return ExecutionResult(False, error="invalid_amount")

        payload = self.build_request(token_id, sol_amount, auto_sell_enabled, take_profit_percent, stop_loss_percent)
        logger.info(f"🔫 Buying {token_id} with {sol_amount} SOL (auto-sell: {payload['autoSell']['enabled']})")
        try:
            status, data = await self._post_json(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Sniperoo request failed: {e}")
            return ExecutionResult(False, error=str(e) or type(e).__name__)

        if status != 200:
            logger.error(f"Sniperoo API error ({status}): {data}")
            return ExecutionResult(False, error=f"HTTP {status}: {data}")

        signature = None
        if isinstance(data, dict):
            signature = data.get("signature") or data.get("txSignature")
        return ExecutionResult(True, signature=signature)
