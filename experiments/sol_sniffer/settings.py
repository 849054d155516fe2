import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from dotenv import load_dotenv

from errors import ConfigError

HELIUS_HTTPS_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={key}"
HELIUS_WSS_TEMPLATE = "wss://mainnet.helius-rpc.com/?api-key={key}"

CHECK_MODES = ("snipe", "full", "none")


@dataclass(frozen=True)
class LiquidityPool:
    id: str
    name: str
    program: str
    instruction: str
    enabled: bool = True


# Raydium V4 "initialize2" and Pump.fun "Create" are the two launch events we snipe.
LIQUIDITY_POOLS: Dict[str, LiquidityPool] = {
    "raydium": LiquidityPool(
        id="1",
        name="raydium",
        program="675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",
        instruction="initialize2",
    ),
    "pumpfun": LiquidityPool(
        id="2",
        name="pumpfun",
        program="6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P",
        instruction="Program log: Instruction: Create",
    ),
}


@dataclass(frozen=True)
class TransportSettings:
    url: str
    initial_backoff_sec: float = 1.0
    max_backoff_sec: float = 30.0
    max_retries: Optional[int] = None
    debug: bool = False


@dataclass(frozen=True)
class RateLimitSettings:
    window_sec: float = 2.0
    max_requests: int = 4
    retries: int = 3
    transient_backoff_sec: float = 1.0
    request_timeout_sec: float = 20.0


@dataclass(frozen=True)
class CheckSettings:
    mode: str = "snipe"
    allow_mint_authority: bool = False
    allow_freeze_authority: bool = False
    blocked_suffixes: Tuple[str, ...] = ("pump",)
    blocked_substrings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BuySettings:
    sol_amount: float = 0.05
    auto_sell: bool = True
    take_profit_percent: float = 50.0
    stop_loss_percent: float = 15.0
    simulation_mode: bool = True


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    transport: TransportSettings
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    checks: CheckSettings = field(default_factory=CheckSettings)
    buy: BuySettings = field(default_factory=BuySettings)
    pools: Tuple[LiquidityPool, ...] = ()
    max_concurrent: int = 1
    seen_capacity: int = 1000
    sniperoo_api_key: str = ""
    sniperoo_pubkey: str = ""
    export_dir: str = "exports"
    log_level: str = "INFO"


def _to_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off"}:
        return False
    if not text:
        return default
    raise ConfigError(f"Bad boolean: {value}")


def _to_float(env: Mapping[str, str], name: str, default: float, minimum: float = 0.0, positive: bool = False) -> float:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"Bad number for {name}: {raw}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    if positive and value <= 0:
        raise ConfigError(f"{name} must be > 0, got {value}")
    return value


def _to_int(env: Mapping[str, str], name: str, default: Optional[int], minimum: int = 0) -> Optional[int]:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"Bad integer for {name}: {raw}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _split_list(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(x.strip().lower() for x in raw.split(",") if x.strip())


def validate_url(name: str, value: str, scheme: str) -> str:
    """Endpoint URLs must use the expected scheme and carry a non-empty api-key."""
    parsed = urlparse(value)
    if parsed.scheme != scheme:
        raise ConfigError(f"{name} must start with {scheme}://")
    api_key = parse_qs(parsed.query).get("api-key", [""])[0].strip()
    if not api_key:
        raise ConfigError(f"The 'api-key' parameter is missing or empty in {name}: {value}")
    return value


def _resolve_pools(raw: Optional[str]) -> Tuple[LiquidityPool, ...]:
    names = _split_list(raw) or tuple(LIQUIDITY_POOLS)
    pools: List[LiquidityPool] = []
    for name in names:
        if name not in LIQUIDITY_POOLS:
            raise ConfigError(f"Unknown liquidity pool: {name} (known: {', '.join(LIQUIDITY_POOLS)})")
        pools.append(LIQUIDITY_POOLS[name])
    return tuple(pools)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    if env is None:
        load_dotenv()
        env = os.environ

    api_key = str(env.get("HELIUS_API_KEY", "") or "").strip()
    if not api_key:
        raise ConfigError("Missing required environment variables: HELIUS_API_KEY")

    rpc_url = validate_url(
        "HELIUS_HTTPS_URI",
        str(env.get("HELIUS_HTTPS_URI") or HELIUS_HTTPS_TEMPLATE.format(key=api_key)),
        "https",
    )
    wss_url = validate_url(
        "HELIUS_WSS_URI",
        str(env.get("HELIUS_WSS_URI") or HELIUS_WSS_TEMPLATE.format(key=api_key)),
        "wss",
    )

    mode = str(env.get("CHECK_MODE", "snipe") or "snipe").strip().lower()
    if mode not in CHECK_MODES:
        raise ConfigError(f"Invalid check mode: {mode}")

    suffixes = _split_list(env.get("BLOCKED_SUFFIXES"))
    if _to_bool(env.get("IGNORE_ENDS_WITH_PUMP"), True) and "pump" not in suffixes:
        suffixes = suffixes + ("pump",)

    buy = BuySettings(
        sol_amount=_to_float(env, "BUY_SOL_AMOUNT", 0.05),
        auto_sell=_to_bool(env.get("AUTO_SELL"), True),
        take_profit_percent=_to_float(env, "TAKE_PROFIT_PERCENT", 50.0),
        stop_loss_percent=_to_float(env, "STOP_LOSS_PERCENT", 15.0),
        simulation_mode=_to_bool(env.get("SIMULATION_MODE"), True),
    )
    if buy.sol_amount <= 0:
        raise ConfigError("BUY_SOL_AMOUNT must be positive")

    sniperoo_key = str(env.get("SNIPEROO_API_KEY", "") or "").strip()
    sniperoo_pubkey = str(env.get("SNIPEROO_PUBKEY", "") or "").strip()
    if not buy.simulation_mode:
        missing = [n for n, v in (("SNIPEROO_API_KEY", sniperoo_key), ("SNIPEROO_PUBKEY", sniperoo_pubkey)) if not v]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    initial_backoff = _to_float(env, "WS_INITIAL_BACKOFF_SEC", 1.0, positive=True)
    max_backoff = _to_float(env, "WS_MAX_BACKOFF_SEC", 30.0, positive=True)
    if max_backoff < initial_backoff:
        raise ConfigError("WS_MAX_BACKOFF_SEC must be >= WS_INITIAL_BACKOFF_SEC")

    log_level = str(env.get("LOG_LEVEL", "INFO") or "INFO").strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"Unknown LOG_LEVEL: {log_level}")

    return Settings(
        rpc_url=rpc_url,
        transport=TransportSettings(
            url=wss_url,
            initial_backoff_sec=initial_backoff,
            max_backoff_sec=max_backoff,
            max_retries=_to_int(env, "WS_MAX_RETRIES", None),
            debug=_to_bool(env.get("WS_DEBUG"), False),
        ),
        rate_limit=RateLimitSettings(
            window_sec=_to_float(env, "RATE_WINDOW_SEC", 2.0, positive=True),
            max_requests=_to_int(env, "RATE_MAX_REQUESTS", 4, minimum=1),
            retries=_to_int(env, "RPC_RETRIES", 3),
            transient_backoff_sec=_to_float(env, "RPC_TRANSIENT_BACKOFF_SEC", 1.0),
        ),
        checks=CheckSettings(
            mode=mode,
            allow_mint_authority=_to_bool(env.get("ALLOW_MINT_AUTHORITY"), False),
            allow_freeze_authority=_to_bool(env.get("ALLOW_FREEZE_AUTHORITY"), False),
            blocked_suffixes=suffixes,
            blocked_substrings=_split_list(env.get("BLOCKED_SUBSTRINGS")),
        ),
        buy=buy,
        pools=_resolve_pools(env.get("ENABLED_POOLS")),
        max_concurrent=_to_int(env, "CONCURRENT_TRANSACTIONS", 1, minimum=1),
        seen_capacity=_to_int(env, "SEEN_CAPACITY", 1000, minimum=1),
        sniperoo_api_key=sniperoo_key,
        sniperoo_pubkey=sniperoo_pubkey,
        export_dir=str(env.get("EXPORT_DIR", "exports") or "exports"),
        log_level=log_level,
    )
