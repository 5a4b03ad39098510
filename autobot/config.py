from __future__ import annotations

import json
import math
import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Mapping

from .models import ExecutionMode


@dataclass(slots=True)
class StrategyDefaults:
    trade_size_usd: float = 25.0
    min_move_pct: float = 0.35
    min_interval_sec: float = 300.0
    max_position_usd: float = 500.0
    max_drawdown_pct: float = 5.0
    stop_loss_pct: float = 5.0
    take_profit_pct: float = 10.0
    volatility_lookback: int = 20
    max_trades_per_hour: float = 6.0
    index_min_move_pct: float = 0.0
    forecast_lookback: int = 10


@dataclass(slots=True)
class FeedSettings:
    price_feed_url: str = "https://api.coinbase.com/v2/prices/ETH-USD/spot"
    price_field: str = "data.amount"
    index_feed_url: str | None = None
    index_price_field: str | None = None
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class WebhookSettings:
    url: str | None = None
    auth_token: str | None = None
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class OnchainSettings:
    rpc_url: str | None = None
    private_key: str | None = None
    wallet_address: str | None = None
    swap_router_address: str | None = None
    swap_slippage_bps: int = 50
    swap_deadline_sec: int = 300
    timeout_seconds: float = 20.0


@dataclass(slots=True)
class AddressBook:
    chain_id: int = 8453
    network: str = "base"
    routers: dict[str, str] = field(
        default_factory=lambda: {
            "uniswap_v2_factory": "0x8909Dc15e40173Ff4699343b6eB8132c65e18eC6",
            "uniswap_v2_router02": "0x4752ba5DBc23f44D87826276BF6Fd6b1C372aD24",
            "uniswap_universal_router": "0x6fF5693b99212Da76ad316178A184AB56D299b43",
            "uniswap_permit2": "0x000000000022D473030F116dDEE9F6B43aC78BA3",
            "uniswap_v3_factory": "0x33128a8fC17869897dcE68Ed026d694621f6FDfD",
            "uniswap_v3_swap_router02": "0x2626664c2603336E57B271c5C0b26F421741e481",
            "uniswap_v3_quoter_v2": "0x3d4e44Eb1374240CE5F1B871ab261CD16335B76a",
        }
    )
    tokens: dict[str, str] = field(
        default_factory=lambda: {
            "weth": "0x4200000000000000000000000000000000000006",
            "usdc": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
            "usdbc": "0xD9aaEC86B65D86f6A7B5B1b0c42FFA531710b6CA",
            "aave": "0x63706e401c06ac8513145b7687a14804d17f814b",
            "link": "0x88Fb150BDc53A65fe94Dea0c9BA0a6dAf8C6e196",
            "base": "0xd07379a755a8f11b57610154861d694b2a0f615a",
        }
    )


@dataclass(slots=True)
class RuntimeConfig:
    asset_symbol: str = "WETH"
    quote_symbol: str = "USDC"
    mode: ExecutionMode = ExecutionMode.PAPER
    starting_cash_usd: float = 1000.0
    loop_seconds: float = 300.0
    state_dir: str = "./autobot_state"
    state_key: str = "bot_state"
    strategy: StrategyDefaults = field(default_factory=StrategyDefaults)
    feed: FeedSettings = field(default_factory=FeedSettings)
    webhook: WebhookSettings = field(default_factory=WebhookSettings)
    onchain: OnchainSettings = field(default_factory=OnchainSettings)
    address_book: AddressBook = field(default_factory=AddressBook)


# env var -> (section, attribute, parser)
_ENV_BINDINGS: dict[str, tuple[str | None, str, str]] = {
    "ASSET_SYMBOL": (None, "asset_symbol", "str"),
    "QUOTE_SYMBOL": (None, "quote_symbol", "str"),
    "EXECUTION_MODE": (None, "mode", "str"),
    "STARTING_CASH_USD": (None, "starting_cash_usd", "float"),
    "LOOP_SECONDS": (None, "loop_seconds", "float"),
    "STATE_DIR": (None, "state_dir", "str"),
    "PRICE_FEED_URL": ("feed", "price_feed_url", "str"),
    "PRICE_FIELD": ("feed", "price_field", "str"),
    "INDEX_FEED_URL": ("feed", "index_feed_url", "str"),
    "INDEX_PRICE_FIELD": ("feed", "index_price_field", "str"),
    "WEBHOOK_URL": ("webhook", "url", "str"),
    "WEBHOOK_AUTH_TOKEN": ("webhook", "auth_token", "str"),
    "DEFAULT_TRADE_SIZE_USD": ("strategy", "trade_size_usd", "float"),
    "DEFAULT_MIN_MOVE_PCT": ("strategy", "min_move_pct", "float"),
    "DEFAULT_MIN_INTERVAL_SEC": ("strategy", "min_interval_sec", "float"),
    "DEFAULT_MAX_POSITION_USD": ("strategy", "max_position_usd", "float"),
    "DEFAULT_MAX_DRAWDOWN_PCT": ("strategy", "max_drawdown_pct", "float"),
    "DEFAULT_STOP_LOSS_PCT": ("strategy", "stop_loss_pct", "float"),
    "DEFAULT_TAKE_PROFIT_PCT": ("strategy", "take_profit_pct", "float"),
    "DEFAULT_VOLATILITY_LOOKBACK": ("strategy", "volatility_lookback", "int"),
    "DEFAULT_MAX_TRADES_PER_HOUR": ("strategy", "max_trades_per_hour", "float"),
    "DEFAULT_INDEX_MIN_MOVE_PCT": ("strategy", "index_min_move_pct", "float"),
    "DEFAULT_FORECAST_LOOKBACK": ("strategy", "forecast_lookback", "int"),
    "RPC_URL": ("onchain", "rpc_url", "str"),
    "BOT_PRIVATE_KEY": ("onchain", "private_key", "str"),
    "WALLET_ADDRESS": ("onchain", "wallet_address", "str"),
    "SWAP_ROUTER_ADDRESS": ("onchain", "swap_router_address", "str"),
    "SWAP_SLIPPAGE_BPS": ("onchain", "swap_slippage_bps", "int"),
    "SWAP_DEADLINE_SEC": ("onchain", "swap_deadline_sec", "int"),
}


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        return {}
    return json.loads(raw)


def _apply_overrides(default_obj: Any, overrides: dict[str, Any]) -> Any:
    values: dict[str, Any] = {}
    for meta in fields(default_obj):
        name = meta.name
        value = getattr(default_obj, name)
        if name not in overrides:
            values[name] = value
            continue
        override = overrides[name]
        if is_dataclass(value) and isinstance(override, dict):
            values[name] = _apply_overrides(value, override)
        else:
            values[name] = override
    return type(default_obj)(**values)


def _parse_env_value(raw: str, kind: str, fallback: Any) -> Any:
    text = raw.strip()
    if kind == "str":
        return text or fallback
    try:
        parsed = float(text)
    except ValueError:
        return fallback
    if not math.isfinite(parsed):
        return fallback
    return int(parsed) if kind == "int" else parsed


def _apply_env(config: RuntimeConfig, environ: Mapping[str, str]) -> RuntimeConfig:
    for env_key, (section, attr, kind) in _ENV_BINDINGS.items():
        raw = environ.get(env_key)
        if raw is None:
            continue
        target = config if section is None else getattr(config, section)
        setattr(target, attr, _parse_env_value(raw, kind, getattr(target, attr)))
    return config


def load_dotenv_if_present(dotenv_path: str = ".env") -> None:
    path = Path(dotenv_path)
    if not path.exists():
        return
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        env_key = key.strip()
        if not env_key or env_key in os.environ:
            continue
        env_value = value.strip()
        if len(env_value) >= 2 and (
            (env_value.startswith('"') and env_value.endswith('"'))
            or (env_value.startswith("'") and env_value.endswith("'"))
        ):
            env_value = env_value[1:-1]
        os.environ[env_key] = env_value


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> RuntimeConfig:
    cfg = RuntimeConfig()
    if path is not None:
        overrides = _read_json(Path(path))
        if overrides:
            cfg = _apply_overrides(cfg, overrides)
    cfg = _apply_env(cfg, os.environ if environ is None else environ)
    return _normalize_config(cfg)


def _normalize_config(config: RuntimeConfig) -> RuntimeConfig:
    raw_mode = config.mode.value if isinstance(config.mode, ExecutionMode) else str(config.mode)
    try:
        config.mode = ExecutionMode(raw_mode.lower().strip())
    except ValueError:
        raise ValueError(
            "config.mode must be one of: paper, webhook, disabled, onchain"
        ) from None
    config.asset_symbol = str(config.asset_symbol).strip()
    config.quote_symbol = str(config.quote_symbol).strip()
    if not config.asset_symbol:
        raise ValueError("config.asset_symbol must be non-empty")
    if not config.quote_symbol:
        raise ValueError("config.quote_symbol must be non-empty")
    if float(config.starting_cash_usd) < 0:
        raise ValueError("config.starting_cash_usd must be >= 0")
    if float(config.loop_seconds) <= 0:
        raise ValueError("config.loop_seconds must be > 0")
    if not str(config.state_key).strip():
        raise ValueError("config.state_key must be non-empty")
    if not str(config.feed.price_feed_url).strip():
        raise ValueError("feed.price_feed_url must be non-empty")
    if float(config.feed.timeout_seconds) <= 0:
        raise ValueError("feed.timeout_seconds must be > 0")
    if float(config.webhook.timeout_seconds) <= 0:
        raise ValueError("webhook.timeout_seconds must be > 0")
    if float(config.onchain.timeout_seconds) <= 0:
        raise ValueError("onchain.timeout_seconds must be > 0")
    if int(config.onchain.swap_slippage_bps) < 0:
        raise ValueError("onchain.swap_slippage_bps must be >= 0")
    if int(config.onchain.swap_deadline_sec) <= 0:
        raise ValueError("onchain.swap_deadline_sec must be > 0")
    strategy = config.strategy
    for name in (
        "trade_size_usd",
        "min_move_pct",
        "min_interval_sec",
        "max_position_usd",
        "max_drawdown_pct",
        "stop_loss_pct",
        "take_profit_pct",
        "max_trades_per_hour",
        "index_min_move_pct",
    ):
        if float(getattr(strategy, name)) < 0:
            raise ValueError(f"strategy.{name} must be >= 0")
    if int(strategy.volatility_lookback) < 1:
        raise ValueError("strategy.volatility_lookback must be >= 1")
    if int(strategy.forecast_lookback) < 2:
        raise ValueError("strategy.forecast_lookback must be >= 2")
    return config


def public_config(config: RuntimeConfig) -> dict[str, Any]:
    data = asdict(config)
    data["mode"] = config.mode.value
    data["onchain"].pop("private_key", None)
    data["webhook"].pop("auth_token", None)
    data["webhook"]["configured"] = bool(config.webhook.url)
    data["wallet_address"] = config.onchain.wallet_address
    return data
