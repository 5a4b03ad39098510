from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .config import RuntimeConfig
from .models import (
    BotState,
    ErrorInfo,
    ExecutionMode,
    ExecutionResult,
    ExecutionStatus,
    Portfolio,
    Signal,
    StrategyParams,
    TradeAction,
    TransactionRecord,
    WalletPoint,
)
from .store import KeyValueStore

logger = logging.getLogger(__name__)

MAX_WALLET_HISTORY = 120
MAX_TRANSACTIONS = 200
STATE_VERSION = 2


def now_iso(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def default_params(config: RuntimeConfig) -> StrategyParams:
    s = config.strategy
    return StrategyParams(
        trade_size_usd=float(s.trade_size_usd),
        min_move_pct=float(s.min_move_pct),
        min_interval_sec=float(s.min_interval_sec),
        max_position_usd=float(s.max_position_usd),
        max_drawdown_pct=float(s.max_drawdown_pct),
        stop_loss_pct=float(s.stop_loss_pct),
        take_profit_pct=float(s.take_profit_pct),
        volatility_lookback=int(s.volatility_lookback),
        max_trades_per_hour=float(s.max_trades_per_hour),
        index_min_move_pct=float(s.index_min_move_pct),
        forecast_lookback=int(s.forecast_lookback),
    )


def default_state(config: RuntimeConfig) -> BotState:
    return BotState(
        paused=True,
        portfolio=Portfolio(
            cash_usd=float(config.starting_cash_usd),
            asset=0.0,
            # 0 means uncapped; present so the admin patch can set it.
            allocation_targets={config.asset_symbol: 0.0},
        ),
        params=default_params(config),
    )


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def state_to_dict(state: BotState) -> dict[str, Any]:
    data = _plain(asdict(state))
    data["version"] = STATE_VERSION
    return data


def _opt_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _float_map(raw: Any) -> dict[str, float]:
    if not isinstance(raw, dict):
        return {}
    out: dict[str, float] = {}
    for key, value in raw.items():
        parsed = _opt_float(value)
        if parsed is not None:
            out[str(key)] = parsed
    return out


def _parse_signal(raw: Any) -> Signal | None:
    if not isinstance(raw, dict):
        return None
    try:
        return Signal(
            action=TradeAction(raw["action"]),
            reason=str(raw.get("reason", "")),
            price=float(raw["price"]),
            generated_at=str(raw["generated_at"]),
            change_pct=_opt_float(raw.get("change_pct")),
        )
    except (KeyError, TypeError, ValueError):
        return None


def _parse_execution(raw: Any) -> ExecutionResult | None:
    if not isinstance(raw, dict):
        return None
    try:
        return ExecutionResult(
            status=ExecutionStatus(raw["status"]),
            mode=ExecutionMode(raw["mode"]),
            executed_at=str(raw["executed_at"]),
            detail=raw.get("detail"),
            trade_size_usd=_opt_float(raw.get("trade_size_usd")),
            asset_delta=_opt_float(raw.get("asset_delta")),
            cash_delta=_opt_float(raw.get("cash_delta")),
        )
    except (KeyError, TypeError, ValueError):
        return None


def _parse_transaction(raw: Any) -> TransactionRecord | None:
    if not isinstance(raw, dict):
        return None
    try:
        return TransactionRecord(
            action=TradeAction(raw["action"]),
            status=ExecutionStatus(raw["status"]),
            mode=ExecutionMode(raw["mode"]),
            price=float(raw["price"]),
            reason=str(raw.get("reason", "")),
            generated_at=str(raw.get("generated_at", raw["executed_at"])),
            executed_at=str(raw["executed_at"]),
            change_pct=_opt_float(raw.get("change_pct")),
            detail=raw.get("detail"),
            trade_size_usd=_opt_float(raw.get("trade_size_usd")),
            asset_delta=_opt_float(raw.get("asset_delta")),
            cash_delta=_opt_float(raw.get("cash_delta")),
        )
    except (KeyError, TypeError, ValueError):
        return None


def _parse_wallet_point(raw: Any) -> WalletPoint | None:
    if not isinstance(raw, dict):
        return None
    value = _opt_float(raw.get("value_usd"))
    if value is None or not raw.get("at"):
        return None
    return WalletPoint(value_usd=value, at=str(raw["at"]))


def _float_tuple(raw: Any) -> tuple[float, ...]:
    if not isinstance(raw, list):
        return ()
    values = (_opt_float(v) for v in raw)
    return tuple(v for v in values if v is not None)


def reconcile_entry_price(state: BotState) -> BotState:
    """Keep ``avg_entry_price`` defined exactly when a position is open."""
    if state.portfolio.asset <= 0:
        if state.avg_entry_price is None:
            return state
        return replace(state, avg_entry_price=None)
    if state.avg_entry_price is not None and state.avg_entry_price > 0:
        return state
    return replace(state, avg_entry_price=state.last_price)


def merge_with_defaults(data: dict[str, Any], config: RuntimeConfig) -> dict[str, Any]:
    defaults = state_to_dict(default_state(config))
    merged = dict(data)
    for key, value in defaults.items():
        merged.setdefault(key, value)
    for section in ("portfolio", "params"):
        stored = merged.get(section)
        if not isinstance(stored, dict):
            merged[section] = defaults[section]
            continue
        section_merged = dict(stored)
        for key, value in defaults[section].items():
            section_merged.setdefault(key, value)
        merged[section] = section_merged
    return merged


def state_from_dict(data: dict[str, Any], config: RuntimeConfig) -> BotState:
    merged = merge_with_defaults(data, config)
    defaults = default_state(config)
    raw_portfolio = merged["portfolio"]
    raw_params = merged["params"]
    base_params = defaults.params

    def _param(name: str, cast: type) -> Any:
        parsed = _opt_float(raw_params.get(name))
        if parsed is None:
            return getattr(base_params, name)
        return cast(parsed)

    params = StrategyParams(
        trade_size_usd=_param("trade_size_usd", float),
        min_move_pct=_param("min_move_pct", float),
        min_interval_sec=_param("min_interval_sec", float),
        max_position_usd=_param("max_position_usd", float),
        max_drawdown_pct=_param("max_drawdown_pct", float),
        stop_loss_pct=_param("stop_loss_pct", float),
        take_profit_pct=_param("take_profit_pct", float),
        volatility_lookback=_param("volatility_lookback", int),
        max_trades_per_hour=_param("max_trades_per_hour", float),
        index_min_move_pct=_param("index_min_move_pct", float),
        forecast_lookback=_param("forecast_lookback", int),
    )
    portfolio = Portfolio(
        cash_usd=max(0.0, _opt_float(raw_portfolio.get("cash_usd")) or 0.0),
        asset=max(0.0, _opt_float(raw_portfolio.get("asset")) or 0.0),
        token_balances_usd=_float_map(raw_portfolio.get("token_balances_usd")),
        allocation_targets=_float_map(raw_portfolio.get("allocation_targets")),
    )
    raw_error = merged.get("last_error")
    last_error = None
    if isinstance(raw_error, dict) and raw_error.get("message"):
        last_error = ErrorInfo(message=str(raw_error["message"]), at=str(raw_error.get("at", "")))

    limit = params.history_limit
    wallet = [_parse_wallet_point(p) for p in merged.get("wallet_history") or []]
    transactions = [_parse_transaction(t) for t in merged.get("transactions") or []]
    state = BotState(
        paused=bool(merged.get("paused", True)),
        portfolio=portfolio,
        params=params,
        avg_entry_price=_opt_float(merged.get("avg_entry_price")),
        price_history=_float_tuple(merged.get("price_history"))[-limit:],
        index_history=_float_tuple(merged.get("index_history"))[-limit:],
        wallet_history=tuple(p for p in wallet if p is not None)[-MAX_WALLET_HISTORY:],
        transactions=tuple(t for t in transactions if t is not None)[-MAX_TRANSACTIONS:],
        last_price=_opt_float(merged.get("last_price")),
        last_index_price=_opt_float(merged.get("last_index_price")),
        last_signal=_parse_signal(merged.get("last_signal")),
        last_execution=_parse_execution(merged.get("last_execution")),
        last_trade_at=merged.get("last_trade_at") or None,
        last_run_at=merged.get("last_run_at") or None,
        last_error=last_error,
        error_count=int(_opt_float(merged.get("error_count")) or 0),
    )
    return reconcile_entry_price(state)


def load_state(store: KeyValueStore, config: RuntimeConfig) -> BotState:
    raw = store.get(config.state_key)
    if raw is None or not raw.strip():
        logger.info("No stored state under %r; starting from defaults", config.state_key)
        return default_state(config)
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"Stored state under {config.state_key!r} is not a JSON object")
    return state_from_dict(data, config)


def save_state(store: KeyValueStore, config: RuntimeConfig, state: BotState) -> None:
    store.put(config.state_key, json.dumps(state_to_dict(state), indent=2))
