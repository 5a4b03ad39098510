from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from .models import BotState, StrategyParams
from .state import parse_iso


@dataclass(frozen=True, slots=True)
class TradeGate:
    ok: bool
    reason: str | None = None


_OPEN = TradeGate(ok=True)


def _seconds_since(older: datetime, newer: datetime) -> float:
    return (newer - older).total_seconds()


def effective_min_interval(params: StrategyParams) -> float:
    per_hour = 3600.0 / params.max_trades_per_hour if params.max_trades_per_hour > 0 else 0.0
    return max(float(params.min_interval_sec), per_hour)


def can_trade(state: BotState, now: datetime | None = None) -> TradeGate:
    last_trade = parse_iso(state.last_trade_at)
    if last_trade is None:
        return _OPEN
    interval = effective_min_interval(state.params)
    elapsed = _seconds_since(last_trade, now or datetime.now(timezone.utc))
    if elapsed < interval:
        return TradeGate(ok=False, reason=f"Cooldown {interval:g}s not met")
    return _OPEN


def allocation_target(state: BotState, asset_symbol: str) -> float | None:
    wanted = asset_symbol.strip().lower()
    for symbol, target in state.portfolio.allocation_targets.items():
        if symbol.strip().lower() == wanted:
            return target if target > 0 else None
    return None


def check_allocation(
    state: BotState,
    price: float,
    trade_size_usd: float,
    asset_symbol: str,
) -> TradeGate:
    target = allocation_target(state, asset_symbol)
    if target is None:
        return _OPEN
    projected = state.portfolio.exposure_usd(price) + trade_size_usd
    limit = state.portfolio.total_value_usd(price) * target
    if projected > limit:
        return TradeGate(ok=False, reason="Allocation limit reached")
    return _OPEN
