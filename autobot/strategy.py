from __future__ import annotations

import math
from datetime import datetime
from statistics import fmean, pstdev
from typing import Sequence

from .models import BotState, PricePoint, Signal, TradeAction
from .state import now_iso


def pct_change(current: float, previous: float | None) -> float | None:
    if previous is None or not math.isfinite(previous) or previous <= 0:
        return None
    return ((current - previous) / previous) * 100.0


def volatility_pct(values: Sequence[float], lookback: int) -> float | None:
    """Population std-dev of the trailing window as a percent of its mean."""
    if lookback <= 1 or len(values) < lookback:
        return None
    window = list(values[-lookback:])
    mean = fmean(window)
    if mean <= 0:
        return None
    return (pstdev(window) / mean) * 100.0


def linear_forecast(values: Sequence[float], lookback: int) -> float | None:
    """Least-squares trend over the trailing window, projected one step ahead."""
    window = list(values[-lookback:]) if lookback > 0 else []
    n = len(window)
    if n < 2:
        return None
    mean_x = (n - 1) / 2.0
    mean_y = fmean(window)
    num = 0.0
    den = 0.0
    for x, y in enumerate(window):
        num += (x - mean_x) * (y - mean_y)
        den += (x - mean_x) ** 2
    slope = num / den if den else 0.0
    intercept = mean_y - slope * mean_x
    return intercept + slope * n


def _hold(point: PricePoint, reason: str, at: str, change_pct: float | None = None) -> Signal:
    return Signal(
        action=TradeAction.HOLD,
        reason=reason,
        price=point.price,
        change_pct=change_pct,
        generated_at=at,
    )


def _exit_signal(point: PricePoint, state: BotState, at: str) -> Signal | None:
    entry = state.avg_entry_price
    if state.portfolio.asset <= 0 or entry is None or entry <= 0:
        return None
    params = state.params
    entry_change = ((point.price - entry) / entry) * 100.0
    if params.stop_loss_pct > 0 and entry_change <= -params.stop_loss_pct:
        reason = f"Stop loss breached ({entry_change:.2f}% from entry)"
    elif params.take_profit_pct > 0 and entry_change >= params.take_profit_pct:
        reason = f"Take profit reached ({entry_change:.2f}% from entry)"
    else:
        return None
    return Signal(
        action=TradeAction.SELL,
        reason=reason,
        price=point.price,
        change_pct=pct_change(point.price, state.last_price),
        generated_at=at,
    )


def evaluate(point: PricePoint, state: BotState, now: datetime | None = None) -> Signal:
    """Turn the current price point into a buy/sell/hold signal.

    ``state`` must already carry the current price in ``price_history``; the
    move is measured against ``state.last_price``, the previous tick's price.
    """
    at = now_iso(now) if now is not None else point.fetched_at
    params = state.params

    exit_signal = _exit_signal(point, state, at)
    if exit_signal is not None:
        return exit_signal

    change = pct_change(point.price, state.last_price)
    if change is None:
        return _hold(point, "No previous price to compare", at)

    index_change = None
    if point.index_price is not None:
        index_change = pct_change(point.index_price, state.last_index_price)
    if index_change is not None and params.index_min_move_pct > 0:
        if abs(index_change) < params.index_min_move_pct:
            return _hold(
                point,
                f"Index move {index_change:.2f}% below {params.index_min_move_pct:g}% threshold",
                at,
                change,
            )

    vol = volatility_pct(state.price_history, int(params.volatility_lookback))
    if vol is not None and params.max_drawdown_pct > 0 and vol > params.max_drawdown_pct:
        return _hold(
            point,
            f"Volatility above limit ({vol:.2f}% > {params.max_drawdown_pct:g}%)",
            at,
            change,
        )

    if abs(change) < params.min_move_pct:
        return _hold(
            point,
            f"Move {change:.2f}% below {params.min_move_pct:g}% threshold",
            at,
            change,
        )

    action = TradeAction.BUY if change > 0 else TradeAction.SELL

    if index_change is not None:
        if action is TradeAction.BUY and index_change < 0:
            return _hold(point, f"Index falling ({index_change:.2f}%), buy not confirmed", at, change)
        if action is TradeAction.SELL and index_change > 0:
            return _hold(point, f"Index rising ({index_change:.2f}%), sell not confirmed", at, change)

    forecast = linear_forecast(state.price_history, int(params.forecast_lookback))
    if forecast is not None:
        if action is TradeAction.BUY and forecast < point.price:
            return _hold(point, f"Forecast {forecast:.4f} below price, buy not confirmed", at, change)
        if action is TradeAction.SELL and forecast > point.price:
            return _hold(point, f"Forecast {forecast:.4f} above price, sell not confirmed", at, change)

    if action is TradeAction.BUY and params.max_position_usd > 0:
        exposure = state.portfolio.exposure_usd(point.price)
        if exposure + params.trade_size_usd > params.max_position_usd:
            return _hold(
                point,
                f"Max position reached ({exposure:.2f} + {params.trade_size_usd:g} > "
                f"{params.max_position_usd:g} USD)",
                at,
                change,
            )

    direction = "up" if change > 0 else "down"
    return Signal(
        action=action,
        reason=f"Price {direction} {abs(change):.2f}% since last tick",
        price=point.price,
        change_pct=change,
        generated_at=at,
    )
