from __future__ import annotations

import logging
import math
import os
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Mapping, Protocol

from .config import RuntimeConfig
from .execution import execute_signal
from .history import portfolio_value, update_market_history, update_wallet_history
from .market import HttpMarketFeed, MarketFeedError
from .models import BotState, ErrorInfo, ExecutionMode, PricePoint, Signal
from .onchain import ChainExecutor, Web3ChainExecutor
from .state import (
    load_state,
    reconcile_entry_price,
    save_state,
    state_to_dict,
)
from .store import FileStore, KeyValueStore
from .strategy import evaluate
from .webhook import UrllibWebhookSender, WebhookSender

logger = logging.getLogger(__name__)


class MarketFeed(Protocol):
    def fetch_point(self, now: datetime | None = None) -> PricePoint: ...


class _Ansi:
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"


@dataclass(slots=True)
class TickOutcome:
    state: BotState
    error: str | None = None


_PARAM_MINIMUMS: dict[str, float] = {
    "trade_size_usd": 0,
    "min_move_pct": 0,
    "min_interval_sec": 0,
    "max_position_usd": 0,
    "max_drawdown_pct": 0,
    "stop_loss_pct": 0,
    "take_profit_pct": 0,
    "volatility_lookback": 1,
    "max_trades_per_hour": 0,
    "index_min_move_pct": 0,
    "forecast_lookback": 2,
}
_INT_PARAMS = {"volatility_lookback", "forecast_lookback"}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_number(value: Any, fallback: float, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    if not math.isfinite(value):
        return fallback
    if minimum is not None and value < minimum:
        return fallback
    return float(value)


def _sanitize_token_values(
    payload: Any,
    current: Mapping[str, float],
    minimum: float | None = None,
    maximum: float | None = None,
) -> dict[str, float]:
    if not isinstance(payload, dict):
        return dict(current)
    out = dict(current)
    for key, value in payload.items():
        if key not in current:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            continue
        if minimum is not None and value < minimum:
            continue
        if maximum is not None and value > maximum:
            continue
        out[key] = float(value)
    return out


def apply_params_patch(state: BotState, payload: Mapping[str, Any] | None) -> BotState:
    if not payload:
        return state
    updates: dict[str, Any] = {}
    for name, minimum in _PARAM_MINIMUMS.items():
        current = getattr(state.params, name)
        value = _ensure_number(payload.get(name), float(current), minimum)
        updates[name] = int(value) if name in _INT_PARAMS else value
    next_state = replace(state, params=replace(state.params, **updates))
    limit = next_state.params.history_limit
    return replace(
        next_state,
        price_history=next_state.price_history[-limit:],
        index_history=next_state.index_history[-limit:],
    )


def apply_portfolio_patch(state: BotState, payload: Mapping[str, Any] | None) -> BotState:
    if not payload:
        return state
    portfolio = state.portfolio
    next_portfolio = replace(
        portfolio,
        cash_usd=_ensure_number(payload.get("cash_usd"), portfolio.cash_usd, 0),
        asset=_ensure_number(payload.get("asset"), portfolio.asset, 0),
        token_balances_usd=_sanitize_token_values(
            payload.get("token_balances_usd"),
            portfolio.token_balances_usd,
            minimum=0,
        ),
        allocation_targets=_sanitize_token_values(
            payload.get("allocation_targets"),
            portfolio.allocation_targets,
            minimum=0,
            maximum=1,
        ),
    )
    next_state = replace(state, portfolio=next_portfolio)
    entry = _ensure_number(payload.get("avg_entry_price"), 0.0, 0)
    if entry > 0:
        next_state = replace(next_state, avg_entry_price=entry)
    elif next_portfolio.asset > 0 and state.avg_entry_price is None and state.last_price is None:
        # An open position needs an entry price; keep the old asset balance.
        logger.warning("Ignoring asset patch: no avg_entry_price given and no price observed yet")
        next_state = replace(next_state, portfolio=replace(next_portfolio, asset=portfolio.asset))
    return reconcile_entry_price(next_state)


def _signal_dict(signal: Signal | None) -> dict[str, Any] | None:
    if signal is None:
        return None
    data = asdict(signal)
    data["action"] = signal.action.value
    return data


class AutoBot:
    """Runs ticks against one persisted ``BotState``.

    Load, decide, execute and persist run as one critical section guarded by
    a thread lock and the store's per-key lock, so the scheduler loop, manual
    runs and admin updates never interleave on the same state, even from
    separate processes.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        store: KeyValueStore | None = None,
        *,
        feed: MarketFeed | None = None,
        webhook: WebhookSender | None = None,
        chain: ChainExecutor | None = None,
    ):
        self.config = config
        self.store = store if store is not None else FileStore(config.state_dir)
        self.feed = feed if feed is not None else HttpMarketFeed(config.feed)
        self.webhook = (
            webhook
            if webhook is not None
            else UrllibWebhookSender(timeout_seconds=config.webhook.timeout_seconds)
        )
        if chain is None and config.mode is ExecutionMode.ONCHAIN:
            chain = Web3ChainExecutor(config)
        self.chain = chain
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._last_printed_line: str | None = None

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._lock, self.store.lock(self.config.state_key):
            yield

    def _load(self) -> BotState:
        return load_state(self.store, self.config)

    def _save(self, state: BotState) -> None:
        save_state(self.store, self.config, state)

    def sync_portfolio(self, state: BotState) -> BotState:
        if self.config.mode is not ExecutionMode.ONCHAIN or self.chain is None:
            return state
        balances = self.chain.read_balances()
        portfolio = replace(
            state.portfolio,
            cash_usd=max(0.0, balances.quote),
            asset=max(0.0, balances.asset),
        )
        return reconcile_entry_price(replace(state, portfolio=portfolio))

    def tick(self, state: BotState, now: datetime | None = None) -> BotState:
        """One sample, evaluate, execute pass. Network errors propagate."""
        point = self.feed.fetch_point(now)
        hydrated = self.sync_portfolio(state)
        if hydrated.avg_entry_price is None and hydrated.portfolio.asset > 0:
            hydrated = replace(hydrated, avg_entry_price=point.price)
        with_history = update_market_history(hydrated, point)
        signal = evaluate(point, with_history, now)
        result, next_state = execute_signal(
            self.config,
            with_history,
            signal,
            webhook=self.webhook,
            chain=self.chain,
            now=now,
        )
        with_wallet = update_wallet_history(next_state, point.price, point.fetched_at)
        last_index = point.index_price if point.index_price is not None else hydrated.last_index_price
        return replace(
            with_wallet,
            last_run_at=(now or _now_utc()).isoformat(),
            last_price=point.price,
            last_index_price=last_index,
            last_signal=signal,
            last_execution=result,
        )

    def run_tick_with_diagnostics(self, state: BotState, now: datetime | None = None) -> TickOutcome:
        try:
            return TickOutcome(state=self.tick(state, now))
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            if isinstance(exc, MarketFeedError):
                logger.warning("Tick failed on market feed: %s", message)
            else:
                logger.exception("Tick failed")
            failed = replace(
                state,
                last_error=ErrorInfo(message=message, at=(now or _now_utc()).isoformat()),
                error_count=state.error_count + 1,
            )
            return TickOutcome(state=failed, error=message)

    def run_once(self, now: datetime | None = None) -> dict[str, Any]:
        with self._exclusive():
            state = self._load()
            if state.paused:
                logger.info("Run requested while paused; nothing executed")
                return {"ok": False, "error": "paused"}
            outcome = self.run_tick_with_diagnostics(state, now)
            self._save(outcome.state)
        if outcome.error is not None:
            last_error = outcome.state.last_error
            return {
                "ok": False,
                "error": outcome.error,
                "last_error": asdict(last_error) if last_error is not None else None,
            }
        execution = outcome.state.last_execution
        return {
            "ok": True,
            "signal": _signal_dict(outcome.state.last_signal),
            "execution": state_to_dict(outcome.state)["last_execution"] if execution else None,
        }

    def scheduled_tick(self, now: datetime | None = None) -> BotState | None:
        with self._exclusive():
            state = self._load()
            if state.paused:
                logger.debug("Scheduled tick skipped: bot is paused")
                return None
            outcome = self.run_tick_with_diagnostics(state, now)
            self._save(outcome.state)
            return outcome.state

    def run_loop(self, max_ticks: int | None = None) -> None:
        ticks = 0
        self._stop_event.clear()
        while not self._stop_event.is_set():
            started = time.monotonic()
            state = self.scheduled_tick()
            if state is not None:
                line = self.format_tick_line(state, color=self._supports_color())
                if line != self._last_printed_line:
                    print(line)
                    self._last_printed_line = line
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                return
            elapsed = time.monotonic() - started
            sleep_for = max(0.0, float(self.config.loop_seconds) - elapsed)
            if sleep_for > 0:
                self._stop_event.wait(sleep_for)

    def _supports_color(self) -> bool:
        if os.getenv("NO_COLOR"):
            return False
        return sys.stdout.isatty()

    def stop(self) -> None:
        self._stop_event.set()

    def state(self) -> BotState:
        with self._exclusive():
            return self.sync_portfolio(self._load())

    def portfolio(self) -> dict[str, Any]:
        state = self.state()
        return {
            **asdict(state.portfolio),
            "avg_entry_price": state.avg_entry_price,
            "last_price": state.last_price,
        }

    def _mutate(self, change: Callable[[BotState], BotState]) -> BotState:
        with self._exclusive():
            next_state = change(self._load())
            self._save(next_state)
            return next_state

    def pause(self) -> BotState:
        logger.info("Pausing bot")
        return self._mutate(lambda s: replace(s, paused=True))

    def resume(self) -> BotState:
        logger.info("Resuming bot")
        return self._mutate(lambda s: replace(s, paused=False))

    def update_params(self, payload: Mapping[str, Any] | None) -> BotState:
        return self._mutate(lambda s: apply_params_patch(s, payload))

    def update_portfolio(self, payload: Mapping[str, Any] | None) -> BotState:
        return self._mutate(lambda s: apply_portfolio_patch(s, payload))

    def health(self) -> dict[str, Any]:
        return {"ok": True, "mode": self.config.mode.value, "asset": self.config.asset_symbol}

    def status(self) -> dict[str, Any]:
        state = self.state()
        price = state.last_price or 0.0
        last_execution = state.last_execution
        return {
            "mode": self.config.mode.value,
            "asset": self.config.asset_symbol,
            "paused": state.paused,
            "last_price": state.last_price,
            "last_run_at": state.last_run_at,
            "last_trade_at": state.last_trade_at,
            "wallet_value_usd": round(portfolio_value(state, price), 2),
            "portfolio": asdict(state.portfolio),
            "avg_entry_price": state.avg_entry_price,
            "last_signal": _signal_dict(state.last_signal),
            "last_execution_status": last_execution.status.value if last_execution else None,
            "transactions": len(state.transactions),
            "error_count": state.error_count,
            "last_error": asdict(state.last_error) if state.last_error else None,
        }

    def format_tick_line(self, state: BotState, color: bool = False) -> str:
        signal = state.last_signal
        execution = state.last_execution
        if state.last_error is not None and (signal is None or state.last_run_at is None):
            return f"[error] {state.last_error.message}"
        action = signal.action.value.upper() if signal else "-"
        if color and signal is not None:
            tone = {"BUY": _Ansi.GREEN, "SELL": _Ansi.RED}.get(action, _Ansi.YELLOW)
            action = f"{tone}{action}{_Ansi.RESET}"
        status = execution.status.value if execution else "-"
        price = f"{state.last_price:.4f}" if state.last_price is not None else "-"
        value = portfolio_value(state, state.last_price or 0.0)
        return (
            f"{state.last_run_at} {self.config.asset_symbol} {price} | {action} -> {status}"
            f" | {signal.reason if signal else ''}"
            f" | cash {state.portfolio.cash_usd:.2f} asset {state.portfolio.asset:.6f}"
            f" value {value:.2f}"
        )
