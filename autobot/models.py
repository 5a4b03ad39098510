"""Value types shared by the sampler, strategy, execution engine and state store.

Every type here is a frozen dataclass. A tick never mutates a value in place;
it builds the next one with ``dataclasses.replace``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TradeAction(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class ExecutionStatus(str, Enum):
    SKIPPED = "skipped"
    SUBMITTED = "submitted"
    FILLED = "filled"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    PAPER = "paper"
    WEBHOOK = "webhook"
    DISABLED = "disabled"
    ONCHAIN = "onchain"


@dataclass(frozen=True, slots=True)
class PricePoint:
    price: float
    fetched_at: str
    index_price: float | None = None


@dataclass(frozen=True, slots=True)
class Signal:
    action: TradeAction
    reason: str
    price: float
    generated_at: str
    change_pct: float | None = None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    status: ExecutionStatus
    mode: ExecutionMode
    executed_at: str
    detail: str | None = None
    trade_size_usd: float | None = None
    asset_delta: float | None = None
    cash_delta: float | None = None


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    action: TradeAction
    status: ExecutionStatus
    mode: ExecutionMode
    price: float
    reason: str
    generated_at: str
    executed_at: str
    change_pct: float | None = None
    detail: str | None = None
    trade_size_usd: float | None = None
    asset_delta: float | None = None
    cash_delta: float | None = None

    @classmethod
    def from_execution(cls, signal: Signal, result: ExecutionResult) -> "TransactionRecord":
        return cls(
            action=signal.action,
            status=result.status,
            mode=result.mode,
            price=signal.price,
            reason=signal.reason,
            generated_at=signal.generated_at,
            executed_at=result.executed_at,
            change_pct=signal.change_pct,
            detail=result.detail,
            trade_size_usd=result.trade_size_usd,
            asset_delta=result.asset_delta,
            cash_delta=result.cash_delta,
        )


@dataclass(frozen=True, slots=True)
class WalletPoint:
    value_usd: float
    at: str


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    message: str
    at: str


@dataclass(frozen=True, slots=True)
class Portfolio:
    cash_usd: float
    asset: float = 0.0
    token_balances_usd: dict[str, float] = field(default_factory=dict)
    allocation_targets: dict[str, float] = field(default_factory=dict)

    def exposure_usd(self, price: float) -> float:
        return self.asset * price

    def total_value_usd(self, price: float) -> float:
        tokens = sum(self.token_balances_usd.values())
        return self.cash_usd + self.asset * price + tokens


@dataclass(frozen=True, slots=True)
class StrategyParams:
    trade_size_usd: float
    min_move_pct: float
    min_interval_sec: float
    max_position_usd: float
    max_drawdown_pct: float
    stop_loss_pct: float
    take_profit_pct: float
    volatility_lookback: int
    max_trades_per_hour: float
    index_min_move_pct: float
    forecast_lookback: int

    @property
    def history_limit(self) -> int:
        return max(1, int(max(self.volatility_lookback, self.forecast_lookback)))


@dataclass(frozen=True, slots=True)
class BotState:
    portfolio: Portfolio
    params: StrategyParams
    paused: bool = True
    avg_entry_price: float | None = None
    price_history: tuple[float, ...] = ()
    index_history: tuple[float, ...] = ()
    wallet_history: tuple[WalletPoint, ...] = ()
    transactions: tuple[TransactionRecord, ...] = ()
    last_price: float | None = None
    last_index_price: float | None = None
    last_signal: Signal | None = None
    last_execution: ExecutionResult | None = None
    last_trade_at: str | None = None
    last_run_at: str | None = None
    last_error: ErrorInfo | None = None
    error_count: int = 0
