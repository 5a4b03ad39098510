from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import asdict
from typing import Any, Protocol

from .config import RuntimeConfig
from .models import BotState, Signal
from .risk import allocation_target

logger = logging.getLogger(__name__)


class WebhookSender(Protocol):
    def send(self, url: str, payload: dict[str, Any], auth_token: str | None) -> int:
        """Deliver ``payload`` and return the HTTP status code."""
        ...


class UrllibWebhookSender:
    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds

    def send(self, url: str, payload: dict[str, Any], auth_token: str | None) -> int:
        req = urllib.request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
        )
        req.add_header("Content-Type", "application/json")
        req.add_header("User-Agent", "autobot/1.0")
        if auth_token:
            req.add_header("Authorization", f"Bearer {auth_token}")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as response:
                return int(response.status)
        except urllib.error.HTTPError as exc:
            # Non-2xx statuses are reported to the caller, not raised.
            return int(exc.code)


def build_payload(config: RuntimeConfig, state: BotState, signal: Signal) -> dict[str, Any]:
    params = state.params
    portfolio = state.portfolio
    exposure_usd = portfolio.exposure_usd(signal.price)
    total_usd = portfolio.total_value_usd(signal.price)
    target = allocation_target(state, config.asset_symbol)
    return {
        "action": signal.action.value,
        "asset": config.asset_symbol,
        "quote": config.quote_symbol,
        "price": signal.price,
        "change_pct": signal.change_pct,
        "trade_size_usd": params.trade_size_usd,
        "generated_at": signal.generated_at,
        "reason": signal.reason,
        "exposure_usd": exposure_usd,
        "projected_exposure_usd": exposure_usd + params.trade_size_usd,
        "total_portfolio_usd": total_usd,
        "allocation": {
            "target": target,
            "limit_usd": total_usd * target if target is not None else None,
        },
        "risk_params": {
            "max_position_usd": params.max_position_usd,
            "max_drawdown_pct": params.max_drawdown_pct,
            "stop_loss_pct": params.stop_loss_pct,
            "take_profit_pct": params.take_profit_pct,
            "volatility_lookback": params.volatility_lookback,
            "max_trades_per_hour": params.max_trades_per_hour,
            "index_min_move_pct": params.index_min_move_pct,
            "forecast_lookback": params.forecast_lookback,
        },
        "portfolio": {
            "cash_usd": portfolio.cash_usd,
            "asset": portfolio.asset,
            "avg_entry_price": state.avg_entry_price,
            "token_balances_usd": dict(portfolio.token_balances_usd),
            "allocation_targets": dict(portfolio.allocation_targets),
        },
        "chain": {
            **asdict(config.address_book),
            "wallet_address": config.onchain.wallet_address,
        },
    }
