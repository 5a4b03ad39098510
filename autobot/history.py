from __future__ import annotations

from dataclasses import replace

from .models import BotState, PricePoint, WalletPoint
from .state import MAX_WALLET_HISTORY


def update_market_history(state: BotState, point: PricePoint) -> BotState:
    limit = state.params.history_limit
    price_history = (*state.price_history, point.price)[-limit:]
    index_history = state.index_history
    if point.index_price is not None:
        index_history = (*state.index_history, point.index_price)[-limit:]
    return replace(state, price_history=price_history, index_history=index_history)


def portfolio_value(state: BotState, price: float) -> float:
    return state.portfolio.total_value_usd(price)


def update_wallet_history(state: BotState, price: float, at: str) -> BotState:
    point = WalletPoint(value_usd=portfolio_value(state, price), at=at)
    history = (*state.wallet_history, point)[-MAX_WALLET_HISTORY:]
    return replace(state, wallet_history=history)
