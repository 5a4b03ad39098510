import unittest
from dataclasses import replace

from autobot.config import RuntimeConfig
from autobot.history import portfolio_value, update_market_history, update_wallet_history
from autobot.models import PricePoint
from autobot.state import MAX_WALLET_HISTORY, default_state


class MarketHistoryTests(unittest.TestCase):
    def test_history_keeps_most_recent_prices(self) -> None:
        base = default_state(RuntimeConfig())
        state = replace(base, params=replace(base.params, volatility_lookback=3, forecast_lookback=2))
        for price in (1.0, 2.0, 3.0, 4.0):
            state = update_market_history(state, PricePoint(price=price, fetched_at="t"))
        self.assertEqual(state.price_history, (2.0, 3.0, 4.0))
        self.assertEqual(state.index_history, ())

    def test_index_history_only_grows_with_index_price(self) -> None:
        state = default_state(RuntimeConfig())
        state = update_market_history(state, PricePoint(price=1.0, fetched_at="t", index_price=10.0))
        state = update_market_history(state, PricePoint(price=2.0, fetched_at="t"))
        self.assertEqual(state.price_history, (1.0, 2.0))
        self.assertEqual(state.index_history, (10.0,))


class WalletHistoryTests(unittest.TestCase):
    def test_portfolio_value_includes_tokens(self) -> None:
        base = default_state(RuntimeConfig())
        state = replace(
            base,
            portfolio=replace(base.portfolio, cash_usd=100.0, asset=2.0, token_balances_usd={"link": 5.0}),
        )
        self.assertEqual(portfolio_value(state, 50.0), 205.0)

    def test_wallet_history_is_bounded(self) -> None:
        state = default_state(RuntimeConfig())
        for i in range(MAX_WALLET_HISTORY + 3):
            state = update_wallet_history(state, 100.0, f"t{i}")
        self.assertEqual(len(state.wallet_history), MAX_WALLET_HISTORY)
        self.assertEqual(state.wallet_history[0].at, "t3")
        self.assertEqual(state.wallet_history[-1].value_usd, 1000.0)


if __name__ == "__main__":
    unittest.main()
