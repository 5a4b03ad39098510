import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from autobot.config import RuntimeConfig
from autobot.models import BotState
from autobot.risk import allocation_target, can_trade, check_allocation, effective_min_interval
from autobot.state import default_state

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _state(**param_overrides: float) -> BotState:
    state = default_state(RuntimeConfig())
    return replace(state, params=replace(state.params, **param_overrides))


class CooldownTests(unittest.TestCase):
    def test_never_traded_is_allowed(self) -> None:
        self.assertTrue(can_trade(_state(), NOW).ok)

    def test_unparsable_last_trade_is_allowed(self) -> None:
        state = replace(_state(), last_trade_at="not-a-date")
        self.assertTrue(can_trade(state, NOW).ok)

    def test_cooldown_blocks_recent_trade(self) -> None:
        state = replace(
            _state(min_interval_sec=300, max_trades_per_hour=0),
            last_trade_at=(NOW - timedelta(seconds=30)).isoformat(),
        )
        gate = can_trade(state, NOW)
        self.assertFalse(gate.ok)
        self.assertEqual(gate.reason, "Cooldown 300s not met")

    def test_cooldown_elapsed_allows_trade(self) -> None:
        state = replace(
            _state(min_interval_sec=300, max_trades_per_hour=0),
            last_trade_at=(NOW - timedelta(seconds=301)).isoformat(),
        )
        self.assertTrue(can_trade(state, NOW).ok)

    def test_trades_per_hour_raises_interval(self) -> None:
        params = _state(min_interval_sec=60, max_trades_per_hour=6).params
        self.assertEqual(effective_min_interval(params), 600.0)
        state = replace(
            _state(min_interval_sec=60, max_trades_per_hour=6),
            last_trade_at=(NOW - timedelta(seconds=400)).isoformat(),
        )
        gate = can_trade(state, NOW)
        self.assertFalse(gate.ok)
        self.assertEqual(gate.reason, "Cooldown 600s not met")

    def test_zero_limits_disable_cooldown(self) -> None:
        state = replace(
            _state(min_interval_sec=0, max_trades_per_hour=0),
            last_trade_at=NOW.isoformat(),
        )
        self.assertTrue(can_trade(state, NOW).ok)


class AllocationTests(unittest.TestCase):
    def _with_target(self, target: float) -> BotState:
        state = _state()
        portfolio = replace(state.portfolio, cash_usd=1000.0, asset=1.0, allocation_targets={"WETH": target})
        return replace(state, portfolio=portfolio)

    def test_target_lookup_is_case_insensitive(self) -> None:
        self.assertEqual(allocation_target(self._with_target(0.5), "weth"), 0.5)

    def test_zero_target_means_uncapped(self) -> None:
        state = self._with_target(0.0)
        self.assertIsNone(allocation_target(state, "WETH"))
        self.assertTrue(check_allocation(state, 100.0, 25.0, "WETH").ok)

    def test_buy_over_target_is_rejected(self) -> None:
        # total 1100, limit 110, projected 100 + 25
        gate = check_allocation(self._with_target(0.1), 100.0, 25.0, "WETH")
        self.assertFalse(gate.ok)
        self.assertEqual(gate.reason, "Allocation limit reached")

    def test_buy_within_target_is_allowed(self) -> None:
        self.assertTrue(check_allocation(self._with_target(0.5), 100.0, 25.0, "WETH").ok)


if __name__ == "__main__":
    unittest.main()
