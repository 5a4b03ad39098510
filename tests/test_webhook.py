import json
import unittest
import urllib.error
from dataclasses import replace
from unittest import mock

from autobot.config import RuntimeConfig
from autobot.models import Signal, TradeAction
from autobot.state import default_state
from autobot.webhook import UrllibWebhookSender, build_payload


class _FakeResponse:
    status = 204

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc: object) -> None:
        return None


class UrllibWebhookSenderTests(unittest.TestCase):
    def test_posts_json_with_bearer_token(self) -> None:
        sender = UrllibWebhookSender(timeout_seconds=4)
        with mock.patch("urllib.request.urlopen", return_value=_FakeResponse()) as urlopen:
            status = sender.send("https://hooks.example", {"action": "buy"}, "tok")
        self.assertEqual(status, 204)
        req = urlopen.call_args.args[0]
        self.assertEqual(req.get_method(), "POST")
        self.assertEqual(req.get_header("Authorization"), "Bearer tok")
        self.assertEqual(req.get_header("Content-type"), "application/json")
        self.assertEqual(json.loads(req.data), {"action": "buy"})
        self.assertEqual(urlopen.call_args.kwargs["timeout"], 4)

    def test_no_auth_header_without_token(self) -> None:
        with mock.patch("urllib.request.urlopen", return_value=_FakeResponse()) as urlopen:
            UrllibWebhookSender().send("https://hooks.example", {}, None)
        self.assertIsNone(urlopen.call_args.args[0].get_header("Authorization"))

    def test_http_error_returns_status(self) -> None:
        error = urllib.error.HTTPError("https://hooks.example", 401, "unauthorized", {}, None)
        with mock.patch("urllib.request.urlopen", side_effect=error):
            self.assertEqual(UrllibWebhookSender().send("https://hooks.example", {}, None), 401)


class BuildPayloadTests(unittest.TestCase):
    def test_payload_describes_trade_and_risk_context(self) -> None:
        config = RuntimeConfig()
        config.onchain.wallet_address = "0xwallet"
        config.onchain.private_key = "0x" + "cd" * 32
        base = default_state(config)
        state = replace(
            base,
            avg_entry_price=90.0,
            portfolio=replace(base.portfolio, cash_usd=800.0, asset=2.0, allocation_targets={"WETH": 0.5}),
        )
        signal = Signal(
            action=TradeAction.SELL,
            reason="Price down 1.00% since last tick",
            price=100.0,
            generated_at="2024-01-01T00:00:00+00:00",
            change_pct=-1.0,
        )
        payload = build_payload(config, state, signal)
        self.assertEqual(payload["action"], "sell")
        self.assertEqual(payload["quote"], "USDC")
        self.assertEqual(payload["exposure_usd"], 200.0)
        self.assertEqual(payload["projected_exposure_usd"], 225.0)
        self.assertEqual(payload["total_portfolio_usd"], 1000.0)
        self.assertEqual(payload["allocation"], {"target": 0.5, "limit_usd": 500.0})
        self.assertEqual(payload["portfolio"]["avg_entry_price"], 90.0)
        self.assertEqual(payload["risk_params"]["stop_loss_pct"], 5.0)
        self.assertEqual(payload["chain"]["wallet_address"], "0xwallet")
        self.assertEqual(payload["chain"]["chain_id"], 8453)
        self.assertNotIn("cd" * 32, json.dumps(payload))


if __name__ == "__main__":
    unittest.main()
