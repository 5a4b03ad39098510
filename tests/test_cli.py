import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path

from autobot.__main__ import _assignments_to_patch, _parse_assignment, main


class AssignmentParsingTests(unittest.TestCase):
    def test_values_are_json_decoded(self) -> None:
        self.assertEqual(_parse_assignment("trade_size_usd=40"), ("trade_size_usd", 40))
        self.assertEqual(_parse_assignment("note=hello"), ("note", "hello"))

    def test_dotted_keys_become_nested(self) -> None:
        patch = _assignments_to_patch([("cash_usd", 5), ("allocation_targets.WETH", 0.5)])
        self.assertEqual(patch, {"cash_usd": 5, "allocation_targets": {"WETH": 0.5}})


class MainTests(unittest.TestCase):
    def _run(self, config_path: Path, *argv: str) -> dict:
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            main(["--config", str(config_path), "--log-level", "WARNING", *argv])
        return json.loads(out.getvalue())

    def test_admin_commands_share_persisted_state(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config_path = Path(tmp) / "config.json"
            config_path.write_text(json.dumps({"state_dir": str(Path(tmp) / "state")}), encoding="utf-8")

            self.assertEqual(self._run(config_path, "health")["mode"], "paper")
            self.assertFalse(self._run(config_path, "resume")["paused"])
            params = self._run(config_path, "set-params", "trade_size_usd=40")["params"]
            self.assertEqual(params["trade_size_usd"], 40.0)
            status = self._run(config_path, "status")
            self.assertFalse(status["paused"])
            self.assertTrue(self._run(config_path, "pause")["paused"])
            self.assertEqual(self._run(config_path, "run"), {"ok": False, "error": "paused"})

    def test_config_command_hides_secrets(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config_path = Path(tmp) / "config.json"
            config_path.write_text(
                json.dumps({"state_dir": tmp, "onchain": {"private_key": "0x" + "22" * 32}}),
                encoding="utf-8",
            )
            data = self._run(config_path, "config")
            self.assertNotIn("private_key", data["onchain"])

    def test_invalid_config_exits_with_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config_path = Path(tmp) / "config.json"
            config_path.write_text(json.dumps({"mode": "live"}), encoding="utf-8")
            err = io.StringIO()
            with contextlib.redirect_stderr(err), self.assertRaises(SystemExit) as ctx:
                main(["--config", str(config_path), "health"])
            self.assertEqual(ctx.exception.code, 1)
            self.assertIn("ERROR: config.mode must be one of", err.getvalue())


if __name__ == "__main__":
    unittest.main()
