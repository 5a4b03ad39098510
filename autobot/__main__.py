from __future__ import annotations

import argparse
import json
import logging
import subprocess
import sys
from pathlib import Path
from typing import Any

from .bot import AutoBot
from .config import load_config, load_dotenv_if_present, public_config
from .state import state_to_dict


def _default_config_path() -> str | None:
    candidate = Path("config.json")
    return str(candidate) if candidate.exists() else None


def _parse_assignment(raw: str) -> tuple[str, Any]:
    if "=" not in raw:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {raw!r}")
    key, value = raw.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {raw!r}")
    try:
        return key, json.loads(value)
    except json.JSONDecodeError:
        return key, value


def _assignments_to_patch(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    """``token_balances_usd.weth=10`` style keys become nested dicts."""
    patch: dict[str, Any] = {}
    for key, value in pairs:
        if "." in key:
            section, name = key.split(".", 1)
            nested = patch.setdefault(section, {})
            if isinstance(nested, dict):
                nested[name] = value
            continue
        patch[key] = value
    return patch


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Autonomous single-asset trading bot")
    parser.add_argument("--config", default=_default_config_path(), help="Path to JSON config")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one tick (or loop)")
    run_parser.add_argument("--loop", action="store_true", help="Run continuously")

    subparsers.add_parser("status", help="Show a summary of the bot state")
    subparsers.add_parser("state", help="Print the full persisted state as JSON")
    subparsers.add_parser("pause", help="Stop scheduled and manual ticks")
    subparsers.add_parser("resume", help="Allow ticks to run")
    subparsers.add_parser("config", help="Print the resolved config without secrets")
    subparsers.add_parser("health", help="Liveness check")

    params_parser = subparsers.add_parser("set-params", help="Patch strategy parameters")
    params_parser.add_argument("assignments", nargs="+", type=_parse_assignment, metavar="KEY=VALUE")

    portfolio_parser = subparsers.add_parser("set-portfolio", help="Patch the portfolio")
    portfolio_parser.add_argument(
        "assignments",
        nargs="+",
        type=_parse_assignment,
        metavar="KEY=VALUE",
        help="e.g. cash_usd=500 asset=0.2 avg_entry_price=2400 allocation_targets.WETH=0.5 (existing symbols only)",
    )

    gui_parser = subparsers.add_parser("gui", help="Launch the dashboard")
    gui_parser.add_argument("--host", default="127.0.0.1")
    gui_parser.add_argument("--port", type=int, default=8501)
    gui_parser.add_argument("--no-browser", action="store_true")
    return parser


def _launch_gui(config_path: str | None, host: str, port: int, no_browser: bool) -> None:
    gui_script = Path(__file__).with_name("gui_app.py")
    effective_config = config_path or _default_config_path() or "config.json"
    cmd = [
        sys.executable,
        "-m",
        "streamlit",
        "run",
        str(gui_script),
        "--server.address",
        str(host),
        "--server.port",
        str(port),
        "--server.headless",
        "true" if no_browser else "false",
        "--",
        "--config",
        str(effective_config),
    ]
    try:
        subprocess.run(cmd, check=True)
    except subprocess.CalledProcessError as exc:
        raise RuntimeError(
            "Failed to launch GUI. Install dashboard dependencies with "
            "'pip install streamlit pandas'"
        ) from exc


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_dotenv_if_present()
    try:
        if args.command == "gui":
            _launch_gui(
                config_path=args.config,
                host=args.host,
                port=int(args.port),
                no_browser=bool(args.no_browser),
            )
            return

        config = load_config(args.config)
        bot = AutoBot(config)

        if args.command == "run":
            if args.loop:
                try:
                    bot.run_loop()
                except KeyboardInterrupt:
                    bot.stop()
                return
            _print_json(bot.run_once())
            return

        if args.command == "status":
            _print_json(bot.status())
            return

        if args.command == "state":
            _print_json(state_to_dict(bot.state()))
            return

        if args.command == "pause":
            _print_json({"ok": True, "paused": bot.pause().paused})
            return

        if args.command == "resume":
            _print_json({"ok": True, "paused": bot.resume().paused})
            return

        if args.command == "set-params":
            state = bot.update_params(_assignments_to_patch(args.assignments))
            _print_json({"ok": True, "params": state_to_dict(state)["params"]})
            return

        if args.command == "set-portfolio":
            bot.update_portfolio(_assignments_to_patch(args.assignments))
            _print_json({"ok": True, "portfolio": bot.portfolio()})
            return

        if args.command == "config":
            _print_json(public_config(config))
            return

        if args.command == "health":
            _print_json(bot.health())
            return

        raise RuntimeError(f"Unsupported command: {args.command}")
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
