from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from typing import Any

import pandas as pd
import streamlit as st

from autobot.bot import AutoBot
from autobot.config import RuntimeConfig, load_config, load_dotenv_if_present
from autobot.history import portfolio_value
from autobot.models import BotState
from autobot.state import state_to_dict


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--config", default="config.json")
    args, _ = parser.parse_known_args()
    return args


def _format_utc_time(value: object) -> str:
    text = str(value or "").strip()
    if not text:
        return "never"
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return text
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _get_or_create_bot(config_path: str, config: RuntimeConfig) -> AutoBot:
    key = f"{config_path}:{config.mode.value}:{config.asset_symbol}:{config.state_dir}"
    existing_key = st.session_state.get("gui_bot_key")
    existing_bot = st.session_state.get("gui_bot")
    if isinstance(existing_bot, AutoBot) and existing_key == key:
        return existing_bot
    bot = AutoBot(config)
    st.session_state["gui_bot"] = bot
    st.session_state["gui_bot_key"] = key
    return bot


def build_wallet_df(state: BotState) -> pd.DataFrame:
    if not state.wallet_history:
        return pd.DataFrame()
    df = pd.DataFrame(
        [{"at": point.at, "value_usd": point.value_usd} for point in state.wallet_history]
    )
    df["at"] = pd.to_datetime(df["at"], utc=True, errors="coerce")
    df["value_usd"] = pd.to_numeric(df["value_usd"], errors="coerce")
    return df.dropna(subset=["at"]).sort_values("at")


def build_transactions_df(state: BotState) -> pd.DataFrame:
    rows = state_to_dict(state)["transactions"]
    if not rows:
        return pd.DataFrame()
    df = pd.DataFrame(rows)
    df["executed_at"] = pd.to_datetime(df["executed_at"], utc=True, errors="coerce")
    for col in ["price", "change_pct", "trade_size_usd", "asset_delta", "cash_delta"]:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    return df.sort_values("executed_at", ascending=False)


def breakdown_rows(state: BotState, config: RuntimeConfig) -> list[dict[str, Any]]:
    price = state.last_price or 0.0
    rows: list[dict[str, Any]] = [
        {"Holding": config.quote_symbol, "Amount": state.portfolio.cash_usd, "Value USD": state.portfolio.cash_usd},
        {
            "Holding": config.asset_symbol,
            "Amount": state.portfolio.asset,
            "Value USD": state.portfolio.exposure_usd(price),
        },
    ]
    for symbol, value in state.portfolio.token_balances_usd.items():
        rows.append({"Holding": symbol, "Amount": None, "Value USD": value})
    return rows


def _render_summary(state: BotState, config: RuntimeConfig) -> None:
    price = state.last_price or 0.0
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Total Wallet Value", f"${portfolio_value(state, price):,.2f}")
    c2.metric(f"{config.asset_symbol} Price", f"${price:,.4f}" if state.last_price else "n/a")
    c3.metric("Mode", config.mode.value)
    c4.metric("Status", "Paused" if state.paused else "Running")

    wallet = config.onchain.wallet_address or "not configured"
    st.caption(
        f"Wallet `{wallet}` | Network `{config.address_book.network}` "
        f"(chain {config.address_book.chain_id}) | Last run {_format_utc_time(state.last_run_at)}"
    )
    if state.last_error is not None:
        st.warning(
            f"Last error ({_format_utc_time(state.last_error.at)}): {state.last_error.message} "
            f"| errors so far: {state.error_count}"
        )

    st.subheader("Breakdown")
    st.dataframe(pd.DataFrame(breakdown_rows(state, config)), hide_index=True, width="stretch")


def _render_last_tick(state: BotState) -> None:
    st.subheader("Last Tick")
    signal = state.last_signal
    execution = state.last_execution
    if signal is None:
        st.info("No tick run yet. Resume the bot and click `Run One Tick`.")
        return
    c1, c2, c3 = st.columns(3)
    c1.metric("Signal", signal.action.value.upper())
    c2.metric("Execution", execution.status.value if execution else "n/a")
    c3.metric("Change", f"{signal.change_pct:.2f}%" if signal.change_pct is not None else "n/a")
    st.caption(signal.reason)
    if execution is not None and execution.detail:
        st.caption(f"Detail: {execution.detail}")


def _render_wallet_chart(state: BotState) -> None:
    st.subheader("Wallet Value")
    df = build_wallet_df(state)
    if df.empty:
        st.info("No wallet history yet.")
        return
    st.line_chart(df.set_index("at")[["value_usd"]], height=250)


def _render_transactions(state: BotState) -> None:
    st.subheader("Transactions")
    df = build_transactions_df(state)
    if df.empty:
        st.info("No transactions recorded yet.")
        return
    display_cols = [
        "executed_at",
        "action",
        "status",
        "mode",
        "price",
        "trade_size_usd",
        "asset_delta",
        "cash_delta",
        "reason",
        "detail",
    ]
    st.dataframe(df[[c for c in display_cols if c in df.columns]], width="stretch", height=320)


def main() -> None:
    args = _parse_args()
    st.set_page_config(page_title="Autobot Dashboard", layout="wide")
    load_dotenv_if_present()

    st.title("Autobot Dashboard")

    with st.sidebar:
        st.header("Bot Controls")
        config_path = st.text_input("Config Path", value=str(args.config))
        run_clicked = st.button("Run One Tick", type="primary")
        c1, c2 = st.columns(2)
        pause_clicked = c1.button("Pause")
        resume_clicked = c2.button("Resume")

    try:
        config = load_config(config_path)
    except Exception as exc:
        st.error(f"Failed to load config: {exc}")
        return

    bot = _get_or_create_bot(config_path, config)

    if pause_clicked:
        bot.pause()
        st.success("Bot paused.")
    if resume_clicked:
        bot.resume()
        st.success("Bot resumed.")
    if run_clicked:
        outcome = bot.run_once()
        if outcome.get("ok"):
            execution = outcome.get("execution") or {}
            st.success(
                f"Tick completed: {outcome['signal']['action']} -> {execution.get('status', 'n/a')}"
            )
        else:
            st.error(f"Tick not completed: {outcome.get('error')}")

    try:
        state = bot.state()
    except Exception as exc:
        st.error(f"Failed to load state: {exc}")
        return

    _render_summary(state, config)
    tab_tick, tab_wallet, tab_tx = st.tabs(["Last Tick", "Wallet", "Transactions"])
    with tab_tick:
        _render_last_tick(state)
    with tab_wallet:
        _render_wallet_chart(state)
    with tab_tx:
        _render_transactions(state)

    with st.expander("Download State"):
        st.download_button(
            label="Download State JSON",
            data=json.dumps(state_to_dict(state), indent=2),
            file_name=f"{config.state_key}.json",
            mime="application/json",
        )


if __name__ == "__main__":
    main()
