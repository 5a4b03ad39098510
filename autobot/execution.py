from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from urllib.parse import urlparse

from .config import RuntimeConfig
from .models import (
    BotState,
    ExecutionMode,
    ExecutionResult,
    ExecutionStatus,
    Portfolio,
    Signal,
    TradeAction,
    TransactionRecord,
)
from .onchain import ChainExecutor, SwapRequest, normalize_private_key, resolve_token_key
from .risk import can_trade, check_allocation
from .state import MAX_TRANSACTIONS
from .webhook import WebhookSender, build_payload

logger = logging.getLogger(__name__)


class ExecutionConfigError(RuntimeError):
    """A required setting is missing or invalid; the trade never reaches a backend."""


def _result(
    status: ExecutionStatus,
    mode: ExecutionMode,
    executed_at: str,
    detail: str | None = None,
    **amounts: float | None,
) -> ExecutionResult:
    return ExecutionResult(
        status=status,
        mode=mode,
        executed_at=executed_at,
        detail=detail,
        **amounts,
    )


def record_transaction(state: BotState, signal: Signal, result: ExecutionResult) -> BotState:
    if signal.action is TradeAction.HOLD or result.status is ExecutionStatus.SKIPPED:
        return state
    record = TransactionRecord.from_execution(signal, result)
    transactions = (*state.transactions, record)[-MAX_TRANSACTIONS:]
    return replace(state, transactions=transactions)


def execute_signal(
    config: RuntimeConfig,
    state: BotState,
    signal: Signal,
    *,
    webhook: WebhookSender | None = None,
    chain: ChainExecutor | None = None,
    now: datetime | None = None,
) -> tuple[ExecutionResult, BotState]:
    """Apply one signal to the portfolio through the configured backend.

    Returns exactly one result and one next state. Configuration errors come
    back as ``failed`` with the state untouched and are not recorded;
    every other non-skipped outcome is appended to ``transactions``.
    """
    moment = now or datetime.now(timezone.utc)
    executed_at = moment.isoformat()
    mode = config.mode

    if signal.action is TradeAction.HOLD:
        return _result(ExecutionStatus.SKIPPED, mode, executed_at, "Hold signal"), state

    gate = can_trade(state, moment)
    if not gate.ok:
        return _result(ExecutionStatus.SKIPPED, mode, executed_at, gate.reason), state

    try:
        if mode is ExecutionMode.DISABLED:
            return _result(ExecutionStatus.SKIPPED, mode, executed_at, "Execution disabled"), state
        if mode is ExecutionMode.WEBHOOK:
            result, next_state = _execute_webhook(config, state, signal, webhook, executed_at)
        elif mode is ExecutionMode.PAPER:
            result, next_state = _execute_paper(config, state, signal, executed_at)
        elif mode is ExecutionMode.ONCHAIN:
            result, next_state = _execute_onchain(config, state, signal, chain, executed_at)
        else:
            raise ValueError(f"Unsupported execution mode: {mode}")
    except ExecutionConfigError as exc:
        logger.warning("Execution not attempted (%s): %s", mode.value, exc)
        return _result(ExecutionStatus.FAILED, mode, executed_at, str(exc)), state

    logger.info(
        "Execution %s via %s: %s",
        result.status.value,
        mode.value,
        result.detail,
    )
    return result, record_transaction(next_state, signal, result)


def _execute_webhook(
    config: RuntimeConfig,
    state: BotState,
    signal: Signal,
    sender: WebhookSender | None,
    executed_at: str,
) -> tuple[ExecutionResult, BotState]:
    mode = ExecutionMode.WEBHOOK
    if not config.webhook.url:
        raise ExecutionConfigError("WEBHOOK_URL is not set")
    parsed = urlparse(config.webhook.url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ExecutionConfigError(f"WEBHOOK_URL is not an http(s) URL: {config.webhook.url!r}")
    if sender is None:
        raise ExecutionConfigError("Webhook sender is not configured")

    payload = build_payload(config, state, signal)
    try:
        status_code = sender.send(config.webhook.url, payload, config.webhook.auth_token)
    except OSError as exc:
        logger.warning("Webhook delivery failed: %s", exc)
        return _result(ExecutionStatus.FAILED, mode, executed_at, f"Webhook transport error: {exc}"), state

    if not 200 <= status_code < 300:
        return _result(ExecutionStatus.FAILED, mode, executed_at, f"Webhook error ({status_code})"), state

    result = _result(
        ExecutionStatus.SUBMITTED,
        mode,
        executed_at,
        "Webhook accepted",
        trade_size_usd=state.params.trade_size_usd,
    )
    return result, replace(state, last_trade_at=executed_at)


def _execute_paper(
    config: RuntimeConfig,
    state: BotState,
    signal: Signal,
    executed_at: str,
) -> tuple[ExecutionResult, BotState]:
    mode = ExecutionMode.PAPER
    trade_size_usd = state.params.trade_size_usd
    if trade_size_usd <= 0:
        raise ExecutionConfigError("Trade size must be positive")

    price = signal.price
    portfolio = state.portfolio
    asset_delta = trade_size_usd / price

    if signal.action is TradeAction.BUY:
        allocation = check_allocation(state, price, trade_size_usd, config.asset_symbol)
        if not allocation.ok:
            return _result(ExecutionStatus.SKIPPED, mode, executed_at, allocation.reason), state
        if portfolio.cash_usd < trade_size_usd:
            return _result(ExecutionStatus.SKIPPED, mode, executed_at, "Insufficient cash"), state

        next_asset = portfolio.asset + asset_delta
        entry = state.avg_entry_price if state.avg_entry_price is not None else price
        next_entry = ((portfolio.asset * entry) + trade_size_usd) / next_asset
        next_state = replace(
            state,
            last_trade_at=executed_at,
            avg_entry_price=next_entry,
            portfolio=replace(
                portfolio,
                cash_usd=portfolio.cash_usd - trade_size_usd,
                asset=next_asset,
            ),
        )
        result = _result(
            ExecutionStatus.FILLED,
            mode,
            executed_at,
            "Paper buy executed",
            trade_size_usd=trade_size_usd,
            asset_delta=asset_delta,
            cash_delta=-trade_size_usd,
        )
        return result, next_state

    sell_amount = min(portfolio.asset, asset_delta)
    if sell_amount <= 0:
        return _result(ExecutionStatus.SKIPPED, mode, executed_at, "No asset balance to sell"), state

    cash_delta = sell_amount * price
    remaining = portfolio.asset - sell_amount
    next_portfolio: Portfolio = replace(
        portfolio,
        cash_usd=portfolio.cash_usd + cash_delta,
        asset=max(0.0, remaining),
    )
    next_state = replace(
        state,
        last_trade_at=executed_at,
        avg_entry_price=state.avg_entry_price if remaining > 0 else None,
        portfolio=next_portfolio,
    )
    result = _result(
        ExecutionStatus.FILLED,
        mode,
        executed_at,
        "Paper sell executed",
        trade_size_usd=cash_delta,
        asset_delta=-sell_amount,
        cash_delta=cash_delta,
    )
    return result, next_state


def _execute_onchain(
    config: RuntimeConfig,
    state: BotState,
    signal: Signal,
    chain: ChainExecutor | None,
    executed_at: str,
) -> tuple[ExecutionResult, BotState]:
    mode = ExecutionMode.ONCHAIN
    settings = config.onchain
    if not settings.rpc_url:
        raise ExecutionConfigError("RPC_URL is not set")
    if normalize_private_key(settings.private_key) is None:
        raise ExecutionConfigError("BOT_PRIVATE_KEY is missing or invalid")
    tokens = config.address_book.tokens
    asset_key = resolve_token_key(config.asset_symbol, tokens)
    quote_key = resolve_token_key(config.quote_symbol, tokens)
    if asset_key is None or quote_key is None:
        raise ExecutionConfigError("ASSET_SYMBOL or QUOTE_SYMBOL not found in address book")
    trade_size_usd = state.params.trade_size_usd
    if trade_size_usd <= 0:
        raise ExecutionConfigError("Trade size must be positive")
    if chain is None:
        raise ExecutionConfigError("Chain executor is not configured")

    if signal.action is TradeAction.BUY:
        allocation = check_allocation(state, signal.price, trade_size_usd, config.asset_symbol)
        if not allocation.ok:
            return _result(ExecutionStatus.SKIPPED, mode, executed_at, allocation.reason), state

    is_buy = signal.action is TradeAction.BUY
    request = SwapRequest(
        direction=signal.action,
        input_symbol=quote_key if is_buy else asset_key,
        output_symbol=asset_key if is_buy else quote_key,
        usd_notional=trade_size_usd,
        slippage_bps=int(settings.swap_slippage_bps),
        deadline_sec=int(settings.swap_deadline_sec),
        reference_price=signal.price,
    )
    try:
        outcome = chain.execute_swap(request)
    except Exception as exc:
        logger.warning("Chain executor failed: %s", exc)
        return _result(ExecutionStatus.FAILED, mode, executed_at, f"Chain error: {exc}"), state

    trade_size = trade_size_usd
    if not is_buy and outcome.realized_cash_delta is not None:
        trade_size = outcome.realized_cash_delta
    result = _result(
        outcome.status,
        mode,
        executed_at,
        outcome.tx_hash_or_error,
        trade_size_usd=trade_size if outcome.status is not ExecutionStatus.SKIPPED else None,
        asset_delta=outcome.realized_asset_delta,
        cash_delta=outcome.realized_cash_delta,
    )
    traded = outcome.is_trade and outcome.status in (
        ExecutionStatus.SUBMITTED,
        ExecutionStatus.FILLED,
    )
    if not traded:
        return result, state
    return result, replace(state, last_trade_at=executed_at)
