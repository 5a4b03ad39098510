"""On-chain swap execution through a Uniswap-v2 style router.

The execution engine only talks to the ``ChainExecutor`` protocol. The web3
implementation below owns every chain read and write: decimals, balance and
allowance checks, quotes and submission.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Any, Mapping, Protocol

from .config import RuntimeConfig
from .models import ExecutionStatus, TradeAction

logger = logging.getLogger(__name__)

_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
MAX_SLIPPAGE_BPS = 5_000
MIN_DEADLINE_SEC = 60

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]

ROUTER_V2_ABI: list[dict[str, Any]] = [
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "path", "type": "address[]"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactTokensForTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
]


@dataclass(frozen=True, slots=True)
class SwapRequest:
    direction: TradeAction
    input_symbol: str
    output_symbol: str
    usd_notional: float
    slippage_bps: int
    deadline_sec: int
    reference_price: float


@dataclass(frozen=True, slots=True)
class SwapOutcome:
    status: ExecutionStatus
    tx_hash_or_error: str
    realized_asset_delta: float | None = None
    realized_cash_delta: float | None = None
    # False for allowance approvals, which do not move balances.
    is_trade: bool = True


@dataclass(frozen=True, slots=True)
class WalletBalances:
    quote: float
    asset: float


class ChainExecutor(Protocol):
    def execute_swap(self, request: SwapRequest) -> SwapOutcome: ...

    def read_balances(self) -> WalletBalances: ...


def normalize_private_key(value: str | None) -> str | None:
    if not value:
        return None
    trimmed = value.strip()
    with_prefix = trimmed if trimmed.startswith("0x") else f"0x{trimmed}"
    return with_prefix if _PRIVATE_KEY_RE.match(with_prefix) else None


def resolve_token_key(symbol: str, tokens: Mapping[str, str]) -> str | None:
    normalized = symbol.strip().lower()
    for key in tokens:
        if key.lower() == normalized:
            return key
    return None


def clamp_slippage_bps(value: int) -> int:
    return min(max(int(value), 0), MAX_SLIPPAGE_BPS)


def _to_units(value: float, decimals: int) -> int:
    scale = Decimal(10) ** int(decimals)
    return int((Decimal(str(value)) * scale).to_integral_value(rounding=ROUND_DOWN))


def _from_units(value: int, decimals: int) -> float:
    return float(Decimal(int(value)) / (Decimal(10) ** int(decimals)))


class Web3ChainExecutor:
    def __init__(self, config: RuntimeConfig):
        self.config = config
        self._w3: Any | None = None
        self._account: Any | None = None
        self._web3_cls: Any | None = None

    def _connect(self) -> None:
        if self._w3 is not None:
            return
        try:
            from eth_account import Account
            from web3 import Web3
        except Exception as exc:
            raise RuntimeError(
                "web3 and eth-account packages are required for onchain mode. "
                "Install with: pip install web3 eth-account"
            ) from exc
        settings = self.config.onchain
        private_key = normalize_private_key(settings.private_key)
        if not settings.rpc_url or private_key is None:
            raise RuntimeError("RPC_URL and a valid BOT_PRIVATE_KEY are required for onchain mode")
        self._web3_cls = Web3
        self._w3 = Web3(
            Web3.HTTPProvider(
                settings.rpc_url,
                request_kwargs={"timeout": float(settings.timeout_seconds)},
            )
        )
        self._account = Account.from_key(private_key)

    def _token_address(self, symbol: str) -> str | None:
        tokens = self.config.address_book.tokens
        key = resolve_token_key(symbol, tokens)
        return tokens[key] if key is not None else None

    def _router_address(self) -> str:
        return (
            self.config.onchain.swap_router_address
            or self.config.address_book.routers.get("uniswap_v2_router02", "")
        )

    def _erc20(self, address: str) -> Any:
        assert self._w3 is not None and self._web3_cls is not None
        return self._w3.eth.contract(
            address=self._web3_cls.to_checksum_address(address),
            abi=ERC20_ABI,
        )

    def _send(self, fn: Any) -> str:
        assert self._w3 is not None and self._account is not None
        owner = self._account.address
        tx = fn.build_transaction(
            {
                "from": owner,
                "nonce": self._w3.eth.get_transaction_count(owner, "pending"),
                "chainId": int(self.config.address_book.chain_id),
            }
        )
        signed = self._account.sign_transaction(tx)
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        return self._web3_cls.to_hex(tx_hash)

    def read_balances(self) -> WalletBalances:
        self._connect()
        assert self._account is not None
        owner = self._account.address
        values: dict[str, float] = {}
        for label, symbol in (
            ("quote", self.config.quote_symbol),
            ("asset", self.config.asset_symbol),
        ):
            address = self._token_address(symbol)
            if address is None:
                raise RuntimeError(f"Token {symbol} not found in address book")
            token = self._erc20(address)
            decimals = int(token.functions.decimals().call())
            raw = int(token.functions.balanceOf(owner).call())
            values[label] = _from_units(raw, decimals)
        return WalletBalances(quote=values["quote"], asset=values["asset"])

    def execute_swap(self, request: SwapRequest) -> SwapOutcome:
        self._connect()
        assert self._w3 is not None and self._account is not None and self._web3_cls is not None
        web3_cls = self._web3_cls
        input_address = self._token_address(request.input_symbol)
        output_address = self._token_address(request.output_symbol)
        router_address = self._router_address()
        if not all(
            addr and web3_cls.is_address(addr)
            for addr in (input_address, output_address, router_address)
        ):
            return SwapOutcome(ExecutionStatus.FAILED, "Invalid router or token address")

        owner = self._account.address
        input_token = self._erc20(input_address)
        output_token = self._erc20(output_address)
        input_decimals = int(input_token.functions.decimals().call())
        output_decimals = int(output_token.functions.decimals().call())

        if request.direction is TradeAction.BUY:
            amount_in_value = request.usd_notional
        else:
            amount_in_value = request.usd_notional / request.reference_price
        amount_in = _to_units(amount_in_value, input_decimals)
        if amount_in <= 0:
            return SwapOutcome(ExecutionStatus.FAILED, "Computed trade amount is invalid")

        balance = int(input_token.functions.balanceOf(owner).call())
        if balance < amount_in:
            return SwapOutcome(ExecutionStatus.SKIPPED, "Insufficient token balance")

        router_cs = web3_cls.to_checksum_address(router_address)
        allowance = int(input_token.functions.allowance(owner, router_cs).call())
        if allowance < amount_in:
            tx_hash = self._send(input_token.functions.approve(router_cs, amount_in))
            logger.info("Approval submitted for %s: %s", request.input_symbol, tx_hash)
            return SwapOutcome(
                ExecutionStatus.SUBMITTED,
                f"Approval submitted {tx_hash}",
                is_trade=False,
            )

        path = [
            web3_cls.to_checksum_address(input_address),
            web3_cls.to_checksum_address(output_address),
        ]
        router = self._w3.eth.contract(address=router_cs, abi=ROUTER_V2_ABI)
        amounts_out = router.functions.getAmountsOut(amount_in, path).call()
        expected_out = int(amounts_out[-1])
        slippage = clamp_slippage_bps(request.slippage_bps)
        min_out = expected_out * (10_000 - slippage) // 10_000
        deadline = int(time.time()) + max(int(request.deadline_sec), MIN_DEADLINE_SEC)
        tx_hash = self._send(
            router.functions.swapExactTokensForTokens(amount_in, min_out, path, owner, deadline)
        )
        logger.info("Swap submitted %s -> %s: %s", request.input_symbol, request.output_symbol, tx_hash)

        expected_out_value = _from_units(expected_out, output_decimals)
        amount_in_formatted = _from_units(amount_in, input_decimals)
        if request.direction is TradeAction.BUY:
            asset_delta = expected_out_value
            cash_delta = -amount_in_formatted
        else:
            asset_delta = -amount_in_formatted
            cash_delta = expected_out_value
        return SwapOutcome(
            ExecutionStatus.SUBMITTED,
            f"Swap submitted {tx_hash}",
            realized_asset_delta=asset_delta,
            realized_cash_delta=cash_delta,
        )
