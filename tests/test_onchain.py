import unittest
from typing import Any

from autobot.config import RuntimeConfig
from autobot.models import ExecutionMode, ExecutionStatus, TradeAction
from autobot.onchain import (
    SwapRequest,
    Web3ChainExecutor,
    clamp_slippage_bps,
    normalize_private_key,
    resolve_token_key,
)

OWNER = "0x000000000000000000000000000000000000bEEF"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WETH = "0x4200000000000000000000000000000000000006"


class _Call:
    def __init__(self, contract: "_FakeContract", name: str, args: tuple[Any, ...]) -> None:
        self.contract = contract
        self.name = name
        self.args = args

    def call(self) -> Any:
        return self.contract.read(self.name, self.args)

    def build_transaction(self, tx: dict[str, Any]) -> dict[str, Any]:
        self.contract.chain.built.append((self.name, self.args, tx))
        return {**tx, "fn": self.name}


class _Functions:
    def __init__(self, contract: "_FakeContract") -> None:
        self._contract = contract

    def __getattr__(self, name: str) -> Any:
        return lambda *args: _Call(self._contract, name, args)


class _FakeContract:
    def __init__(self, chain: "_FakeChainState", address: str) -> None:
        self.chain = chain
        self.address = address
        self.functions = _Functions(self)

    def read(self, name: str, args: tuple[Any, ...]) -> Any:
        if name == "decimals":
            return self.chain.decimals[self.address]
        if name == "balanceOf":
            return self.chain.balances[self.address]
        if name == "allowance":
            return self.chain.allowances.get(self.address, 0)
        if name == "getAmountsOut":
            amount_in, path = args
            return [amount_in, self.chain.quote_out]
        raise AssertionError(f"unexpected read {name}")


class _FakeChainState:
    def __init__(self) -> None:
        self.decimals = {USDC: 6, WETH: 18}
        self.balances = {USDC: 1_000 * 10**6, WETH: 2 * 10**18}
        self.allowances: dict[str, int] = {}
        self.quote_out = 10**16
        self.built: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.sent: list[bytes] = []


class _FakeEth:
    def __init__(self, chain: _FakeChainState) -> None:
        self.chain = chain

    def contract(self, address: str, abi: Any) -> _FakeContract:
        return _FakeContract(self.chain, address)

    def get_transaction_count(self, owner: str, block: str) -> int:
        return 7

    def send_raw_transaction(self, raw: bytes) -> bytes:
        self.chain.sent.append(raw)
        return b"\x12\x34"


class _FakeW3:
    def __init__(self, chain: _FakeChainState) -> None:
        self.eth = _FakeEth(chain)


class _FakeWeb3:
    @staticmethod
    def to_checksum_address(address: str) -> str:
        return address

    @staticmethod
    def is_address(address: str) -> bool:
        return isinstance(address, str) and address.startswith("0x") and len(address) == 42

    @staticmethod
    def to_hex(value: bytes) -> str:
        return "0x" + value.hex()


class _Signed:
    raw_transaction = b"signed"


class _FakeAccount:
    address = OWNER

    def sign_transaction(self, tx: dict[str, Any]) -> _Signed:
        return _Signed()


def _executor(chain: _FakeChainState) -> Web3ChainExecutor:
    config = RuntimeConfig()
    config.mode = ExecutionMode.ONCHAIN
    config.onchain.rpc_url = "https://rpc.example"
    config.onchain.private_key = "0x" + "11" * 32
    executor = Web3ChainExecutor(config)
    executor._w3 = _FakeW3(chain)
    executor._account = _FakeAccount()
    executor._web3_cls = _FakeWeb3
    return executor


def _request(direction: TradeAction, slippage_bps: int = 50) -> SwapRequest:
    buy = direction is TradeAction.BUY
    return SwapRequest(
        direction=direction,
        input_symbol="usdc" if buy else "weth",
        output_symbol="weth" if buy else "usdc",
        usd_notional=25.0,
        slippage_bps=slippage_bps,
        deadline_sec=300,
        reference_price=2500.0,
    )


class HelperTests(unittest.TestCase):
    def test_private_key_normalization(self) -> None:
        self.assertEqual(normalize_private_key("11" * 32), "0x" + "11" * 32)
        self.assertEqual(normalize_private_key(" 0x" + "aB" * 32 + " "), "0x" + "aB" * 32)
        self.assertIsNone(normalize_private_key("0x1234"))
        self.assertIsNone(normalize_private_key(None))

    def test_slippage_is_clamped(self) -> None:
        self.assertEqual(clamp_slippage_bps(-5), 0)
        self.assertEqual(clamp_slippage_bps(9000), 5000)
        self.assertEqual(clamp_slippage_bps(75), 75)

    def test_token_key_lookup_ignores_case(self) -> None:
        tokens = {"weth": WETH, "usdc": USDC}
        self.assertEqual(resolve_token_key("WETH", tokens), "weth")
        self.assertIsNone(resolve_token_key("DOGE", tokens))


class Web3ChainExecutorTests(unittest.TestCase):
    def test_missing_allowance_submits_approval(self) -> None:
        chain = _FakeChainState()
        outcome = _executor(chain).execute_swap(_request(TradeAction.BUY))
        self.assertEqual(outcome.status, ExecutionStatus.SUBMITTED)
        self.assertEqual(outcome.tx_hash_or_error, "Approval submitted 0x1234")
        self.assertFalse(outcome.is_trade)
        name, args, tx = chain.built[0]
        self.assertEqual(name, "approve")
        self.assertEqual(args[1], 25 * 10**6)
        self.assertEqual(tx["nonce"], 7)
        self.assertEqual(tx["chainId"], 8453)

    def test_buy_swap_with_min_out_from_slippage(self) -> None:
        chain = _FakeChainState()
        chain.allowances[USDC] = 10**12
        outcome = _executor(chain).execute_swap(_request(TradeAction.BUY, slippage_bps=100))
        self.assertEqual(outcome.status, ExecutionStatus.SUBMITTED)
        self.assertEqual(outcome.tx_hash_or_error, "Swap submitted 0x1234")
        self.assertTrue(outcome.is_trade)
        self.assertAlmostEqual(outcome.realized_asset_delta, 0.01)
        self.assertAlmostEqual(outcome.realized_cash_delta, -25.0)
        name, args, _ = chain.built[0]
        self.assertEqual(name, "swapExactTokensForTokens")
        amount_in, min_out, path, to, _deadline = args
        self.assertEqual(amount_in, 25 * 10**6)
        self.assertEqual(min_out, 10**16 * 9900 // 10000)
        self.assertEqual(path, [USDC, WETH])
        self.assertEqual(to, OWNER)

    def test_sell_converts_notional_to_asset_units(self) -> None:
        chain = _FakeChainState()
        chain.allowances[WETH] = 10**30
        chain.quote_out = 25 * 10**6
        outcome = _executor(chain).execute_swap(_request(TradeAction.SELL))
        self.assertAlmostEqual(outcome.realized_asset_delta, -0.01)
        self.assertAlmostEqual(outcome.realized_cash_delta, 25.0)
        self.assertEqual(chain.built[0][1][0], 10**16)

    def test_low_balance_is_skipped(self) -> None:
        chain = _FakeChainState()
        chain.balances[USDC] = 10 * 10**6
        outcome = _executor(chain).execute_swap(_request(TradeAction.BUY))
        self.assertEqual(outcome.status, ExecutionStatus.SKIPPED)
        self.assertEqual(outcome.tx_hash_or_error, "Insufficient token balance")
        self.assertEqual(chain.sent, [])

    def test_read_balances_uses_token_decimals(self) -> None:
        balances = _executor(_FakeChainState()).read_balances()
        self.assertEqual(balances.quote, 1000.0)
        self.assertEqual(balances.asset, 2.0)


if __name__ == "__main__":
    unittest.main()
