"""
Chain executors for token/base swaps.

The orchestrator talks to a ChainExecutor: one call per swap, a pure
quoting function and a balance query. Two implementations are provided:

- PaperChainExecutor simulates swaps against a constant product pool
- Web3ChainExecutor signs and sends Uniswap V2 style router swaps
"""

import asyncio
import secrets
import time
from abc import ABC, abstractmethod
from typing import Optional

from eth_account import Account
from web3 import Web3

from .config_loader import ChainSettings
from .exceptions import ConfigurationError, UpstreamUnavailable
from .models import Balances, ExecutionResult, SwapEstimate, TradeAction, Urgency
from .price_oracle import PriceSource, StaticPriceSource
from .utils import constant_product_output, get_logger

logger = get_logger(__name__)

GAS_PRICE_MULTIPLIERS = {
    Urgency.LOW: 1.0,
    Urgency.MEDIUM: 1.1,
    Urgency.HIGH: 1.2,
    Urgency.EMERGENCY: 1.5,
}

DEFAULT_FEE_BPS = 25  # PancakeSwap 0.25%
DEADLINE_SECONDS = 1200
GAS_LIMIT_BUFFER = 1.2
SWAP_GAS_ESTIMATE = 150_000

# (revert fragment, operator message), first match wins
_ERROR_PATTERNS = [
    (
        "INSUFFICIENT_OUTPUT_AMOUNT",
        "Slippage tolerance exceeded - try increasing slippage or reducing trade size",
    ),
    ("INSUFFICIENT_INPUT_AMOUNT", "Input amount too small for swap"),
    ("INSUFFICIENT_LIQUIDITY", "Insufficient liquidity in the pool"),
    ("TRANSFER_FAILED", "Token transfer failed - check allowance and balance"),
    ("EXPIRED", "Transaction deadline expired"),
    ("insufficient funds", "Insufficient funds for gas + trade amount"),
    ("nonce", "Nonce conflict - transaction already pending"),
    ("gas", "Gas estimation failed or gas price too low"),
]


def parse_error(error) -> str:
    """Map a router/RPC error to an operator-facing message."""
    message = str(error) or error.__class__.__name__
    for fragment, friendly in _ERROR_PATTERNS:
        if fragment in message:
            return friendly
    return message


def gas_multiplier(urgency: Optional[Urgency]) -> float:
    return GAS_PRICE_MULTIPLIERS.get(urgency, GAS_PRICE_MULTIPLIERS[Urgency.MEDIUM])


def minimum_output(expected: float, min_output: Optional[float], slippage: float) -> float:
    """Explicit ``min_output`` is a hard floor; otherwise expected less slippage."""
    if min_output is not None and min_output > 0:
        return min_output
    return expected * (1 - slippage)


class ChainExecutor(ABC):
    """On-chain swap collaborator used by the orchestrator."""

    @abstractmethod
    async def execute_buy(
        self,
        amount: float,
        min_output: Optional[float],
        slippage: float,
        urgency: Optional[Urgency],
    ) -> ExecutionResult:
        """Swap ``amount`` of the base asset for the token."""

    @abstractmethod
    async def execute_sell(
        self,
        amount: float,
        min_output: Optional[float],
        slippage: float,
        urgency: Optional[Urgency],
    ) -> ExecutionResult:
        """Swap ``amount`` of the token for the base asset."""

    @abstractmethod
    async def estimate_swap(self, amount: float, action: TradeAction) -> SwapEstimate:
        """Quote a swap without sending anything."""

    @abstractmethod
    async def get_balances(self) -> Balances:
        """Wallet balances of the token and the base asset."""

    async def ping(self) -> bool:
        await self.get_balances()
        return True

    async def execute(
        self,
        action: TradeAction,
        amount: float,
        min_output: Optional[float],
        slippage: float,
        urgency: Optional[Urgency],
    ) -> ExecutionResult:
        if action == TradeAction.BUY:
            return await self.execute_buy(amount, min_output, slippage, urgency)
        return await self.execute_sell(amount, min_output, slippage, urgency)


class PaperChainExecutor(ChainExecutor):
    """
    Simulated executor backed by a price source.

    Quotes and fills use the constant product formula on the source's
    current reserves. When the source is a StaticPriceSource the fill is
    applied to its reserves so later prices reflect the trade.
    """

    def __init__(
        self,
        source: PriceSource,
        token_balance: float = 1_000_000.0,
        base_balance: float = 10.0,
        fee_bps: int = DEFAULT_FEE_BPS,
        token_symbol: str = "TOKEN",
        base_symbol: str = "BNB",
        base_gas_price_wei: int = 5 * 10**9,
    ):
        self.source = source
        self.token_balance = token_balance
        self.base_balance = base_balance
        self.fee_bps = fee_bps
        self.token_symbol = token_symbol
        self.base_symbol = base_symbol
        self.base_gas_price_wei = base_gas_price_wei
        self.block_number = 1
        self.address = "0x" + "00" * 19 + "01"

    def _symbols(self, action: TradeAction):
        if action == TradeAction.BUY:
            return self.base_symbol, self.token_symbol
        return self.token_symbol, self.base_symbol

    async def _quote(self, amount: float, action: TradeAction):
        reserves = await self.source.get_pool_reserves()
        if action == TradeAction.BUY:
            out = constant_product_output(
                amount, reserves.base_reserve, reserves.token_reserve, self.fee_bps
            )
        else:
            out = constant_product_output(
                amount, reserves.token_reserve, reserves.base_reserve, self.fee_bps
            )
        return reserves, out

    async def estimate_swap(self, amount: float, action: TradeAction) -> SwapEstimate:
        _, out = await self._quote(amount, action)
        input_token, output_token = self._symbols(action)
        if out <= 0:
            raise UpstreamUnavailable("Pool returned no output for quote", source="pool")

        price = amount / out if action == TradeAction.BUY else out / amount
        return SwapEstimate(
            amount_in=amount,
            amount_out=out,
            price=price,
            input_token=input_token,
            output_token=output_token,
            fee_percent=self.fee_bps / 100,
        )

    async def get_balances(self) -> Balances:
        return Balances(
            token=self.token_balance, base=self.base_balance, address=self.address
        )

    async def _execute(
        self,
        action: TradeAction,
        amount: float,
        min_output: Optional[float],
        slippage: float,
        urgency: Optional[Urgency],
    ) -> ExecutionResult:
        available = self.base_balance if action == TradeAction.BUY else self.token_balance
        input_token, _ = self._symbols(action)
        if amount > available:
            return ExecutionResult(
                success=False,
                action=action,
                input_amount=amount,
                error=f"Insufficient {input_token} balance. Have: {available}, Need: {amount}",
            )

        reserves, out = await self._quote(amount, action)
        expected = out
        floor = minimum_output(expected, min_output, slippage)
        if out < floor:
            return ExecutionResult(
                success=False,
                action=action,
                input_amount=amount,
                min_output_amount=floor,
                error=parse_error("INSUFFICIENT_OUTPUT_AMOUNT"),
            )

        gas_price = int(self.base_gas_price_wei * gas_multiplier(urgency))
        gas_cost = SWAP_GAS_ESTIMATE * gas_price / 10**18

        if action == TradeAction.BUY:
            self.base_balance -= amount + gas_cost
            self.token_balance += out
            new_reserves = (reserves.token_reserve - out, reserves.base_reserve + amount)
        else:
            self.token_balance -= amount
            self.base_balance += out - gas_cost
            new_reserves = (reserves.token_reserve + amount, reserves.base_reserve - out)

        if isinstance(self.source, StaticPriceSource):
            self.source.set_reserves(*new_reserves)

        self.block_number += 1
        tx_hash = "0x" + secrets.token_hex(32)
        logger.info(
            f"PAPER {action.value}: {amount} {input_token} -> {out:.8f} (tx {tx_hash[:10]}...)"
        )

        return ExecutionResult(
            success=True,
            action=action,
            input_amount=amount,
            tx_hash=tx_hash,
            block_number=self.block_number,
            output_amount=out,
            min_output_amount=floor,
            gas_used=SWAP_GAS_ESTIMATE,
            gas_price=gas_price,
            gas_cost=gas_cost,
        )

    async def execute_buy(self, amount, min_output, slippage, urgency) -> ExecutionResult:
        return await self._execute(TradeAction.BUY, amount, min_output, slippage, urgency)

    async def execute_sell(self, amount, min_output, slippage, urgency) -> ExecutionResult:
        return await self._execute(TradeAction.SELL, amount, min_output, slippage, urgency)


# Uniswap V2 / PancakeSwap router ABI (minimal)
ROUTER_ABI = [
    {
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "path", "type": "address[]"},
        ],
        "name": "getAmountsOut",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "name": "swapExactETHForTokens",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "name": "swapExactTokensForETH",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

# ERC20 ABI (minimal)
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "_owner", "type": "address"},
            {"name": "_spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_spender", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

MAX_UINT256 = 2**256 - 1


class Web3ChainExecutor(ChainExecutor):
    """
    Live executor sending V2 router swaps from the bot wallet.

    Every web3 call is blocking and runs in a worker thread. Nonces are
    tracked locally so back-to-back transactions do not collide.
    """

    def __init__(
        self,
        settings: ChainSettings,
        w3: Optional[Web3] = None,
        private_key: Optional[str] = None,
        fee_bps: int = DEFAULT_FEE_BPS,
        receipt_timeout: int = 120,
    ):
        missing = [
            name
            for name in ("rpc_url", "router_address", "token_address", "wrapped_base_address")
            if not getattr(settings, name)
        ]
        if missing and w3 is None:
            raise ConfigurationError(
                f"Missing chain settings for executor: {', '.join(missing)}",
                {"missing": missing},
            )

        private_key = private_key or settings.private_key()
        if not private_key:
            raise ConfigurationError(
                f"Private key environment variable {settings.private_key_env} not set"
            )

        self.settings = settings
        self.fee_bps = fee_bps
        self.receipt_timeout = receipt_timeout
        self.w3 = w3 or Web3(
            Web3.HTTPProvider(
                settings.rpc_url, request_kwargs={"timeout": settings.request_timeout}
            )
        )
        self.account = Account.from_key(private_key)
        self.router = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.router_address), abi=ROUTER_ABI
        )
        self.token = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.token_address), abi=ERC20_ABI
        )
        self.wrapped_base = Web3.to_checksum_address(settings.wrapped_base_address)
        self.token_address = Web3.to_checksum_address(settings.token_address)
        self._pending_nonce: Optional[int] = None
        self._nonce_lock = asyncio.Lock()

        logger.info(f"Web3 executor initialized for wallet {self.account.address}")

    parse_error = staticmethod(parse_error)

    def _path(self, action: TradeAction):
        if action == TradeAction.BUY:
            return [self.wrapped_base, self.token_address]
        return [self.token_address, self.wrapped_base]

    def _decimals(self, action: TradeAction):
        if action == TradeAction.BUY:
            return self.settings.base_decimals, self.settings.token_decimals
        return self.settings.token_decimals, self.settings.base_decimals

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    async def get_next_nonce(self) -> int:
        async with self._nonce_lock:
            if self._pending_nonce is not None:
                nonce = self._pending_nonce
                self._pending_nonce += 1
                return nonce

            nonce = await self._run(
                self.w3.eth.get_transaction_count, self.account.address, "pending"
            )
            self._pending_nonce = nonce + 1
            return nonce

    def reset_nonce(self) -> None:
        self._pending_nonce = None
        logger.debug("Nonce tracker reset")

    async def get_gas_price(self, urgency: Optional[Urgency]) -> int:
        try:
            base = await self._run(lambda: self.w3.eth.gas_price)
        except Exception as e:
            logger.warning(f"Failed to get gas price: {e}, using 5 gwei")
            base = Web3.to_wei(5, "gwei")
        return int(base * gas_multiplier(urgency))

    async def estimate_swap(self, amount: float, action: TradeAction) -> SwapEstimate:
        in_decimals, out_decimals = self._decimals(action)
        amount_in = int(amount * 10**in_decimals)
        try:
            amounts = await self._run(
                self.router.functions.getAmountsOut(amount_in, self._path(action)).call
            )
        except Exception as e:
            raise UpstreamUnavailable(f"Router quote failed: {e}", source="router")

        out = amounts[-1] / 10**out_decimals
        if out <= 0:
            raise UpstreamUnavailable("Router returned no output for quote", source="router")

        if action == TradeAction.BUY:
            input_token, output_token = self.settings.base_symbol, self.settings.token_symbol
            price = amount / out
        else:
            input_token, output_token = self.settings.token_symbol, self.settings.base_symbol
            price = out / amount

        return SwapEstimate(
            amount_in=amount,
            amount_out=out,
            price=price,
            input_token=input_token,
            output_token=output_token,
            fee_percent=self.fee_bps / 100,
        )

    def _read_balances(self) -> Balances:
        base_raw = self.w3.eth.get_balance(self.account.address)
        token_raw = self.token.functions.balanceOf(self.account.address).call()
        return Balances(
            token=token_raw / 10**self.settings.token_decimals,
            base=base_raw / 10**self.settings.base_decimals,
            address=self.account.address,
        )

    async def get_balances(self) -> Balances:
        try:
            return await self._run(self._read_balances)
        except Exception as e:
            raise UpstreamUnavailable(f"Balance query failed: {e}", source="rpc")

    async def _send(self, tx_params) -> dict:
        signed = self.account.sign_transaction(tx_params)
        tx_hash = await self._run(self.w3.eth.send_raw_transaction, signed.raw_transaction)
        logger.info(f"Transaction sent: {self.w3.to_hex(tx_hash)}")
        return await self._run(
            self.w3.eth.wait_for_transaction_receipt, tx_hash, self.receipt_timeout
        )

    async def ensure_approval(self, amount_raw: int) -> None:
        allowance = await self._run(
            self.token.functions.allowance(
                self.account.address, self.router.address
            ).call
        )
        if allowance >= amount_raw:
            return

        logger.info("Approving token for router")
        nonce = await self.get_next_nonce()
        tx = await self._run(
            self.token.functions.approve(self.router.address, MAX_UINT256).build_transaction,
            {
                "from": self.account.address,
                "gas": 100_000,
                "nonce": nonce,
                "gasPrice": await self.get_gas_price(Urgency.MEDIUM),
            },
        )
        receipt = await self._send(tx)
        if receipt["status"] != 1:
            raise RuntimeError("Token approval reverted")

    async def _execute(
        self,
        action: TradeAction,
        amount: float,
        min_output: Optional[float],
        slippage: float,
        urgency: Optional[Urgency],
    ) -> ExecutionResult:
        in_decimals, out_decimals = self._decimals(action)
        amount_raw = int(amount * 10**in_decimals)
        path = self._path(action)

        try:
            estimate = await self.estimate_swap(amount, action)
            floor = minimum_output(estimate.amount_out, min_output, slippage)
            floor_raw = int(floor * 10**out_decimals)
            deadline = int(time.time()) + DEADLINE_SECONDS

            if action == TradeAction.BUY:
                swap = self.router.functions.swapExactETHForTokens(
                    floor_raw, path, self.account.address, deadline
                )
                value = amount_raw
            else:
                await self.ensure_approval(amount_raw)
                swap = self.router.functions.swapExactTokensForETH(
                    amount_raw, floor_raw, path, self.account.address, deadline
                )
                value = 0

            before = await self._run(self._read_balances)
            gas_price = await self.get_gas_price(urgency)
            gas_limit = await self._run(
                swap.estimate_gas, {"from": self.account.address, "value": value}
            )
            nonce = await self.get_next_nonce()
            tx = await self._run(
                swap.build_transaction,
                {
                    "from": self.account.address,
                    "value": value,
                    "gas": int(gas_limit * GAS_LIMIT_BUFFER),
                    "gasPrice": gas_price,
                    "nonce": nonce,
                },
            )
            receipt = await self._send(tx)
            tx_hash = self.w3.to_hex(receipt["transactionHash"])

            if receipt["status"] != 1:
                self.reset_nonce()
                return ExecutionResult(
                    success=False,
                    action=action,
                    input_amount=amount,
                    tx_hash=tx_hash,
                    block_number=receipt["blockNumber"],
                    min_output_amount=floor,
                    error="Transaction reverted",
                )

            after = await self._run(self._read_balances)
            gas_used = receipt["gasUsed"]
            effective_gas_price = receipt.get("effectiveGasPrice", gas_price)
            gas_cost = gas_used * effective_gas_price / 10**18

            if action == TradeAction.BUY:
                output = after.token - before.token
            else:
                output = after.base - before.base + gas_cost

            return ExecutionResult(
                success=True,
                action=action,
                input_amount=amount,
                tx_hash=tx_hash,
                block_number=receipt["blockNumber"],
                output_amount=output,
                min_output_amount=floor,
                gas_used=gas_used,
                gas_price=effective_gas_price,
                gas_cost=gas_cost,
            )

        except Exception as e:
            logger.error(f"{action.value} execution failed: {e}")
            self.reset_nonce()
            return ExecutionResult(
                success=False,
                action=action,
                input_amount=amount,
                error=parse_error(e),
            )

    async def execute_buy(self, amount, min_output, slippage, urgency) -> ExecutionResult:
        return await self._execute(TradeAction.BUY, amount, min_output, slippage, urgency)

    async def execute_sell(self, amount, min_output, slippage, urgency) -> ExecutionResult:
        return await self._execute(TradeAction.SELL, amount, min_output, slippage, urgency)
