"""Tests for the chain executors."""

from unittest.mock import MagicMock

import pytest

from peg_stabilizer.chain_executor import (
    GAS_PRICE_MULTIPLIERS,
    PaperChainExecutor,
    Web3ChainExecutor,
    gas_multiplier,
    minimum_output,
    parse_error,
)
from peg_stabilizer.config_loader import ChainSettings
from peg_stabilizer.exceptions import ConfigurationError, UpstreamUnavailable
from peg_stabilizer.models import TradeAction, Urgency
from peg_stabilizer.price_oracle import StaticPriceSource, Web3PriceSource
from peg_stabilizer.utils import constant_product_output

TEST_KEY = "0x" + "11" * 32

SETTINGS = ChainSettings(
    rpc_url="http://localhost:8545",
    pair_address="0x" + "aa" * 20,
    token_address="0x" + "bb" * 20,
    wrapped_base_address="0x" + "cc" * 20,
    router_address="0x" + "dd" * 20,
    paper_mode=False,
)


class TestHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            (
                "execution reverted: PancakeRouter: INSUFFICIENT_OUTPUT_AMOUNT",
                "Slippage tolerance exceeded - try increasing slippage or reducing trade size",
            ),
            ("PancakeLibrary: INSUFFICIENT_LIQUIDITY", "Insufficient liquidity in the pool"),
            ("PancakeRouter: EXPIRED", "Transaction deadline expired"),
            ("insufficient funds for gas * price + value", "Insufficient funds for gas + trade amount"),
            ("nonce too low", "Nonce conflict - transaction already pending"),
            ("something else entirely", "something else entirely"),
        ],
    )
    def test_parse_error(self, raw, expected):
        assert parse_error(Exception(raw)) == expected

    def test_parse_error_empty_message_uses_type(self):
        assert parse_error(TimeoutError()) == "TimeoutError"

    def test_gas_multiplier(self):
        assert gas_multiplier(Urgency.EMERGENCY) == 1.5
        assert gas_multiplier(None) == GAS_PRICE_MULTIPLIERS[Urgency.MEDIUM]

    def test_minimum_output(self):
        assert minimum_output(100.0, None, 0.02) == pytest.approx(98.0)
        assert minimum_output(100.0, 0, 0.02) == pytest.approx(98.0)
        # explicit floor wins over slippage
        assert minimum_output(100.0, 99.5, 0.02) == 99.5


class TestPaperChainExecutor:
    @pytest.fixture
    def source(self):
        return StaticPriceSource()

    @pytest.fixture
    def paper(self, source):
        return PaperChainExecutor(source)

    @pytest.mark.asyncio
    async def test_estimate_swap_is_read_only(self, paper, source):
        estimate = await paper.estimate_swap(1.0, TradeAction.BUY)

        assert estimate.amount_out == pytest.approx(
            constant_product_output(1.0, 16.0, 1_000_000.0, 25)
        )
        assert estimate.price == pytest.approx(1.0 / estimate.amount_out)
        assert estimate.input_token == "BNB"
        assert estimate.fee_percent == 0.25
        assert source.base_reserve == 16.0
        assert (await paper.get_balances()).base == 10.0

    @pytest.mark.asyncio
    async def test_buy_updates_balances_and_reserves(self, paper, source):
        result = await paper.execute_buy(1.0, None, 0.02, Urgency.HIGH)

        assert result.success is True
        assert result.tx_hash.startswith("0x") and len(result.tx_hash) == 66
        assert result.gas_price == int(5 * 10**9 * 1.2)
        assert result.output_amount > 0

        balances = await paper.get_balances()
        assert balances.token == pytest.approx(1_000_000.0 + result.output_amount)
        assert balances.base == pytest.approx(10.0 - 1.0 - result.gas_cost)
        assert source.base_reserve == pytest.approx(17.0)

    @pytest.mark.asyncio
    async def test_sell(self, paper):
        result = await paper.execute(TradeAction.SELL, 50_000.0, None, 0.02, None)
        assert result.success is True
        assert result.action == TradeAction.SELL
        assert (await paper.get_balances()).token == pytest.approx(950_000.0)

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, paper):
        result = await paper.execute_buy(11.0, None, 0.02, None)
        assert result.success is False
        assert "Insufficient BNB balance" in result.error

    @pytest.mark.asyncio
    async def test_min_output_floor(self, paper):
        result = await paper.execute_buy(1.0, 10_000_000.0, 0.02, None)
        assert result.success is False
        assert result.error.startswith("Slippage tolerance exceeded")
        assert (await paper.get_balances()).base == 10.0

    @pytest.mark.asyncio
    async def test_ping(self, paper):
        assert await paper.ping() is True


class TestWeb3ChainExecutor:
    def test_missing_settings(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Web3ChainExecutor(ChainSettings(), private_key=TEST_KEY)
        assert "rpc_url" in exc_info.value.details["missing"]

    def test_missing_private_key(self, monkeypatch):
        monkeypatch.delenv("BOT_PRIVATE_KEY", raising=False)
        with pytest.raises(ConfigurationError, match="BOT_PRIVATE_KEY"):
            Web3ChainExecutor(SETTINGS, w3=MagicMock())

    @pytest.fixture
    def w3(self):
        return MagicMock()

    @pytest.fixture
    def live(self, w3):
        return Web3ChainExecutor(SETTINGS, w3=w3, private_key=TEST_KEY)

    @pytest.mark.asyncio
    async def test_nonce_tracking(self, live, w3):
        w3.eth.get_transaction_count.return_value = 7

        assert await live.get_next_nonce() == 7
        assert await live.get_next_nonce() == 8
        assert w3.eth.get_transaction_count.call_count == 1

        live.reset_nonce()
        assert await live.get_next_nonce() == 7

    @pytest.mark.asyncio
    async def test_gas_price_by_urgency(self, live, w3):
        w3.eth.gas_price = 10**9
        assert await live.get_gas_price(Urgency.HIGH) == int(1.2 * 10**9)

    @pytest.mark.asyncio
    async def test_estimate_swap(self, live, w3):
        contract = w3.eth.contract.return_value
        contract.functions.getAmountsOut.return_value.call.return_value = [
            10**18,
            60_000 * 10**18,
        ]

        estimate = await live.estimate_swap(1.0, TradeAction.BUY)

        assert estimate.amount_out == 60_000.0
        assert estimate.price == pytest.approx(1 / 60_000)
        contract.functions.getAmountsOut.assert_called_with(
            10**18, [live.wrapped_base, live.token_address]
        )

    @pytest.mark.asyncio
    async def test_execution_error_is_parsed(self, live, w3):
        contract = w3.eth.contract.return_value
        contract.functions.getAmountsOut.return_value.call.return_value = [10**18, 60_000 * 10**18]
        contract.functions.balanceOf.return_value.call.return_value = 0
        w3.eth.get_balance.return_value = 10**19
        w3.eth.gas_price = 10**9
        contract.functions.swapExactETHForTokens.return_value.estimate_gas.side_effect = Exception(
            "execution reverted: PancakeRouter: INSUFFICIENT_OUTPUT_AMOUNT"
        )

        result = await live.execute_buy(1.0, None, 0.02, Urgency.MEDIUM)

        assert result.success is False
        assert result.error.startswith("Slippage tolerance exceeded")

    @pytest.mark.asyncio
    async def test_balances_wrap_rpc_errors(self, live, w3):
        w3.eth.get_balance.side_effect = ConnectionError("connection refused")

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await live.get_balances()
        assert exc_info.value.source == "rpc"


class TestWeb3PriceSource:
    def test_missing_feeds(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Web3PriceSource(SETTINGS)
        assert exc_info.value.details["missing"] == ["base_usd_feed", "reference_usd_feed"]

    @pytest.mark.asyncio
    async def test_reserves_follow_token_position(self):
        w3 = MagicMock()
        pair = w3.eth.contract.return_value
        pair.functions.getReserves.return_value.call.return_value = (
            16 * 10**18,
            1_000_000 * 10**18,
            1704067200,
        )
        # token sits in slot 1 when token0 is the wrapped base
        pair.functions.token0.return_value.call.return_value = SETTINGS.wrapped_base_address

        source = Web3PriceSource(SETTINGS, w3=w3)
        reserves = await source.get_pool_reserves()

        assert reserves.token_reserve == 1_000_000.0
        assert reserves.base_reserve == 16.0
        assert reserves.block_timestamp == 1704067200

        await source.get_pool_reserves()
        assert pair.functions.token0.return_value.call.call_count == 1

    @pytest.mark.asyncio
    async def test_feed_reading(self):
        w3 = MagicMock()
        feed = w3.eth.contract.return_value
        feed.functions.latestRoundData.return_value.call.return_value = (
            42,
            625 * 10**8,
            0,
            1704067100,
            42,
        )
        feed.functions.decimals.return_value.call.return_value = 8

        reading = await Web3PriceSource(SETTINGS, w3=w3).get_base_usd()

        assert reading.price == 625.0
        assert reading.updated_at == 1704067100
        assert reading.round_id == 42
