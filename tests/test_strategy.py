"""Tests for the deviation band strategy."""

import pytest

from conftest import make_config
from peg_stabilizer.models import Balances, TradeAction, Urgency
from peg_stabilizer.strategy import CIRCUIT_BREAKER, HOLD, PegStrategy

# 16 base / 1,000,000 token
PRICE = 1.6e-5


@pytest.fixture
def strategy():
    return PegStrategy()


@pytest.fixture
def wallet():
    return Balances(token=1_000_000.0, base=100.0)


class TestClassify:
    @pytest.mark.parametrize(
        "deviation, band",
        [
            (0.0, HOLD),
            (-0.49, HOLD),
            (0.5, "LOW"),
            (-2.0, "MEDIUM"),
            (7.5, "HIGH"),
            (-10.0, "EMERGENCY"),
            (14.99, "EMERGENCY"),
            (15.0, CIRCUIT_BREAKER),
            (-40.0, CIRCUIT_BREAKER),
        ],
    )
    def test_bands(self, strategy, deviation, band):
        assert strategy.classify(deviation, make_config()) == band

    def test_beyond_emergency_without_circuit_breaker(self, strategy):
        config = make_config(safety={"circuit_breaker_enabled": False})
        assert strategy.classify(40.0, config) == "EMERGENCY"


class TestDecide:
    def test_hold(self, strategy, wallet):
        decision = strategy.decide(0.2, PRICE, wallet, make_config())

        assert decision.band == HOLD
        assert decision.should_trade is False
        assert decision.action is None

    def test_circuit_breaker_never_trades(self, strategy, wallet):
        decision = strategy.decide(-30.0, PRICE, wallet, make_config())

        assert decision.band == CIRCUIT_BREAKER
        assert decision.should_trade is False

    def test_below_peg_buys(self, strategy, wallet):
        decision = strategy.decide(-7.0, PRICE, wallet, make_config())

        assert decision.action == TradeAction.BUY
        assert decision.urgency == Urgency.HIGH
        # half of max_trade_size, scaled by 7/10
        assert decision.amount == pytest.approx(1.75)

    def test_band_share_caps_amount(self, strategy, wallet):
        decision = strategy.decide(-12.0, PRICE, wallet, make_config())

        assert decision.urgency == Urgency.EMERGENCY
        assert decision.amount == pytest.approx(5.0)

    def test_buy_capped_by_base_balance(self, strategy):
        decision = strategy.decide(
            -12.0, PRICE, Balances(token=0.0, base=1.0), make_config()
        )
        assert decision.amount == pytest.approx(0.8)

    def test_above_peg_sells_tokens(self, strategy):
        config = make_config(limits={"max_trade_size": 50_000.0, "max_daily_volume": 100_000.0})

        decision = strategy.decide(3.0, PRICE, Balances(token=10_000.0, base=1.0), config)

        assert decision.action == TradeAction.SELL
        assert decision.urgency == Urgency.MEDIUM
        # at most 80% of the token balance
        assert decision.amount == pytest.approx(8_000.0)

    def test_sell_capped_by_max_trade_size(self, strategy, wallet):
        decision = strategy.decide(3.0, PRICE, wallet, make_config())
        assert decision.amount == 5.0

    def test_fixed_sizing(self, strategy, wallet):
        config = make_config(strategy={"sizing": "FIXED", "fixed_amount": 0.3})
        decision = strategy.decide(-1.0, PRICE, wallet, config)

        # LOW band caps at 10% of max_trade_size
        assert decision.amount == pytest.approx(0.3)

    def test_dynamic_sizing_is_damped(self, strategy, wallet):
        config = make_config(strategy={"sizing": "DYNAMIC"})
        decision = strategy.decide(-7.0, PRICE, wallet, config)

        assert decision.amount == pytest.approx(1.4)

    def test_empty_wallet(self, strategy):
        decision = strategy.decide(-7.0, PRICE, Balances(token=0.0, base=0.0), make_config())

        assert decision.should_trade is False
        assert "no balance available for trade" in decision.reasons

    def test_to_dict(self, strategy, wallet):
        data = strategy.decide(-7.0, PRICE, wallet, make_config()).to_dict()
        assert data["action"] == "BUY"
        assert data["urgency"] == "HIGH"
        assert data["band"] == "HIGH"
