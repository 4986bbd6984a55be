"""Shared fixtures and fakes for the peg stabilizer tests."""

import asyncio
from typing import List, Optional

import pytest
from prometheus_client import CollectorRegistry

from peg_stabilizer.chain_executor import ChainExecutor
from peg_stabilizer.config_schema import BotConfiguration
from peg_stabilizer.config_store import InMemoryConfigStore
from peg_stabilizer.interfaces import DeterministicTimeProvider
from peg_stabilizer.metrics import PegMetrics
from peg_stabilizer.models import (
    Balances,
    ExecutionResult,
    SwapEstimate,
    TradeAction,
)
from peg_stabilizer.orchestrator import OrchestratorTimeouts, TradeOrchestrator
from peg_stabilizer.price_oracle import PriceOracle, StaticPriceSource
from peg_stabilizer.risk_gate import RiskGate
from peg_stabilizer.service import PegBotService
from peg_stabilizer.trade_store import InMemoryTradeStore

# 2024-01-01 12:00:00 UTC
NOON = 1704110400.0


class ScriptedExecutor(ChainExecutor):
    """Chain executor that replays a script of outcomes.

    Each entry is True (fill at ``rate`` tokens per base), False (executor
    reports failure), an Exception instance (raised) or a float (seconds to
    hang). Once the script runs out every swap succeeds.
    """

    def __init__(self, script: Optional[List] = None, rate: float = 60_000.0):
        self.script = list(script or [])
        self.rate = rate
        self.calls = []
        self.balances = Balances(token=1_000_000.0, base=100.0, address="0xabc")

    async def _run(self, action, amount, min_output, slippage, urgency):
        self.calls.append((action, amount, min_output, slippage, urgency))
        step = self.script.pop(0) if self.script else True

        if isinstance(step, Exception):
            raise step
        if isinstance(step, float):
            await asyncio.sleep(step)
        if step is False:
            return ExecutionResult(
                success=False,
                action=action,
                input_amount=amount,
                error="Slippage tolerance exceeded",
            )

        out = amount * self.rate if action == TradeAction.BUY else amount / self.rate
        return ExecutionResult(
            success=True,
            action=action,
            input_amount=amount,
            tx_hash=f"0x{len(self.calls):064x}",
            block_number=100 + len(self.calls),
            output_amount=out,
            min_output_amount=out * (1 - slippage),
            gas_used=150_000,
            gas_price=5_000_000_000,
            gas_cost=0.00075,
        )

    async def execute_buy(self, amount, min_output, slippage, urgency):
        return await self._run(TradeAction.BUY, amount, min_output, slippage, urgency)

    async def execute_sell(self, amount, min_output, slippage, urgency):
        return await self._run(TradeAction.SELL, amount, min_output, slippage, urgency)

    async def estimate_swap(self, amount, action):
        out = amount * self.rate if action == TradeAction.BUY else amount / self.rate
        price = amount / out if action == TradeAction.BUY else out / amount
        return SwapEstimate(
            amount_in=amount,
            amount_out=out,
            price=price,
            input_token="BNB" if action == TradeAction.BUY else "TOKEN",
            output_token="TOKEN" if action == TradeAction.BUY else "BNB",
            fee_percent=0.25,
        )

    async def get_balances(self):
        return self.balances


def make_config(**overrides) -> BotConfiguration:
    """Enabled configuration with room for test trades."""
    data = {
        "bot_id": "test-bot",
        "enabled": True,
        "limits": {"max_trade_size": 5.0, "max_daily_volume": 10.0},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return BotConfiguration.model_validate(data)


@pytest.fixture
def time_provider():
    return DeterministicTimeProvider(NOON)


@pytest.fixture
def metrics():
    return PegMetrics(CollectorRegistry())


@pytest.fixture
def price_source():
    return StaticPriceSource()


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def trade_store():
    return InMemoryTradeStore()


@pytest.fixture
def config_store():
    return InMemoryConfigStore()


@pytest.fixture
def risk_gate(config_store, time_provider, metrics):
    return RiskGate(make_config(), config_store, time_provider, metrics)


@pytest.fixture
def oracle(price_source, risk_gate, time_provider):
    return PriceOracle(
        price_source,
        config_provider=lambda: risk_gate.config,
        time_provider=time_provider,
    )


@pytest.fixture
def orchestrator(risk_gate, oracle, executor, trade_store, time_provider, metrics):
    return TradeOrchestrator(
        risk_gate,
        oracle,
        executor,
        trade_store,
        time_provider=time_provider,
        metrics=metrics,
        timeouts=OrchestratorTimeouts(gate=1.0, snapshot=1.0, persist=1.0, execution=1.0),
        persist_backoff=0.0,
    )


@pytest.fixture
def service(risk_gate, oracle, executor, trade_store, config_store, time_provider, metrics):
    return PegBotService(
        risk_gate,
        oracle,
        executor,
        trade_store,
        config_store,
        metrics=metrics,
        time_provider=time_provider,
        timeouts=OrchestratorTimeouts(gate=1.0, snapshot=1.0, persist=1.0, execution=1.0),
    )
