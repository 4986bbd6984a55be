"""
Peg Stabilizer.

Keeps an AMM-traded token near a target peg: reads pool and feed prices,
gates corrective swaps through a risk gate with daily limits and a circuit
breaker, and records every trade attempt through its full lifecycle.
"""

from peg_stabilizer.version import __version__
from peg_stabilizer.exceptions import (
    PegStabilizerError,
    ConfigurationError,
    ValidationError,
    SafetyViolation,
    ExecutionFailure,
    UpstreamUnavailable,
    PersistenceError,
    InvalidTransitionError,
)
from peg_stabilizer.config_schema import BotConfiguration, ConfigPatch
from peg_stabilizer.price_oracle import PriceOracle, StaticPriceSource, Web3PriceSource
from peg_stabilizer.chain_executor import PaperChainExecutor, Web3ChainExecutor
from peg_stabilizer.risk_gate import RiskGate
from peg_stabilizer.orchestrator import TradeOrchestrator
from peg_stabilizer.health import HealthAggregator
from peg_stabilizer.service import PegBotService, PegKeeper, create_service

__all__ = [
    "__version__",
    "PegStabilizerError",
    "ConfigurationError",
    "ValidationError",
    "SafetyViolation",
    "ExecutionFailure",
    "UpstreamUnavailable",
    "PersistenceError",
    "InvalidTransitionError",
    "BotConfiguration",
    "ConfigPatch",
    "PriceOracle",
    "StaticPriceSource",
    "Web3PriceSource",
    "PaperChainExecutor",
    "Web3ChainExecutor",
    "RiskGate",
    "TradeOrchestrator",
    "HealthAggregator",
    "PegBotService",
    "PegKeeper",
    "create_service",
]
