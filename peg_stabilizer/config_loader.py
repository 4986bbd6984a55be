"""
Configuration loading and normalization for the peg stabilizer.

Startup configuration comes from an optional YAML file and the process
environment (``.env`` files are read with python-dotenv). Environment
variables override values from the file. The result seeds the config
store for a bot identity that has no stored configuration yet.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv

from .config_schema import BotConfiguration, validate_bot_config
from .exceptions import ConfigurationError
from .utils import deep_merge, get_logger

logger = get_logger(__name__)

# env var -> (config path, type)
ENV_OVERRIDES = {
    "BOT_ID": (("bot_id",), str),
    "TARGET_PEG_USD": (("target_peg",), float),
    "MAX_DAILY_VOLUME": (("limits", "max_daily_volume"), float),
    "MAX_DAILY_TRADES": (("limits", "max_daily_trades"), int),
    "MAX_TRADE_SIZE": (("limits", "max_trade_size"), float),
    "MIN_LIQUIDITY_USD": (("strategy", "min_liquidity_usd"), float),
}

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ChainSettings:
    """Normalized chain connection settings."""

    rpc_url: Optional[str] = None
    pair_address: Optional[str] = None
    token_address: Optional[str] = None
    wrapped_base_address: Optional[str] = None
    router_address: Optional[str] = None
    base_usd_feed: Optional[str] = None
    reference_usd_feed: Optional[str] = None
    private_key_env: str = "BOT_PRIVATE_KEY"
    paper_mode: bool = True
    token_symbol: str = "TOKEN"
    base_symbol: str = "BNB"
    reference_symbol: str = "BTC"
    token_decimals: int = 18
    base_decimals: int = 18
    feed_cache_ttl: float = 60.0
    request_timeout: float = 10.0

    @property
    def has_chain_access(self) -> bool:
        return bool(self.rpc_url and self.pair_address and self.token_address)

    def private_key(self) -> Optional[str]:
        return os.environ.get(self.private_key_env)


def load_environment(dotenv_path: Optional[Union[str, Path]] = None) -> None:
    """Read a ``.env`` file into the process environment (existing values win)."""
    load_dotenv(dotenv_path=dotenv_path, override=False)


def load_yaml_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to load config {config_path}: {e}")

    if config_dict is None:
        raise ConfigurationError(f"Empty configuration file: {config_path}")
    if not isinstance(config_dict, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

    return config_dict


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name, (path, cast) in ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError:
            raise ConfigurationError(
                f"Invalid value for {name}: {raw!r}", {"variable": name}
            )

        node: Dict[str, Any] = {}
        cursor = node
        for key in path[:-1]:
            cursor[key] = {}
            cursor = cursor[key]
        cursor[path[-1]] = value
        overrides = deep_merge(overrides, node)
    return overrides


def _resolve_config_path(
    config_path: Optional[Union[str, Path]], env: Mapping[str, str]
) -> Optional[Path]:
    if config_path:
        return Path(config_path)
    env_path = env.get("PEG_CONFIG_FILE")
    return Path(env_path) if env_path else None


def load_bot_config(
    config_path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> BotConfiguration:
    """
    Build the startup BotConfiguration.

    Args:
        config_path: YAML file; falls back to ``PEG_CONFIG_FILE``
        env: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated bot configuration

    Raises:
        ConfigurationError: If the file or an override is invalid
    """
    env = os.environ if env is None else env
    config_dict: Dict[str, Any] = {}

    path = _resolve_config_path(config_path, env)
    if path is not None:
        config_dict = load_yaml_config(path)
        config_dict.pop("chain", None)
        logger.info(f"Loaded bot configuration from {path}")

    config_dict = deep_merge(config_dict, _env_overrides(env))
    return validate_bot_config(config_dict)


def load_chain_settings(
    config_path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ChainSettings:
    """Build ChainSettings from the ``chain`` YAML section and the environment."""
    env = os.environ if env is None else env
    chain_dict: Dict[str, Any] = {}

    path = _resolve_config_path(config_path, env)
    if path is not None:
        chain_dict = dict(load_yaml_config(path).get("chain") or {})

    env_map = {
        "RPC_URL": "rpc_url",
        "PAIR_ADDRESS": "pair_address",
        "TOKEN_ADDRESS": "token_address",
        "WRAPPED_BASE_ADDRESS": "wrapped_base_address",
        "ROUTER_ADDRESS": "router_address",
        "BASE_USD_FEED": "base_usd_feed",
        "REFERENCE_USD_FEED": "reference_usd_feed",
        "PRIVATE_KEY_ENV": "private_key_env",
    }
    for var, key in env_map.items():
        if env.get(var):
            chain_dict[key] = env[var]

    if env.get("PAPER_MODE") is not None:
        chain_dict["paper_mode"] = env["PAPER_MODE"].strip().lower() in _TRUE_VALUES

    known = set(ChainSettings.__dataclass_fields__)
    unknown = set(chain_dict) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown chain settings: {sorted(unknown)}", {"unknown": sorted(unknown)}
        )

    try:
        return ChainSettings(**chain_dict)
    except TypeError as e:
        raise ConfigurationError(f"Invalid chain settings: {e}")


def get_default_config() -> BotConfiguration:
    """Get a default configuration for testing or fallback purposes."""
    return BotConfiguration()
