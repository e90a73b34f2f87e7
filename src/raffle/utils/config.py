"""
Configuration Management
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from raffle.lottery.models import RaffleConfig, VrfSettings
from raffle.utils.common import to_decimal
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = Path("config") / "raffle.conf"

ENV_SECTIONS = {
    "RAFFLE_": "raffle",
    "VRF_": "vrf",
    "SCHEDULER_": "scheduler",
    "SERVER_": "server",
    "PAYOUT_": "payout",
}

# Sample key hash of the Sepolia 30 gwei lane, used when none is configured
DEFAULT_KEY_HASH = "0x474e34a077df58807dbe9c96d3c009b23b3c6d0cce433e59bbf5b34f823bc56c"


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from a JSON file and environment variables"""
    config: Dict[str, Any] = {}

    path = Path(config_file or os.getenv("RAFFLE_CONFIG_FILE", "") or DEFAULT_CONFIG_FILE)
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                config.update(json.load(f))
            logger.info(f"Loaded configuration from {path}")
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config file {path}: {e}")
            raise
    else:
        logger.warning(f"Config file {path} not found. Will only use environment variables.")

    config = _apply_env_overrides(config)
    logger.debug(f"Configuration after applying environment overrides: {json.dumps(_redacted(config), indent=2)}")
    return config


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides, e.g. RAFFLE_ENTRANCE_FEE -> raffle.entrance_fee"""
    for key, value in os.environ.items():
        for prefix, section in ENV_SECTIONS.items():
            if key.startswith(prefix):
                name = key[len(prefix):].lower()
                if name == "config_file":
                    break
                config.setdefault(section, {})[name] = value
                break
    return config


def _is_secret(name: str) -> bool:
    return ("key" in name and "hash" not in name) or "secret" in name


def _redacted(config: Dict[str, Any]) -> Dict[str, Any]:
    clean: Dict[str, Any] = {}
    for section, values in config.items():
        if isinstance(values, dict):
            clean[section] = {k: ("***" if _is_secret(k) else v) for k, v in values.items()}
        else:
            clean[section] = values
    return clean


def get_config_value(config: Dict[str, Any], key_path: str, default=None):
    """Get configuration value by dot-separated key path"""
    keys = key_path.split(".")
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def build_raffle_config(config: Dict[str, Any]) -> RaffleConfig:
    """Convert the nested config dict into the immutable RaffleConfig."""
    vrf = VrfSettings(
        key_hash=str(get_config_value(config, "vrf.key_hash", DEFAULT_KEY_HASH)),
        subscription_id=int(get_config_value(config, "vrf.subscription_id", 0)),
        callback_gas_limit=int(get_config_value(config, "vrf.callback_gas_limit", 500_000)),
        request_confirmations=int(get_config_value(config, "vrf.request_confirmations", 3)),
    )
    return RaffleConfig(
        entrance_fee=to_decimal(get_config_value(config, "raffle.entrance_fee", "0.01")),
        interval=int(get_config_value(config, "raffle.interval", 30)),
        vrf=vrf,
    )
