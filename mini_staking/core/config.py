"""Configuration for the staking client."""
import os
import json
import platform
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, field_validator, model_validator

from .errors import ConfigError
from .rewards import BPS_DENOMINATOR, DEFAULT_EMERGENCY_PENALTY_BPS

CONFIG_FILE = "config.json"

NETWORKS = {
    "base-sepolia": {"rpc_url": "https://sepolia.base.org", "chain_id": 84532},
    "sepolia": {"rpc_url": "https://rpc.sepolia.org", "chain_id": 11155111},
}

ENV_OVERRIDES = {
    "MINI_STAKING_RPC_URL": "rpc_url",
    "MINI_STAKING_CONTRACT_ADDRESS": "staking_contract_address",
    "MINI_TOKEN_ADDRESS": "token_address",
}


class StakingConfig(BaseModel):
    """Staking client configuration."""
    network: str = "base-sepolia"
    rpc_url: Optional[str] = None
    chain_id: Optional[int] = None
    staking_contract_address: Optional[str] = None
    token_address: Optional[str] = None
    token_decimals: int = 18
    poll_interval: float = 4.0
    readiness_interval: float = 30.0
    event_poll_interval: float = 15.0
    confirmation_timeout: float = 120.0
    emergency_penalty_bps: int = DEFAULT_EMERGENCY_PENALTY_BPS
    keystore_path: Optional[str] = None

    @field_validator("poll_interval", "readiness_interval", "event_poll_interval", "confirmation_timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("emergency_penalty_bps")
    @classmethod
    def _basis_points(cls, value: int) -> int:
        if not 0 <= value <= BPS_DENOMINATOR:
            raise ValueError(f"must be between 0 and {BPS_DENOMINATOR}")
        return value

    @model_validator(mode="after")
    def _apply_network_preset(self) -> "StakingConfig":
        # Explicit values win over the preset
        preset = NETWORKS.get(self.network)
        if preset is None:
            if self.rpc_url is None or self.chain_id is None:
                raise ValueError(f"Unknown network {self.network!r}; set rpc_url and chain_id explicitly")
            return self
        if self.rpc_url is None:
            self.rpc_url = preset["rpc_url"]
        if self.chain_id is None:
            self.chain_id = preset["chain_id"]
        return self

    def require_contracts(self) -> None:
        """Raise if the contract addresses needed to talk to the ledger are missing."""
        missing = [
            name for name in ("staking_contract_address", "token_address")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigError(
                f"Missing required configuration: {', '.join(missing)}. "
                "Set them with 'mini-staking config set' or the "
                "MINI_STAKING_CONTRACT_ADDRESS / MINI_TOKEN_ADDRESS environment variables."
            )


def get_config_dir() -> Path:
    """Get platform-specific config directory."""
    override = os.getenv("MINI_STAKING_CONFIG_DIR")
    if override:
        return Path(override)
    if os.name == 'nt':  # Windows
        return Path(os.getenv('APPDATA')) / 'mini-staking'
    elif platform.system() == 'Darwin':  # macOS
        return Path.home() / 'Library' / 'Application Support' / 'mini-staking'
    else:  # Linux and others
        return Path.home() / '.config' / 'mini-staking'


def load_config(
    config_dir: Optional[Path] = None,
    network: Optional[str] = None,
    apply_env: bool = True,
) -> StakingConfig:
    """Load configuration from disk and apply environment overrides.

    Args:
        config_dir: Directory holding config.json; platform default if None
        network: Network name overriding the stored one
        apply_env: Apply ENV_OVERRIDES; disable when the result will be saved

    Returns:
        Loaded configuration, defaults if the file is missing or unreadable
    """
    config_dir = config_dir or get_config_dir()
    config_path = config_dir / CONFIG_FILE
    data = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load config {config_path}: {e}")
            data = {}

    if network and network != data.get("network"):
        # Endpoint settings belong to the stored network
        data = {k: v for k, v in data.items() if k not in ("rpc_url", "chain_id")}
        data["network"] = network

    if apply_env:
        for env_name, field in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                data[field] = value

    try:
        return StakingConfig(**data)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}")


def save_config(config: StakingConfig, config_dir: Optional[Path] = None) -> Path:
    """Save configuration to disk."""
    config_dir = config_dir or get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / CONFIG_FILE
    with open(config_path, 'w') as f:
        json.dump(config.model_dump(), f, indent=2)
    return config_path
