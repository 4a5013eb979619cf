"""Configuration for the Palworld bridge.

Settings come from TakaroConfig.txt (KEY=VALUE lines, # comments) in the
working directory, which is loaded into the environment on startup, and from
environment variables that are already set.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigError

DEFAULT_CONFIG_FILE = "TakaroConfig.txt"
DEFAULT_TAKARO_WS_URL = "wss://connect.takaro.io/"


def get_config_path(path: Optional[str] = None) -> Path:
    """Get the path to the config file (defaults to ./TakaroConfig.txt)."""
    return Path(path) if path else Path.cwd() / DEFAULT_CONFIG_FILE


def load_config_file(path: Optional[str] = None, override: bool = False) -> bool:
    """Load TakaroConfig.txt into the environment.

    Args:
        path: Config file path, or None for ./TakaroConfig.txt
        override: Whether file values replace variables already set

    Returns:
        True if the file existed and was loaded.
    """
    config_path = get_config_path(path)
    if not config_path.exists():
        return False
    load_dotenv(config_path, override=override)
    load_config.cache_clear()
    return True


# =============================================================================
# Environment Variable Configuration
# =============================================================================


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load application configuration from environment variables.

    Returns:
        dict with configuration values
    """
    return {
        # Takaro connection (IDENTITY_TOKEN is required)
        "TAKARO_WS_URL": os.getenv("TAKARO_WS_URL", DEFAULT_TAKARO_WS_URL),
        "IDENTITY_TOKEN": os.getenv("IDENTITY_TOKEN", ""),
        "REGISTRATION_TOKEN": os.getenv("REGISTRATION_TOKEN", ""),

        # Palworld REST API
        "PALWORLD_HOST": os.getenv("PALWORLD_HOST", "127.0.0.1"),
        "PALWORLD_PORT": int(os.getenv("PALWORLD_PORT", "8212")),
        "PALWORLD_USERNAME": os.getenv("PALWORLD_USERNAME", "admin"),
        "PALWORLD_PASSWORD": os.getenv("PALWORLD_PASSWORD", ""),

        # Local relay polled by the TakaroChat Lua mod (config.BridgeURL)
        "RELAY_HOST": os.getenv("RELAY_HOST", "127.0.0.1"),
        "RELAY_PORT": int(os.getenv("RELAY_PORT", "3001")),

        # Timers, in seconds
        "PRESENCE_INTERVAL": float(os.getenv("PRESENCE_INTERVAL", "10")),
        "SERVER_CHECK_INTERVAL": float(os.getenv("SERVER_CHECK_INTERVAL", "5")),
        "LOCATION_TIMEOUT": float(os.getenv("LOCATION_TIMEOUT", "5")),

        "LOG_FILE": os.getenv("LOG_FILE", "palworld-bridge.log"),
    }


def get_config_value(key: str, default=None):
    """Get a single configuration value."""
    config = load_config()
    value = config.get(key)
    return default if value in (None, "") else value


def require_config_value(key: str) -> str:
    """Get a required configuration value, raising if not found."""
    value = get_config_value(key)
    if not value:
        raise ConfigError(f"Required configuration '{key}' is not set")
    return value


@dataclass
class BridgeSettings:
    """Resolved bridge settings."""
    identity_token: str
    registration_token: str = ""
    takaro_url: str = DEFAULT_TAKARO_WS_URL
    palworld_host: str = "127.0.0.1"
    palworld_port: int = 8212
    palworld_username: str = "admin"
    palworld_password: str = ""
    relay_host: str = "127.0.0.1"
    relay_port: int = 3001
    presence_interval: float = 10.0
    server_check_interval: float = 5.0
    location_timeout: float = 5.0
    log_file: str = "palworld-bridge.log"

    @property
    def palworld_base_url(self) -> str:
        return f"http://{self.palworld_host}:{self.palworld_port}"

    @classmethod
    def from_config(cls, identity_token: Optional[str] = None) -> "BridgeSettings":
        """Build settings from load_config(). Raises ConfigError without a token."""
        config = load_config()
        return cls(
            identity_token=identity_token or require_config_value("IDENTITY_TOKEN"),
            registration_token=config["REGISTRATION_TOKEN"],
            takaro_url=config["TAKARO_WS_URL"],
            palworld_host=config["PALWORLD_HOST"],
            palworld_port=config["PALWORLD_PORT"],
            palworld_username=config["PALWORLD_USERNAME"],
            palworld_password=config["PALWORLD_PASSWORD"],
            relay_host=config["RELAY_HOST"],
            relay_port=config["RELAY_PORT"],
            presence_interval=config["PRESENCE_INTERVAL"],
            server_check_interval=config["SERVER_CHECK_INTERVAL"],
            location_timeout=config["LOCATION_TIMEOUT"],
            log_file=config["LOG_FILE"],
        )
