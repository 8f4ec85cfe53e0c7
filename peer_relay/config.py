"""Configuration management for peer-relay.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (PEER_RELAY_HOST, PEER_RELAY_PORT, ...)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- peer-relay.toml in current working directory
- ~/.peer-relay/config.toml

Environment selection via PEER_RELAY_ENV (development, staging, production).
Defaults to production if not set.

Example peer-relay.toml::

    [environments.production]
    host = "0.0.0.0"
    port = 3000
    max_pending_candidates = 256
    log_level = "INFO"
    relay_url = "ws://relay.example.org:3000/ws"
"""

import os
import tomllib
from pathlib import Path
from typing import Optional

from loguru import logger

from peer_relay.session import DEFAULT_MAX_PENDING_CANDIDATES

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_RELAY_URL = "ws://localhost:3000/ws"

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}

VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


class Config:
    """Configuration manager for peer-relay."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.host: str = DEFAULT_HOST
        self.port: int = DEFAULT_PORT
        self.max_pending_candidates: int = DEFAULT_MAX_PENDING_CANDIDATES
        self.log_level: str = DEFAULT_LOG_LEVEL
        self.relay_url: str = DEFAULT_RELAY_URL
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from PEER_RELAY_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("PEER_RELAY_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid PEER_RELAY_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. peer-relay.toml in current working directory
        2. ~/.peer-relay/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "peer-relay.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".peer-relay" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        for key in ("host", "port", "max_pending_candidates", "log_level", "relay_url"):
            if key in env_config:
                self._set(key, env_config[key], source="config")

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        for key in ("host", "port", "max_pending_candidates", "log_level", "relay_url"):
            value = os.getenv(f"PEER_RELAY_{key.upper()}")
            if value:
                self._set(key, value, source="env")

    def _set(self, key: str, value, source: str) -> None:
        """Validate and apply one setting; invalid values are logged and skipped."""
        if key in ("port", "max_pending_candidates"):
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-integer {key} from {source}: {value!r}")
                return
            if value <= 0 or (key == "port" and value > 65535):
                logger.warning(f"Ignoring out-of-range {key} from {source}: {value}")
                return
        elif key == "log_level":
            value = str(value).upper()
            if value not in VALID_LOG_LEVELS:
                logger.warning(f"Ignoring unknown log_level from {source}: {value}")
                return
        else:
            value = str(value)

        setattr(self, key, value)
        logger.debug(f"Loaded {key} from {source}: {value}")

    def get_health_url(self, relay_url: Optional[str] = None) -> str:
        """Get the HTTP health endpoint matching a WebSocket relay URL.

        Args:
            relay_url: WebSocket URL of the relay (default: configured relay_url).

        Returns:
            URL of the relay's /health endpoint.
        """
        url = relay_url or self.relay_url
        if url.startswith("wss://"):
            url = "https://" + url[len("wss://"):]
        elif url.startswith("ws://"):
            url = "http://" + url[len("ws://"):]
        url = url.rstrip("/")
        if url.endswith("/ws"):
            url = url[: -len("/ws")]
        return f"{url}/health"


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
