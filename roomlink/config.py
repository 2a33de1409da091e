"""Configuration management for roomlink.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (ROOMLINK_SIGNALING_WS, ROOMLINK_HOST, ROOMLINK_PORT)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- roomlink.toml in current working directory
- ~/.roomlink/config.toml

Environment selection via ROOMLINK_ENV (development, staging, production).
Defaults to development if not set.

Example roomlink.toml:

    [default]
    display_name = "Ada"

    [environments.production]
    signaling_websocket = "wss://signal.example.org"
    host = "0.0.0.0"
    port = 8080
    ice_servers = [{ urls = "stun:stun.l.google.com:19302" }]
"""

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8080

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


class Config:
    """Configuration manager for roomlink."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.host: str = DEFAULT_HOST
        self.port: int = DEFAULT_PORT
        self.ice_servers: Optional[List[Dict[str, Any]]] = None
        self.display_name: Optional[str] = None
        self.environment: str = "development"
        self.config_file: Optional[Path] = None
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
        """Get the current environment from ROOMLINK_ENV.

        Returns:
            Environment name. Defaults to development if not set or invalid.
        """
        env = os.getenv("ROOMLINK_ENV", "development").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid ROOMLINK_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'development'."
            )
            env = "development"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. roomlink.toml in current working directory
        2. ~/.roomlink/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "roomlink.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".roomlink" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        The [default] table applies to every environment; the
        [environments.<name>] table for the active environment overrides it.

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

        self.config_file = config_file
        self._apply_section(self._config_data.get("default", {}))

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}"
            )
            return
        self._apply_section(env_config)

    def _apply_section(self, section: dict) -> None:
        if "signaling_websocket" in section:
            self.signaling_websocket = section["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )
        if "host" in section:
            self.host = section["host"]
        if "port" in section:
            try:
                self.port = int(section["port"])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid port in config: {section['port']!r}")
        if "ice_servers" in section:
            self.ice_servers = list(section["ice_servers"])
        if "display_name" in section:
            self.display_name = section["display_name"]

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("ROOMLINK_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        host_override = os.getenv("ROOMLINK_HOST")
        if host_override:
            self.host = host_override
            logger.info(f"Overriding host from env: {self.host}")

        port_override = os.getenv("ROOMLINK_PORT")
        if port_override:
            try:
                self.port = int(port_override)
                logger.info(f"Overriding port from env: {self.port}")
            except ValueError:
                logger.warning(f"Ignoring invalid ROOMLINK_PORT: {port_override!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "config_file": str(self.config_file) if self.config_file else None,
            "signaling_websocket": self.signaling_websocket,
            "host": self.host,
            "port": self.port,
            "ice_servers": self.ice_servers,
            "display_name": self.display_name,
        }


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
