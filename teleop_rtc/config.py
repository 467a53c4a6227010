"""Configuration management for teleop-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (TELEOP_RTC_RELAY_HOST, TELEOP_RTC_DEVICE,
   TELEOP_RTC_SECURE, TELEOP_RTC_ICE_SERVERS)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- teleop-rtc.toml in current working directory
- ~/.teleop-rtc/config.toml

Environment selection via TELEOP_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example config file:

    [environments.production]
    relay_host = "relay.example.com"
    device = "rover"
    secure = true
    ice_servers = ["stun:stun.l.google.com:19302"]
"""

import os
import tomllib
from pathlib import Path
from typing import List, Optional

from loguru import logger

from teleop_rtc.protocol import relay_endpoint

# Default public STUN server
DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302"]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class Config:
    """Configuration manager for teleop-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.relay_host: Optional[str] = None
        self.device: Optional[str] = None
        self.secure: bool = False
        self.ice_servers: List[str] = list(DEFAULT_ICE_SERVERS)
        self.environment: str = "production"
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
        """Get the current environment from TELEOP_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("TELEOP_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid TELEOP_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. teleop-rtc.toml in current working directory
        2. ~/.teleop-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "teleop-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".teleop-rtc" / "config.toml"
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

        self.config_file = config_file
        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "relay_host" in env_config:
            self.relay_host = env_config["relay_host"]
            logger.debug(f"Loaded relay_host from config: {self.relay_host}")

        if "device" in env_config:
            self.device = env_config["device"]
            logger.debug(f"Loaded device from config: {self.device}")

        if "secure" in env_config:
            self.secure = bool(env_config["secure"])

        if "ice_servers" in env_config:
            ice_servers = env_config["ice_servers"]
            if isinstance(ice_servers, list) and ice_servers:
                self.ice_servers = [str(url) for url in ice_servers]
            else:
                logger.warning(
                    f"Ignoring ice_servers in {config_file}: expected a non-empty list"
                )

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        host_override = os.getenv("TELEOP_RTC_RELAY_HOST")
        if host_override:
            self.relay_host = host_override
            logger.info(f"Overriding relay_host from env: {self.relay_host}")

        device_override = os.getenv("TELEOP_RTC_DEVICE")
        if device_override:
            self.device = device_override
            logger.info(f"Overriding device from env: {self.device}")

        secure_override = os.getenv("TELEOP_RTC_SECURE")
        if secure_override:
            value = secure_override.strip().lower()
            if value in _TRUE_VALUES:
                self.secure = True
            elif value in _FALSE_VALUES:
                self.secure = False
            else:
                logger.warning(f"Ignoring invalid TELEOP_RTC_SECURE value '{secure_override}'")

        ice_override = os.getenv("TELEOP_RTC_ICE_SERVERS")
        if ice_override:
            urls = [url.strip() for url in ice_override.split(",") if url.strip()]
            if urls:
                self.ice_servers = urls
                logger.info(f"Overriding ice_servers from env: {self.ice_servers}")

    def get_relay_url(
        self,
        host: Optional[str] = None,
        device: Optional[str] = None,
        secure: Optional[bool] = None,
    ) -> str:
        """Get the relay WebSocket URL for a device.

        Args:
            host: Relay host overriding the configured one.
            device: Device name overriding the configured one.
            secure: Use wss (True) or ws (False); defaults to the configured value.

        Returns:
            Relay URL, e.g. ws://relay.local:8080/rover/rtc.

        Raises:
            ValueError: If no relay host or device is known.
        """
        host = host or self.relay_host
        device = device or self.device
        if not host:
            raise ValueError("No relay host configured")
        if not device:
            raise ValueError("No device configured")
        secure = self.secure if secure is None else secure
        return relay_endpoint(host, device, page_scheme="https" if secure else "http")


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
