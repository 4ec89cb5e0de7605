"""
TorChat-Paste - Configuration Management

This module handles loading, merging, and validating configuration from
TOML files and environment variables. Supports default values and
runtime configuration updates.

Author: torchat-paste contributors
Version: 0.3.0
"""

import copy
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    ARGON2_PROFILES,
    CONFIG_FILENAME,
    CONNECTION_TIMEOUT,
    DEFAULT_FRAGMENT_SIZE,
    DEFAULT_KDF_PROFILE,
    DEFAULT_PADDING_BLOCK_SIZE,
    HANDSHAKE_TIMEOUT,
    KEEPALIVE_INTERVAL,
    MAX_MESSAGE_SIZE,
    MAX_PENDING_REASSEMBLIES,
    MAX_REASSEMBLY_BYTES,
    PROTOCOL_VERSION,
    REASSEMBLY_TIMEOUT,
)
from .errors import ConfigError, ErrorCode
from .utils import resolve_data_dir

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "storage": {
        "data_dir": "",  # empty: platform default
    },
    "security": {
        "kdf_profile": DEFAULT_KDF_PROFILE,
        "padding_block_size": DEFAULT_PADDING_BLOCK_SIZE,
    },
    "protocol": {
        "version": PROTOCOL_VERSION,
        "max_message_size": MAX_MESSAGE_SIZE,
        "fragment_size": DEFAULT_FRAGMENT_SIZE,
        "connection_timeout": CONNECTION_TIMEOUT,
        "handshake_timeout": HANDSHAKE_TIMEOUT,
        "keepalive_interval": KEEPALIVE_INTERVAL,
        "reassembly_timeout": REASSEMBLY_TIMEOUT,
        "max_reassembly_bytes": MAX_REASSEMBLY_BYTES,
        "max_pending_reassemblies": MAX_PENDING_REASSEMBLIES,
    },
    "logging": {
        "level": "INFO",
        "file_logging": True,
        "console_logging": True,
    },
}

# Settings that must be positive integers
_POSITIVE_INTS = {
    "security": ("padding_block_size",),
    "protocol": (
        "version",
        "max_message_size",
        "fragment_size",
        "max_reassembly_bytes",
        "max_pending_reassemblies",
    ),
}

# Durations in seconds; fractions allowed
_POSITIVE_NUMBERS = {
    "protocol": (
        "connection_timeout",
        "handshake_timeout",
        "keepalive_interval",
        "reassembly_timeout",
    ),
}


class Config:
    """Configuration manager.

    Loads configuration from a TOML file, merges it with defaults, and
    applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses the default data directory
        """
        if config_path is None:
            config_path = resolve_data_dir() / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()
        self.validate()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Raises:
            ConfigError: If configuration loading or parsing fails
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except OSError as e:
                raise ConfigError(
                    ErrorCode.E701_CONFIG_LOAD_FAILED,
                    f"Failed to read configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config."""
        result = copy.deepcopy(base)

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: TORCHAT_SECTION_KEY
        For example: TORCHAT_SECURITY_KDF_PROFILE=moderate
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key in settings:
                env_var = f"TORCHAT_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)

                if env_value is not None:
                    original_type = type(settings[key])
                    try:
                        if original_type == bool:
                            result[section][key] = env_value.lower() in ("true", "1", "yes")
                        elif original_type == int:
                            result[section][key] = int(env_value)
                        elif original_type == float:
                            result[section][key] = float(env_value)
                        else:
                            result[section][key] = env_value
                    except ValueError:
                        # Keep original value if conversion fails
                        pass

        return result

    def validate(self) -> None:
        """Check values that would otherwise fail deep inside the core.

        Raises:
            ConfigError: If a setting is out of range
        """
        profile = self.get("security", "kdf_profile")
        if profile not in ARGON2_PROFILES:
            raise ConfigError(
                ErrorCode.E700_CONFIG_ERROR,
                f"Unknown KDF profile: {profile}",
                {"allowed": sorted(ARGON2_PROFILES)},
            )

        for section, keys in _POSITIVE_INTS.items():
            for key in keys:
                value = self.get(section, key)
                if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                    raise ConfigError(
                        ErrorCode.E700_CONFIG_ERROR,
                        f"{section}.{key} must be a positive integer",
                        {"value": value},
                    )

        for section, keys in _POSITIVE_NUMBERS.items():
            for key in keys:
                value = self.get(section, key)
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                    raise ConfigError(
                        ErrorCode.E700_CONFIG_ERROR,
                        f"{section}.{key} must be a positive number",
                        {"value": value},
                    )

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        if section not in self.data:
            self.data[section] = {}

        self.data[section][key] = value

    @property
    def data_dir(self) -> Path:
        """Data directory from config, or the platform default."""
        return resolve_data_dir(self.get("storage", "data_dir") or None)

    @property
    def kdf_profile(self) -> str:
        return self.get("security", "kdf_profile")

    @property
    def padding_block_size(self) -> int:
        return self.get("security", "padding_block_size")

    def protocol_options(self) -> Dict[str, int]:
        """Keyword arguments for ChatProtocol."""
        return {
            "version": self.get("protocol", "version"),
            "max_fragment_size": self.get("protocol", "fragment_size"),
            "max_message_size": self.get("protocol", "max_message_size"),
        }

    def reassembly_options(self) -> Dict[str, Any]:
        """Keyword arguments for Reassembler."""
        return {
            "max_bytes": self.get("protocol", "max_reassembly_bytes"),
            "timeout": self.get("protocol", "reassembly_timeout"),
            "max_pending": self.get("protocol", "max_pending_reassemblies"),
        }

    def channel_options(self) -> Dict[str, Any]:
        """Keyword arguments for StreamChannel and open_channel."""
        return {
            "handshake_timeout": self.get("protocol", "handshake_timeout"),
            "keepalive_interval": self.get("protocol", "keepalive_interval"),
        }

    @property
    def connection_timeout(self) -> float:
        return self.get("protocol", "connection_timeout")

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                self._write_toml(f, self.data)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    @staticmethod
    def _write_toml(file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML."""
        for section, settings in data.items():
            if isinstance(settings, dict):
                file.write(f"[{section}]\n")
                for key, value in settings.items():
                    if isinstance(value, bool):
                        file.write(f"{key} = {str(value).lower()}\n")
                    elif isinstance(value, (int, float)):
                        file.write(f"{key} = {value}\n")
                    elif isinstance(value, str):
                        # JSON string escapes are valid TOML basic strings
                        file.write(f"{key} = {json.dumps(value)}\n")
                file.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Create an example configuration file.

        Raises:
            ConfigError: If file creation fails
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write("# TorChat-Paste Configuration File\n")
                f.write("# kdf_profile: interactive | moderate | sensitive\n\n")
                cls._write_toml(f, DEFAULT_CONFIG)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            ) from e
