"""
Configuration management for virsnap.

This module handles loading and validating configuration from files and environment variables.
"""

import os
import yaml
from typing import Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict

from .exceptions import ConfigurationError
from .logging import StructuredLogger, logger


DEFAULT_CONFIG_PATHS = [
    "~/.config/virsnap/config.yaml",
    "/etc/virsnap/config.yaml",
    "config.yaml",
]


class AppConfig(BaseModel):
    """Application configuration with Pydantic validation.

    Configuration can be loaded from:
    1. Explicit config file path
    2. Default config file locations
    3. Environment variables (highest priority)

    Environment variables:
    - VIRSNAP_URI: libvirt connection URI
    - VIRSNAP_SNAPSHOT_PREFIX: Prefix of snapshots managed by virsnap
    - VIRSNAP_TIMEOUT: Default shutdown timeout in minutes
    - VIRSNAP_POLL_INTERVAL: Seconds between two state queries
    - VIRSNAP_SHUTDOWN_ROUNDS: Number of graceful shutdown requests
    - VIRSNAP_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - VIRSNAP_LOG_FORMAT: Log output format (text, json)
    - VIRSNAP_RSYNC_PATH: Path of the rsync binary
    - VIRSNAP_BANDWIDTH_LIMIT: rsync bandwidth limit (e.g., "100M", "1G")
    """

    model_config = ConfigDict(extra="forbid")  # Reject unknown fields

    uri: str = Field(default="qemu:///system", min_length=1)
    snapshot_prefix: str = Field(
        default="virsnap_", pattern=r"^[A-Za-z0-9_.-]+$", description="Snapshot name prefix"
    )
    snapshot_description: str = "snapshot created by virsnap"
    default_timeout: int = Field(
        default=3, gt=0, description="Graceful shutdown timeout in minutes"
    )
    poll_interval: float = Field(
        default=5.0, gt=0, description="Seconds between two state queries"
    )
    shutdown_rounds: int = Field(default=3, ge=1, le=10)
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format")
    rsync_path: Optional[str] = None
    bandwidth_limit: Optional[str] = Field(default=None, pattern=r"^\d+[KMG]?$")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "json"):
            raise ValueError("log_format must be one of ['text', 'json']")
        return v


class ConfigLoader:
    """Loads and validates configuration."""

    def __init__(self, log: Optional[StructuredLogger] = None) -> None:
        self.logger = log or logger

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """
        Load configuration from file and environment variables.

        Priority (highest to lowest):
        1. Environment variables
        2. Config file (explicit path or default locations)
        3. Default values

        Args:
            config_path: Path to configuration file. If None, looks in default locations.

        Returns:
            AppConfig: Loaded configuration
        """
        if config_path:
            config_data = self._load_data_from_file(config_path)
        else:
            config_data = {}
            for path in DEFAULT_CONFIG_PATHS:
                path = os.path.expanduser(path)
                if os.path.exists(path):
                    self.logger.debug(f"Loading configuration from {path}", path=path)
                    config_data = self._load_data_from_file(path)
                    break

            if not config_data:
                self.logger.debug(
                    "No configuration file found, using defaults and environment variables"
                )

        config_data = self._apply_env_overrides(config_data)

        try:
            return AppConfig(**config_data)
        except ValueError as e:
            self.logger.error(f"Invalid configuration: {e}")
            raise ConfigurationError(f"Invalid configuration: {e}")

    def _apply_env_overrides(self, config_data: dict) -> dict:
        """Apply environment variable overrides to config data."""
        env_mappings = {
            "VIRSNAP_URI": "uri",
            "VIRSNAP_SNAPSHOT_PREFIX": "snapshot_prefix",
            "VIRSNAP_TIMEOUT": ("default_timeout", int),
            "VIRSNAP_POLL_INTERVAL": ("poll_interval", float),
            "VIRSNAP_SHUTDOWN_ROUNDS": ("shutdown_rounds", int),
            "VIRSNAP_LOG_LEVEL": "log_level",
            "VIRSNAP_LOG_FORMAT": "log_format",
            "VIRSNAP_RSYNC_PATH": "rsync_path",
            "VIRSNAP_BANDWIDTH_LIMIT": "bandwidth_limit",
        }

        for env_var, mapping in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue
            if isinstance(mapping, tuple):
                config_key, converter = mapping
                try:
                    config_data[config_key] = converter(env_value)
                    self.logger.debug(f"Applied environment override: {env_var}={env_value}")
                except (ValueError, TypeError) as e:
                    self.logger.warning(
                        f"Invalid value for {env_var}: {env_value}, ignoring. Error: {e}"
                    )
            else:
                config_data[mapping] = env_value
                self.logger.debug(f"Applied environment override: {env_var}={env_value}")

        return config_data

    def _load_data_from_file(self, path: str) -> dict:
        """Load configuration data from a specific file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self.logger.error(f"Failed to parse configuration file {path}: {e}", path=path)
            raise ConfigurationError(f"Failed to parse configuration file: {e}")
        except OSError as e:
            self.logger.error(f"Failed to load configuration from {path}: {e}", path=path)
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if data is None:
            return {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid configuration format in {path}")

        return data


# Global config loader
config_loader = ConfigLoader()
