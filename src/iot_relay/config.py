"""Configuration management for the IoT Relay Server.

This module provides TOML-based configuration support with CLI override capability.

Configuration priority: CLI args > PORT environment variable > user config > default config
"""

from __future__ import annotations

import argparse
import importlib.resources
import os
import sys
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields
from dataclasses import replace as dataclass_replace
from pathlib import Path
from typing import Any, NamedTuple

from .types import DeviceRecord

PORT_ENV_VAR = "PORT"


class ConfigurationError(Exception):
    """Raised when configuration validation fails.

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Configuration validation failed: {'; '.join(errors)}")


class DefaultConfigError(Exception):
    """Raised when default configuration cannot be loaded.

    This is a fatal error that prevents server startup.
    """

    def __init__(self, message: str) -> None:
        super().__init__(f"Failed to load default configuration: {message}")


class ConfigOverride(NamedTuple):
    """A configuration value changed away from its default.

    Attributes:
        key: The configuration field name.
        default_value: The default value from default.toml.
        new_value: The new value from user config, environment or CLI.
    """

    key: str
    default_value: Any
    new_value: Any


@dataclass
class RelayConfig:
    """Server configuration with all settings.

    All fields are required. Default values are loaded from default.toml.
    """

    # Network settings
    host: str
    port: int
    cors_allow_origins: list[str]

    # Timing settings
    heartbeat_interval: float

    # Connection limits
    outbox_maxsize: int

    # Seed data
    initial_state: dict[str, Any]
    devices: list[dict[str, Any]]

    # Logging settings
    log_dir: str | None
    log_level_console: str
    log_json_console: bool
    log_rotation: str | None
    log_retention: str | None

    def device_records(self) -> list[DeviceRecord]:
        """Build registry records from the ``devices`` tables."""
        return [
            DeviceRecord(
                id=entry["id"],
                name=entry.get("name", entry["id"]),
                type=entry.get("type", "sensor"),
                location=entry.get("location", ""),
            )
            for entry in self.devices
        ]


_VALID_KEYS: set[str] = {f.name for f in fields(RelayConfig)}
_OPTIONAL_STR_KEYS = ("log_dir", "log_rotation", "log_retention")


def load_default_toml_data() -> dict[str, Any]:
    """Load the default.toml data from the bundled package resource.

    Raises:
        DefaultConfigError: If default.toml cannot be found or parsed.
    """
    try:
        files = importlib.resources.files("iot_relay")
        content = files.joinpath("default.toml").read_bytes()
        return tomllib.loads(content.decode("utf-8"))
    except FileNotFoundError as e:
        raise DefaultConfigError(f"default.toml not found in package: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise DefaultConfigError(f"Invalid TOML syntax in default.toml: {e}") from e
    except Exception as e:
        raise DefaultConfigError(f"Failed to read default.toml: {e}") from e


def load_config_from_toml(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        tomllib.TOMLDecodeError: If the TOML syntax is invalid.
    """
    with open(path, "rb") as f:
        return tomllib.load(f)


def process_toml_config(toml_data: dict[str, Any]) -> dict[str, Any]:
    """Keep known keys and normalize empty optional strings to None."""
    result: dict[str, Any] = {}

    for key, value in toml_data.items():
        if key in _VALID_KEYS:
            if key in _OPTIONAL_STR_KEYS and value == "":
                value = None
            result[key] = value

    return result


def get_unknown_keys(toml_data: dict[str, Any]) -> list[str]:
    return [key for key in toml_data if key not in _VALID_KEYS]


def validate_config(config: RelayConfig) -> list[str]:
    """Validate configuration values.

    Returns:
        List of error messages. Empty list if configuration is valid.
    """
    errors: list[str] = []

    if not isinstance(config.port, int) or not 1 <= config.port <= 65535:
        errors.append(f"port must be between 1 and 65535, got {config.port}")

    if not config.host:
        errors.append("host must not be empty")

    if config.heartbeat_interval <= 0:
        errors.append(
            f"heartbeat_interval must be positive, got {config.heartbeat_interval}"
        )

    if config.outbox_maxsize <= 0:
        errors.append(f"outbox_maxsize must be positive, got {config.outbox_maxsize}")

    for name, value in config.initial_state.items():
        if not isinstance(value, (bool, int, float, str)):
            errors.append(
                f"initial_state.{name} must be a boolean, number or string, "
                f"got {type(value).__name__}"
            )

    seen_ids: set[str] = set()
    for index, entry in enumerate(config.devices):
        device_id = entry.get("id") if isinstance(entry, Mapping) else None
        if not isinstance(device_id, str) or not device_id:
            errors.append(f"devices[{index}] must have a non-empty string id")
            continue
        if device_id in seen_ids:
            errors.append(f"devices[{index}] duplicates device id {device_id}")
        seen_ids.add(device_id)

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level_console.upper() not in valid_log_levels:
        errors.append(
            f"log_level_console must be one of {valid_log_levels}, "
            f"got {config.log_level_console}"
        )

    return errors


def load_default_config() -> RelayConfig:
    """Load the default configuration from the bundled default.toml.

    Raises:
        DefaultConfigError: If default.toml cannot be loaded or is incomplete.
    """
    try:
        config_data = process_toml_config(load_default_toml_data())

        missing = _VALID_KEYS - set(config_data.keys())
        if missing:
            raise DefaultConfigError(
                f"Missing required fields in default.toml: {', '.join(sorted(missing))}"
            )

        return RelayConfig(**config_data)
    except DefaultConfigError:
        raise
    except TypeError as e:
        raise DefaultConfigError(f"Invalid field types in default.toml: {e}") from e


def apply_env_overrides(
    config: RelayConfig, environ: Mapping[str, str] | None = None
) -> RelayConfig:
    """Apply the PORT environment variable, if set.

    Raises:
        ConfigurationError: If PORT is not an integer.
    """
    environ = os.environ if environ is None else environ
    raw_port = environ.get(PORT_ENV_VAR)
    if raw_port is None or raw_port == "":
        return config
    try:
        port = int(raw_port)
    except ValueError as e:
        raise ConfigurationError(
            [f"{PORT_ENV_VAR} must be an integer, got {raw_port!r}"]
        ) from e
    return dataclass_replace(config, port=port)


def merge_cli_args(config: RelayConfig, args: argparse.Namespace) -> RelayConfig:
    """Merge CLI arguments into config (CLI takes precedence).

    Only overrides config values when CLI args are explicitly provided.
    """
    updates: dict[str, Any] = {}

    for key in ("host", "port", "heartbeat_interval", "log_level_console"):
        value = getattr(args, key, None)
        if value is not None:
            updates[key] = value

    if getattr(args, "log_dir", None) is not None:
        updates["log_dir"] = str(args.log_dir)
    if getattr(args, "log_json_console", False):
        updates["log_json_console"] = True
    if getattr(args, "log_rotation", None) is not None:
        updates["log_rotation"] = args.log_rotation
    if getattr(args, "log_retention", None) is not None:
        updates["log_retention"] = args.log_retention

    if not updates:
        return config

    return dataclass_replace(config, **updates)


def create_config_from_args(
    args: argparse.Namespace,
    environ: Mapping[str, str] | None = None,
) -> tuple[RelayConfig, list[ConfigOverride]]:
    """Create RelayConfig from CLI arguments with layered config loading.

    Returns:
        Tuple of (RelayConfig instance, list of ConfigOverride). The overrides
        list holds every value that differs from the bundled defaults.

    Raises:
        DefaultConfigError: If default.toml cannot be loaded (fatal).
        FileNotFoundError: If specified user config file does not exist.
        tomllib.TOMLDecodeError: If config file has invalid TOML syntax.
        ConfigurationError: If configuration validation fails.
    """
    # Step 1: Load default configuration (required)
    defaults = load_default_config()
    config = defaults

    # Step 2: Override with user config if specified
    if getattr(args, "config", None) is not None:
        user_config_path = Path(args.config)
        toml_data = load_config_from_toml(user_config_path)

        # Using stderr since logging is not configured yet
        unknown = get_unknown_keys(toml_data)
        if unknown:
            print(f"WARNING: Unknown keys in {user_config_path}:", file=sys.stderr)
            for key in unknown:
                print(f"  - {key}", file=sys.stderr)

        config_data = process_toml_config(toml_data)
        if config_data:
            config = dataclass_replace(config, **config_data)

    # Step 3: Environment, then CLI (highest priority)
    config = apply_env_overrides(config, environ)
    config = merge_cli_args(config, args)

    errors = validate_config(config)
    if errors:
        raise ConfigurationError(errors)

    overrides = [
        ConfigOverride(f.name, getattr(defaults, f.name), getattr(config, f.name))
        for f in fields(RelayConfig)
        if getattr(defaults, f.name) != getattr(config, f.name)
    ]
    return config, overrides
