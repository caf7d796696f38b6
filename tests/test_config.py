"""Tests for configuration module."""

import argparse
from dataclasses import replace
from pathlib import Path

import pytest

from iot_relay.config import (
    ConfigurationError,
    RelayConfig,
    apply_env_overrides,
    create_config_from_args,
    get_unknown_keys,
    load_config_from_toml,
    load_default_config,
    merge_cli_args,
    process_toml_config,
    validate_config,
)


def _args(**kwargs) -> argparse.Namespace:
    defaults = {
        "config": None,
        "host": None,
        "port": None,
        "heartbeat_interval": None,
        "log_dir": None,
        "log_level_console": None,
        "log_json_console": False,
        "log_rotation": None,
        "log_retention": None,
    }
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


class TestDefaultConfig:
    """Tests for the bundled default.toml."""

    def test_default_values(self):
        config = load_default_config()
        assert isinstance(config, RelayConfig)
        assert config.port == 3000
        assert config.host == "0.0.0.0"
        assert config.heartbeat_interval == 30.0
        assert config.cors_allow_origins == ["*"]
        assert config.log_dir is None
        assert config.log_rotation is None

    def test_default_seed_data(self):
        config = load_default_config()
        assert config.initial_state == {
            "temperature": 24.5,
            "humidity": 68,
            "led": False,
            "pump": False,
            "fanSpeed": 45,
            "power": 156,
        }
        records = config.device_records()
        assert [r.id for r in records] == ["device_001", "device_002"]
        assert records[1].name == "LED Controller"
        assert records[1].type == "actuator"
        assert records[1].location == "Living Room"

    def test_defaults_are_valid(self):
        assert validate_config(load_default_config()) == []


class TestLoadConfigFromToml:
    def test_load_valid_toml(self, tmp_path: Path):
        config_file = tmp_path / "config.toml"
        config_file.write_text('port = 8080\nhost = "127.0.0.1"\n')

        data = load_config_from_toml(config_file)
        assert data == {"port": 8080, "host": "127.0.0.1"}

    def test_load_nonexistent_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config_from_toml(tmp_path / "nonexistent.toml")

    def test_load_invalid_toml(self, tmp_path: Path):
        import tomllib

        config_file = tmp_path / "invalid.toml"
        config_file.write_text("invalid = [unclosed")

        with pytest.raises(tomllib.TOMLDecodeError):
            load_config_from_toml(config_file)


class TestProcessTomlConfig:
    def test_unknown_keys_are_dropped_and_reported(self):
        data = {"port": 1234, "dealer_port": 5555}
        assert process_toml_config(data) == {"port": 1234}
        assert get_unknown_keys(data) == ["dealer_port"]

    def test_empty_optional_strings_become_none(self):
        processed = process_toml_config({"log_dir": "", "log_rotation": ""})
        assert processed == {"log_dir": None, "log_rotation": None}


class TestValidateConfig:
    def test_invalid_values(self):
        config = replace(
            load_default_config(),
            port=70000,
            heartbeat_interval=0,
            outbox_maxsize=0,
            log_level_console="LOUD",
        )
        errors = validate_config(config)
        assert len(errors) == 4
        assert any("port" in e for e in errors)
        assert any("heartbeat_interval" in e for e in errors)
        assert any("outbox_maxsize" in e for e in errors)
        assert any("log_level_console" in e for e in errors)

    def test_device_ids_must_be_unique_and_present(self):
        config = replace(
            load_default_config(),
            devices=[{"id": "a"}, {"id": "a"}, {"name": "no id"}],
        )
        errors = validate_config(config)
        assert any("duplicates device id a" in e for e in errors)
        assert any("devices[2]" in e for e in errors)

    def test_initial_state_values_must_be_scalars(self):
        config = replace(load_default_config(), initial_state={"bad": [1, 2]})
        errors = validate_config(config)
        assert errors == ["initial_state.bad must be a boolean, number or string, got list"]


class TestLayering:
    def test_env_port_overrides_default(self):
        config = apply_env_overrides(load_default_config(), {"PORT": "8080"})
        assert config.port == 8080

    def test_env_port_must_be_integer(self):
        with pytest.raises(ConfigurationError):
            apply_env_overrides(load_default_config(), {"PORT": "eighty"})

    def test_empty_env_port_is_ignored(self):
        assert apply_env_overrides(load_default_config(), {"PORT": ""}).port == 3000

    def test_cli_overrides(self):
        config = merge_cli_args(
            load_default_config(),
            _args(port=9000, log_json_console=True, log_dir=Path("/tmp/logs")),
        )
        assert config.port == 9000
        assert config.log_json_console is True
        assert config.log_dir == "/tmp/logs"

    def test_priority_cli_over_env_over_file(self, tmp_path: Path, capsys):
        config_file = tmp_path / "user.toml"
        config_file.write_text(
            'port = 4000\nheartbeat_interval = 5.0\ntypo_key = 1\n'
            "[[devices]]\n"
            'id = "greenhouse"\n'
            'name = "Greenhouse"\n'
        )

        config, overrides = create_config_from_args(
            _args(config=config_file, port=6000), environ={"PORT": "5000"}
        )

        assert config.port == 6000
        assert config.heartbeat_interval == 5.0
        assert [r.id for r in config.device_records()] == ["greenhouse"]
        assert {o.key for o in overrides} == {"port", "heartbeat_interval", "devices"}
        assert "typo_key" in capsys.readouterr().err

        config, _ = create_config_from_args(
            _args(config=config_file), environ={"PORT": "5000"}
        )
        assert config.port == 5000

    def test_invalid_final_config_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            create_config_from_args(_args(port=0), environ={})
        assert any("port" in e for e in exc_info.value.errors)
