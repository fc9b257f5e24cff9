"""Tests for configuration module."""

import argparse
from dataclasses import replace
from pathlib import Path

import pytest

from xrwall.config import (
    ConfigurationError,
    ServerConfig,
    apply_env_overrides,
    create_config_from_args,
    get_unknown_keys,
    load_config_from_toml,
    load_default_config,
    merge_cli_args,
    process_toml_config,
    validate_config,
)


def _defaults() -> ServerConfig:
    return load_default_config()


class TestServerConfig:
    """Tests for ServerConfig loaded from default.toml."""

    def test_default_values(self):
        """Test that default values are set correctly."""
        config = _defaults()
        assert config.port == 8080
        assert config.bind_address == "*"
        assert config.enable_rest_bridge is False
        assert config.rest_port == 8800
        assert config.client_timeout == 10.0
        assert config.heartbeat_interval == 2.0
        assert config.game_event_echo is True

    def test_optional_logging_fields_default_to_none(self):
        """Empty strings in default.toml mean "not set"."""
        config = _defaults()
        assert config.log_dir is None
        assert config.log_rotation is None
        assert config.log_retention is None
        assert config.log_level_console == "INFO"

    def test_endpoint(self):
        config = replace(_defaults(), bind_address="127.0.0.1", port=9000)
        assert config.endpoint == "tcp://127.0.0.1:9000"


class TestLoadConfigFromToml:
    """Tests for load_config_from_toml function."""

    def test_load_valid_toml(self, tmp_path: Path):
        """Test loading a valid TOML file."""
        toml_content = """
port = 7777
bind_address = "127.0.0.1"
game_event_echo = false
"""
        config_file = tmp_path / "config.toml"
        config_file.write_text(toml_content)

        data = load_config_from_toml(config_file)
        assert data["port"] == 7777
        assert data["bind_address"] == "127.0.0.1"
        assert data["game_event_echo"] is False

    def test_load_nonexistent_file(self, tmp_path: Path):
        """Test that FileNotFoundError is raised for missing file."""
        with pytest.raises(FileNotFoundError):
            load_config_from_toml(tmp_path / "nonexistent.toml")

    def test_load_invalid_toml(self, tmp_path: Path):
        """Test that TOMLDecodeError is raised for invalid TOML."""
        import tomllib

        config_file = tmp_path / "invalid.toml"
        config_file.write_text("invalid = [unclosed")

        with pytest.raises(tomllib.TOMLDecodeError):
            load_config_from_toml(config_file)

    def test_load_empty_toml(self, tmp_path: Path):
        """Test loading an empty TOML file."""
        config_file = tmp_path / "empty.toml"
        config_file.write_text("")

        data = load_config_from_toml(config_file)
        assert data == {}


class TestProcessTomlConfig:
    """Tests for process_toml_config and get_unknown_keys."""

    def test_known_keys_kept(self):
        flat = process_toml_config({"port": 6666, "client_timeout": 3.0})
        assert flat == {"port": 6666, "client_timeout": 3.0}

    def test_unknown_keys_dropped(self):
        flat = process_toml_config({"port": 5555, "dealer_port": 5555})
        assert flat == {"port": 5555}

    def test_empty_optional_string_becomes_none(self):
        flat = process_toml_config({"log_dir": "", "log_rotation": "", "bind_address": ""})
        assert flat["log_dir"] is None
        assert flat["log_rotation"] is None
        # Not optional: validation reports it instead
        assert flat["bind_address"] == ""

    def test_get_unknown_keys(self):
        assert get_unknown_keys({"port": 1, "prot": 2, "timeout": 3}) == ["prot", "timeout"]


class TestValidateConfig:
    """Tests for validate_config function."""

    def test_valid_config(self):
        """Test that valid configuration passes validation."""
        assert validate_config(_defaults()) == []

    def test_invalid_port_too_low(self):
        """Test that port 0 fails validation."""
        errors = validate_config(replace(_defaults(), port=0))
        assert any("port" in e for e in errors)

    def test_invalid_port_too_high(self):
        """Test that port > 65535 fails validation."""
        errors = validate_config(replace(_defaults(), port=70000))
        assert any("port" in e for e in errors)

    def test_valid_edge_ports(self):
        """Test that edge case ports (1 and 65535) are valid."""
        config = replace(_defaults(), port=1, rest_port=65535)
        assert validate_config(config) == []

    def test_rest_port_conflict_only_when_enabled(self):
        config = replace(_defaults(), rest_port=8080)
        assert validate_config(config) == []
        errors = validate_config(replace(config, enable_rest_bridge=True))
        assert any("rest_port" in e for e in errors)

    def test_non_positive_timing(self):
        errors = validate_config(replace(_defaults(), shutdown_timeout=0))
        assert any("shutdown_timeout" in e for e in errors)

    def test_heartbeat_must_be_shorter_than_timeout(self):
        errors = validate_config(
            replace(_defaults(), heartbeat_interval=5.0, client_timeout=5.0)
        )
        assert any("heartbeat_interval" in e for e in errors)

    def test_empty_bind_address(self):
        errors = validate_config(replace(_defaults(), bind_address=""))
        assert any("bind_address" in e for e in errors)

    def test_invalid_log_level(self):
        errors = validate_config(replace(_defaults(), log_level_console="LOUD"))
        assert any("log_level_console" in e for e in errors)


class TestEnvOverrides:
    """Tests for apply_env_overrides."""

    def test_xrwall_port_wins_over_port(self):
        config, overrides = apply_env_overrides(
            _defaults(), {"XRWALL_PORT": "9001", "PORT": "9002"}
        )
        assert config.port == 9001
        assert overrides[0].key == "port"
        assert overrides[0].default_value == 8080
        assert overrides[0].new_value == 9001

    def test_generic_port(self):
        config, _ = apply_env_overrides(_defaults(), {"PORT": "9002"})
        assert config.port == 9002

    def test_blank_value_ignored(self):
        config, overrides = apply_env_overrides(_defaults(), {"XRWALL_PORT": " "})
        assert config.port == 8080
        assert overrides == []

    def test_non_integer_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            apply_env_overrides(_defaults(), {"PORT": "eighty"})
        assert "PORT" in exc_info.value.errors[0]


class TestMergeCliArgs:
    """Tests for merge_cli_args function."""

    def test_cli_overrides_port(self):
        """Test that CLI port overrides config."""
        config = _defaults()
        args = argparse.Namespace(port=9999, no_game_event_echo=False)

        merged = merge_cli_args(config, args)
        assert merged.port == 9999
        # Original config unchanged
        assert config.port == 8080

    def test_no_game_event_echo_flag(self):
        args = argparse.Namespace(port=None, no_game_event_echo=True)
        merged = merge_cli_args(_defaults(), args)
        assert merged.game_event_echo is False

    def test_rest_bridge_flags(self):
        args = argparse.Namespace(rest_bridge=True, rest_port=8123)
        merged = merge_cli_args(_defaults(), args)
        assert merged.enable_rest_bridge is True
        assert merged.rest_port == 8123

    def test_log_dir_stored_as_string(self, tmp_path: Path):
        args = argparse.Namespace(log_dir=tmp_path)
        merged = merge_cli_args(_defaults(), args)
        assert merged.log_dir == str(tmp_path)

    def test_none_values_dont_override(self):
        """Test that None CLI values don't override config."""
        args = argparse.Namespace(port=None, bind_address=None)
        merged = merge_cli_args(_defaults(), args)
        assert merged.port == 8080
        assert merged.bind_address == "*"

    def test_missing_attributes_handled(self):
        """Test that missing CLI attributes are handled gracefully."""
        config = _defaults()
        merged = merge_cli_args(config, argparse.Namespace())
        assert merged == config


class TestCreateConfigFromArgs:
    """Tests for the layered loader."""

    def test_precedence_cli_over_env_over_file(self, tmp_path: Path):
        config_file = tmp_path / "relay.toml"
        config_file.write_text("port = 7000\nclient_timeout = 20.0\n")

        args = argparse.Namespace(config=config_file, port=None)
        config, overrides = create_config_from_args(args, environ={"XRWALL_PORT": "7100"})
        assert config.port == 7100
        assert config.client_timeout == 20.0
        keys = [o.key for o in overrides]
        assert keys == ["port", "client_timeout", "port"]

        args = argparse.Namespace(config=config_file, port=7200)
        config, _ = create_config_from_args(args, environ={"XRWALL_PORT": "7100"})
        assert config.port == 7200

    def test_unknown_keys_warned(self, tmp_path: Path, capsys):
        config_file = tmp_path / "relay.toml"
        config_file.write_text("prot = 7000\n")

        config, overrides = create_config_from_args(
            argparse.Namespace(config=config_file), environ={}
        )
        assert config.port == 8080
        assert overrides == []
        assert "prot" in capsys.readouterr().err

    def test_validation_failure_raises(self, tmp_path: Path):
        config_file = tmp_path / "relay.toml"
        config_file.write_text("port = 0\n")

        with pytest.raises(ConfigurationError):
            create_config_from_args(argparse.Namespace(config=config_file), environ={})
