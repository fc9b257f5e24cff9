"""Layered relay configuration.

Values come from four layers, later ones winning:

1. ``default.toml`` bundled with the package (must define every field)
2. a user TOML file passed with ``--config``
3. the environment (``XRWALL_PORT``, then ``PORT``)
4. command-line flags

Only layers 2 and 3 are reported as overrides in the startup banner.
"""

from __future__ import annotations

import argparse
import importlib.resources
import os
import sys
import tomllib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, NamedTuple

PORT_ENV_VARS = ("XRWALL_PORT", "PORT")

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


class ConfigurationError(Exception):
    """The merged configuration is unusable.

    Attributes:
        errors: One human-readable message per problem found.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Invalid relay configuration: " + "; ".join(errors))


class DefaultConfigError(Exception):
    """The bundled default.toml is missing or broken. Startup cannot continue."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Bundled defaults unusable: {message}")


class ConfigOverride(NamedTuple):
    key: str
    default_value: Any
    new_value: Any


@dataclass
class ServerConfig:
    """Relay settings. Every field is required; defaults live in default.toml."""

    port: int
    bind_address: str
    enable_rest_bridge: bool
    rest_port: int

    client_timeout: float
    heartbeat_interval: float
    cleanup_interval: float
    status_log_interval: float
    poll_timeout: int
    shutdown_timeout: float
    registration_timeout: float

    game_event_echo: bool

    log_dir: str | None
    log_level_console: str
    log_json_console: bool
    log_rotation: str | None
    log_retention: str | None

    @property
    def endpoint(self) -> str:
        return f"tcp://{self.bind_address}:{self.port}"


CONFIG_KEYS = frozenset(f.name for f in fields(ServerConfig))

# "" in TOML leaves these unset
_NULLABLE_KEYS = frozenset({"log_dir", "log_rotation", "log_retention"})

_PORT_KEYS = ("port", "rest_port")

_POSITIVE_KEYS = (
    "client_timeout",
    "heartbeat_interval",
    "cleanup_interval",
    "status_log_interval",
    "poll_timeout",
    "shutdown_timeout",
    "registration_timeout",
)

# argparse dest -> (config key, converter). Flags left at None/False are skipped.
_CLI_VALUE_FLAGS: dict[str, tuple[str, Any]] = {
    "port": ("port", int),
    "bind_address": ("bind_address", str),
    "rest_port": ("rest_port", int),
    "log_dir": ("log_dir", str),
    "log_level_console": ("log_level_console", str),
    "log_rotation": ("log_rotation", str),
    "log_retention": ("log_retention", str),
}
# argparse dest -> (config key, value set when the switch is present)
_CLI_SWITCHES: dict[str, tuple[str, bool]] = {
    "rest_bridge": ("enable_rest_bridge", True),
    "no_game_event_echo": ("game_event_echo", False),
    "log_json_console": ("log_json_console", True),
}


def load_default_toml_data() -> dict[str, Any]:
    """Read and parse the packaged default.toml.

    Raises:
        DefaultConfigError: If the resource is absent or not valid TOML.
    """
    resource = importlib.resources.files("xrwall").joinpath("default.toml")
    try:
        return tomllib.loads(resource.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise DefaultConfigError(f"default.toml is not packaged ({e})") from e
    except tomllib.TOMLDecodeError as e:
        raise DefaultConfigError(f"default.toml does not parse ({e})") from e
    except OSError as e:
        raise DefaultConfigError(f"default.toml could not be read ({e})") from e


def load_config_from_toml(path: Path) -> dict[str, Any]:
    """Parse a user TOML file.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    with open(path, "rb") as f:
        return tomllib.load(f)


def process_toml_config(toml_data: Mapping[str, Any]) -> dict[str, Any]:
    """Keep only ServerConfig keys, turning "" into None for nullable ones."""
    return {
        key: None if key in _NULLABLE_KEYS and value == "" else value
        for key, value in toml_data.items()
        if key in CONFIG_KEYS
    }


def get_unknown_keys(toml_data: Mapping[str, Any]) -> list[str]:
    return [key for key in toml_data if key not in CONFIG_KEYS]


def _is_port(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value < 65536


def validate_config(config: ServerConfig) -> list[str]:
    """Return every problem with ``config``; an empty list means it is usable."""
    errors = [
        f"{key} must be between 1 and 65535, got {getattr(config, key)}"
        for key in _PORT_KEYS
        if not _is_port(getattr(config, key))
    ]
    if config.enable_rest_bridge and config.rest_port == config.port:
        errors.append("rest_port must differ from port when the REST bridge is enabled")
    if not config.bind_address:
        errors.append("bind_address must not be empty")

    errors.extend(
        f"{key} must be positive, got {getattr(config, key)}"
        for key in _POSITIVE_KEYS
        if getattr(config, key) <= 0
    )
    # Silent-connection expiry needs room for at least one missed heartbeat
    if 0 < config.client_timeout <= config.heartbeat_interval:
        errors.append(
            f"heartbeat_interval ({config.heartbeat_interval}s) must be shorter than "
            f"client_timeout ({config.client_timeout}s)"
        )

    if config.log_level_console.upper() not in LOG_LEVELS:
        errors.append(
            f"log_level_console must be one of {', '.join(LOG_LEVELS)}, "
            f"got {config.log_level_console}"
        )
    return errors


def load_default_config() -> ServerConfig:
    """Build a ServerConfig from default.toml alone.

    Raises:
        DefaultConfigError: If default.toml is unreadable or lacks a field.
    """
    values = process_toml_config(load_default_toml_data())
    missing = sorted(CONFIG_KEYS - values.keys())
    if missing:
        raise DefaultConfigError(f"default.toml lacks {', '.join(missing)}")
    return ServerConfig(**values)


def _changed(config: ServerConfig, updates: Mapping[str, Any]) -> Iterable[ConfigOverride]:
    for key, value in updates.items():
        current = getattr(config, key)
        if current != value:
            yield ConfigOverride(key, current, value)


def apply_env_overrides(
    config: ServerConfig, environ: Mapping[str, str] | None = None
) -> tuple[ServerConfig, list[ConfigOverride]]:
    """Apply the first non-blank port variable from ``PORT_ENV_VARS``.

    Raises:
        ConfigurationError: If that variable is not an integer.
    """
    if environ is None:
        environ = os.environ
    name = next((n for n in PORT_ENV_VARS if environ.get(n, "").strip()), None)
    if name is None:
        return config, []

    raw = environ[name]
    try:
        port = int(raw)
    except ValueError:
        raise ConfigurationError([f"{name} must be an integer, got {raw!r}"]) from None
    overrides = list(_changed(config, {"port": port}))
    return replace(config, port=port), overrides


def merge_cli_args(config: ServerConfig, args: argparse.Namespace) -> ServerConfig:
    """Apply flags the user actually passed on the command line."""
    updates: dict[str, Any] = {}
    for dest, (key, convert) in _CLI_VALUE_FLAGS.items():
        value = getattr(args, dest, None)
        if value is not None:
            updates[key] = convert(value)
    for dest, (key, value) in _CLI_SWITCHES.items():
        if getattr(args, dest, False):
            updates[key] = value
    return replace(config, **updates) if updates else config


def _warn_unknown_keys(path: Path, keys: list[str]) -> None:
    # Logging is not configured yet
    sys.stderr.write(f"WARNING: ignoring unknown keys in {path}: {', '.join(keys)}\n")


def create_config_from_args(
    args: argparse.Namespace,
    environ: Mapping[str, str] | None = None,
) -> tuple[ServerConfig, list[ConfigOverride]]:
    """Merge all configuration layers for the relay's ``main()``.

    Args:
        args: Parsed CLI arguments; ``args.config`` names an optional user TOML.
        environ: Environment mapping, ``os.environ`` when omitted.

    Returns:
        The validated config and the overrides from the user file and
        environment, in the order they were applied.

    Raises:
        DefaultConfigError: default.toml is unusable.
        FileNotFoundError: The user file does not exist.
        tomllib.TOMLDecodeError: The user file is not valid TOML.
        ConfigurationError: The merged result fails validation.
    """
    config = load_default_config()
    overrides: list[ConfigOverride] = []

    user_path = getattr(args, "config", None)
    if user_path is not None:
        user_path = Path(user_path)
        raw = load_config_from_toml(user_path)
        unknown = get_unknown_keys(raw)
        if unknown:
            _warn_unknown_keys(user_path, unknown)
        values = process_toml_config(raw)
        overrides.extend(_changed(config, values))
        config = replace(config, **values)

    config, env_overrides = apply_env_overrides(config, environ)
    overrides.extend(env_overrides)

    config = merge_cli_args(config, args)

    errors = validate_config(config)
    if errors:
        raise ConfigurationError(errors)
    return config, overrides
