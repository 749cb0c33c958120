"""Bridge configuration management.

Handles persistent defaults stored in ~/.mcp-remote-bridge/config.yaml.
Supports environment variable overrides and CLI flag precedence.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable

import yaml

from .bridge.callback import DEFAULT_CALLBACK_TIMEOUT
from .bridge.models import TransportStrategy
from .bridge.ports import DEFAULT_CALLBACK_PORT
from .bridge.transports import DEFAULT_TIMEOUT
from .shared.paths import CONFIG_FILE, get_log_file

logger = logging.getLogger(__name__)

DEFAULT_LOG_LEVEL = "info"
DEFAULT_LOG_FILE = str(get_log_file())

# Environment variable mappings
ENV_VARS = {
    "callback_port": "MCP_REMOTE_CALLBACK_PORT",
    "transport": "MCP_REMOTE_TRANSPORT",
    "timeout": "MCP_REMOTE_TIMEOUT",
    "callback_timeout": "MCP_REMOTE_CALLBACK_TIMEOUT",
    "client_id": "MCP_REMOTE_CLIENT_ID",
    "log_level": "MCP_REMOTE_LOG_LEVEL",
    "log_file": "MCP_REMOTE_LOG_FILE",
}


def _transport(value: Any) -> str:
    return TransportStrategy(str(value)).value


# Parsers for each key; a value that fails to parse is ignored with a warning
PARSERS: dict[str, Callable[[Any], Any]] = {
    "callback_port": int,
    "transport": _transport,
    "timeout": float,
    "callback_timeout": float,
    "client_id": str,
    "log_level": lambda v: str(v).lower(),
    "log_file": str,
}


@dataclass
class BridgeConfig:
    """Bridge defaults, overridable per invocation by CLI flags."""

    callback_port: int = DEFAULT_CALLBACK_PORT
    transport: str = TransportStrategy.HTTP_FIRST.value
    timeout: float = DEFAULT_TIMEOUT
    callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT
    client_id: str | None = None
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: str = DEFAULT_LOG_FILE

    # Track where each value came from
    _sources: dict[str, str] = field(default_factory=dict)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self._sources.get(key, "default")

    @property
    def strategy(self) -> TransportStrategy:
        return TransportStrategy(self.transport)


def config_keys() -> list[str]:
    return [f.name for f in fields(BridgeConfig) if not f.name.startswith("_")]


def get_config_path() -> Path:
    """Get the config file path.

    Returns:
        Path to ~/.mcp-remote-bridge/config.yaml
    """
    return CONFIG_FILE


def _apply(config: BridgeConfig, sources: dict[str, str], key: str, raw: Any, source: str) -> None:
    try:
        value = PARSERS[key](raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {key}={raw!r} from {source}")
        return
    setattr(config, key, value)
    sources[key] = source


def load_config(path: Path | None = None) -> BridgeConfig:
    """Load bridge configuration.

    Precedence (highest to lowest):
    1. Environment variables (MCP_REMOTE_*)
    2. Config file (~/.mcp-remote-bridge/config.yaml)
    3. Defaults

    CLI flags take precedence over all of these; the commands apply them.

    Args:
        path: Config file to read (default: get_config_path())

    Returns:
        BridgeConfig with values and sources
    """
    config = BridgeConfig()
    sources: dict[str, str] = {key: "default" for key in config_keys()}

    config_path = path or get_config_path()
    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable config file {config_path}: {e}")
            file_config = {}

        if not isinstance(file_config, dict):
            logger.warning(f"Ignoring config file {config_path}: expected a mapping")
            file_config = {}

        for key in config_keys():
            if key in file_config and file_config[key] is not None:
                _apply(config, sources, key, file_config[key], "config file")

    for key, env_var in ENV_VARS.items():
        if os.environ.get(env_var):
            _apply(config, sources, key, os.environ[env_var], "environment")

    config._sources = sources
    return config


def save_config(key: str, value: Any, path: Path | None = None) -> None:
    """Save a config value to the config file.

    Args:
        key: Config key (one of config_keys())
        value: Value to save
        path: Config file to write (default: get_config_path())

    Raises:
        KeyError: Unknown config key
        ValueError: Value does not parse for this key
    """
    if key not in PARSERS:
        raise KeyError(key)
    parsed = PARSERS[key](value)

    config_path = path or get_config_path()

    existing: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            existing = yaml.safe_load(f) or {}

    existing[key] = parsed

    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)
