"""Config injector - write a bridge launch entry into a host application's config.

The entry is stored under ``mcpServers[<server name>]``; every other key of
the file is preserved. The previous file is backed up first.
"""

from __future__ import annotations

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any

from ..shared.logging import get_logger

logger = get_logger(__name__)


def build_launch_entry(
    command: str,
    server_url: str,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build the ``mcpServers`` entry that launches the bridge for a server.

    Args:
        command: Bridge executable
        server_url: Remote MCP server URL
        headers: Static headers to pass through on every launch

    Returns:
        ``{"command": ..., "args": [...]}`` entry
    """
    args = ["connect", server_url]
    for name, value in (headers or {}).items():
        args.extend(["--header", f"{name}: {value}"])
    return {"command": command, "args": args}


def read_config(config_path: Path) -> dict[str, Any]:
    """Read a host config file; missing or unparseable files read as empty."""
    if not config_path.exists():
        return {}
    try:
        config = json.loads(config_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("config_unparseable", path=str(config_path), error=str(e))
        return {}
    if not isinstance(config, dict):
        logger.warning("config_not_a_mapping", path=str(config_path))
        return {}
    return config


def backup_config(config_path: Path) -> Path | None:
    """Copy the config next to itself with a timestamp suffix.

    Returns:
        Path to the backup file, or None if there was nothing to back up
    """
    if not config_path.exists():
        return None
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_path = config_path.with_suffix(f".backup_{timestamp}.json")
    shutil.copy2(config_path, backup_path)
    return backup_path


def inject_server(
    config_path: Path,
    server_name: str,
    entry: dict[str, Any],
) -> Path | None:
    """Add or replace ``mcpServers[server_name]`` in a host config file.

    - Backs up the existing config
    - Creates the config directory and file if missing
    - Preserves every other server and top-level key

    Args:
        config_path: Path to the config file
        server_name: Key under mcpServers
        entry: Launch entry (see build_launch_entry)

    Returns:
        Path to the backup file, or None if the config did not exist
    """
    config = read_config(config_path)
    backup_path = backup_config(config_path)

    mcp_servers = config.get("mcpServers")
    if not isinstance(mcp_servers, dict):
        mcp_servers = {}
    if server_name in mcp_servers:
        logger.info("replacing_server_entry", server=server_name, path=str(config_path))
    mcp_servers[server_name] = entry
    config["mcpServers"] = mcp_servers

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        json.dumps(config, indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )
    logger.info("server_entry_written", server=server_name, path=str(config_path))
    return backup_path

