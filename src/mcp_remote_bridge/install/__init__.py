"""Install package - register the bridge with host MCP applications.

Provides the `mcp-remote-bridge install` building blocks:
1. Resolve the host application's MCP config (Claude Desktop, VSCode, Cursor)
2. Write a launch entry for the bridge under a server name, after a backup
"""

from .injector import (
    backup_config,
    build_launch_entry,
    inject_server,
    read_config,
)
from .targets import (
    DISPLAY_NAMES,
    InstallTarget,
    TargetResolver,
    UnknownTargetError,
    normalize_target,
)

__all__ = [
    "DISPLAY_NAMES",
    "InstallTarget",
    "TargetResolver",
    "UnknownTargetError",
    "normalize_target",
    "backup_config",
    "build_launch_entry",
    "inject_server",
    "read_config",
]
