"""Install targets - host applications that launch MCP servers from a JSON config.

Resolves the platform-specific MCP config file of Claude Desktop, VSCode
and Cursor, and normalizes the target names users type.
"""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

TargetType = Literal["claude_desktop", "vscode", "cursor"]

DISPLAY_NAMES: dict[TargetType, str] = {
    "claude_desktop": "Claude Desktop",
    "vscode": "VSCode",
    "cursor": "Cursor",
}

# Accepted spellings (lower-cased, whitespace collapsed)
ALIASES: dict[str, TargetType] = {
    "claude desktop": "claude_desktop",
    "claude_desktop": "claude_desktop",
    "claudedesktop": "claude_desktop",
    "claude": "claude_desktop",
    "vscode": "vscode",
    "vs code": "vscode",
    "code": "vscode",
    "cursor": "cursor",
}


class UnknownTargetError(ValueError):
    """Install target name not recognized."""


def normalize_target(name: str) -> TargetType:
    """Map a user-supplied target name to a TargetType.

    Raises:
        UnknownTargetError: Name does not match any known target
    """
    key = " ".join(name.lower().split())
    if key not in ALIASES:
        valid = ", ".join(f'"{n}"' for n in DISPLAY_NAMES.values())
        raise UnknownTargetError(f"Install target must be one of {valid}, got \"{name}\"")
    return ALIASES[key]


@dataclass
class InstallTarget:
    """A host application and the config file it reads MCP servers from."""

    target: TargetType
    config_path: Path

    @property
    def display_name(self) -> str:
        return DISPLAY_NAMES[self.target]


class TargetResolver:
    """Resolve config paths per platform."""

    # Config paths per platform
    CONFIG_PATHS: dict[TargetType, dict[str, str]] = {
        "claude_desktop": {
            "darwin": "~/Library/Application Support/Claude/claude_desktop_config.json",
            "linux": "~/.config/Claude/claude_desktop_config.json",
            "windows": "%APPDATA%\\Claude\\claude_desktop_config.json",
        },
        "vscode": {
            "darwin": "~/.vscode/mcp.json",
            "linux": "~/.vscode/mcp.json",
            "windows": "~\\.vscode\\mcp.json",
        },
        "cursor": {
            "darwin": "~/.cursor/mcp.json",
            "linux": "~/.cursor/mcp.json",
            "windows": "~\\.cursor\\mcp.json",
        },
    }

    def __init__(self, system: str | None = None):
        """Initialize resolver.

        Args:
            system: Platform override ("darwin", "linux", "windows")
        """
        self._platform = system or self._get_platform()

    def _get_platform(self) -> str:
        """Get normalized platform name."""
        system = platform.system().lower()
        if system == "darwin":
            return "darwin"
        elif system == "windows":
            return "windows"
        return "linux"

    def resolve(self, name: str) -> InstallTarget:
        """Resolve a user-supplied target name to its config file.

        Raises:
            UnknownTargetError: Name does not match any known target
        """
        target = normalize_target(name)
        path_str = self.CONFIG_PATHS[target][self._platform]

        # Expand ~ and environment variables
        path_str = os.path.expanduser(path_str)
        path_str = os.path.expandvars(path_str)
        return InstallTarget(target=target, config_path=Path(path_str))
