"""Unit tests for install target resolution."""

from pathlib import Path

import pytest

from mcp_remote_bridge.install.targets import (
    TargetResolver,
    UnknownTargetError,
    normalize_target,
)


class TestNormalizeTarget:
    """Tests for normalize_target."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Claude Desktop", "claude_desktop"),
            ("claude  desktop", "claude_desktop"),
            ("claude", "claude_desktop"),
            ("VSCode", "vscode"),
            ("VS Code", "vscode"),
            ("Cursor", "cursor"),
        ],
    )
    def test_known_names(self, name, expected):
        """Test accepted spellings map to target types."""
        assert normalize_target(name) == expected

    def test_unknown_name(self):
        """Test unknown names list the valid targets."""
        with pytest.raises(UnknownTargetError, match="Claude Desktop"):
            normalize_target("Notepad")


class TestTargetResolver:
    """Tests for TargetResolver."""

    def test_claude_desktop_on_macos(self):
        """Test the macOS Claude Desktop config path."""
        target = TargetResolver(system="darwin").resolve("Claude Desktop")

        assert target.display_name == "Claude Desktop"
        assert target.config_path == (
            Path.home() / "Library/Application Support/Claude/claude_desktop_config.json"
        )

    def test_claude_desktop_on_linux(self):
        """Test the Linux Claude Desktop config path."""
        target = TargetResolver(system="linux").resolve("claude")

        assert target.config_path == Path.home() / ".config/Claude/claude_desktop_config.json"

    def test_claude_desktop_on_windows_expands_appdata(self, monkeypatch):
        """Test %APPDATA% is expanded on Windows."""
        monkeypatch.setenv("APPDATA", "/tmp/appdata")

        target = TargetResolver(system="windows").resolve("Claude Desktop")

        assert str(target.config_path).startswith("/tmp/appdata")

    @pytest.mark.parametrize(
        "name,relative",
        [("VSCode", ".vscode/mcp.json"), ("Cursor", ".cursor/mcp.json")],
    )
    def test_editor_configs_in_home(self, name, relative):
        """Test VSCode and Cursor configs live in the home directory."""
        target = TargetResolver(system="linux").resolve(name)

        assert target.config_path == Path.home() / relative
