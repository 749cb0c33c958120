"""Unit tests for mcp_remote_bridge.shared.paths module."""

from pathlib import Path

import pytest


@pytest.mark.cli_unit
class TestPaths:
    """Tests for path constants and functions."""

    def test_bridge_dir_is_in_home(self):
        """Test BRIDGE_DIR is in user's home directory."""
        from mcp_remote_bridge.shared.paths import BRIDGE_DIR

        assert BRIDGE_DIR == Path.home() / ".mcp-remote-bridge"

    def test_config_file_location(self):
        """Test CONFIG_FILE is in BRIDGE_DIR."""
        from mcp_remote_bridge.shared.paths import BRIDGE_DIR, CONFIG_FILE

        assert CONFIG_FILE == BRIDGE_DIR / "config.yaml"

    def test_log_dir_location(self):
        """Test LOG_DIR is same as BRIDGE_DIR."""
        from mcp_remote_bridge.shared.paths import BRIDGE_DIR, LOG_DIR

        assert LOG_DIR == BRIDGE_DIR

    def test_get_log_file(self):
        """Test get_log_file returns correct path."""
        from mcp_remote_bridge.shared.paths import LOG_DIR, get_log_file

        assert get_log_file() == LOG_DIR / "bridge.log"
        assert get_log_file("verify") == LOG_DIR / "verify.log"
