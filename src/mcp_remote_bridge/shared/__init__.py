"""Shared modules for mcp-remote-bridge.

Functionality used by both the connect and install commands:
- ~/.mcp-remote-bridge/ paths
- Logging setup
"""

from .logging import configure_logging, get_logger
from .paths import (
    BRIDGE_DIR,
    CONFIG_FILE,
    LOG_DIR,
    get_log_file,
)

__all__ = [
    # Paths
    "BRIDGE_DIR",
    "CONFIG_FILE",
    "LOG_DIR",
    "get_log_file",
    # Logging
    "configure_logging",
    "get_logger",
]
