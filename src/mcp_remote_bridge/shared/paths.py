"""Path management for mcp-remote-bridge.

Manages the ~/.mcp-remote-bridge/ directory (config file and logs).
"""

from pathlib import Path

# Base directory for all bridge data
BRIDGE_DIR = Path.home() / ".mcp-remote-bridge"

# Log directory (same as base for simplicity)
LOG_DIR = BRIDGE_DIR

# Persistent configuration file
CONFIG_FILE = BRIDGE_DIR / "config.yaml"


def get_log_file(name: str = "bridge") -> Path:
    """Get path to a log file.

    Args:
        name: Log file name (without extension)

    Returns:
        Path to the log file
    """
    return LOG_DIR / f"{name}.log"
