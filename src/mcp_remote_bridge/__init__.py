"""mcp-remote-bridge - Connect stdio MCP clients to remote MCP servers."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("mcp-remote-bridge")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"  # Fallback for editable installs without metadata

__all__ = ["__version__"]
