"""Test mocks for mcp-remote-bridge.

Provides mock implementations for testing:
- MockMCPServer: remote MCP server (streamable HTTP, legacy SSE, OAuth)
- FakeTransport / FakeTransports: in-memory transports with scripted behavior
"""

from .fake_transport import FakeTransport, FakeTransports, default_send
from .mock_mcp_server import MockMCPServer

__all__ = ["FakeTransport", "FakeTransports", "MockMCPServer", "default_send"]
