"""Shared test fixtures for mcp-remote-bridge tests.

This module provides:
- target: a ServerTarget with one static header
- fake_transports: scripted in-memory transports (see tests.mocks.fake_transport)
- mock_mcp: real aiohttp MockMCPServer for integration tests
- free_port: an unused local TCP port
"""

import socket
from collections.abc import AsyncGenerator

import pytest

from mcp_remote_bridge.bridge.models import ServerTarget
from tests.mocks import FakeTransports, MockMCPServer


@pytest.fixture
def target() -> ServerTarget:
    return ServerTarget(url="https://mcp.example.com/mcp", headers={"X-Team": "alpha"})


@pytest.fixture
def fake_transports() -> FakeTransports:
    return FakeTransports()


@pytest.fixture
def free_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
async def mock_mcp() -> AsyncGenerator[MockMCPServer, None]:
    """Running MockMCPServer without auth; tests flip flags as needed."""
    server = MockMCPServer()
    await server.start()
    yield server
    await server.stop()
