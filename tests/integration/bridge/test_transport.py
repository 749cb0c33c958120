"""Integration tests for the remote transports against a real aiohttp server."""

import asyncio

import pytest

from mcp_remote_bridge.bridge.errors import (
    REASON_UNREACHABLE,
    AuthChallenge,
    TransportRejected,
    TransportUnsupported,
)
from mcp_remote_bridge.bridge.models import Credential, ServerTarget
from mcp_remote_bridge.bridge.transports import SseTransport, StreamableHttpTransport
from tests.mocks.mock_mcp_server import SESSION_ID

pytestmark = [pytest.mark.bridge, pytest.mark.bridge_integration]

TOOLS_LIST = {"jsonrpc": "2.0", "id": 1, "method": "tools/list"}
BATCH = [
    TOOLS_LIST,
    {"jsonrpc": "2.0", "id": 2, "method": "ping"},
    {"jsonrpc": "2.0", "method": "notifications/progress"},
]


async def next_message(transport, timeout: float = 5.0) -> dict:
    stream = transport.messages()
    try:
        return await asyncio.wait_for(stream.__anext__(), timeout=timeout)
    finally:
        await stream.aclose()


class TestStreamableHttp:
    """POST per message, JSON or event-stream responses."""

    @pytest.mark.parametrize("mode", ["json", "sse"])
    async def test_handshake_and_request(self, mock_mcp, mode):
        mock_mcp.http_response_mode = mode
        transport = StreamableHttpTransport(ServerTarget(f"{mock_mcp.base_url}/mcp"))
        try:
            info = await transport.open()
            await transport.send(TOOLS_LIST)
            reply = await next_message(transport)
        finally:
            await transport.close()

        assert info["serverInfo"]["name"] == "mock-mcp"
        assert reply["id"] == 1
        assert reply["result"]["tools"][0]["name"] == "echo"

    async def test_session_id_sent_after_initialize(self, mock_mcp):
        transport = StreamableHttpTransport(ServerTarget(f"{mock_mcp.base_url}/mcp"))
        try:
            await transport.open()
            await transport.send(TOOLS_LIST)
        finally:
            await transport.close()

        assert transport.session_id == SESSION_ID
        assert mock_mcp.session_headers == [None, SESSION_ID]

    async def test_static_headers_and_bearer_sent(self, mock_mcp):
        target = ServerTarget(f"{mock_mcp.base_url}/mcp", headers={"X-Team": "alpha"})
        transport = StreamableHttpTransport(target, Credential(access_token="tok-1"))
        try:
            await transport.open()
        finally:
            await transport.close()

        headers = {k.lower(): v for k, v in mock_mcp.request_headers[0].items()}
        assert headers["x-team"] == "alpha"
        assert headers["authorization"] == "Bearer tok-1"

    async def test_notification_accepted_without_reply(self, mock_mcp):
        transport = StreamableHttpTransport(ServerTarget(f"{mock_mcp.base_url}/mcp"))
        try:
            await transport.open()
            await transport.send({"jsonrpc": "2.0", "method": "notifications/initialized"})
            with pytest.raises(asyncio.TimeoutError):
                await next_message(transport, timeout=0.2)
        finally:
            await transport.close()

    async def test_missing_endpoint_is_unsupported(self, mock_mcp):
        mock_mcp.http_enabled = False
        transport = StreamableHttpTransport(ServerTarget(f"{mock_mcp.base_url}/mcp"))
        try:
            with pytest.raises(TransportUnsupported):
                await transport.open()
        finally:
            await transport.close()

    async def test_unauthorized_raises_challenge(self, mock_mcp):
        mock_mcp.require_auth = True
        transport = StreamableHttpTransport(ServerTarget(f"{mock_mcp.base_url}/mcp"))
        try:
            with pytest.raises(AuthChallenge) as exc_info:
                await transport.open()
        finally:
            await transport.close()

        challenge = exc_info.value.challenge
        assert challenge.status_code == 401
        assert challenge.resource_metadata_url == (
            f"{mock_mcp.base_url}/.well-known/oauth-protected-resource"
        )

    async def test_unreachable_server(self, free_port):
        transport = StreamableHttpTransport(
            ServerTarget(f"http://127.0.0.1:{free_port}/mcp"), timeout=2.0
        )
        try:
            with pytest.raises(TransportRejected) as exc_info:
                await transport.open()
        finally:
            await transport.close()

        assert exc_info.value.reason == REASON_UNREACHABLE

    async def test_bare_forbidden_is_rejected_not_challenged(self, mock_mcp):
        mock_mcp.forbid = True
        transport = StreamableHttpTransport(ServerTarget(f"{mock_mcp.base_url}/mcp"))
        try:
            with pytest.raises(TransportRejected) as exc_info:
                await transport.open()
        finally:
            await transport.close()

        assert not isinstance(exc_info.value, AuthChallenge)
        assert exc_info.value.data["http_status"] == 403

    @pytest.mark.parametrize("mode", ["json", "sse"])
    async def test_batch_posted_as_one_request(self, mock_mcp, mode):
        mock_mcp.http_response_mode = mode
        transport = StreamableHttpTransport(ServerTarget(f"{mock_mcp.base_url}/mcp"))
        try:
            await transport.open()
            await transport.send(BATCH)
            replies = [await next_message(transport), await next_message(transport)]
        finally:
            await transport.close()

        assert mock_mcp.requests[-1] == BATCH
        assert mock_mcp.session_headers[-1] == SESSION_ID
        assert [r["id"] for r in replies] == [1, 2]

    async def test_listener_challenge_surfaces_on_messages(self, mock_mcp):
        mock_mcp.listener_challenges = 1
        transport = StreamableHttpTransport(ServerTarget(f"{mock_mcp.base_url}/mcp"))
        try:
            await transport.open()
            await transport.send({"jsonrpc": "2.0", "method": "notifications/initialized"})
            with pytest.raises(AuthChallenge) as exc_info:
                await next_message(transport)
        finally:
            await transport.close()

        assert exc_info.value.challenge.status_code == 401

    async def test_send_after_close_rejected(self, mock_mcp):
        transport = StreamableHttpTransport(ServerTarget(f"{mock_mcp.base_url}/mcp"))
        await transport.open()
        await transport.close()

        with pytest.raises(TransportRejected):
            await transport.send(TOOLS_LIST)


class TestSse:
    """GET event stream plus POST to the announced endpoint."""

    async def test_endpoint_event_completes_handshake(self, mock_mcp):
        transport = SseTransport(ServerTarget(f"{mock_mcp.base_url}/sse"))
        try:
            info = await transport.open()
        finally:
            await transport.close()

        assert info["endpoint"] == f"{mock_mcp.base_url}/messages?session_id=abc"

    async def test_reply_arrives_on_stream(self, mock_mcp):
        transport = SseTransport(ServerTarget(f"{mock_mcp.base_url}/sse"))
        try:
            await transport.open()
            await transport.send({"jsonrpc": "2.0", "id": "p1", "method": "ping"})
            reply = await next_message(transport)
        finally:
            await transport.close()

        assert reply == {"jsonrpc": "2.0", "id": "p1", "result": {}}
        assert mock_mcp.paths == ["/messages"]

    async def test_missing_stream_is_unsupported(self, mock_mcp):
        mock_mcp.sse_enabled = False
        transport = SseTransport(ServerTarget(f"{mock_mcp.base_url}/sse"))
        try:
            with pytest.raises(TransportUnsupported):
                await transport.open()
        finally:
            await transport.close()

    async def test_unauthorized_raises_challenge(self, mock_mcp):
        mock_mcp.require_auth = True
        transport = SseTransport(ServerTarget(f"{mock_mcp.base_url}/sse"))
        try:
            with pytest.raises(AuthChallenge):
                await transport.open()
        finally:
            await transport.close()

    async def test_streamable_post_to_sse_url_is_unsupported(self, mock_mcp):
        transport = StreamableHttpTransport(ServerTarget(f"{mock_mcp.base_url}/sse"))
        try:
            with pytest.raises(TransportUnsupported):
                await transport.open()
        finally:
            await transport.close()

    async def test_batch_replies_arrive_on_stream(self, mock_mcp):
        transport = SseTransport(ServerTarget(f"{mock_mcp.base_url}/sse"))
        try:
            await transport.open()
            await transport.send(BATCH)
            replies = [await next_message(transport), await next_message(transport)]
        finally:
            await transport.close()

        assert mock_mcp.requests == [BATCH]
        assert [r["id"] for r in replies] == [1, 2]
