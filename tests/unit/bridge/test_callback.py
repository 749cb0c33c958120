"""Unit tests for OAuthCallbackListener (real aiohttp listener on a local port)."""

import asyncio
import socket
from unittest.mock import AsyncMock

import httpx
import pytest

from mcp_remote_bridge.bridge.callback import (
    CALLBACK_PATH,
    OAuthCallbackListener,
    redirect_uri_for,
)
from mcp_remote_bridge.bridge.errors import (
    CallbackTimeout,
    ExchangeError,
    NoPortAvailable,
    StateMismatch,
)
from mcp_remote_bridge.bridge.models import CallbackSession, Credential, SessionStatus
from mcp_remote_bridge.bridge.ports import PortAllocator

pytestmark = [pytest.mark.bridge, pytest.mark.bridge_unit]

AUTHORIZE_URL = "https://auth.example.com/authorize?client_id=x"


@pytest.fixture
def session(free_port) -> CallbackSession:
    return CallbackSession(
        port=free_port,
        state="expected-state",
        code_verifier="verifier",
        redirect_uri=redirect_uri_for(free_port),
    )


@pytest.fixture
def exchange() -> AsyncMock:
    return AsyncMock(return_value=Credential(access_token="granted", refresh_token="r"))


async def redirect(session: CallbackSession, path: str = CALLBACK_PATH, **params) -> httpx.Response:
    """Play the browser: follow the authorization server's redirect."""
    async with httpx.AsyncClient() as client:
        return await client.get(f"http://127.0.0.1:{session.port}{path}", params=params)


async def start_waiting(listener: OAuthCallbackListener, session: CallbackSession) -> asyncio.Task:
    await listener.start(session)
    return asyncio.create_task(listener.await_authorization(session, AUTHORIZE_URL))


def test_redirect_uri_for():
    assert redirect_uri_for(3334) == "http://127.0.0.1:3334/oauth/callback"
    assert redirect_uri_for(3334, "localhost") == "http://localhost:3334/oauth/callback"


class TestCallbackSuccess:
    async def test_matching_state_exchanges_code(self, session, exchange):
        listener = OAuthCallbackListener(exchange, timeout=5)
        waiter = await start_waiting(listener, session)

        response = await redirect(session, code="the-code", state="expected-state")
        credential = await waiter

        assert response.status_code == 200
        assert "Authorization successful" in response.text
        assert credential.access_token == "granted"
        exchange.assert_awaited_once_with(session, "the-code")
        assert session.status is SessionStatus.RECEIVED

    async def test_listener_released_after_success(self, session, exchange):
        listener = OAuthCallbackListener(exchange, timeout=5)
        waiter = await start_waiting(listener, session)

        await redirect(session, code="c", state="expected-state")
        await waiter

        assert listener.is_running is False
        assert PortAllocator()._is_port_available(session.port)

    async def test_await_starts_listener_when_not_running(self, session, exchange):
        listener = OAuthCallbackListener(exchange, timeout=5)
        waiter = asyncio.create_task(listener.await_authorization(session, AUTHORIZE_URL))
        for _ in range(100):
            if listener.is_running:
                break
            await asyncio.sleep(0.01)

        await redirect(session, code="c", state="expected-state")

        assert (await waiter).access_token == "granted"

    async def test_other_paths_return_404(self, session, exchange):
        listener = OAuthCallbackListener(exchange, timeout=5)
        waiter = await start_waiting(listener, session)

        response = await redirect(session, path="/favicon.ico")
        assert response.status_code == 404
        assert not waiter.done()

        await redirect(session, code="c", state="expected-state")
        await waiter


class TestCallbackFailures:
    async def test_state_mismatch_never_exchanges(self, session, exchange):
        listener = OAuthCallbackListener(exchange, timeout=5)
        waiter = await start_waiting(listener, session)

        response = await redirect(session, code="the-code", state="forged-state")

        with pytest.raises(StateMismatch):
            await waiter
        assert response.status_code == 400
        exchange.assert_not_awaited()
        assert session.status is SessionStatus.EXPIRED

    async def test_provider_error_fails_wait(self, session, exchange):
        listener = OAuthCallbackListener(exchange, timeout=5)
        waiter = await start_waiting(listener, session)

        response = await redirect(session, error="access_denied", state="expected-state")

        with pytest.raises(ExchangeError) as exc_info:
            await waiter
        assert response.status_code == 400
        assert "access_denied" in exc_info.value.message
        exchange.assert_not_awaited()

    async def test_missing_code(self, session, exchange):
        listener = OAuthCallbackListener(exchange, timeout=5)
        waiter = await start_waiting(listener, session)

        response = await redirect(session, state="expected-state")

        with pytest.raises(ExchangeError):
            await waiter
        assert response.status_code == 400

    async def test_exchange_failure(self, session):
        exchange = AsyncMock(side_effect=ExchangeError(message="Token request failed: HTTP 400"))
        listener = OAuthCallbackListener(exchange, timeout=5)
        waiter = await start_waiting(listener, session)

        response = await redirect(session, code="c", state="expected-state")

        with pytest.raises(ExchangeError):
            await waiter
        assert response.status_code == 500
        assert "Authorization failed" in response.text

    async def test_reflected_error_is_escaped(self, session, exchange):
        listener = OAuthCallbackListener(exchange, timeout=5)
        waiter = await start_waiting(listener, session)

        response = await redirect(session, error="<script>x</script>", state="s")

        with pytest.raises(ExchangeError):
            await waiter
        assert "<script>x</script>" not in response.text

    async def test_timeout_expires_session_and_releases_port(self, session, exchange):
        listener = OAuthCallbackListener(exchange, timeout=0.1)

        with pytest.raises(CallbackTimeout):
            await listener.await_authorization(session, AUTHORIZE_URL)

        assert session.status is SessionStatus.EXPIRED
        assert listener.is_running is False
        assert PortAllocator()._is_port_available(session.port)
        exchange.assert_not_awaited()

    async def test_start_twice_is_an_error(self, session, exchange):
        listener = OAuthCallbackListener(exchange, timeout=5)
        await listener.start(session)
        try:
            with pytest.raises(RuntimeError):
                await listener.start(session)
        finally:
            await listener.stop()

    async def test_port_taken_after_allocation(self, session, exchange):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", session.port))
        blocker.listen()
        listener = OAuthCallbackListener(exchange, timeout=5)
        try:
            with pytest.raises(NoPortAvailable) as exc_info:
                await listener.start(session)
        finally:
            blocker.close()

        assert exc_info.value.data == {"tried": [session.port]}
        assert listener.is_running is False
