"""Unit tests for Authorizer - one CallbackSession at a time, coalesced challenges."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from mcp_remote_bridge.bridge.authorizer import Authorizer
from mcp_remote_bridge.bridge.errors import CallbackTimeout
from mcp_remote_bridge.bridge.models import ChallengeInfo, Credential
from mcp_remote_bridge.bridge.oauth import AuthServerMetadata, OAuthClient
from mcp_remote_bridge.bridge.ports import PortAllocator

pytestmark = [pytest.mark.bridge, pytest.mark.bridge_unit]

CHALLENGE = ChallengeInfo(url="https://mcp.example.com/mcp", scope="mcp")


@pytest.fixture
def oauth() -> MagicMock:
    client = MagicMock(spec=OAuthClient)
    client.discover = AsyncMock(return_value=AuthServerMetadata.defaults_for(CHALLENGE.url))
    client.register = AsyncMock(return_value="client-1")
    client.build_authorize_url = MagicMock(return_value="https://mcp.example.com/authorize?x=1")
    client.exchange_code = AsyncMock(return_value=Credential(access_token="granted"))
    return client


class Browser:
    """Stands in for the user: approves by hitting the callback with the live state."""

    def __init__(self, approve: bool = True):
        self.approve = approve
        self.authorizer: Authorizer | None = None
        self.opened: list[str] = []
        self.tasks: list[asyncio.Task] = []

    def __call__(self, url: str) -> None:
        self.opened.append(url)
        if self.approve:
            self.tasks.append(asyncio.get_running_loop().create_task(self._approve()))

    async def _approve(self) -> None:
        assert self.authorizer is not None and self.authorizer.session is not None
        session = self.authorizer.session
        async with httpx.AsyncClient() as client:
            await client.get(
                f"http://127.0.0.1:{session.port}/oauth/callback",
                params={"code": "code-1", "state": session.state},
            )


def make_authorizer(oauth, port: int, browser: Browser, timeout: float = 5) -> Authorizer:
    authorizer = Authorizer(
        oauth, callback_port=port, callback_timeout=timeout, open_browser=browser
    )
    browser.authorizer = authorizer
    return authorizer


class TestAuthorizer:
    async def test_challenge_yields_credential(self, oauth, free_port):
        browser = Browser()
        authorizer = make_authorizer(oauth, free_port, browser)

        credential = await authorizer(CHALLENGE)

        assert credential.access_token == "granted"
        assert authorizer.sessions_created == 1
        assert browser.opened == ["https://mcp.example.com/authorize?x=1"]
        assert authorizer.session is None
        oauth.register.assert_awaited_once_with(
            oauth.discover.return_value, f"http://127.0.0.1:{free_port}/oauth/callback"
        )

    async def test_session_uses_allocated_port_and_pkce(self, oauth, free_port):
        browser = Browser()
        authorizer = make_authorizer(oauth, free_port, browser)

        await authorizer(CHALLENGE)

        session = oauth.exchange_code.await_args.args[0]
        assert session.port == free_port
        assert session.code_verifier
        _, _, session_arg = oauth.build_authorize_url.call_args.args
        assert session_arg is session
        assert oauth.build_authorize_url.call_args.kwargs["scope"] == "mcp"

    async def test_concurrent_challenges_share_one_session(self, oauth, free_port):
        browser = Browser()
        authorizer = make_authorizer(oauth, free_port, browser)

        first, second = await asyncio.gather(authorizer(CHALLENGE), authorizer(CHALLENGE))

        assert first is second
        assert authorizer.sessions_created == 1
        assert len(browser.opened) == 1
        oauth.discover.assert_awaited_once()

    async def test_later_challenge_opens_new_session_on_same_port(self, oauth, free_port):
        browser = Browser()
        authorizer = make_authorizer(oauth, free_port, browser)

        await authorizer(CHALLENGE)
        await authorizer(CHALLENGE)

        assert authorizer.sessions_created == 2
        ports = {call.args[0].port for call in oauth.exchange_code.await_args_list}
        assert ports == {free_port}

    async def test_timeout_releases_port(self, oauth, free_port):
        browser = Browser(approve=False)
        authorizer = make_authorizer(oauth, free_port, browser, timeout=0.1)

        with pytest.raises(CallbackTimeout):
            await authorizer(CHALLENGE)

        assert authorizer.session is None
        assert PortAllocator()._is_port_available(free_port)
        oauth.exchange_code.assert_not_awaited()

    async def test_close_aborts_pending_authorization(self, oauth, free_port):
        browser = Browser(approve=False)
        authorizer = make_authorizer(oauth, free_port, browser, timeout=30)

        waiter = asyncio.create_task(authorizer(CHALLENGE))
        for _ in range(100):
            if authorizer.session is not None:
                break
            await asyncio.sleep(0.01)
        assert authorizer.session is not None

        await authorizer.close()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert PortAllocator()._is_port_available(free_port)

    async def test_discovery_failure_opens_no_listener(self, oauth, free_port):
        oauth.register = AsyncMock(side_effect=RuntimeError("boom"))
        browser = Browser()
        authorizer = make_authorizer(oauth, free_port, browser)

        with pytest.raises(RuntimeError):
            await authorizer(CHALLENGE)

        assert authorizer.sessions_created == 0
        assert browser.opened == []
