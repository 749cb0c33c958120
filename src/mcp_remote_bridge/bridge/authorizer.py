"""Authorizer - turns authorization challenges into credentials.

Owns the single CallbackSession of a run. Concurrent challenges are
coalesced onto the pending authorization instead of opening another
listener.
"""

import asyncio
import logging
import sys
import webbrowser
from typing import Callable, Optional

from .callback import DEFAULT_CALLBACK_TIMEOUT, OAuthCallbackListener, redirect_uri_for
from .errors import BridgeError
from .models import CallbackSession, ChallengeInfo, Credential
from .oauth import OAuthClient, generate_pkce_pair, generate_state

logger = logging.getLogger(__name__)


def launch_browser(url: str) -> None:
    """Show the authorization URL on stderr and try to open a browser."""
    print(f"Please authorize this client by visiting:\n{url}", file=sys.stderr)
    try:
        webbrowser.open(url)
    except webbrowser.Error as e:
        logger.warning(f"Could not open browser: {e}")


class Authorizer:
    """Callable ``on_challenge`` handler used by the TransportProber."""

    def __init__(
        self,
        oauth: OAuthClient,
        callback_port: int,
        callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        open_browser: Callable[[str], None] = launch_browser,
        callback_host: str = "127.0.0.1",
    ):
        """Initialize Authorizer.

        Args:
            oauth: OAuth client for discovery, registration and token exchange
            callback_port: Port allocated for the callback listener (reused for every session)
            callback_timeout: Seconds to wait for the user to approve
            open_browser: Surfaces the authorize URL to the user
            callback_host: Interface the listener binds
        """
        self.oauth = oauth
        self.callback_port = callback_port
        self.callback_timeout = callback_timeout
        self.open_browser = open_browser
        self.callback_host = callback_host
        self.sessions_created = 0
        self._session: Optional[CallbackSession] = None
        self._pending: Optional[asyncio.Task] = None

    @property
    def session(self) -> Optional[CallbackSession]:
        """The live CallbackSession, if an authorization is pending."""
        return self._session

    async def __call__(self, challenge: ChallengeInfo) -> Credential:
        if self._pending is not None and not self._pending.done():
            logger.info("Authorization already in progress, waiting for it")
        else:
            self._pending = asyncio.create_task(self._authorize(challenge))
        return await asyncio.shield(self._pending)

    async def _authorize(self, challenge: ChallengeInfo) -> Credential:
        logger.info(f"Server requires authorization (HTTP {challenge.status_code})")
        metadata = await self.oauth.discover(challenge)
        redirect_uri = redirect_uri_for(self.callback_port, self.callback_host)
        client_id = await self.oauth.register(metadata, redirect_uri)

        code_verifier, _ = generate_pkce_pair()
        session = CallbackSession(
            port=self.callback_port,
            state=generate_state(),
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
        )
        self._session = session
        self.sessions_created += 1

        authorize_url = self.oauth.build_authorize_url(
            metadata, client_id, session, scope=challenge.scope
        )
        listener = OAuthCallbackListener(
            exchange=self.oauth.exchange_code,
            host=self.callback_host,
            timeout=self.callback_timeout,
        )
        try:
            await listener.start(session)
            self.open_browser(authorize_url)
            return await listener.await_authorization(session, authorize_url)
        finally:
            await listener.stop()
            self._session = None

    async def close(self) -> None:
        """Abort a pending authorization; its listener releases the port."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
            try:
                await self._pending
            except asyncio.CancelledError:
                pass
            except BridgeError as e:
                logger.debug(f"Pending authorization ended with: {e}")
        self._pending = None
