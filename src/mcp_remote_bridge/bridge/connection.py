"""AuthenticatedConnection - a live transport plus its current credential."""

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from .errors import (
    CAUSE_AUTH_EXPIRED,
    AuthChallenge,
    AuthExpiredNoRefresh,
    BridgeError,
    TransportRejected,
)
from .models import Credential, TransportKind
from .transports import RemoteTransport

logger = logging.getLogger(__name__)

Refresher = Callable[[Credential], Awaitable[Credential]]


class AuthenticatedConnection:
    """Owns one open transport and the credential attached to it.

    An authorization failure on an open connection triggers exactly one
    silent refresh. If that is impossible or rejected, the connection closes
    with reason ``auth_expired`` and every later send fails immediately.
    """

    def __init__(
        self,
        transport: RemoteTransport,
        credential: Optional[Credential] = None,
        refresher: Optional[Refresher] = None,
    ):
        """Initialize AuthenticatedConnection.

        Args:
            transport: Transport that completed its handshake
            credential: Credential used for the handshake, if any
            refresher: Coroutine exchanging a credential's refresh token for a new one
        """
        self.transport = transport
        self._credential = credential
        self.refresher = refresher
        self.closed_reason: str | None = None
        self._receiving = False
        self._refresh_lock = asyncio.Lock()

    @property
    def kind(self) -> TransportKind:
        return self.transport.kind

    @property
    def server_info(self) -> dict[str, Any] | None:
        return self.transport.server_info

    @property
    def is_closed(self) -> bool:
        return self.closed_reason is not None

    async def send(self, message: dict[str, Any] | list[dict[str, Any]]) -> None:
        """Send a message, refreshing the credential once on an authorization failure.

        Raises:
            AuthExpiredNoRefresh: Credential expired and could not be refreshed
            TransportRejected: Connection closed or the transport failed
        """
        if self.closed_reason == CAUSE_AUTH_EXPIRED:
            raise AuthExpiredNoRefresh()
        if self.is_closed:
            raise TransportRejected(message=f"Connection closed ({self.closed_reason})")

        used = self._credential
        try:
            await self.transport.send(message)
            return
        except AuthChallenge:
            logger.info("Server rejected credential mid-session")

        await self._refresh(used)
        try:
            await self.transport.send(message)
        except AuthChallenge as e:
            await self._expire()
            raise AuthExpiredNoRefresh(message="Refreshed credential was rejected") from e

    async def _refresh(self, used: Optional[Credential]) -> None:
        async with self._refresh_lock:
            if self._credential is not used:
                # Another sender already refreshed
                return
            credential = self._credential
            if credential is None or not credential.refresh_token or self.refresher is None:
                await self._expire()
                raise AuthExpiredNoRefresh()
            try:
                refreshed = await self.refresher(credential)
            except BridgeError as e:
                logger.warning(f"Credential refresh failed: {e}")
                await self._expire()
                raise AuthExpiredNoRefresh(message=f"Credential refresh failed: {e}") from e
            self._credential = refreshed
            self.transport.set_credential(refreshed)
            logger.info("Credential refreshed")

    async def _expire(self) -> None:
        if self.closed_reason is None:
            self.closed_reason = CAUSE_AUTH_EXPIRED
            logger.error("Authorization expired, closing connection")
        await self.transport.close()

    async def receive(self) -> AsyncIterator[dict[str, Any]]:
        """Inbound messages until the connection closes. Single use.

        A challenge on the server event stream is handled like one on send:
        one refresh, then the stream is reopened with the new credential.

        Raises:
            RuntimeError: If called a second time
            AuthExpiredNoRefresh: Credential expired and could not be refreshed
        """
        if self._receiving:
            raise RuntimeError("receive() already consumed")
        self._receiving = True
        listening_with = self._credential
        restarted = False
        while True:
            try:
                async with aclosing(self.transport.messages()) as stream:
                    async for message in stream:
                        yield message
                break
            except AuthChallenge as e:
                logger.info("Server rejected credential on the event stream")
                if restarted and self._credential is listening_with:
                    await self._expire()
                    raise AuthExpiredNoRefresh(message="Refreshed credential was rejected") from e
                await self._refresh(listening_with)
                listening_with = self._credential
                restarted = True
                self.transport.restart_listener()
        if self.closed_reason is None:
            self.closed_reason = "remote_closed"

    async def close(self, reason: str = "closed") -> None:
        """Close the connection."""
        if self.closed_reason is None:
            self.closed_reason = reason
        await self.transport.close()
