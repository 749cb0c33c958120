"""TransportProber - find the first transport kind that works for a server.

Strategy order is the single source of truth: kinds are tried strictly in
order and the first connected one wins.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .connection import AuthenticatedConnection, Refresher
from .errors import (
    REASON_AUTH_REJECTED,
    REASON_AUTH_TIMEOUT,
    REASON_HANDSHAKE_TIMEOUT,
    AllTransportsExhausted,
    AuthChallenge,
    CallbackTimeout,
    TransportRejected,
)
from .models import (
    AttemptOutcome,
    ChallengeInfo,
    ConnectionAttempt,
    Credential,
    ServerTarget,
    TransportKind,
    TransportStrategy,
)
from .transports import DEFAULT_TIMEOUT, TRANSPORTS, RemoteTransport

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TIMEOUT = 30.0

ChallengeHandler = Callable[[ChallengeInfo], Awaitable[Credential]]
TransportFactory = Callable[..., RemoteTransport]


class TransportProber:
    """Tries each transport kind of a strategy until one connects."""

    def __init__(
        self,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        request_timeout: float = DEFAULT_TIMEOUT,
        transports: Optional[dict[TransportKind, TransportFactory]] = None,
        refresher: Optional[Refresher] = None,
    ):
        """Initialize TransportProber.

        Args:
            handshake_timeout: Upper bound for one transport handshake (seconds)
            request_timeout: HTTP request timeout passed to transports (seconds)
            transports: Transport factory per kind (default: TRANSPORTS)
            refresher: Handed to the resulting connection for credential refresh
        """
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.transports = transports if transports is not None else TRANSPORTS
        self.refresher = refresher
        self.attempts: list[ConnectionAttempt] = []

    async def _handshake(
        self, kind: TransportKind, target: ServerTarget, credential: Optional[Credential]
    ) -> RemoteTransport:
        """Open one transport; on any failure it is closed before the error propagates."""
        transport = self.transports[kind](target, credential, timeout=self.request_timeout)
        try:
            await asyncio.wait_for(transport.open(), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            await transport.close()
            raise TransportRejected(
                message=f"{kind.value} handshake timed out after {self.handshake_timeout:g}s",
                reason=REASON_HANDSHAKE_TIMEOUT,
            ) from None
        except BaseException:
            await transport.close()
            raise
        return transport

    async def _attempt(
        self,
        attempt: ConnectionAttempt,
        on_challenge: ChallengeHandler,
    ) -> Optional[RemoteTransport]:
        kind, target = attempt.kind, attempt.target
        try:
            return await self._handshake(kind, target, attempt.credential)
        except AuthChallenge as e:
            attempt.record(AttemptOutcome.AUTH_REQUIRED)
            challenge = e.challenge or ChallengeInfo(url=target.url)

        logger.info(f"{kind.value} transport requires authorization")
        try:
            credential = await on_challenge(challenge)
        except CallbackTimeout:
            attempt.record(AttemptOutcome.REJECTED, REASON_AUTH_TIMEOUT)
            return None

        attempt.credential = credential
        try:
            return await self._handshake(kind, target, credential)
        except AuthChallenge:
            attempt.record(AttemptOutcome.REJECTED, REASON_AUTH_REJECTED)
            return None

    async def probe(
        self,
        target: ServerTarget,
        strategy: TransportStrategy,
        on_challenge: ChallengeHandler,
        credential: Optional[Credential] = None,
    ) -> AuthenticatedConnection:
        """Connect using the first transport kind of ``strategy`` that works.

        Args:
            target: Server URL and static headers
            strategy: Ordered transport kinds to try
            on_challenge: Awaited on an authorization challenge, returns a Credential
            credential: Credential obtained earlier in the run, if any

        Returns:
            AuthenticatedConnection over the first connected transport

        Raises:
            AllTransportsExhausted: No transport kind connected
            CallbackTimeout: Every attempt ended waiting for authorization
            StateMismatch, ExchangeError: Authorization failed (fatal)
        """
        self.attempts = []

        for kind in strategy.kinds:
            attempt = ConnectionAttempt(kind=kind, target=target, credential=credential)
            self.attempts.append(attempt)
            logger.info(f"Trying {kind.value} transport for {target.url}")

            try:
                transport = await self._attempt(attempt, on_challenge)
            except TransportRejected as e:
                attempt.record(AttemptOutcome.REJECTED, e.reason)
                logger.warning(f"{kind.value} transport rejected ({e.reason}): {e.message}")
                transport = None

            # A credential obtained on a failed attempt carries over to the next kind
            credential = attempt.credential

            if transport is None:
                logger.debug(f"{kind.value} attempt ended: {attempt.reason}")
                continue

            attempt.record(AttemptOutcome.CONNECTED)
            logger.info(f"Connected via {kind.value} transport")
            return AuthenticatedConnection(transport, credential, refresher=self.refresher)

        reasons = [a.reason for a in self.attempts]
        if reasons and all(reason == REASON_AUTH_TIMEOUT for reason in reasons):
            raise CallbackTimeout(data={"attempts": [a.kind.value for a in self.attempts]})

        summary = ", ".join(f"{a.kind.value}: {a.reason}" for a in self.attempts)
        raise AllTransportsExhausted(
            message=f"All transports exhausted ({summary})",
            data={"attempts": {a.kind.value: a.reason for a in self.attempts}},
            attempts=list(self.attempts),
        )
