"""Data model for the bridge: targets, strategies, sessions, credentials, attempts."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class TransportKind(Enum):
    """Remote wire protocol variants that can reach the same server URL."""

    STREAMABLE_HTTP = "http"  # POST JSON-RPC, JSON or event-stream responses
    SSE = "sse"  # GET event stream, POST to announced endpoint


class TransportStrategy(Enum):
    """Ordered list of transport kinds to attempt, chosen once per run."""

    HTTP_FIRST = "http-first"
    SSE_FIRST = "sse-first"
    HTTP_ONLY = "http-only"
    SSE_ONLY = "sse-only"

    @property
    def kinds(self) -> tuple[TransportKind, ...]:
        """Transport kinds in the order they are tried."""
        return STRATEGY_ORDER[self]


STRATEGY_ORDER: dict[TransportStrategy, tuple[TransportKind, ...]] = {
    TransportStrategy.HTTP_FIRST: (TransportKind.STREAMABLE_HTTP, TransportKind.SSE),
    TransportStrategy.SSE_FIRST: (TransportKind.SSE, TransportKind.STREAMABLE_HTTP),
    TransportStrategy.HTTP_ONLY: (TransportKind.STREAMABLE_HTTP,),
    TransportStrategy.SSE_ONLY: (TransportKind.SSE,),
}


@dataclass(frozen=True)
class ServerTarget:
    """Remote server URL plus user-supplied static headers."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)

    def request_headers(self, credential: Optional["Credential"] = None) -> dict[str, str]:
        """Static headers with the credential's Authorization header on top."""
        headers = dict(self.headers)
        if credential is not None:
            for key in [k for k in headers if k.lower() == "authorization"]:
                del headers[key]
            headers["Authorization"] = f"Bearer {credential.access_token}"
        return headers


def mask_token(token: str | None) -> str:
    """Shorten a token for display; never show it in full."""
    if not token:
        return "<none>"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-2:]}"


@dataclass
class Credential:
    """Access credential obtained from the authorization exchange."""

    access_token: str
    expires_at: float | None = None
    refresh_token: str | None = None

    @classmethod
    def from_token_response(cls, data: dict[str, Any], now: float | None = None) -> "Credential":
        """Build a Credential from an OAuth token endpoint response body."""
        now = time.time() if now is None else now
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            expires_at=now + float(expires_in) if expires_in is not None else None,
            refresh_token=data.get("refresh_token"),
        )

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and time.time() >= self.expires_at

    def __repr__(self) -> str:
        return (
            f"Credential(access_token={mask_token(self.access_token)!r}, "
            f"expires_at={self.expires_at!r}, "
            f"refresh_token={mask_token(self.refresh_token)!r})"
        )


@dataclass(frozen=True)
class ChallengeInfo:
    """Parsed authorization challenge from a 401/403 response."""

    url: str
    status_code: int = 401
    resource_metadata_url: str | None = None
    scope: str | None = None
    error: str | None = None


class SessionStatus(Enum):
    PENDING = "pending"
    RECEIVED = "received"
    EXPIRED = "expired"


@dataclass
class CallbackSession:
    """One pending authorization: the values the redirect must match."""

    port: int
    state: str
    code_verifier: str
    redirect_uri: str
    status: SessionStatus = SessionStatus.PENDING

    def __repr__(self) -> str:
        return (
            f"CallbackSession(port={self.port}, redirect_uri={self.redirect_uri!r}, "
            f"status={self.status.value})"
        )


class AttemptOutcome(Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    REJECTED = "rejected"
    AUTH_REQUIRED = "auth_required"


@dataclass
class ConnectionAttempt:
    """One TransportProber iteration. Immutable once a final outcome is recorded."""

    kind: TransportKind
    target: ServerTarget
    credential: Credential | None = None
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    reason: str | None = None

    @property
    def is_final(self) -> bool:
        return self.outcome in (AttemptOutcome.CONNECTED, AttemptOutcome.REJECTED)

    def record(self, outcome: AttemptOutcome, reason: str | None = None) -> None:
        """Record the outcome of this attempt.

        AUTH_REQUIRED is intermediate; CONNECTED and REJECTED are final.

        Raises:
            RuntimeError: If a final outcome was already recorded
        """
        if self.is_final:
            raise RuntimeError(f"Attempt for {self.kind.value} already {self.outcome.value}")
        self.outcome = outcome
        self.reason = reason


class BridgeState(Enum):
    """Lifecycle of one bridge run."""

    IDLE = "idle"
    PROBING = "probing"
    AUTHORIZING = "authorizing"
    CONNECTED = "connected"
    VERIFIED = "verified"
    RELAYING = "relaying"
    CLOSED = "closed"


ALLOWED_TRANSITIONS: dict[BridgeState, frozenset[BridgeState]] = {
    BridgeState.IDLE: frozenset({BridgeState.PROBING}),
    BridgeState.PROBING: frozenset({BridgeState.AUTHORIZING, BridgeState.CONNECTED}),
    BridgeState.AUTHORIZING: frozenset({BridgeState.PROBING}),
    BridgeState.CONNECTED: frozenset({BridgeState.VERIFIED, BridgeState.RELAYING}),
    BridgeState.VERIFIED: frozenset(),
    BridgeState.RELAYING: frozenset(),
    BridgeState.CLOSED: frozenset(),
}


def can_transition(current: BridgeState, new: BridgeState) -> bool:
    """Whether ``current -> new`` is legal. Any live state may close."""
    if new is BridgeState.CLOSED:
        return current is not BridgeState.CLOSED
    return new in ALLOWED_TRANSITIONS[current]


@dataclass
class BridgeResult:
    """Outcome of a bridge run, enough for a caller to build a launch command."""

    success: bool
    state: BridgeState
    server_url: str
    headers: dict[str, str] = field(default_factory=dict)
    transport_kind: TransportKind | None = None
    error: Any = None
