"""Error types for the bridge and their mapping to JSON-RPC errors.

Every terminal failure of a bridge run is a BridgeError subclass carrying a
``cause`` code. HTTP statuses and connection errors coming back from the
remote server are mapped here as well.
"""

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

# JSON-RPC error codes
JSONRPC_PARSE_ERROR = -32700
JSONRPC_INVALID_REQUEST = -32600
JSONRPC_METHOD_NOT_FOUND = -32601
JSONRPC_INTERNAL_ERROR = -32603
JSONRPC_SERVER_ERROR = -32000  # -32000 to -32099 reserved for implementation-defined server errors

# Custom error codes for bridge
BRIDGE_AUTH_ERROR = -32001
BRIDGE_CONNECTION_ERROR = -32002
BRIDGE_TIMEOUT_ERROR = -32003

# Cause codes
CAUSE_NO_PORT = "no_port"
CAUSE_ALL_TRANSPORTS_EXHAUSTED = "all_transports_exhausted"
CAUSE_CALLBACK_TIMEOUT = "callback_timeout"
CAUSE_STATE_MISMATCH = "state_mismatch"
CAUSE_EXCHANGE_ERROR = "exchange_error"
CAUSE_AUTH_EXPIRED = "auth_expired"
CAUSE_TRANSPORT_REJECTED = "transport_rejected"

# Rejection reasons recorded on connection attempts
REASON_UNSUPPORTED = "unsupported"
REASON_AUTH_TIMEOUT = "auth_timeout"
REASON_AUTH_REJECTED = "auth_rejected"
REASON_UNREACHABLE = "unreachable"
REASON_HANDSHAKE_TIMEOUT = "handshake_timeout"
REASON_HTTP_ERROR = "http_error"


@dataclass
class BridgeError(Exception):
    """Base error class for bridge errors."""

    code: int = JSONRPC_SERVER_ERROR
    message: str = "Bridge error"
    retryable: bool = False
    data: dict[str, Any] = field(default_factory=dict)
    cause: str = "bridge_error"

    def __str__(self) -> str:
        return self.message

    def to_jsonrpc(self) -> dict[str, Any]:
        """Convert to JSON-RPC error object."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            error["data"] = self.data
        return error


@dataclass
class NoPortAvailable(BridgeError):
    """Every candidate callback port was taken."""

    code: int = BRIDGE_CONNECTION_ERROR
    message: str = "No free callback port available"
    cause: str = CAUSE_NO_PORT


@dataclass
class AllTransportsExhausted(BridgeError):
    """Every transport kind of the strategy ended without a connection."""

    code: int = BRIDGE_CONNECTION_ERROR
    message: str = "All transports exhausted"
    cause: str = CAUSE_ALL_TRANSPORTS_EXHAUSTED
    attempts: list[Any] = field(default_factory=list)


@dataclass
class CallbackTimeout(BridgeError):
    """The authorization redirect did not arrive in time."""

    code: int = BRIDGE_TIMEOUT_ERROR
    message: str = "Timed out waiting for authorization callback"
    cause: str = CAUSE_CALLBACK_TIMEOUT


@dataclass
class StateMismatch(BridgeError):
    """The redirect carried a state token that does not match the session."""

    code: int = BRIDGE_AUTH_ERROR
    message: str = "OAuth state mismatch"
    cause: str = CAUSE_STATE_MISMATCH


@dataclass
class ExchangeError(BridgeError):
    """Authorization code could not be obtained or exchanged for a token."""

    code: int = BRIDGE_AUTH_ERROR
    message: str = "Token exchange failed"
    cause: str = CAUSE_EXCHANGE_ERROR


@dataclass
class AuthExpiredNoRefresh(BridgeError):
    """Credential expired mid-session and could not be refreshed."""

    code: int = BRIDGE_AUTH_ERROR
    message: str = "Authorization expired and could not be refreshed"
    cause: str = CAUSE_AUTH_EXPIRED


@dataclass
class TransportRejected(BridgeError):
    """A transport attempt failed for the given reason."""

    code: int = BRIDGE_CONNECTION_ERROR
    message: str = "Transport rejected"
    cause: str = CAUSE_TRANSPORT_REJECTED
    reason: str = REASON_HTTP_ERROR


@dataclass
class TransportUnsupported(TransportRejected):
    """Remote definitively does not speak this transport (404/405, wrong content type)."""

    message: str = "Transport not supported by server"
    reason: str = REASON_UNSUPPORTED


@dataclass
class AuthChallenge(BridgeError):
    """Remote answered 401/403 and authorization must be completed.

    ``challenge`` holds the parsed ChallengeInfo.
    """

    code: int = BRIDGE_AUTH_ERROR
    message: str = "Authorization required"
    cause: str = "auth_required"
    challenge: Any = None


def map_http_error(status_code: int, message: str, url: str = "") -> BridgeError:
    """Map an HTTP status from the remote server to a BridgeError.

    Args:
        status_code: HTTP status code
        message: Error message from response
        url: URL that was being accessed

    Returns:
        Appropriate BridgeError subclass
    """
    data = {"original_message": message, "http_status": status_code}
    if url:
        data["url"] = url

    if status_code == 401:
        return AuthChallenge(
            message=f"Authorization required: {message}" if message else "Authorization required",
            data=data,
        )
    elif status_code == 403:
        return TransportRejected(
            message=f"Forbidden: {message}" if message else "Forbidden",
            reason=REASON_HTTP_ERROR,
            data=data,
        )
    elif status_code in (404, 405):
        return TransportUnsupported(
            message=f"Transport not supported (HTTP {status_code})",
            data=data,
        )
    elif status_code in (408, 504):
        return TransportRejected(
            code=BRIDGE_TIMEOUT_ERROR,
            message=f"Request timeout: {message}" if message else "Request timeout",
            reason=REASON_HANDSHAKE_TIMEOUT,
            retryable=True,
            data=data,
        )
    elif status_code >= 500:
        return TransportRejected(
            message=f"Server error: {message}" if message else "Server error",
            reason=REASON_HTTP_ERROR,
            retryable=status_code in (502, 503),  # Gateway errors may be retryable
            data=data,
        )
    else:
        return TransportRejected(
            message=f"HTTP error {status_code}: {message}",
            reason=REASON_HTTP_ERROR,
            data=data,
        )


def map_connection_error(error_message: str, url: str, is_timeout: bool = False) -> BridgeError:
    """Map a connection-level failure to a TransportRejected.

    Args:
        error_message: Error message from exception
        url: URL that was being accessed
        is_timeout: Whether this was a timeout error

    Returns:
        TransportRejected with reason set
    """
    if is_timeout:
        return TransportRejected(
            code=BRIDGE_TIMEOUT_ERROR,
            message=f"Request timeout connecting to {url}",
            reason=REASON_HANDSHAKE_TIMEOUT,
            retryable=True,
            data={"url": url, "original_error": error_message},
        )

    parsed = urlparse(url)
    host_port = f"{parsed.hostname}:{parsed.port}" if parsed.port else parsed.hostname

    return TransportRejected(
        message=f"Cannot reach server at {host_port}",
        reason=REASON_UNREACHABLE,
        retryable=True,
        data={"url": url, "original_error": error_message},
    )


def make_error_response(request_id: Any, error: BridgeError) -> dict[str, Any]:
    """Create a JSON-RPC error response for a local request."""
    return {"jsonrpc": "2.0", "id": request_id, "error": error.to_jsonrpc()}
