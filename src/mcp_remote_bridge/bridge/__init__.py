"""Bridge module - authenticated stdio-to-remote MCP transport.

Provides the engine behind `mcp-remote-bridge connect`: transport fallback,
OAuth callback handling and the stdio relay.
"""

from .authorizer import Authorizer
from .callback import OAuthCallbackListener
from .connection import AuthenticatedConnection
from .errors import (
    AllTransportsExhausted,
    AuthExpiredNoRefresh,
    BridgeError,
    CallbackTimeout,
    ExchangeError,
    NoPortAvailable,
    StateMismatch,
    TransportRejected,
    map_connection_error,
    map_http_error,
)
from .models import (
    BridgeResult,
    BridgeState,
    Credential,
    ServerTarget,
    TransportKind,
    TransportStrategy,
)
from .ports import PortAllocator
from .prober import TransportProber
from .runner import BridgeRunner

__all__ = [
    "AllTransportsExhausted",
    "AuthExpiredNoRefresh",
    "AuthenticatedConnection",
    "Authorizer",
    "BridgeError",
    "BridgeResult",
    "BridgeRunner",
    "BridgeState",
    "CallbackTimeout",
    "Credential",
    "ExchangeError",
    "NoPortAvailable",
    "OAuthCallbackListener",
    "PortAllocator",
    "ServerTarget",
    "StateMismatch",
    "TransportKind",
    "TransportProber",
    "TransportRejected",
    "TransportStrategy",
    "map_connection_error",
    "map_http_error",
]
