"""FakeTransport - in-memory stand-in for a RemoteTransport.

Lets prober, connection and runner tests script per-kind handshake and
send behavior without any network I/O.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp_remote_bridge.bridge.errors import TransportRejected
from mcp_remote_bridge.bridge.models import Credential, ServerTarget, TransportKind

_END = object()

OpenBehavior = Callable[[Credential | None], Any]
SendBehavior = Callable[[Any, Credential | None], Any]


def default_send(message: Any, credential: Credential | None) -> list[dict[str, Any]]:
    """Answer every request with an empty result; notifications get nothing."""
    items = message if isinstance(message, list) else [message]
    return [
        {"jsonrpc": "2.0", "id": item["id"], "result": {}}
        for item in items
        if isinstance(item, dict) and "id" in item and "method" in item
    ]


# =============================================================================
# FakeTransport - in-memory RemoteTransport
# =============================================================================


class FakeTransport:
    """Implements the RemoteTransport surface used by prober and connection."""

    def __init__(
        self,
        kind: TransportKind,
        target: ServerTarget,
        credential: Credential | None = None,
        timeout: float = 30.0,
        on_open: OpenBehavior | None = None,
        on_send: SendBehavior | None = None,
    ):
        self.kind = kind
        self.target = target
        self.credential = credential
        self.timeout = timeout
        self.on_open = on_open
        self.on_send = on_send or default_send
        self.server_info: dict[str, Any] | None = None
        self.sent: list[Any] = []
        self.open_calls = 0
        self.listener_restarts: list[Credential | None] = []
        self.closed = False
        self._inbound: asyncio.Queue = asyncio.Queue()

    async def open(self) -> dict[str, Any]:
        self.open_calls += 1
        result = self.on_open(self.credential) if self.on_open else None
        if inspect.isawaitable(result):
            result = await result
        self.server_info = result or {"serverInfo": {"name": "fake"}}
        return self.server_info

    async def send(self, message: Any) -> None:
        if self.closed:
            raise TransportRejected(message="Transport is closed")
        self.sent.append(message)
        replies = self.on_send(message, self.credential)
        if inspect.isawaitable(replies):
            replies = await replies
        for reply in replies or []:
            self._inbound.put_nowait(reply)

    def set_credential(self, credential: Credential) -> None:
        self.credential = credential

    def restart_listener(self) -> None:
        self.listener_restarts.append(self.credential)

    def push(self, message: Any) -> None:
        """Deliver a server-initiated message or an error to raise from messages()."""
        self._inbound.put_nowait(message)

    def end(self) -> None:
        """Simulate the server closing the stream."""
        self._inbound.put_nowait(_END)

    async def messages(self):
        while True:
            item = await self._inbound.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbound.put_nowait(_END)


@dataclass
class FakeTransports:
    """Per-kind behaviors; records every transport the prober creates."""

    on_open: dict[TransportKind, OpenBehavior] = field(default_factory=dict)
    on_send: SendBehavior | None = None
    created: list[FakeTransport] = field(default_factory=list)

    def factory(self, kind: TransportKind) -> Callable[..., FakeTransport]:
        def create(target: ServerTarget, credential=None, timeout: float = 30.0) -> FakeTransport:
            transport = FakeTransport(
                kind,
                target,
                credential,
                timeout=timeout,
                on_open=self.on_open.get(kind),
                on_send=self.on_send,
            )
            self.created.append(transport)
            return transport

        return create

    def registry(self) -> dict[TransportKind, Callable[..., FakeTransport]]:
        return {kind: self.factory(kind) for kind in TransportKind}

    def kinds_tried(self) -> list[TransportKind]:
        return [t.kind for t in self.created]
