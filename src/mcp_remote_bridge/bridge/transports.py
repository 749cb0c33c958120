"""Remote transports - the wire variants a server URL may speak.

Streamable HTTP:
- POST <url> for every JSON-RPC message
- responses as application/json or text/event-stream
- optional GET <url> event stream for server-initiated messages

Legacy HTTP+SSE:
- GET <url> opens an event stream whose first ``endpoint`` event names
  the URL to POST messages to
- responses arrive as ``message`` events on the stream

Both push inbound messages onto one queue consumed by ``messages()``.
"""

import asyncio
import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional
from urllib.parse import urljoin, urlparse

import httpx
from httpx_sse import EventSource, aconnect_sse

from .errors import (
    AuthChallenge,
    BridgeError,
    TransportRejected,
    TransportUnsupported,
    map_connection_error,
    map_http_error,
)
from .models import Credential, ServerTarget, TransportKind
from .oauth import challenge_from_response, is_challenge

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
CLIENT_INFO = {"name": "mcp-remote-bridge", "version": "1.0.0"}
HANDSHAKE_ID = "mcp-remote-bridge-init"
SESSION_HEADER = "Mcp-Session-Id"

_CLOSED = object()


def initialize_request(protocol_version: str, request_id: Any = HANDSHAKE_ID) -> dict[str, Any]:
    """The JSON-RPC initialize request used for the transport handshake."""
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "initialize",
        "params": {
            "protocolVersion": protocol_version,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        },
    }


def _content_type(response: httpx.Response) -> str:
    return response.headers.get("content-type", "").split(";")[0].strip().lower()


def has_method(message: Any, method: str) -> bool:
    """Whether a message, or any member of a batch, is a call to ``method``."""
    if isinstance(message, list):
        return any(has_method(item, method) for item in message)
    return isinstance(message, dict) and message.get("method") == method


class RemoteTransport:
    """Base class: HTTP client, headers, inbound queue, error mapping."""

    kind: TransportKind

    def __init__(
        self,
        target: ServerTarget,
        credential: Optional[Credential] = None,
        timeout: float = DEFAULT_TIMEOUT,
        insecure: bool = False,
    ):
        """Initialize transport.

        Args:
            target: Server URL and static headers
            credential: Credential to attach, if already authorized
            timeout: Request timeout in seconds (default: 30)
            insecure: Skip SSL certificate verification (default: False)

        Raises:
            ValueError: If URL is invalid
        """
        parsed = urlparse(target.url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid URL: {target.url}")

        self.target = target
        self.url = target.url
        self.credential = credential
        self.timeout = timeout
        self.insecure = insecure
        self.server_info: dict[str, Any] | None = None
        self._client: httpx.AsyncClient | None = None
        self._closed = False
        self._inbound: asyncio.Queue = asyncio.Queue()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _get_headers(self) -> dict[str, str]:
        """Static headers plus Authorization when a credential is set."""
        return self.target.request_headers(self.credential)

    def set_credential(self, credential: Credential) -> None:
        """Attach a new credential to subsequent requests."""
        self.credential = credential
        if self._client is not None:
            self._client.headers.update(self._get_headers())

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self._closed:
            raise TransportRejected(message="Transport is closed")
        if self._client is None:
            # Read timeout disabled: event streams stay open indefinitely.
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, read=None),
                headers=self._get_headers(),
                verify=not self.insecure,
            )
        return self._client

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Raise AuthChallenge / TransportUnsupported / TransportRejected for error statuses."""
        if is_challenge(response):
            raise AuthChallenge(
                data={"http_status": response.status_code, "url": str(response.url)},
                challenge=challenge_from_response(response),
            )
        if response.status_code >= 400:
            raise map_http_error(response.status_code, response.reason_phrase, str(response.url))

    def _enqueue(self, payload: Any) -> None:
        if isinstance(payload, list):
            for item in payload:
                self._inbound.put_nowait(item)
        else:
            self._inbound.put_nowait(payload)

    def _enqueue_text(self, data: str) -> None:
        try:
            self._enqueue(json.loads(data))
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from server: {data[:200]}")

    def _finish(self, error: BaseException | None = None) -> None:
        """Signal consumers that no more messages will arrive."""
        if error is not None:
            self._inbound.put_nowait(error)
        self._inbound.put_nowait(_CLOSED)

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield inbound messages until the transport closes."""
        while True:
            item = await self._inbound.get()
            if item is _CLOSED:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def open(self) -> dict[str, Any]:
        """Connect and perform the handshake. Returns the server's handshake result."""
        raise NotImplementedError

    async def send(self, message: dict[str, Any] | list[dict[str, Any]]) -> None:
        """Send one JSON-RPC message or batch; responses arrive through ``messages()``."""
        raise NotImplementedError

    def restart_listener(self) -> None:
        """Reopen any server-initiated message stream after a credential change."""

    async def close(self) -> None:
        """Close HTTP client and release resources."""
        if self._closed:
            return
        self._closed = True
        if self._client:
            await self._client.aclose()
            self._client = None
        self._finish()


class StreamableHttpTransport(RemoteTransport):
    """Streamable HTTP transport (single endpoint, POST per message)."""

    kind = TransportKind.STREAMABLE_HTTP
    protocol_version = "2025-03-26"

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.session_id: str | None = None
        self._listen_task: asyncio.Task | None = None

    def _message_headers(self, message: dict[str, Any] | list[dict[str, Any]]) -> dict[str, str]:
        headers = {"Accept": "application/json, text/event-stream"}
        # A new initialize starts a new server session
        if self.session_id and not has_method(message, "initialize"):
            headers[SESSION_HEADER] = self.session_id
        return headers

    def _adopt_session(self, response: httpx.Response) -> None:
        session_id = response.headers.get(SESSION_HEADER)
        if session_id and session_id != self.session_id:
            self.session_id = session_id
            logger.debug(f"Server session {session_id}")
            if self._listen_task is not None:
                self._start_listener()

    async def _post(
        self, message: dict[str, Any] | list[dict[str, Any]]
    ) -> AsyncIterator[dict[str, Any]]:
        """POST one message or batch and yield every JSON-RPC message in the response."""
        client = await self._ensure_client()
        try:
            async with client.stream(
                "POST", self.url, json=message, headers=self._message_headers(message)
            ) as response:
                self._raise_for_status(response)
                if has_method(message, "initialize"):
                    self._adopt_session(response)
                if response.status_code == 202:
                    return

                content_type = _content_type(response)
                if content_type == "application/json":
                    body = await response.aread()
                    if not body:
                        return
                    payload = json.loads(body)
                    for item in payload if isinstance(payload, list) else [payload]:
                        yield item
                elif content_type == "text/event-stream":
                    async for sse in EventSource(response).aiter_sse():
                        if not sse.data:
                            continue
                        try:
                            payload = json.loads(sse.data)
                        except json.JSONDecodeError:
                            logger.warning(f"Invalid JSON in SSE event: {sse.data[:200]}")
                            continue
                        for item in payload if isinstance(payload, list) else [payload]:
                            yield item
                else:
                    raise TransportUnsupported(
                        message=f"Unexpected content type {content_type or '<none>'}",
                        data={"url": self.url, "content_type": content_type},
                    )
        except httpx.TimeoutException as e:
            raise map_connection_error(str(e), self.url, is_timeout=True) from e
        except httpx.HTTPError as e:
            raise map_connection_error(str(e), self.url) from e
        except json.JSONDecodeError as e:
            raise TransportUnsupported(message=f"Invalid JSON from server: {e}") from e

    async def open(self) -> dict[str, Any]:
        request = initialize_request(self.protocol_version)
        async with aclosing(self._post(request)) as stream:
            async for message in stream:
                if message.get("id") != request["id"]:
                    self._enqueue(message)
                    continue
                if "error" in message:
                    error = message["error"]
                    raise TransportRejected(
                        message=f"Initialize failed: {error.get('message', 'unknown error')}",
                        data={"error": error},
                    )
                self.server_info = message.get("result", {})
                logger.info(f"Streamable HTTP handshake succeeded with {self.url}")
                return self.server_info

        raise TransportUnsupported(message="No initialize response from server")

    async def send(self, message: dict[str, Any] | list[dict[str, Any]]) -> None:
        async for item in self._post(message):
            self._enqueue(item)
        if has_method(message, "notifications/initialized") and self._listen_task is None:
            self._start_listener()

    def restart_listener(self) -> None:
        if self._listen_task is not None and not self._closed:
            self._start_listener()

    def _start_listener(self) -> None:
        if self._listen_task is not None:
            self._listen_task.cancel()
        self._listen_task = asyncio.create_task(self._listen())

    async def _listen(self) -> None:
        """GET stream for server-initiated messages. Optional on the server side."""
        client = await self._ensure_client()
        headers = {SESSION_HEADER: self.session_id} if self.session_id else {}
        try:
            async with aconnect_sse(client, "GET", self.url, headers=headers) as event_source:
                response = event_source.response
                if response.status_code == 405:
                    logger.debug("Server offers no GET stream")
                    return
                if is_challenge(response):
                    logger.info(f"GET stream requires authorization: HTTP {response.status_code}")
                    self._inbound.put_nowait(
                        AuthChallenge(
                            data={"http_status": response.status_code, "url": self.url},
                            challenge=challenge_from_response(response),
                        )
                    )
                    return
                if response.status_code >= 400:
                    logger.warning(f"GET stream rejected: HTTP {response.status_code}")
                    return
                async for sse in event_source.aiter_sse():
                    if sse.data:
                        self._enqueue_text(sse.data)
        except (httpx.HTTPError, BridgeError) as e:
            logger.warning(f"GET stream dropped: {e}")

    async def close(self) -> None:
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        await super().close()


class SseTransport(RemoteTransport):
    """Legacy HTTP+SSE transport."""

    kind = TransportKind.SSE
    protocol_version = "2024-11-05"

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.endpoint: str | None = None
        self._endpoint_ready: asyncio.Future | None = None
        self._stream_task: asyncio.Task | None = None

    def _resolve_endpoint(self, data: str) -> str:
        endpoint = urljoin(self.url, data.strip())
        if urlparse(endpoint).netloc != urlparse(self.url).netloc:
            raise TransportRejected(
                message=f"Endpoint origin does not match server: {endpoint}",
                data={"endpoint": endpoint},
            )
        return endpoint

    async def _run_stream(self) -> None:
        assert self._endpoint_ready is not None
        ready = self._endpoint_ready
        error: BaseException | None = None
        cancelled = False
        try:
            client = await self._ensure_client()
            async with aconnect_sse(client, "GET", self.url) as event_source:
                response = event_source.response
                self._raise_for_status(response)
                if _content_type(response) != "text/event-stream":
                    raise TransportUnsupported(
                        message=f"Expected event stream, got {_content_type(response) or '<none>'}",
                        data={"url": self.url},
                    )
                async for sse in event_source.aiter_sse():
                    if sse.event == "endpoint":
                        self.endpoint = self._resolve_endpoint(sse.data)
                        if not ready.done():
                            ready.set_result(self.endpoint)
                    elif sse.data:
                        self._enqueue_text(sse.data)
            logger.info("SSE stream closed by server")
        except asyncio.CancelledError:
            cancelled = True
            raise
        except BridgeError as e:
            error = e
        except httpx.TimeoutException as e:
            error = map_connection_error(str(e), self.url, is_timeout=True)
        except httpx.HTTPError as e:
            error = map_connection_error(str(e), self.url)
        finally:
            if cancelled and not ready.done():
                ready.cancel()
            elif not ready.done():
                ready.set_exception(
                    error or TransportUnsupported(message="Stream ended before endpoint event")
                )
                error = None
            if not self._closed:
                self._finish(error)

    async def open(self) -> dict[str, Any]:
        self._endpoint_ready = asyncio.get_running_loop().create_future()
        self._stream_task = asyncio.create_task(self._run_stream())
        endpoint = await self._endpoint_ready
        self.server_info = {"endpoint": endpoint}
        logger.info(f"SSE handshake succeeded, posting to {endpoint}")
        return self.server_info

    async def send(self, message: dict[str, Any] | list[dict[str, Any]]) -> None:
        if self.endpoint is None:
            raise TransportRejected(message="SSE transport not connected")
        client = await self._ensure_client()
        try:
            response = await client.post(self.endpoint, json=message)
        except httpx.TimeoutException as e:
            raise map_connection_error(str(e), self.endpoint, is_timeout=True) from e
        except httpx.HTTPError as e:
            raise map_connection_error(str(e), self.endpoint) from e
        self._raise_for_status(response)

    async def close(self) -> None:
        if self._stream_task is not None:
            self._stream_task.cancel()
            try:
                await self._stream_task
            except asyncio.CancelledError:
                pass
            self._stream_task = None
        await super().close()


TRANSPORTS: dict[TransportKind, type[RemoteTransport]] = {
    TransportKind.STREAMABLE_HTTP: StreamableHttpTransport,
    TransportKind.SSE: SseTransport,
}
