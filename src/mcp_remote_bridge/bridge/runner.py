"""BridgeRunner - drives one bridge run from port allocation to close.

Handles:
- Callback port allocation (once per run)
- Transport probing with authorization on challenge
- Verify mode: one liveness round-trip, then stop
- Relay mode: stdin -> remote and remote -> stdout until either side closes
- Cleanup of listener and connection on every exit path
"""

import asyncio
import json
import logging
import sys
from typing import Any, Callable, Optional

from .authorizer import Authorizer, launch_browser
from .callback import DEFAULT_CALLBACK_TIMEOUT
from .connection import AuthenticatedConnection
from .errors import (
    JSONRPC_PARSE_ERROR,
    AuthExpiredNoRefresh,
    BridgeError,
    make_error_response,
)
from .models import (
    BridgeResult,
    BridgeState,
    ChallengeInfo,
    Credential,
    ServerTarget,
    TransportStrategy,
    can_transition,
)
from .oauth import OAuthClient
from .ports import DEFAULT_CALLBACK_PORT, DEFAULT_MAX_ATTEMPTS, PortAllocator
from .prober import DEFAULT_HANDSHAKE_TIMEOUT, TransportFactory, TransportProber
from .transports import DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

PING_ID = "mcp-remote-bridge-ping"
DEFAULT_DRAIN_TIMEOUT = 5.0

Writer = Callable[[str], None]

_ID_TYPES = (str, int, float)


def write_stdout(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def request_ids(message: Any) -> list[Any]:
    """Ids of the requests in a message or batch that expect a response."""
    items = message if isinstance(message, list) else [message]
    return [
        item["id"]
        for item in items
        if isinstance(item, dict) and "method" in item and isinstance(item.get("id"), _ID_TYPES)
    ]


def response_id(message: Any) -> Any:
    """The id a response answers, or None for requests and notifications."""
    if isinstance(message, dict) and "method" not in message:
        if isinstance(message.get("id"), _ID_TYPES):
            return message["id"]
    return None


class BridgeRunner:
    """Owns the BridgeState of one run and every resource it opens."""

    def __init__(
        self,
        target: ServerTarget,
        strategy: TransportStrategy = TransportStrategy.HTTP_FIRST,
        callback_port: int = DEFAULT_CALLBACK_PORT,
        port_attempts: int = DEFAULT_MAX_ATTEMPTS,
        callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        request_timeout: float = DEFAULT_TIMEOUT,
        client_id: Optional[str] = None,
        open_browser: Callable[[str], None] = launch_browser,
        port_allocator: Optional[PortAllocator] = None,
        transports: Optional[dict[Any, TransportFactory]] = None,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
    ):
        """Initialize BridgeRunner.

        Args:
            target: Server URL and static headers
            strategy: Transport fallback order
            callback_port: Preferred OAuth callback port
            port_attempts: Ports to try starting at callback_port
            callback_timeout: Seconds to wait for the user to authorize
            handshake_timeout: Seconds allowed for one transport handshake / liveness check
            request_timeout: HTTP request timeout in seconds
            client_id: Pre-registered OAuth client id (otherwise registered dynamically)
            open_browser: Surfaces the authorization URL to the user
            port_allocator: PortAllocator to use (default: new instance)
            transports: Transport factory per kind (default: all known transports)
            drain_timeout: Max time to flush remote replies after stdin closes (seconds)
        """
        self.target = target
        self.strategy = strategy
        self.preferred_port = callback_port
        self.port_attempts = port_attempts
        self.callback_timeout = callback_timeout
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.client_id = client_id
        self.open_browser = open_browser
        self.port_allocator = port_allocator or PortAllocator()
        self.transports = transports
        self.drain_timeout = drain_timeout

        self.callback_port: int | None = None
        self.state = BridgeState.IDLE
        self.history: list[BridgeState] = [BridgeState.IDLE]
        self.connection: AuthenticatedConnection | None = None
        self.authorizer: Authorizer | None = None
        self.prober: TransportProber | None = None
        self._oauth: OAuthClient | None = None
        self._task: asyncio.Task | None = None
        self._fatal: BaseException | None = None
        self._stop = asyncio.Event()
        self._forwards: set[asyncio.Task] = set()
        self._pending: set[Any] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    def _transition(self, new: BridgeState) -> None:
        if not can_transition(self.state, new):
            raise RuntimeError(f"Illegal bridge transition {self.state.value} -> {new.value}")
        logger.debug(f"Bridge state {self.state.value} -> {new.value}")
        self.state = new
        self.history.append(new)

    def _result(self, error: BaseException | None = None) -> BridgeResult:
        return BridgeResult(
            success=error is None,
            state=self.state,
            server_url=self.target.url,
            headers=dict(self.target.headers),
            transport_kind=self.connection.kind if self.connection else None,
            error=error,
        )

    async def _on_challenge(self, challenge: ChallengeInfo) -> Credential:
        entered = self.state is BridgeState.PROBING
        if entered:
            self._transition(BridgeState.AUTHORIZING)
        try:
            assert self.authorizer is not None
            return await self.authorizer(challenge)
        finally:
            if entered and self.state is BridgeState.AUTHORIZING:
                self._transition(BridgeState.PROBING)

    async def connect(self) -> AuthenticatedConnection:
        """IDLE -> PROBING -> CONNECTED. Allocates the callback port and probes."""
        self._task = asyncio.current_task()
        self._transition(BridgeState.PROBING)

        if self.callback_port is None:
            self.callback_port = self.port_allocator.allocate(
                self.preferred_port, self.port_attempts
            )

        self._oauth = OAuthClient(
            self.target.url, client_id=self.client_id, timeout=self.request_timeout
        )
        self.authorizer = Authorizer(
            self._oauth,
            callback_port=self.callback_port,
            callback_timeout=self.callback_timeout,
            open_browser=self.open_browser,
        )
        self.prober = TransportProber(
            handshake_timeout=self.handshake_timeout,
            request_timeout=self.request_timeout,
            transports=self.transports,
            refresher=self._oauth.refresh,
        )

        self.connection = await self.prober.probe(self.target, self.strategy, self._on_challenge)
        self._transition(BridgeState.CONNECTED)
        return self.connection

    async def _liveness_check(self, connection: AuthenticatedConnection) -> None:
        await connection.send({"jsonrpc": "2.0", "method": "notifications/initialized"})
        await connection.send({"jsonrpc": "2.0", "id": PING_ID, "method": "ping"})

        async def wait_for_pong() -> None:
            async for message in connection.receive():
                if message.get("id") == PING_ID:
                    return
            raise BridgeError(message="Connection closed before liveness response")

        try:
            await asyncio.wait_for(wait_for_pong(), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            raise BridgeError(message="No liveness response from server") from None

    async def verify(self) -> BridgeResult:
        """Verify-only mode: connect, one liveness round-trip, close.

        Never raises for bridge failures; the result carries the error.
        """
        error: BaseException | None = None
        try:
            connection = await self.connect()
            await self._liveness_check(connection)
            self._transition(BridgeState.VERIFIED)
            logger.info(f"Verified {self.target.url} via {connection.kind.value}")
        except BridgeError as e:
            logger.error(f"Verification failed: {e.message}")
            error = e
        finally:
            await self.close()
        return self._result(error)

    async def relay(
        self,
        reader: asyncio.StreamReader,
        write: Writer = write_stdout,
    ) -> BridgeResult:
        """Interactive mode: relay until stdin EOF, remote close or a fatal error.

        Raises:
            BridgeError: Fatal failure (exhausted transports, authorization, expiry)
        """
        try:
            connection = await self.connect()
            self._transition(BridgeState.RELAYING)
            logger.info(f"Relaying via {connection.kind.value}")

            local = asyncio.create_task(self._pump_local(reader, connection, write))
            remote = asyncio.create_task(self._pump_remote(connection, write))
            stop = asyncio.create_task(self._stop.wait())
            try:
                done, _ = await asyncio.wait(
                    {local, remote, stop}, return_when=asyncio.FIRST_COMPLETED
                )
                if local in done and not local.exception() and not stop.done():
                    await self._drain(connection, remote, stop)
            finally:
                for task in (local, remote, stop):
                    task.cancel()
                await asyncio.gather(local, remote, stop, return_exceptions=True)

            for task in (local, remote):
                if not task.cancelled() and task.exception():
                    raise task.exception()
            if self._fatal is not None:
                raise self._fatal
            return self._result()
        finally:
            await self.close()

    async def _pump_local(
        self,
        reader: asyncio.StreamReader,
        connection: AuthenticatedConnection,
        write: Writer,
    ) -> None:
        """Read newline-delimited JSON-RPC from stdin and forward it."""
        while True:
            line = await reader.readline()
            if not line:
                logger.info("stdin closed")
                break

            text = line.decode("utf-8").strip()
            if not text:
                continue

            try:
                message = json.loads(text)
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON from local peer: {e}")
                write(
                    json.dumps(
                        make_error_response(
                            None, BridgeError(code=JSONRPC_PARSE_ERROR, message="Parse error")
                        )
                    )
                )
                continue

            task = asyncio.create_task(self._forward(message, connection, write))
            self._forwards.add(task)
            task.add_done_callback(self._forwards.discard)

        if self._forwards:
            await asyncio.gather(*self._forwards, return_exceptions=True)

    async def _drain(
        self,
        connection: AuthenticatedConnection,
        remote: asyncio.Task,
        stop: asyncio.Task,
    ) -> None:
        """After stdin EOF, wait for outstanding responses, then close the connection."""
        if self._pending:
            logger.debug(f"Waiting for {len(self._pending)} outstanding response(s)")
        idle = asyncio.create_task(self._idle.wait())
        try:
            await asyncio.wait(
                {idle, remote, stop},
                timeout=self.drain_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            idle.cancel()
        if self._pending:
            logger.warning(f"Closing with {len(self._pending)} unanswered request(s)")
        await connection.close("local_closed")
        await asyncio.wait({remote}, timeout=self.drain_timeout)

    def _track(self, ids: list[Any]) -> None:
        if ids:
            self._pending.update(ids)
            self._idle.clear()

    def _settle(self, ids: list[Any]) -> None:
        self._pending.difference_update(ids)
        if not self._pending:
            self._idle.set()

    async def _forward(
        self, message: Any, connection: AuthenticatedConnection, write: Writer
    ) -> None:
        ids = request_ids(message)
        self._track(ids)
        try:
            await connection.send(message)
        except AuthExpiredNoRefresh as e:
            self._fatal = e
            self._stop.set()
            self._settle(ids)
            self._write_errors(message, ids, e, write)
        except BridgeError as e:
            label = message.get("method", "message") if isinstance(message, dict) else "batch"
            logger.warning(f"Failed to forward {label}: {e.message}")
            self._settle(ids)
            self._write_errors(message, ids, e, write)

    def _write_errors(
        self, message: Any, ids: list[Any], error: BridgeError, write: Writer
    ) -> None:
        if not ids:
            return
        responses = [make_error_response(request_id, error) for request_id in ids]
        write(json.dumps(responses if isinstance(message, list) else responses[0]))

    async def _pump_remote(self, connection: AuthenticatedConnection, write: Writer) -> None:
        """Write every message from the remote connection to stdout."""
        async for message in connection.receive():
            write(json.dumps(message))
            answered = response_id(message)
            if answered is not None:
                self._settle([answered])
        logger.info(f"Remote connection closed ({connection.closed_reason})")

    def cancel(self) -> None:
        """Abort the run; cleanup happens in the running mode's finally block."""
        self._stop.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def close(self) -> None:
        """Release every resource and move to CLOSED."""
        for task in list(self._forwards):
            task.cancel()
        if self.authorizer is not None:
            await self.authorizer.close()
        if self.connection is not None:
            await self.connection.close()
        if self._oauth is not None:
            await self._oauth.close()
        if self.state is not BridgeState.CLOSED:
            self._transition(BridgeState.CLOSED)
        logger.info("Bridge closed")
