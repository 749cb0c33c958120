"""OAuthCallbackListener - local HTTP endpoint receiving the OAuth redirect.

Serves GET /oauth/callback on the allocated port for the lifetime of one
CallbackSession, checks the state token and exchanges the code.
"""

import asyncio
import html
import logging
import secrets
from typing import Awaitable, Callable, Optional

from aiohttp import web

from .errors import BridgeError, CallbackTimeout, ExchangeError, NoPortAvailable, StateMismatch
from .models import CallbackSession, Credential, SessionStatus

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth/callback"
DEFAULT_CALLBACK_TIMEOUT = 300.0

CodeExchanger = Callable[[CallbackSession, str], Awaitable[Credential]]

SUCCESS_PAGE = """<html>
  <body>
    <h1>Authorization successful</h1>
    <p>You can close this window and return to your application.</p>
    <script>setTimeout(function() { window.close(); }, 2000);</script>
  </body>
</html>"""

FAILURE_PAGE = """<html>
  <body>
    <h1>Authorization failed</h1>
    <p>{reason}</p>
    <p>You can close this window.</p>
  </body>
</html>"""


def redirect_uri_for(port: int, host: str = "127.0.0.1") -> str:
    return f"http://{host}:{port}{CALLBACK_PATH}"


class OAuthCallbackListener:
    """Short-lived HTTP server for one authorization redirect.

    The first request to the callback path decides the outcome: a matching
    state leads to the code exchange, anything else fails the wait. Requests
    to other paths get 404 and are otherwise ignored.
    """

    def __init__(
        self,
        exchange: CodeExchanger,
        host: str = "127.0.0.1",
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
    ):
        """Initialize listener.

        Args:
            exchange: Coroutine turning (session, code) into a Credential
            host: Interface to bind
            timeout: Seconds to wait for the redirect before giving up
        """
        self.exchange = exchange
        self.host = host
        self.timeout = timeout
        self._session: Optional[CallbackSession] = None
        self._result: Optional[asyncio.Future] = None
        self._runner: Optional[web.AppRunner] = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(CALLBACK_PATH, self._handle_callback)
        return app

    def _fail(self, error: BridgeError) -> None:
        if self._result is not None and not self._result.done():
            self._result.set_exception(error)

    async def _handle_callback(self, request: web.Request) -> web.Response:
        """Handle the authorization server redirect."""
        if self._result is None or self._result.done() or self._session is None:
            return web.Response(text="No authorization in progress", status=409)

        error = request.query.get("error")
        if error:
            description = request.query.get("error_description", "")
            logger.warning(f"Authorization server returned error: {error} {description}".strip())
            self._fail(
                ExchangeError(message=f"Authorization denied: {error}", data={"error": error})
            )
            return web.Response(
                text=FAILURE_PAGE.format(reason=html.escape(f"Error: {error}")),
                content_type="text/html",
                status=400,
            )

        code = request.query.get("code")
        state = request.query.get("state")
        if not code or not state:
            self._fail(ExchangeError(message="Callback missing code or state parameter"))
            return web.Response(text="Missing code or state parameter", status=400)

        if not secrets.compare_digest(state.encode(), self._session.state.encode()):
            logger.error("OAuth state mismatch on callback, refusing authorization code")
            self._fail(StateMismatch())
            return web.Response(text="Invalid state parameter", status=400)

        self._session.status = SessionStatus.RECEIVED
        try:
            credential = await self.exchange(self._session, code)
        except BridgeError as e:
            self._fail(e)
            return web.Response(
                text=FAILURE_PAGE.format(reason=html.escape(e.message)),
                content_type="text/html",
                status=500,
            )
        except Exception as e:
            logger.exception(f"Unexpected error exchanging authorization code: {e}")
            self._fail(ExchangeError(message=f"Token exchange failed: {e}"))
            return web.Response(
                text=FAILURE_PAGE.format(reason="Token exchange failed"),
                content_type="text/html",
                status=500,
            )

        if not self._result.done():
            self._result.set_result(credential)
        return web.Response(text=SUCCESS_PAGE, content_type="text/html")

    async def start(self, session: CallbackSession) -> None:
        """Bind the session's port and start serving."""
        if self._runner is not None:
            raise RuntimeError("Callback listener already running")
        self._session = session
        self._result = asyncio.get_running_loop().create_future()
        runner = web.AppRunner(self._build_app(), access_log=None)
        await runner.setup()
        try:
            site = web.TCPSite(runner, self.host, session.port)
            await site.start()
        except OSError as e:
            await runner.cleanup()
            raise NoPortAvailable(
                message=f"Callback port {session.port} is no longer available: {e}",
                data={"tried": [session.port]},
            ) from e
        self._runner = runner
        logger.info(f"OAuth callback listener on {self.host}:{session.port}")

    async def stop(self) -> None:
        """Stop serving and release the port."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("OAuth callback listener stopped")

    async def await_authorization(self, session: CallbackSession, authorize_url: str) -> Credential:
        """Serve the callback until a Credential is obtained or the wait fails.

        The caller is expected to have shown ``authorize_url`` to the user.

        Raises:
            CallbackTimeout: No valid redirect within ``timeout``
            StateMismatch: Redirect state did not match the session
            ExchangeError: Redirect was malformed or the exchange failed
        """
        logger.debug(f"Waiting for authorization redirect for {authorize_url.split('?')[0]}")
        if not self.is_running:
            await self.start(session)
        assert self._result is not None
        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout=self.timeout)
        except asyncio.TimeoutError:
            session.status = SessionStatus.EXPIRED
            logger.warning(f"OAuth callback timeout after {self.timeout} seconds")
            raise CallbackTimeout(
                message=f"No authorization callback received within {self.timeout:g}s"
            ) from None
        finally:
            if session.status is SessionStatus.PENDING:
                session.status = SessionStatus.EXPIRED
            if self._result is not None and not self._result.done():
                self._result.cancel()
            await self.stop()
            self._session = None
