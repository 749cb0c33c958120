"""Connect command - bridge stdio MCP to a remote MCP server.

Relays newline-delimited JSON-RPC between stdin/stdout and a remote server
speaking streamable HTTP or legacy SSE, authorizing with OAuth when the
server asks for it. With --verify it connects, checks liveness and exits.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import click

from ..bridge.errors import BridgeError
from ..bridge.models import BridgeResult, ServerTarget, TransportStrategy
from ..bridge.runner import BridgeRunner
from ..config import BridgeConfig, load_config
from ..shared.logging import configure_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

STRATEGY_CHOICES = [s.value for s in TransportStrategy]

logger = logging.getLogger(__name__)


def validate_url(ctx: click.Context, param: click.Parameter, value: str) -> str:
    """Validate URL format."""
    if not value:
        raise click.BadParameter("URL is required")

    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise click.BadParameter(f"Invalid URL format: {value}")

    return value


def parse_headers(
    ctx: click.Context, param: click.Parameter, values: tuple[str, ...]
) -> dict[str, str]:
    """Parse repeated ``--header "Name: value"`` options."""
    headers: dict[str, str] = {}
    for raw in values:
        name, sep, value = raw.partition(":")
        if not sep or not name.strip():
            raise click.BadParameter(f"Expected 'Name: value', got {raw!r}")
        headers[name.strip()] = value.strip()
    return headers


def get_config(ctx: click.Context) -> BridgeConfig:
    """Load BridgeConfig honoring the group's --config option."""
    obj = ctx.find_root().obj or {}
    path = obj.get("config_path")
    return load_config(Path(path) if path else None)


def setup_logging(log_level: str, log_file: str | None, json_output: bool = False) -> None:
    """Configure logging for the bridge.

    Logs go to a file (or stderr with ``--log-file -``), never to stdout,
    which carries the protocol.
    """
    configure_logging(
        level=log_level,
        log_file=None if log_file == "-" else log_file,
        json_output=json_output,
    )


def build_runner(
    config: BridgeConfig,
    server_url: str,
    headers: dict[str, str],
    overrides: dict[str, Any],
) -> BridgeRunner:
    """Create a BridgeRunner; CLI values that are not None win over config."""

    def pick(key: str) -> Any:
        value = overrides.get(key)
        return value if value is not None else getattr(config, key)

    return BridgeRunner(
        ServerTarget(url=server_url, headers=headers),
        strategy=TransportStrategy(pick("transport")),
        callback_port=pick("callback_port"),
        callback_timeout=pick("callback_timeout"),
        handshake_timeout=pick("timeout"),
        request_timeout=pick("timeout"),
        client_id=pick("client_id"),
    )


async def open_stdin() -> asyncio.StreamReader:
    """Attach an asyncio StreamReader to stdin."""
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)

    loop = asyncio.get_running_loop()
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


async def run_bridge(runner: BridgeRunner, verify: bool) -> BridgeResult | None:
    """Run one bridge in the requested mode.

    Returns:
        BridgeResult, or None when interrupted by a signal

    Raises:
        BridgeError: Fatal relay failure
    """
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        runner.cancel()

    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, signal_handler)

    try:
        if verify:
            return await runner.verify()
        reader = await open_stdin()
        return await runner.relay(reader)
    except asyncio.CancelledError:
        logger.info("Bridge interrupted")
        return None
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


@click.command("connect")
@click.argument("server_url", callback=validate_url)
@click.option(
    "--header",
    "headers",
    multiple=True,
    callback=parse_headers,
    help='Static header sent on every request, "Name: value" (repeatable)',
)
@click.option(
    "--callback-port",
    envvar="MCP_REMOTE_CALLBACK_PORT",
    type=click.IntRange(1, 65535),
    help="Preferred OAuth callback port (default: 3334)",
)
@click.option(
    "--transport",
    envvar="MCP_REMOTE_TRANSPORT",
    type=click.Choice(STRATEGY_CHOICES),
    help="Transport strategy (default: http-first)",
)
@click.option(
    "--verify",
    is_flag=True,
    help="Connect, check liveness and exit instead of relaying",
)
@click.option(
    "--timeout",
    envvar="MCP_REMOTE_TIMEOUT",
    type=float,
    help="Request and handshake timeout in seconds (default: 30)",
)
@click.option(
    "--callback-timeout",
    envvar="MCP_REMOTE_CALLBACK_TIMEOUT",
    type=float,
    help="Seconds to wait for browser authorization (default: 300)",
)
@click.option(
    "--client-id",
    envvar="MCP_REMOTE_CLIENT_ID",
    help="Pre-registered OAuth client id (skips dynamic registration)",
)
@click.option(
    "--log-level",
    envvar="MCP_REMOTE_LOG_LEVEL",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    help="Log level (default: info)",
)
@click.option(
    "--log-file",
    envvar="MCP_REMOTE_LOG_FILE",
    help="Log file path, '-' for stderr (default: ~/.mcp-remote-bridge/bridge.log)",
)
@click.option("--log-json", is_flag=True, help="Write log records as JSON")
@click.pass_context
def connect_command(
    ctx: click.Context,
    server_url: str,
    headers: dict[str, str],
    callback_port: int | None,
    transport: str | None,
    verify: bool,
    timeout: float | None,
    callback_timeout: float | None,
    client_id: str | None,
    log_level: str | None,
    log_file: str | None,
    log_json: bool,
) -> None:
    """Bridge stdio to a remote MCP server.

    Reads JSON-RPC messages from stdin and writes server messages to
    stdout. Opens a browser for OAuth authorization when required.

    \b
    Example usage:
      mcp-remote-bridge connect https://example.com/mcp
      mcp-remote-bridge connect https://example.com/sse --transport sse-only
      mcp-remote-bridge connect https://example.com/mcp --header "X-Api-Key: abc"
      mcp-remote-bridge connect https://example.com/mcp --verify

    \b
    Environment variables:
      MCP_REMOTE_CALLBACK_PORT - Preferred callback port
      MCP_REMOTE_TRANSPORT     - Transport strategy
      MCP_REMOTE_TIMEOUT       - Request timeout
      MCP_REMOTE_LOG_LEVEL     - Log level
      MCP_REMOTE_LOG_FILE      - Log file path
    """
    config = get_config(ctx)
    setup_logging(log_level or config.log_level, log_file or config.log_file, log_json)

    runner = build_runner(
        config,
        server_url,
        headers,
        {
            "callback_port": callback_port,
            "transport": transport,
            "timeout": timeout,
            "callback_timeout": callback_timeout,
            "client_id": client_id,
        },
    )
    logger.info(f"Starting bridge to {server_url} ({runner.strategy.value})")

    try:
        result = asyncio.run(run_bridge(runner, verify))
    except KeyboardInterrupt:
        logger.info("Bridge interrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except BridgeError as e:
        logger.error(f"Bridge error: {e.message}")
        # Write error to stderr (not stdout)
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    if result is None:
        sys.exit(EXIT_INTERRUPTED)

    if verify:
        if not result.success:
            error = result.error
            message = error.message if isinstance(error, BridgeError) else error
            print(f"Error: {message}", file=sys.stderr)
            sys.exit(EXIT_FAILURE)
        kind = result.transport_kind.value if result.transport_kind else "unknown"
        print(f"Verified {server_url} via {kind} transport", file=sys.stderr)

    sys.exit(EXIT_OK)
