"""Install command - verify a server, then register it with a host application.

The host config is only touched after the bridge verified the server
(connect + liveness round-trip, including OAuth if the server requires it).
"""

import asyncio
import shutil
import sys

import click

from ..bridge.errors import BridgeError
from ..install import TargetResolver, UnknownTargetError, build_launch_entry, inject_server
from .connect import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    STRATEGY_CHOICES,
    build_runner,
    get_config,
    parse_headers,
    run_bridge,
    setup_logging,
    validate_url,
)

BRIDGE_EXECUTABLE = "mcp-remote-bridge"


def resolve_bridge_command() -> str:
    """Absolute path of the bridge executable when on PATH, else its bare name."""
    return shutil.which(BRIDGE_EXECUTABLE) or BRIDGE_EXECUTABLE


@click.command("install")
@click.argument("target")
@click.argument("server_name")
@click.argument("server_url", callback=validate_url)
@click.option(
    "--header",
    "headers",
    multiple=True,
    callback=parse_headers,
    help='Static header for the server, "Name: value" (repeatable)',
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
    help="Transport strategy used for verification (default: http-first)",
)
@click.option(
    "--timeout",
    envvar="MCP_REMOTE_TIMEOUT",
    type=float,
    help="Request and handshake timeout in seconds (default: 30)",
)
@click.option(
    "--log-level",
    envvar="MCP_REMOTE_LOG_LEVEL",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    help="Log level for verification output on stderr (default: warning)",
)
@click.pass_context
def install_command(
    ctx: click.Context,
    target: str,
    server_name: str,
    server_url: str,
    headers: dict[str, str],
    callback_port: int | None,
    transport: str | None,
    timeout: float | None,
    log_level: str,
) -> None:
    """Verify SERVER_URL and add it to TARGET as SERVER_NAME.

    TARGET is "Claude Desktop", "VSCode" or "Cursor".

    \b
    Example usage:
      mcp-remote-bridge install "Claude Desktop" acme https://example.com/mcp
      mcp-remote-bridge install cursor acme https://example.com/mcp --header "X-Team: a"
    """
    try:
        install_target = TargetResolver().resolve(target)
    except UnknownTargetError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    config = get_config(ctx)
    setup_logging(log_level, "-")

    runner = build_runner(
        config,
        server_url,
        headers,
        {"callback_port": callback_port, "transport": transport, "timeout": timeout},
    )

    click.echo("Verifying connection to server...", err=True)
    try:
        result = asyncio.run(run_bridge(runner, verify=True))
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)

    if result is None:
        sys.exit(EXIT_INTERRUPTED)
    if not result.success:
        reason = result.error.message if isinstance(result.error, BridgeError) else result.error
        click.echo(
            f"Error: Server verification failed ({reason}). Configuration not updated.",
            err=True,
        )
        sys.exit(EXIT_FAILURE)

    entry = build_launch_entry(resolve_bridge_command(), result.server_url, result.headers)
    try:
        backup_path = inject_server(install_target.config_path, server_name, entry)
    except OSError as e:
        click.echo(f"Error: Could not write {install_target.config_path}: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    click.echo(f'\nAdded MCP server "{server_name}" to {install_target.display_name}')
    click.echo(f"Configuration saved to: {install_target.config_path}")
    if backup_path:
        click.echo(f"Previous configuration backed up to: {backup_path}")
    click.echo("\nServer details:")
    click.echo(f"  Name: {server_name}")
    click.echo(f"  URL: {server_url}")
    if result.transport_kind:
        click.echo(f"  Transport: {result.transport_kind.value}")
    click.echo(f"\nRestart {install_target.display_name} to apply changes.")
