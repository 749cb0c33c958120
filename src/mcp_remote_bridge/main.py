"""CLI main entry point."""

import json
import sys

import click

from . import __version__
from .commands.connect import connect_command
from .commands.install import install_command
from .config import config_keys, get_config_path, load_config, save_config


@click.group()
@click.option("-c", "--config", "config_path", type=click.Path(), help="Config file path")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Bridge stdio MCP clients to remote MCP servers with OAuth."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


cli.add_command(connect_command)
cli.add_command(install_command)


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"mcp-remote-bridge version {__version__}")


@cli.group()
def config() -> None:
    """Manage persistent defaults."""
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def config_show(ctx: click.Context, json_output: bool) -> None:
    """Show effective configuration and where each value came from."""
    from pathlib import Path

    path = Path(ctx.obj["config_path"]) if ctx.obj.get("config_path") else get_config_path()
    loaded = load_config(path)

    data = {key: getattr(loaded, key) for key in config_keys()}
    if json_output:
        sources = {key: loaded.get_source(key) for key in config_keys()}
        click.echo(json.dumps({"config": data, "sources": sources}, indent=2))
        return

    click.echo(f"Config file: {path}\n")
    for key, value in data.items():
        click.echo(f"  {key}: {value}  ({loaded.get_source(key)})")


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Persist a default value (e.g. callback_port 4000)."""
    from pathlib import Path

    path = Path(ctx.obj["config_path"]) if ctx.obj.get("config_path") else get_config_path()
    try:
        save_config(key, value, path)
    except KeyError:
        click.echo(f"Error: Unknown config key '{key}'", err=True)
        click.echo(f"\nValid keys:\n  {', '.join(config_keys())}", err=True)
        sys.exit(1)
    except ValueError:
        click.echo(f"Error: Invalid value for {key}: {value}", err=True)
        sys.exit(1)
    click.echo(f"Set {key} in {path}")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
