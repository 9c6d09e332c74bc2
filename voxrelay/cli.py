"""voxrelay CLI entry point.

Provides the `voxrelay` command with subcommands:
  - serve: Run the proxy, tunnel and static UI server
  - config: Show the effective settings (credential masked)
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from voxrelay import __version__

if TYPE_CHECKING:
    from voxrelay.config.schema import Settings

app = typer.Typer(
    name="voxrelay",
    help="Credential-injecting HTTP and WebSocket relay for the voice detection demo.",
    no_args_is_help=True,
)

_console = Console(stderr=True)


def _version_callback(value: bool) -> None:
    if value:
        _console.print(f"voxrelay {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """voxrelay — relay for the voice detection demo."""


_ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Path to a voxrelay.yaml settings file. Environment variables override it.",
    ),
]

_EnvFileOption = Annotated[
    Optional[Path],
    typer.Option(
        "--env-file",
        help="Path to a .env file to load before reading the environment (default: ./.env if present).",
    ),
]


def _load(config: Path | None, env_file: Path | None) -> Settings:
    from voxrelay.config.loader import SettingsError, load_settings

    if env_file is not None:
        if not env_file.exists():
            _console.print(f"[bold red]Error:[/bold red] .env file not found at {env_file}", highlight=False)
            raise typer.Exit(1)
        load_dotenv(env_file)
    else:
        load_dotenv()

    try:
        return load_settings(config)
    except SettingsError as e:
        _console.print(f"[bold red]Settings error:[/bold red] {e}", highlight=False)
        raise typer.Exit(1) from None


@app.command()
def serve(
    config: _ConfigOption = None,
    env_file: _EnvFileOption = None,
    host: Annotated[
        Optional[str],
        typer.Option("--host", help="Interface to bind (overrides settings)."),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Port to listen on (overrides settings and PORT)."),
    ] = None,
    log: Annotated[
        Optional[Path],
        typer.Option(
            "--log",
            "-l",
            help="Path to write structured JSON Lines audit log. Without this, logs only to stderr.",
        ),
    ] = None,
) -> None:
    """Start the relay.

    Serves the UI from dist/ and public/, forwards /api-proxy/* to the remote
    API with the server's API key, and tunnels WebSocket upgrades.

      voxrelay serve --port 3000 --log relay.jsonl
    """
    settings = _load(config, env_file)

    overrides: dict[str, object] = {}
    if host is not None:
        overrides["listen_host"] = host
    if port is not None:
        overrides["listen_port"] = port
    if overrides:
        from pydantic import ValidationError

        try:
            settings = type(settings).model_validate({**settings.model_dump(), **overrides})
        except ValidationError as e:
            _console.print(f"[bold red]Settings error:[/bold red] {e}", highlight=False)
            raise typer.Exit(1) from None

    from voxrelay.audit.logger import AuditLogger
    from voxrelay.banner import print_banner
    from voxrelay.proxy.server import ProxyServer

    print_banner(_console)

    audit_logger = AuditLogger(log_path=log)
    server = ProxyServer(settings, audit_logger)
    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        pass
    finally:
        audit_logger.close()


@app.command(name="config")
def show_config(
    config: _ConfigOption = None,
    env_file: _EnvFileOption = None,
) -> None:
    """Print the effective settings after merging file and environment."""
    settings = _load(config, env_file)

    table = Table(title="voxrelay settings", show_header=True, header_style="bold")
    table.add_column("Setting")
    table.add_column("Value")

    for name, value in settings.model_dump().items():
        if name == "api_key":
            shown = "[#00ff88]set[/#00ff88]" if value is not None else "[#ffcc00]not set[/#ffcc00]"
        elif isinstance(value, dict):
            shown = ", ".join(f"{k}={v}" for k, v in value.items())
        else:
            shown = str(value)
        table.add_row(name, shown)

    Console().print(table)
