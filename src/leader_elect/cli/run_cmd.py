"""CLI command for taking part in an election.

Usage:
    leader-elect run web
    leader-elect run web --unit nginx.service --key leader-elect:nginx
    leader-elect run web --print-config
"""

from __future__ import annotations

import asyncio

import typer

from leader_elect.config import ElectionConfig, Settings, load_settings, resolve_config
from leader_elect.coordination import CoordinationClient
from leader_elect.election import ElectionController
from leader_elect.errors import (
    EXIT_BOOTSTRAP_ERROR,
    EXIT_CONFIG_ERROR,
    BootstrapError,
    ConfigurationError,
    SupervisorError,
)
from leader_elect.lock import LockManager
from leader_elect.observability.logging import LogContext, configure_logging
from leader_elect.supervisor import SystemdSupervisor

app = typer.Typer(help="Take part in an election and run the unit while leader")


@app.callback(invoke_without_command=True)
def run(
    identifier: str = typer.Argument(
        ...,
        help="Name of the election; also the default unit name",
    ),
    servers: str | None = typer.Option(
        None,
        "--servers",
        help="Comma-separated list of Redis URLs to use",
    ),
    ttl: int | None = typer.Option(
        None,
        "--ttl",
        help="Time to live for the lock in seconds [default: 30]",
    ),
    sleep: str | None = typer.Option(
        None,
        "--sleep",
        help="Time between checking the lock, e.g. 5, 5s, 500ms [default: 5s]",
    ),
    whoami: str | None = typer.Option(
        None,
        "--whoami",
        help="Value to identify this instance [default: hostname]",
    ),
    unit: str | None = typer.Option(
        None,
        "--unit",
        help="Systemd unit to start/monitor [default: IDENTIFIER.service]",
    ),
    key: str | None = typer.Option(
        None,
        "--key",
        help="Redis key to use for the lock [default: leader-elect:IDENTIFIER]",
    ),
    systemd_user: bool | None = typer.Option(
        None,
        "--systemd-user/--systemd-system",
        help="Use the user or the system service manager [default: system]",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level: debug, info, warning, error [default: info]",
    ),
    json_logs: bool | None = typer.Option(
        None,
        "--json-logs/--console-logs",
        help="Log as JSON lines or human-readable text [default: console]",
    ),
    print_config: bool = typer.Option(
        False,
        "--print-config",
        help="Print the resolved configuration and exit",
    ),
) -> None:
    """Take part in the election for IDENTIFIER.

    While this instance holds the lease, the unit runs. If the unit fails,
    the lease is released so another instance can take over.
    """
    try:
        settings = load_settings(
            identifier,
            servers=servers,
            ttl=ttl,
            sleep=sleep,
            whoami=whoami,
            unit=unit,
            key=key,
            systemd_user=systemd_user,
            log_level=log_level,
            log_json=json_logs,
        )
        config = resolve_config(identifier, settings)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from e

    if print_config:
        _print_config(config)
        return

    configure_logging(json_format=settings.log_json, level=settings.log_level)

    with LogContext(election=config.identifier, instance=config.instance_token):
        try:
            asyncio.run(_run_election(config, settings))
        except BootstrapError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=EXIT_BOOTSTRAP_ERROR) from e


def _print_config(config: ElectionConfig) -> None:
    from rich.console import Console
    from rich.table import Table

    console = Console()
    table = Table(title=f"Election '{config.identifier}'")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for name, value in config.to_dict().items():
        if isinstance(value, list):
            value = ", ".join(value)
        table.add_row(name, str(value))

    console.print(table)


async def _run_election(config: ElectionConfig, settings: Settings) -> None:
    """Connect to the collaborators and run the election loop."""
    supervisor = SystemdSupervisor(user=settings.systemd_user)
    try:
        await supervisor.check()
    except SupervisorError as e:
        raise BootstrapError(str(e)) from e

    client = CoordinationClient(config.servers)
    try:
        controller = ElectionController(config, LockManager(client, config), supervisor)
        await controller.run()
    finally:
        await client.close()
