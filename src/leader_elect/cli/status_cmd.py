"""CLI command for showing the current lease holder.

Usage:
    leader-elect status web
    leader-elect status web --servers redis://redis-a:6379/0
"""

from __future__ import annotations

import asyncio

import typer

from leader_elect.config import ElectionConfig, load_settings, resolve_config
from leader_elect.coordination import CoordinationClient
from leader_elect.errors import (
    EXIT_BOOTSTRAP_ERROR,
    EXIT_CONFIG_ERROR,
    ConfigurationError,
    CoordinationError,
)
from leader_elect.lock import LockManager

app = typer.Typer(help="Show which instance holds the lease")


@app.callback(invoke_without_command=True)
def status(
    identifier: str = typer.Argument(
        ...,
        help="Name of the election",
    ),
    servers: str | None = typer.Option(
        None,
        "--servers",
        help="Comma-separated list of Redis URLs to use",
    ),
    key: str | None = typer.Option(
        None,
        "--key",
        help="Redis key used for the lock [default: leader-elect:IDENTIFIER]",
    ),
) -> None:
    """Print the instance currently holding the lease for IDENTIFIER."""
    try:
        settings = load_settings(identifier, servers=servers, key=key)
        config = resolve_config(identifier, settings)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from e

    try:
        holder = asyncio.run(_current_holder(config))
    except CoordinationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_BOOTSTRAP_ERROR) from e

    if holder is None:
        typer.echo(f"{config.lease_key}: no leader")
    else:
        typer.echo(f"{config.lease_key}: {holder}")


async def _current_holder(config: ElectionConfig) -> str | None:
    client = CoordinationClient(config.servers)
    try:
        return await LockManager(client, config).current_holder()
    finally:
        await client.close()
