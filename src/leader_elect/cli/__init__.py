"""CLI commands for leader-elect.

Provides command-line interface using Typer:
- leader-elect run: Take part in an election and run the unit while leader
- leader-elect status: Show which instance holds the lease

Every run option can also be set through the environment, either for one
election (``LEADER_ELECT_WEB_TTL=20``) or globally (``LEADER_ELECT_TTL=20``).
Flags take precedence over both.

Usage:
    leader-elect --help
    leader-elect run web
    leader-elect run web --ttl 20 --sleep 2s --servers redis://a:6379/0,redis://b:6379/0
    leader-elect run web --print-config
    leader-elect status web
"""

import typer

from leader_elect.cli.run_cmd import app as run_app
from leader_elect.cli.status_cmd import app as status_app

# Main CLI application
app = typer.Typer(
    name="leader-elect",
    help="leader-elect: lease-based leader election for systemd units",
    no_args_is_help=True,
)

# Add subcommands
app.add_typer(run_app, name="run")
app.add_typer(status_app, name="status")


@app.callback()
def callback() -> None:
    """leader-elect: lease-based leader election for systemd units."""
    pass


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
