"""CLI commands for fragcache.

Provides command-line interface using Typer:
- fragcache worker: Run the replay and dispatch worker
- fragcache prune: Prune fragments whose cache entries are gone
- fragcache send: Send every booked replay now

Usage:
    fragcache --help
    fragcache worker -m myapp.fragments --app myapp.main:app
    fragcache prune -m myapp.fragments
"""

import typer

from fragcache.cli.prune_cmd import app as prune_app
from fragcache.cli.send_cmd import app as send_app
from fragcache.cli.worker_cmd import app as worker_app

# Main CLI application
app = typer.Typer(
    name="fragcache",
    help="fragcache: fragment cache invalidation and request replay",
    no_args_is_help=True,
)

# Add subcommands
app.add_typer(worker_app, name="worker")
app.add_typer(prune_app, name="prune")
app.add_typer(send_app, name="send")


@app.callback()
def callback() -> None:
    """fragcache: fragment cache invalidation and request replay."""
    pass


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
