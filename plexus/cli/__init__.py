"""
Plexus - Command Line Interface

Inspect plugin directories the way the server would install them. Built
with Typer for the command line and Rich for output.

Usage:
    $ plexus --help
    $ plexus plugin list ./plugins
    $ plexus plugin resolve ./plugins --format json
    $ plexus plugin routes ./plugins

Sub-command Groups:
    plugin   - Plugin inspection commands

For detailed help on any command:
    $ plexus <group> <command> --help
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from plexus import __version__
from plexus.cli.output import console, err_console

# Create main application
app = typer.Typer(
    name="plexus",
    help="Plexus - plugin dependency resolution and service routing",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

plugin_app = typer.Typer(
    name="plugin",
    help="Plugin inspection commands",
    no_args_is_help=True,
)

app.add_typer(plugin_app, name="plugin")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Plexus version {__version__}")
        raise typer.Exit()


def verbose_callback(value: bool) -> None:
    """Send debug logs to stderr."""
    if value:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=err_console, show_path=False)],
            force=True,
        )


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        callback=verbose_callback,
        help="Enable debug logging.",
    ),
) -> None:
    """
    Plexus - plugin dependency resolution and service routing

    Use --help on any subcommand for detailed information.
    """
    pass


# Registers the plugin commands on plugin_app
from plexus.cli import plugins  # noqa: E402,F401

__all__ = [
    "app",
    "plugin_app",
    "console",
    "err_console",
    "__version__",
]


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
