"""
ProxySQL Agent CLI - Main Entry Point.

Provides the `proxysql-agent` command.
"""

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from proxysql_agent import __version__
from proxysql_agent.core.errors import (
    AgentError,
    CacheSyncTimeoutError,
    ConfigurationError,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUNTIME = 1
EXIT_CONFIG = 2
EXIT_SYNC_TIMEOUT = 3

app = typer.Typer(
    name="proxysql-agent",
    help="ProxySQL sidecar agent - cluster membership, health probes and graceful shutdown",
    no_args_is_help=True,
)

console = Console()


def exit_code_for(error: BaseException) -> int:
    """Map an agent error to the process exit code."""
    if isinstance(error, ConfigurationError):
        return EXIT_CONFIG
    if isinstance(error, CacheSyncTimeoutError):
        return EXIT_SYNC_TIMEOUT
    return EXIT_RUNTIME


# =============================================================================
# Commands
# =============================================================================


@app.command()
def run(
    run_mode: str | None = typer.Option(None, "--run-mode", "-m", help="Run mode: core or satellite"),
    config_file: Path | None = typer.Option(None, "--config", "-c", help="YAML config file"),
    start_delay: int | None = typer.Option(None, "--start-delay", help="Seconds to pause before connecting"),
):
    """Run the agent until it is told to shut down."""
    from proxysql_agent.agent import Agent
    from proxysql_agent.core.config import load_settings
    from proxysql_agent.observability.logging import configure_logging

    try:
        settings = load_settings(config_file, run_mode=run_mode, start_delay=start_delay)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        raise typer.Exit(EXIT_CONFIG)

    configure_logging(settings.log.level, settings.log.format, settings.log.source)
    logger.info(f"proxysql-agent {__version__}")

    try:
        result = asyncio.run(Agent(settings).run())
    except AgentError as e:
        logger.error(f"Agent failed: {e}")
        raise typer.Exit(exit_code_for(e))
    except KeyboardInterrupt:
        raise typer.Exit(EXIT_OK)

    if result is not None and not result.success:
        logger.error(f"Shutdown finished with errors: {result.first_error}")
        raise typer.Exit(EXIT_RUNTIME)


@app.command()
def config(
    config_file: Path | None = typer.Option(None, "--config", "-c", help="YAML config file"),
):
    """Show the effective configuration (secrets masked)."""
    from proxysql_agent.core.config import load_settings

    try:
        settings = load_settings(config_file)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        raise typer.Exit(EXIT_CONFIG)

    table = Table(title="ProxySQL Agent Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.redacted().items():
        table.add_row(key, "" if value is None else escape(str(value)))

    console.print(table)


@app.command()
def version():
    """Show version information."""
    console.print(f"proxysql-agent v{__version__}")


def main():
    """Main entry point for the CLI."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(levelname)s: %(message)s",
    )
    app()


if __name__ == "__main__":
    main()
