"""
CLI entry point for the IBT bridge relayer.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import structlog
import typer
from dotenv import load_dotenv

from .amount import rescale, truncated_remainder
from .config import RelayerConfig
from .db import ProcessedEventLedger
from .errors import QueryError, StartupConfigError
from .models import Direction, FixedPoint
from .relayer import RelayerService
from .sui import SuiClient

app = typer.Typer(
    name="ibt-relayer",
    help="IBT Ethereum <-> Sui Bridge Relayer",
    add_completion=False,
)


def configure_logging(log_format: str = "console", level: int = logging.INFO) -> None:
    """Configure structlog for console or JSON output."""
    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    processors = [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


def load_config(config_path: Optional[Path]) -> RelayerConfig:
    """Load config or exit with code 2 on a startup error."""
    try:
        return RelayerConfig.from_env(config_path)
    except StartupConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(2)


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
    health: bool = typer.Option(
        True,
        "--health/--no-health",
        help="Serve the /health liveness probe",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Start the relayer: Ethereum -> Sui and Sui -> Ethereum.
    """
    config = load_config(config_path)
    settings = config.settings
    configure_logging(settings.log_format, logging.DEBUG if verbose else logging.INFO)

    typer.echo(f"Sui custodian: {config.sui_keypair.address}")
    typer.echo(f"Dedup store: {settings.database_url}")
    typer.echo("Running in continuous mode. Press Ctrl+C to stop.")

    async def _run() -> None:
        service = RelayerService.from_config(config, health=health and settings.health_enabled)
        await service.run()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("\nStopping relayer...")


@app.command()
def events(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of recent events"),
) -> None:
    """
    List recent Sui bridge events and whether they were relayed (read-only).
    """
    config = load_config(config_path)
    settings = config.settings
    configure_logging(settings.log_format, logging.WARNING)

    async def _list() -> None:
        client = SuiClient(
            rpc_url=settings.sui_rpc_url,
            package_id=settings.sui_package_id,
            bridge_auth_id=settings.sui_bridge_auth_id,
            module=settings.sui_module,
            decimals=settings.sui_decimals,
            timeout=settings.rpc_timeout_seconds,
        )
        ledger = ProcessedEventLedger(Direction.SUI_TO_ETHEREUM, settings.database_url)
        try:
            found = await client.query_recent_bridge_events(limit=limit)
            if not found:
                typer.echo("No bridge events found.")
                return

            typer.echo(f"Found {len(found)} bridge events:\n")
            for event in found:
                relayed = "yes" if ledger.is_processed(event.source_event_id) else "no"
                typer.echo(f"  Digest: {event.source_event_id}")
                typer.echo(f"  From: {event.from_address}")
                typer.echo(f"  To: {event.destination_address}")
                typer.echo(f"  Amount: {event.amount.to_decimal()} ({event.amount.value} raw)")
                typer.echo(f"  Relayed: {relayed}")
                typer.echo("")
        except QueryError as e:
            typer.echo(f"Error querying events: {e}", err=True)
            raise typer.Exit(1)
        finally:
            ledger.close()
            await client.close()

    asyncio.run(_list())


@app.command()
def convert(
    amount: int = typer.Argument(..., help="Raw integer amount"),
    from_scale: int = typer.Option(18, "--from-scale", help="Source decimals"),
    to_scale: int = typer.Option(9, "--to-scale", help="Destination decimals"),
) -> None:
    """
    Preview how an amount is rescaled between chains.
    """
    try:
        converted = rescale(amount, from_scale, to_scale)
        lost = truncated_remainder(amount, from_scale, to_scale)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Source:      {FixedPoint(amount, from_scale)}")
    typer.echo(f"Destination: {FixedPoint(converted, to_scale)}")
    if lost:
        typer.echo(f"Truncated:   {lost} raw units at scale {from_scale}")


@app.command()
def version() -> None:
    """Show the relayer version."""
    from ibt_relayer import __version__
    typer.echo(f"ibt-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
