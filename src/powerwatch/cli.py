"""Command-line interface for the Tibber power watcher."""

import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import click
import yaml
from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .aggregator import UsageAggregator
from .collectors.tibber import TibberClient
from .config import Settings, load_settings
from .errors import ConfigError, StaleDataError
from .models import status_to_dict
from .service import PowerWatcher
from .tariffs import (
    apply_support,
    current_full_price,
    is_night_or_weekend,
    is_winter,
    load_tariff_from_yaml,
    transport_cost_for,
)

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    # Per-request logs from the HTTP client are noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_settings(ctx, require_mqtt: bool) -> Settings:
    try:
        settings = load_settings(require_mqtt=require_mqtt)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)
    return replace(settings, tariff=ctx.obj["tariff"])


def make_aggregator(settings: Settings) -> UsageAggregator:
    client = TibberClient(settings.tibber_key, settings.api_url, settings.ws_url)
    return UsageAggregator(settings.sites, client, tariff=settings.tariff)


def parse_when(value: str | None, tariff) -> datetime:
    if not value:
        return datetime.now(tariff.zone)
    when = datetime.fromisoformat(value)
    if when.tzinfo is None:
        when = when.replace(tzinfo=tariff.zone)
    return when


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--tariff",
    "tariff_path",
    type=click.Path(exists=True),
    help="Path to tariff.yaml (default: POWERWATCH_TARIFF_CONFIG)",
)
@click.pass_context
def cli(ctx, verbose, tariff_path):
    """Tibber power watcher - usage, prices and realtime power to MQTT."""
    setup_logging(verbose)
    # Settings in .env count as environment variables for every command
    load_dotenv(find_dotenv(usecwd=True))
    tariff_path = tariff_path or os.environ.get("POWERWATCH_TARIFF_CONFIG")
    ctx.ensure_object(dict)
    try:
        ctx.obj["tariff"] = load_tariff_from_yaml(Path(tariff_path) if tariff_path else None)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid tariff config: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option("--debug-port", type=int, help="Serve /status and /health on this port")
@click.pass_context
def run(ctx, debug_port):
    """Watch Tibber and publish status to MQTT until stopped.

    Exits with status 1 when realtime data goes stale, so a supervisor
    (systemd, docker) can restart it.

    Requires TIBBER_KEY, TIBBER_ID_HOME, TIBBER_ID_CABIN and MQTT_HOST
    environment variables.
    """
    settings = get_settings(ctx, require_mqtt=True)
    if debug_port:
        settings = replace(settings, debug_port=debug_port)

    console.print("[cyan]Starting Tibber watcher[/cyan]")
    try:
        asyncio.run(PowerWatcher(settings).run())
    except StaleDataError as e:
        console.print(f"[red]{e}, restarting[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, as_json):
    """Fetch usage and prices once and show the status of every site."""
    settings = get_settings(ctx, require_mqtt=False)
    aggregator = make_aggregator(settings)
    results = asyncio.run(aggregator.refresh_all())
    snapshot = aggregator.snapshot()

    if as_json:
        console.print(json.dumps({name: status_to_dict(s) for name, s in snapshot.items()}, indent=2))
        return

    table = Table(title="Site Status")
    table.add_column("Site", style="cyan")
    table.add_column("Month kWh", justify="right")
    table.add_column("Month cost", justify="right")
    table.add_column("Today kWh", justify="right")
    table.add_column("Today cost", justify="right")
    table.add_column("Price now", justify="right")

    for name, site_status in snapshot.items():
        if not results[name]:
            table.add_row(name, "[red]fetch failed[/red]", "", "", "", "")
            continue
        today_kwh = sum(u.consumption for u in site_status.usage_for_day.values())
        table.add_row(
            name,
            f"{site_status.month.consumption:.0f}",
            f"{site_status.month.cost:.2f}",
            f"{today_kwh:.2f}",
            f"{site_status.day.cost:.2f}",
            f"{site_status.current_price.total_after_support:.4f}",
        )

    console.print(table)


@cli.command()
@click.option("--site", "site_name", default="home", help="Site to show (default: home)")
@click.pass_context
def prices(ctx, site_name):
    """Show today's effective price per hour for a site."""
    settings = get_settings(ctx, require_mqtt=False)
    try:
        site = settings.sites.get(site_name)
    except KeyError as e:
        console.print(f"[red]{e.args[0]}[/red]")
        sys.exit(1)

    aggregator = make_aggregator(settings)
    if not asyncio.run(aggregator.refresh_usage_and_prices(site)):
        console.print(f"[red]Failed to fetch prices for {site.name}[/red]")
        sys.exit(1)
    site_status = aggregator.status_for(site)

    table = Table(title=f"Prices for {site.name} ({site_status.month.consumption:.0f} kWh this month)")
    table.add_column("Hour", style="cyan")
    table.add_column("Energy", justify="right")
    table.add_column("Tax", justify="right")
    table.add_column("Transport", justify="right")
    table.add_column("After support", justify="right")
    table.add_column("Total", justify="right", style="bold")

    for hour, price in sorted(site_status.prices.items()):
        table.add_row(
            f"{hour:02d}:00",
            f"{price.energy:.4f}",
            f"{price.tax:.4f}",
            f"{price.transport_cost:.4f}",
            f"{price.energy_after_support:.4f}",
            f"{price.total_after_support:.4f}",
        )

    console.print(table)


@cli.command()
@click.option("--at", "at", help="Time to classify (ISO format), defaults to now")
@click.pass_context
def transport(ctx, at):
    """Show the grid transport fee for a time."""
    tariff = ctx.obj["tariff"]
    when = parse_when(at, tariff)
    season = "winter" if is_winter(when, tariff) else "summer"
    period = "night/weekend" if is_night_or_weekend(when, tariff) else "day"
    console.print(
        f"{when.isoformat()}: [cyan]{season} {period}[/cyan] "
        f"transport {transport_cost_for(when, tariff):.4f}/kWh"
    )


@cli.command()
@click.argument("spot", type=float)
@click.option("--at", "at", help="Time of the price (ISO format), defaults to now")
@click.option("--usage", default=0.0, help="kWh used this month so far")
@click.pass_context
def price(ctx, spot, at, usage):
    """Calculate the full price for a SPOT price including fees and support."""
    tariff = ctx.obj["tariff"]
    when = parse_when(at, tariff)
    transport_cost = transport_cost_for(when, tariff)
    base = spot + transport_cost
    console.print(f"Spot:          {spot:.4f}")
    console.print(f"Transport:     {transport_cost:.4f}")
    console.print(f"Support:       {base - apply_support(base, usage, tariff):.4f}")
    console.print(f"[bold]Full price:    {current_full_price(spot, when, usage, tariff):.4f}[/bold]")


if __name__ == "__main__":
    cli()
