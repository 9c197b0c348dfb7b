"""
transitcast command line interface.

Commands:
    serve      run the API server (optionally with the synthesizer)
    simulate   run the pipeline headless and print live vehicle state
    config     show the effective configuration and its health check
    routes     list the routes and stops known to the store
    seed       write the demo network into the redis store
"""

import asyncio
import time
from typing import Optional

import click
import uvicorn
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from .config import ConfigurationError, Environment, StoreBackend, get_settings, validate_config
from .data.store import RedisStore, demo_routes, demo_vehicles
from .logging_setup import configure_logging
from .realtime.service import build_service


# Initialize Rich console for CLI output
console = Console()


def _vehicle_table(service) -> Table:
    table = Table(title="Vehicles", show_header=True, header_style="bold magenta")
    table.add_column("Vehicle", style="cyan")
    table.add_column("Route")
    table.add_column("Status")
    table.add_column("Position", style="dim")
    table.add_column("Speed", justify="right")
    table.add_column("Occupancy", justify="right")

    for vehicle in service.coordinator.vehicles():
        position = vehicle.position
        table.add_row(
            vehicle.vehicle_id,
            vehicle.route_id or "-",
            vehicle.status.value,
            f"{position.latitude:.5f}, {position.longitude:.5f}" if position else "-",
            f"{position.speed:.1f}" if position and position.speed is not None else "-",
            f"{vehicle.occupancy}/{vehicle.capacity}",
        )
    return table


@click.group()
@click.option('--env', type=click.Choice([e.value for e in Environment]), default=None,
              help='Environment (defaults to TRANSITCAST_ENVIRONMENT)')
@click.pass_context
def cli(ctx, env):
    """transitcast real-time broadcast broker"""
    ctx.ensure_object(dict)
    try:
        settings = get_settings(Environment(env) if env else None, force_reload=env is not None)
    except ConfigurationError as e:
        console.print(f"✗ Configuration failed: {e}", style="red")
        ctx.exit(1)
        return

    configure_logging(settings)
    ctx.obj['settings'] = settings


@cli.command()
@click.option('--host', default=None, help='Bind address (defaults to settings)')
@click.option('--port', type=int, default=None, help='Port (defaults to settings)')
@click.option('--simulate', is_flag=True, help='Drive vehicles with the state synthesizer')
@click.pass_context
def serve(ctx, host, port, simulate):
    """Run the API server"""
    from .api.app import create_app

    settings = ctx.obj['settings']
    app = create_app(settings=settings, simulate=simulate)

    console.print("\n[bold green]Starting transitcast API server[/bold green]")
    console.print(f"  • API Documentation: http://{host or settings.api_host}:{port or settings.api_port}/docs")
    console.print(f"  • Synthesizer: {'on' if simulate else 'off'}")

    uvicorn.run(
        app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.value.lower(),
    )


@cli.command()
@click.option('--duration', type=float, default=30.0, help='Seconds to run')
@click.option('--seed', 'rng_seed', type=int, default=None, help='Random seed for reproducible runs')
@click.pass_context
def simulate(ctx, duration, rng_seed: Optional[int]):
    """Run the synthesizer headless and show live vehicle state"""
    import random

    settings = ctx.obj['settings']

    async def _simulate():
        service = build_service(settings, rng=random.Random(rng_seed))
        await service.start(simulate=True)

        deadline = time.monotonic() + duration
        try:
            with Live(_vehicle_table(service), console=console, refresh_per_second=2) as live:
                while time.monotonic() < deadline:
                    await asyncio.sleep(settings.synthesizer_interval_seconds)
                    live.update(_vehicle_table(service))
        finally:
            await service.stop()

        stats = service.coordinator.stats()
        console.print(Panel(
            f"Published: {stats['published']}\n"
            f"Rejected: {stats['rejected']}\n"
            f"Pending envelopes: {stats['queue']['size']}\n"
            f"Dropped envelopes: {stats['queue']['total_dropped']}",
            title="Simulation summary",
            border_style="cyan",
        ))

    try:
        asyncio.run(_simulate())
    except KeyboardInterrupt:
        console.print("\n[yellow]Simulation interrupted[/yellow]")


@cli.command()
@click.pass_context
def config(ctx):
    """Show effective configuration and health"""
    settings = ctx.obj['settings']

    table = Table(title="Configuration", show_header=True, header_style="bold magenta")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    for name, value in settings.model_dump(mode="json").items():
        table.add_row(name, str(value))
    console.print(table)

    is_valid, health = validate_config(settings)
    style = "green" if health["status"] == "healthy" else "yellow"
    if not is_valid:
        style = "red"

    lines = [f"Status: {health['status']}"]
    for check, details in health.get("checks", {}).items():
        lines.append(f"{check}: {details['status']}")
    console.print(Panel("\n".join(lines), title="Health", border_style=style))


@cli.command()
@click.pass_context
def routes(ctx):
    """List routes and stops from the configured store"""
    settings = ctx.obj['settings']

    async def _routes():
        service = build_service(settings)
        try:
            await service.coordinator.load_from_store()
        finally:
            await service.stop()
        return service.coordinator.routes()

    for route in asyncio.run(_routes()):
        table = Table(title=f"{route.route_id}: {route.name}", show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right")
        table.add_column("Stop", style="cyan")
        table.add_column("Name")
        table.add_column("Position", style="dim")
        table.add_column("Terminal")

        for stop in route.stops:
            table.add_row(
                str(stop.sequence),
                stop.stop_id,
                stop.name,
                f"{stop.latitude:.4f}, {stop.longitude:.4f}",
                "✓" if stop.is_terminal else "",
            )
        console.print(table)


@cli.command()
@click.pass_context
def seed(ctx):
    """Write the demo network into the redis store"""
    settings = ctx.obj['settings']
    if settings.store_backend != StoreBackend.REDIS:
        console.print("✗ seed needs store_backend=redis", style="red")
        ctx.exit(1)
        return

    async def _seed():
        store = RedisStore.from_settings(settings)
        try:
            await store.ping()
            await store.seed(demo_routes(), demo_vehicles())
        finally:
            await store.close()

    asyncio.run(_seed())
    console.print("✓ Demo network written to redis", style="green")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
