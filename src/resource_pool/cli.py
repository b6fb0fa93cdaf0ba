"""Command-line interface for the resource pool demo."""

import asyncio
import json
import random
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .app import Application, DemoReport
from .config import Config
from .core.pool import ResourcePool
from .database.backend import SimulatedBackend
from .database.manager import DatabaseManager
from .exceptions import ConfigurationError, ResourcePoolError


app = typer.Typer(
    name="resource-pool",
    help="Resource pool demo: pooled connections, retries and transactions",
    add_completion=False
)
console = Console()

_MISSING = object()


def _stats_table(title: str, stats: Dict[str, Any]) -> Table:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for key, value in stats.items():
        if isinstance(value, dict):
            value = json.dumps(value, default=str)
        table.add_row(key, str(value))
    return table


def _load_config(config_file: Optional[Path]) -> Config:
    try:
        return Config.load(config_file)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"[green]resource-pool v{__version__}[/green]")


@app.command()
def demo(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON configuration file"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for the simulated backends"),
    output_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """Run the user, order and notification services against simulated backends."""
    config = _load_config(config_file)
    application = Application(config, rng=random.Random(seed))

    async def run() -> DemoReport:
        async with application:
            return await application.run_demo()

    try:
        report = asyncio.run(run())
    except ResourcePoolError as e:
        console.print(f"[red]Demo failed: {e}[/red]")
        raise typer.Exit(1)

    stats = application.statistics()
    if output_json:
        console.print_json(json.dumps({
            "steps": [step.__dict__ for step in report.steps],
            "statistics": stats,
        }, default=str))
        return

    table = Table(title="Demo Steps")
    table.add_column("Step", style="cyan")
    table.add_column("Result")
    table.add_column("Detail", style="dim")
    for step in report.steps:
        result = "[green]ok[/green]" if step.success else "[red]failed[/red]"
        table.add_row(step.name, result, step.detail)
    console.print(table)

    database_stats = dict(stats["database"])
    pool_stats = database_stats.pop("pool")
    console.print(_stats_table("Database Manager", database_stats))
    console.print(_stats_table("Resource Pool", pool_stats))
    console.print(_stats_table("Notifications", stats["notifications"]))
    console.print(Panel(
        f"{report.succeeded} succeeded, {report.failed} failed",
        title="Summary",
        border_style="green" if report.failed == 0 else "yellow",
    ))


@app.command()
def stats(
    queries: int = typer.Option(20, "--queries", "-n", help="Number of simulated queries"),
    capacity: int = typer.Option(3, "--capacity", help="Pool capacity"),
    failure_rate: float = typer.Option(0.1, "--failure-rate", help="Simulated query failure rate"),
    latency_ms: int = typer.Option(20, "--latency-ms", help="Simulated query latency"),
    retry_delay_ms: int = typer.Option(10, "--retry-delay-ms", help="Base retry delay"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for the simulated backend"),
) -> None:
    """Run concurrent simulated queries through a pool and print its statistics."""
    config = Config.load()
    for key, value in (("pool.capacity", capacity), ("pool.retry_base_delay_ms", retry_delay_ms)):
        if not config.set(key, value):
            console.print(f"[red]Invalid value for {key}: {value}[/red]")
            raise typer.Exit(1)

    pool = ResourcePool.from_config(config.pool, name="stats")
    backend = SimulatedBackend(
        failure_rate=failure_rate,
        latency_ms=latency_ms,
        connect_failure_rate=0.0,
        rng=random.Random(seed),
    )
    database = DatabaseManager(pool, backend)

    async def run() -> Dict[str, Any]:
        await database.connect()
        try:
            outcomes = await asyncio.gather(
                *(database.query("SELECT id, name FROM items WHERE id = $1", [i]) for i in range(queries)),
                return_exceptions=True,
            )
        finally:
            await database.disconnect()
        failures = sum(1 for outcome in outcomes if isinstance(outcome, Exception))
        return {"queries": queries, "failed_queries": failures, "resources_created": pool.resources_created}

    summary = asyncio.run(run())
    console.print(_stats_table("Run", summary))
    console.print(_stats_table("Resource Pool", pool.get_statistics().to_dict()))


@app.command(name="config")
def config_cmd(
    key: Optional[str] = typer.Argument(None, help="Dot-separated configuration key, e.g. pool.capacity"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON configuration file"),
    list_all: bool = typer.Option(False, "--list", "-l", help="List all configuration")
):
    """Show configuration values."""
    config = _load_config(config_file)

    if list_all or key is None:
        for section, values in config.as_dict().items():
            if isinstance(values, dict):
                console.print(_stats_table(section, values))
            else:
                console.print(f"{section}: {values}")
        return

    value = config.get(key, _MISSING)
    if value is _MISSING:
        console.print(f"[red]Configuration key '{key}' not found[/red]")
        raise typer.Exit(1)
    console.print(f"{key}: {value}")


if __name__ == "__main__":
    app()
