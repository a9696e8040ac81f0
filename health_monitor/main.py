"""Entry point for the health monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from health_monitor.config import settings
from health_monitor.health.checker import HealthChecker, Status
from health_monitor.health.scheduler import build_monitor
from health_monitor.redis_client import close_redis
from health_monitor.registry import ServiceRegistry

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

_STYLE = {
    Status.HEALTHY: "green",
    Status.DEGRADED: "yellow",
    Status.UNHEALTHY: "red",
}


def run_server() -> None:
    """Start the FastAPI server (the monitor loop runs inside its lifespan)."""
    console.print(Panel("Starting Health Monitor API", style="bold green"))
    uvicorn.run(
        "health_monitor.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


async def _monitor_forever() -> None:
    monitor = build_monitor()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass

    await monitor.start()
    try:
        await stop.wait()
    finally:
        await monitor.stop()
        await monitor.publisher.close()
        monitor.store.close()
        await close_redis()


def run_monitor() -> None:
    """Run the monitor loop headless until SIGINT/SIGTERM."""
    console.print(Panel(
        f"Monitoring every {settings.check_interval_ms / 1000:.0f}s", title="Health Monitor", style="bold blue",
    ))
    asyncio.run(_monitor_forever())


def run_check() -> None:
    """Poll every service once and print the raw results (nothing is stored)."""
    services = ServiceRegistry().load()
    if not services:
        console.print("[yellow]No services configured[/yellow]")
        return

    with console.status("[bold green]Checking services..."):
        results = asyncio.run(HealthChecker(services).check_all())

    table = Table(title="Service health")
    table.add_column("Service")
    table.add_column("Status")
    table.add_column("Response", justify="right")
    table.add_column("Error")
    for r in results:
        style = _STYLE[r.status]
        table.add_row(
            r.service,
            f"[{style}]{r.status.value}[/{style}]",
            f"{r.response_time_ms:.0f}ms",
            r.error or "",
        )
    console.print(table)


def main() -> None:
    parser = argparse.ArgumentParser(description="Service health monitor")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server with the monitor loop")
    sub.add_parser("monitor", help="Run the monitor loop without the API")
    sub.add_parser("check", help="Check every service once and print results")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "monitor":
        run_monitor()
    elif args.command == "check":
        run_check()
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
