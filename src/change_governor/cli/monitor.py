"""Evaluation daemon CLI command.

This module provides the CLI command for running the evaluation loop:
- run: Evaluate rules for a set of merchants on a fixed interval

Signals and proposals come from the commerce platform and the agent's
proposal service over HTTP (GOVERNOR_PLATFORM_BASE_URL).
"""

import asyncio
import logging
from pathlib import Path

import typer

from change_governor.cli.actions import console
from change_governor.config import GovernorSettings
from change_governor.governor import ChangeGovernor
from change_governor.loop import EvaluationLoop
from change_governor.platform.http_client import (
    CommercePlatformClient,
    HttpProposalGenerator,
    build_http_client,
)

monitor_app = typer.Typer(help="Run the rule evaluation daemon")


@monitor_app.command("run")
def run_monitor(
    merchants: list[str] = typer.Argument(..., help="Merchant IDs to evaluate"),
    interval: float = typer.Option(
        None,
        "--interval",
        "-i",
        help="Seconds between ticks (default: GOVERNOR_EVALUATION_INTERVAL_SECONDS)",
    ),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """
    Run the evaluation daemon.

    Each merchant is evaluated on its own schedule until interrupted with
    Ctrl+C. Executions still in flight at shutdown are awaited.
    """
    settings = GovernorSettings()
    if db_path is None:
        db_path = settings.ensure_db_dir()
    else:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    if interval is None:
        interval = settings.evaluation_interval_seconds

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    console.print("[bold]Starting evaluation daemon[/bold]")
    console.print(f"  Merchants: {', '.join(merchants)}")
    console.print(f"  Platform: {settings.platform_base_url}")
    console.print(f"  Interval: {interval}s")
    console.print(f"  Database: {db_path}")
    console.print()
    console.print("Press Ctrl+C to stop")

    async def _run() -> None:
        async with build_http_client(
            settings.platform_base_url,
            settings.platform_api_token,
            settings.execution_timeout_seconds,
        ) as http:
            client = CommercePlatformClient(http=http)
            governor = ChangeGovernor(
                db_path,
                client,
                generator=HttpProposalGenerator(client=client),
                signals=client,
                retry_config=settings.retry_config(),
                execution_timeout=settings.execution_timeout_seconds,
                bulk_concurrency=settings.bulk_concurrency,
            )
            loop = EvaluationLoop(governor, merchants, interval_seconds=interval)
            try:
                await loop.run()
            finally:
                await governor.lifecycle.drain()

        console.print(
            f"Stopped. Ticks: {sum(loop.ticks.values())}, "
            f"failed: {sum(loop.failures.values())}"
        )

    asyncio.run(_run())
