"""CLI commands for action management.

Provides user-facing commands for viewing and managing actions:
- list: View actions with filters
- show: View details of a specific action
- push: Publish an action to the commerce platform
- rollback: Restore an action's entity from its snapshot
- bulk-push / bulk-rollback: The same over many actions
- discard: Cancel a pending action
- alerts: Failed rollbacks that need attention
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from change_governor.actions.bulk import BulkResult
from change_governor.actions.exceptions import GovernorError
from change_governor.actions.types import Action, ActionStatus, ActionType
from change_governor.config import GovernorSettings
from change_governor.governor import ChangeGovernor
from change_governor.platform.http_client import CommercePlatformClient, build_http_client

actions_app = typer.Typer(help="View, publish and roll back actions")
console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "running": "magenta",
    "completed": "green",
    "failed": "red",
    "rolled_back": "blue",
    "dry_run": "cyan",
    "cancelled": "dim",
}


def get_db_path(db_path: Path | None) -> Path:
    """Get database path, defaulting to GOVERNOR_DB_PATH or ~/.change-governor/governor.db."""
    if db_path is not None:
        return db_path
    return GovernorSettings().db_path


@asynccontextmanager
async def open_governor(db_path: Path) -> AsyncIterator[ChangeGovernor]:
    """ChangeGovernor wired to the configured commerce platform."""
    settings = GovernorSettings()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with build_http_client(
        settings.platform_base_url,
        settings.platform_api_token,
        settings.execution_timeout_seconds,
    ) as http:
        yield ChangeGovernor(
            db_path,
            CommercePlatformClient(http=http),
            retry_config=settings.retry_config(),
            execution_timeout=settings.execution_timeout_seconds,
            bulk_concurrency=settings.bulk_concurrency,
        )


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def print_bulk_result(operation: str, result: BulkResult) -> None:
    color = "green" if result.failed_count == 0 else "red"
    console.print(
        f"[{color}]Bulk {operation}: {result.succeeded_count} succeeded, "
        f"{result.failed_count} failed[/{color}]"
    )
    for failure in result.failed:
        console.print(
            f"  [red]{failure.action_id}[/red] ({failure.kind.value}): {escape(failure.error)}"
        )


def _require_db(path: Path) -> None:
    if not path.exists():
        console.print("[red]Database not found.[/red]")
        raise typer.Exit(1)


@actions_app.command("list")
def list_actions(
    merchant: str = typer.Option(None, help="Filter by merchant ID"),
    status: str = typer.Option(
        None,
        help="Filter by status (pending, running, completed, failed, rolled_back, dry_run, cancelled)",
    ),
    action_type: str = typer.Option(None, "--type", help="Filter by action type"),
    entity: str = typer.Option(None, help="Filter by entity ID"),
    published: bool = typer.Option(
        None, "--published/--unpublished", help="Filter by publish state"
    ),
    limit: int = typer.Option(50, help="Maximum rows"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """List actions, newest first."""

    async def _list():
        path = get_db_path(db_path)

        if not path.exists():
            console.print("[yellow]No database found. No actions to list.[/yellow]")
            return

        try:
            status_filter = ActionStatus(status.lower()) if status else None
            type_filter = ActionType(action_type.lower()) if action_type else None
        except ValueError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)

        async with open_governor(path) as governor:
            actions = await governor.list_actions(
                merchant_id=merchant,
                status=status_filter,
                action_type=type_filter,
                entity_id=entity,
                published=published,
                limit=limit,
            )

        if not actions:
            console.print("[dim]No actions found.[/dim]")
            return

        table = Table(title="Actions")
        table.add_column("ID", style="cyan")
        table.add_column("Merchant", style="dim")
        table.add_column("Type", style="green")
        table.add_column("Entity")
        table.add_column("Status")
        table.add_column("Published")
        table.add_column("By", style="dim")
        table.add_column("Created", style="dim")

        for a in actions:
            table.add_row(
                str(a.id),
                a.merchant_id,
                a.action_type.value,
                a.entity_id,
                styled_status(a.status.value),
                "yes" if a.published_to_shopify else "-",
                a.executed_by.value,
                a.created_at.strftime("%Y-%m-%d %H:%M"),
            )

        console.print(table)

    asyncio.run(_list())


def _print_action(action: Action) -> None:
    console.print(f"\n[bold]Action {action.id}[/bold]")
    console.print(f"  Merchant: {action.merchant_id}")
    console.print(f"  Type: [green]{action.action_type.value}[/green]")
    console.print(f"  Entity: {action.entity_type.value} {action.entity_id}")
    console.print(f"  Status: {styled_status(action.status.value)}")
    console.print(f"  Published: {action.published_to_shopify}")
    console.print(f"  Dry run: {action.dry_run}")
    console.print(f"  Executed by: {action.executed_by.value}")
    console.print(f"  Rule: {action.rule_id or 'None'}")
    console.print(f"  Created at: {action.created_at.isoformat()}")
    if action.completed_at:
        console.print(f"  Completed at: {action.completed_at.isoformat()}")
    if action.rolled_back_at:
        console.print(f"  Rolled back at: {action.rolled_back_at.isoformat()}")
    console.print()
    console.print("[bold]Changes:[/bold]")
    changes = action.payload.changes()
    if changes:
        for key, value in changes.items():
            console.print(f"  {key}: {value}")
    else:
        console.print("  [dim]None[/dim]")
    console.print()
    console.print("[bold]Reason:[/bold]")
    console.print(f"  {action.decision_reason or '-'}")
    if action.result:
        console.print()
        console.print("[bold]Result:[/bold]")
        for key, value in action.result.items():
            console.print(f"  {key}: {value}")


@actions_app.command("show")
def show_action(
    action_id: int = typer.Argument(..., help="Action ID to show"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Show details of an action."""

    async def _show():
        path = get_db_path(db_path)
        _require_db(path)

        async with open_governor(path) as governor:
            try:
                action = await governor.get_action(action_id)
            except GovernorError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(1)

        _print_action(action)

    asyncio.run(_show())


@actions_app.command("push")
def push_action(
    action_id: int = typer.Argument(..., help="Action ID to publish"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Publish an action's changes to the commerce platform."""

    async def _push():
        path = get_db_path(db_path)
        _require_db(path)

        async with open_governor(path) as governor:
            try:
                action = await governor.push_to_shopify(action_id)
            except GovernorError as e:
                console.print(f"[red]Push failed ({e.kind.value}): {escape(str(e))}[/red]")
                raise typer.Exit(1)

        console.print(
            f"[green]Action {action.id} published.[/green] "
            f"Status: {styled_status(action.status.value)}"
        )

    asyncio.run(_push())


@actions_app.command("rollback")
def rollback_action(
    action_id: int = typer.Argument(..., help="Action ID to roll back"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Restore an action's entity from its pre-change snapshot."""

    async def _rollback():
        path = get_db_path(db_path)
        _require_db(path)

        async with open_governor(path) as governor:
            try:
                action = await governor.rollback(action_id)
            except GovernorError as e:
                console.print(f"[red bold]Rollback failed ({e.kind.value}): {escape(str(e))}[/red bold]")
                raise typer.Exit(1)

        console.print(f"[blue]Action {action.id} rolled back.[/blue]")

    asyncio.run(_rollback())


@actions_app.command("bulk-push")
def bulk_push(
    action_ids: list[int] = typer.Argument(..., help="Action IDs to publish"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Publish many actions; already-published ones count as successes."""

    async def _bulk():
        path = get_db_path(db_path)
        _require_db(path)

        async with open_governor(path) as governor:
            result = await governor.bulk_push(action_ids)

        print_bulk_result("push", result)
        if result.failed_count:
            raise typer.Exit(1)

    asyncio.run(_bulk())


@actions_app.command("bulk-rollback")
def bulk_rollback(
    action_ids: list[int] = typer.Argument(..., help="Action IDs to roll back"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Roll back many actions; already rolled-back ones count as successes."""

    async def _bulk():
        path = get_db_path(db_path)
        _require_db(path)

        async with open_governor(path) as governor:
            result = await governor.bulk_rollback(action_ids)

        print_bulk_result("rollback", result)
        if result.failed_count:
            raise typer.Exit(1)

    asyncio.run(_bulk())


@actions_app.command("discard")
def discard_action(
    action_id: int = typer.Argument(..., help="Action ID to discard"),
    reason: str = typer.Option("Discarded by user", help="Discard reason"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Cancel a pending action before it runs."""

    async def _discard():
        path = get_db_path(db_path)
        _require_db(path)

        async with open_governor(path) as governor:
            try:
                await governor.discard(action_id, reason)
            except GovernorError as e:
                console.print(f"[red]Error: {e}[/red]")
                raise typer.Exit(1)

        console.print(f"[green]Action {action_id} discarded.[/green] Reason: {reason}")

    asyncio.run(_discard())


@actions_app.command("alerts")
def list_alerts(
    merchant: str = typer.Option(None, help="Filter by merchant ID"),
    limit: int = typer.Option(20, help="Maximum rows"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Show failed rollbacks whose changes may still be live."""

    async def _alerts():
        path = get_db_path(db_path)

        if not path.exists():
            console.print("[dim]No alerts.[/dim]")
            return

        async with open_governor(path) as governor:
            alerts = await governor.auditor.get_alerts(merchant, limit)

        if not alerts:
            console.print("[dim]No alerts.[/dim]")
            return

        table = Table(title="Alerts")
        table.add_column("Time", style="dim")
        table.add_column("Merchant")
        table.add_column("Action", style="cyan")
        table.add_column("Reason", style="red")
        for event in alerts:
            data = event.event_data or {}
            table.add_row(
                event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                event.merchant_id or "-",
                str(event.action_id),
                str(data.get("reason", "")),
            )
        console.print(table)

    asyncio.run(_alerts())
