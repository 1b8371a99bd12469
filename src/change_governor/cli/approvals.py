"""CLI commands for the approval queue.

- list: View pending (or all) approvals
- approve: Approve a proposal and run its action
- reject: Reject a proposal
"""

import asyncio
from pathlib import Path

import typer
from rich.table import Table

from change_governor.actions.exceptions import GovernorError
from change_governor.actions.types import ApprovalStatus
from change_governor.cli.actions import console, get_db_path, open_governor, styled_status

approvals_app = typer.Typer(help="Review proposals awaiting approval")

PRIORITY_STYLES = {"low": "dim", "medium": "yellow", "high": "red", "urgent": "red bold"}


@approvals_app.command("list")
def list_approvals(
    merchant: str = typer.Option(None, help="Filter by merchant ID"),
    all_statuses: bool = typer.Option(False, "--all", help="Include resolved approvals"),
    limit: int = typer.Option(50, help="Maximum rows"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """List approvals, newest first."""

    async def _list():
        path = get_db_path(db_path)

        if not path.exists():
            console.print("[yellow]No database found. No approvals to list.[/yellow]")
            return

        async with open_governor(path) as governor:
            approvals = await governor.list_approvals(
                merchant_id=merchant,
                status=None if all_statuses else ApprovalStatus.PENDING,
                limit=limit,
            )

        if not approvals:
            console.print("[dim]No approvals found.[/dim]")
            return

        table = Table(title="Approvals")
        table.add_column("ID", style="cyan")
        table.add_column("Merchant", style="dim")
        table.add_column("Type", style="green")
        table.add_column("Target")
        table.add_column("Priority")
        table.add_column("Status")
        table.add_column("Action", style="dim")
        table.add_column("Reasoning")

        for a in approvals:
            target = a.recipient_email or a.recipient_phone or a.entity_id or "-"
            if a.channel:
                target = f"{target} ({a.channel})"
            style = PRIORITY_STYLES.get(a.priority.value, "white")
            table.add_row(
                str(a.id),
                a.merchant_id,
                a.action_type.value,
                target,
                f"[{style}]{a.priority.value}[/{style}]",
                a.status.value,
                str(a.executed_action_id) if a.executed_action_id else "-",
                a.ai_reasoning[:60],
            )

        console.print(table)

    asyncio.run(_list())


@approvals_app.command("approve")
def approve(
    approval_id: int = typer.Argument(..., help="Approval ID to approve"),
    reviewer: str = typer.Option("user", help="Reviewer identity"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Approve a proposal and run the action it describes."""

    async def _approve():
        path = get_db_path(db_path)

        if not path.exists():
            console.print("[red]Database not found.[/red]")
            raise typer.Exit(1)

        async with open_governor(path) as governor:
            try:
                approval = await governor.approve(approval_id, reviewed_by=reviewer)
            except GovernorError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(1)

            if approval.executed_action_id is None:
                console.print(
                    f"[yellow]Approval {approval_id} is already {approval.status.value}.[/yellow]"
                )
                return
            action = await governor.get_action(approval.executed_action_id)

        console.print(
            f"[green]Approval {approval_id} approved.[/green]\n"
            f"  Action: {action.id} ({action.action_type.value})\n"
            f"  Status: {styled_status(action.status.value)}"
        )

    asyncio.run(_approve())


@approvals_app.command("reject")
def reject(
    approval_id: int = typer.Argument(..., help="Approval ID to reject"),
    reviewer: str = typer.Option("user", help="Reviewer identity"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Reject a proposal; no action is created."""

    async def _reject():
        path = get_db_path(db_path)

        if not path.exists():
            console.print("[red]Database not found.[/red]")
            raise typer.Exit(1)

        async with open_governor(path) as governor:
            try:
                approval = await governor.reject(approval_id, reviewed_by=reviewer)
            except GovernorError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(1)

        console.print(f"[yellow]Approval {approval_id} {approval.status.value}.[/yellow]")

    asyncio.run(_reject())
