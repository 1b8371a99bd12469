"""CLI commands for merchant automation settings and trigger rules.

settings:
- show: View a merchant's automation settings
- set: Apply a validated partial update

rules:
- list: View rules visible to a merchant
- seed: Create the default global rules
- enable / disable: Toggle a rule (rules are never deleted once used)
"""

import asyncio
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.markup import escape
from rich.table import Table

from change_governor.actions.types import AutomationSettings
from change_governor.cli.actions import console, get_db_path, open_governor

settings_app = typer.Typer(help="View and change merchant automation settings")
rules_app = typer.Typer(help="Manage trigger rules")


def _print_settings(settings: AutomationSettings) -> None:
    autopilot = "[green]on[/green]" if settings.global_autopilot_enabled else "[red]off[/red]"
    console.print(f"\n[bold]Automation settings for {settings.merchant_id}[/bold]")
    console.print(f"  Global autopilot: {autopilot}")
    console.print(f"  Mode: {settings.autopilot_mode.value}")
    console.print(f"  Dry run: {settings.dry_run_mode}")
    console.print(f"  Auto-publish: {settings.auto_publish_enabled}")
    console.print(f"  Max daily actions: {settings.max_daily_actions}")
    console.print(f"  Max catalog change: {settings.max_catalog_change_percent}%")
    console.print(f"  Credit limit: {settings.autonomous_credit_limit}")
    types = ", ".join(sorted(t.value for t in settings.enabled_action_types)) or "-"
    console.print(f"  Enabled action types: {types}")


@settings_app.command("show")
def show_settings(
    merchant: str = typer.Argument(..., help="Merchant ID"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Show a merchant's automation settings (defaults if never set)."""

    async def _show():
        async with open_governor(get_db_path(db_path)) as governor:
            settings = await governor.get_settings(merchant)
        _print_settings(settings)

    asyncio.run(_show())


@settings_app.command("set")
def set_settings(
    merchant: str = typer.Argument(..., help="Merchant ID"),
    autopilot: bool = typer.Option(None, "--autopilot/--no-autopilot", help="Global autopilot"),
    mode: str = typer.Option(None, help="Autopilot mode: safe, balanced, aggressive"),
    dry_run: bool = typer.Option(None, "--dry-run/--no-dry-run", help="Dry-run mode"),
    auto_publish: bool = typer.Option(
        None, "--auto-publish/--no-auto-publish", help="Publish on execution"
    ),
    max_daily_actions: int = typer.Option(None, help="Daily action cap"),
    max_catalog_percent: float = typer.Option(None, help="Daily catalog change cap (%)"),
    credit_limit: int = typer.Option(None, help="Daily autonomous credit budget"),
    enable_type: list[str] = typer.Option(
        None, "--enable-type", help="Enabled action type (repeat; replaces the set)"
    ),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Update a merchant's automation settings."""
    patch = {
        "global_autopilot_enabled": autopilot,
        "autopilot_mode": mode,
        "dry_run_mode": dry_run,
        "auto_publish_enabled": auto_publish,
        "max_daily_actions": max_daily_actions,
        "max_catalog_change_percent": max_catalog_percent,
        "autonomous_credit_limit": credit_limit,
        "enabled_action_types": enable_type or None,
    }
    patch = {key: value for key, value in patch.items() if value is not None}
    if not patch:
        console.print("[yellow]Nothing to update.[/yellow]")
        raise typer.Exit(1)

    async def _set():
        async with open_governor(get_db_path(db_path)) as governor:
            try:
                settings = await governor.update_settings(merchant, patch)
            except ValidationError as e:
                console.print(f"[red]Invalid settings:[/red]\n{escape(str(e))}")
                raise typer.Exit(1)
        console.print("[green]Settings updated.[/green]")
        _print_settings(settings)

    asyncio.run(_set())


@rules_app.command("list")
def list_rules(
    merchant: str = typer.Option(None, help="Include this merchant's rules"),
    all_rules: bool = typer.Option(False, "--all", help="Include disabled rules"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """List rules, highest priority first."""

    async def _list():
        path = get_db_path(db_path)

        if not path.exists():
            console.print("[yellow]No database found. No rules to list.[/yellow]")
            return

        async with open_governor(path) as governor:
            rules = await governor.list_rules(merchant, include_disabled=all_rules)

        if not rules:
            console.print("[dim]No rules found.[/dim]")
            return

        table = Table(title="Rules")
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Scope", style="dim")
        table.add_column("Action")
        table.add_column("Priority")
        table.add_column("Cooldown")
        table.add_column("Enabled")

        for r in rules:
            table.add_row(
                str(r.id),
                r.name,
                r.scope.value if r.merchant_id is None else f"{r.scope.value}:{r.merchant_id}",
                r.action_type.value,
                str(r.priority),
                f"{r.cooldown_seconds // 3600}h",
                "[green]yes[/green]" if r.enabled else "[dim]no[/dim]",
            )

        console.print(table)

    asyncio.run(_list())


@rules_app.command("seed")
def seed_rules(
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Create the default global rules if missing."""

    async def _seed():
        async with open_governor(get_db_path(db_path)) as governor:
            created = await governor.seed_default_rules()
        console.print(f"[green]Created {created} default rule(s).[/green]")

    asyncio.run(_seed())


def _toggle(rule_id: int, enabled: bool, db_path: Path | None) -> None:
    async def _run():
        path = get_db_path(db_path)
        if not path.exists():
            console.print("[red]Database not found.[/red]")
            raise typer.Exit(1)

        async with open_governor(path) as governor:
            try:
                rule = await governor.set_rule_enabled(rule_id, enabled)
            except ValueError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(1)

        state = "enabled" if rule.enabled else "disabled"
        console.print(f"[green]Rule {rule.id} ({rule.name}) {state}.[/green]")

    asyncio.run(_run())


@rules_app.command("enable")
def enable_rule(
    rule_id: int = typer.Argument(..., help="Rule ID"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Re-enable a rule."""
    _toggle(rule_id, True, db_path)


@rules_app.command("disable")
def disable_rule(
    rule_id: int = typer.Argument(..., help="Rule ID"),
    db_path: Path = typer.Option(None, help="Database path"),
) -> None:
    """Soft-disable a rule."""
    _toggle(rule_id, False, db_path)
