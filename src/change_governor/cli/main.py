"""Change governor CLI - admission, approval and rollback for autonomous store changes."""

import typer

from change_governor.cli.actions import actions_app
from change_governor.cli.approvals import approvals_app
from change_governor.cli.monitor import monitor_app
from change_governor.cli.settings import rules_app, settings_app

app = typer.Typer(
    name="change-governor",
    help="Govern autonomous changes to a merchant's store",
    no_args_is_help=True,
)

# Add command groups
app.add_typer(actions_app, name="actions")
app.add_typer(approvals_app, name="approvals")
app.add_typer(settings_app, name="settings")
app.add_typer(rules_app, name="rules")
app.add_typer(monitor_app, name="monitor")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
