#!/usr/bin/env python3
"""
Entitlement Control CLI - Command Line Interface for the Entitlement Engine.

Provides commands for listing marketplace entitlements, recording reviewer
decisions, replaying marketplace notifications and viewing the audit trail.
"""

import asyncio
import logging
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import load_settings
from ..engine import EntitlementReconciler
from ..models import EntitlementState, OperationResult, ReconciliationAction, ReconciliationOutcome

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()

STATE_CHOICES = [state.value for state in EntitlementState]


class EntitlementController:
    """Main controller for Entitlement Engine operations."""

    def __init__(self, config_path: Optional[str] = None, mock_mode: bool = True):
        """Initialize the controller."""
        self.settings = load_settings(config_path)
        self.settings.mock_mode = mock_mode
        self.reconciler = EntitlementReconciler.from_settings(self.settings)

        console.print(f"[green]Entitlement Engine initialized (mock_mode={mock_mode})[/green]")

    def run(self, coro):
        return asyncio.run(coro)


@click.group()
@click.option('--config', '-c', help='Path to configuration file')
@click.option('--mock/--real', default=True, help='Use mock mode (default) or the real procurement API')
@click.pass_context
def cli(ctx, config, mock):
    """Entitlement Engine Control CLI - Marketplace entitlement reconciliation"""
    ctx.ensure_object(dict)
    ctx.obj['controller'] = EntitlementController(config, mock)


@cli.command('list')
@click.argument('project_id')
@click.option('--state', 'states', multiple=True, type=click.Choice(STATE_CHOICES),
              help='Entitlement state to include (repeatable)')
@click.pass_context
def list_entitlements(ctx, project_id, states):
    """List entitlements with their policy and account."""
    controller = ctx.obj['controller']

    result = controller.run(controller.reconciler.list_procurements(project_id, list(states)))
    if not result.success:
        display_failure(result)
        ctx.exit(1)

    if not result.data:
        console.print("[yellow]No entitlements found[/yellow]")
        return

    table = Table(title=f"Entitlements ({len(result.data)})")
    table.add_column("Name", style="cyan")
    table.add_column("Product", style="green")
    table.add_column("Plan", style="green")
    table.add_column("State", style="yellow")
    table.add_column("Policy", style="magenta")
    table.add_column("Account", style="blue")
    table.add_column("Activated", style="red")

    for entitlement in result.data:
        table.add_row(
            entitlement.name,
            entitlement.product or "N/A",
            entitlement.plan or "N/A",
            entitlement.state or "N/A",
            entitlement.policy.policy_id if entitlement.policy else "N/A",
            entitlement.email or "N/A",
            "✓" if entitlement.activated else "✗",
        )

    console.print(table)


@cli.command()
@click.argument('project_id')
@click.argument('name')
@click.option('--account-id', required=True, help='Internal account receiving the policy')
@click.option('--policy-id', required=True, help='Policy to grant')
@click.option('--state', type=click.Choice(STATE_CHOICES),
              default=EntitlementState.ENTITLEMENT_ACTIVATION_REQUESTED.value)
@click.pass_context
def approve(ctx, project_id, name, account_id, policy_id, state):
    """Approve an entitlement and grant its policy."""
    _decide(ctx, project_id, name, 'approve', None, account_id, policy_id, state)


@cli.command()
@click.argument('project_id')
@click.argument('name')
@click.option('--reason', prompt='Reason', help='Reason shown to the purchaser')
@click.option('--state', type=click.Choice(STATE_CHOICES),
              default=EntitlementState.ENTITLEMENT_ACTIVATION_REQUESTED.value)
@click.pass_context
def reject(ctx, project_id, name, reason, state):
    """Reject an entitlement or a pending plan change."""
    _decide(ctx, project_id, name, 'reject', reason, None, None, state)


@cli.command()
@click.argument('project_id')
@click.argument('name')
@click.option('--message', prompt='Message', help='Message shown to the purchaser')
@click.pass_context
def comment(ctx, project_id, name, message):
    """Attach a message to a pending entitlement."""
    _decide(ctx, project_id, name, 'comment', message, None, None,
            EntitlementState.ENTITLEMENT_ACTIVATION_REQUESTED.value)


def _decide(ctx, project_id, name, status, reason, account_id, policy_id, state):
    controller = ctx.obj['controller']

    result = controller.run(controller.reconciler.approve_entitlement(
        project_id, name, status, reason, account_id, policy_id, state
    ))
    if not result.success:
        display_failure(result)
        ctx.exit(1)

    console.print(f"[green]✓ {result.outcome.value if result.outcome else status}: {name}[/green]")


@cli.command('auto-approve')
@click.argument('project_id')
@click.argument('entitlement_id')
@click.pass_context
def auto_approve(ctx, project_id, entitlement_id):
    """Run the auto-approval decision for an entitlement."""
    controller = ctx.obj['controller']
    try:
        outcome = controller.run(controller.reconciler.auto_approve_entitlement(project_id, entitlement_id))
    except Exception as e:
        console.print(f"[red]Auto-approval failed: {e}[/red]")
        logger.exception("Auto-approval failed")
        ctx.exit(1)
    display_outcome(outcome)

    if outcome.action == ReconciliationAction.APPROVAL_FAILED:
        ctx.exit(1)


@cli.command()
@click.argument('project_id')
@click.argument('entitlement_id')
@click.pass_context
def cancel(ctx, project_id, entitlement_id):
    """Remove the policy granted by a cancelled entitlement."""
    controller = ctx.obj['controller']
    try:
        outcome = controller.run(controller.reconciler.cancel_entitlement(project_id, entitlement_id))
    except Exception as e:
        console.print(f"[red]Cancellation failed: {e}[/red]")
        logger.exception("Cancellation failed")
        ctx.exit(1)
    display_outcome(outcome)


@cli.command()
@click.argument('project_id')
@click.argument('account_id')
@click.argument('policy_id')
@click.pass_context
def remove(ctx, project_id, account_id, policy_id):
    """Remove a policy from an account."""
    controller = ctx.obj['controller']
    try:
        outcome = controller.run(controller.reconciler.remove_entitlement(project_id, account_id, policy_id))
    except Exception as e:
        console.print(f"[red]Removal failed: {e}[/red]")
        logger.exception("Removal failed")
        ctx.exit(1)
    display_outcome(outcome)


@cli.command('audit-trail')
@click.argument('project_id')
@click.option('--account-id', help='Filter by account')
@click.option('--limit', default=50, help='Maximum number of records to show')
@click.pass_context
def audit_trail(ctx, project_id, account_id, limit):
    """Show the audit trail of a project."""
    controller = ctx.obj['controller']
    audit_logger = controller.reconciler.audit_logger
    if audit_logger is None:
        console.print("[yellow]Audit trail is disabled (no audit_dir configured)[/yellow]")
        return

    records = audit_logger.get_events(project_id=project_id, account_id=account_id, limit=limit)
    if not records:
        console.print(f"[yellow]No audit records found for {project_id}[/yellow]")
        return

    table = Table(title=f"Audit Trail for {project_id}")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Operation", style="green")
    table.add_column("Entitlement", style="yellow")
    table.add_column("Account", style="blue")
    table.add_column("Policy", style="magenta")
    table.add_column("Success", style="red")

    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.operation,
            record.entitlement_name or "",
            record.account_id or "",
            record.policy_id or "",
            "✓" if record.success else "✗",
        )

    console.print(table)


@cli.command()
@click.option('--port', default=8000, help='Port to run the API server on')
@click.option('--host', default='127.0.0.1', help='Host to bind the API server to')
def serve(port, host):
    """Start the Entitlement Engine API server."""
    from ..api.server import start_server

    console.print(f"[green]Starting Entitlement Engine API server on {host}:{port}[/green]")
    console.print("[blue]Press Ctrl+C to stop[/blue]")

    try:
        start_server(host=host, port=port, reload=False)
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped[/yellow]")


def display_failure(result: OperationResult):
    """Display a failed operation result."""
    console.print(f"[red]✗ {result.errors[0] if result.errors else 'Operation failed'}[/red]")
    for error in result.errors[1:]:
        console.print(f"  - {error}")


def display_outcome(outcome: ReconciliationOutcome):
    """Display the outcome of a background operation."""
    style = "green" if outcome.action.value in ("APPROVED", "REMOVED") else "yellow"
    lines = [f"[bold {style}]{outcome.action.value}[/bold {style}]", outcome.message]
    if outcome.entitlement_name:
        lines.append(f"Entitlement: {outcome.entitlement_name}")
    if outcome.account_id:
        lines.append(f"Account: {outcome.account_id}")
    if outcome.policy_id:
        lines.append(f"Policy: {outcome.policy_id}")
    console.print(Panel.fit("\n".join(line for line in lines if line)))

    for error in outcome.errors:
        console.print(f"  - [red]{error}[/red]")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
