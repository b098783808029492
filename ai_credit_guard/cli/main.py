"""
CLI interface for AI Credit Guard.

Operator commands for provisioning workspaces, inspecting and adjusting
credits, previewing proration and validating configuration.
"""

import logging
import sqlite3
import sys
import uuid
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ai_credit_guard.config.loader import AppConfig, load_config, load_default_config
from ai_credit_guard.core.ledger import CreditLedger, CreditLedgerError
from ai_credit_guard.core.proration import format_cents, prorate_days
from ai_credit_guard.storage.db import DEFAULT_DB_PATH
from ai_credit_guard.storage.repository import (
    WorkspaceRepository,
    fetch_recent_usage_events,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# Errors reported as a message instead of a traceback
KNOWN_ERRORS = (CreditLedgerError, ValueError, FileNotFoundError, yaml.YAMLError, sqlite3.Error)


def _db(ctx: typer.Context) -> str:
    return ctx.obj["db"]


def _fail(e: Exception) -> None:
    console.print(f"[red]Error:[/] {escape(str(e))}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI Credit Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )
    ctx.obj = {"db": db}
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the AI Credit Guard database."""
    try:
        initialize_schema(_db(ctx))
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except KNOWN_ERRORS as e:
        _fail(e)


@app.command("create-workspace")
def create_workspace(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Workspace display name"),
    credits: int = typer.Option(0, "--credits", "-c", help="Initial credit balance"),
    workspace_id: Optional[str] = typer.Option(None, "--id", help="Explicit workspace id"),
):
    """Provision a workspace with an optional starting balance."""
    try:
        workspace = WorkspaceRepository(_db(ctx)).create_workspace(name, credits, workspace_id)
        console.print(
            f"[green]✓[/] Created workspace [bold]{workspace.id}[/] "
            f"with {workspace.credit_count} credits"
        )
        sys.exit(EXIT_CODE_PASS)
    except KNOWN_ERRORS as e:
        _fail(e)


@app.command()
def balance(ctx: typer.Context, workspace_id: str = typer.Argument(...)):
    """Show the credit balance of a workspace."""
    try:
        result = CreditLedger(_db(ctx)).get_credit_balance(workspace_id)
    except KNOWN_ERRORS as e:
        _fail(e)
        return

    table = Table(title=f"Credits for {workspace_id}")
    table.add_column("Total", justify="right")
    table.add_column("Allocated", justify="right")
    table.add_column("Available", justify="right")
    table.add_row(str(result.total), str(result.allocated), str(result.available))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("allocate-plan")
def allocate_plan(
    ctx: typer.Context,
    workspace_id: str = typer.Argument(...),
    plan_credits: int = typer.Argument(..., help="Credits included in the plan"),
    reference: Optional[str] = typer.Option(
        None, "--reference", "-r", help="Idempotency reference, e.g. an invoice id"
    ),
):
    """Reset the available balance to a plan's credit allowance."""
    reference = reference or f"manual_{uuid.uuid4().hex}"
    try:
        result = CreditLedger(_db(ctx)).allocate_subscription_credits(
            workspace_id, plan_credits, reference, "manual"
        )
    except KNOWN_ERRORS as e:
        _fail(e)
        return

    if result is None:
        console.print(f"[yellow]Reference {reference} was already applied[/]")
    else:
        console.print(
            f"[green]✓[/] {workspace_id} now has {plan_credits} credits available "
            f"({result.remaining_credits} total)"
        )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def refund(
    ctx: typer.Context,
    workspace_id: str = typer.Argument(...),
    amount: int = typer.Argument(..., help="Credits to return"),
    reference: Optional[str] = typer.Option(None, "--reference", "-r"),
):
    """Return consumed credits to a workspace."""
    try:
        result = CreditLedger(_db(ctx)).refund_credits(
            workspace_id, amount, reference, "manual" if reference else None
        )
        console.print(
            f"[green]✓[/] Refunded {amount} credits, {result.remaining_credits} total"
        )
        sys.exit(EXIT_CODE_PASS)
    except KNOWN_ERRORS as e:
        _fail(e)


@app.command()
def transactions(
    ctx: typer.Context,
    workspace_id: str = typer.Argument(...),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of rows to show"),
):
    """List the credit audit trail of a workspace, newest first."""
    try:
        rows = CreditLedger(_db(ctx)).list_transactions(workspace_id, limit)
    except KNOWN_ERRORS as e:
        _fail(e)
        return

    if not rows:
        console.print("[dim]No transactions recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Transactions for {workspace_id}")
    for column in ("When", "Type", "Amount", "Before", "After", "Reference"):
        table.add_column(column)
    for tx in rows:
        table.add_row(
            tx.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            tx.type.value,
            f"{tx.amount:+d}",
            str(tx.balance_before),
            str(tx.balance_after),
            tx.reference_id or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    ctx: typer.Context,
    workspace_id: Optional[str] = typer.Option(None, "--workspace", "-w"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """List recent generation usage events."""
    try:
        events = fetch_recent_usage_events(workspace_id, provider, limit, _db(ctx))
    except KNOWN_ERRORS as e:
        _fail(e)
        return

    if not events:
        console.print("[dim]No usage recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent usage")
    for column in ("When", "Workspace", "Provider", "Model", "Operation", "Tokens", "Credits", "Status"):
        table.add_column(column)
    for event in events:
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.workspace_id,
            event.provider,
            event.model,
            event.operation,
            str(event.total_tokens),
            str(event.credits_charged),
            event.status,
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def prorate(
    current_price: int = typer.Option(..., "--current-price", help="Current plan price in cents"),
    new_price: int = typer.Option(..., "--new-price", help="New plan price in cents"),
    days_remaining: int = typer.Option(..., "--days-remaining"),
    total_days: int = typer.Option(30, "--total-days"),
):
    """Preview the proration of a plan change."""
    try:
        calc = prorate_days(current_price, new_price, days_remaining, total_days)
    except KNOWN_ERRORS as e:
        _fail(e)
        return

    console.print("\n[bold]Proration Preview[/bold]")
    console.print("-" * 40)
    console.print(f"Days remaining: {calc.days_remaining}/{calc.total_days_in_period}")
    if new_price > current_price:
        console.print(f"Immediate charge: {format_cents(calc.prorated_amount)}")
    else:
        console.print(f"Credit: {format_cents(calc.credit_amount)}")
    sys.exit(EXIT_CODE_PASS)


def _print_config(config: AppConfig) -> None:
    breaker = config.circuit_breaker
    retry = config.retry
    console.print("[bold]Circuit breaker[/bold]")
    console.print(f"  failure_threshold: {breaker.failure_threshold}")
    console.print(f"  success_threshold: {breaker.success_threshold}")
    console.print(f"  timeout_ms: {breaker.timeout_ms}")
    console.print(f"  monitoring_period_ms: {breaker.monitoring_period_ms}")
    console.print("[bold]Retry[/bold]")
    console.print(f"  max_retries: {retry.max_retries}")
    console.print(f"  initial_delay_ms: {retry.initial_delay_ms}")
    console.print(f"  max_delay_ms: {retry.max_delay_ms}")
    console.print(f"  backoff_multiplier: {retry.backoff_multiplier}")
    console.print(f"  timeout_ms: {retry.timeout_ms}")


@app.command("check-config")
def check_config(path: str = typer.Argument(..., help="YAML configuration file")):
    """Validate a configuration file."""
    try:
        config = load_config(path)
    except KNOWN_ERRORS as e:
        _fail(e)
        return

    console.print(f"[green]✓[/] {path} is valid")
    _print_config(config)
    sys.exit(EXIT_CODE_PASS)


@app.command("breaker-defaults")
def breaker_defaults():
    """Show the resilience settings in effect."""
    try:
        config = load_default_config()
    except KNOWN_ERRORS as e:
        _fail(e)
        return

    _print_config(config)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
