"""
CLI interface for the AI usage governor.

Key management, usage dashboards and ledger maintenance from the shell.
"""

import sqlite3
import sys
from dataclasses import dataclass
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_usage_governor.config.loader import (
    GovernanceConfig,
    default_config,
    load_governance_config,
)
from ai_usage_governor.core.errors import CredentialError
from ai_usage_governor.core.orchestrator import RequestOrchestrator
from ai_usage_governor.storage.credentials import CredentialStore
from ai_usage_governor.storage.db import DEFAULT_DB_PATH, initialize_schema
from ai_usage_governor.storage.ledger import SQLiteUsageLedger
from ai_usage_governor.utils.logging import setup_logging

app = typer.Typer()
keys_app = typer.Typer(help="Manage provider API keys.")
app.add_typer(keys_app, name="keys")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@dataclass
class _Settings:
    db_path: str
    config: GovernanceConfig


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Governance YAML config"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """AI usage governor CLI."""
    setup_logging(log_level)
    try:
        loaded = load_governance_config(config) if config else default_config()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    ctx.obj = _Settings(db_path=db, config=loaded)

    if ctx.invoked_subcommand is None:
        console.print("AI Usage Governor - Use --help to see available commands")


def _credentials(ctx: typer.Context) -> CredentialStore:
    return CredentialStore(ctx.obj.db_path)


def _ledger(ctx: typer.Context) -> SQLiteUsageLedger:
    return SQLiteUsageLedger(ctx.obj.db_path, max_records=ctx.obj.config.ledger.max_records)


def _fail(error: Exception) -> None:
    if isinstance(error, sqlite3.OperationalError) and "no such table" in str(error).lower():
        console.print("[bold yellow]Database not initialized.[/] Run `ai-usage-governor init` first.")
    else:
        console.print(f"[red]Error:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def init(ctx: typer.Context):
    """Initialize the database."""
    try:
        initialize_schema(ctx.obj.db_path)
    except sqlite3.Error as e:
        _fail(e)
    console.print("[green]✓[/] Database initialized successfully")


@keys_app.command("add")
def keys_add(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="openai or anthropic"),
    secret: str = typer.Option(
        ..., "--secret", prompt="API key", hide_input=True,
        help="The API key; prompted for when omitted"
    ),
    name: str = typer.Option("default", "--name", "-n", help="Display name"),
    budget: Optional[float] = typer.Option(None, "--budget", "-b", help="Monthly budget"),
):
    """Validate and store an API key."""
    monthly_budget = budget if budget is not None else ctx.obj.config.credentials.default_monthly_budget
    try:
        credential = _credentials(ctx).save(provider, secret, name, monthly_budget)
    except (CredentialError, ValueError, sqlite3.Error) as e:
        _fail(e)
    console.print(
        f"[green]✓[/] Saved {credential.provider} key '{credential.name}' "
        f"({credential.id}), budget {_format_currency(credential.monthly_budget)}/month"
    )


@keys_app.command("list")
def keys_list(
    ctx: typer.Context,
    include_inactive: bool = typer.Option(False, "--all", "-a", help="Include deactivated keys"),
):
    """List stored API keys. Secrets are never shown."""
    try:
        credentials = _credentials(ctx).list(include_inactive=include_inactive)
    except sqlite3.Error as e:
        _fail(e)

    if not credentials:
        console.print("[dim]No API keys stored.[/]")
        return

    table = Table(title="API Keys")
    for column in ("ID", "Provider", "Name", "Active", "Budget", "Spent", "Last used"):
        table.add_column(column)
    for credential in credentials:
        table.add_row(
            credential.id,
            credential.provider,
            credential.name,
            "yes" if credential.is_active else "no",
            _format_currency(credential.monthly_budget),
            _format_currency(credential.current_month_spend),
            credential.last_used_at.strftime("%Y-%m-%d %H:%M") if credential.last_used_at else "-",
        )
    console.print(table)


@keys_app.command("remove")
def keys_remove(ctx: typer.Context, credential_id: str = typer.Argument(...)):
    """Deactivate an API key. Its usage history is kept."""
    try:
        _credentials(ctx).deactivate(credential_id)
    except (CredentialError, sqlite3.Error) as e:
        _fail(e)
    console.print(f"[green]✓[/] Deactivated {credential_id}")


@app.command()
def status(
    ctx: typer.Context,
    provider: str = typer.Option("openai", "--provider", "-p"),
):
    """Show rate limit and budget status for a provider."""
    try:
        orchestrator = RequestOrchestrator(
            _credentials(ctx), _ledger(ctx), config=ctx.obj.config
        )
        usage = orchestrator.get_usage_status(provider)
    except sqlite3.Error as e:
        _fail(e)

    limits = usage.rate_limits
    console.print(f"\n[bold]AI Usage Status[/bold] ({provider})")
    console.print("-" * 40)
    if limits.allowed:
        console.print("[green]Requests allowed[/]")
    else:
        console.print(f"[red]Blocked:[/] {limits.reason}")
    console.print(f"Hourly requests: {limits.hourly_requests}/{limits.hourly_limit}")
    console.print(f"Daily requests: {limits.daily_requests}/{limits.daily_limit}")
    console.print(
        f"Monthly usage: {_format_currency(usage.monthly_usage)} of "
        f"{_format_currency(usage.monthly_limit)} ({_format_percent(usage.monthly_usage, usage.monthly_limit)})"
    )


@app.command()
def usage(
    ctx: typer.Context,
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter to one provider"),
):
    """Show usage aggregated by calendar month."""
    try:
        stats = _ledger(ctx).aggregate_by_month(provider)
    except sqlite3.Error as e:
        _fail(e)

    if not stats:
        console.print("\n[bold yellow]No AI usage recorded yet[/]")
        return

    table = Table(title="Monthly Usage")
    for column in ("Month", "Requests", "Failed", "Tokens", "Cost", "Last request"):
        table.add_column(column)
    for month in stats:
        table.add_row(
            month.month,
            str(month.total_requests),
            str(month.failed_requests),
            f"{month.total_tokens:,}",
            _format_currency(month.total_cost),
            month.last_request_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def recent(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-l", min=1),
):
    """Show the most recent requests, newest first."""
    try:
        records = _ledger(ctx).query_recent(limit)
    except sqlite3.Error as e:
        _fail(e)

    if not records:
        console.print("\n[bold yellow]No AI usage recorded yet[/]")
        return

    table = Table(title="Recent Requests")
    for column in ("Time", "Provider", "Model", "Feature", "Tokens", "Cost", "Result"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.provider,
            record.model,
            record.feature,
            str(record.tokens_used),
            _format_currency(record.estimated_cost, places=4),
            "[green]ok[/]" if record.success else f"[red]{record.error_message or 'failed'}[/]",
        )
    console.print(table)


@app.command()
def trim(
    ctx: typer.Context,
    max_records: Optional[int] = typer.Option(None, "--max-records", "-m", min=0),
):
    """Apply the ledger retention cap."""
    try:
        removed = _ledger(ctx).trim(max_records)
    except sqlite3.Error as e:
        _fail(e)
    console.print(f"[green]✓[/] Removed {removed} usage records")


def _format_currency(amount: float, places: int = 2) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.{places}f}"


def _format_percent(part: float, whole: float) -> str:
    if whole == 0:
        return "N/A"
    return f"{part / whole * 100:,.1f}%"


if __name__ == "__main__":
    app()
