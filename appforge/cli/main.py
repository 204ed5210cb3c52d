"""
CLI interface for AppForge.

Operator commands for the credit ledger, plans, usage reporting and AI run
history.
"""

import sqlite3
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from appforge.config.loader import Settings, load_settings
from appforge.core.credits import CreditGate
from appforge.core.entitlements import EntitlementResolver, get_plan_limits
from appforge.core.errors import AppForgeError
from appforge.core.periods import utcnow
from appforge.core.reporting import list_usage_events, monthly_spend_summary
from appforge.log import configure_logging
from appforge.storage.models import Owner, PlanTier
from appforge.storage.repository import (
    LedgerRepository,
    SubscriptionRepository,
    UsageRepository,
    initialize_schema,
    is_missing_table_error,
)
from appforge.storage.workspace import WorkspaceStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class _State:
    settings: Settings = Settings()


state = _State()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML settings file"
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Minimum log level"
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit logs as JSON lines"
    ),
):
    """AppForge operator CLI."""
    try:
        configure_logging(log_level, json_output=json_logs)
        state.settings = load_settings(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if ctx.invoked_subcommand is None:
        console.print("AppForge - Use --help to see available commands")


def _owner(owner_id: str, team: bool) -> Owner:
    return Owner.team(owner_id) if team else Owner.individual(owner_id)


def _gate() -> CreditGate:
    settings = state.settings
    return CreditGate(
        LedgerRepository(settings.db_path),
        SubscriptionRepository(settings.db_path),
        policy=settings.billing.grant_policy(),
    )


def _resolver() -> EntitlementResolver:
    return EntitlementResolver(SubscriptionRepository(state.settings.db_path))


def _format_credits(amount: float) -> str:
    return f"{amount:,.4f}"


def _format_currency(amount: float) -> str:
    return f"${abs(amount):,.4f}"


def _fail(e: Exception) -> None:
    if isinstance(e, sqlite3.OperationalError) and is_missing_table_error(e):
        console.print("[red]Error:[/] Database not initialized. Run `appforge init` first.")
    else:
        console.print(f"[red]Error:[/] {str(e)}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def init():
    """Initialize the AppForge database."""
    try:
        initialize_schema(state.settings.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(
    owner_id: str = typer.Argument(..., help="User or team id"),
    team: bool = typer.Option(False, "--team", "-t", help="Owner is a team"),
):
    """Show an owner's current credit balance."""
    try:
        owner = _owner(owner_id, team)
        gate = _gate()
        current = gate.get_balance(owner)
        console.print(f"[bold]Owner:[/bold] {owner}")
        console.print(f"[bold]Period:[/bold] {gate.balances.current_period()}")
        console.print(f"[bold]Balance:[/bold] {_format_credits(current)} credits")
        sys.exit(EXIT_CODE_PASS)
    except (AppForgeError, sqlite3.Error) as e:
        _fail(e)


@app.command()
def topup(
    owner_id: str = typer.Argument(..., help="User or team id"),
    amount: float = typer.Argument(..., help="Credits to add"),
    team: bool = typer.Option(False, "--team", "-t", help="Owner is a team"),
    ref: Optional[str] = typer.Option(None, "--ref", help="External reference"),
):
    """Add purchased credits to an owner."""
    try:
        owner = _owner(owner_id, team)
        gate = _gate()
        entry = gate.add_topup(owner, amount, ref=ref)
        console.print(
            f"[green]✓[/] Added {_format_credits(entry.amount)} credits to {owner} "
            f"(balance {_format_credits(gate.get_balance(owner))})"
        )
        sys.exit(EXIT_CODE_PASS)
    except (AppForgeError, sqlite3.Error) as e:
        _fail(e)


@app.command()
def adjust(
    owner_id: str = typer.Argument(..., help="User or team id"),
    amount: float = typer.Argument(..., help="Signed credit amount"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the adjustment is made"),
    team: bool = typer.Option(False, "--team", "-t", help="Owner is a team"),
):
    """Append a signed admin adjustment to an owner's ledger."""
    try:
        owner = _owner(owner_id, team)
        gate = _gate()
        entry = gate.add_adjustment(owner, amount, reason)
        console.print(
            f"[green]✓[/] Adjusted {owner} by {entry.amount:+,.4f} credits "
            f"(balance {_format_credits(gate.get_balance(owner))})"
        )
        sys.exit(EXIT_CODE_PASS)
    except (AppForgeError, sqlite3.Error) as e:
        _fail(e)


@app.command("set-plan")
def set_plan(
    owner_id: str = typer.Argument(..., help="User or team id"),
    tier: PlanTier = typer.Argument(..., help="FREE, PRO or TEAM"),
    team: bool = typer.Option(False, "--team", "-t", help="Owner is a team"),
):
    """Activate a plan for an owner and issue this month's grant."""
    try:
        owner = _owner(owner_id, team)
        subscription = _resolver().set_plan(owner, tier)
        grant = _gate().ensure_monthly_grant(owner, tier)
        console.print(f"[green]✓[/] {owner} is now on {subscription.tier.value}")
        if grant is not None:
            console.print(f"Granted {_format_credits(grant.amount)} credits for {grant.period_key}")
        sys.exit(EXIT_CODE_PASS)
    except (AppForgeError, sqlite3.Error) as e:
        _fail(e)


@app.command()
def plan(user_id: str = typer.Argument(..., help="User id")):
    """Show a user's effective plan and its limits."""
    try:
        effective = _resolver().get_effective_plan_for_user(user_id)
        limits = get_plan_limits(effective.tier)
        console.print(f"[bold]Tier:[/bold] {effective.tier.value}")
        console.print(f"[bold]Billed to:[/bold] {effective.owner}")
        console.print(f"Max input tokens: {limits.max_input_tokens:,}")
        console.print(f"Max output tokens: {limits.max_output_tokens:,}")
        console.print(f"Max context files: {limits.max_context_files}")
        console.print(f"Backends: {limits.backend_quota if limits.backend_allowed else 'not allowed'}")
        if limits.max_ai_runs_per_day is not None:
            console.print(f"AI runs per day: {limits.max_ai_runs_per_day}")
        sys.exit(EXIT_CODE_PASS)
    except (AppForgeError, sqlite3.Error) as e:
        _fail(e)


@app.command()
def usage(
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Filter by model name"),
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by user id"),
    page: int = typer.Option(1, "--page", help="Page number"),
    page_size: int = typer.Option(50, "--page-size", help="Events per page"),
):
    """List billable AI usage events, newest first."""
    try:
        result = list_usage_events(
            UsageRepository(state.settings.db_path),
            model=model,
            user_id=user_id,
            page=page,
            page_size=page_size,
        )
    except (ValueError, sqlite3.Error) as e:
        _fail(e)
        return

    if not result.events:
        console.print("\n[bold yellow]No AI usage events found[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"AI usage (page {result.page}/{result.total_pages}, {result.total} events)")
    table.add_column("Time")
    table.add_column("User")
    table.add_column("Owner")
    table.add_column("Model")
    table.add_column("Tokens in/out", justify="right")
    table.add_column("Vendor cost", justify="right")
    table.add_column("Credits", justify="right")
    for event in result.events:
        table.add_row(
            event.created_at.strftime("%Y-%m-%d %H:%M"),
            event.user_id,
            str(event.owner),
            event.model,
            f"{event.input_tokens:,}/{event.output_tokens:,}",
            _format_currency(event.vendor_cost_usd),
            _format_credits(event.credits_charged),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats():
    """Show spend and model mix for the current month."""
    settings = state.settings
    try:
        summary = monthly_spend_summary(
            LedgerRepository(settings.db_path),
            UsageRepository(settings.db_path),
            SubscriptionRepository(settings.db_path),
            routing=settings.models.routing(),
            now=utcnow(),
        )
    except sqlite3.Error as e:
        _fail(e)
        return

    console.print(f"\n[bold]AppForge stats for {summary.period}[/bold]")
    console.print("-" * 40)
    console.print(f"Active users (7d): {summary.active_users_7d}")
    console.print(f"Requests: {summary.requests}")
    console.print(f"Credits spent: {_format_credits(summary.credits_spent)}")
    console.print(f"Vendor cost: {_format_currency(summary.vendor_cost_usd)}")
    console.print(f"Cheap model requests: {summary.cheap_model_requests}")
    console.print(f"Strong model requests: {summary.strong_model_requests}")
    for status, count in sorted(summary.backends_by_status.items()):
        console.print(f"Backends {status}: {count}")

    if summary.free_tier_strong_requests:
        console.print(
            f"\n[bold red]FREE tier strong-model requests: "
            f"{summary.free_tier_strong_requests}[/]"
        )
        sys.exit(EXIT_CODE_FAIL)
    console.print("FREE tier strong-model requests: 0")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def runs(limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show")):
    """List recent AI runs with their tool-call metrics."""
    try:
        recent = WorkspaceStore(state.settings.db_path).list_recent_runs(limit)
    except sqlite3.Error as e:
        _fail(e)
        return

    if not recent:
        console.print("\n[bold yellow]No AI runs found[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent AI runs")
    table.add_column("Run")
    table.add_column("User")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("Iterations", justify="right")
    table.add_column("Tools", justify="right")
    table.add_column("Failures", justify="right")
    table.add_column("Retry", justify="right")
    table.add_column("Duration", justify="right")
    for run in recent:
        table.add_row(
            run.id[:8],
            run.user_id,
            run.model,
            run.status.value,
            str(run.iterations),
            str(run.tool_calls_count),
            str(run.patch_failures),
            str(run.retry_count),
            f"{run.duration_ms}ms",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
