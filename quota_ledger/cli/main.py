"""
CLI interface for the quota ledger.

Provides operator access to tiers, quota checks and usage reports.
"""

import logging
import sqlite3
import sys
from dataclasses import dataclass
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from quota_ledger.config.loader import LedgerConfig, default_config, load_ledger_config
from quota_ledger.core.accounting import UsageAccountingService
from quota_ledger.core.categories import UsageCategory
from quota_ledger.core.periods import month_key, utc_now
from quota_ledger.core.quota import QuotaGate
from quota_ledger.core.tiers import parse_tier
from quota_ledger.storage.models import BreakdownDimension
from quota_ledger.storage.repository import LedgerRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_DENIED = 2


@dataclass
class CliState:
    config: LedgerConfig
    repository: LedgerRepository

    @property
    def accounting(self) -> UsageAccountingService:
        return UsageAccountingService(self.repository, pricing=self.config.pricing)

    @property
    def gate(self) -> QuotaGate:
        return QuotaGate(self.repository, tiers=self.config.tiers)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(
        None,
        "--db",
        envvar="QUOTA_LEDGER_DB",
        help="Path to the ledger database (overrides the config file)"
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML ledger configuration"
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level for ledger messages"
    ),
):
    """Quota Ledger CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        ledger_config = load_ledger_config(config) if config else default_config()
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    ctx.obj = CliState(
        config=ledger_config,
        repository=LedgerRepository(db or ledger_config.database_path),
    )
    if ctx.invoked_subcommand is None:
        console.print("Quota Ledger - Use --help to see available commands")


def _missing_schema(e: sqlite3.OperationalError) -> None:
    if "no such table" in str(e).lower():
        console.print("\n[bold yellow]Ledger database is not initialized[/]")
        console.print("Run `quota-ledger init` first.\n")
        sys.exit(EXIT_CODE_FAIL)
    raise e


def _format_limit(value: Optional[int]) -> str:
    return "Unlimited" if value is None else f"{value:,}"


def _format_currency(amount: float) -> str:
    return f"${amount:,.6f}"


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database."""
    state: CliState = ctx.obj
    try:
        state.repository.initialize_schema()
        console.print(f"[green]✓[/] Database initialized at {state.repository.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("set-tier")
def set_tier(ctx: typer.Context, user_id: str, tier: str):
    """Change a user's subscription tier."""
    state: CliState = ctx.obj
    try:
        state.gate.set_tier(user_id, parse_tier(tier))
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except sqlite3.OperationalError as e:
        _missing_schema(e)
    console.print(f"[green]✓[/] {user_id} is now on the {tier.lower()} tier")


@app.command()
def check(
    ctx: typer.Context,
    user_id: str,
    consume: bool = typer.Option(
        False,
        "--consume",
        help="Also consume one operation when allowed (atomic)"
    ),
):
    """
    Check whether a user may start a metered operation.

    Exits with code 2 when the user has reached a limit.
    """
    state: CliState = ctx.obj
    gate = state.gate
    try:
        decision = gate.check_and_increment(user_id) if consume else gate.check_limits(user_id)
    except sqlite3.OperationalError as e:
        _missing_schema(e)

    if decision.allowed:
        console.print(f"[green]Allowed[/] ({decision.tier.value} tier)")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]Denied[/] ({decision.limit_type.value}): {decision.reason}")
    sys.exit(EXIT_CODE_DENIED)


@app.command()
def usage(ctx: typer.Context, user_id: str):
    """Show a user's quota and usage for today and this month."""
    state: CliState = ctx.obj
    try:
        summary = state.gate.get_usage_summary(user_id)
        subscription = state.gate.get_subscription(user_id)
        monthly = state.accounting.get_monthly_usage(user_id)
        breakdown = state.accounting.get_usage_breakdown(user_id)
        lifetime = state.accounting.get_lifetime_usage(user_id)
    except sqlite3.OperationalError as e:
        _missing_schema(e)

    console.print(f"\n[bold]Usage for {user_id}[/bold] ({summary.tier.value} tier)")
    if subscription.updated_at is not None:
        console.print(f"Tier set {subscription.updated_at.strftime('%Y-%m-%d %H:%M UTC')}")
    console.print("-" * 40)

    table = Table()
    table.add_column("Quota")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Resets")
    table.add_row(
        "Operations today",
        f"{summary.operations_today:,}",
        _format_limit(summary.daily_limit),
        _format_limit(summary.daily_remaining),
        summary.next_daily_reset.strftime("%Y-%m-%d %H:%M UTC"),
    )
    table.add_row(
        "Tokens this month",
        f"{summary.tokens_this_month:,}",
        _format_limit(summary.monthly_token_limit),
        _format_limit(summary.tokens_remaining),
        summary.next_monthly_reset.strftime("%Y-%m-%d"),
    )
    console.print(table)

    console.print(f"Estimated cost this month: {_format_currency(monthly.estimated_cost)}")
    console.print(f"Lifetime tokens: {lifetime.total_tokens:,} ({lifetime.request_count:,} calls)")

    categories = Table(title=f"By category ({monthly.month})")
    categories.add_column("Category")
    categories.add_column("Transactions", justify="right")
    categories.add_column("Tokens", justify="right")
    for category in UsageCategory:
        count = monthly.category_counts.get(category, 0)
        tokens = monthly.category_tokens.get(category, 0)
        if count or tokens:
            categories.add_row(category.value, f"{count:,}", f"{tokens:,}")
    if categories.row_count:
        console.print(categories)

    for dimension in BreakdownDimension:
        rows = [entry for entry in breakdown if entry.dimension == dimension]
        if not rows:
            continue
        table = Table(title=f"By {dimension.value} ({monthly.month})")
        table.add_column(dimension.value.capitalize())
        table.add_column("Calls", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        for entry in rows:
            table.add_row(
                entry.key,
                f"{entry.request_count:,}",
                f"{entry.total_tokens:,}",
                _format_currency(entry.estimated_cost),
            )
        console.print(table)


@app.command()
def transaction(ctx: typer.Context, user_id: str, transaction_id: str):
    """Show a transaction's totals and its subcalls."""
    state: CliState = ctx.obj
    accounting = state.accounting
    try:
        record = accounting.get_transaction_usage(user_id, transaction_id)
        subcalls = accounting.get_subcalls(user_id, transaction_id)
    except sqlite3.OperationalError as e:
        _missing_schema(e)

    if record is None:
        console.print(f"[red]No transaction {transaction_id} for {user_id}[/]")
        sys.exit(EXIT_CODE_FAIL)

    category = record.category.value if record.category else "unknown"
    console.print(f"\n[bold]Transaction:[/bold] {transaction_id} ({category}, {record.model})")
    console.print(f"Month: {record.month}  Completed: {'yes' if record.completed else 'no'}")
    console.print(
        f"Tokens: {record.total_prompt_tokens:,} prompt + {record.total_completion_tokens:,} completion"
        f" = {record.total_tokens:,}"
    )
    console.print(f"Estimated cost: {_format_currency(record.estimated_cost)}")

    if subcalls:
        table = Table(title="Subcalls (latest per type)")
        table.add_column("Type")
        table.add_column("Model")
        table.add_column("Prompt", justify="right")
        table.add_column("Completion", justify="right")
        table.add_column("Total", justify="right")
        table.add_column("Cost", justify="right")
        for subcall in subcalls:
            table.add_row(
                subcall.subcall_type,
                subcall.model,
                f"{subcall.prompt_tokens:,}",
                f"{subcall.completion_tokens:,}",
                f"{subcall.total_tokens:,}",
                _format_currency(subcall.estimated_cost),
            )
        console.print(table)


@app.command()
def reconcile(
    ctx: typer.Context,
    user_id: str,
    month: Optional[str] = typer.Option(
        None,
        "--month",
        "-m",
        help="Month to reconcile as YYYY-MM (defaults to the current month)"
    ),
):
    """
    Compare a month's aggregate with the sum of its transactions.

    Exits with code 1 when the token totals disagree.
    """
    state: CliState = ctx.obj
    month = month or month_key(utc_now())
    try:
        aggregate = state.repository.get_monthly_aggregate(user_id, month)
        sums = state.repository.sum_transactions_for_month(user_id, month)
    except sqlite3.OperationalError as e:
        _missing_schema(e)

    console.print(f"\n[bold]Reconciliation for {user_id}, {month}[/bold]")
    console.print(f"Transactions: {sums['transactions']:,}")
    console.print(f"Aggregate tokens: {aggregate.total_tokens:,}")
    console.print(f"Transaction tokens: {sums['total_tokens']:,}")

    if aggregate.total_tokens == sums["total_tokens"]:
        console.print("[green]✓[/] Totals match")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]Mismatch:[/] {aggregate.total_tokens - sums['total_tokens']:+,} tokens")
    sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
