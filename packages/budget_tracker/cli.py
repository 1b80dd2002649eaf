"""Typer console interface for ``budget_tracker``.

The root callback loads a local ``.env`` with ``python-dotenv`` (without
overriding variables already set) and configures logging before any command
runs. Business logic lives in :mod:`budget_tracker.state`,
:mod:`budget_tracker.store` and :mod:`budget_tracker.workflows`.
"""

from __future__ import annotations

import datetime as dt
import json
import math
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from typer.models import OptionInfo

from .budgets import alert_level
from .logging_setup import configure_logging
from .metrics import BankAccountMetrics, CreditCardMetrics
from .migrations import CURRENT_SCHEMA_VERSION, MigrationError
from .state import AppState
from .store import StoreImportError
from .summary import get_expense_categories, get_income_sources, savings_rate
from .trends import monthly_trends
from .validation import TransactionValidationError

console = Console()

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Personal budget tracker: import bank CSVs, classify transactions, review budgets.",
)

# Module-level option objects keep calls out of parameter defaults (ruff B008).
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    "--database-url",
    help="Override BUDGET_TRACKER_DATABASE_URL (falls back to env var).",
)
MONTH_OPTION: OptionInfo = typer.Option(
    "--month", help="Calendar month as YYYY-MM (default: current month)."
)


def _parse_month(value: str | None) -> dt.date:
    if not value:
        return dt.date.today().replace(day=1)
    try:
        return dt.datetime.strptime(value, "%Y-%m").date()
    except ValueError as e:
        raise typer.BadParameter(f"expected YYYY-MM, got {value!r}") from e


def _load_state(database_url: str | None) -> AppState:
    state = AppState(database_url)
    try:
        state.load_data()
    except MigrationError as e:
        console.print(f"[red]Error:[/red] store cannot be opened: {e}")
        raise typer.Exit(2) from e
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    return state


def _money(value: object) -> str:
    return f"{value:,.2f}" if value is not None else "-"


def _pct(value: float | None) -> str:
    if value is None:
        return "-"
    return "∞" if math.isinf(value) else f"{value:.1f}%"


@app.command("migrate")
def migrate_cmd(
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Open the store and bring it to the current schema version."""

    from .store import open_store

    try:
        url = open_store(database_url)
    except MigrationError as e:
        console.print(f"[red]Error:[/red] migration failed: {e}")
        raise typer.Exit(2) from e
    console.print(f"[green]Store ready[/green] at schema v{CURRENT_SCHEMA_VERSION}: {url}")


@app.command("import-csv")
def import_csv_cmd(
    csv_path: Annotated[Path, typer.Option("--csv-path", help="Bank CSV export to import.")],
    account_id: Annotated[
        str | None, typer.Option("--account-id", help="Target account (default account if omitted).")
    ] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Import a CSV: de-duplicate, apply merchant rules, classify with AI, save."""

    from .workflows.import_flow import import_csv

    try:
        report = import_csv(
            csv_path,
            account_id=account_id,
            database_url=database_url,
            on_progress=lambda msg: console.print(f"[cyan]{msg}[/cyan]"),
        )
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] File not found: {csv_path}")
        raise typer.Exit(1) from e
    except KeyError as e:
        console.print(f"[red]Error:[/red] {e.args[0] if e.args else e}")
        raise typer.Exit(1) from e
    except MigrationError as e:
        console.print(f"[red]Error:[/red] store cannot be opened: {e}")
        raise typer.Exit(2) from e

    for err in report.row_errors:
        console.print(f"[yellow]{err}[/yellow]")
    table = Table(title=f"Import: {report.source_file}")
    table.add_column("Parsed", justify="right")
    table.add_column("Duplicates", justify="right")
    table.add_column("Imported", justify="right")
    table.add_column("By rule", justify="right")
    table.add_column("By AI", justify="right")
    table.add_column("Uncategorized", justify="right")
    cls = report.classification
    table.add_row(
        str(report.parsed),
        str(report.duplicates),
        str(len(report.imported)),
        str(cls.rule_matched if cls else 0),
        str(cls.ai_classified if cls else 0),
        str(cls.uncategorized if cls else 0),
    )
    console.print(table)
    if cls is not None and cls.ai_skipped:
        console.print("[yellow]No API key configured; AI classification was skipped.[/yellow]")


@app.command("recategorize")
def recategorize_cmd(
    tx_id: Annotated[str, typer.Argument(help="Transaction id.")],
    category: Annotated[str, typer.Argument(help="New category path, e.g. 'Food > Coffee'.")],
    remember: Annotated[
        bool, typer.Option("--remember/--no-remember", help="Remember for this merchant.")
    ] = True,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Set a transaction's category manually."""

    state = _load_state(database_url)
    try:
        tx = state.recategorize(tx_id, category, remember=remember)
    except KeyError as e:
        console.print(f"[red]Error:[/red] {e.args[0]}")
        raise typer.Exit(1) from e
    except TransactionValidationError as e:
        console.print(f"[red]Invalid:[/red] {e}")
        raise typer.Exit(1) from e
    console.print(f"{tx.id}\t{tx.category}")


@app.command("summary")
def summary_cmd(
    month: Annotated[str | None, MONTH_OPTION] = None,
    account_id: Annotated[
        str, typer.Option("--account-id", help="Account id or 'all'.")
    ] = "all",
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Income, expenses and net worth change for a month."""

    state = _load_state(database_url)
    state.selected_account_id = account_id
    when = _parse_month(month)
    period = state.transactions_for_month(when)
    summary = state.summary(when)

    table = Table(title=f"Summary {when:%Y-%m}")
    table.add_column("Metric")
    table.add_column("Amount", justify="right")
    table.add_row("Income", _money(summary.income.total))
    table.add_row("Expenses", _money(summary.expenses.total))
    table.add_row("Transfers", _money(summary.transfers.total))
    table.add_row("Adjustments", _money(summary.adjustments.total))
    table.add_row("Net worth change", _money(summary.net_worth_change))
    table.add_row("Savings rate", _pct(savings_rate(period)))
    console.print(table)

    sources = Table(title="Income sources")
    sources.add_column("Source")
    sources.add_column("Amount", justify="right")
    sources.add_column("Share", justify="right")
    for src in get_income_sources(period):
        sources.add_row(src.source, _money(src.amount), _pct(src.percentage))
    console.print(sources)

    expenses = Table(title="Expenses by category")
    expenses.add_column("Category")
    expenses.add_column("Amount", justify="right")
    expenses.add_column("Share", justify="right")
    expenses.add_column("Count", justify="right")
    for row in get_expense_categories(period):
        expenses.add_row(row.category, _money(row.amount), _pct(row.percentage), str(row.count))
    console.print(expenses)


@app.command("budgets")
def budgets_cmd(
    month: Annotated[str | None, MONTH_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Budget status for a month."""

    state = _load_state(database_url)
    table = Table(title=f"Budgets {_parse_month(month):%Y-%m}")
    for col in ("Type", "Target", "Limit", "Spent", "Remaining", "Used", "Status"):
        table.add_column(col, justify="left" if col in ("Type", "Target", "Status") else "right")
    styles = {"OK": "green", "NEAR_LIMIT": "yellow", "OVER_BUDGET": "red"}
    for status in state.budget_statuses(_parse_month(month)):
        level = alert_level(status)
        table.add_row(
            str(status.budget.type),
            str(status.budget.target_id),
            _money(status.budget.monthly_limit),
            _money(status.spent),
            _money(status.remaining),
            _pct(status.percentage),
            f"[{styles[level]}]{level}[/{styles[level]}]",
        )
    console.print(table)


@app.command("accounts")
def accounts_cmd(
    month: Annotated[str | None, MONTH_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Per-account metrics for a month."""

    state = _load_state(database_url)
    when = _parse_month(month)

    banks = Table(title=f"Bank accounts {when:%Y-%m}")
    for col in ("Account", "Income", "Spending", "Net cash flow", "Reimbursements", "Transfers"):
        banks.add_column(col, justify="left" if col == "Account" else "right")
    cards = Table(title=f"Credit cards {when:%Y-%m}")
    for col in ("Account", "Spend", "Payments", "Interest", "Fees", "Refunds", "Utilization"):
        cards.add_column(col, justify="left" if col == "Account" else "right")

    for account in state.accounts:
        label = f"{account.name}{' *' if account.is_default else ''}"
        metrics = state.account_metrics(account.id, when)
        if isinstance(metrics, BankAccountMetrics):
            banks.add_row(
                label,
                _money(metrics.total_income),
                _money(metrics.total_spending),
                _money(metrics.net_cash_flow),
                _money(metrics.reimbursements),
                _money(metrics.transfers),
            )
        elif isinstance(metrics, CreditCardMetrics):
            cards.add_row(
                label,
                _money(metrics.spend_this_period),
                _money(metrics.payments_this_period),
                _money(metrics.interest_charged),
                _money(metrics.fees_charged),
                _money(metrics.refunds),
                _pct(metrics.utilization_percent),
            )
    console.print(banks)
    console.print(cards)


@app.command("trends")
def trends_cmd(
    months: Annotated[int, typer.Option("--months", min=1, max=60, help="Months back.")] = 6,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Spending and income per month."""

    state = _load_state(database_url)
    table = Table(title=f"Last {months} months")
    for col in ("Month", "Spending", "Income", "Net", "Transactions", "Top category"):
        table.add_column(col, justify="left" if col in ("Month", "Top category") else "right")
    for trend in monthly_trends(state.transactions_for_account(), months_back=months):
        top = trend.category_breakdown[0].category if trend.category_breakdown else "-"
        table.add_row(
            trend.month,
            _money(trend.total_spending),
            _money(trend.total_payments),
            _money(trend.net_change),
            str(trend.transaction_count),
            top,
        )
    console.print(table)


@app.command("export")
def export_cmd(
    output: Annotated[Path, typer.Option("--output", "-o", help="Backup file to write.")],
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Write every collection to a JSON backup."""

    state = _load_state(database_url)
    document = state.export_data()
    output.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
    console.print(
        f"[green]Exported[/green] {len(document['transactions'])} transactions to {output}"
    )


@app.command("restore")
def restore_cmd(
    input_path: Annotated[Path, typer.Option("--input", "-i", help="Backup file to import.")],
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Import a JSON backup (older versions are upgraded first)."""

    state = _load_state(database_url)
    try:
        counts = state.import_data(input_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] File not found: {input_path}")
        raise typer.Exit(1) from e
    except StoreImportError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    table = Table(title="Restored")
    table.add_column("Collection")
    table.add_column("Records", justify="right")
    for name, n in counts.items():
        table.add_row(name, str(n))
    console.print(table)


@app.callback()
def _root(
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="Override BUDGET_TRACKER_LOG_LEVEL.")
    ] = None,
) -> None:
    """Load ``.env`` from the working directory and configure logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging(log_level)


if __name__ == "__main__":  # pragma: no cover
    app()
