from __future__ import annotations

from decimal import Decimal

from budget_tracker.models import IncomeClass
from budget_tracker.summary import (
    get_expense_categories,
    get_income_sources,
    savings_rate,
    summarize_period,
)
from tests.helpers.store import adjustment, expense, inflow, transfer


def test_net_worth_change_is_income_minus_expenses() -> None:
    summary = summarize_period([expense(120, "Groceries"), inflow(2000, IncomeClass.EARNED)])

    assert summary.net_worth_change == Decimal("1880")
    assert summary.income.earned == Decimal("2000")
    assert summary.expenses.by_category == {"Groceries": Decimal("120")}


def test_income_total_includes_all_four_buckets() -> None:
    summary = summarize_period(
        [
            inflow(1000, IncomeClass.EARNED),
            inflow(100, IncomeClass.PASSIVE, "Interest"),
            inflow(50, IncomeClass.REIMBURSEMENT, "Cashback"),
            inflow(25, IncomeClass.WINDFALL, "Gift"),
            inflow(999, IncomeClass.EARNED, affects_budget=False),
        ]
    )
    assert summary.income.total == Decimal("1175")
    assert summary.income.windfall == Decimal("25")


def test_transfers_and_adjustments_tallied_separately() -> None:
    summary = summarize_period(
        [transfer(300), transfer(50), adjustment(7), expense(10), expense(5, affects_budget=False)]
    )
    assert (summary.transfers.total, summary.transfers.count) == (Decimal("350"), 2)
    assert (summary.adjustments.total, summary.adjustments.count) == (Decimal("7"), 1)
    assert summary.expenses.total == Decimal("10")
    assert summary.expenses.count == 1
    assert summary.net_worth_change == Decimal("-10")


def test_income_sources_sorted_with_percentages() -> None:
    sources = get_income_sources(
        [
            inflow(300, IncomeClass.EARNED),
            inflow(100, IncomeClass.WINDFALL, "Gift"),
        ]
    )
    assert [(s.source, s.amount, s.percentage) for s in sources] == [
        ("Earned Income", Decimal("300"), 75.0),
        ("Windfalls", Decimal("100"), 25.0),
    ]
    assert get_income_sources([expense(10)]) == []


def test_expense_categories_largest_first() -> None:
    rows = get_expense_categories(
        [expense(30, "Coffee"), expense(60, "Groceries"), expense(10, "Coffee")]
    )
    assert [(r.category, r.amount, r.count) for r in rows] == [
        ("Groceries", Decimal("60"), 1),
        ("Coffee", Decimal("40"), 2),
    ]
    assert rows[0].percentage == 60.0


def test_savings_rate() -> None:
    assert savings_rate([inflow(1000), expense(250)]) == 75.0
    assert savings_rate([expense(250)]) == 0.0
