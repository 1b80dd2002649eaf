"""Period roll-ups: income by class, expenses by category, transfers, adjustments.

``income.total`` here is the sum of all four income buckets (earned, passive,
reimbursement, windfall) and drives ``net_worth_change``. It is deliberately
broader than the account-level ``total_income`` in :mod:`budget_tracker.metrics`.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import assert_never

from .models import IncomeClass, Transaction, TransactionType

_ZERO = Decimal("0")


@dataclass(slots=True)
class IncomeBreakdown:
    earned: Decimal = _ZERO
    passive: Decimal = _ZERO
    reimbursement: Decimal = _ZERO
    windfall: Decimal = _ZERO

    @property
    def total(self) -> Decimal:
        return self.earned + self.passive + self.reimbursement + self.windfall


@dataclass(slots=True)
class ExpenseBreakdown:
    total: Decimal = _ZERO
    by_category: dict[str, Decimal] = field(default_factory=dict)
    count_by_category: dict[str, int] = field(default_factory=dict)
    count: int = 0


@dataclass(slots=True)
class Tally:
    total: Decimal = _ZERO
    count: int = 0


@dataclass(slots=True)
class FinancialSummary:
    income: IncomeBreakdown = field(default_factory=IncomeBreakdown)
    expenses: ExpenseBreakdown = field(default_factory=ExpenseBreakdown)
    # Raw volume; transfers are net-zero across the user's accounts.
    transfers: Tally = field(default_factory=Tally)
    adjustments: Tally = field(default_factory=Tally)

    @property
    def net_worth_change(self) -> Decimal:
        return self.income.total - self.expenses.total

    @property
    def cash_flow(self) -> Decimal:
        return self.income.total + self.expenses.total + self.transfers.total


@dataclass(frozen=True, slots=True)
class IncomeSource:
    source: str
    amount: Decimal
    percentage: float


@dataclass(frozen=True, slots=True)
class ExpenseCategory:
    category: str
    amount: Decimal
    percentage: float
    count: int


def _add_income(income: IncomeBreakdown, tx: Transaction) -> None:
    if tx.income_class == IncomeClass.PASSIVE:
        income.passive += tx.amount
    elif tx.income_class == IncomeClass.REIMBURSEMENT:
        income.reimbursement += tx.amount
    elif tx.income_class == IncomeClass.WINDFALL:
        income.windfall += tx.amount
    else:
        # EARNED, and inflows with no (or an ADJUSTMENT) class.
        income.earned += tx.amount


def summarize_period(period_transactions: Iterable[Transaction]) -> FinancialSummary:
    summary = FinancialSummary()
    for tx in period_transactions:
        kind = TransactionType(tx.type)
        if kind is TransactionType.INFLOW:
            if tx.affects_budget:
                _add_income(summary.income, tx)
        elif kind is TransactionType.EXPENSE:
            if tx.affects_budget:
                expenses = summary.expenses
                expenses.total += tx.amount
                expenses.count += 1
                if tx.category:
                    expenses.by_category[tx.category] = (
                        expenses.by_category.get(tx.category, _ZERO) + tx.amount
                    )
                    expenses.count_by_category[tx.category] = (
                        expenses.count_by_category.get(tx.category, 0) + 1
                    )
        elif kind is TransactionType.TRANSFER:
            summary.transfers.total += tx.amount
            summary.transfers.count += 1
        elif kind is TransactionType.ADJUSTMENT:
            summary.adjustments.total += tx.amount
            summary.adjustments.count += 1
        else:
            assert_never(kind)
    return summary


def _pct(part: Decimal, whole: Decimal) -> float:
    return float(part / whole * 100)


def get_income_sources(period_transactions: Iterable[Transaction]) -> list[IncomeSource]:
    """Non-zero income buckets with their share of ``income.total``, largest first."""

    income = summarize_period(period_transactions).income
    total = income.total
    if total == 0:
        return []
    buckets = (
        ("Earned Income", income.earned),
        ("Passive Income", income.passive),
        ("Reimbursements", income.reimbursement),
        ("Windfalls", income.windfall),
    )
    sources = [
        IncomeSource(source=name, amount=amount, percentage=_pct(amount, total))
        for name, amount in buckets
        if amount > 0
    ]
    sources.sort(key=lambda s: s.amount, reverse=True)
    return sources


def get_expense_categories(period_transactions: Iterable[Transaction]) -> list[ExpenseCategory]:
    expenses = summarize_period(period_transactions).expenses
    if expenses.total == 0:
        return []
    rows = [
        ExpenseCategory(
            category=category,
            amount=amount,
            percentage=_pct(amount, expenses.total),
            count=expenses.count_by_category[category],
        )
        for category, amount in expenses.by_category.items()
        if amount > 0
    ]
    rows.sort(key=lambda r: r.amount, reverse=True)
    return rows


def savings_rate(period_transactions: Iterable[Transaction]) -> float:
    """``net_worth_change`` as a percentage of ``income.total`` (0 without income)."""

    summary = summarize_period(period_transactions)
    if summary.income.total == 0:
        return 0.0
    return _pct(summary.net_worth_change, summary.income.total)


__all__ = [
    "IncomeBreakdown",
    "ExpenseBreakdown",
    "Tally",
    "FinancialSummary",
    "IncomeSource",
    "ExpenseCategory",
    "summarize_period",
    "get_income_sources",
    "get_expense_categories",
    "savings_rate",
]
