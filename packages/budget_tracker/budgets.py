"""Monthly spend-versus-limit status for budgets.

A budget targets one dimension (``BudgetType``): a category with its
subcategories, an exact subcategory path, a tag, or a merchant. Only spending
(``affects_spending``) is counted, so income, transfers and adjustments never
move a budget.

Callers that alert must check ``is_over_budget`` before ``is_near_limit``:
an over-budget status is also near its limit. :func:`alert_level` does this.
"""

from __future__ import annotations

import calendar
import datetime as dt
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import assert_never

from .models import Budget, BudgetType, Transaction
from .taxonomy import full_path, matches_category
from .validation import affects_spending


class AlertLevel(StrEnum):
    OK = "OK"
    NEAR_LIMIT = "NEAR_LIMIT"
    OVER_BUDGET = "OVER_BUDGET"


@dataclass(frozen=True, slots=True)
class BudgetStatus:
    budget: Budget
    spent: Decimal
    # May be negative once the limit is exceeded.
    remaining: Decimal
    percentage: float
    is_over_budget: bool
    is_near_limit: bool


def month_bounds(month: dt.date) -> tuple[dt.date, dt.date]:
    """Return the first and last day of ``month``'s calendar month."""

    last_day = calendar.monthrange(month.year, month.month)[1]
    return month.replace(day=1), month.replace(day=last_day)


def matches_target(budget: Budget, tx: Transaction) -> bool:
    """Whether ``tx`` falls under the budget's target and account scope."""

    if budget.account_id and tx.account_id != budget.account_id:
        return False
    target = budget.target_id or budget.category or ""
    kind = BudgetType(budget.type)
    if kind is BudgetType.CATEGORY:
        return matches_category(tx.category, target, include_children=True)
    elif kind is BudgetType.SUBCATEGORY:
        return tx.category is not None and full_path(tx.category) == full_path(target)
    elif kind is BudgetType.TAG:
        return target in tx.tags
    elif kind is BudgetType.MERCHANT:
        return tx.merchant_id == target
    else:
        assert_never(kind)


def _percentage(spent: Decimal, limit: Decimal) -> float:
    if limit <= 0:
        # A non-positive limit cannot be reached by spending zero.
        return math.inf if spent > 0 else 0.0
    return float(spent / limit * 100)


def budget_status(
    budget: Budget,
    transactions: Iterable[Transaction],
    month: dt.date,
) -> BudgetStatus:
    """Compute spending against ``budget`` for the calendar month of ``month``.

    The month bracket is inclusive at both ends.
    """

    start, end = month_bounds(month)
    spent = sum(
        (
            tx.amount
            for tx in transactions
            if start <= tx.date <= end and affects_spending(tx) and matches_target(budget, tx)
        ),
        Decimal("0"),
    )
    limit = budget.monthly_limit
    percentage = _percentage(spent, limit)
    return BudgetStatus(
        budget=budget,
        spent=spent,
        remaining=limit - spent,
        percentage=percentage,
        is_over_budget=spent > limit,
        is_near_limit=percentage >= budget.alert_threshold,
    )


def all_budget_statuses(
    budgets: Iterable[Budget],
    transactions: Sequence[Transaction],
    month: dt.date,
) -> list[BudgetStatus]:
    return [budget_status(b, transactions, month) for b in budgets]


def alert_level(status: BudgetStatus) -> AlertLevel:
    if status.is_over_budget:
        return AlertLevel.OVER_BUDGET
    if status.is_near_limit:
        return AlertLevel.NEAR_LIMIT
    return AlertLevel.OK


def find_conflicting_budget(budgets: Iterable[Budget], candidate: Budget) -> Budget | None:
    """Return an existing budget for the same ``(type, targetId, accountId)``.

    One budget per target is a soft rule: the caller asks the user before
    replacing the budget returned here.
    """

    key = (BudgetType(candidate.type), candidate.target_id, candidate.account_id)
    for existing in budgets:
        if existing.id == candidate.id:
            continue
        if (BudgetType(existing.type), existing.target_id, existing.account_id) == key:
            return existing
    return None


__all__ = [
    "AlertLevel",
    "BudgetStatus",
    "month_bounds",
    "matches_target",
    "budget_status",
    "all_budget_statuses",
    "alert_level",
    "find_conflicting_budget",
]
