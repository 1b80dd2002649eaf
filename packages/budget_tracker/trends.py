"""Month-over-month analytics over the persisted transaction set."""

from __future__ import annotations

import datetime as dt
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal

from .models import Transaction
from .validation import affects_income, affects_spending

_ZERO = Decimal("0")
_DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
# Relative change between the halves of the window that counts as a trend.
_TREND_BAND_PCT = Decimal("10")

type TrendDirection = Literal["up", "down", "stable"]


@dataclass(frozen=True, slots=True)
class CategorySpending:
    category: str
    amount: Decimal
    percentage: float
    transaction_count: int


@dataclass(frozen=True, slots=True)
class MonthlyTrend:
    month: str  # YYYY-MM
    total_spending: Decimal
    total_payments: Decimal
    net_change: Decimal
    transaction_count: int
    category_breakdown: list[CategorySpending]


@dataclass(frozen=True, slots=True)
class CategoryTrend:
    category: str
    months: list[tuple[str, Decimal]]
    total: Decimal
    average: Decimal
    trend: TrendDirection


@dataclass(frozen=True, slots=True)
class MerchantInsight:
    merchant: str
    total_spent: Decimal
    transaction_count: int
    average_transaction: Decimal
    category: str
    last_transaction: dt.date


@dataclass(slots=True)
class _Bucket:
    amount: Decimal = _ZERO
    count: int = 0


@dataclass(frozen=True, slots=True)
class SpendingPatterns:
    day_of_week: list[tuple[str, Decimal, int]] = field(default_factory=list)
    time_of_month: list[tuple[str, Decimal, int]] = field(default_factory=list)


def month_key(day: dt.date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def _window(today: dt.date, months_back: int) -> list[str]:
    keys: list[str] = []
    year, month = today.year, today.month
    for _ in range(months_back):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def monthly_trends(
    transactions: Iterable[Transaction],
    *,
    months_back: int = 12,
    today: dt.date | None = None,
) -> list[MonthlyTrend]:
    """Spending and income per calendar month, oldest first.

    ``total_payments`` counts only EARNED and PASSIVE income.
    """

    keys = _window(today or dt.date.today(), months_back)
    by_month: dict[str, list[Transaction]] = {k: [] for k in keys}
    for tx in transactions:
        bucket = by_month.get(month_key(tx.date))
        if bucket is not None:
            bucket.append(tx)

    trends: list[MonthlyTrend] = []
    for key in keys:
        month_txs = by_month[key]
        spending = payments = _ZERO
        categories: dict[str, _Bucket] = defaultdict(_Bucket)
        for tx in month_txs:
            if affects_spending(tx):
                spending += tx.amount
                if tx.category:
                    categories[tx.category].amount += tx.amount
                    categories[tx.category].count += 1
            elif affects_income(tx):
                payments += tx.amount
        breakdown = [
            CategorySpending(
                category=name,
                amount=b.amount,
                percentage=float(b.amount / spending * 100) if spending > 0 else 0.0,
                transaction_count=b.count,
            )
            for name, b in categories.items()
        ]
        breakdown.sort(key=lambda c: c.amount, reverse=True)
        trends.append(
            MonthlyTrend(
                month=key,
                total_spending=spending,
                total_payments=payments,
                net_change=payments - spending,
                transaction_count=len(month_txs),
                category_breakdown=breakdown,
            )
        )
    return trends


def _direction(amounts: Sequence[Decimal]) -> TrendDirection:
    if len(amounts) < 2:
        return "stable"
    mid = len(amounts) // 2
    first_avg = sum(amounts[:mid], _ZERO) / mid
    second_avg = sum(amounts[mid:], _ZERO) / (len(amounts) - mid)
    if first_avg <= 0:
        return "stable"
    change = (second_avg - first_avg) / first_avg * 100
    if change > _TREND_BAND_PCT:
        return "up"
    if change < -_TREND_BAND_PCT:
        return "down"
    return "stable"


def category_trends(
    transactions: Iterable[Transaction],
    *,
    months_back: int = 12,
    today: dt.date | None = None,
) -> list[CategoryTrend]:
    """Per-category monthly spending with an up/down/stable direction.

    Only months in which the category had spending are included. The
    direction compares the average of the first half of those months with the
    second half, using a 10% band.
    """

    per_category: dict[str, list[tuple[str, Decimal]]] = defaultdict(list)
    for trend in monthly_trends(transactions, months_back=months_back, today=today):
        for cat in trend.category_breakdown:
            per_category[cat.category].append((trend.month, cat.amount))

    out: list[CategoryTrend] = []
    for category, months in per_category.items():
        amounts = [amount for _, amount in months]
        total = sum(amounts, _ZERO)
        out.append(
            CategoryTrend(
                category=category,
                months=months,
                total=total,
                average=total / len(amounts),
                trend=_direction(amounts),
            )
        )
    out.sort(key=lambda t: t.total, reverse=True)
    return out


def merchant_name(tx: Transaction, merchant_names: Mapping[str, str]) -> str:
    """Display name for a transaction's merchant.

    The legacy free-text ``merchant`` wins when present; otherwise the id is
    looked up in ``merchant_names``.
    """

    if tx.merchant:
        return tx.merchant
    if tx.merchant_id:
        return merchant_names.get(tx.merchant_id, "Unknown")
    return "Unknown"


def top_merchants(
    transactions: Iterable[Transaction],
    merchant_names: Mapping[str, str],
    *,
    limit: int = 10,
) -> list[MerchantInsight]:
    totals: dict[str, _Bucket] = defaultdict(_Bucket)
    category: dict[str, str] = {}
    last_seen: dict[str, dt.date] = {}
    for tx in transactions:
        if not affects_spending(tx):
            continue
        name = merchant_name(tx, merchant_names)
        totals[name].amount += tx.amount
        totals[name].count += 1
        category[name] = tx.category or "Uncategorized"
        if name not in last_seen or tx.date > last_seen[name]:
            last_seen[name] = tx.date

    insights = [
        MerchantInsight(
            merchant=name,
            total_spent=b.amount,
            transaction_count=b.count,
            average_transaction=b.amount / b.count,
            category=category[name],
            last_transaction=last_seen[name],
        )
        for name, b in totals.items()
    ]
    insights.sort(key=lambda m: m.total_spent, reverse=True)
    return insights[:limit]


def spending_patterns(transactions: Iterable[Transaction]) -> SpendingPatterns:
    """Spending by weekday and by early (1-10), mid (11-20), late (21+) month."""

    by_day: dict[str, _Bucket] = defaultdict(_Bucket)
    by_part: dict[str, _Bucket] = defaultdict(_Bucket)
    for tx in transactions:
        if not affects_spending(tx):
            continue
        day = _DAY_NAMES[tx.date.weekday()]
        if tx.date.day <= 10:
            part = "early"
        elif tx.date.day <= 20:
            part = "mid"
        else:
            part = "late"
        for bucket in (by_day[day], by_part[part]):
            bucket.amount += tx.amount
            bucket.count += 1

    return SpendingPatterns(
        day_of_week=[(d, by_day[d].amount, by_day[d].count) for d in _DAY_NAMES],
        time_of_month=[(p, by_part[p].amount, by_part[p].count) for p in ("early", "mid", "late")],
    )


__all__ = [
    "CategorySpending",
    "MonthlyTrend",
    "CategoryTrend",
    "MerchantInsight",
    "SpendingPatterns",
    "month_key",
    "monthly_trends",
    "category_trends",
    "merchant_name",
    "top_merchants",
    "spending_patterns",
]
