"""Per-account and cross-account financial metrics.

Bank accounts are assets and credit cards are liabilities, so the same
transactions mean different things depending on which account they touch.
:func:`compute_account_metrics` dispatches on the account variant and returns
the matching metrics record.

Notes
-----
- "Total income" here counts only EARNED and PASSIVE inflows. The period
  summary in :mod:`budget_tracker.summary` uses a broader total that also
  includes reimbursements and windfalls; the two are different metrics.
- A credit-card payment is a TRANSFER into the card. It is never derived from
  EXPENSE records, so paying a card is not counted as spending on either side.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Literal, assert_never

from .models import (
    BankAccount,
    CreditCardAccount,
    IncomeClass,
    PaymentStatus,
    Transaction,
    TransactionType,
)
from .validation import affects_income, affects_spending

_ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class BankAccountMetrics:
    account_type: Literal["BANK"]
    current_balance: Decimal | None
    available_balance: Decimal | None
    net_cash_flow: Decimal
    total_income: Decimal
    total_spending: Decimal
    earned_income: Decimal
    passive_income: Decimal
    reimbursements: Decimal
    transfers: Decimal


@dataclass(frozen=True, slots=True)
class CreditCardMetrics:
    account_type: Literal["CREDIT_CARD"]
    balance_owed: Decimal | None
    available_credit: Decimal | None
    credit_limit: Decimal | None
    utilization_percent: float | None
    statement_day: int | None
    due_day: int | None
    min_payment: Decimal | None
    payment_status: PaymentStatus | None
    spend_this_period: Decimal
    payments_this_period: Decimal
    interest_charged: Decimal
    fees_charged: Decimal
    refunds: Decimal


type AccountMetrics = BankAccountMetrics | CreditCardMetrics


def _is_reimbursement(tx: Transaction) -> bool:
    return tx.type == TransactionType.INFLOW and tx.income_class == IncomeClass.REIMBURSEMENT


def bank_account_metrics(
    account: BankAccount,
    period_transactions: Iterable[Transaction],
) -> BankAccountMetrics:
    """Cash-flow metrics for a bank account.

    Only transactions recorded on the account count; a transfer counts when
    either side is this account. Reimbursements are reported on their own and
    are not part of ``total_income``.
    """

    total_income = total_spending = _ZERO
    earned = passive = reimbursements = transfers = _ZERO

    for tx in period_transactions:
        if tx.type == TransactionType.TRANSFER:
            if account.id in (tx.account_id, tx.to_account_id):
                transfers += tx.amount
            continue
        if tx.account_id != account.id:
            continue
        if affects_spending(tx):
            total_spending += tx.amount
        elif affects_income(tx):
            total_income += tx.amount
            if tx.income_class == IncomeClass.EARNED:
                earned += tx.amount
            else:
                passive += tx.amount
        elif _is_reimbursement(tx) and tx.affects_budget:
            reimbursements += tx.amount

    return BankAccountMetrics(
        account_type="BANK",
        current_balance=account.current_balance,
        available_balance=account.available_balance,
        net_cash_flow=total_income - total_spending,
        total_income=total_income,
        total_spending=total_spending,
        earned_income=earned,
        passive_income=passive,
        reimbursements=reimbursements,
        transfers=transfers,
    )


def utilization_percent(
    balance_owed: Decimal | None, credit_limit: Decimal | None
) -> float | None:
    """``balance / limit * 100``, or ``None`` without a positive limit and a balance."""

    if balance_owed is None or credit_limit is None or credit_limit <= 0:
        return None
    return float(balance_owed / credit_limit * 100)


def credit_card_metrics(
    account: CreditCardAccount,
    period_transactions: Iterable[Transaction],
) -> CreditCardMetrics:
    """Liability metrics for a credit card.

    Interest and fees are sub-sums of ``spend_this_period`` keyed on the
    category text; a category mentioning both counts as interest.
    """

    spend = payments = interest = fees = refunds = _ZERO

    for tx in period_transactions:
        if tx.type == TransactionType.TRANSFER:
            if tx.to_account_id == account.id:
                payments += tx.amount
            continue
        if tx.account_id != account.id:
            continue
        if tx.type == TransactionType.EXPENSE:
            spend += tx.amount
            label = (tx.category or "").lower()
            if "interest" in label:
                interest += tx.amount
            elif "fee" in label:
                fees += tx.amount
        elif _is_reimbursement(tx):
            refunds += tx.amount

    return CreditCardMetrics(
        account_type="CREDIT_CARD",
        balance_owed=account.current_balance,
        available_credit=account.available_credit,
        credit_limit=account.credit_limit,
        utilization_percent=utilization_percent(account.current_balance, account.credit_limit),
        statement_day=account.statement_day,
        due_day=account.due_day,
        min_payment=account.min_payment,
        payment_status=account.payment_status,
        spend_this_period=spend,
        payments_this_period=payments,
        interest_charged=interest,
        fees_charged=fees,
        refunds=refunds,
    )


def compute_account_metrics(
    account: BankAccount | CreditCardAccount,
    period_transactions: Iterable[Transaction],
) -> AccountMetrics:
    if isinstance(account, BankAccount):
        return bank_account_metrics(account, period_transactions)
    elif isinstance(account, CreditCardAccount):
        return credit_card_metrics(account, period_transactions)
    else:
        assert_never(account)


# ---- Cross-account helpers ---------------------------------------------------


def get_global_spending(transactions: Iterable[Transaction]) -> Decimal:
    return sum((tx.amount for tx in transactions if affects_spending(tx)), _ZERO)


def get_global_income(
    transactions: Iterable[Transaction],
    *,
    include_reimbursements: bool = False,
) -> Decimal:
    """EARNED and PASSIVE income, optionally plus budget-affecting reimbursements."""

    total = _ZERO
    for tx in transactions:
        if affects_income(tx):
            total += tx.amount
        elif include_reimbursements and _is_reimbursement(tx) and tx.affects_budget:
            total += tx.amount
    return total


def get_credit_card_payments(
    transactions: Iterable[Transaction],
    accounts: Iterable[BankAccount | CreditCardAccount],
) -> Decimal:
    """Sum of TRANSFERs whose destination is a credit-card account."""

    card_ids = {a.id for a in accounts if isinstance(a, CreditCardAccount)}
    return sum(
        (
            tx.amount
            for tx in transactions
            if tx.type == TransactionType.TRANSFER and tx.to_account_id in card_ids
        ),
        _ZERO,
    )


def get_refunds(transactions: Iterable[Transaction]) -> Decimal:
    return sum((tx.amount for tx in transactions if _is_reimbursement(tx)), _ZERO)


def filter_transactions_by_account(
    transactions: Iterable[Transaction],
    account_id: str,
) -> list[Transaction]:
    """Transactions on ``account_id`` (either side of a transfer); ``"all"`` keeps everything."""

    if account_id == "all":
        return list(transactions)
    return [tx for tx in transactions if account_id in (tx.account_id, tx.to_account_id)]


__all__ = [
    "BankAccountMetrics",
    "CreditCardMetrics",
    "AccountMetrics",
    "bank_account_metrics",
    "credit_card_metrics",
    "utilization_percent",
    "compute_account_metrics",
    "get_global_spending",
    "get_global_income",
    "get_credit_card_payments",
    "get_refunds",
    "filter_transactions_by_account",
]
