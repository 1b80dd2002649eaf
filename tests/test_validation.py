from __future__ import annotations

import logging
from decimal import Decimal

import pytest

from budget_tracker.models import CategorySource, IncomeClass, TransactionType
from budget_tracker.validation import (
    TransactionValidationError,
    affects_budget_for_type,
    affects_cash_flow,
    affects_income,
    affects_net_worth,
    affects_spending,
    apply_type_change,
    is_credit_card_payment,
    validate_transaction,
)
from tests.helpers.store import adjustment, bank_account, card_account, expense, inflow, transfer


# ---- validate_transaction ----------------------------------------------------


def test_valid_records_of_each_type_pass() -> None:
    for tx in (expense(10), inflow(2000), transfer(300), adjustment(5)):
        validate_transaction(tx)


@pytest.mark.parametrize(
    "record, message",
    [
        ({"type": "TRANSFER", "accountId": "a", "amount": 1}, "TRANSFER requires toAccountId"),
        (
            {"type": "TRANSFER", "accountId": "a", "toAccountId": "a", "affectsBudget": False},
            "same from and to account",
        ),
        (
            {"type": "TRANSFER", "accountId": "a", "toAccountId": "b", "category": "Food"},
            "TRANSFER cannot have a category",
        ),
        (
            {"type": "TRANSFER", "accountId": "a", "toAccountId": "b", "affectsBudget": True},
            "affectsBudget = false",
        ),
        (
            {"type": "EXPENSE", "accountId": "a", "toAccountId": "b", "category": "Food"},
            "use TRANSFER for payments",
        ),
        (
            {"type": "EXPENSE", "accountId": "a", "category": "Food", "incomeClass": "EARNED"},
            "EXPENSE cannot have incomeClass",
        ),
        ({"type": "EXPENSE", "accountId": "a"}, "EXPENSE must have a category"),
        ({"type": "INFLOW", "accountId": "a", "category": "Gift"}, "INFLOW must have incomeClass"),
        (
            {"type": "INFLOW", "accountId": "a", "incomeClass": "WINDFALL"},
            "INFLOW must have a category",
        ),
        (
            {"type": "ADJUSTMENT", "accountId": "a", "category": "Food", "affectsBudget": False},
            "ADJUSTMENT cannot have a category",
        ),
        ({"type": "ADJUSTMENT", "accountId": "a", "affectsBudget": True}, "affectsBudget = false"),
        ({"type": "EXPENSE", "category": "Food"}, "requires accountId"),
        ({"accountId": "a"}, "must have a type"),
        ({"type": "REFUND", "accountId": "a"}, "Unknown transaction type"),
    ],
)
def test_rule_violations_raise(record: dict, message: str) -> None:
    with pytest.raises(TransactionValidationError, match=message):
        validate_transaction(record)


def test_snake_case_mapping_is_accepted() -> None:
    validate_transaction(
        {"type": "TRANSFER", "account_id": "a", "to_account_id": "b", "affects_budget": False}
    )


def test_negative_amount_rejected() -> None:
    with pytest.raises(TransactionValidationError, match="non-negative"):
        validate_transaction({"type": "EXPENSE", "accountId": "a", "category": "x", "amount": -1})


def test_invalid_category_path_rejected() -> None:
    with pytest.raises(TransactionValidationError, match="invalid category path"):
        validate_transaction({"type": "EXPENSE", "accountId": "a", "category": "A > B > C"})


def test_drafts_may_be_uncategorized_when_allowed() -> None:
    validate_transaction({"type": "EXPENSE", "accountId": "a"}, allow_uncategorized=True)
    validate_transaction({"type": "INFLOW", "accountId": "a"}, allow_uncategorized=True)
    with pytest.raises(TransactionValidationError):
        validate_transaction(
            {"type": "TRANSFER", "accountId": "a"}, allow_uncategorized=True
        )


def test_expense_outside_budget_only_warns(
    caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(logging.getLogger("budget_tracker"), "propagate", True)
    caplog.set_level(logging.WARNING, logger="budget_tracker.validation")
    validate_transaction(expense(10, affects_budget=False))
    assert any("validate:unusual type=EXPENSE" in r.getMessage() for r in caplog.records)


# ---- apply_type_change -------------------------------------------------------


def test_expense_to_transfer_clears_category_and_budget_flag() -> None:
    tx = expense(300, "Groceries")

    moved = apply_type_change(tx, TransactionType.TRANSFER, to_account_id="card")

    assert moved.type == TransactionType.TRANSFER
    assert moved.to_account_id == "card"
    assert moved.category is None
    assert moved.category_source is None
    assert moved.affects_budget is False
    assert moved.amount == Decimal("300")


def test_transfer_to_expense_requires_category() -> None:
    tx = transfer(50)
    with pytest.raises(TransactionValidationError, match="must have a category"):
        apply_type_change(tx, TransactionType.EXPENSE)

    changed = apply_type_change(tx, TransactionType.EXPENSE, category="Other")
    assert changed.to_account_id is None
    assert changed.affects_budget is True
    assert changed.category_source == CategorySource.MANUAL


def test_expense_to_inflow_takes_income_class() -> None:
    changed = apply_type_change(
        expense(20, "Cashback"),
        TransactionType.INFLOW,
        income_class=IncomeClass.REIMBURSEMENT,
    )
    assert changed.category == "Cashback"
    assert changed.income_class == IncomeClass.REIMBURSEMENT


def test_inflow_to_adjustment_clears_income_fields() -> None:
    changed = apply_type_change(inflow(5), TransactionType.ADJUSTMENT)
    assert changed.category is None
    assert changed.income_class is None
    assert changed.affects_budget is False


def test_affects_budget_for_type() -> None:
    assert affects_budget_for_type(TransactionType.EXPENSE)
    assert affects_budget_for_type(TransactionType.INFLOW)
    assert not affects_budget_for_type(TransactionType.TRANSFER)
    assert not affects_budget_for_type(TransactionType.ADJUSTMENT)


# ---- Predicates --------------------------------------------------------------


def test_affects_spending() -> None:
    assert affects_spending(expense(10))
    assert not affects_spending(expense(10, affects_budget=False))
    assert not affects_spending(transfer(10))
    assert not affects_spending(inflow(10))


def test_affects_income_only_counts_earned_and_passive() -> None:
    assert affects_income(inflow(10, IncomeClass.EARNED))
    assert affects_income(inflow(10, IncomeClass.PASSIVE, "Interest"))
    assert not affects_income(inflow(10, IncomeClass.REIMBURSEMENT, "Cashback"))
    assert not affects_income(inflow(10, IncomeClass.WINDFALL, "Gift"))
    assert not affects_income(inflow(10, affects_budget=False))


def test_cash_flow_and_net_worth() -> None:
    assert affects_cash_flow(expense(1)) and affects_cash_flow(inflow(1))
    assert not affects_cash_flow(transfer(1)) and not affects_cash_flow(adjustment(1))
    assert affects_net_worth(transfer(1))
    assert not affects_net_worth(adjustment(1))


def test_is_credit_card_payment() -> None:
    accounts = [bank_account("bank"), card_account("card"), bank_account("savings")]
    assert is_credit_card_payment(transfer(300, to_account_id="card"), accounts)
    assert not is_credit_card_payment(transfer(300, to_account_id="savings"), accounts)
    assert not is_credit_card_payment(transfer(300, to_account_id="missing"), accounts)
    assert not is_credit_card_payment(expense(300), accounts)
