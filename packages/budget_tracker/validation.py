"""Transaction invariants and the classification predicates built on them.

``validate_transaction`` is the single gate in front of every persisted write
(inserts and field-changing updates). It accepts either a
:class:`~budget_tracker.models.Transaction` or a partial mapping (camelCase or
snake_case keys) so that drafts can be checked before they are complete.

Field rules by type
-------------------
==========  ===========  ========  ===========  =============
type        toAccountId  category  incomeClass  affectsBudget
==========  ===========  ========  ===========  =============
EXPENSE     forbidden    required  forbidden    true (false warns)
INFLOW      forbidden    required  required     true (false warns)
TRANSFER    required     forbidden forbidden    must not be true
ADJUSTMENT  forbidden    forbidden forbidden    must not be true
==========  ===========  ========  ===========  =============

The predicates (``affects_spending`` and friends) are what the metrics, budget
and summary modules aggregate with; their exact definitions matter.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, assert_never

from pydantic.alias_generators import to_camel

from .logging_setup import get_logger
from .models import (
    AccountType,
    BankAccount,
    CategorySource,
    CreditCardAccount,
    IncomeClass,
    Transaction,
    TransactionType,
)
from .taxonomy import is_valid_category_path

_logger = get_logger("budget_tracker.validation")

_INCOME_CLASSES = frozenset({IncomeClass.EARNED, IncomeClass.PASSIVE})


class TransactionValidationError(ValueError):
    """Raised when a transaction breaks a per-type field rule."""


def _field(tx: Transaction | Mapping[str, Any], name: str) -> Any:
    if isinstance(tx, Transaction):
        return getattr(tx, name)
    if name in tx:
        return tx[name]
    return tx.get(to_camel(name))


def _coerce_type(raw: Any) -> TransactionType:
    if not raw:
        raise TransactionValidationError("Transaction must have a type")
    try:
        return TransactionType(raw)
    except ValueError as e:
        raise TransactionValidationError(f"Unknown transaction type: {raw!r}") from e


def affects_budget_for_type(tx_type: TransactionType) -> bool:
    """Default ``affectsBudget`` for a type: true only for EXPENSE and INFLOW."""

    return tx_type in (TransactionType.EXPENSE, TransactionType.INFLOW)


def validate_transaction(
    tx: Transaction | Mapping[str, Any],
    *,
    allow_uncategorized: bool = False,
) -> None:
    """Raise :class:`TransactionValidationError` when ``tx`` breaks a rule.

    Parameters
    ----------
    tx:
        A full transaction or a partial mapping.
    allow_uncategorized:
        Accept EXPENSE/INFLOW records that are still missing ``category`` (and
        ``incomeClass`` for INFLOW). Used for imported drafts whose
        classification failed; every other rule still applies.
    """

    tx_type = _coerce_type(_field(tx, "type"))
    account_id = _field(tx, "account_id")
    to_account_id = _field(tx, "to_account_id")
    category = _field(tx, "category")
    income_class = _field(tx, "income_class")
    affects_budget = _field(tx, "affects_budget")
    label = tx_type.value

    if not account_id:
        raise TransactionValidationError(f"{label} requires accountId")

    amount = _field(tx, "amount")
    if amount is not None:
        try:
            magnitude = Decimal(str(amount))
        except InvalidOperation as e:
            raise TransactionValidationError(f"{label} has a non-numeric amount") from e
        if magnitude < 0:
            raise TransactionValidationError(f"{label} amount must be non-negative")

    if category and not is_valid_category_path(category):
        raise TransactionValidationError(f"{label} has an invalid category path: {category!r}")

    if tx_type is TransactionType.TRANSFER:
        if not to_account_id:
            raise TransactionValidationError("TRANSFER requires toAccountId")
        if to_account_id == account_id:
            raise TransactionValidationError("TRANSFER cannot have same from and to account")
        if category:
            raise TransactionValidationError("TRANSFER cannot have a category")
        if income_class:
            raise TransactionValidationError("TRANSFER cannot have incomeClass")
        if affects_budget is True:
            raise TransactionValidationError("TRANSFER must have affectsBudget = false")
    elif tx_type is TransactionType.EXPENSE:
        if to_account_id:
            raise TransactionValidationError(
                "EXPENSE cannot have toAccountId (use TRANSFER for payments)"
            )
        if income_class:
            raise TransactionValidationError("EXPENSE cannot have incomeClass")
        if not category and not allow_uncategorized:
            raise TransactionValidationError("EXPENSE must have a category")
        if affects_budget is False:
            _logger.warning("validate:unusual type=EXPENSE affects_budget=false")
    elif tx_type is TransactionType.INFLOW:
        if to_account_id:
            raise TransactionValidationError("INFLOW cannot have toAccountId")
        if not allow_uncategorized:
            if not income_class:
                raise TransactionValidationError("INFLOW must have incomeClass")
            if not category:
                raise TransactionValidationError("INFLOW must have a category")
        if affects_budget is False:
            _logger.warning("validate:unusual type=INFLOW affects_budget=false")
    elif tx_type is TransactionType.ADJUSTMENT:
        if to_account_id:
            raise TransactionValidationError("ADJUSTMENT cannot have toAccountId")
        if category:
            raise TransactionValidationError("ADJUSTMENT cannot have a category")
        if income_class:
            raise TransactionValidationError("ADJUSTMENT cannot have incomeClass")
        if affects_budget is True:
            raise TransactionValidationError("ADJUSTMENT must have affectsBudget = false")
    else:
        assert_never(tx_type)


def apply_type_change(
    tx: Transaction,
    new_type: TransactionType,
    *,
    to_account_id: str | None = None,
    category: str | None = None,
    income_class: IncomeClass | None = None,
) -> Transaction:
    """Return ``tx`` re-typed as ``new_type`` and validated.

    ``affectsBudget`` is recomputed from the new type, and fields that are not
    legal for it are cleared. Keyword arguments supply the fields the new type
    needs (a destination for TRANSFER, a category or income class); when
    omitted, a still-legal existing value is kept.
    """

    new_type = TransactionType(new_type)
    changes: dict[str, Any] = {
        "type": new_type,
        "affects_budget": affects_budget_for_type(new_type),
    }
    if new_type is TransactionType.TRANSFER:
        changes.update(
            to_account_id=to_account_id or tx.to_account_id,
            category=None,
            category_source=None,
            income_class=None,
        )
    elif new_type is TransactionType.ADJUSTMENT:
        changes.update(
            to_account_id=None, category=None, category_source=None, income_class=None
        )
    elif new_type is TransactionType.EXPENSE:
        changes.update(
            to_account_id=None,
            category=category or tx.category,
            income_class=None,
        )
    elif new_type is TransactionType.INFLOW:
        changes.update(
            to_account_id=None,
            category=category or tx.category,
            income_class=income_class or tx.income_class,
        )
    else:
        assert_never(new_type)

    if category is not None and new_type in (TransactionType.EXPENSE, TransactionType.INFLOW):
        changes["category_source"] = CategorySource.MANUAL
    updated: Transaction = tx.updated(**changes)
    validate_transaction(updated)
    return updated


# ---- Predicates --------------------------------------------------------------


def affects_spending(tx: Transaction) -> bool:
    return tx.type == TransactionType.EXPENSE and tx.affects_budget


def affects_income(tx: Transaction) -> bool:
    """True for EARNED/PASSIVE inflows counted in the budget.

    REIMBURSEMENT and WINDFALL inflows are not income for reporting.
    """

    return (
        tx.type == TransactionType.INFLOW
        and tx.affects_budget
        and tx.income_class in _INCOME_CLASSES
    )


def affects_cash_flow(tx: Transaction) -> bool:
    return tx.type in (TransactionType.INFLOW, TransactionType.EXPENSE)


def affects_net_worth(tx: Transaction) -> bool:
    return tx.type != TransactionType.ADJUSTMENT


def is_credit_card_payment(
    tx: Transaction,
    accounts: Iterable[BankAccount | CreditCardAccount],
) -> bool:
    """A TRANSFER whose destination is a credit-card account."""

    if tx.type != TransactionType.TRANSFER or not tx.to_account_id:
        return False
    for account in accounts:
        if account.id == tx.to_account_id:
            return account.account_type == AccountType.CREDIT_CARD
    return False


__all__ = [
    "TransactionValidationError",
    "affects_budget_for_type",
    "validate_transaction",
    "apply_type_change",
    "affects_spending",
    "affects_income",
    "affects_cash_flow",
    "affects_net_worth",
    "is_credit_card_payment",
]
