"""Entity models, enums and category vocabularies for ``budget_tracker``.

Records are pydantic models whose Python attributes are snake_case while the
persisted and exported form uses camelCase keys (``accountId``,
``affectsBudget``...). Unknown keys are preserved as extras so that legacy
fields carried over by schema upgrades survive a load/save cycle untouched.

Per-type field rules for :class:`Transaction` (which fields may co-occur for
each ``type``) are not enforced here; they live in
:mod:`budget_tracker.validation` so that drafts and partially edited records
can still be represented.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

DEFAULT_CURRENCY = "CAD"

EXPENSE_CATEGORIES: tuple[str, ...] = (
    "Groceries",
    "Coffee",
    "Restaurants & Dining",
    "Food Delivery",
    "Clothing & Apparel",
    "Kids & Family",
    "Entertainment",
    "Subscriptions & Recurring",
    "Transportation & Gas",
    "Home & Household",
    "Health & Pharmacy",
    "Pets",
    "Amazon",
    "Fees & Interest",
    "Other",
)

INCOME_CATEGORIES: tuple[str, ...] = (
    "Income: Salary",
    "Income: Freelance",
    "Income: Bonus",
    "Investment Income",
    "Interest",
    "Cashback",
    "Insurance Payout",
    "Gift",
    "Other Income",
)

DEFAULT_CATEGORIES: tuple[str, ...] = EXPENSE_CATEGORIES + INCOME_CATEGORIES


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _money_to_json(value: Decimal) -> int | float:
    # Exports keep amounts numeric, as older backups do.
    return int(value) if value == value.to_integral_value() else float(value)


Money = Annotated[Decimal, PlainSerializer(_money_to_json, when_used="json")]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AccountType(StrEnum):
    BANK = "BANK"
    CREDIT_CARD = "CREDIT_CARD"


class BankAccountSubtype(StrEnum):
    CHEQUING = "CHEQUING"
    SAVINGS = "SAVINGS"
    CASH = "CASH"
    INVESTMENT_CASH = "INVESTMENT_CASH"


class PaymentStatus(StrEnum):
    OK = "OK"
    DUE_SOON = "DUE_SOON"
    OVERDUE = "OVERDUE"


class TransactionType(StrEnum):
    INFLOW = "INFLOW"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"
    ADJUSTMENT = "ADJUSTMENT"


class IncomeClass(StrEnum):
    EARNED = "EARNED"
    PASSIVE = "PASSIVE"
    REIMBURSEMENT = "REIMBURSEMENT"
    WINDFALL = "WINDFALL"
    ADJUSTMENT = "ADJUSTMENT"


class CategorySource(StrEnum):
    AI = "ai"
    MANUAL = "manual"
    RULE = "rule"


class BudgetType(StrEnum):
    CATEGORY = "CATEGORY"
    SUBCATEGORY = "SUBCATEGORY"
    TAG = "TAG"
    MERCHANT = "MERCHANT"


# ---------------------------------------------------------------------------
# Base record
# ---------------------------------------------------------------------------


class Record(BaseModel):
    """Common configuration for persisted records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_record(self) -> dict[str, Any]:
        """Return the camelCase JSON form used by the store and exports."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def updated(self, **changes: Any) -> Any:
        """Return a re-validated copy with ``changes`` (snake_case) applied."""

        data = self.model_dump(by_alias=False)
        data.update(changes)
        return type(self).model_validate(data)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class _AccountBase(Record):
    id: str
    name: str
    institution: str | None = None
    currency: str = DEFAULT_CURRENCY
    is_active: bool = True
    color: str = "#3b82f6"
    is_default: bool = False
    created_at: dt.datetime = Field(default_factory=utcnow)


class BankAccount(_AccountBase):
    account_type: Literal["BANK"] = "BANK"
    subtype: BankAccountSubtype = BankAccountSubtype.CHEQUING
    current_balance: Money | None = None
    available_balance: Money | None = None
    interest_rate_apr: Decimal | None = None


class CreditCardAccount(_AccountBase):
    account_type: Literal["CREDIT_CARD"] = "CREDIT_CARD"
    issuer: str | None = None
    credit_limit: Money | None = Field(default=None, ge=0)
    # Amount owed, a positive debt.
    current_balance: Money | None = Field(default=None, ge=0)
    available_credit: Money | None = None
    statement_day: int | None = Field(default=None, ge=1, le=31)
    due_day: int | None = Field(default=None, ge=1, le=31)
    apr_purchase: Decimal | None = None
    apr_cash_advance: Decimal | None = None
    apr_penalty: Decimal | None = None
    min_payment: Money | None = None
    payment_status: PaymentStatus | None = None


Account = Annotated[BankAccount | CreditCardAccount, Field(discriminator="account_type")]

ACCOUNT_ADAPTER: TypeAdapter[BankAccount | CreditCardAccount] = TypeAdapter(Account)


def parse_account(data: Mapping[str, Any]) -> BankAccount | CreditCardAccount:
    return ACCOUNT_ADAPTER.validate_python(dict(data))


# ---------------------------------------------------------------------------
# Transactions and rules
# ---------------------------------------------------------------------------


class Transaction(Record):
    id: str
    type: TransactionType
    account_id: str
    # Destination account; present only for TRANSFER.
    to_account_id: str | None = None
    date: dt.date
    description: str = ""
    # Free-text merchant from schema generations before merchants existed.
    merchant: str | None = None
    merchant_id: str | None = None
    amount: Money
    category: str | None = None
    category_source: CategorySource | None = None
    income_class: IncomeClass | None = None
    affects_budget: bool = True
    linked_transaction_id: str | None = None
    # Denormalized tag ids; the ``transactionTags`` junction is authoritative.
    tags: list[str] = Field(default_factory=list)
    imported_at: dt.datetime | None = None
    source_file: str | None = None

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_iso_timestamp(cls, value: Any) -> Any:
        if isinstance(value, dt.datetime):
            return value.date()
        if isinstance(value, str) and len(value) > 10 and value[10] in "T ":
            return value[:10]
        return value


class MerchantRule(Record):
    id: str
    merchant_id: str | None = None
    # Legacy description pattern, matched case-insensitively as a substring.
    pattern: str | None = None
    category: str
    created_at: dt.datetime = Field(default_factory=utcnow)


class Merchant(Record):
    id: str
    name: str
    aliases: list[str] = Field(default_factory=list)
    category: str | None = None
    notes: str | None = None
    created_at: dt.datetime = Field(default_factory=utcnow)


class Tag(Record):
    id: str
    name: str
    color: str = "#6366f1"
    created_at: dt.datetime = Field(default_factory=utcnow)


class TransactionTag(Record):
    transaction_id: str
    tag_id: str
    created_at: dt.datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Budgets and settings
# ---------------------------------------------------------------------------


class Budget(Record):
    id: str
    type: BudgetType = BudgetType.CATEGORY
    target_id: str | None = None
    # Category key kept from the generation where budgets were category-only.
    category: str | None = None
    monthly_limit: Money = Field(ge=0)
    alert_threshold: float = Field(default=80.0, ge=0, le=100)
    account_id: str | None = None
    created_at: dt.datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _resolve_target(self) -> Budget:
        if self.target_id is None:
            if self.category is None:
                raise ValueError("budget requires a targetId (or a legacy category)")
            self.target_id = self.category
        return self


class AppSettings(Record):
    api_key: str = ""
    default_categories: list[str] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    currency: str = DEFAULT_CURRENCY


__all__ = [
    "DEFAULT_CURRENCY",
    "EXPENSE_CATEGORIES",
    "INCOME_CATEGORIES",
    "DEFAULT_CATEGORIES",
    "utcnow",
    "Money",
    "AccountType",
    "BankAccountSubtype",
    "PaymentStatus",
    "TransactionType",
    "IncomeClass",
    "CategorySource",
    "BudgetType",
    "Record",
    "BankAccount",
    "CreditCardAccount",
    "Account",
    "ACCOUNT_ADAPTER",
    "parse_account",
    "Transaction",
    "MerchantRule",
    "Merchant",
    "Tag",
    "TransactionTag",
    "Budget",
    "AppSettings",
]
