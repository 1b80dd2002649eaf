"""ORM tables for the budget tracker's local document store."""

from .store import (
    COLLECTION_ROWS,
    ROW_BY_COLLECTION,
    AccountRow,
    Base,
    BudgetRow,
    DocumentRow,
    MerchantRow,
    MerchantRuleRow,
    SettingsRow,
    StoreMeta,
    TagRow,
    TransactionRow,
    TransactionTagRow,
)

__all__ = [
    "Base",
    "DocumentRow",
    "StoreMeta",
    "AccountRow",
    "TransactionRow",
    "MerchantRuleRow",
    "BudgetRow",
    "MerchantRow",
    "TagRow",
    "TransactionTagRow",
    "SettingsRow",
    "COLLECTION_ROWS",
    "ROW_BY_COLLECTION",
]
