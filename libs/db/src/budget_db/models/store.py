from __future__ import annotations

from typing import Any, ClassVar

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# Every collection row keeps the complete record in ``body`` (camelCase keys,
# legacy keys included). The remaining columns are projections of the body
# used for indexed lookups and are recomputed on every write via
# ``columns_from_body``.


class DocumentRow(Base):
    __abstract__ = True

    # Name of the collection in the export document (camelCase).
    collection: ClassVar[str]

    body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    @classmethod
    def columns_from_body(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {"id": str(body["id"])}

    @classmethod
    def identity_from_body(cls, body: dict[str, Any]) -> Any:
        """Primary-key value for ``session.get``."""
        return str(body["id"])

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> DocumentRow:
        return cls(body=dict(body), **cls.columns_from_body(body))

    def set_body(self, body: dict[str, Any]) -> None:
        for key, value in self.columns_from_body(body).items():
            setattr(self, key, value)
        # Assign a fresh dict so the JSON column is flagged as modified.
        self.body = dict(body)


# ---------------------------
# Store metadata
# ---------------------------


class StoreMeta(Base):
    __tablename__ = "store_meta"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(String, nullable=False)


# ---------------------------
# Collections
# ---------------------------


class AccountRow(DocumentRow):
    __tablename__ = "accounts"
    collection = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Denormalized from body.isDefault; the single-default rule is enforced
    # by the store, not by a partial unique index.
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    @classmethod
    def columns_from_body(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {"id": str(body["id"]), "is_default": bool(body.get("isDefault"))}


class TransactionRow(DocumentRow):
    __tablename__ = "transactions"
    collection = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    to_account_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    # ISO ``YYYY-MM-DD`` so lexical order is chronological.
    date: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    merchant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    __table_args__ = (
        CheckConstraint(
            "type in ('INFLOW','EXPENSE','TRANSFER','ADJUSTMENT')",
            name="ck_transactions_type",
        ),
        Index("ix_transactions_account_date", "account_id", "date"),
    )

    @classmethod
    def columns_from_body(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": str(body["id"]),
            "account_id": str(body["accountId"]),
            "to_account_id": body.get("toAccountId"),
            "type": str(body["type"]),
            "date": str(body["date"])[:10],
            "category": body.get("category"),
            "merchant_id": body.get("merchantId"),
        }


class MerchantRuleRow(DocumentRow):
    __tablename__ = "merchant_rules"
    collection = "merchantRules"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    merchant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    @classmethod
    def columns_from_body(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {"id": str(body["id"]), "merchant_id": body.get("merchantId")}


class BudgetRow(DocumentRow):
    __tablename__ = "budgets"
    collection = "budgets"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    target_id: Mapped[str] = mapped_column(String, nullable=False)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)

    # Not unique: one budget per target is a soft rule confirmed by the user.
    __table_args__ = (Index("ix_budgets_target", "type", "target_id", "account_id"),)

    @classmethod
    def columns_from_body(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": str(body["id"]),
            "type": str(body.get("type") or "CATEGORY"),
            "target_id": str(body.get("targetId") or body.get("category") or ""),
            "account_id": body.get("accountId"),
        }


class MerchantRow(DocumentRow):
    __tablename__ = "merchants"
    collection = "merchants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)

    @classmethod
    def columns_from_body(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {"id": str(body["id"]), "name": str(body.get("name") or "")}


class TagRow(DocumentRow):
    __tablename__ = "tags"
    collection = "tags"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)

    @classmethod
    def columns_from_body(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {"id": str(body["id"]), "name": str(body.get("name") or "")}


class TransactionTagRow(DocumentRow):
    __tablename__ = "transaction_tags"
    collection = "transactionTags"

    transaction_id: Mapped[str] = mapped_column(String, primary_key=True)
    tag_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)

    @classmethod
    def columns_from_body(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {"transaction_id": str(body["transactionId"]), "tag_id": str(body["tagId"])}

    @classmethod
    def identity_from_body(cls, body: dict[str, Any]) -> Any:
        return (str(body["transactionId"]), str(body["tagId"]))


class SettingsRow(DocumentRow):
    __tablename__ = "settings"
    collection = "settings"

    # Singleton record.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)

    __table_args__ = (CheckConstraint("id = 1", name="ck_settings_singleton"),)

    @classmethod
    def columns_from_body(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {"id": 1}

    @classmethod
    def identity_from_body(cls, body: dict[str, Any]) -> Any:
        return 1


# Dependency order: referenced collections come before referencing ones.
COLLECTION_ROWS: tuple[type[DocumentRow], ...] = (
    SettingsRow,
    AccountRow,
    MerchantRow,
    TagRow,
    TransactionRow,
    TransactionTagRow,
    MerchantRuleRow,
    BudgetRow,
)

ROW_BY_COLLECTION: dict[str, type[DocumentRow]] = {r.collection: r for r in COLLECTION_ROWS}


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
