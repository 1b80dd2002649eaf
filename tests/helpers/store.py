"""Store helpers for tests: record factories and legacy store seeding."""

from __future__ import annotations

import datetime as dt
import itertools
from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Any

from budget_db.client import get_engine
from budget_db.models.store import ROW_BY_COLLECTION
from sqlalchemy import JSON, Column, Integer, MetaData, String, Table

from budget_tracker.models import (
    BankAccount,
    CategorySource,
    CreditCardAccount,
    IncomeClass,
    Transaction,
    TransactionType,
)

_ids = itertools.count(1)


def expense(
    amount: str | int,
    category: str | None = "Groceries",
    *,
    account_id: str = "bank",
    date: dt.date = dt.date(2024, 3, 15),
    **extra: Any,
) -> Transaction:
    return Transaction(
        id=extra.pop("id", f"tx-{next(_ids)}"),
        type=TransactionType.EXPENSE,
        account_id=account_id,
        date=date,
        description=extra.pop("description", f"purchase {category}"),
        amount=Decimal(str(amount)),
        category=category,
        category_source=CategorySource.MANUAL if category else None,
        **extra,
    )


def inflow(
    amount: str | int,
    income_class: IncomeClass | None = IncomeClass.EARNED,
    category: str | None = "Income: Salary",
    *,
    account_id: str = "bank",
    date: dt.date = dt.date(2024, 3, 1),
    **extra: Any,
) -> Transaction:
    return Transaction(
        id=extra.pop("id", f"tx-{next(_ids)}"),
        type=TransactionType.INFLOW,
        account_id=account_id,
        date=date,
        description=extra.pop("description", f"deposit {category}"),
        amount=Decimal(str(amount)),
        category=category,
        income_class=income_class,
        **extra,
    )


def transfer(
    amount: str | int,
    *,
    account_id: str = "bank",
    to_account_id: str = "card",
    date: dt.date = dt.date(2024, 3, 20),
    **extra: Any,
) -> Transaction:
    return Transaction(
        id=extra.pop("id", f"tx-{next(_ids)}"),
        type=TransactionType.TRANSFER,
        account_id=account_id,
        to_account_id=to_account_id,
        date=date,
        description=extra.pop("description", "PAYMENT THANK YOU"),
        amount=Decimal(str(amount)),
        affects_budget=False,
        **extra,
    )


def adjustment(
    amount: str | int,
    *,
    account_id: str = "bank",
    date: dt.date = dt.date(2024, 3, 25),
) -> Transaction:
    return Transaction(
        id=f"tx-{next(_ids)}",
        type=TransactionType.ADJUSTMENT,
        account_id=account_id,
        date=date,
        description="balance correction",
        amount=Decimal(str(amount)),
        affects_budget=False,
    )


def bank_account(account_id: str = "bank", **extra: Any) -> BankAccount:
    return BankAccount(id=account_id, name=extra.pop("name", "Chequing"), **extra)


def card_account(account_id: str = "card", **extra: Any) -> CreditCardAccount:
    return CreditCardAccount(id=account_id, name=extra.pop("name", "Visa"), **extra)


def seed_legacy_store(
    database_url: str,
    version: int | None,
    collections: Mapping[str, Sequence[Mapping[str, Any]]],
) -> None:
    """Create an older store generation as bare ``(id, body)`` document tables.

    ``collections`` maps collection names to records; ``settings`` holds at
    most one record. A ``store_meta`` row stamps ``version``; ``None`` leaves the table empty.
    """

    engine = get_engine(database_url=database_url)
    meta = MetaData()
    store_meta = Table(
        "store_meta",
        meta,
        Column("key", String, primary_key=True),
        Column("value", String, nullable=False),
    )
    tables: dict[str, Table] = {}
    for name in collections:
        table_name = ROW_BY_COLLECTION[name].__tablename__
        id_type = Integer if name == "settings" else String
        tables[name] = Table(
            table_name,
            meta,
            Column("id", id_type, primary_key=True),
            Column("body", JSON, nullable=False),
        )
    with engine.begin() as conn:
        meta.create_all(conn)
        if version is not None:
            conn.execute(store_meta.insert().values(key="schema_version", value=str(version)))
        for name, records in collections.items():
            for i, record in enumerate(records):
                row_id = 1 if name == "settings" else str(record.get("id", f"{name}-{i}"))
                conn.execute(tables[name].insert().values(id=row_id, body=dict(record)))
