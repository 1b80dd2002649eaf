"""Persistence for ``budget_tracker`` on top of the ``budget_db`` document tables.

Every function takes an open SQLAlchemy ``Session`` as its first argument;
callers own the transaction scope (``budget_db.client.session_scope``). The
one exception is :func:`open_store`, which runs at startup in its own
transaction and brings any older store up to the current schema generation
before anything else touches it.

Writes of transactions always pass through
:func:`budget_tracker.validation.validate_transaction` first; an invalid
record raises before anything reaches the database.
"""

from __future__ import annotations

import datetime as dt
import json
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from budget_db import Base, StoreMeta
from budget_db.client import get_engine, resolve_database_url, session_scope
from budget_db.models.store import (
    COLLECTION_ROWS,
    ROW_BY_COLLECTION,
    AccountRow,
    BudgetRow,
    DocumentRow,
    MerchantRow,
    MerchantRuleRow,
    SettingsRow,
    TagRow,
    TransactionRow,
    TransactionTagRow,
)
from pydantic import ValidationError
from sqlalchemy import MetaData, Table, delete, inspect, or_, select
from sqlalchemy.orm import Session

from .logging_setup import get_logger
from .migrations import (
    CURRENT_SCHEMA_VERSION,
    MigrationError,
    Snapshot,
    collections_for,
    migrate_snapshot,
)
from .models import (
    AppSettings,
    BankAccount,
    Budget,
    BudgetType,
    CreditCardAccount,
    Merchant,
    MerchantRule,
    Tag,
    Transaction,
    TransactionTag,
    parse_account,
    utcnow,
)
from .validation import validate_transaction

_logger = get_logger("budget_tracker.store")

_VERSION_KEY = "schema_version"

type AnyAccount = BankAccount | CreditCardAccount


class StoreImportError(ValueError):
    """A backup document could not be imported; the store was not modified."""


def new_id() -> str:
    return str(uuid.uuid4())


# ---- Low-level document access -----------------------------------------------


def _put(session: Session, row_cls: type[DocumentRow], body: dict[str, Any]) -> None:
    row = session.get(row_cls, row_cls.identity_from_body(body))
    if row is None:
        session.add(row_cls.from_body(body))
    else:
        row.set_body(body)


def _bodies(session: Session, row_cls: type[DocumentRow], *where: Any) -> list[dict[str, Any]]:
    stmt = select(row_cls.body).where(*where) if where else select(row_cls.body)
    return [dict(b) for b in session.execute(stmt).scalars()]


def _require(session: Session, row_cls: type[DocumentRow], key: Any, label: str) -> DocumentRow:
    row = session.get(row_cls, key)
    if row is None:
        raise KeyError(f"{label} not found: {key!r}")
    return row


# ---- Store opening and schema upgrades ---------------------------------------


def _read_version(session: Session, tables: set[str]) -> int | None:
    if StoreMeta.__tablename__ not in tables:
        return None
    value = session.execute(
        select(StoreMeta.value).where(StoreMeta.key == _VERSION_KEY)
    ).scalar_one_or_none()
    return int(value) if value is not None else None


def _write_version(session: Session, version: int) -> None:
    row = session.get(StoreMeta, _VERSION_KEY)
    if row is None:
        session.add(StoreMeta(key=_VERSION_KEY, value=str(version)))
    else:
        row.value = str(version)
    session.flush()


def _collection_tables(tables: set[str]) -> list[str]:
    return [r.__tablename__ for r in COLLECTION_ROWS if r.__tablename__ in tables]


def _read_snapshot(session: Session, version: int, tables: set[str]) -> Snapshot:
    """Read every collection of an older store generation.

    Older generations only share the ``body`` column with the current tables,
    so tables are reflected rather than mapped.
    """

    conn = session.connection()
    collections: dict[str, list[dict[str, Any]]] = {}
    for name in collections_for(version):
        table_name = ROW_BY_COLLECTION[name].__tablename__
        if table_name not in tables:
            collections[name] = []
            continue
        table = Table(table_name, MetaData(), autoload_with=conn)
        records: list[dict[str, Any]] = []
        for raw in conn.execute(select(table.c.body)).scalars():
            records.append(json.loads(raw) if isinstance(raw, str | bytes) else dict(raw))
        collections[name] = records
    return Snapshot(version=version, collections=collections)


def _rebuild(session: Session, snapshot: Snapshot) -> None:
    conn = session.connection()
    Base.metadata.drop_all(bind=conn, checkfirst=True)
    Base.metadata.create_all(bind=conn)
    for row_cls in COLLECTION_ROWS:
        for body in snapshot.records(row_cls.collection):
            session.add(row_cls.from_body(body))
        session.flush()


def open_store(database_url: str | None = None, *, now: str | None = None) -> str:
    """Open (and if needed create or upgrade) the store; return its URL.

    - Empty database: create the current schema and stamp its version.
    - Current version: nothing to do.
    - Older version: migrate every record and rewrite the tables, all in one
      transaction. Any failure rolls back and leaves the older generation in
      place.

    Raises
    ------
    MigrationError
        The store is newer than this code, holds data without a version, or
        an upgrade failed. The application must not continue in that case.
    """

    url = resolve_database_url(database_url)
    get_engine(database_url=url)
    with session_scope(database_url=url) as session:
        tables = set(inspect(session.connection()).get_table_names())
        stored = _read_version(session, tables)

        if stored is None:
            existing = _collection_tables(tables)
            conn = session.connection()
            for table_name in existing:
                table = Table(table_name, MetaData(), autoload_with=conn)
                if conn.execute(select(table).limit(1)).first() is not None:
                    raise MigrationError(
                        f"store has data in {table_name!r} but no schema version"
                    )
            Base.metadata.drop_all(bind=conn, checkfirst=True)
            Base.metadata.create_all(bind=conn)
            _write_version(session, CURRENT_SCHEMA_VERSION)
            _logger.info("store:created version=%d", CURRENT_SCHEMA_VERSION)
            return url

        if stored == CURRENT_SCHEMA_VERSION:
            return url
        if stored > CURRENT_SCHEMA_VERSION:
            raise MigrationError(
                f"store schema v{stored} is newer than supported v{CURRENT_SCHEMA_VERSION}"
            )

        _logger.info(
            "store:upgrade_start from_version=%d to_version=%d", stored, CURRENT_SCHEMA_VERSION
        )
        try:
            snapshot = _read_snapshot(session, stored, tables)
            migrated = migrate_snapshot(snapshot, now=now)
            # Records the current models reject must not reach the new tables.
            _typed_collections(migrated)
            _rebuild(session, migrated)
            _write_version(session, migrated.version)
        except MigrationError:
            raise
        except Exception as e:
            _logger.error(
                "store:upgrade_failed from_version=%d error=%s", stored, e.__class__.__name__
            )
            raise MigrationError(f"failed to upgrade store from v{stored}: {e}") from e
        _logger.info("store:upgrade_done version=%d", migrated.version)
    return url


def schema_version(session: Session) -> int | None:
    tables = set(inspect(session.connection()).get_table_names())
    return _read_version(session, tables)


# ---- Settings ----------------------------------------------------------------


def get_settings(session: Session) -> AppSettings | None:
    row = session.get(SettingsRow, 1)
    return AppSettings.model_validate(row.body) if row is not None else None


def save_settings(session: Session, settings: AppSettings) -> None:
    _put(session, SettingsRow, settings.to_record())


# ---- Transactions ------------------------------------------------------------


def _tx(body: Mapping[str, Any]) -> Transaction:
    return Transaction.model_validate(body)


def add_transactions(
    session: Session,
    transactions: Iterable[Transaction],
    *,
    allow_uncategorized: bool = False,
) -> int:
    """Validate and insert new transactions; return how many were written.

    Every record is validated before any is added, so one invalid record
    rejects the whole call.
    """

    batch = list(transactions)
    for tx in batch:
        validate_transaction(tx, allow_uncategorized=allow_uncategorized)
    for tx in batch:
        session.add(TransactionRow.from_body(tx.to_record()))
    session.flush()
    return len(batch)


def put_transaction(
    session: Session,
    tx: Transaction,
    *,
    allow_uncategorized: bool = False,
) -> None:
    validate_transaction(tx, allow_uncategorized=allow_uncategorized)
    _put(session, TransactionRow, tx.to_record())
    session.flush()


def get_transaction(session: Session, tx_id: str) -> Transaction | None:
    row = session.get(TransactionRow, tx_id)
    return _tx(row.body) if row is not None else None


def get_all_transactions(session: Session) -> list[Transaction]:
    stmt = select(TransactionRow.body).order_by(TransactionRow.date.desc(), TransactionRow.id)
    return [_tx(b) for b in session.execute(stmt).scalars()]


def get_transactions_by_date_range(
    session: Session, start: dt.date, end: dt.date
) -> list[Transaction]:
    """Transactions dated within ``[start, end]`` inclusive."""

    stmt = (
        select(TransactionRow.body)
        .where(TransactionRow.date >= start.isoformat(), TransactionRow.date <= end.isoformat())
        .order_by(TransactionRow.date, TransactionRow.id)
    )
    return [_tx(b) for b in session.execute(stmt).scalars()]


def get_transactions_by_account(session: Session, account_id: str) -> list[Transaction]:
    """Transactions on ``account_id``, including transfers into it."""

    stmt = (
        select(TransactionRow.body)
        .where(
            or_(TransactionRow.account_id == account_id, TransactionRow.to_account_id == account_id)
        )
        .order_by(TransactionRow.date.desc(), TransactionRow.id)
    )
    return [_tx(b) for b in session.execute(stmt).scalars()]


def update_transaction(
    session: Session,
    tx_id: str,
    changes: Mapping[str, Any],
    *,
    allow_uncategorized: bool = False,
) -> Transaction:
    """Apply snake_case ``changes`` to a stored transaction after validating the result."""

    row = _require(session, TransactionRow, tx_id, "transaction")
    updated: Transaction = _tx(row.body).updated(**dict(changes))
    validate_transaction(updated, allow_uncategorized=allow_uncategorized)
    row.set_body(updated.to_record())
    session.flush()
    return updated


def delete_transaction(session: Session, tx_id: str) -> None:
    session.execute(delete(TransactionTagRow).where(TransactionTagRow.transaction_id == tx_id))
    session.execute(delete(TransactionRow).where(TransactionRow.id == tx_id))


def duplicate_key(tx: Transaction) -> tuple[str, str, str]:
    return (tx.date.isoformat(), tx.description, str(tx.amount.normalize()))


def is_duplicate(session: Session, tx: Transaction) -> bool:
    """Whether a stored transaction has the same date, description and amount."""

    key = duplicate_key(tx)
    stmt = select(TransactionRow.body).where(TransactionRow.date == key[0])
    return any(duplicate_key(_tx(b)) == key for b in session.execute(stmt).scalars())


def clear_transactions(session: Session) -> None:
    session.execute(delete(TransactionTagRow))
    session.execute(delete(TransactionRow))


# ---- Merchant rules ----------------------------------------------------------


def get_merchant_rules(session: Session) -> list[MerchantRule]:
    return [MerchantRule.model_validate(b) for b in _bodies(session, MerchantRuleRow)]


def upsert_merchant_rule(
    session: Session,
    *,
    category: str,
    merchant_id: str | None = None,
    pattern: str | None = None,
) -> MerchantRule:
    """Remember ``category`` for a merchant; a later call for the same merchant wins.

    The existing rule is looked up by ``merchant_id`` when given, otherwise by
    case-insensitive ``pattern``.
    """

    if merchant_id is None and not pattern:
        raise ValueError("a merchant rule needs a merchant_id or a pattern")

    existing: MerchantRule | None = None
    if merchant_id is not None:
        bodies = _bodies(session, MerchantRuleRow, MerchantRuleRow.merchant_id == merchant_id)
        existing = MerchantRule.model_validate(bodies[0]) if bodies else None
    else:
        wanted = (pattern or "").casefold()
        for rule in get_merchant_rules(session):
            if rule.merchant_id is None and (rule.pattern or "").casefold() == wanted:
                existing = rule
                break

    if existing is None:
        rule = MerchantRule(
            id=new_id(), merchant_id=merchant_id, pattern=pattern, category=category
        )
    else:
        rule = existing.updated(category=category, created_at=utcnow())
        if pattern and not rule.pattern:
            rule = rule.updated(pattern=pattern)
    _put(session, MerchantRuleRow, rule.to_record())
    session.flush()
    return rule


def clear_merchant_rules(session: Session) -> None:
    session.execute(delete(MerchantRuleRow))


# ---- Budgets -----------------------------------------------------------------


def get_budgets(session: Session) -> list[Budget]:
    return [Budget.model_validate(b) for b in _bodies(session, BudgetRow)]


def save_budget(session: Session, budget: Budget) -> None:
    """Insert or replace ``budget``; new limits must be positive.

    Stored budgets may carry a zero limit from older generations, which
    status reporting treats as unbounded.
    """

    if budget.monthly_limit <= 0:
        raise ValueError(f"budget {budget.id} needs a positive monthlyLimit")
    _put(session, BudgetRow, budget.to_record())
    session.flush()


def delete_budget(session: Session, budget_id: str) -> None:
    session.execute(delete(BudgetRow).where(BudgetRow.id == budget_id))


# ---- Accounts ----------------------------------------------------------------


def get_accounts(session: Session) -> list[AnyAccount]:
    return [parse_account(b) for b in _bodies(session, AccountRow)]


def get_account(session: Session, account_id: str) -> AnyAccount | None:
    row = session.get(AccountRow, account_id)
    return parse_account(row.body) if row is not None else None


def get_default_account(session: Session) -> AnyAccount | None:
    bodies = _bodies(session, AccountRow, AccountRow.is_default.is_(True))
    return parse_account(bodies[0]) if bodies else None


def _clear_default(session: Session, *, keep: str | None = None) -> None:
    for row in session.execute(
        select(AccountRow).where(AccountRow.is_default.is_(True))
    ).scalars():
        if row.id != keep:
            row.set_body({**row.body, "isDefault": False})


def set_default_account(session: Session, account_id: str) -> None:
    row = _require(session, AccountRow, account_id, "account")
    _clear_default(session, keep=account_id)
    row.set_body({**row.body, "isDefault": True})
    session.flush()


def add_account(session: Session, account: AnyAccount) -> AnyAccount:
    """Insert an account. The first account, or one flagged default, becomes the default."""

    has_accounts = session.execute(select(AccountRow.id).limit(1)).first() is not None
    if not has_accounts and not account.is_default:
        account = account.updated(is_default=True)
    if account.is_default:
        _clear_default(session)
    session.add(AccountRow.from_body(account.to_record()))
    session.flush()
    return account


def update_account(session: Session, account_id: str, changes: Mapping[str, Any]) -> AnyAccount:
    """Apply a partial patch (snake_case keys) to an account."""

    row = _require(session, AccountRow, account_id, "account")
    current = parse_account(row.body)
    patch = dict(changes)
    patch.pop("id", None)
    updated: AnyAccount = current.updated(**patch)
    if updated.is_default and not current.is_default:
        _clear_default(session, keep=account_id)
    row.set_body(updated.to_record())
    session.flush()
    return updated


def delete_account(session: Session, account_id: str, *, promote_to: str | None = None) -> int:
    """Delete an account and every transaction referencing it.

    When the deleted account was the default, ``promote_to`` becomes the new
    default; without it no account is default afterwards. Returns the number
    of transactions removed.
    """

    row = _require(session, AccountRow, account_id, "account")
    if promote_to == account_id:
        raise ValueError("cannot promote the account being deleted")
    was_default = bool(row.body.get("isDefault"))
    if promote_to is not None:
        _require(session, AccountRow, promote_to, "account")

    tx_ids = list(
        session.execute(
            select(TransactionRow.id).where(
                or_(
                    TransactionRow.account_id == account_id,
                    TransactionRow.to_account_id == account_id,
                )
            )
        ).scalars()
    )
    if tx_ids:
        session.execute(
            delete(TransactionTagRow).where(TransactionTagRow.transaction_id.in_(tx_ids))
        )
        session.execute(delete(TransactionRow).where(TransactionRow.id.in_(tx_ids)))
    session.delete(row)
    session.flush()
    if was_default and promote_to is not None:
        set_default_account(session, promote_to)
    _logger.info(
        "store:account_deleted account_id=%s transactions=%d promoted=%s",
        account_id,
        len(tx_ids),
        promote_to if was_default else None,
    )
    return len(tx_ids)


# ---- Merchants ---------------------------------------------------------------


def get_merchants(session: Session) -> list[Merchant]:
    return [Merchant.model_validate(b) for b in _bodies(session, MerchantRow)]


def get_merchant(session: Session, merchant_id: str) -> Merchant | None:
    row = session.get(MerchantRow, merchant_id)
    return Merchant.model_validate(row.body) if row is not None else None


def add_merchant(session: Session, merchant: Merchant) -> Merchant:
    session.add(MerchantRow.from_body(merchant.to_record()))
    session.flush()
    return merchant


def update_merchant(session: Session, merchant_id: str, changes: Mapping[str, Any]) -> Merchant:
    row = _require(session, MerchantRow, merchant_id, "merchant")
    updated: Merchant = Merchant.model_validate(row.body).updated(**dict(changes))
    row.set_body(updated.to_record())
    session.flush()
    return updated


def find_merchant_by_name(session: Session, name: str) -> Merchant | None:
    bodies = _bodies(session, MerchantRow, MerchantRow.name == name)
    return Merchant.model_validate(bodies[0]) if bodies else None


def find_merchant_by_alias(session: Session, alias: str) -> Merchant | None:
    for merchant in get_merchants(session):
        if alias in merchant.aliases:
            return merchant
    return None


def get_or_create_merchant(session: Session, name: str) -> Merchant:
    """Resolve ``name`` to a merchant by exact name, then alias; create it otherwise."""

    merchant = find_merchant_by_name(session, name) or find_merchant_by_alias(session, name)
    if merchant is None:
        merchant = add_merchant(session, Merchant(id=new_id(), name=name, aliases=[name]))
    return merchant


def merge_merchants(session: Session, from_id: str, to_id: str) -> Merchant:
    """Re-point transactions and rules from ``from_id`` to ``to_id`` and drop ``from_id``.

    The source merchant's name and aliases become aliases of the target.
    """

    if from_id == to_id:
        raise ValueError("cannot merge a merchant into itself")
    source_row = _require(session, MerchantRow, from_id, "merchant")
    target_row = _require(session, MerchantRow, to_id, "merchant")

    for row in session.execute(
        select(TransactionRow).where(TransactionRow.merchant_id == from_id)
    ).scalars():
        row.set_body({**row.body, "merchantId": to_id})
    for row in session.execute(
        select(MerchantRuleRow).where(MerchantRuleRow.merchant_id == from_id)
    ).scalars():
        row.set_body({**row.body, "merchantId": to_id})

    source = Merchant.model_validate(source_row.body)
    target = Merchant.model_validate(target_row.body)
    aliases = list(dict.fromkeys([*target.aliases, source.name, *source.aliases]))
    merged: Merchant = target.updated(aliases=aliases)
    target_row.set_body(merged.to_record())
    session.delete(source_row)
    session.flush()
    return merged


def rename_legacy_merchant(session: Session, old: str, new: str) -> int:
    """Rewrite the legacy free-text ``merchant`` on matching transactions."""

    count = 0
    for row in session.execute(select(TransactionRow)).scalars():
        if row.body.get("merchant") == old:
            row.set_body({**row.body, "merchant": new})
            count += 1
    session.flush()
    return count


# ---- Tags --------------------------------------------------------------------


def get_tags(session: Session) -> list[Tag]:
    return [Tag.model_validate(b) for b in _bodies(session, TagRow)]


def add_tag(session: Session, tag: Tag) -> Tag:
    session.add(TagRow.from_body(tag.to_record()))
    session.flush()
    return tag


def update_tag(session: Session, tag_id: str, changes: Mapping[str, Any]) -> Tag:
    row = _require(session, TagRow, tag_id, "tag")
    updated: Tag = Tag.model_validate(row.body).updated(**dict(changes))
    row.set_body(updated.to_record())
    session.flush()
    return updated


def _set_tx_tags(session: Session, tx_id: str, edit: Callable[[list[str]], list[str]]) -> None:
    row = session.get(TransactionRow, tx_id)
    if row is not None:
        tags = list(row.body.get("tags") or [])
        row.set_body({**row.body, "tags": edit(tags)})


def delete_tag(session: Session, tag_id: str) -> None:
    """Delete a tag, its transaction links and its id from every ``tags`` list."""

    tx_ids = list(
        session.execute(
            select(TransactionTagRow.transaction_id).where(TransactionTagRow.tag_id == tag_id)
        ).scalars()
    )
    for tx_id in tx_ids:
        _set_tx_tags(session, tx_id, lambda tags: [t for t in tags if t != tag_id])
    session.execute(delete(TransactionTagRow).where(TransactionTagRow.tag_id == tag_id))
    session.execute(delete(TagRow).where(TagRow.id == tag_id))
    session.flush()


def add_tag_to_transaction(session: Session, tx_id: str, tag_id: str) -> None:
    _require(session, TransactionRow, tx_id, "transaction")
    _require(session, TagRow, tag_id, "tag")
    if session.get(TransactionTagRow, (tx_id, tag_id)) is not None:
        return
    link = TransactionTag(transaction_id=tx_id, tag_id=tag_id)
    session.add(TransactionTagRow.from_body(link.to_record()))
    _set_tx_tags(session, tx_id, lambda tags: tags if tag_id in tags else [*tags, tag_id])
    session.flush()


def remove_tag_from_transaction(session: Session, tx_id: str, tag_id: str) -> None:
    session.execute(
        delete(TransactionTagRow).where(
            TransactionTagRow.transaction_id == tx_id, TransactionTagRow.tag_id == tag_id
        )
    )
    _set_tx_tags(session, tx_id, lambda tags: [t for t in tags if t != tag_id])
    session.flush()


def get_transaction_tags(session: Session, tx_id: str) -> list[Tag]:
    tag_ids = session.execute(
        select(TransactionTagRow.tag_id).where(TransactionTagRow.transaction_id == tx_id)
    ).scalars()
    tags = (session.get(TagRow, tag_id) for tag_id in tag_ids)
    return [Tag.model_validate(row.body) for row in tags if row is not None]


def get_transactions_by_tag(session: Session, tag_id: str) -> list[Transaction]:
    tx_ids = session.execute(
        select(TransactionTagRow.transaction_id).where(TransactionTagRow.tag_id == tag_id)
    ).scalars()
    rows = (session.get(TransactionRow, tx_id) for tx_id in tx_ids)
    return [_tx(row.body) for row in rows if row is not None]


# ---- Export / import ---------------------------------------------------------


def export_data(session: Session, *, now: dt.datetime | None = None) -> dict[str, Any]:
    """Return the backup document for every collection."""

    document: dict[str, Any] = {}
    for row_cls in COLLECTION_ROWS:
        if row_cls is SettingsRow:
            continue
        document[row_cls.collection] = _bodies(session, row_cls)
    settings = get_settings(session)
    document["settings"] = settings.to_record() if settings is not None else None
    document["exportedAt"] = (now or utcnow()).isoformat()
    document["version"] = CURRENT_SCHEMA_VERSION
    return document


def _document_snapshot(document: Mapping[str, Any]) -> Snapshot:
    raw_version = document.get("version", CURRENT_SCHEMA_VERSION)
    if not isinstance(raw_version, int) or isinstance(raw_version, bool):
        raise StoreImportError(f"Invalid backup version: {raw_version!r}.")
    collections: dict[str, list[dict[str, Any]]] = {}
    for name in collections_for(min(raw_version, CURRENT_SCHEMA_VERSION)):
        if name == "settings":
            settings = document.get("settings")
            collections[name] = [dict(settings)] if isinstance(settings, Mapping) else []
            continue
        records = document.get(name) or []
        if not isinstance(records, list) or not all(isinstance(r, Mapping) for r in records):
            raise StoreImportError(f"Invalid backup data structure: {name!r} must be a list.")
        collections[name] = [dict(r) for r in records]
    return Snapshot(version=raw_version, collections=collections)


def _typed_collections(snapshot: Snapshot) -> dict[str, list[Any]]:
    """Validate every migrated record against its model."""

    parsers: dict[str, Callable[[Mapping[str, Any]], Any]] = {
        "settings": AppSettings.model_validate,
        "accounts": parse_account,
        "merchants": Merchant.model_validate,
        "tags": Tag.model_validate,
        "transactions": Transaction.model_validate,
        "transactionTags": TransactionTag.model_validate,
        "merchantRules": MerchantRule.model_validate,
        "budgets": Budget.model_validate,
    }
    return {name: [parsers[name](r) for r in snapshot.records(name)] for name in parsers}


def _check_references(session: Session, typed: Mapping[str, list[Any]]) -> None:
    def ids(row_cls: type[DocumentRow], name: str) -> set[str]:
        stored = set(session.execute(select(row_cls.id)).scalars())  # type: ignore[attr-defined]
        return stored | {r.id for r in typed[name]}

    account_ids = ids(AccountRow, "accounts")
    merchant_ids = ids(MerchantRow, "merchants")
    tag_ids = ids(TagRow, "tags")
    tx_ids = ids(TransactionRow, "transactions")

    for tx in typed["transactions"]:
        if tx.account_id not in account_ids:
            raise StoreImportError(f"Transaction {tx.id} references unknown account {tx.account_id}.")
        if tx.to_account_id and tx.to_account_id not in account_ids:
            raise StoreImportError(
                f"Transaction {tx.id} references unknown account {tx.to_account_id}."
            )
        if tx.merchant_id and tx.merchant_id not in merchant_ids:
            raise StoreImportError(
                f"Transaction {tx.id} references unknown merchant {tx.merchant_id}."
            )
    for link in typed["transactionTags"]:
        if link.transaction_id not in tx_ids or link.tag_id not in tag_ids:
            raise StoreImportError(
                f"Tag link ({link.transaction_id}, {link.tag_id}) references a missing record."
            )
    for rule in typed["merchantRules"]:
        if rule.merchant_id and rule.merchant_id not in merchant_ids:
            raise StoreImportError(f"Merchant rule {rule.id} references unknown merchant.")
    for budget in typed["budgets"]:
        if budget.account_id and budget.account_id not in account_ids:
            raise StoreImportError(f"Budget {budget.id} references unknown account.")
        if budget.type == BudgetType.MERCHANT and budget.target_id not in merchant_ids:
            raise StoreImportError(f"Budget {budget.id} references unknown merchant.")
        if budget.type == BudgetType.TAG and budget.target_id not in tag_ids:
            raise StoreImportError(f"Budget {budget.id} references unknown tag.")


def import_data(session: Session, payload: str | Mapping[str, Any]) -> dict[str, int]:
    """Import a backup document with put semantics; return counts per collection.

    Older backup versions are migrated first. Records are validated and
    checked for dangling references before anything is written, then applied
    in dependency order (settings, accounts, merchants and tags, transactions,
    tag links, merchant rules and budgets). Callers run this inside a
    transaction, so a failure leaves the store as it was.
    """

    try:
        document = json.loads(payload) if isinstance(payload, str) else payload
    except json.JSONDecodeError as e:
        raise StoreImportError("Invalid JSON format. Please check your backup file.") from e
    if not isinstance(document, Mapping):
        raise StoreImportError("Invalid backup data structure.")

    try:
        snapshot = migrate_snapshot(_document_snapshot(document))
        typed = _typed_collections(snapshot)
        for tx in typed["transactions"]:
            validate_transaction(tx, allow_uncategorized=True)
        _check_references(session, typed)
    except (MigrationError, ValidationError, ValueError) as e:
        if isinstance(e, StoreImportError):
            raise StoreImportError(f"Import failed: {e} Your data has not been modified.") from e
        raise StoreImportError(
            f"Import failed: {e}. Your data has not been modified."
        ) from e

    counts: dict[str, int] = {}
    for row_cls in COLLECTION_ROWS:
        records = typed[row_cls.collection]
        for record in records:
            _put(session, row_cls, record.to_record())
        session.flush()
        counts[row_cls.collection] = len(records)

    defaults = session.execute(
        select(AccountRow.id).where(AccountRow.is_default.is_(True))
    ).scalars().all()
    if len(defaults) > 1:
        # Imported defaults win over the ones already stored.
        imported = [a.id for a in typed["accounts"] if a.is_default]
        set_default_account(session, imported[-1] if imported else defaults[0])
    _logger.info(
        "store:import_done %s",
        " ".join(f"{name}={n}" for name, n in counts.items()),
    )
    return counts


def clear_all_data(session: Session) -> None:
    for row_cls in reversed(COLLECTION_ROWS):
        session.execute(delete(row_cls))


def write_each(
    session: Session,
    items: Sequence[Any],
    write: Callable[[Session, Any], None],
) -> tuple[list[Any], list[tuple[Any, Exception]]]:
    """Run ``write`` for every item under its own SAVEPOINT.

    A failing item is rolled back to its savepoint and reported; the other
    items stay in the enclosing transaction. Returns ``(succeeded, failed)``.
    """

    succeeded: list[Any] = []
    failed: list[tuple[Any, Exception]] = []
    for item in items:
        try:
            with session.begin_nested():
                write(session, item)
        except Exception as e:  # noqa: BLE001 - reported per item to the caller
            failed.append((item, e))
            _logger.warning(
                "store:write_failed item=%s error=%s",
                getattr(item, "id", item),
                e.__class__.__name__,
            )
        else:
            succeeded.append(item)
    return succeeded, failed


__all__ = [
    "StoreImportError",
    "new_id",
    "open_store",
    "schema_version",
    "get_settings",
    "save_settings",
    "add_transactions",
    "put_transaction",
    "get_transaction",
    "get_all_transactions",
    "get_transactions_by_date_range",
    "get_transactions_by_account",
    "update_transaction",
    "delete_transaction",
    "duplicate_key",
    "is_duplicate",
    "clear_transactions",
    "get_merchant_rules",
    "upsert_merchant_rule",
    "clear_merchant_rules",
    "get_budgets",
    "save_budget",
    "delete_budget",
    "get_accounts",
    "get_account",
    "get_default_account",
    "set_default_account",
    "add_account",
    "update_account",
    "delete_account",
    "get_merchants",
    "get_merchant",
    "add_merchant",
    "update_merchant",
    "find_merchant_by_name",
    "find_merchant_by_alias",
    "get_or_create_merchant",
    "merge_merchants",
    "rename_legacy_merchant",
    "get_tags",
    "add_tag",
    "update_tag",
    "delete_tag",
    "add_tag_to_transaction",
    "remove_tag_from_transaction",
    "get_transaction_tags",
    "get_transactions_by_tag",
    "export_data",
    "import_data",
    "clear_all_data",
    "write_each",
]
