"""Versioned record shapes and the upgrade path between them.

Each schema generation is reached from the previous one by a pure transform
over the full set of collections. The store (see
:func:`budget_tracker.store.open_store`) reads a snapshot of an older store,
runs :func:`migrate_snapshot`, and writes the result back in a single
database transaction, so a failed step leaves the old generation untouched.

Generations
-----------
1. transactions with a signed ``amount`` and free-text ``merchant``;
   merchant rules keyed by ``pattern``; budgets keyed by ``category``;
   settings.
2. budgets get ids.
3. ``accounts`` collection; every transaction gets an ``accountId``.
4. transaction types: ``type``, non-negative ``amount``, ``affectsBudget``,
   ``incomeClass`` for inflows.
5. accounts become BANK / CREDIT_CARD variants.
6. ``merchants``, ``tags`` and ``transactionTags``; transactions and merchant
   rules reference merchants by id; budgets get a ``type``/``targetId`` target.

Transforms are deterministic and idempotent on records that already have the
new shape. Generated ids are UUIDv5 values derived from the source value, so a
repeated run produces the same ids. Legacy keys are kept next to the new ones.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, NamedTuple

from .logging_setup import get_logger
from .models import DEFAULT_CURRENCY, utcnow

_logger = get_logger("budget_tracker.migrations")

# Fixed namespace for ids generated during upgrades.
ID_NAMESPACE = uuid.UUID("6f1c1f0e-3b5a-4d0c-9a57-2f6f3c1b8e41")

DEFAULT_ACCOUNT_ID = "default-account"
UNKNOWN_MERCHANT = "Unknown"

type Collections = dict[str, list[dict[str, Any]]]


class MigrationError(RuntimeError):
    """A store cannot be brought to the current schema generation."""


@dataclass(frozen=True, slots=True)
class MigrationContext:
    now: str
    currency: str = DEFAULT_CURRENCY


@dataclass(slots=True)
class Snapshot:
    """All collections of a store at a given schema generation.

    ``settings`` is held as a collection of at most one record.
    """

    version: int
    collections: Collections = field(default_factory=dict)

    def records(self, name: str) -> list[dict[str, Any]]:
        return self.collections.get(name, [])


class Migration(NamedTuple):
    version: int
    description: str
    # Collections that exist once this generation is reached.
    collections: tuple[str, ...]
    upgrade: Callable[[Collections, MigrationContext], Collections]


def generated_id(kind: str, value: str) -> str:
    return str(uuid.uuid5(ID_NAMESPACE, f"{kind}:{value}"))


def _to_number(value: Decimal) -> int | float:
    return int(value) if value == value.to_integral_value() else float(value)


def _magnitude(raw: Any) -> tuple[bool, int | float]:
    """Return ``(was_negative, abs_value)`` for a legacy signed amount."""

    if isinstance(raw, bool):
        raise ValueError(f"invalid legacy amount: {raw!r}")
    if isinstance(raw, int | float):
        return raw < 0, abs(raw)
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as e:
        raise ValueError(f"invalid legacy amount: {raw!r}") from e
    return value < 0, _to_number(abs(value))


# ---- v1 -> v2 ----------------------------------------------------------------


def _upgrade_v2(data: Collections, ctx: MigrationContext) -> Collections:
    budgets: list[dict[str, Any]] = []
    for budget in data.get("budgets", []):
        b = dict(budget)
        b.setdefault("id", f"budget-{b.get('category')}")
        if b.get("alertThreshold") is None:
            b["alertThreshold"] = 80
        if not b.get("createdAt"):
            b["createdAt"] = ctx.now
        budgets.append(b)
    return {**data, "budgets": budgets}


# ---- v2 -> v3 ----------------------------------------------------------------


def _legacy_default_account(ctx: MigrationContext) -> dict[str, Any]:
    # Pre-v5 account shape; ``type == "credit"`` becomes a credit card in v5.
    return {
        "id": DEFAULT_ACCOUNT_ID,
        "name": "Default Account",
        "type": "credit",
        "color": "#f59e0b",
        "isDefault": True,
        "createdAt": ctx.now,
    }


def _upgrade_v3(data: Collections, ctx: MigrationContext) -> Collections:
    accounts = [dict(a) for a in data.get("accounts", [])]
    if not accounts:
        accounts.append(_legacy_default_account(ctx))
    default_id = next(
        (a["id"] for a in accounts if a.get("isDefault")), accounts[0]["id"]
    )

    transactions: list[dict[str, Any]] = []
    for tx in data.get("transactions", []):
        t = dict(tx)
        if not t.get("accountId"):
            t["accountId"] = default_id
        transactions.append(t)
    return {**data, "accounts": accounts, "transactions": transactions}


# ---- v3 -> v4 ----------------------------------------------------------------

# Checked in order; first keyword hit wins.
_INCOME_CLASS_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("EARNED", ("salary", "wage", "income")),
    ("PASSIVE", ("interest", "dividend", "investment")),
    ("REIMBURSEMENT", ("refund", "return", "reimburs", "cashback")),
    ("WINDFALL", ("gift", "settlement")),
)


def infer_income_class(category: str | None) -> str | None:
    """Guess an income class from a legacy category; ``None`` when nothing matches."""

    text = (category or "").lower()
    for income_class, keywords in _INCOME_CLASS_KEYWORDS:
        if any(k in text for k in keywords):
            return income_class
    return None


def _upgrade_v4(data: Collections, ctx: MigrationContext) -> Collections:
    transactions: list[dict[str, Any]] = []
    for tx in data.get("transactions", []):
        t = dict(tx)
        if not t.get("type"):
            negative, amount = _magnitude(t.get("amount") or 0)
            legacy_category = t.get("category")
            t["type"] = "INFLOW" if negative else "EXPENSE"
            t["amount"] = amount
            t["affectsBudget"] = True
            t["category"] = None if legacy_category == "Uncategorized" else legacy_category
            if negative:
                income_class = infer_income_class(legacy_category)
                if income_class is None:
                    income_class = "EARNED"
                    t["category"] = "Other Income"
                t["incomeClass"] = income_class
        transactions.append(t)
    return {**data, "transactions": transactions}


# ---- v4 -> v5 ----------------------------------------------------------------

_LEGACY_BANK_SUBTYPES = {"chequing": "CHEQUING", "savings": "SAVINGS"}


def _upgrade_v5(data: Collections, ctx: MigrationContext) -> Collections:
    accounts: list[dict[str, Any]] = []
    for account in data.get("accounts", []):
        a = dict(account)
        if not a.get("accountType"):
            legacy_type = a.get("type")
            a.setdefault("currency", ctx.currency)
            a["isActive"] = True
            a.setdefault("color", "#3b82f6")
            a["isDefault"] = bool(a.get("isDefault"))
            a.setdefault("createdAt", ctx.now)
            if legacy_type == "credit":
                a["accountType"] = "CREDIT_CARD"
                if a.get("institution"):
                    a.setdefault("issuer", a["institution"])
            else:
                a["accountType"] = "BANK"
                a["subtype"] = _LEGACY_BANK_SUBTYPES.get(str(legacy_type), "CHEQUING")
        accounts.append(a)
    return {**data, "accounts": accounts}


# ---- v5 -> v6 ----------------------------------------------------------------


class _MerchantIndex:
    """Merchants by exact name, creating one per distinct new name."""

    def __init__(self, existing: Sequence[dict[str, Any]], ctx: MigrationContext) -> None:
        self._ctx = ctx
        self.records: list[dict[str, Any]] = [dict(m) for m in existing]
        self._by_name: dict[str, dict[str, Any]] = {}
        for m in self.records:
            self._by_name.setdefault(m["name"], m)

    def for_name(self, name: str) -> dict[str, Any]:
        merchant = self._by_name.get(name)
        if merchant is None:
            merchant = {
                "id": generated_id("merchant", name),
                "name": name,
                "aliases": [name],
                "createdAt": self._ctx.now,
            }
            self.records.append(merchant)
            self._by_name[name] = merchant
        return merchant

    def matching(self, pattern: str) -> dict[str, Any] | None:
        if pattern in self._by_name:
            return self._by_name[pattern]
        for m in self.records:
            if pattern in (m.get("aliases") or []):
                return m
        return None


def _upgrade_v6(data: Collections, ctx: MigrationContext) -> Collections:
    merchants = _MerchantIndex(data.get("merchants", []), ctx)

    transactions: list[dict[str, Any]] = []
    for tx in data.get("transactions", []):
        t = dict(tx)
        if not t.get("merchantId"):
            t["merchantId"] = merchants.for_name(t.get("merchant") or UNKNOWN_MERCHANT)["id"]
        if not isinstance(t.get("tags"), list):
            t["tags"] = []
        transactions.append(t)

    rules: list[dict[str, Any]] = []
    for rule in data.get("merchantRules", []):
        r = dict(rule)
        if not r.get("merchantId"):
            pattern = r.get("pattern") or UNKNOWN_MERCHANT
            merchant = merchants.matching(pattern) or merchants.for_name(pattern)
            r["merchantId"] = merchant["id"]
        if r.get("id") is None or r.get("id") == "":
            r["id"] = generated_id("rule", str(r.get("pattern") or r["merchantId"]))
        else:
            r["id"] = str(r["id"])
        r.setdefault("createdAt", ctx.now)
        rules.append(r)

    budgets: list[dict[str, Any]] = []
    for budget in data.get("budgets", []):
        b = dict(budget)
        b.setdefault("type", "CATEGORY")
        if not b.get("targetId"):
            b["targetId"] = b.get("category")
        budgets.append(b)

    return {
        **data,
        "transactions": transactions,
        "merchantRules": rules,
        "budgets": budgets,
        "merchants": merchants.records,
        "tags": [dict(t) for t in data.get("tags", [])],
        "transactionTags": [dict(t) for t in data.get("transactionTags", [])],
    }


# ---- Registry and runner -----------------------------------------------------

_V1 = ("transactions", "merchantRules", "budgets", "settings")
_V3 = (*_V1, "accounts")
_V6 = (*_V3, "merchants", "tags", "transactionTags")

INITIAL_COLLECTIONS: tuple[str, ...] = _V1

MIGRATIONS: list[Migration] = [
    Migration(2, "budgets get ids", _V1, _upgrade_v2),
    Migration(3, "accounts and transaction accountId", _V3, _upgrade_v3),
    Migration(4, "transaction type system", _V3, _upgrade_v4),
    Migration(5, "bank and credit-card account variants", _V3, _upgrade_v5),
    Migration(6, "merchants, tags and budget targets", _V6, _upgrade_v6),
]

CURRENT_SCHEMA_VERSION = 6
CURRENT_COLLECTIONS: tuple[str, ...] = _V6


def collections_for(version: int, migrations: Sequence[Migration] | None = None) -> tuple[str, ...]:
    """Collection names present at schema generation ``version``."""

    names = INITIAL_COLLECTIONS
    for m in MIGRATIONS if migrations is None else migrations:
        if m.version <= version:
            names = m.collections
    return names


def _context_for(data: Collections, now: str | None) -> MigrationContext:
    currency = DEFAULT_CURRENCY
    for settings in data.get("settings", []):
        currency = settings.get("currency") or DEFAULT_CURRENCY
    return MigrationContext(now=now or utcnow().isoformat(), currency=currency)


def migrate_snapshot(
    snapshot: Snapshot,
    *,
    now: str | None = None,
    migrations: Sequence[Migration] | None = None,
) -> Snapshot:
    """Upgrade ``snapshot`` to the latest generation in ``migrations``.

    The input is not modified. A snapshot already at the latest generation is
    returned as an equal copy.

    Parameters
    ----------
    snapshot:
        Collections read from a store at ``snapshot.version``.
    now:
        ISO timestamp used for every ``createdAt`` the upgrade fills in;
        defaults to the current UTC time.
    migrations:
        Ordered transforms; defaults to :data:`MIGRATIONS`.

    Raises
    ------
    MigrationError
        When the snapshot is newer than the code or a transform fails.
    """

    steps = list(MIGRATIONS if migrations is None else migrations)
    target = steps[-1].version if steps else snapshot.version
    if snapshot.version < 1:
        raise MigrationError(f"invalid schema version: {snapshot.version}")
    if snapshot.version > target:
        raise MigrationError(
            f"store schema v{snapshot.version} is newer than supported v{target}"
        )

    data: Collections = copy.deepcopy(snapshot.collections)
    ctx = _context_for(data, now)
    version = snapshot.version
    for step in steps:
        if step.version <= version:
            continue
        if step.version != version + 1:
            raise MigrationError(f"no upgrade path from v{version} to v{step.version}")
        try:
            data = step.upgrade(data, ctx)
        except Exception as e:
            _logger.error(
                "migrate:step_failed from_version=%d to_version=%d error=%s",
                version,
                step.version,
                e.__class__.__name__,
            )
            raise MigrationError(
                f"upgrade v{version} -> v{step.version} ({step.description}) failed: {e}"
            ) from e
        for name in step.collections:
            data.setdefault(name, [])
        _logger.info(
            "migrate:step from_version=%d to_version=%d transactions=%d",
            version,
            step.version,
            len(data.get("transactions", [])),
        )
        version = step.version

    return Snapshot(version=version, collections=data)


__all__ = [
    "ID_NAMESPACE",
    "DEFAULT_ACCOUNT_ID",
    "UNKNOWN_MERCHANT",
    "MigrationError",
    "MigrationContext",
    "Snapshot",
    "Migration",
    "MIGRATIONS",
    "INITIAL_COLLECTIONS",
    "CURRENT_SCHEMA_VERSION",
    "CURRENT_COLLECTIONS",
    "generated_id",
    "infer_income_class",
    "collections_for",
    "migrate_snapshot",
]
