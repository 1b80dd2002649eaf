from __future__ import annotations

import datetime as dt
import json
import math
from decimal import Decimal

import pytest
from budget_db.client import get_engine, session_scope
from sqlalchemy import inspect, text

from budget_tracker import store
from budget_tracker.budgets import budget_status
from budget_tracker.migrations import CURRENT_SCHEMA_VERSION, DEFAULT_ACCOUNT_ID, MigrationError
from budget_tracker.models import AppSettings, Budget, BudgetType, Merchant, Tag, TransactionType
from budget_tracker.validation import TransactionValidationError
from tests.helpers.store import (
    bank_account,
    card_account,
    expense,
    inflow,
    seed_legacy_store,
    transfer,
)


@pytest.fixture
def url(database_url: str) -> str:
    return store.open_store(database_url)


def _seed_accounts(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.add_account(s, bank_account("bank"))
        store.add_account(s, card_account("card"))


# ---- open_store --------------------------------------------------------------


def test_fresh_store_is_stamped_current(url: str) -> None:
    with session_scope(database_url=url) as s:
        assert store.schema_version(s) == CURRENT_SCHEMA_VERSION
        assert store.get_all_transactions(s) == []
        assert store.get_settings(s) is None
    # Opening again is a no-op.
    assert store.open_store(url) == url


def test_newer_store_refuses_to_open(database_url: str) -> None:
    seed_legacy_store(database_url, CURRENT_SCHEMA_VERSION + 1, {"transactions": []})
    with pytest.raises(MigrationError, match="newer than supported"):
        store.open_store(database_url)


def test_unversioned_store_with_data_refuses_to_open(database_url: str) -> None:
    seed_legacy_store(database_url, None, {"transactions": [{"id": "t1", "amount": 5}]})
    with pytest.raises(MigrationError, match="no schema version"):
        store.open_store(database_url)


def test_legacy_store_is_upgraded_in_place(database_url: str) -> None:
    seed_legacy_store(
        database_url,
        1,
        {
            "transactions": [
                {
                    "id": "t1",
                    "date": "2023-12-01",
                    "description": "PAYROLL",
                    "merchant": "ACME",
                    "amount": -50,
                    "category": "Salary",
                },
                {
                    "id": "t2",
                    "date": "2023-12-02",
                    "description": "COSTCO",
                    "merchant": "Costco",
                    "amount": 42,
                    "category": "Groceries",
                },
            ],
            "merchantRules": [{"pattern": "Costco", "category": "Groceries"}],
            "budgets": [{"category": "Groceries", "monthlyLimit": 400}],
            "settings": [{"apiKey": "", "currency": "CAD"}],
        },
    )

    store.open_store(database_url, now="2024-01-01T00:00:00+00:00")

    with session_scope(database_url=database_url) as s:
        assert store.schema_version(s) == CURRENT_SCHEMA_VERSION
        salary = store.get_transaction(s, "t1")
        assert salary is not None
        assert salary.type == TransactionType.INFLOW
        assert salary.amount == Decimal("50")
        assert salary.income_class == "EARNED"
        assert salary.account_id == DEFAULT_ACCOUNT_ID
        # Legacy keys survive next to the new ones.
        assert salary.merchant == "ACME"
        assert store.get_default_account(s).id == DEFAULT_ACCOUNT_ID
        [budget] = store.get_budgets(s)
        assert budget.target_id == "Groceries"
        [rule] = store.get_merchant_rules(s)
        assert rule.merchant_id == store.find_merchant_by_name(s, "Costco").id
        assert store.get_settings(s).currency == "CAD"


def test_failed_upgrade_leaves_old_generation(database_url: str) -> None:
    seed_legacy_store(
        database_url,
        3,
        {"transactions": [{"id": "t1", "date": "2024-01-01", "accountId": "a", "amount": "??"}]},
    )

    with pytest.raises(MigrationError, match="v3 -> v4"):
        store.open_store(database_url)

    with session_scope(database_url=database_url) as s:
        assert store.schema_version(s) == 3


def test_upgrade_rejects_records_the_models_refuse(database_url: str) -> None:
    seed_legacy_store(
        database_url,
        1,
        {"transactions": [{"id": "t1", "date": "someday", "description": "X", "amount": 5}]},
    )

    with pytest.raises(MigrationError, match="failed to upgrade store from v1"):
        store.open_store(database_url)

    with session_scope(database_url=database_url) as s:
        assert store.schema_version(s) == 1


def test_upgrade_failure_after_rebuild_restores_old_tables(
    database_url: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    seed_legacy_store(
        database_url,
        5,
        {
            "transactions": [
                {
                    "id": "t1",
                    "type": "EXPENSE",
                    "accountId": "a",
                    "date": "2024-01-01",
                    "description": "COFFEE",
                    "merchant": "Cafe",
                    "amount": 5,
                    "category": "Coffee",
                    "affectsBudget": True,
                }
            ]
        },
    )

    def fail(session, version):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "_write_version", fail)
    with pytest.raises(MigrationError, match="disk full"):
        store.open_store(database_url)

    engine = get_engine(database_url=database_url)
    columns = {c["name"] for c in inspect(engine).get_columns("transactions")}
    assert columns == {"id", "body"}
    assert not inspect(engine).has_table("merchants")
    with engine.connect() as conn:
        assert conn.execute(text("SELECT value FROM store_meta")).scalar_one() == "5"
        assert conn.execute(text("SELECT count(*) FROM transactions")).scalar_one() == 1

    monkeypatch.undo()
    store.open_store(database_url)
    with session_scope(database_url=database_url) as s:
        assert store.get_transaction(s, "t1").merchant_id is not None


def test_zero_limit_budget_survives_upgrade(database_url: str) -> None:
    seed_legacy_store(database_url, 1, {"budgets": [{"category": "Pets", "monthlyLimit": 0}]})

    store.open_store(database_url)

    with session_scope(database_url=database_url) as s:
        [budget] = store.get_budgets(s)
    assert budget.monthly_limit == 0
    status = budget_status(budget, [expense(5, "Pets")], dt.date(2024, 3, 1))
    assert status.percentage == math.inf


# ---- Transactions ------------------------------------------------------------


def test_add_and_query_transactions(url: str) -> None:
    _seed_accounts(url)
    march = expense(10, date=dt.date(2024, 3, 5), id="a")
    april = expense(20, date=dt.date(2024, 4, 5), id="b")
    payment = transfer(300, date=dt.date(2024, 3, 20), id="c")
    with session_scope(database_url=url) as s:
        assert store.add_transactions(s, [march, april, payment]) == 3

    with session_scope(database_url=url) as s:
        assert [t.id for t in store.get_all_transactions(s)] == ["b", "c", "a"]
        in_march = store.get_transactions_by_date_range(s, dt.date(2024, 3, 1), dt.date(2024, 3, 31))
        assert [t.id for t in in_march] == ["a", "c"]
        assert [t.id for t in store.get_transactions_by_account(s, "card")] == ["c"]
        assert store.get_transaction(s, "a") == march


def test_one_invalid_record_rejects_the_batch(url: str) -> None:
    with session_scope(database_url=url) as s:
        with pytest.raises(TransactionValidationError):
            store.add_transactions(s, [expense(10), expense(10, category=None)])
        assert store.get_all_transactions(s) == []


def test_uncategorized_drafts_allowed_on_request(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.add_transactions(s, [expense(10, category=None)], allow_uncategorized=True)
        assert len(store.get_all_transactions(s)) == 1


def test_update_transaction_validates(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.add_transactions(s, [expense(10, id="t1")])
        updated = store.update_transaction(s, "t1", {"category": "Coffee"})
        assert updated.category == "Coffee"
        with pytest.raises(TransactionValidationError):
            store.update_transaction(s, "t1", {"income_class": "EARNED"})
        with pytest.raises(KeyError):
            store.update_transaction(s, "missing", {"category": "Coffee"})
        assert store.get_transaction(s, "t1").category == "Coffee"


def test_duplicates_match_date_description_amount(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.add_transactions(s, [expense("12.50", description="COFFEE", id="t1")])
        assert store.is_duplicate(s, expense("12.5", description="COFFEE"))
        assert not store.is_duplicate(s, expense("12.51", description="COFFEE"))
        assert not store.is_duplicate(
            s, expense("12.50", description="COFFEE", date=dt.date(2024, 3, 16))
        )


def test_delete_and_clear_transactions(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.add_transactions(s, [expense(1, id="t1"), expense(2, id="t2")])
        store.delete_transaction(s, "t1")
        assert [t.id for t in store.get_all_transactions(s)] == ["t2"]
        store.clear_transactions(s)
        assert store.get_all_transactions(s) == []


# ---- Accounts ----------------------------------------------------------------


def test_first_account_becomes_default_and_default_is_unique(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.add_account(s, bank_account("bank"))
        store.add_account(s, card_account("card"))
        assert store.get_default_account(s).id == "bank"

        store.add_account(s, bank_account("savings", is_default=True))
        assert store.get_default_account(s).id == "savings"

        store.set_default_account(s, "card")
        defaults = [a.id for a in store.get_accounts(s) if a.is_default]
        assert defaults == ["card"]


def test_update_account_patch(url: str) -> None:
    _seed_accounts(url)
    with session_scope(database_url=url) as s:
        updated = store.update_account(s, "card", {"credit_limit": Decimal("1000"), "id": "x"})
        assert updated.id == "card"
        assert store.get_account(s, "card").credit_limit == Decimal("1000")
        store.update_account(s, "card", {"is_default": True})
        assert store.get_default_account(s).id == "card"
        assert store.get_account(s, "bank").is_default is False


def test_delete_account_cascades_and_promotes(url: str) -> None:
    _seed_accounts(url)
    with session_scope(database_url=url) as s:
        store.add_transactions(
            s,
            [
                expense(10, account_id="bank", id="t1"),
                transfer(300, account_id="bank", to_account_id="card", id="t2"),
                expense(5, account_id="card", id="t3"),
            ],
        )
        store.add_tag(s, Tag(id="tag", name="trip"))
        store.add_tag_to_transaction(s, "t1", "tag")

    with session_scope(database_url=url) as s:
        removed = store.delete_account(s, "bank", promote_to="card")

    assert removed == 2
    with session_scope(database_url=url) as s:
        assert [t.id for t in store.get_all_transactions(s)] == ["t3"]
        assert store.get_transactions_by_tag(s, "tag") == []
        assert store.get_default_account(s).id == "card"
        with pytest.raises(ValueError):
            store.delete_account(s, "card", promote_to="card")


# ---- Merchants, rules, tags, budgets, settings --------------------------------


def test_get_or_create_merchant_resolves_aliases(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.add_merchant(s, Merchant(id="m1", name="Starbucks", aliases=["SBUX"]))
        assert store.get_or_create_merchant(s, "Starbucks").id == "m1"
        assert store.get_or_create_merchant(s, "SBUX").id == "m1"
        created = store.get_or_create_merchant(s, "Tim Hortons")
        assert created.aliases == ["Tim Hortons"]
        assert len(store.get_merchants(s)) == 2


def test_merge_merchants_repoints_references(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.add_merchant(s, Merchant(id="m1", name="Starbucks"))
        store.add_merchant(s, Merchant(id="m2", name="SBUX #12", aliases=["SBUX"]))
        store.add_transactions(s, [expense(4, merchant_id="m2", id="t1")])
        store.upsert_merchant_rule(s, merchant_id="m2", category="Coffee")

        merged = store.merge_merchants(s, "m2", "m1")

        assert merged.aliases == ["SBUX #12", "SBUX"]
        assert store.get_merchant(s, "m2") is None
        assert store.get_transaction(s, "t1").merchant_id == "m1"
        assert [r.merchant_id for r in store.get_merchant_rules(s)] == ["m1"]
        with pytest.raises(ValueError):
            store.merge_merchants(s, "m1", "m1")


def test_rename_legacy_merchant(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.add_transactions(s, [expense(1, merchant="Old", id="t1"), expense(2, id="t2")])
        assert store.rename_legacy_merchant(s, "Old", "New") == 1
        assert store.get_transaction(s, "t1").merchant == "New"


def test_upsert_merchant_rule_replaces_by_merchant_or_pattern(url: str) -> None:
    with session_scope(database_url=url) as s:
        first = store.upsert_merchant_rule(s, merchant_id="m1", category="Coffee")
        second = store.upsert_merchant_rule(s, merchant_id="m1", category="Restaurants & Dining")
        store.upsert_merchant_rule(s, pattern="netflix", category="Entertainment")
        store.upsert_merchant_rule(s, pattern="NETFLIX", category="Subscriptions & Recurring")

        rules = {r.id: r for r in store.get_merchant_rules(s)}
        assert second.id == first.id
        assert len(rules) == 2
        assert rules[first.id].category == "Restaurants & Dining"
        with pytest.raises(ValueError):
            store.upsert_merchant_rule(s, category="Other")
        store.clear_merchant_rules(s)
        assert store.get_merchant_rules(s) == []


def test_tags_link_and_unlink(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.add_transactions(s, [expense(1, id="t1")])
        store.add_tag(s, Tag(id="g1", name="trip"))
        store.add_tag_to_transaction(s, "t1", "g1")
        store.add_tag_to_transaction(s, "t1", "g1")

        assert [t.id for t in store.get_transaction_tags(s, "t1")] == ["g1"]
        assert store.get_transaction(s, "t1").tags == ["g1"]
        assert store.update_tag(s, "g1", {"name": "vacation"}).name == "vacation"

        store.remove_tag_from_transaction(s, "t1", "g1")
        assert store.get_transaction(s, "t1").tags == []

        store.add_tag_to_transaction(s, "t1", "g1")
        store.delete_tag(s, "g1")
        assert store.get_tags(s) == []
        assert store.get_transaction(s, "t1").tags == []
        with pytest.raises(KeyError):
            store.add_tag_to_transaction(s, "t1", "g1")


def test_budgets_and_settings(url: str) -> None:
    with session_scope(database_url=url) as s:
        store.save_budget(s, Budget(id="b1", target_id="Coffee", monthly_limit=Decimal("50")))
        store.save_budget(s, Budget(id="b1", target_id="Coffee", monthly_limit=Decimal("60")))
        [budget] = store.get_budgets(s)
        assert budget.monthly_limit == Decimal("60")
        with pytest.raises(ValueError, match="positive monthlyLimit"):
            store.save_budget(s, Budget(id="b2", target_id="Tea", monthly_limit=Decimal("0")))
        store.delete_budget(s, "b1")
        assert store.get_budgets(s) == []

        store.save_settings(s, AppSettings(currency="USD"))
        assert store.get_settings(s).currency == "USD"


# ---- Export / import ---------------------------------------------------------


def _populate(url: str) -> None:
    _seed_accounts(url)
    with session_scope(database_url=url) as s:
        store.add_merchant(s, Merchant(id="m1", name="Costco"))
        store.add_tag(s, Tag(id="g1", name="bulk"))
        store.add_transactions(
            s,
            [
                expense("120.25", merchant_id="m1", id="t1"),
                inflow(2000, id="t2"),
                transfer(300, id="t3"),
            ],
        )
        store.add_tag_to_transaction(s, "t1", "g1")
        store.upsert_merchant_rule(s, merchant_id="m1", category="Groceries")
        store.save_budget(s, Budget(id="b1", target_id="Groceries", monthly_limit=Decimal("400")))
        store.save_settings(s, AppSettings())


def test_export_document_shape(url: str) -> None:
    _populate(url)
    with session_scope(database_url=url) as s:
        doc = store.export_data(s, now=dt.datetime(2024, 5, 1, tzinfo=dt.UTC))

    assert doc["version"] == CURRENT_SCHEMA_VERSION
    assert doc["exportedAt"].startswith("2024-05-01")
    assert isinstance(doc["settings"], dict)
    assert len(doc["transactions"]) == 3
    t1 = next(t for t in doc["transactions"] if t["id"] == "t1")
    assert t1["amount"] == 120.25
    assert t1["accountId"] == "bank"
    assert doc["transactionTags"][0]["tagId"] == "g1"
    json.dumps(doc)


def test_export_then_import_into_empty_store(url: str, tmp_path) -> None:
    _populate(url)
    with session_scope(database_url=url) as s:
        doc = store.export_data(s)

    other = store.open_store(f"sqlite+pysqlite:///{tmp_path / 'other.db'}")
    with session_scope(database_url=other) as s:
        counts = store.import_data(s, json.dumps(doc))

    assert counts["transactions"] == 3
    assert counts["accounts"] == 2
    with session_scope(database_url=other) as s:
        assert store.get_transaction(s, "t1").amount == Decimal("120.25")
        assert [t.id for t in store.get_transaction_tags(s, "t1")] == ["g1"]
        assert store.get_default_account(s).id == "bank"


def test_import_rejects_dangling_reference(url: str) -> None:
    payload = {
        "version": CURRENT_SCHEMA_VERSION,
        "accounts": [],
        "transactions": [expense(10, account_id="ghost").to_record()],
    }
    with session_scope(database_url=url) as s:
        with pytest.raises(store.StoreImportError, match="unknown account ghost") as exc:
            store.import_data(s, payload)
        assert str(exc.value).endswith("Your data has not been modified.")
        assert store.get_all_transactions(s) == []


@pytest.mark.parametrize(
    ("budget_type", "label"), [(BudgetType.MERCHANT, "merchant"), (BudgetType.TAG, "tag")]
)
def test_import_rejects_budget_on_missing_target(
    url: str, budget_type: BudgetType, label: str
) -> None:
    budget = Budget(id="b1", type=budget_type, target_id="ghost", monthly_limit=Decimal("50"))
    payload = {"version": CURRENT_SCHEMA_VERSION, "budgets": [budget.to_record()]}
    with session_scope(database_url=url) as s:
        with pytest.raises(store.StoreImportError, match=f"unknown {label}"):
            store.import_data(s, payload)
        assert store.get_budgets(s) == []


def test_import_rejects_bad_json(url: str) -> None:
    with session_scope(database_url=url) as s:
        with pytest.raises(store.StoreImportError, match="Invalid JSON format"):
            store.import_data(s, "{not json")


def test_import_migrates_older_backup(url: str) -> None:
    legacy = {
        "version": 1,
        "transactions": [
            {"id": "t1", "date": "2023-01-02", "description": "REFUND", "amount": -15, "category": "Refund"}
        ],
        "settings": {"apiKey": "", "currency": "CAD"},
    }
    with session_scope(database_url=url) as s:
        store.import_data(s, legacy)
        tx = store.get_transaction(s, "t1")
        assert tx.type == TransactionType.INFLOW
        assert tx.income_class == "REIMBURSEMENT"
        assert store.get_account(s, DEFAULT_ACCOUNT_ID) is not None


def test_import_keeps_single_default(url: str) -> None:
    _seed_accounts(url)
    payload = {
        "version": CURRENT_SCHEMA_VERSION,
        "accounts": [bank_account("savings", is_default=True).to_record()],
    }
    with session_scope(database_url=url) as s:
        store.import_data(s, payload)
        assert [a.id for a in store.get_accounts(s) if a.is_default] == ["savings"]


def test_clear_all_data(url: str) -> None:
    _populate(url)
    with session_scope(database_url=url) as s:
        store.clear_all_data(s)
    with session_scope(database_url=url) as s:
        assert store.get_accounts(s) == []
        assert store.get_all_transactions(s) == []
        assert store.schema_version(s) == CURRENT_SCHEMA_VERSION


def test_write_each_isolates_failures(url: str) -> None:
    def write(session, tx):
        if tx.id == "bad":
            raise RuntimeError("boom")
        store.put_transaction(session, tx)

    with session_scope(database_url=url) as s:
        ok, failed = store.write_each(s, [expense(1, id="a"), expense(1, id="bad"), expense(2, id="b")], write)

    assert [t.id for t in ok] == ["a", "b"]
    assert [(t.id, str(e)) for t, e in failed] == [("bad", "boom")]
    with session_scope(database_url=url) as s:
        assert sorted(t.id for t in store.get_all_transactions(s)) == ["a", "b"]
