"""Application state: the in-memory view of the store and the actions that change it.

An :class:`AppState` is constructed explicitly and initialized with
:meth:`AppState.load_data`, which opens the store (running any pending schema
upgrade) and loads every collection. Actions write through to the store first
and update memory only after the write has committed, so memory never holds
more than what was persisted.

Bulk actions collect, then commit: every record is prepared and validated,
each write runs under its own SAVEPOINT inside one transaction, and after the
commit exactly the persisted subset is applied to memory. The outcome is
reported as a :class:`BulkWriteResult`.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from budget_db.client import session_scope
from sqlalchemy.orm import Session

from . import store
from .budgets import BudgetStatus, all_budget_statuses, find_conflicting_budget, month_bounds
from .categorize import AiSuggestion, apply_suggestion
from .logging_setup import get_logger
from .metrics import AccountMetrics, compute_account_metrics, filter_transactions_by_account
from .migrations import infer_income_class
from .models import (
    AppSettings,
    BankAccount,
    Budget,
    CategorySource,
    CreditCardAccount,
    IncomeClass,
    Merchant,
    MerchantRule,
    Tag,
    Transaction,
    TransactionType,
)
from .summary import FinancialSummary, summarize_period
from .validation import TransactionValidationError, apply_type_change, validate_transaction

_logger = get_logger("budget_tracker.state")

type AnyAccount = BankAccount | CreditCardAccount


@dataclass(frozen=True, slots=True)
class BulkWriteResult:
    """Per-record outcome of a bulk action.

    ``failed`` pairs a transaction id with the reason it was not written.
    """

    succeeded: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class BudgetConflictError(ValueError):
    """Another budget already covers the same target; pass ``replace=True`` to swap it."""

    def __init__(self, existing: Budget) -> None:
        super().__init__(
            f"a budget for {existing.type} {existing.target_id!r} already exists ({existing.id})"
        )
        self.existing = existing


class AppState:
    def __init__(self, database_url: str | None = None) -> None:
        self.database_url = database_url
        self.transactions: list[Transaction] = []
        self.settings: AppSettings = AppSettings()
        self.merchant_rules: list[MerchantRule] = []
        self.budgets: list[Budget] = []
        self.accounts: list[AnyAccount] = []
        self.merchants: list[Merchant] = []
        self.tags: list[Tag] = []
        self.selected_account_id: str = "all"
        self.selected_month: dt.date = dt.date.today().replace(day=1)
        self.loaded = False

    # ---- Lifecycle -------------------------------------------------------

    def load_data(self) -> None:
        """Open the store and load every collection into memory.

        Raises ``MigrationError`` when the store cannot be brought to the
        current schema; the state stays unloaded in that case.
        """

        self.database_url = store.open_store(self.database_url)
        with self._session() as session:
            self.transactions = store.get_all_transactions(session)
            self.settings = store.get_settings(session) or AppSettings()
            self.merchant_rules = store.get_merchant_rules(session)
            self.budgets = store.get_budgets(session)
            self.accounts = store.get_accounts(session)
            self.merchants = store.get_merchants(session)
            self.tags = store.get_tags(session)
        self.loaded = True
        _logger.info(
            "state:loaded transactions=%d accounts=%d budgets=%d",
            len(self.transactions),
            len(self.accounts),
            len(self.budgets),
        )

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with session_scope(database_url=self.database_url) as session:
            yield session

    def _ensure_loaded(self) -> None:
        if not self.loaded:
            raise RuntimeError("AppState.load_data() must be called first")

    # ---- Lookups ---------------------------------------------------------

    def transaction(self, tx_id: str) -> Transaction:
        for tx in self.transactions:
            if tx.id == tx_id:
                return tx
        raise KeyError(f"transaction not found: {tx_id!r}")

    def account(self, account_id: str) -> AnyAccount:
        for account in self.accounts:
            if account.id == account_id:
                return account
        raise KeyError(f"account not found: {account_id!r}")

    def merchant_names(self) -> dict[str, str]:
        return {m.id: m.name for m in self.merchants}

    def transactions_for_account(self, account_id: str | None = None) -> list[Transaction]:
        return filter_transactions_by_account(
            self.transactions, account_id or self.selected_account_id
        )

    def transactions_for_month(
        self, month: dt.date | None = None, *, account_id: str | None = None
    ) -> list[Transaction]:
        start, end = month_bounds(month or self.selected_month)
        return [
            tx for tx in self.transactions_for_account(account_id) if start <= tx.date <= end
        ]

    def account_metrics(self, account_id: str, month: dt.date | None = None) -> AccountMetrics:
        return compute_account_metrics(
            self.account(account_id),
            self.transactions_for_month(month, account_id=account_id),
        )

    def budget_statuses(self, month: dt.date | None = None) -> list[BudgetStatus]:
        return all_budget_statuses(self.budgets, self.transactions, month or self.selected_month)

    def summary(self, month: dt.date | None = None) -> FinancialSummary:
        return summarize_period(self.transactions_for_month(month))

    # ---- Memory updates (after commit only) ------------------------------

    def _replace_transactions(self, updated: Iterable[Transaction]) -> None:
        by_id = {tx.id: tx for tx in updated}
        if by_id:
            self.transactions = [by_id.get(tx.id, tx) for tx in self.transactions]

    def _sort_transactions(self) -> None:
        self.transactions.sort(key=lambda tx: tx.id)
        self.transactions.sort(key=lambda tx: tx.date, reverse=True)

    def _remember_rule(self, rule: MerchantRule) -> None:
        self.merchant_rules = [r for r in self.merchant_rules if r.id != rule.id] + [rule]

    # ---- Transactions ----------------------------------------------------

    def add_transactions(
        self, transactions: Sequence[Transaction], *, allow_uncategorized: bool = False
    ) -> int:
        self._ensure_loaded()
        with self._session() as session:
            count = store.add_transactions(
                session, transactions, allow_uncategorized=allow_uncategorized
            )
        self.transactions.extend(transactions)
        self._sort_transactions()
        return count

    def _upsert_rule_for(self, session: Session, tx: Transaction) -> MerchantRule | None:
        if not tx.category:
            return None
        if tx.merchant_id:
            return store.upsert_merchant_rule(
                session, merchant_id=tx.merchant_id, category=tx.category
            )
        pattern = tx.merchant or tx.description
        if not pattern:
            return None
        return store.upsert_merchant_rule(session, pattern=pattern, category=tx.category)

    @staticmethod
    def _recategorized(tx: Transaction, category: str) -> Transaction:
        if tx.type not in (TransactionType.EXPENSE, TransactionType.INFLOW):
            raise TransactionValidationError(f"{tx.type} cannot have a category")
        changes: dict[str, Any] = {
            "category": category,
            "category_source": CategorySource.MANUAL,
        }
        if tx.type == TransactionType.INFLOW and tx.income_class is None:
            changes["income_class"] = infer_income_class(category) or IncomeClass.EARNED
        updated: Transaction = tx.updated(**changes)
        validate_transaction(updated)
        return updated

    def recategorize(self, tx_id: str, category: str, *, remember: bool = True) -> Transaction:
        """Set a manual category and, by default, remember it for the merchant."""

        self._ensure_loaded()
        updated = self._recategorized(self.transaction(tx_id), category)
        rule: MerchantRule | None = None
        with self._session() as session:
            store.put_transaction(session, updated)
            if remember:
                rule = self._upsert_rule_for(session, updated)
        self._replace_transactions([updated])
        if rule is not None:
            self._remember_rule(rule)
        return updated

    def accept_suggestion(self, tx_id: str, suggestion: AiSuggestion) -> Transaction:
        """Apply an AI suggestion to one transaction and remember its category."""

        self._ensure_loaded()
        updated = apply_suggestion(self.transaction(tx_id), suggestion)
        if updated is None:
            raise TransactionValidationError(f"suggestion cannot be applied to {tx_id}")
        rule: MerchantRule | None = None
        with self._session() as session:
            store.put_transaction(session, updated, allow_uncategorized=True)
            rule = self._upsert_rule_for(session, updated)
        self._replace_transactions([updated])
        if rule is not None:
            self._remember_rule(rule)
        return updated

    def change_type(
        self,
        tx_id: str,
        new_type: TransactionType,
        *,
        to_account_id: str | None = None,
        category: str | None = None,
        income_class: IncomeClass | None = None,
    ) -> Transaction:
        self._ensure_loaded()
        updated = apply_type_change(
            self.transaction(tx_id),
            new_type,
            to_account_id=to_account_id,
            category=category,
            income_class=income_class,
        )
        with self._session() as session:
            store.put_transaction(session, updated)
        self._replace_transactions([updated])
        return updated

    def _bulk(
        self,
        tx_ids: Iterable[str],
        transform: Callable[[Transaction], Transaction],
        *,
        learn_rules: bool = False,
    ) -> BulkWriteResult:
        self._ensure_loaded()
        index = {tx.id: tx for tx in self.transactions}
        prepared: list[Transaction] = []
        failed: list[tuple[str, str]] = []
        for tx_id in dict.fromkeys(tx_ids):
            tx = index.get(tx_id)
            if tx is None:
                failed.append((tx_id, "transaction not found"))
                continue
            try:
                prepared.append(transform(tx))
            except ValueError as e:
                failed.append((tx_id, str(e)))

        rules: list[MerchantRule] = []
        with self._session() as session:
            written, errors = store.write_each(
                session, prepared, lambda s, tx: store.put_transaction(s, tx)
            )
            if learn_rules:
                for tx in written:
                    rule = self._upsert_rule_for(session, tx)
                    if rule is not None:
                        rules.append(rule)
        failed.extend((tx.id, str(e)) for tx, e in errors)

        self._replace_transactions(written)
        for rule in rules:
            self._remember_rule(rule)
        if failed:
            _logger.warning("state:bulk_partial succeeded=%d failed=%d", len(written), len(failed))
        return BulkWriteResult(succeeded=[tx.id for tx in written], failed=failed)

    def bulk_recategorize(
        self, tx_ids: Iterable[str], category: str, *, remember: bool = True
    ) -> BulkWriteResult:
        return self._bulk(
            tx_ids, lambda tx: self._recategorized(tx, category), learn_rules=remember
        )

    def bulk_change_type(
        self,
        tx_ids: Iterable[str],
        new_type: TransactionType,
        *,
        to_account_id: str | None = None,
        category: str | None = None,
        income_class: IncomeClass | None = None,
    ) -> BulkWriteResult:
        return self._bulk(
            tx_ids,
            lambda tx: apply_type_change(
                tx,
                new_type,
                to_account_id=to_account_id,
                category=category,
                income_class=income_class,
            ),
        )

    # ---- Budgets ---------------------------------------------------------

    def save_budget(self, budget: Budget, *, replace: bool = False) -> Budget:
        """Save ``budget``; an existing budget on the same target needs ``replace=True``."""

        self._ensure_loaded()
        conflict = find_conflicting_budget(self.budgets, budget)
        if conflict is not None and not replace:
            raise BudgetConflictError(conflict)
        with self._session() as session:
            if conflict is not None:
                store.delete_budget(session, conflict.id)
            store.save_budget(session, budget)
        self.budgets = [
            b for b in self.budgets if b.id != budget.id and (conflict is None or b.id != conflict.id)
        ] + [budget]
        return budget

    def delete_budget(self, budget_id: str) -> None:
        self._ensure_loaded()
        with self._session() as session:
            store.delete_budget(session, budget_id)
        self.budgets = [b for b in self.budgets if b.id != budget_id]

    # ---- Accounts --------------------------------------------------------

    def add_account(self, account: AnyAccount) -> AnyAccount:
        self._ensure_loaded()
        with self._session() as session:
            saved = store.add_account(session, account)
            accounts = store.get_accounts(session)
        self.accounts = accounts
        return saved

    def update_account(self, account_id: str, changes: Mapping[str, Any]) -> AnyAccount:
        self._ensure_loaded()
        with self._session() as session:
            updated = store.update_account(session, account_id, changes)
            accounts = store.get_accounts(session)
        self.accounts = accounts
        return updated

    def set_default_account(self, account_id: str) -> None:
        self._ensure_loaded()
        with self._session() as session:
            store.set_default_account(session, account_id)
            accounts = store.get_accounts(session)
        self.accounts = accounts

    def delete_account(self, account_id: str, *, promote_to: str | None = None) -> int:
        """Delete an account and its transactions; see :func:`store.delete_account`."""

        self._ensure_loaded()
        with self._session() as session:
            removed = store.delete_account(session, account_id, promote_to=promote_to)
            accounts = store.get_accounts(session)
        self.accounts = accounts
        self.transactions = [
            tx for tx in self.transactions if account_id not in (tx.account_id, tx.to_account_id)
        ]
        if self.selected_account_id == account_id:
            self.selected_account_id = "all"
        return removed

    # ---- Tags ------------------------------------------------------------

    def add_tag(self, tag: Tag) -> Tag:
        self._ensure_loaded()
        with self._session() as session:
            store.add_tag(session, tag)
        self.tags.append(tag)
        return tag

    def delete_tag(self, tag_id: str) -> None:
        self._ensure_loaded()
        with self._session() as session:
            store.delete_tag(session, tag_id)
        self.tags = [t for t in self.tags if t.id != tag_id]
        self._replace_transactions(
            tx.updated(tags=[t for t in tx.tags if t != tag_id])
            for tx in self.transactions
            if tag_id in tx.tags
        )

    def tag_transaction(self, tx_id: str, tag_id: str) -> None:
        self._ensure_loaded()
        tx = self.transaction(tx_id)
        with self._session() as session:
            store.add_tag_to_transaction(session, tx_id, tag_id)
        if tag_id not in tx.tags:
            self._replace_transactions([tx.updated(tags=[*tx.tags, tag_id])])

    def untag_transaction(self, tx_id: str, tag_id: str) -> None:
        self._ensure_loaded()
        tx = self.transaction(tx_id)
        with self._session() as session:
            store.remove_tag_from_transaction(session, tx_id, tag_id)
        self._replace_transactions([tx.updated(tags=[t for t in tx.tags if t != tag_id])])

    # ---- Settings and backups --------------------------------------------

    def save_settings(self, settings: AppSettings) -> None:
        self._ensure_loaded()
        with self._session() as session:
            store.save_settings(session, settings)
        self.settings = settings

    def export_data(self) -> dict[str, Any]:
        self._ensure_loaded()
        with self._session() as session:
            return store.export_data(session)

    def import_data(self, payload: str | Mapping[str, Any]) -> dict[str, int]:
        """Import a backup and reload memory from the store."""

        self._ensure_loaded()
        with self._session() as session:
            counts = store.import_data(session, payload)
        self.load_data()
        return counts

    def clear_all_data(self) -> None:
        self._ensure_loaded()
        with self._session() as session:
            store.clear_all_data(session)
        self.load_data()


__all__ = ["AppState", "BulkWriteResult", "BudgetConflictError"]
