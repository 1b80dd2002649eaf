"""End-to-end CSV import: parse, de-duplicate, resolve merchants, classify, persist.

Network calls happen outside any database transaction; each store step runs
in its own ``session_scope``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from os import PathLike

from budget_db.client import session_scope

from .. import store
from ..categorize import ClassificationReport, classify_transactions
from ..ingest.adapters.bank_csv import CsvRowError
from ..ingest.utils import detect_duplicates, load_drafts_from_csv
from ..logging_setup import get_logger
from ..models import AppSettings, CategorySource, Transaction

_logger = get_logger("budget_tracker.workflows.import_flow")


@dataclass(slots=True)
class ImportReport:
    source_file: str | None = None
    account_id: str | None = None
    parsed: int = 0
    duplicates: int = 0
    imported: list[Transaction] = field(default_factory=list)
    row_errors: list[CsvRowError] = field(default_factory=list)
    classification: ClassificationReport | None = None
    rules_learned: int = 0


def import_csv(
    csv_path: str | PathLike[str],
    *,
    account_id: str | None = None,
    database_url: str | None = None,
    api_key: str | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> ImportReport:
    """Import a bank CSV into ``account_id`` (default account when omitted).

    Parameters
    ----------
    csv_path:
        Headerless ``date, description, charge, credit[, balance]`` export.
    account_id:
        Target account. Raises ``KeyError`` when it does not exist, or when
        omitted and no default account is set.
    api_key:
        Overrides ``settings.apiKey`` and ``OPENAI_API_KEY``.
    on_progress:
        Optional callable receiving short status lines (e.g., ``print``).

    Notes
    -----
    Row errors and failed AI batches do not stop the import: rows are
    reported in ``row_errors`` and unclassified records are saved
    uncategorized. Every AI category is remembered as a merchant rule.
    """

    def progress(msg: str) -> None:
        if on_progress:
            on_progress(msg)

    url = store.open_store(database_url)
    report = ImportReport()

    with session_scope(database_url=url) as session:
        account = (
            store.get_account(session, account_id)
            if account_id is not None
            else store.get_default_account(session)
        )
        if account is None:
            raise KeyError(f"account not found: {account_id!r}" if account_id else "no default account")
        settings = store.get_settings(session) or AppSettings()
        existing = store.get_all_transactions(session)
    report.account_id = account.id

    parsed = load_drafts_from_csv(csv_path, account_id=account.id)
    report.source_file = parsed.source_file
    report.row_errors = parsed.errors
    report.parsed = len(parsed.drafts)
    unique, duplicates = detect_duplicates(parsed.drafts, existing)
    report.duplicates = len(duplicates)
    progress(
        f"Found {len(unique)} new transactions"
        + (f", {len(duplicates)} duplicates skipped" if duplicates else "")
    )
    if not unique:
        return report

    # Free-text merchant names become merchant references.
    with session_scope(database_url=url) as session:
        drafts: list[Transaction] = []
        for tx in unique:
            if tx.merchant:
                merchant = store.get_or_create_merchant(session, tx.merchant)
                tx = tx.updated(merchant_id=merchant.id, merchant=None)
            drafts.append(tx)
        rules = store.get_merchant_rules(session)

    progress("Classifying transactions...")
    classification = classify_transactions(
        drafts,
        rules=rules,
        categories=settings.default_categories,
        api_key=api_key or settings.api_key or None,
    )
    report.classification = classification
    for failure in classification.failures:
        progress(f"AI batch {failure.batch_index} failed ({failure.size} transactions): {failure.error}")

    with session_scope(database_url=url) as session:
        store.add_transactions(session, classification.transactions, allow_uncategorized=True)
        learned: dict[str, str] = {}
        for tx in classification.transactions:
            if tx.category_source == CategorySource.AI and tx.category and tx.merchant_id:
                learned[tx.merchant_id] = tx.category
        for merchant_id, category in learned.items():
            store.upsert_merchant_rule(session, merchant_id=merchant_id, category=category)
    report.rules_learned = len(learned)
    report.imported = classification.transactions

    _logger.info(
        "import:done file=%s account_id=%s imported=%d duplicates=%d row_errors=%d uncategorized=%d",
        report.source_file,
        report.account_id,
        len(report.imported),
        report.duplicates,
        len(report.row_errors),
        classification.uncategorized,
    )
    progress(f"Imported {len(report.imported)} transactions")
    return report


__all__ = ["ImportReport", "import_csv"]
