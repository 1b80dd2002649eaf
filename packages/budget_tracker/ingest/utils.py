"""Ingest utilities shared by CLI commands and workflows."""

from __future__ import annotations

import csv
from collections.abc import Iterable
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path

from ..logging_setup import get_logger
from ..models import Transaction
from ..store import duplicate_key
from .adapters.bank_csv import CsvRowError, to_drafts

_logger = get_logger("budget_tracker.ingest")


@dataclass(slots=True)
class ImportResult:
    drafts: list[Transaction] = field(default_factory=list)
    errors: list[CsvRowError] = field(default_factory=list)
    source_file: str | None = None


def load_drafts_from_csv(
    csv_path: str | PathLike[str],
    *,
    account_id: str,
) -> ImportResult:
    """Read a bank CSV and return draft transactions plus per-row errors.

    A file that cannot be read raises ``OSError``; malformed rows are
    collected in ``errors`` and logged, and the rest still import.
    """

    p = Path(csv_path)
    result = ImportResult(source_file=p.name)
    with p.open(encoding="utf-8-sig", newline="") as f:
        for item in to_drafts(csv.reader(f), account_id=account_id, source_file=p.name):
            if isinstance(item, CsvRowError):
                result.errors.append(item)
            else:
                result.drafts.append(item)
    for err in result.errors:
        _logger.warning("csv:row_error file=%s row=%d reason=%s", p.name, err.row_number, err.message)
    _logger.info(
        "csv:parsed file=%s drafts=%d errors=%d", p.name, len(result.drafts), len(result.errors)
    )
    return result


def detect_duplicates(
    new_transactions: Iterable[Transaction],
    existing_transactions: Iterable[Transaction],
) -> tuple[list[Transaction], list[Transaction]]:
    """Split ``new_transactions`` into ``(unique, duplicates)``.

    A record is a duplicate when an existing record, or an earlier new one,
    has the same date, description and amount.
    """

    seen = {duplicate_key(tx) for tx in existing_transactions}
    unique: list[Transaction] = []
    duplicates: list[Transaction] = []
    for tx in new_transactions:
        key = duplicate_key(tx)
        if key in seen:
            duplicates.append(tx)
        else:
            unique.append(tx)
            seen.add(key)
    return unique, duplicates


__all__ = ["ImportResult", "load_drafts_from_csv", "detect_duplicates"]
