"""Adapter mapping headerless bank/credit-card CSV rows to draft transactions.

Row layout (no header)::

    date, description, charge, credit[, balance]

Mapping rules
-------------
- ``date``: ``YYYY-MM-DD`` or ``MM/DD/YYYY``; anything else is a row error.
- A populated ``charge`` makes an EXPENSE, a populated ``credit`` an INFLOW;
  ``amount`` is the absolute value of that column. Both or neither populated,
  a non-numeric value, or a zero amount is a row error.
- ``merchant``: the description with payment-processor prefixes, store
  numbers and trailing location codes removed.
- Drafts are uncategorized (``category`` and ``incomeClass`` unset) with
  ``affectsBudget`` true.

Row errors never stop the import; they are yielded as :class:`CsvRowError`
alongside the drafts.
"""

from __future__ import annotations

import datetime as dt
import re
import uuid
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from ...models import Transaction, TransactionType, utcnow

_PROCESSOR_PREFIXES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^SQ \*", re.IGNORECASE), ""),
    (re.compile(r"^AMZN Mktp CA\*", re.IGNORECASE), "Amazon.ca "),
    (re.compile(r"^Amazon\.ca\*", re.IGNORECASE), "Amazon.ca "),
    (re.compile(r"^SP ", re.IGNORECASE), ""),
    (re.compile(r"^LS ", re.IGNORECASE), ""),
    (re.compile(r"^BAM\*", re.IGNORECASE), ""),
    (re.compile(r"^ACT\*", re.IGNORECASE), ""),
    (re.compile(r"^ABC\*", re.IGNORECASE), ""),
)
_STORE_NUMBER = re.compile(r"#\d+")
_TRAILING_CODE = re.compile(r"\s+\d{4,}$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True, slots=True)
class CsvRowError:
    row_number: int  # 1-based, counting non-empty rows
    message: str

    def __str__(self) -> str:
        return f"Row {self.row_number}: {self.message}"


def _clean_field(value: str | None) -> str:
    return value.replace('"', "").strip() if value else ""


def clean_merchant_name(description: str) -> str:
    merchant = description.strip()
    for pattern, replacement in _PROCESSOR_PREFIXES:
        merchant = pattern.sub(replacement, merchant)
    merchant = _STORE_NUMBER.sub("", merchant).strip()
    merchant = _TRAILING_CODE.sub("", merchant).strip()
    return " ".join(merchant.split())


def parse_date(value: str) -> dt.date | None:
    """Parse ``YYYY-MM-DD`` or ``MM/DD/YYYY``; ``None`` when neither fits."""

    s = _clean_field(value)
    if _ISO_DATE.match(s):
        try:
            return dt.date.fromisoformat(s)
        except ValueError:
            return None
    try:
        return dt.datetime.strptime(s, "%m/%d/%Y").date()
    except ValueError:
        return None


def _parse_amount(value: str) -> Decimal | None:
    try:
        return Decimal(value.replace(",", "").replace("$", ""))
    except InvalidOperation:
        return None


def to_drafts(
    rows: Iterable[Sequence[str]],
    *,
    account_id: str,
    source_file: str | None = None,
    now: dt.datetime | None = None,
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> Iterator[Transaction | CsvRowError]:
    """Yield a draft :class:`Transaction` or a :class:`CsvRowError` per row.

    Blank rows are skipped and not counted.
    """

    imported_at = now or utcnow()
    row_number = 0
    for row in rows:
        if not any(cell.strip() for cell in row):
            continue
        row_number += 1
        cells = list(row) + [""] * max(0, 4 - len(row))
        date_raw, description_raw, charge_raw, credit_raw = cells[:4]

        description = _clean_field(description_raw)
        if not _clean_field(date_raw) or not description:
            yield CsvRowError(row_number, "Missing date or description")
            continue
        date = parse_date(date_raw)
        if date is None:
            yield CsvRowError(row_number, f"Invalid date format: {date_raw.strip()}")
            continue

        charge = _clean_field(charge_raw)
        credit = _clean_field(credit_raw)
        if charge and credit:
            yield CsvRowError(row_number, "Both charge and credit are populated")
            continue
        if not charge and not credit:
            yield CsvRowError(row_number, "Neither charge nor credit is populated")
            continue

        amount = _parse_amount(charge or credit)
        if amount is None or amount == 0:
            yield CsvRowError(row_number, "Invalid or zero amount")
            continue

        yield Transaction(
            id=id_factory(),
            type=TransactionType.EXPENSE if charge else TransactionType.INFLOW,
            account_id=account_id,
            date=date,
            description=description,
            merchant=clean_merchant_name(description) or None,
            amount=abs(amount),
            affects_budget=True,
            imported_at=imported_at,
            source_file=source_file,
        )


__all__ = ["CsvRowError", "clean_merchant_name", "parse_date", "to_drafts"]
