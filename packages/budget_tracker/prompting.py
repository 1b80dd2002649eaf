"""Prompt construction and batch serialization for transaction classification.

This module builds:
- A deterministic JSON serialization of a batch with a fixed field order.
- The system and user prompts, with the active vocabulary split into expense
  and income categories.
- The strict ``response_format`` (JSON Schema) object for the OpenAI
  Responses API.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from openai.types.responses.response_format_text_json_schema_config_param import (
    ResponseFormatTextJSONSchemaConfigParam,
)

from .models import INCOME_CATEGORIES, IncomeClass, TransactionType

BATCH_FIELD_ORDER: tuple[str, ...] = ("idx", "description", "amount", "date")

# Income classes the model may propose; ADJUSTMENT is reserved for manual entry.
SUGGESTIBLE_INCOME_CLASSES: tuple[str, ...] = (
    IncomeClass.EARNED.value,
    IncomeClass.PASSIVE.value,
    IncomeClass.REIMBURSEMENT.value,
    IncomeClass.WINDFALL.value,
)
SUGGESTIBLE_TYPES: tuple[str, ...] = (
    TransactionType.EXPENSE.value,
    TransactionType.INFLOW.value,
)


def split_vocabulary(categories: Sequence[str]) -> tuple[list[str], list[str]]:
    """Split the active vocabulary into ``(expense, income)`` lists.

    A category counts as income when it is one of the built-in income
    categories or starts with ``"Income"``; order and first occurrence win.
    """

    expense: list[str] = []
    income: list[str] = []
    for name in dict.fromkeys(c.strip() for c in categories):
        if not name:
            continue
        if name in INCOME_CATEGORIES or name.startswith("Income"):
            income.append(name)
        else:
            expense.append(name)
    return expense, income


def serialize_batch_to_json(items: Sequence[Mapping[str, Any]]) -> str:
    """Serialize batch items to a JSON array with a fixed field order."""

    arr: list[dict[str, Any]] = []
    for item in items:
        arr.append({key: item.get(key) for key in BATCH_FIELD_ORDER})
    return json.dumps(arr, ensure_ascii=False)


def build_system_instructions() -> str:
    return (
        "You classify personal bank and credit-card transactions. For each transaction "
        "decide whether it is an EXPENSE (money spent) or an INFLOW (money received), "
        "then pick exactly one category from the matching list. For an INFLOW also pick "
        "an income class. Never invent categories. Output JSON only that conforms to the "
        "specified schema."
    )


def build_user_content(
    batch_json: str,
    *,
    expense_categories: Sequence[str],
    income_categories: Sequence[str],
) -> str:
    """Build the user message: both vocabularies, then the delimited batch.

    Results are aligned to the batch by the page-relative ``idx`` field.
    """

    lines: list[str] = ["Expense categories:"]
    lines.extend(f"  - {c}" for c in expense_categories)
    lines.append("Income categories:")
    lines.extend(f"  - {c}" for c in income_categories)
    lines.append(
        "Income classes: EARNED (salary, wages, freelance), PASSIVE (interest, dividends), "
        "REIMBURSEMENT (refunds, cashback), WINDFALL (gifts, one-off payouts)."
    )
    lines.append("")
    lines.append(
        "Return one result per transaction with the same idx. Use null for "
        "income_class on expenses. If unsure, use null for category."
    )
    lines.append("BEGIN_TRANSACTIONS_JSON")
    lines.append(batch_json)
    lines.append("END_TRANSACTIONS_JSON")
    return "\n".join(lines)


def build_response_format(
    expense_categories: Sequence[str],
    income_categories: Sequence[str],
) -> ResponseFormatTextJSONSchemaConfigParam:
    """Return the strict JSON Schema response_format object.

    Schema shape::

        {"results": [{"idx": int,
                      "category": str | null (enum),
                      "transaction_type": "EXPENSE" | "INFLOW" | null,
                      "income_class": str | null (enum)}]}
    """

    codes = [c for c in dict.fromkeys([*expense_categories, *income_categories]) if c]
    if not codes:
        raise ValueError("vocabulary must contain at least one category")

    result: ResponseFormatTextJSONSchemaConfigParam = {
        "type": "json_schema",
        "name": "transaction_classifications",
        "schema": {
            "type": "object",
            "properties": {
                "results": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "idx": {"type": "integer"},
                            "category": {"type": ["string", "null"], "enum": [*codes, None]},
                            "transaction_type": {
                                "type": ["string", "null"],
                                "enum": [*SUGGESTIBLE_TYPES, None],
                            },
                            "income_class": {
                                "type": ["string", "null"],
                                "enum": [*SUGGESTIBLE_INCOME_CLASSES, None],
                            },
                        },
                        "required": ["idx", "category", "transaction_type", "income_class"],
                        "additionalProperties": False,
                    },
                }
            },
            "required": ["results"],
            "additionalProperties": False,
        },
        "strict": True,
    }
    return result


__all__ = [
    "BATCH_FIELD_ORDER",
    "SUGGESTIBLE_INCOME_CLASSES",
    "SUGGESTIBLE_TYPES",
    "split_vocabulary",
    "serialize_batch_to_json",
    "build_system_instructions",
    "build_user_content",
    "build_response_format",
]
