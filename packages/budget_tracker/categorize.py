"""Transaction classification: merchant rules first, then the OpenAI Responses API.

Public API:
    - :func:`match_merchant_rule`
    - :func:`apply_rules`
    - :func:`apply_suggestion`
    - :func:`classify_transactions`

Model output is untrusted. A suggested field is applied only when present and
allowed, and every resulting transaction is validated again before it is
returned; a suggestion that would produce an invalid record is ignored and the
transaction stays uncategorized. Batches are sent one after another and a
failed batch (including a timeout) is reported, not raised. No side effects
occur at import time.
"""

from __future__ import annotations

import json
import os
import random
import time
import unicodedata
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from openai import OpenAI
from openai.types.responses import ResponseTextConfigParam
from pydantic import BaseModel, ConfigDict

from . import prompting
from .logging_setup import get_logger
from .migrations import infer_income_class
from .models import (
    DEFAULT_CATEGORIES,
    CategorySource,
    IncomeClass,
    MerchantRule,
    Transaction,
    TransactionType,
)
from .validation import TransactionValidationError, affects_budget_for_type, validate_transaction

# ---- Tunables ----------------------------------------------------------------

_BATCH_SIZE_DEFAULT: int = 50
_BATCH_SIZE_MAX: int = 200
_TIMEOUT_DEFAULT_SEC: float = 60.0
_MAX_ATTEMPTS: int = 3
_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.5, 2.0)
_JITTER_PCT: float = 0.20
_MODEL_DEFAULT: str = "gpt-5-mini"

_logger = get_logger("budget_tracker.categorize")


def model_name() -> str:
    return os.getenv("BUDGET_TRACKER_MODEL") or _MODEL_DEFAULT


def batch_size_from_env() -> int:
    """``BUDGET_TRACKER_AI_BATCH_SIZE`` clamped to 1..200 (default 50)."""

    raw = os.getenv("BUDGET_TRACKER_AI_BATCH_SIZE")
    if not raw:
        return _BATCH_SIZE_DEFAULT
    try:
        value = int(raw)
    except ValueError:
        _logger.warning("classify:bad_batch_size value=%r", raw)
        return _BATCH_SIZE_DEFAULT
    return max(1, min(_BATCH_SIZE_MAX, value))


def timeout_from_env() -> float:
    raw = os.getenv("BUDGET_TRACKER_AI_TIMEOUT")
    if not raw:
        return _TIMEOUT_DEFAULT_SEC
    try:
        value = float(raw)
    except ValueError:
        _logger.warning("classify:bad_timeout value=%r", raw)
        return _TIMEOUT_DEFAULT_SEC
    return value if value > 0 else _TIMEOUT_DEFAULT_SEC


# ---- Result types ------------------------------------------------------------


class AiSuggestion(BaseModel):
    """One best-effort classification; every field is optional."""

    model_config = ConfigDict(frozen=True)

    category: str | None = None
    transaction_type: TransactionType | None = None
    income_class: IncomeClass | None = None

    def is_empty(self) -> bool:
        return self.category is None and self.transaction_type is None and self.income_class is None


@dataclass(frozen=True, slots=True)
class BatchFailure:
    batch_index: int
    size: int
    error: str


@dataclass(slots=True)
class ClassificationReport:
    """Outcome of :func:`classify_transactions`.

    ``transactions`` holds one record per input, in input order, whether or
    not it was classified.
    """

    transactions: list[Transaction] = field(default_factory=list)
    rule_matched: int = 0
    ai_classified: int = 0
    # Suggested fields ignored because they were unknown or made the record invalid.
    dropped_fields: int = 0
    failures: list[BatchFailure] = field(default_factory=list)
    ai_skipped: bool = False

    @property
    def uncategorized(self) -> int:
        return sum(1 for tx in self.transactions if needs_classification(tx))


# ---- Rules -------------------------------------------------------------------


def needs_classification(tx: Transaction) -> bool:
    return tx.type in (TransactionType.EXPENSE, TransactionType.INFLOW) and not tx.category


def match_merchant_rule(rules: Iterable[MerchantRule], tx: Transaction) -> MerchantRule | None:
    """Return the rule for ``tx``: by merchant id first, then by description pattern.

    Pattern rules match when the pattern is a case-insensitive substring of
    the description; the first such rule wins.
    """

    rules = list(rules)
    if tx.merchant_id:
        for rule in rules:
            if rule.merchant_id == tx.merchant_id:
                return rule
    description = tx.description.casefold()
    for rule in rules:
        if rule.pattern and rule.pattern.casefold() in description:
            return rule
    return None


def _with_category(
    tx: Transaction, category: str, source: CategorySource
) -> Transaction:
    changes: dict[str, Any] = {"category": category, "category_source": source}
    if tx.type == TransactionType.INFLOW and tx.income_class is None:
        changes["income_class"] = infer_income_class(category) or IncomeClass.EARNED
    return tx.updated(**changes)


def apply_rules(
    transactions: Sequence[Transaction], rules: Iterable[MerchantRule]
) -> tuple[list[Transaction], int]:
    """Apply merchant rules to records that still need a category.

    Returns the updated list (same order) and the number of rule hits.
    """

    rules = list(rules)
    out: list[Transaction] = []
    hits = 0
    for tx in transactions:
        rule = match_merchant_rule(rules, tx) if needs_classification(tx) else None
        if rule is None:
            out.append(tx)
            continue
        candidate = _with_category(tx, rule.category, CategorySource.RULE)
        try:
            validate_transaction(candidate)
        except TransactionValidationError as e:
            _logger.warning("classify:rule_rejected rule_id=%s reason=%s", rule.id, e)
            out.append(tx)
            continue
        out.append(candidate)
        hits += 1
    return out, hits


# ---- Model output ------------------------------------------------------------


def _extract_response_json_mapping(resp: Any) -> Mapping[str, Any]:
    """Decode the JSON mapping from an OpenAI Responses SDK result.

    Prefers ``resp.output_text`` and falls back to
    ``resp.output[0].content[0].text``. Raises ``ValueError`` when no text can
    be located or it is not JSON.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        output = getattr(resp, "output", None)
        content = getattr(output[0], "content", None) if output else None
        if content:
            txt_obj = getattr(content[0], "text", None)
            if isinstance(txt_obj, str):
                text = txt_obj
            elif isinstance(getattr(txt_obj, "value", None), str):
                text = txt_obj.value
    if not text or not isinstance(text, str):
        raise ValueError("Unexpected Responses API shape; unable to locate text output")

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError("Model output was not valid JSON per the requested schema") from e
    if not isinstance(decoded, Mapping):
        raise ValueError("Invalid response: expected a JSON object at top level")
    return decoded


def parse_suggestions(
    body: Mapping[str, Any],
    *,
    num_items: int,
    vocabulary: Iterable[str],
) -> tuple[list[AiSuggestion], int]:
    """Align model results to the batch by ``idx``.

    Returns ``(suggestions, dropped)`` where ``dropped`` counts fields that
    were present but not usable (unknown category, type or income class).
    Structural problems (missing results, bad or duplicate ``idx``) raise
    ``ValueError`` and fail the batch.
    """

    results = body.get("results")
    if not isinstance(results, list):
        raise ValueError("Invalid response: missing or non-list 'results'")

    allowed = set(vocabulary)
    suggestions: list[AiSuggestion | None] = [None] * num_items
    dropped = 0
    for item in results:
        if not isinstance(item, Mapping):
            raise ValueError("Invalid response: each result must be an object")
        idx = item.get("idx")
        if not isinstance(idx, int) or isinstance(idx, bool) or not 0 <= idx < num_items:
            raise ValueError(f"Invalid response: idx out of range: {idx!r}")
        if suggestions[idx] is not None:
            raise ValueError(f"Invalid response: duplicate idx {idx}")

        fields: dict[str, Any] = {}
        category = item.get("category")
        if category is not None:
            if isinstance(category, str) and category in allowed:
                fields["category"] = category
            else:
                dropped += 1
        raw_type = item.get("transaction_type")
        if raw_type is not None:
            if raw_type in prompting.SUGGESTIBLE_TYPES:
                fields["transaction_type"] = TransactionType(raw_type)
            else:
                dropped += 1
        raw_class = item.get("income_class")
        if raw_class is not None:
            if raw_class in prompting.SUGGESTIBLE_INCOME_CLASSES:
                fields["income_class"] = IncomeClass(raw_class)
            else:
                dropped += 1
        suggestions[idx] = AiSuggestion(**fields)

    # Items the model skipped are treated as "no suggestion".
    return [s if s is not None else AiSuggestion() for s in suggestions], dropped


def apply_suggestion(tx: Transaction, suggestion: AiSuggestion) -> Transaction | None:
    """Return ``tx`` with the suggested fields applied, or ``None`` when unusable.

    Only EXPENSE/INFLOW records that still need a category are touched. The
    result is re-validated; a suggestion producing an invalid record yields
    ``None``.
    """

    if suggestion.is_empty() or not needs_classification(tx):
        return None

    new_type = suggestion.transaction_type or TransactionType(tx.type)
    category = suggestion.category or tx.category
    changes: dict[str, Any] = {
        "type": new_type,
        "affects_budget": affects_budget_for_type(new_type),
        "category": category,
    }
    if suggestion.category:
        changes["category_source"] = CategorySource.AI
    if new_type == TransactionType.INFLOW:
        income_class = suggestion.income_class or tx.income_class
        if income_class is None and category:
            income_class = IncomeClass.EARNED
        changes["income_class"] = income_class
    else:
        changes["income_class"] = None

    candidate: Transaction = tx.updated(**changes)
    try:
        validate_transaction(candidate, allow_uncategorized=True)
    except TransactionValidationError as e:
        _logger.warning("classify:suggestion_rejected tx_id=%s reason=%s", tx.id, e)
        return None
    return candidate


# ---- Model calls -------------------------------------------------------------


def _create_client(api_key: str, timeout: float) -> OpenAI:
    return OpenAI(api_key=api_key, timeout=timeout)


def _is_retryable(exc: BaseException) -> bool:
    """Return True only for HTTP 429 and 5xx errors.

    Parsing and validation errors, and timeouts, are terminal for the batch.
    """

    sc = getattr(exc, "status_code", None)
    return isinstance(sc, int) and (sc == 429 or 500 <= sc < 600)


def _sleep_backoff(attempt_no: int) -> None:
    if attempt_no - 1 < len(_BACKOFF_SCHEDULE_SEC):
        base = _BACKOFF_SCHEDULE_SEC[attempt_no - 1]
    else:
        base = _BACKOFF_SCHEDULE_SEC[-1]
    jitter = base * _JITTER_PCT
    time.sleep(max(0.0, base + random.uniform(-jitter, jitter)))


def _normalize_description_key(description: str) -> str | None:
    s = unicodedata.normalize("NFKC", description).strip()
    if not s:
        return None
    return " ".join(s.split()).casefold()


def _classify_batch(
    client: OpenAI,
    batch_index: int,
    batch: Sequence[Transaction],
    *,
    model: str,
    system_instructions: str,
    text_cfg: ResponseTextConfigParam,
    expense_categories: Sequence[str],
    income_categories: Sequence[str],
) -> tuple[list[AiSuggestion], int]:
    items = [
        {
            "idx": i,
            "description": tx.description,
            "amount": str(tx.amount),
            "date": tx.date.isoformat(),
        }
        for i, tx in enumerate(batch)
    ]
    user_content = prompting.build_user_content(
        prompting.serialize_batch_to_json(items),
        expense_categories=expense_categories,
        income_categories=income_categories,
    )
    _logger.info("classify:batch_llm batch_index=%d size=%d", batch_index, len(batch))

    attempt = 1
    while True:
        t0 = time.perf_counter()
        try:
            resp = client.responses.create(
                model=model,
                instructions=system_instructions,
                input=user_content,
                text=text_cfg,
            )
            decoded = _extract_response_json_mapping(resp)
            parsed = parse_suggestions(
                decoded,
                num_items=len(batch),
                vocabulary=[*expense_categories, *income_categories],
            )
            _logger.info(
                "classify:batch_done batch_index=%d size=%d latency_ms=%.2f",
                batch_index,
                len(batch),
                (time.perf_counter() - t0) * 1000.0,
            )
            return parsed
        except Exception as e:
            if attempt >= _MAX_ATTEMPTS or not _is_retryable(e):
                raise
            _logger.warning(
                "classify:batch_retry batch_index=%d size=%d error=%s attempt=%d",
                batch_index,
                len(batch),
                e.__class__.__name__,
                attempt,
            )
            _sleep_backoff(attempt)
            attempt += 1


def classify_transactions(
    transactions: Iterable[Transaction],
    *,
    rules: Iterable[MerchantRule] = (),
    categories: Sequence[str] = DEFAULT_CATEGORIES,
    api_key: str | None = None,
    batch_size: int | None = None,
    model: str | None = None,
    timeout: float | None = None,
) -> ClassificationReport:
    """Classify EXPENSE/INFLOW records that have no category yet.

    Parameters
    ----------
    transactions:
        Drafts or stored records; records that already have a category, and
        transfers/adjustments, pass through unchanged.
    rules:
        Merchant rules, consulted before the model. A rule hit is never sent
        to the model.
    categories:
        Active vocabulary; split into expense and income lists for the prompt.
    api_key:
        Falls back to ``OPENAI_API_KEY``. Without a key the model step is
        skipped and the remaining records stay uncategorized.
    batch_size, model, timeout:
        Default to ``BUDGET_TRACKER_AI_BATCH_SIZE`` (50),
        ``BUDGET_TRACKER_MODEL`` and ``BUDGET_TRACKER_AI_TIMEOUT`` (60s).

    Notes
    -----
    Records with the same normalized description are sent once and share the
    suggestion. A failed batch is recorded in ``failures`` and its records
    stay uncategorized; later batches still run.
    """

    report = ClassificationReport()
    records, report.rule_matched = apply_rules(list(transactions), rules)
    report.transactions = records

    pending = [i for i, tx in enumerate(records) if needs_classification(tx)]
    if not pending:
        return report

    key = api_key or os.getenv("OPENAI_API_KEY")
    if not key:
        report.ai_skipped = True
        _logger.warning("classify:skipped reason=no_api_key count=%d", len(pending))
        return report

    size = batch_size if batch_size is not None else batch_size_from_env()
    if size <= 0:
        raise ValueError("batch_size must be a positive integer")

    # Group by normalized description; one exemplar per group goes to the model.
    groups: dict[str, list[int]] = {}
    exemplars: list[int] = []
    for i in pending:
        group_key = _normalize_description_key(records[i].description)
        if group_key is None:
            exemplars.append(i)
            groups[f"#{i}"] = [i]
            continue
        if group_key not in groups:
            groups[group_key] = []
            exemplars.append(i)
        groups[group_key].append(i)
    members = {g[0]: g for g in groups.values()}

    expense_categories, income_categories = prompting.split_vocabulary(categories)
    text_cfg = ResponseTextConfigParam(
        format=prompting.build_response_format(expense_categories, income_categories)
    )
    system_instructions = prompting.build_system_instructions()
    client = _create_client(key, timeout if timeout is not None else timeout_from_env())
    chosen_model = model or model_name()

    for batch_index, base in enumerate(range(0, len(exemplars), size)):
        batch_positions = exemplars[base : base + size]
        batch = [records[i] for i in batch_positions]
        try:
            suggestions, dropped = _classify_batch(
                client,
                batch_index,
                batch,
                model=chosen_model,
                system_instructions=system_instructions,
                text_cfg=text_cfg,
                expense_categories=expense_categories,
                income_categories=income_categories,
            )
        except Exception as e:  # noqa: BLE001 - batch failures are reported, not raised
            _logger.warning(
                "classify:batch_failed batch_index=%d size=%d error=%s",
                batch_index,
                len(batch),
                e.__class__.__name__,
            )
            report.failures.append(
                BatchFailure(batch_index=batch_index, size=len(batch), error=str(e) or repr(e))
            )
            continue

        report.dropped_fields += dropped
        for exemplar, suggestion in zip(batch_positions, suggestions, strict=True):
            for i in members[exemplar]:
                updated = apply_suggestion(records[i], suggestion)
                if updated is None:
                    if not suggestion.is_empty():
                        report.dropped_fields += 1
                    continue
                records[i] = updated
                if not needs_classification(updated):
                    report.ai_classified += 1

    if report.dropped_fields:
        _logger.warning("classify:dropped_fields count=%d", report.dropped_fields)
    _logger.info(
        "classify:summary rules=%d ai=%d uncategorized=%d failed_batches=%d",
        report.rule_matched,
        report.ai_classified,
        report.uncategorized,
        len(report.failures),
    )
    return report


__all__ = [
    "AiSuggestion",
    "BatchFailure",
    "ClassificationReport",
    "model_name",
    "batch_size_from_env",
    "timeout_from_env",
    "needs_classification",
    "match_merchant_rule",
    "apply_rules",
    "parse_suggestions",
    "apply_suggestion",
    "classify_transactions",
]
