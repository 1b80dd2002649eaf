"""Pytest configuration for test isolation.

Every test gets its own SQLite file: ``BUDGET_TRACKER_DATABASE_URL`` points
at the test's temporary directory, and cached engines are disposed afterwards
so no connection outlives the file it was opened on. OpenAI credentials and
tuning variables from the developer's shell are removed so classification
tests only see what they set themselves.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from budget_db.client import dispose_engines


@pytest.fixture(autouse=True)
def _isolate_store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    url = f"sqlite+pysqlite:///{tmp_path / 'budget.db'}"
    monkeypatch.setenv("BUDGET_TRACKER_DATABASE_URL", url)
    for var in (
        "DATABASE_URL",
        "OPENAI_API_KEY",
        "BUDGET_TRACKER_MODEL",
        "BUDGET_TRACKER_AI_BATCH_SIZE",
        "BUDGET_TRACKER_AI_TIMEOUT",
    ):
        monkeypatch.delenv(var, raising=False)
    yield url
    dispose_engines()


@pytest.fixture
def database_url(_isolate_store: str) -> str:
    return _isolate_store
