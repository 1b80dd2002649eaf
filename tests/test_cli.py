from __future__ import annotations

import json
from pathlib import Path

import pytest
from budget_db.client import session_scope
from typer.testing import CliRunner

from budget_tracker import store
from budget_tracker.cli import app
from budget_tracker.migrations import CURRENT_SCHEMA_VERSION
from tests.helpers.store import bank_account, expense, seed_legacy_store

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # The root callback reads ``.env`` from the working directory.
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def seeded(database_url: str) -> str:
    url = store.open_store(database_url)
    with session_scope(database_url=url) as s:
        store.add_account(s, bank_account("bank"))
        store.add_transactions(s, [expense(42, "Coffee", id="t1", description="CAFE")])
    return url


def test_migrate_creates_store(database_url: str) -> None:
    result = runner.invoke(app, ["migrate"])
    assert result.exit_code == 0, result.output
    assert f"schema v{CURRENT_SCHEMA_VERSION}" in result.output


def test_newer_store_exits_with_code_2(database_url: str) -> None:
    seed_legacy_store(database_url, CURRENT_SCHEMA_VERSION + 1, {})
    result = runner.invoke(app, ["summary"])
    assert result.exit_code == 2
    assert "cannot be opened" in result.output


def test_import_csv_reports_counts(seeded: str, tmp_path: Path) -> None:
    csv_path = tmp_path / "march.csv"
    csv_path.write_text("2024-03-01,COSTCO,10.00,,\n2024-03-02,BAD,,,\n", encoding="utf-8")

    result = runner.invoke(app, ["import-csv", "--csv-path", str(csv_path)])

    assert result.exit_code == 0, result.output
    assert "Row 2: Neither charge nor credit is populated" in result.output
    assert "skipped" in result.output
    with session_scope(database_url=seeded) as s:
        assert len(store.get_all_transactions(s)) == 2


def test_import_csv_missing_file(seeded: str, tmp_path: Path) -> None:
    result = runner.invoke(app, ["import-csv", "--csv-path", str(tmp_path / "nope.csv")])
    assert result.exit_code == 1
    assert "File not found" in result.output


def test_recategorize(seeded: str) -> None:
    result = runner.invoke(app, ["recategorize", "t1", "Restaurants & Dining", "--no-remember"])
    assert result.exit_code == 0, result.output
    with session_scope(database_url=seeded) as s:
        assert store.get_transaction(s, "t1").category == "Restaurants & Dining"
        assert store.get_merchant_rules(s) == []

    bad = runner.invoke(app, ["recategorize", "t1", "A > B > C"])
    assert bad.exit_code == 1


@pytest.mark.parametrize("command", ["summary", "budgets", "accounts", "trends"])
def test_report_commands_run(seeded: str, command: str) -> None:
    args = [command, "--month", "2024-03"] if command != "trends" else [command, "--months", "3"]
    result = runner.invoke(app, args)
    assert result.exit_code == 0, result.output


def test_summary_reports_requested_month(seeded: str) -> None:
    result = runner.invoke(app, ["summary", "--month", "2024-03"])
    assert result.exit_code == 0, result.output
    assert "Summary 2024-03" in result.output
    assert "42.00" in result.output


def test_bad_month_is_rejected(seeded: str) -> None:
    result = runner.invoke(app, ["summary", "--month", "March"])
    assert result.exit_code != 0


def test_export_then_restore(seeded: str, tmp_path: Path) -> None:
    backup = tmp_path / "backup.json"

    exported = runner.invoke(app, ["export", "-o", str(backup)])
    assert exported.exit_code == 0, exported.output
    document = json.loads(backup.read_text(encoding="utf-8"))
    assert [t["id"] for t in document["transactions"]] == ["t1"]

    restored = runner.invoke(app, ["restore", "-i", str(backup)])
    assert restored.exit_code == 0, restored.output
    assert "Restored" in restored.output


def test_restore_rejects_invalid_backup(seeded: str, tmp_path: Path) -> None:
    backup = tmp_path / "broken.json"
    backup.write_text("{oops", encoding="utf-8")
    result = runner.invoke(app, ["restore", "-i", str(backup)])
    assert result.exit_code == 1
    assert "Invalid JSON format" in result.output
