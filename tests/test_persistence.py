"""
Tests for persistence — atomic report file and the run ledger.
"""

import json
from pathlib import Path

import pytest

from provisioner.core.engine.executor import provision
from provisioner.core.models.report import OverallStatus, ProvisioningReport
from provisioner.core.persistence.ledger import LedgerEntry, RunLedger
from provisioner.core.persistence.report_file import (
    default_report_path,
    load_report,
    save_report,
)


@pytest.fixture
def report(devcontainer_steps, mock_executor) -> ProvisioningReport:
    mock_executor.set_failure(["do", "create-user"])
    return provision(devcontainer_steps, mock_executor, profile="devcontainer", run_id="run-abc")


# ── Report file ──────────────────────────────────────────────────────


class TestReportFile:
    def test_save_creates_parent_dirs(self, tmp_path: Path, report):
        path = default_report_path(tmp_path / "nested" / ".state")
        assert save_report(report, path) == path
        assert path.is_file()

    def test_saved_json_shape(self, tmp_path: Path, report):
        path = save_report(report, tmp_path / "report.json")
        data = json.loads(path.read_text())

        assert data["report"]["run_id"] == "run-abc"
        assert data["report"]["status"] == "failure"
        assert data["report"]["not_attempted"] == ["install-shell", "install-toolchain"]
        assert "detail" in data

    def test_no_temp_files_left(self, tmp_path: Path, report):
        save_report(report, tmp_path / "report.json")
        save_report(report, tmp_path / "report.json")
        assert [p.name for p in tmp_path.iterdir()] == ["report.json"]

    def test_load_saved_report(self, tmp_path: Path, report):
        path = save_report(report, tmp_path / "report.json")
        loaded = load_report(path)

        assert loaded is not None
        assert loaded.run_id == report.run_id
        assert loaded.overall_status == OverallStatus.FAILURE
        assert loaded.outcomes() == report.outcomes()

    def test_load_missing(self, tmp_path: Path):
        assert load_report(tmp_path / "nope.json") is None

    def test_load_corrupt(self, tmp_path: Path):
        path = tmp_path / "report.json"
        path.write_text("{not json")
        assert load_report(path) is None


# ── Ledger ───────────────────────────────────────────────────────────


class TestLedgerEntry:
    def test_from_report(self, report):
        entry = LedgerEntry.from_report(report, mock=True)

        assert entry.run_id == "run-abc"
        assert entry.profile == "devcontainer"
        assert entry.status == "failure"
        assert entry.run_state == "aborted"
        assert entry.steps_total == 4
        assert entry.steps_succeeded == 1
        assert entry.steps_failed == 1
        assert entry.failed_steps == ["create-user"]
        assert entry.not_attempted == ["install-shell", "install-toolchain"]
        assert entry.verification == "not_run"
        assert entry.context == {"mock": True}


class TestRunLedger:
    def test_empty(self, tmp_state_dir: Path):
        ledger = RunLedger.in_state_dir(tmp_state_dir)
        assert ledger.read_all() == []
        assert ledger.entry_count() == 0

    def test_append_and_read(self, tmp_state_dir: Path, report):
        ledger = RunLedger.in_state_dir(tmp_state_dir)
        ledger.write(LedgerEntry.from_report(report))
        ledger.write(LedgerEntry(run_id="run-2", profile="other", status="success"))

        entries = ledger.read_all()
        assert [e.run_id for e in entries] == ["run-abc", "run-2"]
        assert ledger.entry_count() == 2
        assert ledger.path.name == "runs.ndjson"

    def test_one_json_line_per_entry(self, tmp_state_dir: Path):
        ledger = RunLedger.in_state_dir(tmp_state_dir)
        ledger.write(LedgerEntry(run_id="run-1"))
        lines = ledger.path.read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["run_id"] == "run-1"

    def test_read_recent(self, tmp_state_dir: Path):
        ledger = RunLedger.in_state_dir(tmp_state_dir)
        for i in range(5):
            ledger.write(LedgerEntry(run_id=f"run-{i}"))

        assert [e.run_id for e in ledger.read_recent(2)] == ["run-3", "run-4"]
        assert ledger.read_recent(0) == []

    def test_corrupt_lines_skipped(self, tmp_state_dir: Path):
        ledger = RunLedger.in_state_dir(tmp_state_dir)
        ledger.write(LedgerEntry(run_id="run-1"))
        with ledger.path.open("a") as f:
            f.write("{broken\n")
        ledger.write(LedgerEntry(run_id="run-2"))

        assert [e.run_id for e in ledger.read_all()] == ["run-1", "run-2"]

    def test_creates_state_dir(self, tmp_path: Path):
        ledger = RunLedger.in_state_dir(tmp_path / "fresh")
        ledger.write(LedgerEntry(run_id="run-1"))
        assert ledger.entry_count() == 1

    def test_unwritable_ledger_does_not_raise(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        ledger = RunLedger.in_state_dir(blocker)

        ledger.write(LedgerEntry(run_id="run-1"))

        assert ledger.read_all() == []
