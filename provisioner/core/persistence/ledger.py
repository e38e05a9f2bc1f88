"""
Run ledger — append-only history of provisioning runs.

Every run writes one entry to an NDJSON (newline-delimited JSON) file.
This is the machine's provisioning history: which profile ran, when,
how it ended and which steps failed. Entries are never modified.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from provisioner.core.models.report import ProvisioningReport

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_FILE = "runs.ndjson"


class LedgerEntry(BaseModel):
    """A single run summary."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    profile: str = ""

    # Results
    status: str = ""               # success, partial_failure, failure
    run_state: str = ""            # completed, aborted
    steps_total: int = 0
    steps_succeeded: int = 0
    steps_skipped: int = 0
    steps_failed: int = 0
    not_attempted: list[str] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    verification: str = ""
    gaps: list[str] = Field(default_factory=list)
    cancelled: bool = False

    # Extensible context
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_report(cls, report: ProvisioningReport, **context: Any) -> LedgerEntry:
        return cls(
            run_id=report.run_id,
            profile=report.profile,
            status=report.overall_status.value,
            run_state=report.run_state.value,
            steps_total=len(report.plan),
            steps_succeeded=report.succeeded,
            steps_skipped=report.skipped,
            steps_failed=report.failed,
            not_attempted=list(report.not_attempted),
            failed_steps=[r.step_id for r in report.results if r.failed],
            verification=report.verification.status.value,
            gaps=[f"{g.kind}:{g.name}" for g in report.verification.gaps],
            cancelled=report.cancelled,
            context=context,
        )


class RunLedger:
    """Append-only ledger writer/reader.

    Each call to write() appends a single JSON line. The file is
    created if it doesn't exist.
    """

    def __init__(self, path: Path):
        self._path = path

    @classmethod
    def in_state_dir(cls, state_dir: Path) -> RunLedger:
        return cls(state_dir / DEFAULT_LEDGER_FILE)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: LedgerEntry) -> None:
        """Append an entry to the ledger.

        A ledger that cannot be written is logged, not raised: the
        provisioning run itself already happened.
        """
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Ledger entry written: %s", entry.run_id)
        except OSError as e:
            logger.error("Failed to write ledger entry: %s", e)

    def read_all(self) -> list[LedgerEntry]:
        """Read all entries, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        entries = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(LedgerEntry.model_validate(json.loads(line)))
                    except Exception as e:
                        logger.warning("Skipping corrupt ledger entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read ledger: %s", e)

        return entries

    def read_recent(self, n: int = 20) -> list[LedgerEntry]:
        """Read the most recent N entries."""
        return self.read_all()[-n:] if n > 0 else []

    def entry_count(self) -> int:
        if not self._path.is_file():
            return 0
        try:
            with self._path.open("r", encoding="utf-8") as f:
                return sum(1 for line in f if line.strip())
        except OSError:
            return 0
