"""
ExecutionResult — what happened to one step during a run.

Exactly one result exists per attempted step. Steps that were never
attempted (after an abort) have no result at all; they are listed
separately on the report.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class StepOutcome(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExecutionResult(BaseModel):
    """Outcome of a single step.

    A ``failed`` result has a non-zero exit code, or no exit code at
    all when the process could not start, the idempotency check
    errored, or a dependency failed (``blocked_by``).
    """

    model_config = ConfigDict(frozen=True)

    step_id: str
    outcome: StepOutcome
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    timed_out: bool = False
    attempts: int = 0
    error: str | None = None
    blocked_by: tuple[str, ...] = ()
    started_at: str = Field(default_factory=_now_iso)

    @property
    def ok(self) -> bool:
        """Succeeded or skipped-as-satisfied."""
        return self.outcome != StepOutcome.FAILED

    @property
    def failed(self) -> bool:
        return self.outcome == StepOutcome.FAILED

    @classmethod
    def skipped(cls, step_id: str, duration_ms: int = 0, stdout: str = "") -> ExecutionResult:
        return cls(
            step_id=step_id,
            outcome=StepOutcome.SKIPPED,
            exit_code=0,
            stdout=stdout,
            duration_ms=duration_ms,
        )

    @classmethod
    def blocked(cls, step_id: str, failed_deps: list[str]) -> ExecutionResult:
        """A step not executed because a dependency failed."""
        return cls(
            step_id=step_id,
            outcome=StepOutcome.FAILED,
            error=f"dependency failed: {', '.join(failed_deps)}",
            blocked_by=tuple(failed_deps),
        )

    @classmethod
    def start_error(cls, step_id: str, error: str, duration_ms: int = 0, attempts: int = 1) -> ExecutionResult:
        return cls(
            step_id=step_id,
            outcome=StepOutcome.FAILED,
            error=error,
            duration_ms=duration_ms,
            attempts=attempts,
        )
