"""
ProvisioningReport — the single output of a provisioning run.

Aggregates per-step results, the engine's final state and the
verification outcome into one immutable value. The overall status is
derived, never stored independently of its inputs.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from provisioner.core.models.result import ExecutionResult, StepOutcome


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class OverallStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


class VerificationStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    NOT_RUN = "not_run"


class VerificationGap(BaseModel):
    """An expected post-condition that was not observed."""

    model_config = ConfigDict(frozen=True)

    kind: str       # toolchain_version, target, component, command
    name: str
    detail: str = ""


class VerificationResult(BaseModel):
    """Outcome of the toolchain verifier."""

    model_config = ConfigDict(frozen=True)

    status: VerificationStatus = VerificationStatus.NOT_RUN
    gaps: tuple[VerificationGap, ...] = ()
    observed_version: str | None = None
    observed_targets: frozenset[str] = frozenset()
    observed_components: frozenset[str] = frozenset()
    reason: str = ""

    @property
    def passed(self) -> bool:
        return self.status == VerificationStatus.PASSED

    def gap_names(self, kind: str | None = None) -> set[str]:
        return {g.name for g in self.gaps if kind is None or g.kind == kind}

    @classmethod
    def not_run(cls, reason: str) -> VerificationResult:
        return cls(status=VerificationStatus.NOT_RUN, reason=reason)


def compute_overall_status(
    run_state: RunState,
    results: list[ExecutionResult] | tuple[ExecutionResult, ...],
    verification: VerificationResult,
) -> OverallStatus:
    """Fold engine state, step outcomes and verification into one status.

    success          — completed, verification passed, nothing failed
    partial_failure  — completed, verification passed, ≥1 failed step
    failure          — aborted, or verification did not pass
    """
    if run_state != RunState.COMPLETED or not verification.passed:
        return OverallStatus.FAILURE
    if any(r.outcome == StepOutcome.FAILED for r in results):
        return OverallStatus.PARTIAL_FAILURE
    return OverallStatus.SUCCESS


class ProvisioningReport(BaseModel):
    """Immutable record of one provisioning run."""

    model_config = ConfigDict(frozen=True)

    run_id: str = ""
    profile: str = ""
    started_at: str = Field(default_factory=_now_iso)
    finished_at: str = Field(default_factory=_now_iso)

    plan: tuple[str, ...] = ()
    results: tuple[ExecutionResult, ...] = ()
    not_attempted: tuple[str, ...] = ()
    run_state: RunState = RunState.NOT_STARTED
    cancelled: bool = False
    verification: VerificationResult = Field(default_factory=VerificationResult)
    overall_status: OverallStatus = OverallStatus.FAILURE

    # ── Counts ───────────────────────────────────────────────────

    def _count(self, outcome: StepOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def succeeded(self) -> int:
        return self._count(StepOutcome.SUCCEEDED)

    @property
    def skipped(self) -> int:
        return self._count(StepOutcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(StepOutcome.FAILED)

    @property
    def ok(self) -> bool:
        return self.overall_status == OverallStatus.SUCCESS

    def result_for(self, step_id: str) -> ExecutionResult | None:
        for r in self.results:
            if r.step_id == step_id:
                return r
        return None

    def outcomes(self) -> dict[str, str]:
        """step id → outcome value, in plan order."""
        return {r.step_id: r.outcome.value for r in self.results}

    def to_dict(self) -> dict[str, Any]:
        """Structured output: per step id, outcome, exit code, duration."""
        return {
            "run_id": self.run_id,
            "profile": self.profile,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "status": self.overall_status.value,
            "run_state": self.run_state.value,
            "cancelled": self.cancelled,
            "plan": list(self.plan),
            "steps": [
                {
                    "id": r.step_id,
                    "outcome": r.outcome.value,
                    "exit_code": r.exit_code,
                    "duration_ms": r.duration_ms,
                    "timed_out": r.timed_out,
                    "attempts": r.attempts,
                    "error": r.error,
                    "blocked_by": list(r.blocked_by),
                }
                for r in self.results
            ],
            "not_attempted": list(self.not_attempted),
            "verification": {
                "status": self.verification.status.value,
                "reason": self.verification.reason,
                "observed_version": self.verification.observed_version,
                "gaps": [g.model_dump(mode="json") for g in self.verification.gaps],
            },
            "summary": {
                "succeeded": self.succeeded,
                "skipped": self.skipped,
                "failed": self.failed,
                "not_attempted": len(self.not_attempted),
            },
        }
