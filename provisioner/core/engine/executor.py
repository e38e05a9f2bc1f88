"""
Provisioning engine — the central execution loop.

The engine takes a plan and applies it to the host one step at a
time, strictly in plan order. For every step it consults the
idempotency check, runs the command through the executor, records an
ExecutionResult and applies the failure policy.

Flow:
    steps → plan → execute (skip / run / retry) → verify → report

There is no rollback. Package installs and user creation are not
transactional, so after a failure the host keeps whatever the
successful steps produced; the report says exactly which ones.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from provisioner.adapters.base import CommandExecutor, ExecutionStartError
from provisioner.core.config.settings import EngineSettings, FailurePolicy
from provisioner.core.engine.planner import ProvisioningPlan, plan_steps
from provisioner.core.engine.verifier import ToolchainVerifier
from provisioner.core.models.manifest import VerificationSpec
from provisioner.core.models.report import (
    ProvisioningReport,
    RunState,
    VerificationResult,
    compute_overall_status,
)
from provisioner.core.models.result import ExecutionResult, StepOutcome
from provisioner.core.models.step import StepDescriptor

logger = logging.getLogger(__name__)

_MARKERS = {
    StepOutcome.SUCCEEDED: "✓",
    StepOutcome.FAILED: "✗",
    StepOutcome.SKIPPED: "⊘",
}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"run-{now}-{short}"


@dataclass
class EngineRun:
    """Mutable record of a run, owned by the engine while it runs."""

    run_id: str
    plan: ProvisioningPlan
    state: RunState = RunState.NOT_STARTED
    results: list[ExecutionResult] = field(default_factory=list)
    not_attempted: list[str] = field(default_factory=list)
    cancelled: bool = False
    started_at: str = field(default_factory=_now_iso)
    finished_at: str = ""

    @property
    def failed_ids(self) -> set[str]:
        return {r.step_id for r in self.results if r.failed}


class ProvisioningEngine:
    """Apply a ProvisioningPlan through a CommandExecutor.

    States: not_started → running → {completed, aborted}.

    Args:
        executor: Where commands run (host or mock).
        settings: Failure policy, default timeout, retries.
        cancel_event: When set, the run stops before the next step.
            A command already running is always allowed to finish.
        sleep: Injected for retry backoff (tests pass a no-op).
    """

    def __init__(
        self,
        executor: CommandExecutor,
        settings: EngineSettings | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._executor = executor
        self._settings = settings or EngineSettings()
        self._cancel = cancel_event or threading.Event()
        self._sleep = sleep
        self._state = RunState.NOT_STARTED

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def cancel(self) -> None:
        """Request a stop at the next step boundary."""
        self._cancel.set()

    # ── Single step ──────────────────────────────────────────────

    def _timeout_for(self, step: StepDescriptor) -> float | None:
        return step.timeout if step.timeout is not None else self._settings.step_timeout

    def _check_satisfied(self, step: StepDescriptor, command: list[str]) -> ExecutionResult | None:
        """Evaluate the idempotency check command of ``step``.

        Returns a ``skipped`` result when satisfied, a ``failed`` result
        when the check itself errored, or None when the step must run.
        """
        start = time.monotonic()
        try:
            check = self._executor.execute(
                command,
                run_as=step.run_as,
                cwd=step.cwd,
                timeout=self._timeout_for(step),
                env=step.env or None,
            )
        except ExecutionStartError as e:
            return ExecutionResult.start_error(
                step.id,
                f"idempotency check could not start: {e}",
                duration_ms=int((time.monotonic() - start) * 1000),
                attempts=0,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if check.timed_out:
            return ExecutionResult(
                step_id=step.id,
                outcome=StepOutcome.FAILED,
                exit_code=check.exit_code,
                stdout=check.stdout,
                stderr=check.stderr,
                duration_ms=elapsed_ms,
                timed_out=True,
                error="idempotency check timed out",
            )
        if check.exit_code == 0:
            return ExecutionResult.skipped(step.id, duration_ms=elapsed_ms, stdout=check.stdout)
        logger.debug("Check for '%s' not satisfied (exit %d)", step.id, check.exit_code)
        return None

    def execute_step(self, step: StepDescriptor) -> ExecutionResult:
        """Skip, run, or retry one step and describe what happened."""
        start = time.monotonic()

        if step.check is not None:
            pre = self._check_satisfied(step, step.check)
            if pre is not None:
                return pre

        retries = step.retries if step.retries is not None else self._settings.retries
        policy = self._settings.retry_policy
        timeout = self._timeout_for(step)
        attempts = 0

        while True:
            attempts += 1
            try:
                result = self._executor.execute(
                    step.command,
                    run_as=step.run_as,
                    cwd=step.cwd,
                    timeout=timeout,
                    env=step.env or None,
                )
            except ExecutionStartError as e:
                # Not transient: a missing binary stays missing
                return ExecutionResult.start_error(
                    step.id,
                    str(e),
                    duration_ms=int((time.monotonic() - start) * 1000),
                    attempts=attempts,
                )

            if result.ok or attempts > retries or self._cancel.is_set():
                break

            delay = policy.delay_for(attempts)
            logger.warning(
                "Step '%s' failed (exit %d), retrying %d/%d in %.1fs",
                step.id, result.exit_code, attempts, retries, delay,
            )
            self._sleep(delay)

        return ExecutionResult(
            step_id=step.id,
            outcome=StepOutcome.SUCCEEDED if result.ok else StepOutcome.FAILED,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=int((time.monotonic() - start) * 1000),
            timed_out=result.timed_out,
            attempts=attempts,
            error=f"timed out after {timeout}s" if result.timed_out else None,
        )

    # ── Whole plan ───────────────────────────────────────────────

    def run(self, plan: ProvisioningPlan, run_id: str | None = None) -> EngineRun:
        """Execute every step of ``plan`` in order.

        Under ``abort`` the first failure stops the run and the rest of
        the plan is listed as not attempted. Under ``continue`` every
        step gets a result; a step whose dependency failed is recorded
        as failed (``blocked_by``) without running.
        """
        if self._state != RunState.NOT_STARTED:
            raise RuntimeError(f"Engine already used (state={self._state.value})")

        run = EngineRun(run_id=run_id or generate_run_id(), plan=plan)
        self._state = run.state = RunState.RUNNING
        policy = self._settings.on_failure
        total = len(plan)
        logger.info("Provisioning %d steps (on_failure=%s)", total, policy.value)

        for index, step in enumerate(plan):
            if self._cancel.is_set():
                logger.warning("Cancelled before step '%s'", step.id)
                run.cancelled = True
                run.not_attempted = list(plan.order[index:])
                self._state = RunState.ABORTED
                break

            blocked = [d for d in step.depends_on if d in run.failed_ids]
            if blocked:
                result = ExecutionResult.blocked(step.id, blocked)
            else:
                logger.info("[%d/%d] %s", index + 1, total, step.label)
                result = self.execute_step(step)

            run.results.append(result)
            logger.info(
                "%s %s → %s (%dms)",
                _MARKERS[result.outcome], step.id, result.outcome.value, result.duration_ms,
            )

            if result.failed:
                if result.error:
                    logger.error("Step '%s' failed: %s", step.id, result.error)
                if self._cancel.is_set():
                    # Retries were cut short; the run stops whatever the policy
                    logger.warning("Cancelled while retrying '%s'", step.id)
                    run.cancelled = True
                    run.not_attempted = list(plan.order[index + 1:])
                    self._state = RunState.ABORTED
                    break
                if policy == FailurePolicy.ABORT:
                    run.not_attempted = list(plan.order[index + 1:])
                    self._state = RunState.ABORTED
                    break
        else:
            self._state = RunState.COMPLETED

        run.state = self._state
        run.finished_at = _now_iso()
        if run.not_attempted:
            logger.warning("Not attempted: %s", ", ".join(run.not_attempted))
        return run


def build_report(
    run: EngineRun,
    verification: VerificationResult,
    profile: str = "",
) -> ProvisioningReport:
    """Freeze an engine run plus its verification into a report."""
    return ProvisioningReport(
        run_id=run.run_id,
        profile=profile,
        started_at=run.started_at,
        finished_at=_now_iso(),
        plan=run.plan.order,
        results=tuple(run.results),
        not_attempted=tuple(run.not_attempted),
        run_state=run.state,
        cancelled=run.cancelled,
        verification=verification,
        overall_status=compute_overall_status(run.state, run.results, verification),
    )


def provision(
    steps: Sequence[StepDescriptor],
    executor: CommandExecutor,
    verification: VerificationSpec | None = None,
    settings: EngineSettings | None = None,
    *,
    profile: str = "",
    run_id: str | None = None,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ProvisioningReport:
    """Plan, apply and verify ``steps`` in one pass.

    Planning errors (cycles, unknown or duplicate ids) are raised
    before any command runs. Step failures never raise: they end up in
    the report, which is always returned once planning succeeds.

    Raises:
        PlanningError: the step set cannot be ordered.
        ExecutorUnavailableError: the host cannot spawn processes.
    """
    settings = settings or EngineSettings()
    verification = verification or VerificationSpec()

    plan = plan_steps(steps)
    engine = ProvisioningEngine(executor, settings, cancel_event=cancel_event, sleep=sleep)
    run = engine.run(plan, run_id=run_id)

    if run.state == RunState.COMPLETED or settings.verify_on_abort:
        verified = ToolchainVerifier(executor).verify(verification.expected, verification.queries)
    else:
        verified = VerificationResult.not_run("run aborted")

    report = build_report(run, verified, profile=profile)
    logger.info(
        "Provisioning %s: %d succeeded, %d skipped, %d failed, %d not attempted",
        report.overall_status.value,
        report.succeeded,
        report.skipped,
        report.failed,
        len(report.not_attempted),
    )
    return report
