"""
Tests for the provisioning engine — step execution, failure policies,
retries, cancellation and the overall outcome.
"""

import threading

import pytest

from provisioner.adapters.mock import MockExecutor
from provisioner.core.config.settings import EngineSettings
from provisioner.core.engine.executor import ProvisioningEngine, generate_run_id, provision
from provisioner.core.engine.planner import CyclicDependencyError, plan_steps
from provisioner.core.models.manifest import (
    QuerySpec,
    VerificationManifest,
    VerificationQueries,
    VerificationSpec,
)
from provisioner.core.models.report import OverallStatus, RunState, VerificationStatus
from provisioner.core.models.result import StepOutcome

TARGET_QUERY = ["rustup", "target", "list", "--installed"]


def _targets_spec(*expected: str) -> VerificationSpec:
    return VerificationSpec(
        expected=VerificationManifest(targets=frozenset(expected)),
        queries=VerificationQueries(targets=QuerySpec(command=TARGET_QUERY)),
    )


class CancellingExecutor(MockExecutor):
    """Sets ``event`` right after running ``trigger``."""

    def __init__(self, event: threading.Event, trigger: list[str]):
        super().__init__()
        self._event = event
        self._trigger = trigger

    def execute(self, command, **kwargs):
        result = super().execute(command, **kwargs)
        if list(command) == self._trigger:
            self._event.set()
        return result


# ── Example scenarios ────────────────────────────────────────────────


class TestProvisionScenarios:
    def test_all_succeed_but_target_missing(self, devcontainer_steps, mock_executor):
        mock_executor.set_response(TARGET_QUERY, stdout="t1\n")

        report = provision(devcontainer_steps, mock_executor, verification=_targets_spec("t1", "t2"))

        assert report.run_state == RunState.COMPLETED
        assert report.outcomes() == {
            "install-packages": "succeeded",
            "create-user": "succeeded",
            "install-shell": "succeeded",
            "install-toolchain": "succeeded",
        }
        assert report.verification.status == VerificationStatus.FAILED
        assert report.verification.gap_names("target") == {"t2"}
        assert report.verification.observed_targets == {"t1"}
        assert report.overall_status == OverallStatus.FAILURE

    def test_create_user_fails_under_abort(self, devcontainer_steps, mock_executor):
        mock_executor.set_failure(["do", "create-user"], exit_code=1)

        report = provision(devcontainer_steps, mock_executor, settings=EngineSettings(on_failure="abort"))

        assert [r.step_id for r in report.results] == ["install-packages", "create-user"]
        assert report.results[0].outcome == StepOutcome.SUCCEEDED
        assert report.results[1].outcome == StepOutcome.FAILED
        assert report.results[1].exit_code == 1
        assert report.not_attempted == ("install-shell", "install-toolchain")
        assert report.run_state == RunState.ABORTED
        assert report.verification.status == VerificationStatus.NOT_RUN
        assert report.overall_status == OverallStatus.FAILURE
        assert "do install-shell" not in mock_executor.commands()

    def test_everything_succeeds(self, devcontainer_steps, mock_executor):
        mock_executor.set_response(TARGET_QUERY, stdout="t1\nt2\n")

        report = provision(devcontainer_steps, mock_executor, verification=_targets_spec("t1", "t2"))

        assert report.overall_status == OverallStatus.SUCCESS
        assert report.ok
        assert report.succeeded == 4
        assert report.plan == (
            "install-packages",
            "create-user",
            "install-shell",
            "install-toolchain",
        )


# ── Idempotence ──────────────────────────────────────────────────────


class TestIdempotence:
    def test_satisfied_checks_skip_every_step(self, make_step, mock_executor):
        steps = [
            make_step("install-packages", check=["satisfied", "packages"]),
            make_step("create-user", "install-packages", check=["satisfied", "user"]),
        ]

        for _ in range(2):
            report = provision(steps, mock_executor)
            assert all(r.outcome == StepOutcome.SKIPPED for r in report.results)
            assert report.overall_status == OverallStatus.SUCCESS

        assert not any(cmd.startswith("do ") for cmd in mock_executor.commands())

    def test_skipped_result_has_exit_zero(self, make_step, mock_executor):
        report = provision([make_step("a", check=["satisfied"])], mock_executor)
        result = report.result_for("a")
        assert result.exit_code == 0
        assert result.attempts == 0

    def test_unsatisfied_check_runs_command(self, make_step, mock_executor):
        mock_executor.set_failure(["satisfied", "a"])
        report = provision([make_step("a", check=["satisfied", "a"])], mock_executor)

        assert report.result_for("a").outcome == StepOutcome.SUCCEEDED
        assert mock_executor.commands() == ["satisfied a", "do a"]

    def test_check_start_error_fails_step(self, make_step, mock_executor):
        mock_executor.set_start_error(["satisfied"])
        report = provision([make_step("a", check=["satisfied"])], mock_executor)

        result = report.result_for("a")
        assert result.outcome == StepOutcome.FAILED
        assert result.exit_code is None
        assert "idempotency check" in result.error
        assert "do a" not in mock_executor.commands()

    def test_check_timeout_fails_step(self, make_step, mock_executor):
        mock_executor.set_timeout(["satisfied"])
        report = provision([make_step("a", check=["satisfied"])], mock_executor)

        result = report.result_for("a")
        assert result.outcome == StepOutcome.FAILED
        assert result.timed_out is True


# ── Failure policies ─────────────────────────────────────────────────


class TestFailurePolicy:
    @pytest.mark.parametrize("k", [1, 2, 3, 4])
    def test_abort_at_step_k(self, k, make_step, mock_executor):
        steps = [make_step("s1"), make_step("s2", "s1"), make_step("s3", "s2"), make_step("s4", "s3")]
        mock_executor.set_failure(["do", f"s{k}"])

        report = provision(steps, mock_executor)

        assert len(report.results) == k
        assert all(r.outcome == StepOutcome.SUCCEEDED for r in report.results[:-1])
        assert report.results[-1].outcome == StepOutcome.FAILED
        assert len(report.not_attempted) == 4 - k

    def test_continue_runs_independent_steps(self, make_step, mock_executor):
        steps = [make_step("a"), make_step("b"), make_step("c")]
        mock_executor.set_failure(["do", "b"])

        report = provision(steps, mock_executor, settings=EngineSettings(on_failure="continue"))

        assert len(report.results) == len(report.plan)
        assert report.outcomes() == {"a": "succeeded", "b": "failed", "c": "succeeded"}
        assert report.run_state == RunState.COMPLETED
        assert report.overall_status == OverallStatus.PARTIAL_FAILURE

    def test_continue_blocks_dependents_of_failed_step(self, devcontainer_steps, mock_executor):
        mock_executor.set_failure(["do", "create-user"])

        report = provision(
            devcontainer_steps, mock_executor, settings=EngineSettings(on_failure="continue")
        )

        assert len(report.results) == 4
        assert report.not_attempted == ()
        for step_id in ("install-shell", "install-toolchain"):
            result = report.result_for(step_id)
            assert result.outcome == StepOutcome.FAILED
            assert result.blocked_by == ("create-user",)
            assert result.exit_code is None
            assert f"do {step_id}" not in mock_executor.commands()

    def test_continue_blocking_is_transitive(self, make_step, mock_executor):
        steps = [make_step("a"), make_step("b", "a"), make_step("c", "b")]
        mock_executor.set_failure(["do", "a"])

        report = provision(steps, mock_executor, settings=EngineSettings(on_failure="continue"))

        assert report.result_for("c").blocked_by == ("b",)
        assert mock_executor.commands() == ["do a"]

    def test_verify_on_abort(self, devcontainer_steps, mock_executor):
        mock_executor.set_failure(["do", "create-user"])
        mock_executor.set_response(TARGET_QUERY, stdout="t1\n")

        report = provision(
            devcontainer_steps,
            mock_executor,
            verification=_targets_spec("t1"),
            settings=EngineSettings(verify_on_abort=True),
        )

        assert report.run_state == RunState.ABORTED
        assert report.verification.status == VerificationStatus.PASSED
        assert report.overall_status == OverallStatus.FAILURE


# ── Retries and timeouts ─────────────────────────────────────────────


class TestRetries:
    def test_succeeds_on_later_attempt(self, make_step, mock_executor, no_wait_settings):
        mock_executor.set_sequence(["do", "fetch"], [1, 1, 0])
        sleeps: list[float] = []

        report = provision(
            [make_step("fetch", retries=2)],
            mock_executor,
            settings=no_wait_settings,
            sleep=sleeps.append,
        )

        result = report.result_for("fetch")
        assert result.outcome == StepOutcome.SUCCEEDED
        assert result.attempts == 3
        assert len(sleeps) == 2

    def test_gives_up_after_retries(self, make_step, mock_executor, no_wait_settings):
        mock_executor.set_failure(["do", "fetch"], exit_code=7)

        report = provision(
            [make_step("fetch", retries=1)],
            mock_executor,
            settings=no_wait_settings,
            sleep=lambda _s: None,
        )

        result = report.result_for("fetch")
        assert result.outcome == StepOutcome.FAILED
        assert result.exit_code == 7
        assert result.attempts == 2

    def test_engine_default_retries(self, make_step, mock_executor):
        mock_executor.set_failure(["do", "fetch"])
        settings = EngineSettings(retries=2, retry_base_delay=0, retry_max_delay=0)

        provision([make_step("fetch")], mock_executor, settings=settings, sleep=lambda _s: None)

        assert mock_executor.call_count == 3

    def test_step_retries_override_default(self, make_step, mock_executor):
        mock_executor.set_failure(["do", "fetch"])
        settings = EngineSettings(retries=5)

        provision([make_step("fetch", retries=0)], mock_executor, settings=settings)

        assert mock_executor.call_count == 1

    def test_start_error_is_not_retried(self, make_step, mock_executor):
        mock_executor.set_start_error(["do", "x"])

        report = provision([make_step("x", retries=3)], mock_executor, sleep=lambda _s: None)

        result = report.result_for("x")
        assert result.outcome == StepOutcome.FAILED
        assert result.exit_code is None
        assert result.attempts == 1
        assert "Cannot start do" in result.error
        assert mock_executor.call_count == 1


class TestTimeouts:
    def test_timed_out_step_fails(self, make_step, mock_executor):
        mock_executor.set_timeout(["do", "slow"])

        report = provision([make_step("slow", timeout=5)], mock_executor)

        result = report.result_for("slow")
        assert result.outcome == StepOutcome.FAILED
        assert result.timed_out is True
        assert result.exit_code == 124
        assert "timed out" in result.error

    def test_step_timeout_passed_to_executor(self, make_step, mock_executor):
        provision([make_step("a", timeout=5)], mock_executor)
        assert mock_executor.calls[0].timeout == 5

    def test_engine_default_timeout(self, make_step, mock_executor):
        provision([make_step("a")], mock_executor, settings=EngineSettings(step_timeout=30))
        assert mock_executor.calls[0].timeout == 30

    def test_unbounded_by_default(self, make_step, mock_executor):
        provision([make_step("a")], mock_executor)
        assert mock_executor.calls[0].timeout is None


# ── Cancellation ─────────────────────────────────────────────────────


class TestCancellation:
    def test_cancel_before_start(self, devcontainer_steps, mock_executor):
        event = threading.Event()
        event.set()

        report = provision(devcontainer_steps, mock_executor, cancel_event=event)

        assert report.cancelled is True
        assert report.results == ()
        assert len(report.not_attempted) == 4
        assert report.run_state == RunState.ABORTED
        assert report.overall_status == OverallStatus.FAILURE
        assert mock_executor.call_count == 0

    def test_cancel_between_steps(self, devcontainer_steps):
        event = threading.Event()
        executor = CancellingExecutor(event, ["do", "create-user"])

        report = provision(devcontainer_steps, executor, cancel_event=event)

        assert [r.step_id for r in report.results] == ["install-packages", "create-user"]
        assert report.result_for("create-user").outcome == StepOutcome.SUCCEEDED
        assert report.not_attempted == ("install-shell", "install-toolchain")
        assert report.cancelled is True

    def test_cancel_stops_retrying(self, make_step):
        event = threading.Event()
        executor = CancellingExecutor(event, ["do", "fetch"])
        executor.set_failure(["do", "fetch"])

        report = provision(
            [make_step("fetch", retries=3), make_step("after", "fetch")],
            executor,
            cancel_event=event,
        )

        assert report.result_for("fetch").attempts == 1
        assert report.result_for("fetch").outcome == StepOutcome.FAILED
        assert report.cancelled is True
        assert report.not_attempted == ("after",)
        assert report.run_state == RunState.ABORTED

    def test_cancel_while_retrying_under_continue(self, make_step):
        event = threading.Event()
        executor = CancellingExecutor(event, ["do", "fetch"])
        executor.set_failure(["do", "fetch"])

        report = provision(
            [make_step("fetch", retries=3), make_step("independent")],
            executor,
            settings=EngineSettings(on_failure="continue"),
            cancel_event=event,
        )

        assert report.cancelled is True
        assert report.not_attempted == ("independent",)
        assert "do independent" not in executor.commands()


# ── Engine object ────────────────────────────────────────────────────


class TestProvisioningEngine:
    def test_state_transitions(self, devcontainer_steps, mock_executor):
        engine = ProvisioningEngine(mock_executor)
        assert engine.state == RunState.NOT_STARTED

        run = engine.run(plan_steps(devcontainer_steps))

        assert engine.state == RunState.COMPLETED
        assert run.state == RunState.COMPLETED
        assert run.finished_at

    def test_engine_cannot_be_reused(self, devcontainer_steps, mock_executor):
        engine = ProvisioningEngine(mock_executor)
        plan = plan_steps(devcontainer_steps)
        engine.run(plan)
        with pytest.raises(RuntimeError):
            engine.run(plan)

    def test_cancel_method(self, devcontainer_steps, mock_executor):
        engine = ProvisioningEngine(mock_executor)
        engine.cancel()
        run = engine.run(plan_steps(devcontainer_steps))
        assert run.cancelled
        assert engine.state == RunState.ABORTED

    def test_identity_and_cwd_forwarded(self, make_step, mock_executor):
        step = make_step("shell", run_as="vscode", cwd="/home/vscode")
        ProvisioningEngine(mock_executor).execute_step(step)

        call = mock_executor.calls[0]
        assert call.run_as == "vscode"
        assert call.cwd == "/home/vscode"

    def test_planning_error_before_any_command(self, make_step, mock_executor):
        steps = [make_step("a", "b"), make_step("b", "a")]
        with pytest.raises(CyclicDependencyError):
            provision(steps, mock_executor)
        assert mock_executor.call_count == 0

    def test_run_id_format(self):
        run_id = generate_run_id()
        assert run_id.startswith("run-")
        assert run_id != generate_run_id()

    def test_explicit_run_id(self, devcontainer_steps, mock_executor):
        report = provision(devcontainer_steps, mock_executor, run_id="run-test", profile="dev")
        assert report.run_id == "run-test"
        assert report.profile == "dev"
