"""
Provision use case — apply a profile to this machine.

This is the top-level orchestrator: it loads the profile, resolves
settings, plans the steps, runs them, verifies the toolchain and
persists the report. The full vertical slice from a profile file to
an audited provisioning run.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from provisioner.adapters.base import CommandExecutor, ExecutorUnavailableError
from provisioner.core.config.loader import ConfigError, load_profile
from provisioner.core.config.settings import EngineSettings, SettingsError, resolve_settings
from provisioner.core.engine.executor import provision
from provisioner.core.engine.planner import PlanningError, ProvisioningPlan, plan_steps
from provisioner.core.engine.verifier import ToolchainVerifier
from provisioner.core.models.manifest import VerificationSpec
from provisioner.core.models.profile import ProvisioningProfile
from provisioner.core.models.report import ProvisioningReport, VerificationResult
from provisioner.core.persistence.ledger import LedgerEntry, RunLedger
from provisioner.core.persistence.report_file import (
    DEFAULT_STATE_DIR,
    default_report_path,
    save_report,
)

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    """Result of a provisioning request (run, plan or verify)."""

    profile: ProvisioningProfile | None = None
    settings: EngineSettings | None = None
    plan: ProvisioningPlan | None = None
    report: ProvisioningReport | None = None
    verification: VerificationResult | None = None
    report_path: Path | None = None
    error: str | None = None
    # True when the host could not spawn processes; False for profile,
    # settings or planning errors, where nothing was attempted
    halted: bool = False

    @property
    def ok(self) -> bool:
        if self.error:
            return False
        if self.report is not None:
            return self.report.ok
        if self.verification is not None:
            return self.verification.passed
        return True

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.error:
            result["error"] = self.error
            if self.halted:
                result["halted"] = True
            return result

        result["profile"] = self.profile.name if self.profile else ""
        if self.settings is not None:
            result["settings"] = self.settings.model_dump(mode="json")
        if self.plan is not None:
            result["plan"] = [
                {
                    "id": step.id,
                    "description": step.description,
                    "run_as": step.run_as,
                    "depends_on": list(step.depends_on),
                }
                for step in self.plan
            ]
        if self.report is not None:
            result["report"] = self.report.to_dict()
        if self.verification is not None:
            result["verification"] = {
                "status": self.verification.status.value,
                "observed_version": self.verification.observed_version,
                "gaps": [g.model_dump(mode="json") for g in self.verification.gaps],
            }
        if self.report_path is not None:
            result["report_path"] = str(self.report_path)
        return result


def simulated_host(profile: ProvisioningProfile) -> tuple[CommandExecutor, VerificationSpec]:
    """Mock executor for ``--mock`` runs: a fresh host where everything installs.

    Idempotency checks report "not satisfied" so every step runs, and
    the verification queries echo back exactly what the manifest
    expects. Query patterns are dropped because the echo is already
    one item per line.
    """
    from provisioner.adapters.mock import MockExecutor

    mock = MockExecutor()
    for step in profile.steps:
        if step.check is not None:
            mock.set_failure(step.check, stderr="[mock] not satisfied")

    expected = profile.verification.expected
    queries = profile.verification.queries
    if queries.toolchain_version is not None and expected.toolchain_version:
        mock.set_response(queries.toolchain_version.command, stdout=f"{expected.toolchain_version}\n")

    updates: dict[str, Any] = {}
    for kind, items in (("targets", expected.targets), ("components", expected.components)):
        spec = getattr(queries, kind)
        if spec is None:
            continue
        mock.set_response(spec.command, stdout="".join(f"{item}\n" for item in sorted(items)))
        updates[kind] = spec.model_copy(update={"pattern": None})

    verification = profile.verification.model_copy(
        update={"queries": queries.model_copy(update=updates)}
    )
    return mock, verification


def _executor_for(
    profile: ProvisioningProfile,
    executor: CommandExecutor | None,
    mock_mode: bool,
) -> tuple[CommandExecutor, VerificationSpec]:
    if executor is not None:
        return executor, profile.verification
    if mock_mode:
        return simulated_host(profile)

    from provisioner.adapters.shell.command import SubprocessExecutor

    return SubprocessExecutor(), profile.verification


def _load(
    profile_ref: str | Path | None,
    result: ProvisionResult,
    env: Mapping[str, str] | None,
    overrides: dict[str, Any],
) -> tuple[ProvisioningProfile, EngineSettings] | None:
    """Load the profile, settings and plan into ``result``.

    Returns the profile and settings, or None once ``error`` is set.
    """
    try:
        profile = load_profile(profile_ref)
        result.profile = profile
        settings = resolve_settings(profile.settings, env=env, **overrides)
        result.settings = settings
        result.plan = plan_steps(profile.steps)
    except (ConfigError, SettingsError, PlanningError) as e:
        result.error = str(e)
        return None
    return profile, settings


def plan_profile(
    profile_ref: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> ProvisionResult:
    """Load and plan a profile without executing anything."""
    result = ProvisionResult()
    _load(profile_ref, result, env, {})
    return result


def verify_profile(
    profile_ref: str | Path | None = None,
    executor: CommandExecutor | None = None,
    mock_mode: bool = False,
) -> ProvisionResult:
    """Run only the verification battery of a profile."""
    result = ProvisionResult()
    try:
        profile = load_profile(profile_ref)
    except ConfigError as e:
        result.error = str(e)
        return result

    result.profile = profile
    executor, verification = _executor_for(profile, executor, mock_mode)
    try:
        result.verification = ToolchainVerifier(executor).verify(
            verification.expected, verification.queries
        )
    except ExecutorUnavailableError as e:
        result.error = str(e)
        result.halted = True
    return result


def run_provisioning(
    profile_ref: str | Path | None = None,
    executor: CommandExecutor | None = None,
    mock_mode: bool = False,
    state_dir: Path | None = None,
    report_file: Path | None = None,
    env: Mapping[str, str] | None = None,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
    on_failure: str | None = None,
    verify_on_abort: bool | None = None,
    step_timeout: float | None = None,
    retries: int | None = None,
) -> ProvisionResult:
    """Provision this machine from a profile.

    Args:
        profile_ref: Profile file path or bundled profile name.
        executor: Optional pre-configured executor.
        mock_mode: If True, walk the profile with a mock executor.
        state_dir: Where the report and ledger go (default: ./.state).
        report_file: Explicit report path (default: state_dir/last-report.json).
        env: Environment used for PROVISION_* settings (default: os.environ).
        cancel_event: Set it to stop between steps.
        sleep: Backoff sleeper (default: time.sleep, none in mock mode).
        on_failure, verify_on_abort, step_timeout, retries: CLI overrides.

    Returns:
        ProvisionResult with the report, or with ``error`` set when the
        profile could not be loaded or planned (nothing executed then)
        or when the host could not spawn processes (``halted``).
    """
    result = ProvisionResult()
    overrides = {
        "on_failure": on_failure,
        "verify_on_abort": verify_on_abort,
        "step_timeout": step_timeout,
        "retries": retries,
    }
    loaded = _load(profile_ref, result, env, overrides)
    if loaded is None:
        return result
    profile, settings = loaded

    executor, verification = _executor_for(profile, executor, mock_mode)
    if sleep is None:
        sleep = (lambda _s: None) if mock_mode else time.sleep

    # ── Execute ──────────────────────────────────────────────────
    try:
        report = provision(
            profile.steps,
            executor,
            verification=verification,
            settings=settings,
            profile=profile.name,
            cancel_event=cancel_event,
            sleep=sleep,
        )
    except ExecutorUnavailableError as e:
        logger.error("Provisioning halted: %s", e)
        result.error = str(e)
        result.halted = True
        return result
    result.report = report

    # ── Persist report + ledger ──────────────────────────────────
    state_dir = state_dir or Path(DEFAULT_STATE_DIR)
    target = report_file or default_report_path(state_dir)
    try:
        result.report_path = save_report(report, target)
    except OSError as e:
        logger.error("Could not write report to %s: %s", target, e)

    RunLedger.in_state_dir(state_dir).write(
        LedgerEntry.from_report(report, mock=mock_mode, on_failure=settings.on_failure.value)
    )

    return result
