"""
Devbox provisioner — CLI entrypoint.

Usage:
    provision --help
    provision run                      # bundled devcontainer profile
    provision run ./my-profile.yml --on-failure continue
    provision plan --json
    provision verify
"""

from __future__ import annotations

import json
import os
import signal
import sys
import threading
from pathlib import Path

import click

from provisioner import __version__
from provisioner.core.observability.logging_config import setup_logging

# Exit codes: 0 = success, 1 = run failed or partially failed,
# 2 = profile/settings/planning error (nothing executed)
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

_OUTCOME_STYLE = {
    "succeeded": ("✓", "green"),
    "skipped": ("⊘", "yellow"),
    "failed": ("✗", "red"),
}

_STATUS_COLOR = {
    "success": "green",
    "partial_failure": "yellow",
    "failure": "red",
}


@click.group()
@click.version_option(version=__version__, prog_name="provision")
@click.option("--verbose", "-v", is_flag=True, help="Show step progress.")
@click.option("--quiet", "-q", is_flag=True, help="Only show errors.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, debug: bool) -> None:
    """Devbox provisioner — declarative development-container setup."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("PROVISION_LOG_LEVEL", "WARNING")

    setup_logging(
        level=level,
        log_file=os.environ.get("PROVISION_LOG_FILE"),
        log_file_level=os.environ.get("PROVISION_LOG_FILE_LEVEL"),
    )


def _install_cancel_handlers(event: threading.Event) -> dict[int, object]:
    """Route SIGINT/SIGTERM to ``event``; the running command finishes first."""

    def _handler(signum: int, _frame: object) -> None:
        if not event.is_set():
            click.echo(
                f"\n⚠️  Signal {signum}: stopping after the current step…", err=True
            )
        event.set()

    previous: dict[int, object] = {}
    if threading.current_thread() is not threading.main_thread():
        return previous
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def _restore_handlers(previous: dict[int, object]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)  # type: ignore[arg-type]


def _error_exit_code(result) -> int:
    """A host that cannot spawn processes is a failed run, not a bad profile."""
    return EXIT_FAILED if result.halted else EXIT_CONFIG_ERROR


def _print_report(report, verbose: bool) -> None:
    """Human-readable rendering of a ProvisioningReport."""
    click.echo()
    for r in report.results:
        marker, color = _OUTCOME_STYLE[r.outcome.value]
        click.secho(f"   {marker} {r.step_id}", fg=color, nl=False)
        exit_part = f" exit={r.exit_code}" if r.exit_code is not None else ""
        extra = " (timed out)" if r.timed_out else ""
        if r.attempts > 1:
            extra += f" [{r.attempts} attempts]"
        click.echo(f"  {r.outcome.value}{exit_part} ({r.duration_ms}ms){extra}")
        if r.failed:
            detail = r.error or r.stderr.strip()
            for line in detail.splitlines()[-5:]:
                click.echo(f"     │ {line}")
        elif verbose and r.stdout:
            for line in r.stdout.splitlines()[:10]:
                click.echo(f"     │ {line}")

    for step_id in report.not_attempted:
        click.secho(f"   · {step_id}  not attempted", dim=True)

    click.echo()
    verification = report.verification
    if verification.status.value == "passed":
        click.secho("   Verification: passed", fg="green")
    elif verification.status.value == "failed":
        click.secho("   Verification: failed", fg="red")
        for gap in verification.gaps:
            click.echo(f"     ✗ {gap.kind}: {gap.name}" + (f" — {gap.detail}" if gap.detail else ""))
    else:
        click.secho(f"   Verification: not run ({verification.reason})", fg="yellow")

    click.echo()
    click.secho(
        f"   Result: {report.overall_status.value} — "
        f"{report.succeeded} succeeded, {report.skipped} skipped, "
        f"{report.failed} failed, {len(report.not_attempted)} not attempted",
        fg=_STATUS_COLOR.get(report.overall_status.value, "white"),
        bold=True,
    )
    if report.cancelled:
        click.secho("   Run was cancelled.", fg="yellow")
    click.echo()


# ── Run ─────────────────────────────────────────────────────────────


@cli.command()
@click.argument("profile", required=False)
@click.option(
    "--on-failure",
    type=click.Choice(["abort", "continue"]),
    default=None,
    help="Stop at the first failed step (abort) or keep going (continue).",
)
@click.option("--verify-on-abort", is_flag=True, default=None, help="Verify even if the run aborted.")
@click.option("--timeout", "step_timeout", type=float, default=None, help="Per-step timeout in seconds (0 = none).")
@click.option("--retries", type=click.IntRange(min=0), default=None, help="Retries for steps without their own.")
@click.option("--mock", is_flag=True, help="Use the mock executor (no real execution).")
@click.option("--state-dir", type=click.Path(file_okay=False, path_type=Path), default=None, help="Where to keep the report and run ledger (default: ./.state).")
@click.option("--report-file", type=click.Path(dir_okay=False, path_type=Path), default=None, help="Write the report JSON here.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    profile: str | None,
    on_failure: str | None,
    verify_on_abort: bool | None,
    step_timeout: float | None,
    retries: int | None,
    mock: bool,
    state_dir: Path | None,
    report_file: Path | None,
    as_json: bool,
) -> None:
    """Provision this machine from PROFILE (default: devcontainer).

    Examples:

        provision run

        provision run ./devbox.yml --on-failure continue

        provision run --mock --json
    """
    from provisioner.core.use_cases.provision import run_provisioning

    cancel_event = threading.Event()
    previous = _install_cancel_handlers(cancel_event)
    try:
        result = run_provisioning(
            profile,
            mock_mode=mock,
            state_dir=state_dir,
            report_file=report_file,
            cancel_event=cancel_event,
            on_failure=on_failure,
            verify_on_abort=verify_on_abort or None,
            step_timeout=step_timeout,
            retries=retries,
        )
    finally:
        _restore_handlers(previous)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(_error_exit_code(result))
        if not result.ok:
            sys.exit(EXIT_FAILED)
        return

    report = result.report
    if result.error or report is None:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(_error_exit_code(result))

    mode_label = "[mock] " if mock else ""
    click.secho(f"\n🔧 {mode_label}provision — {report.profile}", fg="cyan", bold=True)
    click.echo(f"   Run: {report.run_id} | Steps: {len(report.plan)}")
    _print_report(report, verbose=ctx.obj.get("verbose", False))
    if result.report_path:
        click.echo(f"   Report: {result.report_path}")
        click.echo()

    if not report.ok:
        sys.exit(EXIT_FAILED)


# ── Plan ────────────────────────────────────────────────────────────


@cli.command()
@click.argument("profile", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def plan(profile: str | None, as_json: bool) -> None:
    """Show the execution order for PROFILE without running anything."""
    from provisioner.core.use_cases.provision import plan_profile

    result = plan_profile(profile)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(EXIT_CONFIG_ERROR)
        return

    loaded, steps = result.profile, result.plan
    if result.error or loaded is None or steps is None:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(EXIT_CONFIG_ERROR)

    click.secho(f"\n📋 Plan — {loaded.name}", fg="cyan", bold=True)
    if loaded.description:
        click.echo(f"   {loaded.description}")
    click.echo()
    for i, step in enumerate(steps, start=1):
        deps = f"  ← {', '.join(step.depends_on)}" if step.depends_on else ""
        check = "" if step.check is None else "  (idempotent)"
        click.echo(f"   {i:>2}. {step.id} [{step.run_as}]{check}{deps}")
    click.echo()


# ── Verify ──────────────────────────────────────────────────────────


@cli.command()
@click.argument("profile", required=False)
@click.option("--mock", is_flag=True, help="Use the mock executor (no real execution).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def verify(profile: str | None, mock: bool, as_json: bool) -> None:
    """Check the installed toolchain against PROFILE's manifest."""
    from provisioner.core.use_cases.provision import verify_profile

    result = verify_profile(profile, mock_mode=mock)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(_error_exit_code(result))
        if not result.ok:
            sys.exit(EXIT_FAILED)
        return

    verification = result.verification
    if result.error or verification is None:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(_error_exit_code(result))
    if verification.passed:
        version = f" ({verification.observed_version})" if verification.observed_version else ""
        click.secho(f"✅ Toolchain verified{version}", fg="green")
        return

    click.secho("❌ Verification failed:", fg="red", bold=True)
    for gap in verification.gaps:
        click.echo(f"   ✗ {gap.kind}: {gap.name}" + (f" — {gap.detail}" if gap.detail else ""))
    sys.exit(EXIT_FAILED)


# ── History ─────────────────────────────────────────────────────────


@cli.command()
@click.option("--state-dir", type=click.Path(file_okay=False, path_type=Path), default=None, help="State directory (default: ./.state).")
@click.option("-n", "limit", type=click.IntRange(min=1), default=10, help="Number of runs to show.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def history(state_dir: Path | None, limit: int, as_json: bool) -> None:
    """Show recent provisioning runs from the ledger."""
    from provisioner.core.persistence.ledger import RunLedger
    from provisioner.core.persistence.report_file import DEFAULT_STATE_DIR

    ledger = RunLedger.in_state_dir(state_dir or Path(DEFAULT_STATE_DIR))
    entries = ledger.read_recent(limit)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.secho("No provisioning runs recorded.", fg="yellow")
        return

    click.secho(f"\n📜 Last {len(entries)} run(s)", fg="cyan", bold=True)
    for e in entries:
        click.secho(f"   {e.timestamp[:19]}  {e.status:<15}", fg=_STATUS_COLOR.get(e.status, "white"), nl=False)
        click.echo(
            f" {e.profile}  ({e.steps_succeeded} ok, {e.steps_skipped} skipped, "
            f"{e.steps_failed} failed)"
        )
        if e.failed_steps:
            click.echo(f"      failed: {', '.join(e.failed_steps)}")
    click.echo()


# ── Profiles ────────────────────────────────────────────────────────


@cli.command()
def profiles() -> None:
    """List the profiles bundled with the provisioner."""
    from provisioner.core.config.loader import bundled_profiles

    for name in bundled_profiles():
        click.echo(name)


if __name__ == "__main__":
    cli()
