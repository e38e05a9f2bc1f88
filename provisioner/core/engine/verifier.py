"""
Toolchain verifier — read-only post-conditions after provisioning.

Runs version and listing queries, parses their output into sets and
reconciles them with the verification manifest. Anything expected but
not observed becomes a VerificationGap. Never mutates the host.
"""

from __future__ import annotations

import logging
import re

from provisioner.adapters.base import CommandExecutor, CommandResult, ExecutionStartError
from provisioner.core.models.manifest import QuerySpec, VerificationManifest, VerificationQueries
from provisioner.core.models.report import VerificationGap, VerificationResult, VerificationStatus
from provisioner.core.models.step import normalize_command

logger = logging.getLogger(__name__)


class ToolchainVerifier:
    """Reconcile observed toolchain state with a manifest."""

    def __init__(self, executor: CommandExecutor):
        self._executor = executor

    def _query(
        self, command: list[str], queries: VerificationQueries
    ) -> tuple[CommandResult | None, str]:
        """Run one read-only command; return (result, error message)."""
        try:
            result = self._executor.execute(
                command,
                run_as=queries.run_as,
                cwd=queries.cwd,
                timeout=queries.timeout,
                env=queries.env or None,
            )
        except ExecutionStartError as e:
            logger.warning("Verification query could not start: %s", e)
            return None, str(e)

        if result.timed_out:
            return result, "query timed out"
        if result.exit_code != 0:
            detail = result.stderr.strip().splitlines()[-1:] or [""]
            return result, f"query exited with {result.exit_code} {detail[0]}".strip()
        return result, ""

    def _observe(
        self,
        kind: str,
        expected: frozenset[str],
        spec: QuerySpec | None,
        queries: VerificationQueries,
    ) -> tuple[set[str], list[VerificationGap]]:
        """Observe one set (targets or components) and list the gaps."""
        if not expected:
            return set(), []
        if spec is None:
            return set(), [
                VerificationGap(kind=kind, name=name, detail=f"no {kind} query configured")
                for name in sorted(expected)
            ]

        result, error = self._query(spec.command, queries)
        observed = spec.parse(result.stdout) if result is not None and not error else set()
        gaps = [
            VerificationGap(kind=kind, name=name, detail=error or f"{kind} not installed")
            for name in sorted(expected - observed)
        ]
        return observed, gaps

    def _check_version(
        self, pattern: str | None, spec: QuerySpec | None, queries: VerificationQueries
    ) -> tuple[str | None, list[VerificationGap]]:
        if not pattern:
            return None, []
        if spec is None:
            return None, [
                VerificationGap(
                    kind="toolchain_version", name=pattern, detail="no version query configured"
                )
            ]

        result, error = self._query(spec.command, queries)
        if result is None or error:
            return None, [VerificationGap(kind="toolchain_version", name=pattern, detail=error)]

        lines = [ln.strip() for ln in result.stdout.splitlines() if ln.strip()]
        observed = lines[0] if lines else ""
        if re.search(pattern, result.stdout):
            return observed, []
        return observed, [
            VerificationGap(
                kind="toolchain_version",
                name=pattern,
                detail=f"observed {observed!r}" if observed else "no version output",
            )
        ]

    def _check_commands(
        self, commands: tuple[str, ...], queries: VerificationQueries
    ) -> list[VerificationGap]:
        gaps: list[VerificationGap] = []
        for line in commands:
            _, error = self._query(normalize_command(line), queries)
            if error:
                gaps.append(VerificationGap(kind="command", name=line, detail=error))
        return gaps

    def verify(
        self,
        manifest: VerificationManifest,
        queries: VerificationQueries | None = None,
    ) -> VerificationResult:
        """Run the verification battery.

        Queries whose expectation is empty are not run, so an empty
        manifest passes without touching the host.

        Returns:
            VerificationResult with status ``passed`` or ``failed``.
        """
        queries = queries or VerificationQueries()

        if manifest.is_empty:
            logger.debug("Empty verification manifest — nothing to check")
            return VerificationResult(status=VerificationStatus.PASSED)

        version, gaps = self._check_version(
            manifest.toolchain_version, queries.toolchain_version, queries
        )
        targets, target_gaps = self._observe("target", manifest.targets, queries.targets, queries)
        components, component_gaps = self._observe(
            "component", manifest.components, queries.components, queries
        )
        gaps += target_gaps + component_gaps
        gaps += self._check_commands(manifest.commands, queries)

        for gap in gaps:
            logger.warning("✗ verification gap: %s %s (%s)", gap.kind, gap.name, gap.detail)

        return VerificationResult(
            status=VerificationStatus.FAILED if gaps else VerificationStatus.PASSED,
            gaps=tuple(gaps),
            observed_version=version,
            observed_targets=frozenset(targets),
            observed_components=frozenset(components),
        )
