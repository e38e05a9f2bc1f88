"""
Verification manifest — the post-conditions a provisioned toolchain must meet.

The manifest says *what* must be present (toolchain version, targets,
components, commands that must succeed). The queries say *how* to
observe it: read-only commands whose output is parsed line by line
into sets of strings.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from provisioner.core.models.step import ROOT_USER, normalize_command


class VerificationManifest(BaseModel):
    """Expected toolchain state.

    ``toolchain_version`` is a regular expression searched in the
    version query output, so an exact version string works too.
    """

    model_config = ConfigDict(frozen=True)

    toolchain_version: str | None = None
    targets: frozenset[str] = frozenset()
    components: frozenset[str] = frozenset()
    commands: tuple[str, ...] = ()     # shell lines that must exit 0

    @field_validator("toolchain_version")
    @classmethod
    def _pattern(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid toolchain_version pattern: {e}") from e
        return value

    @property
    def is_empty(self) -> bool:
        return not (self.toolchain_version or self.targets or self.components or self.commands)


class QuerySpec(BaseModel):
    """One read-only query command.

    ``pattern`` is applied to every output line; the first capture
    group (or the whole match) becomes an observed item. Without a
    pattern each stripped, non-empty line is an item.
    """

    model_config = ConfigDict(frozen=True)

    command: list[str]
    pattern: str | None = None

    @field_validator("command", mode="before")
    @classmethod
    def _command(cls, value: Any) -> list[str]:
        return normalize_command(value)

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid query pattern: {e}") from e
        return value

    def parse(self, output: str) -> set[str]:
        """Turn command output into the set of observed items."""
        items: set[str] = set()
        regex = re.compile(self.pattern) if self.pattern else None
        for raw in output.splitlines():
            line = raw.strip()
            if not line:
                continue
            if regex is None:
                items.add(line)
                continue
            match = regex.search(line)
            if match:
                items.add(match.group(1) if match.groups() else match.group(0))
        return items


class VerificationQueries(BaseModel):
    """Commands the verifier runs to observe the toolchain."""

    model_config = ConfigDict(frozen=True)

    run_as: str = ROOT_USER
    cwd: str | None = None
    toolchain_version: QuerySpec | None = None
    targets: QuerySpec | None = None
    components: QuerySpec | None = None
    timeout: float | None = None
    env: dict[str, str] = Field(default_factory=dict)


class VerificationSpec(BaseModel):
    """Manifest plus the queries that check it, as read from a profile."""

    model_config = ConfigDict(frozen=True)

    expected: VerificationManifest = Field(default_factory=VerificationManifest)
    queries: VerificationQueries = Field(default_factory=VerificationQueries)
