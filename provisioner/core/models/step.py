"""
StepDescriptor — one provisioning step.

A step is a node of the provisioning graph: the command that mutates
the environment, who runs it, which steps it waits for, and an
optional idempotency check that lets the engine skip it when its
effect is already present.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Identity that maps to "no privilege switch needed" in a root container
ROOT_USER = "root"


def normalize_command(value: Any) -> list[str]:
    """Accept an argv list or a shell string.

    A plain string is run through ``sh -c`` so that pipes and ``&&``
    behave as they would in a Dockerfile ``RUN`` line.
    """
    if isinstance(value, str):
        if not value.strip():
            raise ValueError("command must not be empty")
        return ["sh", "-c", value]
    if isinstance(value, (list, tuple)):
        argv = [str(part) for part in value]
        if not argv:
            raise ValueError("command must not be empty")
        return argv
    raise ValueError(f"command must be a string or a list, got {type(value).__name__}")


class StepDescriptor(BaseModel):
    """A single idempotent environment mutation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    description: str = ""
    run_as: str = ROOT_USER
    command: list[str]
    cwd: str | None = None
    depends_on: tuple[str, ...] = ()
    check: list[str] | None = None      # exit 0 = already satisfied
    timeout: float | None = None        # seconds, overrides the engine default
    retries: int | None = Field(default=None, ge=0)  # None = engine default
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("command", mode="before")
    @classmethod
    def _command(cls, value: Any) -> list[str]:
        return normalize_command(value)

    @field_validator("check", mode="before")
    @classmethod
    def _check(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        return normalize_command(value)

    @field_validator("depends_on", mode="before")
    @classmethod
    def _depends_on(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return tuple(str(v) for v in value)

    @field_validator("timeout")
    @classmethod
    def _timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @property
    def label(self) -> str:
        return self.description or self.id
