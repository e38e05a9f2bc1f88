"""
Executor base — the contract between the engine and the host.

The engine never touches subprocesses directly. It hands an argument
vector, an identity and a working directory to a CommandExecutor and
gets a CommandResult back. A non-zero exit is a normal result, not an
exception: only a process that could not be started raises.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, ConfigDict, Field

from provisioner.core.errors import ProvisionError

# Exit code reported for a command killed by its timeout (same as timeout(1))
TIMEOUT_EXIT_CODE = 124


class ExecutionStartError(ProvisionError):
    """The process could not be launched.

    Missing binary, missing working directory, permission denied, or no
    way to switch to the requested identity. Fatal to the step only.
    """

    def __init__(self, command: list[str], reason: str):
        self.command = list(command)
        self.reason = reason
        super().__init__(f"Cannot start {command[0] if command else '<empty>'}: {reason}")


class ExecutorUnavailableError(ProvisionError):
    """The host cannot fork/exec at all. Fatal to the whole run."""


class CommandResult(BaseModel):
    """Outcome of one external command."""

    model_config = ConfigDict(frozen=True)

    command: list[str] = Field(default_factory=list)
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class CommandExecutor(ABC):
    """Runs a single external command and reports what happened.

    Implementations are stateless with respect to the host: every side
    effect comes from the command itself.
    """

    @abstractmethod
    def execute(
        self,
        command: list[str],
        run_as: str | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run ``command`` as ``run_as`` inside ``cwd``.

        Returns:
            CommandResult, whatever the exit code.

        Raises:
            ExecutionStartError: the process could not be started.
            ExecutorUnavailableError: the host cannot spawn processes.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
