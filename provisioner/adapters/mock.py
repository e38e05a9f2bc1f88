"""
Mock executor — scripted test double for the command executor.

Used by the test-suite and by ``provision run --mock`` to walk a
profile without touching the host. By default every command succeeds;
individual commands can be scripted to fail, time out, refuse to
start, or return a sequence of results (one per call).
"""

from __future__ import annotations

from dataclasses import dataclass

from provisioner.adapters.base import (
    TIMEOUT_EXIT_CODE,
    CommandExecutor,
    CommandResult,
    ExecutionStartError,
)


def command_key(command: list[str] | str) -> str:
    """Normalise a command to the string used for scripting lookups."""
    if isinstance(command, str):
        return command
    return " ".join(command)


@dataclass
class MockCall:
    """One recorded call to the mock."""

    command: list[str]
    run_as: str | None
    cwd: str | None
    timeout: float | None

    @property
    def key(self) -> str:
        return command_key(self.command)


class MockExecutor(CommandExecutor):
    """Universal mock executor for testing."""

    def __init__(self, default_exit_code: int = 0, default_output: str = "[mock] executed"):
        self._default_exit_code = default_exit_code
        self._default_output = default_output
        self._responses: dict[str, list[CommandResult | ExecutionStartError]] = {}
        self._calls: list[MockCall] = []

    @property
    def calls(self) -> list[MockCall]:
        """All calls this mock has received, in order."""
        return self._calls

    @property
    def call_count(self) -> int:
        return len(self._calls)

    def commands(self) -> list[str]:
        """Keys of every command executed so far."""
        return [c.key for c in self._calls]

    def set_response(
        self,
        command: list[str] | str,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Script a fixed result for ``command`` (replaces earlier scripts)."""
        key = command_key(command)
        self._responses[key] = [
            CommandResult(command=key.split(), exit_code=exit_code, stdout=stdout, stderr=stderr)
        ]

    def set_sequence(self, command: list[str] | str, exit_codes: list[int]) -> None:
        """Script successive exit codes; the last one repeats."""
        key = command_key(command)
        self._responses[key] = [
            CommandResult(command=key.split(), exit_code=code) for code in exit_codes
        ]

    def set_failure(self, command: list[str] | str, exit_code: int = 1, stderr: str = "Mock failure") -> None:
        self.set_response(command, exit_code=exit_code, stderr=stderr)

    def set_timeout(self, command: list[str] | str) -> None:
        key = command_key(command)
        self._responses[key] = [
            CommandResult(
                command=key.split(),
                exit_code=TIMEOUT_EXIT_CODE,
                stderr="Command timed out",
                timed_out=True,
            )
        ]

    def set_start_error(self, command: list[str] | str, reason: str = "No such file or directory") -> None:
        key = command_key(command)
        self._responses[key] = [ExecutionStartError(key.split(), reason)]

    def execute(
        self,
        command: list[str],
        run_as: str | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        call = MockCall(command=list(command), run_as=run_as, cwd=cwd, timeout=timeout)
        self._calls.append(call)

        scripted = self._responses.get(call.key)
        if scripted:
            response = scripted.pop(0) if len(scripted) > 1 else scripted[0]
            if isinstance(response, ExecutionStartError):
                raise response
            return response.model_copy(update={"command": list(command)})

        return CommandResult(
            command=list(command),
            exit_code=self._default_exit_code,
            stdout=self._default_output if self._default_exit_code == 0 else "",
        )

    def reset(self) -> None:
        """Clear call log and scripted responses."""
        self._calls.clear()
        self._responses.clear()
