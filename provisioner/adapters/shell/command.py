"""
Subprocess executor — run host commands and capture their output.

This is the SINGLE PLACE where ``subprocess.run`` is called for
provisioning steps, idempotency checks and verification queries.
"""

from __future__ import annotations

import errno
import getpass
import logging
import os
import shutil
import subprocess
import time

from provisioner.adapters.base import (
    TIMEOUT_EXIT_CODE,
    CommandExecutor,
    CommandResult,
    ExecutionStartError,
    ExecutorUnavailableError,
)

logger = logging.getLogger(__name__)

# Keep captured output bounded; installers can be very chatty
_MAX_OUTPUT = 20_000

# errno values meaning "this host cannot spawn anything right now"
_FORK_ERRNOS = (errno.EAGAIN, errno.ENOMEM)


def _tail(text: str | bytes | None) -> str:
    if not text:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-_MAX_OUTPUT:]


class SubprocessExecutor(CommandExecutor):
    """Execute commands on the local host with ``subprocess.run``.

    Identity switching:
        When ``run_as`` names someone other than the current user the
        command is wrapped as ``sudo -n -H -u <user> -- <command>``.
        Privilege escalation itself is the host's business; a missing
        ``sudo`` binary is an ExecutionStartError.

    Step environment:
        Without a switch, $VAR references in ``env`` values expand
        against this process's environment. Across a switch the values
        are passed literally: the caller's $HOME is not the target
        user's, and ``env K=V`` does no expansion of its own. Steps that
        need the target's variables expand them in a ``sh -c`` command.

    Children run in their own session, so a Ctrl-C on the terminal
    never reaches an in-flight installer.
    """

    def __init__(self, current_user: str | None = None, sudo_binary: str = "sudo"):
        self._current_user = current_user or getpass.getuser()
        self._sudo = sudo_binary

    @property
    def current_user(self) -> str:
        return self._current_user

    def switches_identity(self, run_as: str | None) -> bool:
        return bool(run_as) and run_as != self._current_user

    def wrap_identity(
        self,
        command: list[str],
        run_as: str | None,
        env: dict[str, str] | None = None,
    ) -> list[str]:
        """Prefix ``command`` with the privilege wrapper when needed.

        sudo resets the environment, so step variables are passed
        through ``env K=V`` after the switch.
        """
        if not self.switches_identity(run_as):
            return list(command)
        if shutil.which(self._sudo) is None:
            raise ExecutionStartError(
                command, f"cannot switch to user '{run_as}': {self._sudo} not found"
            )
        prefix = [self._sudo, "-n", "-H", "-u", run_as, "--"]
        if env:
            prefix += ["env", *(f"{k}={v}" for k, v in env.items())]
        return [*prefix, *command]

    def execute(
        self,
        command: list[str],
        run_as: str | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        if not command:
            raise ExecutionStartError(command, "empty command")
        if cwd and not os.path.isdir(cwd):
            raise ExecutionStartError(command, f"working directory does not exist: {cwd}")

        step_env = dict(env or {})
        if not self.switches_identity(run_as):
            # $VAR in a value resolves against this process's environment
            step_env = {k: os.path.expandvars(v) for k, v in step_env.items()}
        argv = self.wrap_identity(command, run_as, step_env)

        full_env = None
        if step_env:
            full_env = os.environ.copy()
            full_env.update(step_env)

        logger.debug("Executing: %s (user=%s, cwd=%s)", argv, run_as or self._current_user, cwd)
        start = time.monotonic()

        try:
            result = subprocess.run(
                argv,
                cwd=cwd,
                env=full_env,
                capture_output=True,
                text=True,
                timeout=timeout,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except subprocess.TimeoutExpired as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Command timed out after %ss: %s", timeout, argv)
            return CommandResult(
                command=list(command),
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_tail(e.stdout),
                stderr=_tail(e.stderr) or f"Command timed out after {timeout}s",
                duration_ms=elapsed_ms,
                timed_out=True,
            )
        except (FileNotFoundError, NotADirectoryError) as e:
            raise ExecutionStartError(command, str(e)) from e
        except PermissionError as e:
            raise ExecutionStartError(command, f"permission denied: {e}") from e
        except OSError as e:
            if e.errno in _FORK_ERRNOS:
                raise ExecutorUnavailableError(f"Cannot spawn processes: {e}") from e
            raise ExecutionStartError(command, str(e)) from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        return CommandResult(
            command=list(command),
            exit_code=result.returncode,
            stdout=_tail(result.stdout),
            stderr=_tail(result.stderr),
            duration_ms=elapsed_ms,
        )
