"""Adapters — command executors for the host and for tests.

Public re-exports for convenient access.
"""

from provisioner.adapters.base import (
    CommandExecutor,
    CommandResult,
    ExecutionStartError,
    ExecutorUnavailableError,
)
from provisioner.adapters.mock import MockExecutor
from provisioner.adapters.shell.command import SubprocessExecutor

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "ExecutionStartError",
    "ExecutorUnavailableError",
    "MockExecutor",
    "SubprocessExecutor",
]
