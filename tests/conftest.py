"""
Shared test fixtures and configuration.
"""

import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from provisioner.adapters.mock import MockExecutor
from provisioner.core.config.settings import EngineSettings
from provisioner.core.models.step import StepDescriptor


@pytest.fixture
def mock_executor() -> MockExecutor:
    """A mock executor where every command succeeds."""
    return MockExecutor()


@pytest.fixture
def make_step() -> Callable[..., StepDescriptor]:
    """Factory for steps whose command is ``do <id>``."""

    def _make(step_id: str, *deps: str, **kwargs) -> StepDescriptor:
        kwargs.setdefault("command", ["do", step_id])
        return StepDescriptor(id=step_id, depends_on=deps, **kwargs)

    return _make


@pytest.fixture
def devcontainer_steps(make_step) -> list[StepDescriptor]:
    """The four-step devcontainer graph used throughout the engine tests."""
    return [
        make_step("install-packages"),
        make_step("create-user", "install-packages"),
        make_step("install-shell", "create-user"),
        make_step("install-toolchain", "create-user"),
    ]


@pytest.fixture
def no_wait_settings() -> EngineSettings:
    """Engine settings with zero retry backoff."""
    return EngineSettings(retry_base_delay=0, retry_max_delay=0)


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def profile_file(tmp_path: Path) -> Path:
    """A small profile file with no verification expectations."""
    content = textwrap.dedent("""\
        profile:
          name: tiny
          description: "A tiny test profile"
          user: dev

        settings:
          on_failure: abort

        steps:
          - id: first
            command: [echo, first]
          - id: second
            depends_on: [first]
            command: echo second
            check: test -f /nonexistent
    """)
    path = tmp_path / "tiny.yml"
    path.write_text(content)
    return path
