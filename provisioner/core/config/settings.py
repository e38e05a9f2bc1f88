"""
Engine settings — run-wide knobs for the provisioning engine.

Values are resolved in precedence order:
    CLI flag  >  PROVISION_* env var  >  profile ``settings:`` block  >  default
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from provisioner.core.errors import ProvisionError
from provisioner.core.reliability.retry import RetryPolicy

logger = logging.getLogger(__name__)

ENV_ON_FAILURE = "PROVISION_ON_FAILURE"
ENV_VERIFY_ON_ABORT = "PROVISION_VERIFY_ON_ABORT"
ENV_STEP_TIMEOUT = "PROVISION_STEP_TIMEOUT"
ENV_RETRIES = "PROVISION_RETRIES"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


class SettingsError(ProvisionError):
    """Raised when a setting value cannot be parsed."""


class FailurePolicy(str, Enum):
    ABORT = "abort"
    CONTINUE = "continue"


class EngineSettings(BaseModel):
    """Configuration inputs of one provisioning run."""

    model_config = ConfigDict(frozen=True)

    on_failure: FailurePolicy = FailurePolicy.ABORT
    verify_on_abort: bool = False
    step_timeout: float | None = None       # seconds; None = unbounded
    retries: int = Field(default=0, ge=0)   # for steps that don't declare their own
    retry_base_delay: float = Field(default=2.0, ge=0)
    retry_max_delay: float = Field(default=60.0, ge=0)
    retry_jitter: float = Field(default=0.3, ge=0)   # fraction of the delay added at random

    @field_validator("on_failure", mode="before")
    @classmethod
    def _policy(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("step_timeout", mode="before")
    @classmethod
    def _timeout(cls, value: Any) -> Any:
        # 0 / "none" mean "no timeout", mirroring unattended provisioning
        if value in (None, 0, "0", "", "none", "None"):
            return None
        return value

    @field_validator("step_timeout")
    @classmethod
    def _positive(cls, value: float | None) -> float | None:
        if value is not None and value < 0:
            raise ValueError("step_timeout must not be negative")
        return value

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )

    def merged(self, **overrides: Any) -> EngineSettings:
        """Copy with every non-None override applied and re-validated."""
        updates = {k: v for k, v in overrides.items() if v is not None}
        if not updates:
            return self
        try:
            return EngineSettings.model_validate({**self.model_dump(), **updates})
        except ValidationError as e:
            raise SettingsError(f"Invalid settings: {e}") from e


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise SettingsError(f"{name} must be a boolean, got {raw!r}")


def settings_from_env(env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect the PROVISION_* overrides present in ``env``."""
    env = os.environ if env is None else env
    found: dict[str, Any] = {}

    if ENV_ON_FAILURE in env:
        found["on_failure"] = env[ENV_ON_FAILURE].strip()
    if ENV_VERIFY_ON_ABORT in env:
        found["verify_on_abort"] = _parse_bool(ENV_VERIFY_ON_ABORT, env[ENV_VERIFY_ON_ABORT])
    if ENV_STEP_TIMEOUT in env:
        raw = env[ENV_STEP_TIMEOUT].strip()
        try:
            # 0 (not None) so that "unbounded" still overrides the profile
            found["step_timeout"] = 0 if raw.lower() in ("", "none") else float(raw)
        except ValueError as e:
            raise SettingsError(f"{ENV_STEP_TIMEOUT} must be a number, got {raw!r}") from e
    if ENV_RETRIES in env:
        raw = env[ENV_RETRIES].strip()
        try:
            found["retries"] = int(raw)
        except ValueError as e:
            raise SettingsError(f"{ENV_RETRIES} must be an integer, got {raw!r}") from e

    if found:
        logger.debug("Settings from environment: %s", found)
    return found


def resolve_settings(
    profile_settings: EngineSettings | Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
    **cli_overrides: Any,
) -> EngineSettings:
    """Build the effective settings for a run.

    Args:
        profile_settings: The profile's ``settings:`` block (or defaults).
        env: Environment mapping (default: ``os.environ``).
        **cli_overrides: Values from command-line flags; ``None`` = unset.

    Raises:
        SettingsError: a value is malformed.
    """
    if isinstance(profile_settings, EngineSettings):
        base = profile_settings
    else:
        try:
            base = EngineSettings.model_validate(dict(profile_settings or {}))
        except ValidationError as e:
            raise SettingsError(f"Invalid settings block: {e}") from e

    return base.merged(**settings_from_env(env)).merged(**cli_overrides)
