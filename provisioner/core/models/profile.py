"""
Profile model — everything needed to provision one machine.

Loaded from a profile YAML file: the ordered step set, the engine
settings block and the verification manifest with its queries.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from provisioner.core.models.manifest import VerificationSpec
from provisioner.core.models.step import StepDescriptor


class ProvisioningProfile(BaseModel):
    """Root profile identity — loaded from a profile file.

    If a step isn't declared here, it doesn't exist to the engine.
    """

    version: int = 1

    name: str
    description: str = ""
    user: str = ""                          # the provisioned unprivileged user

    settings: dict[str, Any] = Field(default_factory=dict)
    steps: list[StepDescriptor] = Field(default_factory=list)
    verification: VerificationSpec = Field(default_factory=VerificationSpec)

    def get_step(self, step_id: str) -> StepDescriptor | None:
        """Look up a step by id."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def steps_for_user(self, user: str) -> list[StepDescriptor]:
        """All steps that run as ``user``."""
        return [s for s in self.steps if s.run_as == user]
