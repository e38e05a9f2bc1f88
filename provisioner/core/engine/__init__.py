"""Engine — planning, execution and verification of provisioning runs."""

from provisioner.core.engine.executor import (
    EngineRun,
    ProvisioningEngine,
    build_report,
    generate_run_id,
    provision,
)
from provisioner.core.engine.planner import (
    CyclicDependencyError,
    DuplicateStepError,
    PlanningError,
    ProvisioningPlan,
    UnknownDependencyError,
    plan_steps,
)
from provisioner.core.engine.verifier import ToolchainVerifier

__all__ = [
    "CyclicDependencyError",
    "DuplicateStepError",
    "EngineRun",
    "PlanningError",
    "ProvisioningEngine",
    "ProvisioningPlan",
    "ToolchainVerifier",
    "UnknownDependencyError",
    "build_report",
    "generate_run_id",
    "plan_steps",
    "provision",
]
