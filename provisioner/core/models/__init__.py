"""
Domain models — Pydantic types for the provisioner.

All models are re-exported here for convenient access:

    from provisioner.core.models import StepDescriptor, ExecutionResult, ProvisioningReport
"""

from provisioner.core.models.manifest import (
    QuerySpec,
    VerificationManifest,
    VerificationQueries,
    VerificationSpec,
)
from provisioner.core.models.profile import ProvisioningProfile
from provisioner.core.models.report import (
    OverallStatus,
    ProvisioningReport,
    RunState,
    VerificationGap,
    VerificationResult,
    VerificationStatus,
    compute_overall_status,
)
from provisioner.core.models.result import ExecutionResult, StepOutcome
from provisioner.core.models.step import ROOT_USER, StepDescriptor

__all__ = [
    # result.py
    "ExecutionResult",
    # report.py
    "OverallStatus",
    "ProvisioningProfile",
    "ProvisioningReport",
    # manifest.py
    "QuerySpec",
    # step.py
    "ROOT_USER",
    "RunState",
    "StepDescriptor",
    "StepOutcome",
    "VerificationGap",
    "VerificationManifest",
    "VerificationQueries",
    "VerificationResult",
    "VerificationSpec",
    "VerificationStatus",
    "compute_overall_status",
]
