"""
Error taxonomy shared across the provisioner.

Planning and configuration errors abort a run before any side effect.
Step-level failures are never raised: they are recorded in the report.
"""

from __future__ import annotations


class ProvisionError(Exception):
    """Base class for every error the provisioner raises."""
