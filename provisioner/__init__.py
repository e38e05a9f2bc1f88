"""Devbox provisioner — declarative development-container provisioning."""

__version__ = "0.1.0"
