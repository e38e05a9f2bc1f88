"""
Profile loader — reads a provisioning profile into domain models.

This is the primary entry point for loading configuration. It reads
YAML, validates against Pydantic schemas, and returns a typed
ProvisioningProfile. A profile is either a file path or the name of a
profile bundled with the package (``devcontainer``).
"""

from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path

import yaml

from provisioner.core.errors import ProvisionError
from provisioner.core.models.profile import ProvisioningProfile

logger = logging.getLogger(__name__)

# Profile used when none is given on the command line
DEFAULT_PROFILE = "devcontainer"

_PROFILE_SUFFIXES = (".yml", ".yaml")


class ConfigError(ProvisionError):
    """Raised when a profile is invalid or missing."""


def bundled_profiles() -> list[str]:
    """Names of the profiles shipped inside the package."""
    root = resources.files("provisioner") / "profiles"
    names = [
        entry.name.rsplit(".", 1)[0]
        for entry in root.iterdir()
        if entry.name.endswith(_PROFILE_SUFFIXES)
    ]
    return sorted(names)


def resolve_profile(name_or_path: str | Path | None = None) -> Path:
    """Turn a CLI argument into a profile file path.

    An existing file wins; otherwise the value is looked up among the
    bundled profiles.

    Raises:
        ConfigError: nothing matches.
    """
    target = str(name_or_path) if name_or_path else DEFAULT_PROFILE

    candidate = Path(target)
    if candidate.is_file():
        return candidate

    root = resources.files("provisioner") / "profiles"
    for suffix in _PROFILE_SUFFIXES:
        bundled = root / f"{target}{suffix}"
        if bundled.is_file():
            return Path(str(bundled))

    raise ConfigError(
        f"Profile not found: {target}. "
        f"Give a file path or one of: {', '.join(bundled_profiles()) or '(none)'}"
    )


def load_profile(path: Path | str | None = None) -> ProvisioningProfile:
    """Load and validate a provisioning profile.

    Args:
        path: Profile file or bundled profile name (default: devcontainer).

    Returns:
        Validated ProvisioningProfile.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    path = resolve_profile(path)
    logger.debug("Loading profile from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # The YAML may wrap everything under a "profile" key or be flat
    profile_data = dict(data["profile"]) if isinstance(data.get("profile"), dict) else data

    # Merge top-level keys that sit alongside "profile"
    for key in ("settings", "steps", "verification"):
        if key in data and key not in profile_data:
            profile_data[key] = data[key]

    profile_data.setdefault("name", path.stem)

    try:
        profile = ProvisioningProfile.model_validate(profile_data)
    except Exception as e:
        raise ConfigError(f"Invalid profile {path}: {e}") from e

    logger.info("Loaded profile '%s' with %d steps", profile.name, len(profile.steps))
    return profile
