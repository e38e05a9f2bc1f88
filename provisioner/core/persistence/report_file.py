"""
Report file persistence — atomic write of the last provisioning report.

Reports are stored as JSON (default ``.state/last-report.json``).
Writes are atomic (write to temp file, then rename) so a crash never
leaves a half-written report for the next reader.
"""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path

from provisioner.core.models.report import ProvisioningReport

logger = logging.getLogger(__name__)

# Default locations (relative to the state directory's parent)
DEFAULT_STATE_DIR = ".state"
DEFAULT_REPORT_FILE = "last-report.json"


def default_report_path(state_dir: Path) -> Path:
    """Get the default report path inside a state directory."""
    return state_dir / DEFAULT_REPORT_FILE


def save_report(report: ProvisioningReport, path: Path) -> Path:
    """Write a report as human-readable JSON (atomic).

    Args:
        report: The report to save.
        path: Target file; parent directories are created.

    Returns:
        The path written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "report": report.to_dict(),
        "detail": report.model_dump(mode="json"),
    }
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    _fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".report_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with open(_fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp.replace(path)
        logger.debug("Report saved to %s", path)
    except Exception:
        tmp.unlink(missing_ok=True)
        logger.error("Failed to save report to %s", path)
        raise
    return path


def load_report(path: Path) -> ProvisioningReport | None:
    """Load a report written by ``save_report``.

    Returns:
        The report, or None if the file is missing or corrupt.
    """
    if not path.is_file():
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return ProvisioningReport.model_validate(data["detail"])
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        logger.warning("Corrupt report file %s: %s", path, e)
        return None
    except Exception as e:
        logger.warning("Cannot load report from %s: %s", path, e)
        return None
