"""
Logging setup for the ``provision`` CLI.

main.py calls ``setup_logging`` once; every module logs through
``logging.getLogger(__name__)``. Console verbosity comes from the CLI
flags, falling back to PROVISION_LOG_LEVEL, then WARNING. A run can
also be logged in full to PROVISION_LOG_FILE at its own level
(PROVISION_LOG_FILE_LEVEL), which is how unattended container builds
keep a transcript.

Console logs go to stderr: stdout is reserved for reports and
``--json`` output.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# (max level, format, datefmt): the first row covering the console level wins
_CONSOLE_FORMATS: tuple[tuple[int, str, str | None], ...] = (
    (logging.DEBUG, "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d  %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s %(message)s", "%H:%M:%S"),
    (logging.CRITICAL, "%(message)s", None),
)

_TRANSCRIPT_FORMAT = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d  %(message)s"
_TRANSCRIPT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _console_formatter(level: int) -> logging.Formatter:
    for ceiling, fmt, datefmt in _CONSOLE_FORMATS:
        if level <= ceiling:
            return logging.Formatter(fmt, datefmt=datefmt)
    return logging.Formatter("%(message)s")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Install the console handler and, optionally, a transcript file.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Transcript path; parent directories are created.
        log_file_level: Transcript level, ``level`` when not given.
    """
    console_level = _parse_level(level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(_console_formatter(console_level))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root_level = console_level

    if log_file:
        transcript_level = _parse_level(log_file_level) if log_file_level else console_level
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)

        transcript = logging.FileHandler(path, encoding="utf-8")
        transcript.setLevel(transcript_level)
        transcript.setFormatter(logging.Formatter(_TRANSCRIPT_FORMAT, datefmt=_TRANSCRIPT_DATEFMT))
        root.addHandler(transcript)
        root_level = min(root_level, transcript_level)

    root.setLevel(root_level)

    # A broken log stream must never take a provisioning run down
    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    """Level name → numeric level; unknown names mean WARNING."""
    if not level:
        return logging.WARNING
    numeric = logging.getLevelName(level.upper())
    return numeric if isinstance(numeric, int) else logging.WARNING
