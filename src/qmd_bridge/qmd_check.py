"""Probe for the qmd executable."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import subprocess

from .constants import QMD_VERSION_TIMEOUT_S


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QmdCheck:
    installed: bool
    version: str | None = None


def check_qmd_installed(qmd_path: str) -> QmdCheck:
    """Run ``qmd --version`` and report whether it answered."""
    try:
        completed = subprocess.run(
            [qmd_path, "--version"],
            capture_output=True,
            text=True,
            timeout=QMD_VERSION_TIMEOUT_S,
            check=True,
            stdin=subprocess.DEVNULL,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("qmd version check failed for %s: %s", qmd_path, exc)
        return QmdCheck(installed=False)
    return QmdCheck(installed=True, version=completed.stdout.strip() or None)
