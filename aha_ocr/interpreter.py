"""Locate a Python interpreter able to host the EasyOCR worker.

The worker runs out of process so the web server does not need torch and
the model weights in its own environment. ``PYTHON_PATH`` wins when it points
at an existing file; otherwise a short list of venv locations and bare
interpreter names is probed with ``--version``.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from aha_ocr.config import Settings

LOGGER = logging.getLogger(__name__)

VERSION_SNIPPET = "import sys;print(sys.version)"

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class VersionProbe:
    stdout: str
    stderr: str
    status: Optional[int]


def candidate_paths(base_dir: Path) -> List[str]:
    return [
        str(base_dir / "venv" / "Scripts" / "python.exe"),  # Windows venv
        str(base_dir / "venv" / "bin" / "python"),  # *nix venv
        "python",
        "python3",
    ]


def _answers_version(candidate: str, runner: Runner) -> bool:
    try:
        result = runner([candidate, "--version"], capture_output=True, text=True)
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


def resolve_python_path(settings: Settings, runner: Runner = subprocess.run) -> Optional[str]:
    """Return a usable interpreter path, or ``None`` when nothing answers."""

    override = settings.python_path
    if override and Path(override).exists():
        return override
    if override:
        LOGGER.warning("PYTHON_PATH=%s does not exist; probing fallbacks", override)

    for candidate in candidate_paths(settings.base_dir):
        if _answers_version(candidate, runner):
            return candidate
    return None


def probe_version(python_path: str, runner: Runner = subprocess.run) -> VersionProbe:
    """Run a trivial script under ``python_path`` and capture its output."""

    result = runner([python_path, "-c", VERSION_SNIPPET], capture_output=True, text=True)
    return VersionProbe(
        stdout=(result.stdout or "").strip(),
        stderr=(result.stderr or "").strip(),
        status=result.returncode,
    )
