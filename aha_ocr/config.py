from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

ROWS_STORAGE_KEY = "AHA_ROWS"
DEFAULT_LANGUAGES: Tuple[str, ...] = ("en", "es")

# Forced on the OCR worker: EasyOCR stays quiet and the pipe is UTF-8 whatever the host locale
WORKER_ENV_OVERRIDES = {
    "TQDM_DISABLE": "1",
    "PYTHONWARNINGS": "ignore",
    "PYTHONIOENCODING": "utf-8",
}


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_languages(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return DEFAULT_LANGUAGES
    languages = tuple(item.strip() for item in value.split(",") if item.strip())
    return languages or DEFAULT_LANGUAGES


@dataclass(frozen=True)
class Settings:
    """Runtime configuration resolved from environment variables."""

    base_dir: Path
    tmp_dir: Path
    models_dir: Path
    rows_file: Path
    python_path: Optional[str] = None
    languages: Tuple[str, ...] = DEFAULT_LANGUAGES
    gpu: bool = False
    worker_env: Mapping[str, str] = field(default_factory=lambda: dict(WORKER_ENV_OVERRIDES))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        base_dir = Path(env.get("AHA_BASE_DIR") or os.getcwd())
        tmp_dir = Path(env.get("OCR_TMP_DIR") or base_dir / "tmp")
        models_dir = Path(env.get("OCR_MODELS_DIR") or tmp_dir / "easyocr-models")
        rows_file = Path(env.get("AHA_ROWS_FILE") or tmp_dir / "aha_rows.json")
        return cls(
            base_dir=base_dir,
            tmp_dir=tmp_dir,
            models_dir=models_dir,
            rows_file=rows_file,
            python_path=env.get("PYTHON_PATH") or None,
            languages=_env_languages(env.get("OCR_LANGUAGES")),
            gpu=_env_flag(env.get("OCR_GPU")),
        )

    def ensure_dirs(self) -> None:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        self.models_dir.mkdir(parents=True, exist_ok=True)
