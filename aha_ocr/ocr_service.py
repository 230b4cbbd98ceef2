from __future__ import annotations

import logging
import re
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from aha_ocr.ocr_engine import TextFragment

LOGGER = logging.getLogger(__name__)

FALLBACK_UPLOAD_NAME = "upload.png"


def safe_upload_name(name: str | None) -> str:
    """Strip directories and whitespace runs from a client-supplied filename."""

    candidate = (name or "").replace("\\", "/")
    candidate = Path(candidate).name or FALLBACK_UPLOAD_NAME
    candidate = re.sub(r"[\s]+", "_", candidate)
    if candidate in {".", ".."}:
        return FALLBACK_UPLOAD_NAME
    return candidate


def save_upload(scratch_dir: Path, filename: str | None, content: bytes) -> Path:
    """Write ``content`` to ``<scratch_dir>/<uuid>-<filename>`` and return the path."""

    scratch_dir.mkdir(parents=True, exist_ok=True)
    target = scratch_dir / f"{uuid.uuid4()}-{safe_upload_name(filename)}"
    target.write_bytes(content)
    return target


def discard_upload(path: Path) -> None:
    try:
        path.unlink()
    except OSError as exc:
        LOGGER.debug("Could not remove temporary upload %s: %s", path, exc)


@contextmanager
def scratch_upload(scratch_dir: Path, filename: str | None, content: bytes) -> Iterator[Path]:
    path = save_upload(scratch_dir, filename, content)
    try:
        yield path
    finally:
        discard_upload(path)


def join_fragments(fragments: Iterable[TextFragment]) -> str:
    # Engine order is kept as-is; region layout is not reconstructed.
    return " ".join(fragment.text for fragment in fragments)
