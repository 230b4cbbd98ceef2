from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import Optional

from aha_ocr.ocr_engine import OCREngine
from aha_ocr.ocr_service import join_fragments, scratch_upload
from aha_ocr.previews import make_preview
from aha_ocr.row_store import (
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_READY,
    ProjectRow,
    RowStore,
    display_name,
    format_display_date,
    new_row_id,
)

LOGGER = logging.getLogger(__name__)


class UploadFlow:
    """Create a row as soon as a file arrives, then fill it in once OCR finishes.

    The row is visible immediately with ``status="processing"``. A successful
    run stores the joined text; a failed run marks the row ``failed`` with the
    error message and leaves ``ocrText`` unset. Nothing is retried.

    A PNG thumbnail of the upload is kept under ``<scratch>/previews`` and the
    row points at it through ``/api/rows/<id>/preview``, so the viewer can show
    it after a page reload.
    """

    def __init__(self, store: RowStore, engine: OCREngine, scratch_dir: Path) -> None:
        self.store = store
        self.engine = engine
        self.scratch_dir = scratch_dir
        self.preview_dir = scratch_dir / "previews"

    def preview_path(self, row_id: str) -> Optional[Path]:
        path = self.preview_dir / f"{row_id}.png"
        if path.parent != self.preview_dir or not path.is_file():
            return None
        return path

    def discard_preview(self, row_id: str) -> None:
        path = self.preview_path(row_id)
        if path is None:
            return
        try:
            path.unlink()
        except OSError as exc:
            LOGGER.warning("Could not remove preview %s: %s", path, exc)

    def _save_preview(self, row_id: str, filename: str, content: bytes) -> Optional[str]:
        image = make_preview(filename, content)
        if image is None:
            return None
        try:
            self.preview_dir.mkdir(parents=True, exist_ok=True)
            (self.preview_dir / f"{row_id}.png").write_bytes(image)
        except OSError as exc:
            LOGGER.warning("Could not store preview for %s: %s", row_id, exc)
            return None
        return f"/api/rows/{row_id}/preview"

    def begin(self, filename: str, content: Optional[bytes] = None, today: Optional[date] = None) -> ProjectRow:
        taken = self.store.existing_ids()
        row_id = new_row_id()
        while row_id in taken:
            row_id = new_row_id()

        row = ProjectRow(
            id=row_id,
            name=display_name(filename),
            date=format_display_date(today or date.today()),
            attached=1,
            preview_url=self._save_preview(row_id, filename, content) if content else None,
            status=STATUS_PROCESSING,
        )
        return self.store.insert(row)

    def complete(self, row_id: str, text: str) -> Optional[ProjectRow]:
        return self.store.upsert(row_id, ocr_text=text, status=STATUS_READY, error=None)

    def fail(self, row_id: str, message: str) -> Optional[ProjectRow]:
        return self.store.upsert(row_id, status=STATUS_FAILED, error=message)

    def run(self, row_id: str, filename: str, content: bytes) -> Optional[ProjectRow]:
        try:
            with scratch_upload(self.scratch_dir, filename, content) as path:
                fragments = self.engine.recognize(path)
        except Exception as exc:  # noqa: BLE001 - recorded on the row
            LOGGER.error("OCR failed for %s (%s): %s", row_id, filename, exc)
            LOGGER.error("Using python at: %s", self.engine.python_path)
            return self.fail(row_id, str(exc) or "OCR failed")

        updated = self.complete(row_id, join_fragments(fragments))
        if updated is None:
            LOGGER.info("Row %s was removed before OCR finished; result dropped", row_id)
        return updated
