from __future__ import annotations

import time
from typing import Callable, Optional

from aha_ocr.row_store import ProjectRow, RowStore

SAVED_INDICATOR_SECONDS = 1.2


class RowNotFoundError(KeyError):
    pass


def find_replace(text: str, find: str, replacement: str) -> str:
    """Replace every literal occurrence of ``find``; ``replacement`` is inserted verbatim."""

    if not find:
        return text
    return text.replace(find, replacement)


class TextEditor:
    """Edit buffer for the OCR text of one stored row."""

    def __init__(self, store: RowStore, row_id: str, clock: Callable[[], float] = time.monotonic) -> None:
        row = store.get(row_id)
        if row is None:
            raise RowNotFoundError(row_id)
        self.store = store
        self.row: ProjectRow = row
        self.text = row.ocr_text or ""
        self._clock = clock
        self._saved_at: Optional[float] = None

    def apply_find_replace(self, find: str, replacement: str) -> str:
        self.text = find_replace(self.text, find, replacement)
        return self.text

    def reset(self) -> str:
        self.text = self.row.ocr_text or ""
        self._saved_at = None
        return self.text

    def save(self) -> ProjectRow:
        updated = self.store.upsert(self.row.id, ocr_text=self.text)
        if updated is None:
            raise RowNotFoundError(self.row.id)
        self.row = updated
        self._saved_at = self._clock()
        return updated

    @property
    def saved(self) -> bool:
        if self._saved_at is None:
            return False
        return self._clock() - self._saved_at < SAVED_INDICATOR_SECONDS

    def export_text(self) -> str:
        return self.text or self.row.ocr_text or ""

    @property
    def download_name(self) -> str:
        return f"{self.row.name or self.row.id or 'ocr'}.txt"
