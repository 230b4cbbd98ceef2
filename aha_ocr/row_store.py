"""File-backed store for the project rows shown in the browser UI.

The whole collection lives in one JSON document under a single key and every
write replaces it, exactly like the ``localStorage`` blob the UI started out
with. Storage failures never reach the caller: reads fall back to the example
rows and writes are dropped, both with a warning in the log.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
import secrets
import string
import threading
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from aha_ocr.config import ROWS_STORAGE_KEY

LOGGER = logging.getLogger(__name__)

STATUS_READY = "ready"
STATUS_PROCESSING = "processing"
STATUS_FAILED = "failed"
ROW_STATUSES = {STATUS_READY, STATUS_PROCESSING, STATUS_FAILED}

UNTITLED_NAME = "Untitled Attachment"
_ID_ALPHABET = string.ascii_uppercase + string.digits

# camelCase wire name -> attribute name
_WIRE_FIELDS = {
    "id": "id",
    "name": "name",
    "date": "date",
    "attached": "attached",
    "ocrText": "ocr_text",
    "previewUrl": "preview_url",
    "status": "status",
    "error": "error",
}
_OPTIONAL_TEXT_FIELDS = {"ocr_text", "preview_url", "error"}


def format_display_date(value: date | datetime | str) -> str:
    """Format as ``Oct 14, 2025``."""

    if isinstance(value, str):
        value = date.fromisoformat(value)
    return f"{value:%b} {value.day:02d}, {value.year}"


def new_row_id() -> str:
    return "PX-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))


def display_name(filename: str) -> str:
    name = Path((filename or "").replace("\\", "/")).name
    return re.sub(r"\.[^.]+$", "", name) or UNTITLED_NAME


@dataclass
class ProjectRow:
    id: str
    name: str
    date: str
    attached: int = 0
    ocr_text: Optional[str] = None
    preview_url: Optional[str] = None
    status: str = STATUS_READY
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for wire_name, attr in _WIRE_FIELDS.items():
            value = getattr(self, attr)
            if value is None and attr in _OPTIONAL_TEXT_FIELDS:
                continue
            payload[wire_name] = value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ProjectRow":
        if not isinstance(payload, Mapping):
            raise ValueError("Row must be an object")
        fields = fields_from_payload(payload, allow_id=True)
        missing = [name for name in ("id", "name", "date") if name not in fields]
        if missing:
            raise ValueError(f"Row is missing {', '.join(missing)}")
        return cls(**fields)


def fields_from_payload(payload: Mapping[str, Any], *, allow_id: bool = False) -> Dict[str, Any]:
    """Translate camelCase wire fields into validated attribute values.

    Unknown keys are ignored. Raises ``ValueError`` on bad types or values.
    """

    fields: Dict[str, Any] = {}
    for wire_name, attr in _WIRE_FIELDS.items():
        if wire_name not in payload:
            continue
        if attr == "id" and not allow_id:
            continue
        value = payload[wire_name]
        if attr == "attached":
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError("attached must be a non-negative integer")
        elif attr in _OPTIONAL_TEXT_FIELDS:
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{wire_name} must be a string")
        elif not isinstance(value, str):
            raise ValueError(f"{wire_name} must be a string")
        if attr == "status" and value not in ROW_STATUSES:
            raise ValueError(f"status must be one of {sorted(ROW_STATUSES)}")
        fields[attr] = value
    return fields


def default_rows() -> List[ProjectRow]:
    return [
        ProjectRow(id="PX-1001", name="Oil Filter Audit", date=format_display_date("2025-10-14"), attached=2),
        ProjectRow(id="PX-1002", name="Breakfast Forecast", date=format_display_date("2025-10-18"), attached=0),
        ProjectRow(id="PX-1003", name="SAFE Prep Photos", date=format_display_date("2025-10-21"), attached=4),
    ]


class RowStore:
    def __init__(self, path: Path, key: str = ROWS_STORAGE_KEY) -> None:
        self.path = Path(path)
        self.key = key
        self._lock = threading.RLock()

    def load(self) -> List[ProjectRow]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return default_rows()
        except OSError as exc:
            LOGGER.warning("Could not read rows from %s: %s", self.path, exc)
            return default_rows()

        if not raw.strip():
            return default_rows()
        try:
            items = json.loads(raw)[self.key]
            if not isinstance(items, list):
                raise ValueError(f"'{self.key}' is not a list")
            return [ProjectRow.from_dict(item) for item in items]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Ignoring unreadable rows in %s: %s", self.path, exc)
            return default_rows()

    def persist(self, rows: Iterable[ProjectRow]) -> None:
        rows = list(rows)
        ids = [row.id for row in rows]
        if len(ids) != len(set(ids)):
            raise ValueError("Row identifiers must be unique")

        document = json.dumps({self.key: [row.to_dict() for row in rows]}, ensure_ascii=False, indent=2)
        with self._lock:
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(document, encoding="utf-8")
                os.replace(tmp_path, self.path)
            except OSError as exc:
                LOGGER.warning("Could not write rows to %s: %s", self.path, exc)

    def get(self, row_id: str) -> Optional[ProjectRow]:
        return next((row for row in self.load() if row.id == row_id), None)

    def insert(self, row: ProjectRow) -> ProjectRow:
        """Prepend ``row`` so the collection stays newest first."""

        with self._lock:
            rows = self.load()
            if any(existing.id == row.id for existing in rows):
                raise ValueError(f"Row {row.id} already exists")
            self.persist([row, *rows])
        return row

    def upsert(self, row_id: str, **fields: Any) -> Optional[ProjectRow]:
        """Merge ``fields`` into the row with ``row_id``; ``None`` if absent."""

        fields.pop("id", None)
        with self._lock:
            rows = self.load()
            for index, row in enumerate(rows):
                if row.id == row_id:
                    updated = dataclasses.replace(row, **fields)
                    rows[index] = updated
                    self.persist(rows)
                    return updated
        return None

    def remove(self, row_id: str) -> bool:
        with self._lock:
            rows = self.load()
            remaining = [row for row in rows if row.id != row_id]
            if len(remaining) == len(rows):
                return False
            self.persist(remaining)
        return True

    def existing_ids(self) -> set[str]:
        return {row.id for row in self.load()}
