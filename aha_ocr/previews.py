from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Optional

import fitz  # type: ignore
from PIL import Image

LOGGER = logging.getLogger(__name__)

PREVIEW_MAX_SIZE = (1600, 1600)
PREVIEW_ZOOM = 2


def _first_pdf_page(content: bytes) -> Image.Image:
    doc = fitz.open(stream=content, filetype="pdf")
    try:
        if doc.page_count == 0:
            raise ValueError("PDF contains no pages")
        pix = doc[0].get_pixmap(matrix=fitz.Matrix(PREVIEW_ZOOM, PREVIEW_ZOOM), alpha=False)
        return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
    finally:
        doc.close()


def make_preview(filename: str, content: bytes) -> Optional[bytes]:
    """Return a PNG thumbnail of an upload, or ``None`` when it cannot be rendered.

    PDFs are previewed by their first page. The thumbnail keeps the aspect
    ratio and fits in :data:`PREVIEW_MAX_SIZE`.
    """

    try:
        if Path(filename).suffix.lower() == ".pdf":
            image = _first_pdf_page(content)
        else:
            with Image.open(io.BytesIO(content)) as source:
                image = source.convert("RGB")
        image.thumbnail(PREVIEW_MAX_SIZE)
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
    except Exception:  # noqa: BLE001 - a missing preview never blocks OCR
        LOGGER.exception("Could not build a preview for %r", filename)
        return None
    return buffer.getvalue()
