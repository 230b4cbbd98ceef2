#!/usr/bin/env python3
"""EasyOCR worker process.

Started by :class:`aha_ocr.ocr_engine.OCREngine` under whichever interpreter
the locator picked, so it must not import anything from ``aha_ocr``. It reads
one JSON command per line on stdin and answers with one JSON line on stdout:

    {"command": "init", "languages": ["en", "es"], "gpu": false, "model_storage_directory": "..."}
    {"command": "read_text", "path": "/app/tmp/<uuid>-photo.png"}
    {"command": "close"}

Replies are ``{"status": "success", "data": ...}`` or
``{"status": "error", "message": "..."}``. Anything EasyOCR prints goes to
stderr so stdout carries protocol lines only.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

import fitz  # type: ignore
import numpy as np
import torch
from PIL import Image, UnidentifiedImageError

LOGGER = logging.getLogger("aha_ocr.worker")

PDF_ZOOM = 2  # render at 144 DPI for clarity

_READER = None


# ---------------------------------------------------------------------------
# Image loading
# ---------------------------------------------------------------------------


def _pil_image_to_bgr_array(image: Image.Image) -> np.ndarray:
    if image.mode != "RGB":
        image = image.convert("RGB")
    return np.array(image)[:, :, ::-1].copy()


def _render_pdf_pages(pdf_path: Path) -> List[np.ndarray]:
    doc = fitz.open(pdf_path)
    pages: List[np.ndarray] = []
    try:
        zoom_matrix = fitz.Matrix(PDF_ZOOM, PDF_ZOOM)
        for page in doc:
            pix = page.get_pixmap(matrix=zoom_matrix, alpha=False)
            image = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
            pages.append(_pil_image_to_bgr_array(image))
    finally:
        doc.close()
    if not pages:
        raise RuntimeError(f"PDF '{pdf_path.name}' contains no pages")
    return pages


def load_pages(input_path: Path) -> List[np.ndarray]:
    if not input_path.exists():
        raise FileNotFoundError(f"Input not found: {input_path}")
    if input_path.suffix.lower() == ".pdf":
        return _render_pdf_pages(input_path)
    try:
        with Image.open(input_path) as image:
            return [_pil_image_to_bgr_array(image)]
    except UnidentifiedImageError as exc:
        raise RuntimeError(f"Unsupported image format: {input_path.name}") from exc


# ---------------------------------------------------------------------------
# EasyOCR
# ---------------------------------------------------------------------------


def _resolve_gpu(requested: bool) -> bool:
    if not requested:
        return False
    if torch.cuda.is_available():
        return True
    LOGGER.warning("GPU requested but CUDA is unavailable; running EasyOCR on CPU")
    return False


def init_reader(languages: List[str], gpu: bool, model_storage_directory: str) -> Dict[str, Any]:
    global _READER
    import easyocr

    Path(model_storage_directory).mkdir(parents=True, exist_ok=True)
    use_gpu = _resolve_gpu(gpu)
    LOGGER.info("Loading EasyOCR %s (gpu=%s) from %s", languages, use_gpu, model_storage_directory)
    _READER = easyocr.Reader(
        languages,
        gpu=use_gpu,
        model_storage_directory=model_storage_directory,
        verbose=False,
    )
    return {"languages": languages, "gpu": use_gpu}


def _fragment(entry) -> Dict[str, Any]:
    region, text, confidence = entry
    return {
        "text": str(text),
        "confidence": float(confidence),
        "region": [[float(x), float(y)] for x, y in region],
    }


def read_text(path: str) -> List[Dict[str, Any]]:
    if _READER is None:
        raise RuntimeError("Reader is not initialised; send 'init' first")
    fragments: List[Dict[str, Any]] = []
    for page in load_pages(Path(path)):
        fragments.extend(_fragment(entry) for entry in _READER.readtext(page))
    return fragments


def handle(request: Dict[str, Any]) -> Any:
    command = request.get("command")
    if command == "init":
        return init_reader(
            list(request.get("languages") or ["en"]),
            bool(request.get("gpu", False)),
            str(request["model_storage_directory"]),
        )
    if command == "read_text":
        return read_text(str(request["path"]))
    raise ValueError(f"Unknown command: {command!r}")


def main() -> int:
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    protocol_out = sys.stdout
    sys.stdout = sys.stderr

    def reply(payload: Dict[str, Any]) -> None:
        protocol_out.write(json.dumps(payload) + "\n")
        protocol_out.flush()

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
            if request.get("command") == "close":
                reply({"status": "success", "data": None})
                break
            reply({"status": "success", "data": handle(request)})
        except Exception as exc:  # noqa: BLE001 - reported to the parent process
            LOGGER.exception("OCR worker command failed")
            reply({"status": "error", "message": str(exc) or exc.__class__.__name__})
    return 0


if __name__ == "__main__":
    sys.exit(main())
