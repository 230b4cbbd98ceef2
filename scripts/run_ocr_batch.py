#!/usr/bin/env python3
"""Batch OCR utility for the AHA OCR web app.

Starts the same EasyOCR worker the web server uses, so running it once at
deploy time downloads the model weights into ``OCR_MODELS_DIR`` and the first
upload does not pay for it. With ``--inputs`` it also OCRs each image or PDF
and writes the joined text next to a ``summary.json`` report."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import List

from aha_ocr.config import Settings
from aha_ocr.ocr_engine import OCREngine, OCRError
from aha_ocr.ocr_service import join_fragments


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm the EasyOCR model cache and OCR sample inputs")
    parser.add_argument("--inputs", nargs="*", default=[], help="Paths to images or PDFs")
    parser.add_argument("--output-dir", default="outputs", help="Directory for OCR text outputs")
    parser.add_argument("--save-json", action="store_true", help="Persist per-input fragment JSON")
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()
    engine = OCREngine(settings)

    input_paths = [Path(p).expanduser().resolve() for p in args.inputs]
    for path in input_paths:
        if not path.exists():
            raise FileNotFoundError(f"Input path not found: {path}")

    print(f"Loading EasyOCR {list(settings.languages)} into {settings.models_dir}…", flush=True)
    try:
        engine.initialize()
    except OCRError as exc:
        print(f"OCR engine unavailable: {exc}", flush=True)
        return 1
    print(f"Model warm-up complete (python={engine.python_path})", flush=True)

    if not input_paths:
        engine.close()
        return 0

    output_dir = Path(args.output_dir)
    text_dir = output_dir / "texts"
    text_dir.mkdir(parents=True, exist_ok=True)

    summary = []
    failures = 0
    try:
        for path in input_paths:
            print(f"\n>>> OCR: {path}", flush=True)
            try:
                fragments = engine.recognize(path)
            except OCRError as exc:
                failures += 1
                print(f"failed: {exc}", flush=True)
                summary.append({"input": str(path), "error": str(exc)})
                continue

            text = join_fragments(fragments)
            text_file = text_dir / f"{path.stem}.txt"
            text_file.write_text(text, encoding="utf-8")
            summary.append({"input": str(path), "text_file": str(text_file), "preview": text[:200]})
            print(text[:500] + ("…" if len(text) > 500 else ""), flush=True)

            if args.save_json:
                json_path = text_dir / f"{path.stem}.json"
                json_path.write_text(
                    json.dumps([fragment.to_dict() for fragment in fragments], ensure_ascii=False, indent=2),
                    encoding="utf-8",
                )
    finally:
        engine.close()

    report_path = output_dir / "summary.json"
    report_path.write_text(json.dumps(summary, ensure_ascii=False, indent=2), encoding="utf-8")
    print(f"\nWrote summary to {report_path}")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
