from __future__ import annotations

import enum
import json
import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from aha_ocr.config import Settings
from aha_ocr.interpreter import resolve_python_path

LOGGER = logging.getLogger(__name__)

WORKER_SCRIPT = Path(__file__).with_name("ocr_worker.py")


# ---------------------------------------------------------------------------
# Errors and data structures
# ---------------------------------------------------------------------------


class OCRError(RuntimeError):
    """Recognition failed or the engine could not be used."""


class InterpreterNotFoundError(OCRError):
    """No interpreter able to host the OCR worker was found."""


class EngineInitError(OCRError):
    """The OCR worker started but EasyOCR failed to initialise."""


class EngineState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class TextFragment:
    """One recognised region as reported by EasyOCR."""

    text: str
    confidence: float = 0.0
    region: Tuple[Tuple[float, float], ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TextFragment":
        region = tuple((float(x), float(y)) for x, y in payload.get("region") or ())
        return cls(
            text=str(payload.get("text", "")),
            confidence=float(payload.get("confidence") or 0.0),
            region=region,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "region": [list(point) for point in self.region],
        }


# ---------------------------------------------------------------------------
# Worker process
# ---------------------------------------------------------------------------


class WorkerProcess:
    """JSON-lines channel to a single ``ocr_worker.py`` process."""

    def __init__(
        self,
        python_path: str,
        env: Optional[Mapping[str, str]] = None,
        script: Path = WORKER_SCRIPT,
    ) -> None:
        self.python_path = python_path
        self._process = subprocess.Popen(
            [python_path, str(script)],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            bufsize=1,
            env=dict(env) if env is not None else None,
        )
        self._stderr_thread = threading.Thread(target=self._drain_stderr, name="ocr-worker-stderr", daemon=True)
        self._stderr_thread.start()

    @property
    def alive(self) -> bool:
        return self._process.poll() is None

    def _drain_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        for line in stream:
            line = line.rstrip()
            if line:
                LOGGER.info("[ocr-worker] %s", line)

    def request(self, payload: Mapping[str, Any]) -> Any:
        stdin, stdout = self._process.stdin, self._process.stdout
        if stdin is None or stdout is None:
            raise OCRError("OCR worker pipes are closed")
        try:
            stdin.write(json.dumps(payload) + "\n")
            stdin.flush()
        except OSError as exc:
            raise OCRError(f"OCR worker is not running (exit code {self._process.poll()})") from exc

        line = stdout.readline()
        if not line:
            raise OCRError(f"OCR worker exited unexpectedly (exit code {self._process.wait()})")
        try:
            reply = json.loads(line)
        except json.JSONDecodeError as exc:
            raise OCRError(f"Malformed reply from OCR worker: {line[:200]!r}") from exc

        if reply.get("status") != "success":
            raise OCRError(str(reply.get("message") or "OCR worker reported an error"))
        return reply.get("data")

    def close(self, timeout: float = 5.0) -> None:
        if self.alive:
            try:
                self.request({"command": "close"})
            except OCRError:
                pass
        try:
            self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            LOGGER.warning("OCR worker did not exit in %.1fs; killing it", timeout)
            self._process.kill()
            self._process.wait()


WorkerFactory = Callable[[str, Mapping[str, str]], WorkerProcess]
Locator = Callable[[Settings], Optional[str]]


# ---------------------------------------------------------------------------
# Engine handle
# ---------------------------------------------------------------------------


class OCREngine:
    """Shared EasyOCR handle, initialised at most once per instance.

    Build one per application and hand it to request handlers. The first
    caller of :meth:`initialize` (directly or via :meth:`recognize`) starts
    the worker and loads the models; concurrent callers wait for that single
    attempt instead of starting their own. A failed attempt leaves the engine
    in ``FAILED`` and every later call re-raises the same error until
    :meth:`reset` is called.
    """

    def __init__(
        self,
        settings: Settings,
        locator: Locator = resolve_python_path,
        worker_factory: WorkerFactory = WorkerProcess,
    ) -> None:
        self.settings = settings
        self.python_path: Optional[str] = None
        self.state = EngineState.UNINITIALIZED
        self._locator = locator
        self._worker_factory = worker_factory
        self._worker: Optional[WorkerProcess] = None
        self._error: Optional[OCRError] = None
        self._init_lock = threading.Lock()
        self._io_lock = threading.Lock()

    @property
    def languages(self) -> Sequence[str]:
        return self.settings.languages

    def initialize(self) -> "OCREngine":
        if self.state is EngineState.READY:
            return self
        with self._init_lock:
            if self.state is EngineState.READY:
                return self
            if self.state is EngineState.FAILED and self._error is not None:
                raise self._error

            self.state = EngineState.INITIALIZING
            try:
                self._start()
            except OCRError as exc:
                self._mark_failed(exc)
                raise
            except Exception as exc:  # noqa: BLE001 - wrapped for the caller
                error = EngineInitError(f"OCR engine failed to initialise: {exc}")
                self._mark_failed(error)
                raise error from exc

            self.state = EngineState.READY
            LOGGER.info("OCR engine ready (python=%s, languages=%s)", self.python_path, list(self.languages))
            return self

    def _start(self) -> None:
        self.settings.models_dir.mkdir(parents=True, exist_ok=True)
        self.python_path = self._locator(self.settings)
        if not self.python_path:
            raise InterpreterNotFoundError(
                "No Python interpreter found for EasyOCR. Set PYTHON_PATH to your venv python "
                "(e.g. ./venv/bin/python)."
            )

        env = dict(os.environ)
        env.update(self.settings.worker_env)
        LOGGER.info("Starting OCR worker with %s", self.python_path)
        self._worker = self._worker_factory(self.python_path, env)
        try:
            self._worker.request(
                {
                    "command": "init",
                    "languages": list(self.languages),
                    "gpu": self.settings.gpu,
                    "model_storage_directory": str(self.settings.models_dir),
                }
            )
        except OCRError as exc:
            raise EngineInitError(str(exc)) from exc

    def _mark_failed(self, error: OCRError) -> None:
        self.state = EngineState.FAILED
        self._error = error
        LOGGER.error("OCR engine unavailable: %s (python=%s)", error, self.python_path)
        self._shutdown_worker()

    def _shutdown_worker(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.close()

    def recognize(self, image_path: Path | str) -> List[TextFragment]:
        """Run OCR on ``image_path`` and return fragments in engine order."""

        self.initialize()
        with self._io_lock:
            worker = self._worker
            if worker is None:
                raise OCRError("OCR engine is not running")
            try:
                data = worker.request({"command": "read_text", "path": str(image_path)})
            except OCRError as exc:
                if not worker.alive:
                    with self._init_lock:
                        self._mark_failed(exc)
                raise
        return [TextFragment.from_payload(item) for item in data or []]

    def reset(self) -> None:
        """Stop the worker and forget any failure so the next call starts over."""

        with self._io_lock, self._init_lock:
            self._shutdown_worker()
            self.state = EngineState.UNINITIALIZED
            self._error = None
            self.python_path = None

    def close(self) -> None:
        # Waits for an in-flight recognize so the pipe is never shared
        with self._io_lock, self._init_lock:
            self._shutdown_worker()
            if self.state is EngineState.READY:
                self.state = EngineState.UNINITIALIZED
