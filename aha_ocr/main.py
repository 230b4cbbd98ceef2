from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Body,
    Depends,
    FastAPI,
    File,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from aha_ocr.config import Settings
from aha_ocr.editor import RowNotFoundError, TextEditor, find_replace
from aha_ocr.interpreter import probe_version, resolve_python_path
from aha_ocr.ocr_engine import OCREngine
from aha_ocr.ocr_service import discard_upload, join_fragments, save_upload
from aha_ocr.row_store import ProjectRow, RowStore, fields_from_payload, format_display_date, new_row_id
from aha_ocr.upload_flow import UploadFlow

LOGGER = logging.getLogger(__name__)

static_dir = Path(__file__).parent / "static"

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_engine(request: Request) -> OCREngine:
    return request.app.state.engine


def get_store(request: Request) -> RowStore:
    return request.app.state.store


def get_upload_flow(request: Request) -> UploadFlow:
    return request.app.state.upload_flow


def _require_row(store: RowStore, row_id: str) -> ProjectRow:
    row = store.get(row_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Row not found")
    return row


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
async def root() -> str:
    return (static_dir / "index.html").read_text(encoding="utf-8")


@router.get("/views/view", response_class=HTMLResponse)
async def view_page() -> str:
    return (static_dir / "view.html").read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# OCR
# ---------------------------------------------------------------------------


@router.post("/api/ocr")
async def ocr_endpoint(
    file: UploadFile | None = File(default=None),
    fragments: bool = Query(default=False),
    settings: Settings = Depends(get_settings),
    engine: OCREngine = Depends(get_engine),
):
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    try:
        content = await file.read()
        upload_path = save_upload(settings.tmp_dir, file.filename, content)
    except Exception:  # noqa: BLE001 - client only sees a generic message
        LOGGER.exception("[API-ERROR] could not read upload %r", file.filename)
        return _error(500, "Invalid request")

    try:
        results = await run_in_threadpool(engine.recognize, upload_path)
    except Exception as exc:  # noqa: BLE001 - surface to client
        LOGGER.error("[OCR-ERROR] %s", exc)
        LOGGER.error("Using python at: %s", engine.python_path)
        return _error(500, str(exc) or "OCR failed (Python crashed)")
    finally:
        discard_upload(upload_path)

    body: Dict[str, object] = {"text": join_fragments(results)}
    if fragments:
        body["fragments"] = [fragment.to_dict() for fragment in results]
    return body


@router.get("/api/ocr")
async def ocr_diagnostics(settings: Settings = Depends(get_settings)):
    try:
        python_path = await run_in_threadpool(resolve_python_path, settings)
        if not python_path:
            raise RuntimeError("No python found")
        probe = await run_in_threadpool(probe_version, python_path)
    except Exception as exc:  # noqa: BLE001 - diagnostics report any failure
        LOGGER.exception("Interpreter diagnostics failed")
        return _error(500, str(exc) or repr(exc))

    return {
        "pythonPath": python_path,
        "pythonStdout": probe.stdout,
        "pythonStderr": probe.stderr,
        "status": probe.status,
    }


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


@router.get("/api/rows")
async def rows_list(store: RowStore = Depends(get_store)) -> List[dict[str, Any]]:
    return [row.to_dict() for row in store.load()]


@router.post("/api/rows", status_code=201)
async def rows_create(
    payload: Dict[str, Any] = Body(...),
    store: RowStore = Depends(get_store),
) -> dict[str, Any]:
    try:
        fields = fields_from_payload(payload, allow_id=True)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    fields.setdefault("id", new_row_id())
    fields.setdefault("name", "")
    fields.setdefault("date", format_display_date(date.today()))
    if not fields["name"].strip():
        raise HTTPException(status_code=400, detail="name is required")
    try:
        row = store.insert(ProjectRow(**fields))
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return row.to_dict()


@router.post("/api/rows/upload", status_code=202)
async def rows_upload(
    background_tasks: BackgroundTasks,
    file: UploadFile | None = File(default=None),
    flow: UploadFlow = Depends(get_upload_flow),
) -> dict[str, Any]:
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    content = await file.read()
    row = await run_in_threadpool(flow.begin, file.filename, content)
    background_tasks.add_task(flow.run, row.id, file.filename, content)
    return row.to_dict()


@router.get("/api/rows/{row_id}")
async def rows_detail(row_id: str, store: RowStore = Depends(get_store)) -> dict[str, Any]:
    return _require_row(store, row_id).to_dict()


@router.get("/api/rows/{row_id}/preview")
async def rows_preview(row_id: str, flow: UploadFlow = Depends(get_upload_flow)) -> FileResponse:
    path = flow.preview_path(row_id)
    if path is None:
        raise HTTPException(status_code=404, detail="Preview not found")
    return FileResponse(path, media_type="image/png")


@router.patch("/api/rows/{row_id}")
async def rows_update(
    row_id: str,
    payload: Dict[str, Any] = Body(...),
    store: RowStore = Depends(get_store),
) -> dict[str, Any]:
    try:
        fields = fields_from_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    updated = store.upsert(row_id, **fields)
    if updated is None:
        raise HTTPException(status_code=404, detail="Row not found")
    return updated.to_dict()


@router.delete("/api/rows/{row_id}")
async def rows_delete(
    row_id: str,
    store: RowStore = Depends(get_store),
    flow: UploadFlow = Depends(get_upload_flow),
) -> dict[str, str]:
    if not store.remove(row_id):
        raise HTTPException(status_code=404, detail="Row not found")
    flow.discard_preview(row_id)
    return {"status": "deleted"}


# ---------------------------------------------------------------------------
# Viewer / editor
# ---------------------------------------------------------------------------


@router.put("/api/rows/{row_id}/text")
async def rows_save_text(
    row_id: str,
    payload: Dict[str, Any] = Body(...),
    store: RowStore = Depends(get_store),
) -> dict[str, Any]:
    text = payload.get("text")
    if not isinstance(text, str):
        raise HTTPException(status_code=400, detail="text must be a string")
    try:
        editor = TextEditor(store, row_id)
        editor.text = text
        row = editor.save()
    except RowNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Row not found") from exc
    return row.to_dict()


@router.get("/api/rows/{row_id}/download")
async def rows_download(row_id: str, store: RowStore = Depends(get_store)) -> Response:
    try:
        editor = TextEditor(store, row_id)
    except RowNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Row not found") from exc

    text = editor.export_text()
    if not text:
        raise HTTPException(status_code=404, detail="No OCR text to download")
    disposition = f"attachment; filename*=UTF-8''{quote(editor.download_name)}"
    return Response(
        content=text,
        media_type="text/plain; charset=utf-8",
        headers={"Content-Disposition": disposition},
    )


@router.post("/api/text/replace")
async def text_replace(payload: Dict[str, Any] = Body(...)) -> dict[str, str]:
    text, find, replacement = payload.get("text", ""), payload.get("find", ""), payload.get("replace", "")
    if not all(isinstance(value, str) for value in (text, find, replacement)):
        raise HTTPException(status_code=400, detail="text, find and replace must be strings")
    return {"text": find_replace(text, find, replacement)}


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


async def _http_error_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid request: {location}: {first.get('msg', 'invalid value')}" if location else "Invalid request"
    else:
        message = "Invalid request"
    return _error(400, message)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    app.state.engine.close()


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[OCREngine] = None,
    store: Optional[RowStore] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    engine = engine or OCREngine(settings)
    store = store or RowStore(settings.rows_file)

    app = FastAPI(title="AHA OCR Web", lifespan=_lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.upload_flow = UploadFlow(store, engine, settings.tmp_dir)

    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.mount("/static", StaticFiles(directory=static_dir), name="static")
    app.include_router(router)
    return app


app = create_app()
