import io
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from aha_ocr import main
from aha_ocr.config import Settings
from aha_ocr.interpreter import VersionProbe
from aha_ocr.ocr_engine import EngineInitError, OCRError, TextFragment
from aha_ocr.row_store import ProjectRow, RowStore


class FakeEngine:
    python_path = "/venv/bin/python"

    def __init__(self, texts=("Hello", "World"), error=None):
        self.texts = texts
        self.error = error
        self.paths = []
        self.closed = False

    def recognize(self, path):
        assert Path(path).exists()
        self.paths.append(Path(path))
        if self.error:
            raise self.error
        return [TextFragment(text, 0.9, ((0.0, 0.0), (1.0, 1.0))) for text in self.texts]

    def close(self):
        self.closed = True


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        base_dir=tmp_path,
        tmp_dir=tmp_path / "tmp",
        models_dir=tmp_path / "tmp" / "easyocr-models",
        rows_file=tmp_path / "rows.json",
    )


def _client(tmp_path, engine=None, rows=None):
    store = RowStore(tmp_path / "rows.json")
    if rows is not None:
        store.persist(rows)
    engine = engine or FakeEngine()
    app = main.create_app(_settings(tmp_path), engine=engine, store=store)
    return TestClient(app), engine, store


def _scratch_files(tmp_path):
    scratch = tmp_path / "tmp"
    return [path for path in scratch.iterdir() if path.is_file()] if scratch.exists() else []


def _png_bytes(size=(40, 20)):
    buffer = io.BytesIO()
    Image.new("RGB", size, (0, 128, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_upload_scenario_joins_text_and_removes_temp_file(tmp_path):
    client, engine, _ = _client(tmp_path)

    response = client.post("/api/ocr", files={"file": ("photo.png", b"\x89PNG", "image/png")})

    assert response.status_code == 200
    assert response.json() == {"text": "Hello World"}
    written = engine.paths[0]
    assert written.parent == tmp_path / "tmp"
    assert written.name.endswith("-photo.png")
    assert not written.exists()
    assert _scratch_files(tmp_path) == []


def test_upload_can_include_fragments(tmp_path):
    client, _, _ = _client(tmp_path)

    response = client.post("/api/ocr?fragments=true", files={"file": ("photo.png", b"x", "image/png")})

    body = response.json()
    assert body["text"] == "Hello World"
    assert body["fragments"][0] == {"text": "Hello", "confidence": 0.9, "region": [[0.0, 0.0], [1.0, 1.0]]}


def test_missing_file_is_a_client_error(tmp_path):
    client, engine, _ = _client(tmp_path)

    response = client.post("/api/ocr", data={"other": "value"})

    assert response.status_code == 400
    assert response.json() == {"error": "No file uploaded"}
    assert engine.paths == []


def test_non_file_value_is_a_client_error(tmp_path):
    client, _, _ = _client(tmp_path)

    response = client.post("/api/ocr", data={"file": "not-a-file"})

    assert response.status_code == 400
    assert "error" in response.json()


@pytest.mark.parametrize("error", [OCRError("EasyOCR crashed"), EngineInitError("No module named 'easyocr'")])
def test_engine_failure_is_server_error_and_temp_file_removed(tmp_path, error):
    client, engine, _ = _client(tmp_path, engine=FakeEngine(error=error))

    response = client.post("/api/ocr", files={"file": ("scan.pdf", b"%PDF-1.4", "application/pdf")})

    assert response.status_code == 500
    assert response.json() == {"error": str(error)}
    assert not engine.paths[0].exists()


def test_diagnostics_report_interpreter(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "resolve_python_path", lambda _settings: "/venv/bin/python")
    monkeypatch.setattr(main, "probe_version", lambda _path: VersionProbe("3.12.1 (main)", "", 0))
    client, _, _ = _client(tmp_path)

    response = client.get("/api/ocr")

    assert response.status_code == 200
    assert response.json() == {
        "pythonPath": "/venv/bin/python",
        "pythonStdout": "3.12.1 (main)",
        "pythonStderr": "",
        "status": 0,
    }


def test_diagnostics_without_interpreter(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "resolve_python_path", lambda _settings: None)
    client, _, _ = _client(tmp_path)

    response = client.get("/api/ocr")

    assert response.status_code == 500
    assert response.json() == {"error": "No python found"}


def test_rows_default_to_examples(tmp_path):
    client, _, _ = _client(tmp_path)

    rows = client.get("/api/rows").json()

    assert [row["id"] for row in rows] == ["PX-1001", "PX-1002", "PX-1003"]


def test_rows_crud(tmp_path):
    client, _, store = _client(tmp_path, rows=[])

    created = client.post("/api/rows", json={"name": "Invoice", "attached": 2})
    assert created.status_code == 201
    row_id = created.json()["id"]

    patched = client.patch(f"/api/rows/{row_id}", json={"ocrText": "Total 42"})
    assert patched.json()["ocrText"] == "Total 42"
    assert client.get(f"/api/rows/{row_id}").json()["attached"] == 2

    assert client.delete(f"/api/rows/{row_id}").json() == {"status": "deleted"}
    assert store.load() == []


def test_unknown_row_is_404_with_error_body(tmp_path):
    client, _, _ = _client(tmp_path, rows=[])

    for response in (
        client.get("/api/rows/PX-404"),
        client.patch("/api/rows/PX-404", json={"ocrText": "x"}),
        client.delete("/api/rows/PX-404"),
        client.get("/api/rows/PX-404/download"),
    ):
        assert response.status_code == 404
        assert response.json() == {"error": "Row not found"}


def test_invalid_row_fields_are_rejected(tmp_path):
    client, _, _ = _client(tmp_path, rows=[])

    assert client.post("/api/rows", json={"name": "x", "attached": -1}).status_code == 400
    assert client.post("/api/rows", json={"attached": 1}).status_code == 400
    assert client.post("/api/rows", json=["not", "an", "object"]).status_code == 400


def test_upload_flow_endpoint_creates_row_then_fills_text(tmp_path):
    client, _, store = _client(tmp_path, rows=[])

    response = client.post("/api/rows/upload", files={"file": ("photo.png", _png_bytes(), "image/png")})

    assert response.status_code == 202
    assert response.json()["status"] == "processing"
    stored = store.get(response.json()["id"])
    assert stored.ocr_text == "Hello World"
    assert stored.status == "ready"
    assert stored.preview_url == f"/api/rows/{stored.id}/preview"
    assert _scratch_files(tmp_path) == []


def test_uploaded_preview_is_served_until_row_is_deleted(tmp_path):
    client, _, store = _client(tmp_path, rows=[])
    row_id = client.post("/api/rows/upload", files={"file": ("photo.png", _png_bytes(), "image/png")}).json()["id"]

    preview = client.get(store.get(row_id).preview_url)
    assert preview.status_code == 200
    assert preview.headers["content-type"] == "image/png"
    with Image.open(io.BytesIO(preview.content)) as image:
        assert image.size == (40, 20)

    assert client.delete(f"/api/rows/{row_id}").status_code == 200
    assert not (tmp_path / "tmp" / "previews" / f"{row_id}.png").exists()
    assert client.get(f"/api/rows/{row_id}/preview").status_code == 404


def test_unknown_or_unrenderable_preview_is_not_found(tmp_path):
    client, _, store = _client(tmp_path, rows=[])
    row_id = client.post("/api/rows/upload", files={"file": ("notes.png", b"not a png", "image/png")}).json()["id"]

    assert store.get(row_id).preview_url is None
    assert store.get(row_id).status == "ready"
    response = client.get(f"/api/rows/{row_id}/preview")
    assert response.status_code == 404
    assert response.json() == {"error": "Preview not found"}
    assert client.get("/api/rows/PX-404/preview").status_code == 404


def test_upload_flow_endpoint_records_failure(tmp_path):
    client, _, store = _client(tmp_path, engine=FakeEngine(error=OCRError("boom")), rows=[])

    response = client.post("/api/rows/upload", files={"file": ("photo.png", b"png", "image/png")})

    stored = store.get(response.json()["id"])
    assert stored.status == "failed"
    assert stored.error == "boom"
    assert stored.ocr_text is None


def test_save_text_and_download(tmp_path):
    row = ProjectRow(id="PX-1", name="Receipt", date="Oct 20, 2025", attached=1, ocr_text="old")
    client, _, store = _client(tmp_path, rows=[row])

    saved = client.put("/api/rows/PX-1/text", json={"text": "Total: 12 €"})
    assert saved.status_code == 200
    assert store.get("PX-1").ocr_text == "Total: 12 €"

    download = client.get("/api/rows/PX-1/download")
    assert download.status_code == 200
    assert download.text == "Total: 12 €"
    assert download.headers["content-type"].startswith("text/plain")
    assert "Receipt.txt" in download.headers["content-disposition"]


def test_download_without_text_is_404(tmp_path):
    row = ProjectRow(id="PX-1", name="Receipt", date="Oct 20, 2025", attached=1)
    client, _, _ = _client(tmp_path, rows=[row])

    response = client.get("/api/rows/PX-1/download")

    assert response.status_code == 404
    assert response.json() == {"error": "No OCR text to download"}


def test_replace_endpoint_is_literal(tmp_path):
    client, _, _ = _client(tmp_path)

    response = client.post("/api/text/replace", json={"text": "a.b a.b axb", "find": "a.b", "replace": "X"})

    assert response.json() == {"text": "X X axb"}


def test_pages_are_served(tmp_path):
    client, _, _ = _client(tmp_path)

    assert "Add Attachment" in client.get("/").text
    assert "Save corrections" in client.get("/views/view?id=PX-1001").text
    assert client.get("/static/style.css").status_code == 200


def test_project_list_keeps_polling_after_a_failed_refresh(tmp_path):
    client, _, _ = _client(tmp_path)

    page = client.get("/").text
    refresh = page[page.index("async function refresh()"):page.index("button.addEventListener")]

    assert 'id="load-error"' in page
    assert "catch (err)" in refresh
    assert "pollTimer = setTimeout(refresh" in refresh
    assert "createObjectURL" not in page
