from __future__ import annotations

import io
from pathlib import Path

import pytest
from openpyxl import Workbook, load_workbook

from xlsa_web.app_factory import create_app
from xlsa_web.config.ini_config import AppSettings
from xlsa_web.domain.models import AiReply
from xlsa_web.domain.outcome import ErrorKind, Ok
from xlsa_web.web.routes import status_for

OWNER = 7


# -----------------------------
# Test doubles
# -----------------------------
class FakeAiBackend:
    provider_name = "fake"

    def send(self, model_id, messages, options=None):
        return Ok(AiReply(content="Check the divisor in C2.", tokens_used=5, model_id=model_id))


# -----------------------------
# Helpers
# -----------------------------
@pytest.fixture
def app(tmp_path: Path):
    app = create_app(settings=AppSettings(storage_dir=tmp_path / "storage"), ai_backend=FakeAiBackend())
    app.config["TESTING"] = True
    app.extensions["xlsa"]["ledger"].open_account(OWNER, 1000)
    yield app
    app.extensions["xlsa"]["runner"].shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


def workbook_bytes() -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Data"
    ws.append(["Qty", "Price", "Total"])
    ws.append([2, 5, "=A2/0"])
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def upload(client, name: str = "book.xlsx", owner: int = OWNER):
    return client.post(
        "/api/files",
        data={"owner_id": str(owner), "file": (io.BytesIO(workbook_bytes()), name)},
        content_type="multipart/form-data",
    )


def uploaded_file_id(client) -> int:
    resp = upload(client)
    assert resp.status_code == 201
    return resp.get_json()["data"]["file_id"]


# -----------------------------
# Status mapping
# -----------------------------
@pytest.mark.parametrize(
    "kind,status",
    [
        (ErrorKind.INVALID_INPUT, 422),
        (ErrorKind.UNKNOWN_STRATEGY, 422),
        (ErrorKind.INVALID_STRATEGY, 422),
        (ErrorKind.INVALID_TIER, 422),
        (ErrorKind.INSUFFICIENT_CREDITS, 402),
        (ErrorKind.NOT_FOUND, 404),
        (ErrorKind.FILE_PROCESSING, 500),
        (ErrorKind.PROVIDER, 500),
        (ErrorKind.EXECUTION, 500),
    ],
)
def test_status_for(kind, status):
    assert status_for(kind) == status


# -----------------------------
# Uploads
# -----------------------------
def test_upload_returns_file_id(client):
    resp = upload(client)
    body = resp.get_json()
    assert resp.status_code == 201
    assert body["success"] is True
    assert body["data"]["filename"] == "book.xlsx"
    assert body["data"]["size_bytes"] > 0


@pytest.mark.parametrize("name", ["old.xls", "data.csv"])
def test_upload_rejects_unsupported_format(client, name):
    resp = upload(client, name=name)
    assert resp.status_code == 422
    assert resp.get_json()["error"]["error"] == "InvalidInput"


def test_upload_requires_owner(client):
    resp = client.post("/api/files", data={"file": (io.BytesIO(b"x"), "a.xlsx")}, content_type="multipart/form-data")
    assert resp.status_code == 422


# -----------------------------
# Analyses
# -----------------------------
def test_sync_analysis_and_latest(client, app):
    file_id = uploaded_file_id(client)

    resp = client.post("/api/analyses", json={"file_id": file_id, "owner_id": OWNER, "analysis_kind": "comprehensive"})
    body = resp.get_json()

    assert resp.status_code == 200
    assert body["success"] is True
    assert body["data"]["findings"]["summary"]["total_errors"] == 1
    assert app.extensions["xlsa"]["ledger"].get(OWNER).balance == 1000 - body["data"]["credits_used"]

    latest = client.get(f"/api/analyses/{file_id}/latest?owner_id={OWNER}")
    assert latest.status_code == 200
    assert latest.get_json()["data"]["analysis_id"] == body["data"]["analysis_id"]

    other = client.get(f"/api/analyses/{file_id}/latest?owner_id=99")
    assert other.status_code == 404


@pytest.mark.parametrize(
    "payload,status,kind",
    [
        ({"owner_id": OWNER}, 422, "InvalidInput"),
        ({"file_id": 12345, "owner_id": OWNER}, 404, "NotFound"),
        ({"file_id": "FILE", "owner_id": OWNER, "analysis_kind": "pivot"}, 422, "UnknownStrategy"),
        ({"file_id": "FILE", "owner_id": OWNER, "tier": "gold"}, 422, "InvalidTier"),
        ({"file_id": "FILE", "owner_id": OWNER, "options": ["bad"]}, 422, "InvalidInput"),
    ],
)
def test_analysis_errors_map_to_status(client, payload, status, kind):
    file_id = uploaded_file_id(client)
    payload = {k: (file_id if v == "FILE" else v) for k, v in payload.items()}

    resp = client.post("/api/analyses", json=payload)

    assert resp.status_code == status
    body = resp.get_json()
    assert body["success"] is False
    assert body["error"]["error"] == kind


def test_insufficient_credits_is_402(client, app):
    app.extensions["xlsa"]["ledger"].open_account(8, 10)
    resp = upload(client, owner=8)
    file_id = resp.get_json()["data"]["file_id"]

    resp = client.post("/api/analyses", json={"file_id": file_id, "owner_id": 8})

    assert resp.status_code == 402
    details = resp.get_json()["error"]["details"]
    assert details["available"] == 10
    assert app.extensions["xlsa"]["ledger"].get(8).balance == 10


def test_async_analysis_reports_through_task_and_events(client, app):
    file_id = uploaded_file_id(client)

    resp = client.post("/api/analyses", json={"file_id": file_id, "owner_id": OWNER, "async": True})
    assert resp.status_code == 202
    data = resp.get_json()["data"]
    assert data["topic"] == f"owner-{OWNER}"

    app.extensions["xlsa"]["runner"].get(data["task_id"]).future.result(timeout=10)

    task = client.get(f"/api/tasks/{data['task_id']}").get_json()["data"]
    assert task["state"] == "completed"
    assert task["result"]["file_id"] == file_id

    events = client.get(f"/api/events/{data['topic']}").get_json()["data"]
    assert [e["type"] for e in events] == ["queued", "progress", "completed"]


def test_unknown_task_is_404(client):
    resp = client.get("/api/tasks/does-not-exist")
    assert resp.status_code == 404
    assert resp.get_json()["error"]["error"] == "NotFound"


# -----------------------------
# Generations + download
# -----------------------------
def test_generation_then_download(client):
    resp = client.post("/api/generations", json={
        "owner_id": OWNER,
        "source_kind": "template",
        "filename": "sales.xlsx",
        "payload": {"template_name": "sales_report", "data": {"Sales": [["2024-01-01", "EU", "Tea", 3, 9.5]]}},
    })
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["strategy_used"] == "fast"

    download = client.get(data["download_url"])
    assert download.status_code == 200
    assert download.mimetype == "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    ws = load_workbook(io.BytesIO(download.data))["Sales"]
    assert ws["C2"].value == "Tea"

    other = client.get(f"/download/{data['file_id']}?owner_id=99")
    assert other.status_code == 404


def test_generation_unknown_template_is_422(client):
    resp = client.post("/api/generations", json={
        "owner_id": OWNER,
        "source_kind": "template",
        "payload": {"template_name": "horoscope"},
    })
    assert resp.status_code == 422


def test_generation_requires_payload_object(client):
    resp = client.post("/api/generations", json={"owner_id": OWNER, "payload": "budget"})
    assert resp.status_code == 422
