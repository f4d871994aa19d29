import time
import uuid

import pytest
from fastapi import Header
from fastapi.testclient import TestClient

from healthtimeline.blobstore import get_blob_store
from healthtimeline.database import get_db, get_session_maker
from healthtimeline.main import app
from healthtimeline.users import require_user_id


@pytest.fixture
def as_user(session_maker, blobs):
    """Factory for clients acting as a given user (picked per request from a header)."""
    async def _get_db():
        async with session_maker() as session:
            yield session

    def _user_from_header(x_test_user: str = Header(...)) -> uuid.UUID:
        return uuid.UUID(x_test_user)

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_blob_store] = lambda: blobs
    app.dependency_overrides[require_user_id] = _user_from_header

    clients = []

    def _client(user_id):
        client = TestClient(app, headers={"x-test-user": str(user_id)})
        client.__enter__()
        clients.append(client)
        return client

    yield _client
    for client in clients:
        client.__exit__(None, None, None)
    app.dependency_overrides.clear()


def _post_journal(client, text="Knee pain after run", **extra):
    payload = {"text": text, "event_time": "2025-05-01T07:00:00Z", **extra}
    return client.post("/api/journal", json=payload)


def test_health_check(as_user, alice):
    client = as_user(alice)
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_timeline_requires_login(session_maker):
    async def _get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    try:
        with TestClient(app) as client:
            assert client.get("/api/timeline").status_code == 401
    finally:
        app.dependency_overrides.clear()


def test_journal_then_timeline(as_user, alice):
    client = as_user(alice)
    response = _post_journal(client, category="exercise")
    assert response.status_code == 201
    event_id = response.json()["id"]

    page = client.get("/api/timeline").json()
    assert [e["id"] for e in page["events"]] == [event_id]
    assert page["next_cursor"] is None
    assert page["events"][0]["details"] == {"text": "Knee pain after run", "category": "exercise"}

    filtered = client.get("/api/timeline", params={"filter": "documents"}).json()
    assert filtered["events"] == []

    audit_rows = client.get("/api/audit").json()
    assert audit_rows[0]["action"] == "journal_created"

    snapshots = client.get("/api/consent").json()
    assert len(snapshots) == 1
    assert snapshots[0]["permissions"]["store_health_data"] is True


def test_journal_validation_errors(as_user, alice):
    client = as_user(alice)
    assert _post_journal(client, text="").status_code == 422
    assert client.post("/api/journal", json={"text": "no time"}).status_code == 422


def test_other_users_cannot_see_events(as_user, alice, bob):
    event_id = _post_journal(as_user(alice)).json()["id"]
    intruder = as_user(bob)
    assert intruder.get(f"/api/timeline/{event_id}").status_code == 404
    assert intruder.get(f"/api/timeline/{event_id}/current").status_code == 404
    assert intruder.post(f"/api/timeline/{event_id}/amendments", json={"text": "x"}).status_code == 404
    assert intruder.get("/api/timeline").json()["events"] == []


def test_amendment_round_trip(as_user, alice):
    client = as_user(alice)
    event_id = _post_journal(client, title="Run").json()["id"]

    response = client.post(f"/api/timeline/{event_id}/amendments", json={"text": "Knee pain, left side", "note": "side"})
    assert response.status_code == 201

    current = client.get(f"/api/timeline/{event_id}/current").json()
    assert current["details"]["text"] == "Knee pain, left side"
    assert current["title"] == "Run"
    assert current["amendment_count"] == 1
    assert current["event"]["details"]["text"] == "Knee pain after run"

    listed = client.get(f"/api/timeline/{event_id}/amendments").json()
    assert [a["id"] for a in listed] == [response.json()["id"]]


def test_amending_an_amendment_is_rejected(as_user, alice):
    client = as_user(alice)
    event_id = _post_journal(client).json()["id"]
    amendment_id = client.post(f"/api/timeline/{event_id}/amendments", json={"text": "fixed"}).json()["id"]

    response = client.post(f"/api/timeline/{amendment_id}/amendments", json={"text": "again"})
    assert response.status_code == 422
    assert response.json()["code"] == "invalid_amendment_target"


def test_visit_summary_endpoint(as_user, alice):
    client = as_user(alice)
    event_id = _post_journal(client).json()["id"]
    response = client.post("/api/visit-summaries", json={
        "title": "Physio",
        "summary": "Knee pain episodes",
        "referenced_event_ids": [event_id],
    })
    assert response.status_code == 201

    bad = client.post("/api/visit-summaries", json={
        "title": "Physio",
        "summary": "Nothing",
        "referenced_event_ids": [str(uuid.uuid4())],
    })
    assert bad.status_code == 422


def test_document_upload_and_download(as_user, alice, bob):
    client = as_user(alice)
    response = client.post(
        "/api/documents",
        data={"title": "X-ray report", "doc_type": "imaging", "occurred_at": "2025-04-02"},
        files={"file": ("xray report.pdf", b"%PDF-1.7 x-ray", "application/pdf")},
    )
    assert response.status_code == 201
    artifact_id = response.json()["artifact_id"]

    download = client.get(f"/api/documents/{artifact_id}/download")
    assert download.status_code == 200
    assert download.content == b"%PDF-1.7 x-ray"
    assert download.headers["content-type"].startswith("application/pdf")
    assert download.headers["content-disposition"] == 'attachment; filename="xray report.pdf"'

    assert as_user(bob).get(f"/api/documents/{artifact_id}/download").status_code == 404


def test_document_upload_rejects_unsupported_type(as_user, alice):
    client = as_user(alice)
    response = client.post(
        "/api/documents",
        data={"title": "Notes", "doc_type": "other", "occurred_at": "2025-04-02"},
        files={"file": ("notes.txt", b"plain text", "text/plain")},
    )
    assert response.status_code == 422
    assert response.json()["code"] == "unsupported_content_type"


def _wait_for_job(client, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        job = client.get(f"/api/jobs/{job_id}").json()
        if job["status"] in ("complete", "failed") or time.monotonic() > deadline:
            return job
        time.sleep(0.05)


def test_source_lifecycle_through_jobs(as_user, alice):
    client = as_user(alice)
    created = client.post("/api/sources", json={"kind": "portal", "display_name": "Demo Portal", "provider": "fasten"})
    assert created.status_code == 201
    source = created.json()
    assert source["connection_state"] == "disconnected"

    # sync before connect is illegal and never queues a job
    assert client.post(f"/api/sources/{source['id']}/sync").status_code == 409

    queued = client.post(f"/api/sources/{source['id']}/connect")
    assert queued.status_code == 202
    assert queued.json()["status"] == "pending"
    assert _wait_for_job(client, queued.json()["id"])["status"] == "complete"

    queued = client.post(f"/api/sources/{source['id']}/sync")
    assert queued.status_code == 202
    assert _wait_for_job(client, queued.json()["id"])["status"] == "complete"

    refreshed = client.get(f"/api/sources/{source['id']}").json()
    assert refreshed["connection_state"] == "connected"
    assert refreshed["last_sync_status"] == "ok"

    external = client.get("/api/timeline", params={"filter": "external"}).json()
    assert len(external["events"]) == 6


def test_internal_source_actions_conflict(as_user, alice):
    client = as_user(alice)
    _post_journal(client)
    [journal_source] = client.get("/api/sources").json()
    assert journal_source["kind"] == "manual"
    assert client.post(f"/api/sources/{journal_source['id']}/connect").status_code == 409
    assert client.post(f"/api/sources/{journal_source['id']}/teleport").status_code == 409


def test_unknown_job_is_not_found(as_user, alice):
    client = as_user(alice)
    assert client.get(f"/api/jobs/{uuid.uuid4()}").status_code == 404
