import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from api.dependencies import reset_caches

PAGE_TEXT = "Buy milk\n--kw TODO: call dentist\n--kw CAL: dentist appt friday 3pm\n--kw WA: keys"
OWNER = {"X-User-Id": "user-1"}
STRANGER = {"X-User-Id": "user-2"}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setenv("IMAGE_STORAGE_ROOT", str(tmp_path / "images"))
    monkeypatch.setenv("PUBLIC_IMAGE_BASE_URL", "http://testserver/images")
    monkeypatch.delenv("REDIS_URL", raising=False)
    reset_caches()
    with TestClient(create_app()) as test_client:
        yield test_client
    reset_caches()


def _notebook(client):
    resp = client.post("/notebooks", json={"title": "Field notes"}, headers=OWNER)
    assert resp.status_code == 200
    return resp.json()["id"]


def _page(client, notebook_id, page_index=0):
    resp = client.post(f"/notebooks/{notebook_id}/pages", json={"page_index": page_index}, headers=OWNER)
    assert resp.status_code == 200
    return resp.json()


def _upload(client, page_id):
    files = [("files", ("page.jpg", b"\xff\xd8\xff fake jpeg", "image/jpeg"))]
    return client.post(f"/pages/{page_id}/images", files=files)


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_full_scan_flow(client, tmp_path):
    notebook_id = _notebook(client)
    page = _page(client, notebook_id)

    resolved = client.get(f"/pages/resolve/{page['token']}").json()
    assert resolved == {"page_id": page["id"], "notebook_id": notebook_id, "page_index": 0}

    upload = _upload(client, page["id"])
    assert upload.status_code == 200
    job = upload.json()["job"]
    assert job["state"] == "pending"
    (image_url,) = upload.json()["images"]
    assert image_url.startswith(f"http://testserver/images/pages/{page['id']}/")
    assert list((tmp_path / "images" / "pages" / page["id"]).iterdir())

    ack = client.post(f"/page-scans/jobs/{job['id']}/processing")
    assert ack.json()["job"]["state"] == "processing"

    done = client.post(f"/page-scans/jobs/{job['id']}/callback", json={"text": PAGE_TEXT}).json()["job"]
    assert done["state"] == "done"
    assert done["routing_state"] == "routed"
    assert done["structured"]["tasks"] == ["call dentist"]
    assert done["structured"]["calendar"] == ["dentist appt friday 3pm"]
    assert done["structured"]["notes"] == ["keys"]

    status = client.get(f"/page-scans/{page['id']}").json()["job"]
    assert status["id"] == job["id"]
    assert status["state"] == "done"

    tasks = client.get("/tasks", headers=OWNER).json()["tasks"]
    assert [t["title"] for t in tasks] == ["call dentist"]
    events = client.get("/events", headers=OWNER).json()["events"]
    assert [e["title"] for e in events] == ["dentist appt friday 3pm"]
    assert events[0]["is_draft"] is True
    assert client.get("/tasks", headers=STRANGER).json()["tasks"] == []

    transcript = client.get(f"/pages/{page['id']}/transcript", headers=OWNER).json()
    assert transcript["text"] == "Buy milk\ncall dentist\ndentist appt friday 3pm\nkeys"
    assert transcript["notes"] == ["keys"]

    pages = client.get(f"/notebooks/{notebook_id}/pages", headers=OWNER).json()["pages"]
    assert [i["url"] for i in pages[0]["images"]] == [image_url]


def test_worker_callbacks_are_idempotent(client):
    page = _page(client, _notebook(client))
    job = _upload(client, page["id"]).json()["job"]
    callback = f"/page-scans/jobs/{job['id']}/callback"

    first = client.post(callback, json={"text": PAGE_TEXT})
    again = client.post(callback, json={"text": PAGE_TEXT})
    assert first.status_code == again.status_code == 200
    assert again.json()["job"] == first.json()["job"]
    assert len(client.get("/tasks", headers=OWNER).json()["tasks"]) == 1

    conflicting = client.post(callback, json={"text": "other"})
    assert conflicting.status_code == 409
    assert conflicting.json()["error"] == "InvalidTransition"

    late_failure = client.post(callback, json={"error": "worker crashed"})
    assert late_failure.status_code == 409


def test_callback_body_must_carry_text_or_error(client):
    page = _page(client, _notebook(client))
    job = _upload(client, page["id"]).json()["job"]
    callback = f"/page-scans/jobs/{job['id']}/callback"

    neither = client.post(callback, json={})
    assert neither.status_code == 400
    assert neither.json() == {"error": "InvalidRequest", "detail": "Provide exactly one of 'text' or 'error'"}
    assert client.post(callback, json={"text": "a", "error": "b"}).status_code == 400
    assert client.post(callback, json={"text": "a", "extra": 1}).status_code == 422

    failed = client.post(callback, json={"error": "model refused"}).json()["job"]
    assert failed["state"] == "failed"
    assert failed["error"] == "model refused"


def test_unknown_job_and_page(client):
    missing = client.post("/page-scans/jobs/nope/callback", json={"text": "x"})
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFound"

    unknown_job = client.get("/page-scans/jobs/nope")
    assert unknown_job.status_code == 404
    assert unknown_job.json() == {"error": "NotFound", "detail": "Scan job not found: nope"}
    assert client.get("/page-scans/nope").status_code == 404
    assert client.post("/page-scans", json={"page_id": "nope", "image_urls": ["http://img/1.jpg"]}).status_code == 404


def test_resubmission_supersedes_previous_job(client):
    page = _page(client, _notebook(client))
    first = client.post("/page-scans", json={"page_id": page["id"], "image_urls": ["http://img/1.jpg"]}).json()["job"]
    second = client.post("/page-scans", json={"page_id": page["id"], "image_urls": ["http://img/2.jpg"]}).json()["job"]

    old = client.get(f"/page-scans/jobs/{first['id']}").json()["job"]
    assert old["state"] == "failed"
    assert old["error"] == "superseded"
    assert client.get(f"/page-scans/{page['id']}").json()["job"]["id"] == second["id"]

    late = client.post(f"/page-scans/jobs/{first['id']}/callback", json={"text": PAGE_TEXT})
    assert late.status_code == 409
    assert client.get("/tasks", headers=OWNER).json()["tasks"] == []


def test_submit_scan_validation(client):
    page = _page(client, _notebook(client))
    assert client.post("/page-scans", json={"page_id": page["id"], "image_urls": []}).status_code == 422
    assert client.post("/page-scans", json={"page_id": page["id"], "image_urls": [""]}).status_code == 400


def test_upload_rejects_bad_files(client):
    page = _page(client, _notebook(client))

    text_file = [("files", ("notes.txt", b"hello", "text/plain"))]
    unsupported = client.post(f"/pages/{page['id']}/images", files=text_file)
    assert unsupported.status_code == 400
    assert unsupported.json()["error"] == "InvalidRequest"

    empty = [("files", ("page.png", b"", "image/png"))]
    assert client.post(f"/pages/{page['id']}/images", files=empty).status_code == 400

    assert client.get(f"/page-scans/{page['id']}").json()["job"] is None
    assert _upload(client, "missing").status_code == 404


def test_page_registration_rules(client):
    notebook_id = _notebook(client)
    _page(client, notebook_id, 3)

    duplicate = client.post(f"/notebooks/{notebook_id}/pages", json={"page_index": 3}, headers=OWNER)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "Conflict"

    negative = client.post(f"/notebooks/{notebook_id}/pages", json={"page_index": -1}, headers=OWNER)
    assert negative.status_code == 422

    foreign = client.post(f"/notebooks/{notebook_id}/pages", json={"page_index": 4}, headers=STRANGER)
    assert foreign.status_code == 404

    batch = client.post(f"/notebooks/{notebook_id}/pages/batch", json={"start": 0, "end": 4}, headers=OWNER)
    assert [p["page_index"] for p in batch.json()["pages"]] == [0, 1, 2, 3, 4]

    inverted = client.post(f"/notebooks/{notebook_id}/pages/batch", json={"start": 4, "end": 1}, headers=OWNER)
    assert inverted.status_code == 400


def test_revoked_and_unknown_tokens_look_the_same(client):
    page = _page(client, _notebook(client))

    assert client.post(f"/pages/{page['id']}/token/revoke", headers=STRANGER).status_code == 404
    revoked = client.post(f"/pages/{page['id']}/token/revoke", headers=OWNER)
    assert revoked.status_code == 200
    assert "token" not in revoked.json()

    after_revoke = client.get(f"/pages/resolve/{page['token']}")
    unknown = client.get("/pages/resolve/QN-ZZZZZZZZZZ")
    assert after_revoke.status_code == unknown.status_code == 404
    assert after_revoke.json() == unknown.json()


def test_token_rotation(client):
    page = _page(client, _notebook(client))

    rotated = client.post(f"/pages/{page['id']}/token/rotate", headers=OWNER).json()

    assert rotated["token"] != page["token"]
    assert client.get(f"/pages/resolve/{page['token']}").status_code == 404
    assert client.get(f"/pages/resolve/{rotated['token']}").json()["page_id"] == page["id"]


def test_reroute_endpoint(client):
    page = _page(client, _notebook(client))
    job = _upload(client, page["id"]).json()["job"]

    assert client.post(f"/page-scans/jobs/{job['id']}/route").status_code == 409

    client.post(f"/page-scans/jobs/{job['id']}/callback", json={"text": PAGE_TEXT})
    rerouted = client.post(f"/page-scans/jobs/{job['id']}/route")
    assert rerouted.status_code == 200
    assert rerouted.json()["job"]["routing_state"] == "routed"
    assert len(client.get("/tasks", headers=OWNER).json()["tasks"]) == 1


def test_transcript_requires_owner_and_scan(client):
    page = _page(client, _notebook(client))
    missing = client.get(f"/pages/{page['id']}/transcript", headers=OWNER)
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFound"
    assert client.get(f"/pages/{page['id']}/transcript", headers=STRANGER).status_code == 404
