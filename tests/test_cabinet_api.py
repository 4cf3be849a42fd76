"""FastAPI integration tests for the Cabinet gateway."""

from __future__ import annotations

import io
import os
import tempfile

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from werkzeug.security import check_password_hash

# The module-level runtime must not touch the working directory during tests
os.environ.setdefault("CABINET_STORAGE_ROOT", tempfile.mkdtemp(prefix="cabinet-api-"))

from cabinet.config import CabinetConfig  # noqa: E402
from cabinet.runtime import CabinetRuntime  # noqa: E402
from cabinet.api import server as api_server  # noqa: E402  (env vars must be set first)

ADMIN = {"X-User-Id": "ops", "X-User-Roles": "admin"}


@pytest.fixture
def client(tmp_path):
    # Re-bootstrap runtime each test for isolation.
    cfg = CabinetConfig.for_root(tmp_path / "store")
    api_server.runtime = CabinetRuntime.bootstrap(cfg)
    with TestClient(api_server.app) as test_client:
        yield test_client


def _provision(client: TestClient, username: str = "alice", **extra) -> dict:
    resp = client.post("/admin/users", json={"username": username, "password": "secret", **extra}, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _as(user: dict) -> dict:
    return {"X-User-Id": user["id"]}


def _upload(client: TestClient, user: dict, name: str, data: bytes, mime: str = "text/plain", **form) -> dict:
    resp = client.post("/files", files={"file": (name, data, mime)}, data=form or None, headers=_as(user))
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health_reports_recovery(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["recovered"] is True


def test_identity_and_admin_gates(client: TestClient) -> None:
    assert client.get("/files").status_code == 401
    resp = client.get("/admin/users", headers={"X-User-Id": "someone"})
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"


def test_upload_download_and_delete_flow(client: TestClient) -> None:
    alice = _provision(client)
    uploaded = _upload(client, alice, "hello.txt", b"hello world")
    assert uploaded["size_bytes"] == 11
    assert "storage_location" not in uploaded

    content = client.get(f"/files/{uploaded['id']}/content", headers=_as(alice))
    assert content.status_code == 200
    assert content.content == b"hello world"
    assert content.headers["x-content-sha256"] == uploaded["content_hash"]

    ranged = client.get(f"/files/{uploaded['id']}/content?offset=6&length=5", headers=_as(alice))
    assert ranged.content == b"world"

    usage = client.get("/usage", headers=_as(alice)).json()
    assert usage["used_bytes"] == 11

    listing = client.get("/files", headers=_as(alice)).json()
    assert [entry["id"] for entry in listing] == [uploaded["id"]]

    verify = client.get(f"/files/{uploaded['id']}/verify", headers=_as(alice)).json()
    assert verify["intact"] is True

    deleted = client.delete(f"/files/{uploaded['id']}", headers=_as(alice))
    assert deleted.status_code == 200
    missing = client.get(f"/files/{uploaded['id']}/content", headers=_as(alice))
    assert missing.status_code == 404
    assert missing.json()["error"] == "file_not_found"
    assert client.get("/usage", headers=_as(alice)).json()["used_bytes"] == 0


def test_quota_rejection_maps_to_413(client: TestClient) -> None:
    small = _provision(client, "small", quota_bytes=10)
    resp = client.post("/files", files={"file": ("big.bin", b"x" * 11, "application/octet-stream")}, headers=_as(small))
    assert resp.status_code == 413
    assert resp.json()["error"] == "quota_exceeded"

    raised = client.patch(f"/admin/users/{small['id']}/quota", json={"quota_bytes": 20}, headers=ADMIN)
    assert raised.json()["quota_bytes"] == 20
    _upload(client, small, "big.bin", b"x" * 11, "application/octet-stream")


def test_folder_endpoints(client: TestClient) -> None:
    alice = _provision(client)
    docs = client.post("/folders", json={"name": "docs"}, headers=_as(alice)).json()
    work = client.post("/folders", json={"name": "work", "parent_id": docs["id"]}, headers=_as(alice)).json()
    _upload(client, alice, "plan.txt", b"plan", parent_id=work["id"])

    crumbs = client.get(f"/folders/{work['id']}/breadcrumb", headers=_as(alice)).json()
    assert [crumb["name"] for crumb in crumbs] == ["docs", "work"]

    in_work = client.get(f"/files?parent_id={work['id']}", headers=_as(alice)).json()
    assert [entry["name"] for entry in in_work] == ["plan.txt"]
    assert client.get("/files?root=true", headers=_as(alice)).json() == []

    not_empty = client.delete(f"/folders/{work['id']}", headers=_as(alice))
    assert not_empty.status_code == 409
    assert not_empty.json()["error"] == "folder_not_empty"

    cycle = client.patch(f"/folders/{docs['id']}", json={"parent_id": work["id"]}, headers=_as(alice))
    assert cycle.status_code == 409
    assert cycle.json()["error"] == "invalid_folder_move"

    to_root = client.patch(f"/folders/{work['id']}", json={"parent_id": None}, headers=_as(alice))
    assert to_root.json()["parent_id"] is None
    renamed = client.patch(f"/folders/{work['id']}", json={"name": "projects"}, headers=_as(alice))
    assert renamed.json()["parent_id"] is None
    assert renamed.json()["name"] == "projects"

    assert client.get(f"/folders/{docs['id']}/breadcrumb", headers={"X-User-Id": "stranger"}).status_code == 404


def test_share_lifecycle_over_http(client: TestClient) -> None:
    alice = _provision(client)
    uploaded = _upload(client, alice, "report.txt", b"quarterly numbers")

    share = client.post(
        "/shares",
        json={"file_id": uploaded["id"], "max_downloads": 1, "password": "pw"},
        headers=_as(alice),
    )
    assert share.status_code == 201
    share_body = share.json()
    share_id = share_body["share_id"]
    assert share_body["link"] == f"/s/{share_id}"
    assert share_body["url"].endswith(f"/s/{share_id}")

    assert client.get(f"/s/{share_id}").json()["error"] == "share_password_required"
    wrong = client.get(f"/s/{share_id}?password=nope")
    assert wrong.status_code == 401
    assert wrong.json()["error"] == "share_password_invalid"

    ok = client.get(f"/s/{share_id}", headers={"X-Share-Password": "pw"})
    assert ok.status_code == 200
    assert ok.content == b"quarterly numbers"
    assert "report.txt" in ok.headers["content-disposition"]

    gone = client.get(f"/s/{share_id}?password=pw")
    assert gone.status_code == 410
    assert gone.json()["error"] == "share_exhausted"

    listed = client.get(f"/files/{uploaded['id']}/shares", headers=_as(alice)).json()
    assert listed[0]["state"] == "exhausted"


def test_share_deactivation_and_expiry(client: TestClient) -> None:
    alice = _provision(client)
    uploaded = _upload(client, alice, "a.txt", b"a")
    share_id = client.post("/shares", json={"file_id": uploaded["id"]}, headers=_as(alice)).json()["share_id"]

    deactivated = client.delete(f"/shares/{share_id}", headers=_as(alice))
    assert deactivated.json()["state"] == "deactivated"
    assert client.get(f"/s/{share_id}").status_code == 404

    expired = client.post(
        "/shares",
        json={"file_id": uploaded["id"], "expires_at": "2000-01-01T00:00:00Z", "max_downloads": 3},
        headers=_as(alice),
    ).json()
    resp = client.get(f"/s/{expired['share_id']}")
    assert resp.status_code == 410
    assert resp.json()["error"] == "share_expired"


def test_image_thumbnail_endpoint(client: TestClient) -> None:
    alice = _provision(client)
    buffer = io.BytesIO()
    Image.new("RGB", (120, 480), (0, 128, 255)).save(buffer, format="PNG")
    uploaded = _upload(client, alice, "tall.png", buffer.getvalue(), "image/png")

    # Thumbnails are generated in the background on the app event loop.
    client.portal.call(api_server.runtime.derivatives.drain)
    thumb = client.get(f"/files/{uploaded['id']}/thumbnail", headers=_as(alice))
    assert thumb.status_code == 200
    assert thumb.headers["content-type"] == "image/webp"
    with Image.open(io.BytesIO(thumb.content)) as image:
        assert image.size == (300, 300)


def test_admin_user_management_and_backup(client: TestClient) -> None:
    alice = _provision(client)
    _upload(client, alice, "a.txt", b"abc")
    duplicate = client.post("/admin/users", json={"username": "ALICE", "password": "x"}, headers=ADMIN)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "username_taken"

    users = client.get("/admin/users", headers=ADMIN).json()
    assert users[0]["used_bytes"] == 3

    backup = client.get("/admin/backup", headers=ADMIN)
    assert backup.status_code == 200
    assert "attachment" in backup.headers["content-disposition"]
    assert backup.json()["users"][0]["username"] == "alice"

    logs = client.get("/admin/logs", headers=ADMIN)
    assert logs.status_code == 200

    removed = client.delete(f"/admin/users/{alice['id']}", headers=ADMIN)
    assert removed.json() == {"deleted": True, "user_id": alice["id"]}
    assert client.get("/usage", headers=_as(alice)).status_code == 404


def test_admin_password_reset(client: TestClient) -> None:
    alice = _provision(client)
    denied = client.patch(f"/admin/users/{alice['id']}/password", json={"password": "new"}, headers=_as(alice))
    assert denied.status_code == 403

    reset = client.patch(f"/admin/users/{alice['id']}/password", json={"password": "new"}, headers=ADMIN)
    assert reset.status_code == 200
    assert reset.json()["id"] == alice["id"]
    assert "password_hash" not in reset.json()
    stored = api_server.runtime.store.get_user(alice["id"]).password_hash
    assert check_password_hash(stored, "new")

    empty = client.patch(f"/admin/users/{alice['id']}/password", json={"password": ""}, headers=ADMIN)
    assert empty.status_code == 422
    missing = client.patch("/admin/users/nobody/password", json={"password": "x"}, headers=ADMIN)
    assert missing.status_code == 404
    assert missing.json()["error"] == "user_not_found"
