from locust import HttpUser, between, task
import os
import uuid

USER_ID = os.environ.get("CABINET_LOAD_USER_ID")
PAYLOAD = os.urandom(64 * 1024)


def _headers(user_id, extra=None):
    headers = {"X-User-Id": user_id}
    if extra:
        headers.update(extra)
    return headers


class ResiliencyUser(HttpUser):
    wait_time = between(0.5, 2.0)

    def on_start(self):
        self.user_id = USER_ID
        if not self.user_id:
            resp = self.client.post(
                "/admin/users",
                json={"username": f"load-{uuid.uuid4().hex[:8]}", "password": "load-test"},
                headers=_headers("load-admin", {"X-User-Roles": "admin"}),
            )
            self.user_id = resp.json()["id"]
        self.file_ids = []

    @task(3)
    def list_files(self):
        self.client.get("/files", headers=_headers(self.user_id))

    @task(2)
    def upload_and_download(self):
        resp = self.client.post(
            "/files",
            files={"file": (f"blob-{uuid.uuid4().hex[:6]}.bin", PAYLOAD, "application/octet-stream")},
            headers=_headers(self.user_id),
        )
        if resp.status_code >= 400:
            return
        file_id = resp.json()["id"]
        self.file_ids.append(file_id)
        self.client.get(f"/files/{file_id}/content", headers=_headers(self.user_id), name="/files/[id]/content")

    @task(1)
    def share_roundtrip(self):
        if not self.file_ids:
            return
        resp = self.client.post(
            "/shares",
            json={"file_id": self.file_ids[-1], "max_downloads": 3},
            headers=_headers(self.user_id),
        )
        if resp.status_code >= 400:
            return
        share_id = resp.json()["share_id"]
        self.client.get(f"/s/{share_id}", name="/s/[share_id]")

    @task(1)
    def delete_oldest(self):
        if len(self.file_ids) < 5:
            return
        file_id = self.file_ids.pop(0)
        self.client.delete(f"/files/{file_id}", headers=_headers(self.user_id), name="/files/[id]")
