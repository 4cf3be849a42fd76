"""Small HTTP client for the Cabinet REST API."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import requests


class StorageClientError(RuntimeError):
    """Non-2xx response; ``code`` mirrors the server's error code."""

    def __init__(self, status_code: int, code: str, detail: str) -> None:
        super().__init__(f"{status_code} {code}: {detail}")
        self.status_code = status_code
        self.code = code
        self.detail = detail


@dataclass
class StorageClient:
    base_url: str
    user_id: Optional[str] = None
    roles: Sequence[str] = field(default_factory=tuple)
    timeout: float = 30.0
    http_client: Any = requests

    def as_user(self, user_id: str, roles: Sequence[str] = ()) -> "StorageClient":
        return replace(self, user_id=user_id, roles=tuple(roles))

    # Admin -----------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        return self._json("GET", "/health")

    def create_user(
        self,
        username: str,
        password: str,
        *,
        quota_bytes: Optional[int] = None,
        roles: Sequence[str] = (),
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"username": username, "password": password, "roles": list(roles)}
        if quota_bytes is not None:
            payload["quota_bytes"] = quota_bytes
        return self._json("POST", "/admin/users", json=payload)

    def list_users(self) -> List[Dict[str, Any]]:
        return self._json("GET", "/admin/users")

    def set_quota(self, user_id: str, quota_bytes: int) -> Dict[str, Any]:
        return self._json("PATCH", f"/admin/users/{user_id}/quota", json={"quota_bytes": quota_bytes})

    def reset_password(self, user_id: str, password: str) -> Dict[str, Any]:
        return self._json("PATCH", f"/admin/users/{user_id}/password", json={"password": password})

    def delete_user(self, user_id: str) -> Dict[str, Any]:
        return self._json("DELETE", f"/admin/users/{user_id}")

    def export_backup(self) -> Dict[str, Any]:
        return self._json("GET", "/admin/backup")

    # Files -----------------------------------------------------------------

    def usage(self) -> Dict[str, Any]:
        return self._json("GET", "/usage")

    def upload_bytes(
        self,
        name: str,
        data: bytes,
        *,
        parent_id: Optional[str] = None,
        mime_type: str = "application/octet-stream",
    ) -> Dict[str, Any]:
        form = {"parent_id": parent_id} if parent_id else None
        return self._json("POST", "/files", files={"file": (name, data, mime_type)}, data=form)

    def upload_path(self, path: Path | str, *, parent_id: Optional[str] = None, mime_type: Optional[str] = None):
        source = Path(path)
        form = {"parent_id": parent_id} if parent_id else None
        with source.open("rb") as handle:
            file_tuple = (source.name, handle, mime_type) if mime_type else (source.name, handle)
            return self._json("POST", "/files", files={"file": file_tuple}, data=form)

    def list_files(self, *, parent_id: Optional[str] = None, root: bool = False) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        if root:
            params["root"] = "true"
        elif parent_id:
            params["parent_id"] = parent_id
        return self._json("GET", "/files", params=params)

    def get_file(self, file_id: str) -> Dict[str, Any]:
        return self._json("GET", f"/files/{file_id}")

    def download(self, file_id: str, *, offset: int = 0, length: Optional[int] = None) -> bytes:
        params: Dict[str, Any] = {"offset": offset}
        if length is not None:
            params["length"] = length
        return self._request("GET", f"/files/{file_id}/content", params=params).content

    def thumbnail(self, file_id: str) -> bytes:
        return self._request("GET", f"/files/{file_id}/thumbnail").content

    def move_file(self, file_id: str, **changes: Any) -> Dict[str, Any]:
        return self._json("PATCH", f"/files/{file_id}", json=changes)

    def delete_file(self, file_id: str) -> Dict[str, Any]:
        return self._json("DELETE", f"/files/{file_id}")

    # Folders ---------------------------------------------------------------

    def create_folder(self, name: str, parent_id: Optional[str] = None) -> Dict[str, Any]:
        return self._json("POST", "/folders", json={"name": name, "parent_id": parent_id})

    def list_folders(self, *, parent_id: Optional[str] = None, root: bool = False) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        if root:
            params["root"] = "true"
        elif parent_id:
            params["parent_id"] = parent_id
        return self._json("GET", "/folders", params=params)

    def delete_folder(self, folder_id: str) -> Dict[str, Any]:
        return self._json("DELETE", f"/folders/{folder_id}")

    def breadcrumb(self, folder_id: str) -> List[Dict[str, Any]]:
        return self._json("GET", f"/folders/{folder_id}/breadcrumb")

    # Shares ----------------------------------------------------------------

    def create_share(
        self,
        file_id: str,
        *,
        password: Optional[str] = None,
        expires_in_seconds: Optional[int] = None,
        max_downloads: Optional[int] = None,
    ) -> Dict[str, Any]:
        payload = {
            "file_id": file_id,
            "password": password,
            "expires_in_seconds": expires_in_seconds,
            "max_downloads": max_downloads,
        }
        return self._json("POST", "/shares", json={k: v for k, v in payload.items() if v is not None})

    def list_shares(self, file_id: str) -> List[Dict[str, Any]]:
        return self._json("GET", f"/files/{file_id}/shares")

    def deactivate_share(self, share_id: str) -> Dict[str, Any]:
        return self._json("DELETE", f"/shares/{share_id}")

    def fetch_share(self, share_id: str, password: Optional[str] = None) -> bytes:
        headers = {"X-Share-Password": password} if password else None
        return self._request("GET", f"/s/{share_id}", extra_headers=headers, authenticated=False).content

    # Plumbing --------------------------------------------------------------

    def _url(self, suffix: str) -> str:
        return f"{self.base_url.rstrip('/')}{suffix}"

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.user_id:
            headers["X-User-Id"] = self.user_id
        if self.roles:
            headers["X-User-Roles"] = ",".join(self.roles)
        return headers

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        return self._request(method, path, **kwargs).json()

    def _request(
        self,
        method: str,
        path: str,
        *,
        extra_headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
        **kwargs: Any,
    ):
        headers = self._headers() if authenticated else {}
        headers.update(extra_headers or {})
        response = self.http_client.request(
            method,
            self._url(path),
            headers=headers,
            timeout=self.timeout,
            **kwargs,
        )
        if response.status_code >= 400:
            raise self._error(response)
        return response

    @staticmethod
    def _error(response) -> StorageClientError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        return StorageClientError(
            response.status_code,
            str(body.get("error", "http_error")),
            str(body.get("detail", getattr(response, "text", ""))),
        )
