"""FastAPI-based gateway for external clients."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import BinaryIO, Optional, Sequence
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..config import CabinetConfig
from ..errors import CabinetError, Forbidden, InvalidRequest, NotFound, Unauthorized
from ..models import ANY_PARENT, UNSET
from ..runtime import CabinetRuntime
from ..storage.content_store import iter_binary


runtime = CabinetRuntime.bootstrap(CabinetConfig.from_env())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    log_path = runtime.configure_logging()
    summary = await runtime.recover()
    logger.info(
        "Cabinet ready at %s (log=%s, recovered=%d deletions, %d orphans)",
        runtime.config.storage.root_path,
        log_path,
        len(summary["deletions"]),
        len(summary["orphans"]),
    )
    try:
        yield
    finally:
        await runtime.shutdown()
        logger.info("Cabinet stopped")


app = FastAPI(title="Cabinet Storage API", version="0.1.0", lifespan=_lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=runtime.config.cors_origins or ["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CabinetError)
async def _handle_cabinet_error(request: Request, exc: CabinetError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    body = {"error": exc.code, "detail": str(exc)}
    if exc.details:
        body["context"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


class AuthContext(BaseModel):
    user_id: str
    roles: list[str] = Field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        admin_role = runtime.config.auth.admin_role.lower()
        return admin_role in {role.lower() for role in self.roles}


async def get_auth_context(request: Request) -> AuthContext:
    """Identity is established upstream and forwarded in headers."""
    user_id = (request.headers.get("x-user-id") or "").strip()
    if not user_id:
        raise Unauthorized("X-User-Id header is required")
    roles = _split_claim_header(request.headers.get("x-user-roles"))
    user = runtime.store.get_user(user_id)
    if user is not None:
        roles = list(dict.fromkeys(roles + list(user.roles)))
    return AuthContext(user_id=user_id, roles=roles)


def _ensure_admin(ctx: AuthContext) -> None:
    if not ctx.is_admin:
        raise Forbidden(f"{runtime.config.auth.admin_role} role required")


def _split_claim_header(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.replace(",", " ").split() if part.strip()]


def _content_disposition(name: str, disposition: str = "attachment") -> str:
    return f"{disposition}; filename*=UTF-8''{quote(name)}"


def _measure(stream: BinaryIO) -> int:
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


# Request models ----------------------------------------------------------------


class UserCreateRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1)
    quota_bytes: Optional[int] = Field(default=None, ge=0)
    roles: list[str] = Field(default_factory=list)


class QuotaUpdateRequest(BaseModel):
    quota_bytes: int = Field(ge=0)


class PasswordResetRequest(BaseModel):
    password: str = Field(min_length=1)


class FolderCreateRequest(BaseModel):
    name: str
    parent_id: Optional[str] = Field(default=None)


class MoveRequest(BaseModel):
    """``parent_id`` sent as null moves the item to the root."""

    name: Optional[str] = None
    parent_id: Optional[str] = None

    def parent_or_unset(self):
        return self.parent_id if "parent_id" in self.model_fields_set else UNSET


class ShareCreateRequest(BaseModel):
    file_id: str
    password: Optional[str] = None
    expires_at: Optional[datetime] = None
    expires_in_seconds: Optional[int] = Field(default=None, ge=1)
    max_downloads: Optional[int] = Field(default=None, ge=1)

    def resolve_expiry(self) -> Optional[datetime]:
        if self.expires_at is not None:
            return self.expires_at
        if self.expires_in_seconds is not None:
            return datetime.now(timezone.utc) + timedelta(seconds=self.expires_in_seconds)
        return None


# Health ------------------------------------------------------------------------


@app.get("/health")
async def health():
    return {"status": "ok", "recovered": runtime.recovered, "metrics": runtime.get_metrics_snapshot()}


# Admin -------------------------------------------------------------------------


@app.post("/admin/users", status_code=201)
async def create_user(payload: UserCreateRequest, ctx: AuthContext = Depends(get_auth_context)):
    _ensure_admin(ctx)
    return await runtime.api_gateway.provision_user(
        payload.username,
        payload.password,
        quota_bytes=payload.quota_bytes,
        roles=payload.roles,
    )


@app.get("/admin/users")
async def list_users(ctx: AuthContext = Depends(get_auth_context)):
    _ensure_admin(ctx)
    return runtime.api_gateway.list_users()


@app.patch("/admin/users/{user_id}/quota")
async def update_quota(user_id: str, payload: QuotaUpdateRequest, ctx: AuthContext = Depends(get_auth_context)):
    _ensure_admin(ctx)
    return await runtime.api_gateway.set_quota(user_id, payload.quota_bytes)


@app.patch("/admin/users/{user_id}/password")
async def reset_password(user_id: str, payload: PasswordResetRequest, ctx: AuthContext = Depends(get_auth_context)):
    _ensure_admin(ctx)
    return await runtime.api_gateway.reset_password(user_id, payload.password)


@app.delete("/admin/users/{user_id}")
async def delete_user(user_id: str, ctx: AuthContext = Depends(get_auth_context)):
    _ensure_admin(ctx)
    return await runtime.api_gateway.delete_user(user_id)


@app.get("/admin/backup")
async def export_backup(ctx: AuthContext = Depends(get_auth_context)):
    _ensure_admin(ctx)
    payload = runtime.api_gateway.export_backup()
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return JSONResponse(
        content=payload,
        headers={"Content-Disposition": _content_disposition(f"cabinet-backup-{stamp}.json")},
    )


@app.get("/admin/logs")
async def download_logs(ctx: AuthContext = Depends(get_auth_context)):
    _ensure_admin(ctx)
    log_path = runtime.api_gateway.log_path()
    if log_path is None or not log_path.exists():
        raise NotFound("No log file is configured")
    return FileResponse(log_path, media_type="text/plain", filename=log_path.name)


# Usage & activity --------------------------------------------------------------


@app.get("/usage")
async def get_usage(ctx: AuthContext = Depends(get_auth_context)):
    return runtime.api_gateway.usage(ctx.user_id)


@app.get("/activity")
async def list_activity(limit: int = Query(default=50, ge=1, le=200), ctx: AuthContext = Depends(get_auth_context)):
    owner = None if ctx.is_admin else ctx.user_id
    return runtime.api_gateway.list_activity(owner, limit)


# Files -------------------------------------------------------------------------


@app.post("/files", status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    parent_id: Optional[str] = Form(default=None),
    ctx: AuthContext = Depends(get_auth_context),
):
    if not file.filename:
        raise InvalidRequest("File name is required")
    try:
        size_bytes = file.size
        if size_bytes is None:
            size_bytes = await asyncio.to_thread(_measure, file.file)
        mime_type = file.content_type
        if mime_type == "application/octet-stream":
            mime_type = None
        return await runtime.api_gateway.upload(
            ctx.user_id,
            file.filename,
            mime_type,
            size_bytes,
            iter_binary(file.file, runtime.config.storage.chunk_size),
            parent_id or None,
        )
    finally:
        await file.close()


@app.get("/files")
async def list_files(
    parent_id: Optional[str] = None,
    root: bool = False,
    ctx: AuthContext = Depends(get_auth_context),
):
    if root:
        return runtime.api_gateway.list_files(ctx.user_id, None)
    return runtime.api_gateway.list_files(ctx.user_id, parent_id if parent_id else ANY_PARENT)


@app.get("/files/{file_id}")
async def get_file(file_id: str, ctx: AuthContext = Depends(get_auth_context)):
    return runtime.api_gateway.get_file(file_id, ctx.user_id)


@app.get("/files/{file_id}/content")
async def download_file(
    file_id: str,
    offset: int = Query(default=0, ge=0),
    length: Optional[int] = Query(default=None, ge=0),
    inline: bool = False,
    ctx: AuthContext = Depends(get_auth_context),
):
    content = await runtime.api_gateway.open_content(file_id, ctx.user_id, offset=offset, length=length)
    record = content.record
    headers = {
        "Content-Length": str(content.length),
        "Content-Disposition": _content_disposition(record.name, "inline" if inline else "attachment"),
        "X-Content-SHA256": record.content_hash,
    }
    return StreamingResponse(content.stream.iter_chunks(), media_type=record.mime_type, headers=headers)


@app.get("/files/{file_id}/thumbnail")
async def download_thumbnail(file_id: str, ctx: AuthContext = Depends(get_auth_context)):
    stream = await runtime.api_gateway.open_thumbnail(file_id, ctx.user_id)
    return StreamingResponse(
        stream.iter_chunks(),
        media_type="image/webp",
        headers={"Content-Length": str(stream.length)},
    )


@app.get("/files/{file_id}/verify")
async def verify_file(file_id: str, ctx: AuthContext = Depends(get_auth_context)):
    return await runtime.api_gateway.verify_file(file_id, ctx.user_id)


@app.patch("/files/{file_id}")
async def update_file(file_id: str, payload: MoveRequest, ctx: AuthContext = Depends(get_auth_context)):
    return await runtime.api_gateway.update_file(
        file_id, ctx.user_id, name=payload.name, parent_id=payload.parent_or_unset(),
    )


@app.delete("/files/{file_id}")
async def delete_file(file_id: str, ctx: AuthContext = Depends(get_auth_context)):
    return await runtime.api_gateway.delete_file(file_id, ctx.user_id)


@app.get("/files/{file_id}/shares")
async def list_shares(file_id: str, ctx: AuthContext = Depends(get_auth_context)):
    return runtime.api_gateway.list_shares(file_id, ctx.user_id)


# Folders -----------------------------------------------------------------------


@app.get("/folders")
async def list_folders(
    parent_id: Optional[str] = None,
    root: bool = False,
    ctx: AuthContext = Depends(get_auth_context),
):
    if root:
        return runtime.api_gateway.list_folders(ctx.user_id, None)
    return runtime.api_gateway.list_folders(ctx.user_id, parent_id if parent_id else ANY_PARENT)


@app.post("/folders", status_code=201)
async def create_folder(payload: FolderCreateRequest, ctx: AuthContext = Depends(get_auth_context)):
    return await runtime.api_gateway.create_folder(ctx.user_id, payload.name, payload.parent_id)


@app.patch("/folders/{folder_id}")
async def update_folder(folder_id: str, payload: MoveRequest, ctx: AuthContext = Depends(get_auth_context)):
    return await runtime.api_gateway.update_folder(
        folder_id, ctx.user_id, name=payload.name, parent_id=payload.parent_or_unset(),
    )


@app.delete("/folders/{folder_id}")
async def delete_folder(folder_id: str, ctx: AuthContext = Depends(get_auth_context)):
    return await runtime.api_gateway.delete_folder(folder_id, ctx.user_id)


@app.get("/folders/{folder_id}/breadcrumb")
async def folder_breadcrumb(folder_id: str, ctx: AuthContext = Depends(get_auth_context)):
    return runtime.api_gateway.breadcrumb(folder_id, ctx.user_id)


# Sharing -----------------------------------------------------------------------


@app.post("/shares", status_code=201)
async def create_share(payload: ShareCreateRequest, request: Request, ctx: AuthContext = Depends(get_auth_context)):
    share = await runtime.api_gateway.create_share(
        payload.file_id,
        ctx.user_id,
        password=payload.password,
        expires_at=payload.resolve_expiry(),
        max_downloads=payload.max_downloads,
    )
    share["url"] = str(request.url_for("consume_share", share_id=share["share_id"]))
    return share


@app.delete("/shares/{share_id}")
async def deactivate_share(share_id: str, ctx: AuthContext = Depends(get_auth_context)):
    return await runtime.api_gateway.deactivate_share(share_id, ctx.user_id)


@app.get("/s/{share_id}", name="consume_share")
async def consume_share(share_id: str, request: Request, password: Optional[str] = None):
    supplied = password or request.headers.get("x-share-password")
    share, content = await runtime.api_gateway.consume_share(share_id, supplied)
    record = content.record
    headers = {
        "Content-Length": str(content.length),
        "Content-Disposition": _content_disposition(record.name),
        "X-Share-Downloads": str(share.current_downloads),
    }
    return StreamingResponse(content.stream.iter_chunks(), media_type=record.mime_type, headers=headers)


def main(argv: Optional[Sequence[str]] = None) -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Run the Cabinet storage API")
    parser.add_argument("--host", default=os.environ.get("CABINET_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("CABINET_PORT", "8000")))
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args(list(argv) if argv is not None else None)
    uvicorn.run("cabinet.api.server:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":  # pragma: no cover
    main()
