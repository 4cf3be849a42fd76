"""Seed a running Cabinet server with a demo user, folders, files and a share."""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Sequence

from cabinet.clients import StorageClient, StorageClientError

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DATA_DIR = REPO_ROOT / "sample_data"


def _discover_files(data_dir: Path) -> list[Path]:
    if not data_dir.exists():
        raise FileNotFoundError(f"Sample data directory not found: {data_dir}")
    return [path for path in sorted(data_dir.rglob("*")) if path.is_file()]


def _ensure_user(admin: StorageClient, username: str, password: str, quota_bytes: int | None) -> str:
    for user in admin.list_users():
        if user["username"].lower() == username.lower():
            return user["id"]
    created = admin.create_user(username, password, quota_bytes=quota_bytes)
    return created["id"]


def seed(
    rest_base: str,
    data_files: Sequence[Path],
    *,
    username: str,
    password: str,
    quota_bytes: int | None,
    env_label: str,
) -> None:
    admin = StorageClient(rest_base, user_id="seed-admin", roles=("admin",))
    user_id = _ensure_user(admin, username, password, quota_bytes)
    client = admin.as_user(user_id)
    print(f"Seeding as {username} ({user_id})")

    folder = client.create_folder(f"{env_label}-seed")
    print(f"Created folder {folder['name']} ({folder['id']})")

    uploaded = []
    for path in data_files:
        print(f"Uploading {path.name} ({path.stat().st_size} bytes)")
        try:
            uploaded.append(client.upload_path(path, parent_id=folder["id"]))
        except StorageClientError as exc:
            print(f" !! {path.name} rejected: {exc.code} ({exc.detail})")
            if exc.code == "quota_exceeded":
                break

    if uploaded:
        share = client.create_share(uploaded[0]["id"], expires_in_seconds=24 * 3600, max_downloads=10)
        print(f"Shared {uploaded[0]['name']} at {share.get('url', share['link'])}")
    print(f"Usage: {client.usage()}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed Cabinet demo data")
    parser.add_argument("--env", default="local", help="Label used in folder naming")
    parser.add_argument("--rest-base", default=os.environ.get("CABINET_REST_BASE", "http://localhost:8000"))
    parser.add_argument("--data-dir", type=Path, default=DEFAULT_DATA_DIR, help="Directory of sample files")
    parser.add_argument("--username", default="demo")
    parser.add_argument("--password", default=os.environ.get("CABINET_DEMO_PASSWORD", "demo-password"))
    parser.add_argument("--quota-bytes", type=int, default=None)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    files = _discover_files(args.data_dir)
    if not files:
        raise SystemExit(f"No files found in {args.data_dir}")
    seed(
        args.rest_base,
        files,
        username=args.username,
        password=args.password,
        quota_bytes=args.quota_bytes,
        env_label=args.env,
    )


if __name__ == "__main__":
    main()
