"""Share link state machine and user lifecycle."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from werkzeug.security import check_password_hash

from cabinet.errors import (
    FileNotFound,
    InvalidRequest,
    ShareExhausted,
    ShareExpired,
    ShareNotFound,
    SharePasswordInvalid,
    SharePasswordRequired,
    UserNotFound,
    UsernameTaken,
)
from cabinet.models import ShareState, utcnow
from cabinet.storage import iter_bytes


def _user_with_file(runtime, payload: bytes = b"shared bytes"):
    async def scenario():
        user = await runtime.users.create_user("dave", "secret")
        record = await runtime.files.create_file(user.id, "doc.txt", "text/plain", len(payload), iter_bytes(payload))
        return user, record

    return asyncio.run(scenario())


async def _download(runtime, share_id, password=None) -> bytes:
    _, content = await runtime.shares.resolve_for_download(share_id, password)
    return await content.stream.read_all()


def test_single_use_share_is_exhausted_after_one_download(runtime):
    user, record = _user_with_file(runtime)

    async def scenario():
        share = await runtime.shares.create(record.id, user.id, max_downloads=1)
        first = await _download(runtime, share.id)
        with pytest.raises(ShareExhausted):
            await _download(runtime, share.id)
        return share, first

    share, first = asyncio.run(scenario())
    assert first == b"shared bytes"
    assert share.current_downloads == 1
    assert runtime.shares.state(share) is ShareState.EXHAUSTED
    assert len(share.id) == 8


def test_concurrent_consumers_respect_download_cap(runtime):
    user, record = _user_with_file(runtime)

    async def scenario():
        share = await runtime.shares.create(record.id, user.id, max_downloads=2)
        results = await asyncio.gather(*(_download(runtime, share.id) for _ in range(5)), return_exceptions=True)
        return share, results

    share, results = asyncio.run(scenario())
    assert sum(1 for result in results if result == b"shared bytes") == 2
    assert all(isinstance(result, ShareExhausted) for result in results if not isinstance(result, bytes))
    assert share.current_downloads == 2


def test_expiry_wins_over_unused_download_limit(runtime):
    user, record = _user_with_file(runtime)

    async def scenario():
        share = await runtime.shares.create(
            record.id, user.id, expires_at=utcnow() - timedelta(seconds=1), max_downloads=5,
        )
        with pytest.raises(ShareExpired):
            await _download(runtime, share.id)
        return share

    share = asyncio.run(scenario())
    assert share.current_downloads == 0
    assert runtime.shares.state(share) is ShareState.EXPIRED


def test_password_gate(runtime):
    user, record = _user_with_file(runtime)

    async def scenario():
        share = await runtime.shares.create(record.id, user.id, password="hunter2")
        with pytest.raises(SharePasswordRequired):
            await _download(runtime, share.id)
        with pytest.raises(SharePasswordInvalid):
            await _download(runtime, share.id, "wrong")
        data = await _download(runtime, share.id, "hunter2")
        return share, data

    share, data = asyncio.run(scenario())
    assert data == b"shared bytes"
    assert share.current_downloads == 1
    assert share.password_hash != "hunter2"


def test_deactivated_and_unknown_shares_are_not_found(runtime):
    user, record = _user_with_file(runtime)

    async def scenario():
        share = await runtime.shares.create(record.id, user.id)
        await runtime.shares.deactivate(share.id, user.id)
        with pytest.raises(ShareNotFound):
            await _download(runtime, share.id)
        with pytest.raises(ShareNotFound):
            await _download(runtime, "missing1")
        return share

    share = asyncio.run(scenario())
    assert runtime.shares.state(share) is ShareState.DEACTIVATED


def test_share_creation_validation(runtime):
    user, record = _user_with_file(runtime)

    async def scenario():
        stranger = await runtime.users.create_user("stranger", "secret")
        with pytest.raises(FileNotFound):
            await runtime.shares.create(record.id, stranger.id)
        with pytest.raises(InvalidRequest):
            await runtime.shares.create(record.id, user.id, max_downloads=0)
        with pytest.raises(ShareNotFound):
            await runtime.shares.deactivate("whatever", stranger.id)

    asyncio.run(scenario())


def test_share_of_deleted_file_resolves_not_found(runtime):
    user, record = _user_with_file(runtime)

    async def scenario():
        share = await runtime.shares.create(record.id, user.id)
        await runtime.files.delete_file(record.id, user.id)
        with pytest.raises(FileNotFound):
            await _download(runtime, share.id)
        return share

    share = asyncio.run(scenario())
    assert share.current_downloads == 0


def test_usernames_are_unique_case_insensitively(runtime):
    async def scenario():
        await runtime.users.create_user("Erin", "secret")
        with pytest.raises(UsernameTaken):
            await runtime.users.create_user("erin", "other")

    asyncio.run(scenario())


def test_new_user_gets_default_quota_and_sandbox(runtime):
    user = asyncio.run(runtime.users.create_user("frank", "secret"))
    sandbox = runtime.sandboxes.sandbox_for(user.id)
    assert user.quota_bytes == runtime.config.storage.default_quota_bytes
    assert sandbox.data_area.is_dir()
    assert sandbox.derivative_area.is_dir()
    assert [envelope.topic for envelope in runtime.activity_service.recent()] == ["users.provisioned"]


def test_set_password_rehashes(runtime):
    async def scenario():
        user = await runtime.users.create_user("gina", "first")
        before = user.password_hash
        await runtime.users.set_password(user.id, "second")
        with pytest.raises(InvalidRequest):
            await runtime.users.set_password(user.id, "")
        with pytest.raises(UserNotFound):
            await runtime.users.set_password("nobody", "x")
        return user, before

    user, before = asyncio.run(scenario())
    stored = runtime.store.get_user(user.id).password_hash
    assert stored != before
    assert check_password_hash(stored, "second")
    assert not check_password_hash(stored, "first")


def test_delete_user_cascades(runtime):
    user, record = _user_with_file(runtime)

    async def scenario():
        folder = await runtime.folders.create(user.id, "stuff")
        await runtime.files.create_file(user.id, "inner.txt", None, 1, iter_bytes(b"i"), folder.id)
        share = await runtime.shares.create(record.id, user.id)
        await runtime.users.delete_user(user.id)
        with pytest.raises(ShareNotFound):
            await _download(runtime, share.id)

    asyncio.run(scenario())
    sandbox = runtime.sandboxes.sandbox_for(user.id)
    assert runtime.store.get_user(user.id) is None
    assert runtime.store.files == {}
    assert runtime.store.folders == {}
    assert runtime.store.shares == {}
    assert not sandbox.root.exists()


def test_ensure_admin_is_idempotent(runtime):
    async def scenario():
        first = await runtime.users.ensure_admin("root", "pw")
        second = await runtime.users.ensure_admin("root", "pw")
        skipped = await runtime.users.ensure_admin(None, None)
        return first, second, skipped

    first, second, skipped = asyncio.run(scenario())
    assert first.id == second.id
    assert first.roles == ["admin"]
    assert skipped is None


def test_backup_export_omits_secrets(runtime):
    user, record = _user_with_file(runtime)
    asyncio.run(runtime.shares.create(record.id, user.id, password="pw"))

    export = runtime.backup_manager.export()
    assert [entry["id"] for entry in export["users"]] == [user.id]
    assert "password_hash" not in export["users"][0]
    assert "storage_location" not in export["files"][0]
    assert export["shares"][0]["password_protected"] is True
    assert runtime.backup_manager.latest().record_counts["files"] == 1
