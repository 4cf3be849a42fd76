"""Quota admission, metadata persistence and the folder tree."""

from __future__ import annotations

import asyncio
import pickle

import pytest

from cabinet.errors import (
    FolderChainBroken,
    FolderNotEmpty,
    FolderNotFound,
    InvalidFolderMove,
    InvalidRequest,
    QuotaExceeded,
)
from cabinet.models import User
from cabinet.services import metadata_service
from cabinet.services.metadata_service import MetadataStore
from cabinet.storage import iter_bytes


def _make_user(runtime, quota_bytes: int) -> User:
    async def scenario():
        return await runtime.users.create_user("alice", "secret", quota_bytes=quota_bytes)

    return asyncio.run(scenario())


def test_reserve_admits_exact_fit_and_rejects_one_byte_over(runtime):
    user = _make_user(runtime, quota_bytes=100)

    async def scenario():
        await runtime.quota.reserve(user.id, 100)
        with pytest.raises(QuotaExceeded):
            await runtime.quota.reserve(user.id, 1)
        await runtime.quota.release(user.id, 100)
        await runtime.quota.reserve(user.id, 60)
        with pytest.raises(QuotaExceeded) as excinfo:
            await runtime.quota.reserve(user.id, 41)
        return excinfo.value

    error = asyncio.run(scenario())
    assert error.details["used_bytes"] == 60
    assert runtime.quota.usage(user.id).used_bytes == 60
    assert runtime.telemetry.counter("quota.rejections") == 2
    rejection = next(m for m in runtime.telemetry.metrics if m["name"] == "quota.rejections")
    assert rejection["service"] == "QuotaLedger"
    assert rejection["user_id"] == user.id


def test_release_clamps_at_zero(runtime):
    user = _make_user(runtime, quota_bytes=100)
    usage = asyncio.run(runtime.quota.release(user.id, 500))
    assert usage.used_bytes == 0
    assert usage.remaining_bytes == 100


def test_concurrent_uploads_cannot_share_headroom(runtime):
    user = _make_user(runtime, quota_bytes=100)

    async def scenario():
        return await asyncio.gather(
            runtime.files.create_file(user.id, "a.bin", None, 60, iter_bytes(b"a" * 60)),
            runtime.files.create_file(user.id, "b.bin", None, 60, iter_bytes(b"b" * 60)),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    failures = [result for result in results if isinstance(result, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], QuotaExceeded)
    assert runtime.quota.usage(user.id).used_bytes == 60
    assert len(runtime.files.list_files(user.id)) == 1


def test_quota_may_be_lowered_below_usage(runtime):
    user = _make_user(runtime, quota_bytes=100)

    async def scenario():
        await runtime.files.create_file(user.id, "a.bin", None, 50, iter_bytes(b"a" * 50))
        usage = await runtime.quota.set_quota(user.id, 10)
        with pytest.raises(QuotaExceeded):
            await runtime.files.create_file(user.id, "b.bin", None, 1, iter_bytes(b"b"))
        return usage

    usage = asyncio.run(scenario())
    assert usage.used_bytes == 50
    assert usage.remaining_bytes == 0
    assert len(runtime.files.list_files(user.id)) == 1


def test_reconcile_recomputes_usage_from_live_files(runtime):
    user = _make_user(runtime, quota_bytes=1000)

    async def scenario():
        await runtime.files.create_file(user.id, "a.bin", None, 7, iter_bytes(b"1234567"))
        runtime.store.users[user.id].used_bytes = 500
        return await runtime.quota.reconcile(user.id)

    usage = asyncio.run(scenario())
    assert usage.used_bytes == 7
    assert runtime.quota.usage(user.id).used_bytes == 7


def test_metadata_snapshot_survives_restart(runtime, cabinet_config):
    user = _make_user(runtime, quota_bytes=1234)
    reloaded = MetadataStore(
        config=cabinet_config,
        telemetry=runtime.telemetry,
        state_path=str(cabinet_config.storage.state_path),
    )
    assert reloaded.get_user(user.id).quota_bytes == 1234
    assert reloaded.find_user_by_name("ALICE").id == user.id


def test_snapshot_is_pickled_off_the_event_loop(runtime, monkeypatch):
    offloaded = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(func, *args, **kwargs):
        offloaded.append(func)
        return await real_to_thread(func, *args, **kwargs)

    monkeypatch.setattr(metadata_service.asyncio, "to_thread", recording_to_thread)
    user = _make_user(runtime, quota_bytes=10)

    assert pickle.dumps in offloaded
    assert runtime.store._flushed_version == runtime.store._version
    reloaded = MetadataStore(
        config=runtime.config,
        telemetry=runtime.telemetry,
        state_path=str(runtime.config.storage.state_path),
    )
    assert reloaded.get_user(user.id) is not None


def test_folder_tree_create_list_and_breadcrumb(runtime):
    user = _make_user(runtime, quota_bytes=100)
    folders = runtime.folders

    async def scenario():
        docs = await folders.create(user.id, "docs")
        work = await folders.create(user.id, "work", docs.id)
        reports = await folders.create(user.id, "reports", work.id)
        return docs, work, reports

    docs, work, reports = asyncio.run(scenario())
    assert [folder.name for folder in folders.resolve_breadcrumb(reports.id, user.id)] == ["docs", "work", "reports"]
    assert [folder.id for folder in folders.list_folders(user.id, None)] == [docs.id]
    assert [folder.id for folder in folders.list_folders(user.id, docs.id)] == [work.id]
    assert len(folders.list_folders(user.id)) == 3


@pytest.mark.parametrize("name", ["", "   ", "a/b", "a\\b", "..", "."])
def test_folder_names_are_validated(runtime, name):
    user = _make_user(runtime, quota_bytes=100)
    with pytest.raises(InvalidRequest):
        asyncio.run(runtime.folders.create(user.id, name))


def test_folder_parent_must_belong_to_owner(runtime):
    owner = _make_user(runtime, quota_bytes=100)

    async def scenario():
        other = await runtime.users.create_user("mallory", "secret")
        folder = await runtime.folders.create(owner.id, "private")
        with pytest.raises(FolderNotFound):
            await runtime.folders.create(other.id, "sneaky", folder.id)
        with pytest.raises(FolderNotFound):
            runtime.folders.get(folder.id, other.id)

    asyncio.run(scenario())


def test_folder_delete_refuses_non_empty(runtime):
    user = _make_user(runtime, quota_bytes=100)

    async def scenario():
        parent = await runtime.folders.create(user.id, "parent")
        child = await runtime.folders.create(user.id, "child", parent.id)
        with pytest.raises(FolderNotEmpty):
            await runtime.folders.delete(parent.id, user.id)
        record = await runtime.files.create_file(user.id, "note.txt", None, 2, iter_bytes(b"hi"), child.id)
        with pytest.raises(FolderNotEmpty):
            await runtime.folders.delete(child.id, user.id)
        await runtime.files.delete_file(record.id, user.id)
        await runtime.folders.delete(child.id, user.id)
        await runtime.folders.delete(parent.id, user.id)

    asyncio.run(scenario())
    assert runtime.folders.list_folders(user.id) == []


def test_folder_move_rejects_cycles_and_allows_root(runtime):
    user = _make_user(runtime, quota_bytes=100)

    async def scenario():
        top = await runtime.folders.create(user.id, "top")
        middle = await runtime.folders.create(user.id, "middle", top.id)
        leaf = await runtime.folders.create(user.id, "leaf", middle.id)
        with pytest.raises(InvalidFolderMove):
            await runtime.folders.rename_or_move(top.id, user.id, parent_id=leaf.id)
        with pytest.raises(InvalidFolderMove):
            await runtime.folders.rename_or_move(top.id, user.id, parent_id=top.id)
        moved = await runtime.folders.rename_or_move(leaf.id, user.id, name="leaf2", parent_id=None)
        return top, moved

    top, moved = asyncio.run(scenario())
    assert top.parent_id is None
    assert moved.parent_id is None
    assert moved.name == "leaf2"


def test_folder_nesting_is_bounded_on_create(runtime):
    user = _make_user(runtime, quota_bytes=100)
    runtime.config.storage.max_folder_depth = 3

    async def scenario():
        parent_id = None
        for depth in range(3):
            folder = await runtime.folders.create(user.id, f"level-{depth}", parent_id)
            parent_id = folder.id
        with pytest.raises(InvalidRequest) as excinfo:
            await runtime.folders.create(user.id, "too-deep", parent_id)
        return parent_id, excinfo.value

    deepest, error = asyncio.run(scenario())
    assert error.details["max_folder_depth"] == 3
    assert len(runtime.folders.resolve_breadcrumb(deepest, user.id)) == 3
    assert len(runtime.folders.list_folders(user.id)) == 3


def test_folder_move_keeps_subtree_within_depth_bound(runtime):
    user = _make_user(runtime, quota_bytes=100)
    runtime.config.storage.max_folder_depth = 3

    async def scenario():
        outer = await runtime.folders.create(user.id, "outer")
        inner = await runtime.folders.create(user.id, "inner", outer.id)
        branch = await runtime.folders.create(user.id, "branch")
        await runtime.folders.create(user.id, "twig", branch.id)
        with pytest.raises(InvalidRequest):
            await runtime.folders.rename_or_move(branch.id, user.id, parent_id=inner.id)
        moved = await runtime.folders.rename_or_move(branch.id, user.id, parent_id=outer.id)
        return outer, moved

    outer, moved = asyncio.run(scenario())
    assert moved.parent_id == outer.id
    twig = runtime.folders.list_folders(user.id, moved.id)[0]
    assert [folder.name for folder in runtime.folders.resolve_breadcrumb(twig.id, user.id)] == [
        "outer", "branch", "twig",
    ]


def test_breadcrumb_fails_closed_on_corrupted_cycle(runtime):
    user = _make_user(runtime, quota_bytes=100)

    async def scenario():
        first = await runtime.folders.create(user.id, "first")
        second = await runtime.folders.create(user.id, "second", first.id)
        return first, second

    first, second = asyncio.run(scenario())
    runtime.store.folders[first.id].parent_id = second.id
    with pytest.raises(FolderChainBroken):
        runtime.folders.resolve_breadcrumb(second.id, user.id)
