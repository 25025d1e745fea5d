"""Tests for the file-backed session store."""
import asyncio
import json
import os
import time

import pytest

from fastgpt_bridge.errors import StorageError
from fastgpt_bridge.session_store import SessionStore

DAY = 24 * 60 * 60


def age_directory(path, days: float) -> None:
    past = time.time() - days * DAY
    os.utime(path, (past, past))


def add_images(session_dir):
    for name in ("response_1.png", "photo.jpg", "scan.JPEG"):
        (session_dir / name).write_bytes(b"\x89PNG fake image data")


def test_create_session_writes_owner_sentinel(store):
    session_id = store.create_session("user-42")
    session_dir = store.get_session_dir(session_id)

    assert session_dir.is_dir()
    assert (session_dir / "user_id.txt").read_text(encoding="utf-8") == "user-42"
    assert len(session_id) == 32
    assert store.create_session("user-42") != session_id


@pytest.mark.asyncio
async def test_saved_input_appears_in_user_sessions(store):
    session_id = store.create_session("owner")
    await store.save_user_input(session_id, "hello")

    sessions = store.get_user_sessions("owner")

    assert len(sessions) == 1
    assert sessions[0].id == session_id
    assert sessions[0].owner_id == "owner"
    assert sessions[0].input_preview.startswith("hello")
    assert sessions[0].image_count == 0
    assert sessions[0].cleaned is False


@pytest.mark.asyncio
async def test_sessions_filtered_by_owner(store):
    mine = store.create_session("alice")
    store.create_session("bob")
    await store.save_user_input(mine, "question from alice")

    assert [s.id for s in store.get_user_sessions("alice")] == [mine]
    assert store.get_user_sessions("carol") == []


@pytest.mark.asyncio
async def test_sessions_sorted_newest_first(store):
    older = store.create_session("owner")
    newer = store.create_session("owner")
    await store.save_user_input(older, "first")
    await store.save_user_input(newer, "second")
    age_directory(store.get_session_dir(older), 1)

    assert [s.id for s in store.get_user_sessions("owner")] == [newer, older]


@pytest.mark.asyncio
async def test_preview_truncated(store):
    session_id = store.create_session("owner")
    await store.save_user_input(session_id, "x" * 31)
    short_id = store.create_session("owner")
    await store.save_user_input(short_id, "short")

    previews = {s.id: s.input_preview for s in store.get_user_sessions("owner")}
    assert previews[session_id] == "x" * 30 + "..."
    assert previews[short_id] == "short"


def test_preview_when_input_missing(store):
    session_id = store.create_session("owner")
    [session] = store.get_user_sessions("owner")
    assert session.id == session_id
    assert session.input_preview == "(input unavailable)"


@pytest.mark.asyncio
async def test_artifacts_written_and_overwritten(store):
    session_id = store.create_session("owner")
    session_dir = store.get_session_dir(session_id)

    await store.save_response_markdown(session_id, "# first")
    await store.save_response_markdown(session_id, "# second")
    await store.save_user_images(session_id, ["https://cdn.test/a.png"])

    assert (session_dir / "response.md").read_text(encoding="utf-8") == "# second"
    assert store.read_response_markdown(session_id) == "# second"
    assert json.loads((session_dir / "user_images.json").read_text(encoding="utf-8")) == ["https://cdn.test/a.png"]
    assert not [p for p in session_dir.iterdir() if p.name.endswith(".tmp")]


@pytest.mark.asyncio
async def test_concurrent_writes_to_same_artifact_never_partial(store):
    session_id = store.create_session("owner")
    texts = [chr(ord("a") + i) * 5000 for i in range(20)]

    await asyncio.gather(*(store.save_user_input(session_id, text) for text in texts))

    final = (store.get_session_dir(session_id) / "input.txt").read_text(encoding="utf-8")
    assert final in texts


@pytest.mark.asyncio
async def test_save_to_unknown_session_fails(store):
    with pytest.raises(StorageError):
        await store.save_user_input("0" * 32, "lost")


def test_invalid_session_ids_rejected(store):
    for bad in ("../escape", "", ".hidden", "a/b"):
        with pytest.raises(StorageError):
            store.get_session_dir(bad)


@pytest.mark.asyncio
async def test_save_response_image_copies_into_session(store, tmp_path):
    session_id = store.create_session("owner")
    source = tmp_path / "rendered.png"
    source.write_bytes(b"image-bytes")

    first = await store.save_response_image(session_id, source)
    second = await store.save_response_image(session_id, source)

    assert first.parent == store.get_session_dir(session_id)
    assert first.name.startswith("response_") and first.suffix == ".png"
    assert first.read_bytes() == b"image-bytes"
    assert first != second
    assert source.exists()
    assert store.get_user_sessions("owner")[0].image_count == 2


@pytest.mark.asyncio
async def test_cleanup_purges_expired_session_images(store):
    session_id = store.create_session("owner")
    await store.save_user_input(session_id, "question")
    await store.save_response_markdown(session_id, "answer")
    session_dir = store.get_session_dir(session_id)
    add_images(session_dir)
    age_directory(session_dir, 3)

    report = await store.periodic_cleanup(2)

    assert report.sessions_cleaned == 1
    assert report.files_removed == 3
    remaining = sorted(p.name for p in session_dir.iterdir())
    assert remaining == [".cleaned", "input.txt", "response.md", "user_id.txt"]
    assert "cleaned" in (session_dir / ".cleaned").read_text(encoding="utf-8")

    again = await store.periodic_cleanup(2)
    assert again.files_removed == 0
    assert (session_dir / ".cleaned").exists()
    assert (session_dir / "input.txt").read_text(encoding="utf-8") == "question"


@pytest.mark.asyncio
async def test_cleanup_keeps_recent_sessions(store):
    session_id = store.create_session("owner")
    session_dir = store.get_session_dir(session_id)
    add_images(session_dir)

    report = await store.periodic_cleanup(2)

    assert report.files_removed == 0
    assert not (session_dir / ".cleaned").exists()
    assert store.get_user_sessions("owner")[0].image_count == 3


@pytest.mark.asyncio
async def test_cleanup_purges_orphaned_sessions_regardless_of_age(store):
    orphan = store.sessions_dir / "orphaned-session"
    orphan.mkdir()
    (orphan / "input.txt").write_text("left behind", encoding="utf-8")
    add_images(orphan)

    report = await store.periodic_cleanup(2)

    assert report.files_removed == 3
    assert sorted(p.name for p in orphan.iterdir()) == [".cleaned", "input.txt"]


def test_cleanup_marks_session_and_preserves_mtime(store):
    session_id = store.create_session("owner")
    session_dir = store.get_session_dir(session_id)
    add_images(session_dir)
    age_directory(session_dir, 5)
    before = session_dir.stat().st_mtime

    removed = store.cleanup_session_images(session_id)

    assert removed == 3
    assert session_dir.stat().st_mtime == pytest.approx(before, abs=1)
    [session] = store.get_user_sessions("owner")
    assert session.cleaned is True
    assert session.image_count == 0


def test_repeated_cleanup_keeps_original_marker(store):
    session_id = store.create_session("owner")
    session_dir = store.get_session_dir(session_id)
    add_images(session_dir)
    store.cleanup_session_images(session_id)
    marker = session_dir / ".cleaned"
    marker.write_text("Images cleaned at first sweep\n", encoding="utf-8")

    assert store.cleanup_session_images(session_id) == 0
    assert marker.read_text(encoding="utf-8") == "Images cleaned at first sweep\n"

    (session_dir / "late.png").write_bytes(b"png")
    assert store.cleanup_session_images(session_id) == 1
    assert marker.read_text(encoding="utf-8").startswith("Images cleaned at 20")


def test_cleanup_of_missing_session_is_noop(store):
    assert store.cleanup_session_images("f" * 32) == 0


@pytest.mark.asyncio
async def test_storage_stats(store, tmp_path):
    source = tmp_path / "img.png"
    source.write_bytes(b"png")
    first = store.create_session("owner")
    second = store.create_session("owner")
    await store.save_response_image(first, source)
    await store.save_response_image(second, source)
    await store.save_response_image(second, source)

    stats = store.storage_stats("owner")

    assert stats.session_count == 2
    assert stats.image_count == 3
    assert stats.last_activity is not None
    assert store.storage_stats("nobody").session_count == 0


def test_store_creates_sessions_directory(tmp_path):
    store = SessionStore(tmp_path / "nested" / "data")
    assert store.sessions_dir.is_dir()
