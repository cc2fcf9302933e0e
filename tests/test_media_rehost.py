from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from src.core.config import get_settings
from src.generation.media import process_task_media
from src.tasks.locks import TaskLockManager, task_lock_key
from src.tasks.store import TaskResult, create_task, find_by_task_id, mark_completed


@pytest.fixture()
def media_root(monkeypatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("MEDIA_REHOST_ENABLED", "true")
    monkeypatch.setenv("MEDIA_STORAGE_PATH", str(tmp_path))
    get_settings.cache_clear()
    return tmp_path


def _completed_task(session_factory, task_id: str) -> None:
    with session_factory() as session:
        create_task(session, task_id=task_id, owner_user_id=None, provider="runway", parameters={}, credit_cost=0)
        mark_completed(session, task_id, TaskResult(video_url=f"https://cdn.example/{task_id}.mp4"))


def test_completed_task_video_is_copied_once(media_root, session_factory, fake_redis) -> None:
    _completed_task(session_factory, "rw/media-1")
    downloads: list[str] = []

    def downloader(url: str) -> bytes:
        downloads.append(url)
        return b"video-bytes"

    manager = TaskLockManager(fake_redis, ttl_seconds=60)
    first = process_task_media("rw/media-1", session_factory=session_factory, lock_manager=manager, downloader=downloader)
    second = process_task_media("rw/media-1", session_factory=session_factory, lock_manager=manager, downloader=downloader)

    assert first is True
    assert second is False
    assert downloads == ["https://cdn.example/rw/media-1.mp4"]
    assert (media_root / "videos" / "rw_media-1.mp4").read_bytes() == b"video-bytes"
    assert fake_redis.get(task_lock_key("rw/media-1")) is None

    with session_factory() as session:
        task = find_by_task_id(session, "rw/media-1")
    assert task.hosted_video_path == "videos/rw_media-1.mp4"
    assert task.media_processed_at is not None


def test_held_lease_skips_processing(media_root, session_factory, fake_redis) -> None:
    _completed_task(session_factory, "rw-media-2")
    manager = TaskLockManager(fake_redis, ttl_seconds=60)
    held = manager.acquire("rw-media-2")

    processed = process_task_media(
        "rw-media-2",
        session_factory=session_factory,
        lock_manager=manager,
        downloader=lambda url: pytest.fail("download must not run while the lease is held"),
    )

    assert processed is False
    assert held is not None
    assert fake_redis.get(task_lock_key("rw-media-2")) == held.token


def test_download_failure_releases_lease_and_leaves_marker_unset(media_root, session_factory, fake_redis) -> None:
    _completed_task(session_factory, "rw-media-3")

    def downloader(url: str) -> bytes:
        raise httpx.ConnectError("unreachable")

    manager = TaskLockManager(fake_redis, ttl_seconds=60)
    processed = process_task_media("rw-media-3", session_factory=session_factory, lock_manager=manager, downloader=downloader)

    assert processed is False
    assert fake_redis.get(task_lock_key("rw-media-3")) is None
    with session_factory() as session:
        assert find_by_task_id(session, "rw-media-3").media_processed_at is None


def test_disabled_or_unfinished_tasks_are_skipped(monkeypatch, media_root, session_factory, fake_redis) -> None:
    with session_factory() as session:
        create_task(session, task_id="rw-media-4", owner_user_id=None, provider="runway", parameters={}, credit_cost=0)
    manager = TaskLockManager(fake_redis, ttl_seconds=60)

    assert process_task_media("rw-media-4", session_factory=session_factory, lock_manager=manager) is False

    monkeypatch.setenv("MEDIA_REHOST_ENABLED", "false")
    get_settings.cache_clear()
    _completed_task(session_factory, "rw-media-5")
    assert process_task_media("rw-media-5", session_factory=session_factory, lock_manager=manager) is False


def test_lock_manager_release_requires_owner_token(fake_redis) -> None:
    manager = TaskLockManager(fake_redis, ttl_seconds=30)
    handle = manager.acquire("rw-lock")

    assert handle is not None
    assert manager.acquire("rw-lock") is None
    assert manager.release("rw-lock", "someone-else") is False
    assert handle.release() is True
    assert manager.acquire("rw-lock") is not None

    with pytest.raises(ValueError):
        TaskLockManager(fake_redis, ttl_seconds=0)
