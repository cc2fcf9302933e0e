"""Background re-hosting of completed task videos into local storage."""

from __future__ import annotations

from pathlib import Path
import re
from typing import Callable, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from src.core.config import get_settings
from src.core.logger import bind_task_context, get_logger
from src.core.observability import capture_exception
from src.storage.db import session_scope
from src.storage.redis_client import get_client
from src.tasks.locks import TaskLockManager
from src.tasks.store import STATE_COMPLETED, find_by_task_id, mark_media_processed


Downloader = Callable[[str], bytes]

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")

logger = get_logger("asmrgen.media")


def _media_storage_root() -> Path:
    configured = Path(get_settings().media_storage_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


def _download_video(url: str) -> bytes:
    settings = get_settings()
    with httpx.Client(timeout=settings.media_download_timeout_seconds, follow_redirects=True) as client:
        response = client.get(url)
        response.raise_for_status()
        return response.content


def store_video_bytes(*, task_id: str, content: bytes) -> str:
    """Write the video under the storage root and return its relative path."""

    storage_root = _media_storage_root() / "videos"
    storage_root.mkdir(parents=True, exist_ok=True)
    filename = f"{_SAFE_NAME.sub('_', task_id)}.mp4"
    (storage_root / filename).write_bytes(content)
    return f"videos/{filename}"


def process_task_media(
    task_id: str,
    *,
    session_factory: Optional[sessionmaker] = None,
    lock_manager: Optional[TaskLockManager] = None,
    downloader: Downloader = _download_video,
) -> bool:
    """Copy a completed task's video once across all instances.

    The Redis lease stops concurrent copies; ``media_processed_at`` stops
    repeated ones after the lease expires. Errors are logged and reported,
    never raised, since this runs after the response was sent.
    """

    settings = get_settings()
    if not settings.media_rehost_enabled:
        return False

    bind_task_context(task_id)
    manager = lock_manager or TaskLockManager(get_client(), ttl_seconds=settings.task_lock_ttl_seconds)
    handle = manager.acquire(task_id)
    if handle is None:
        logger.info("media_processing_already_running", task_id=task_id)
        return False

    try:
        with session_scope(session_factory) as session:
            task = find_by_task_id(session, task_id)
            if task is None or task.state != STATE_COMPLETED or not task.video_url:
                return False
            if task.media_processed_at is not None:
                return False

            content = downloader(task.video_url)
            hosted_path = store_video_bytes(task_id=task_id, content=content)
            processed = mark_media_processed(session, task_id, hosted_video_path=hosted_path)
            logger.info("media_processing_completed", task_id=task_id, hosted_video_path=hosted_path, bytes=len(content))
            return processed
    except (httpx.HTTPError, OSError, SQLAlchemyError) as exc:
        capture_exception(exc)
        logger.error("media_processing_failed", task_id=task_id, error=str(exc))
        return False
    finally:
        handle.release()
