"""Persistence for video generation tasks keyed by the provider task id.

Terminal transitions are conditional updates guarded on the current state, so
concurrent deliveries for the same task race on the database row and exactly
one of them observes ``transitioned=True``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import delete, desc, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.storage.models import VideoTask


STATE_PENDING = "pending"
STATE_PROCESSING = "processing"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
ACTIVE_STATES = (STATE_PENDING, STATE_PROCESSING)
TERMINAL_STATES = (STATE_COMPLETED, STATE_FAILED)
PROVIDERS = {"veo3", "runway", "legacy"}


class DuplicateTaskError(RuntimeError):
    """Raised when a record for the provider task id already exists."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Video task already exists: {task_id}")


class TaskNotFoundError(LookupError):
    """Raised when no record exists for the provider task id."""


class InvalidTransitionError(ValueError):
    """Raised when a transition request would break the task invariants."""


@dataclass(frozen=True)
class TaskResult:
    video_url: str
    thumbnail_url: Optional[str] = None
    resolution: Optional[str] = None


@dataclass(frozen=True)
class TransitionResult:
    task: VideoTask
    transitioned: bool


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def request_parameters(task: VideoTask) -> Dict[str, Any]:
    try:
        loaded = json.loads(task.request_parameters_json or "{}")
    except ValueError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def task_result(task: VideoTask) -> Optional[TaskResult]:
    if task.state != STATE_COMPLETED or not task.video_url:
        return None
    return TaskResult(video_url=task.video_url, thumbnail_url=task.thumbnail_url, resolution=task.resolution)


def find_by_task_id(session: Session, task_id: str) -> Optional[VideoTask]:
    return session.scalar(select(VideoTask).where(VideoTask.task_id == task_id))


def _require(session: Session, task_id: str) -> VideoTask:
    task = find_by_task_id(session, task_id)
    if task is None:
        raise TaskNotFoundError(f"Video task not found: {task_id}")
    return task


def create_task(
    session: Session,
    *,
    task_id: str,
    owner_user_id: Optional[str],
    provider: str,
    parameters: Dict[str, Any],
    credit_cost: int,
    state: str = STATE_PROCESSING,
    internal_id: Optional[str] = None,
) -> VideoTask:
    if not task_id:
        raise ValueError("task_id is required")
    if provider not in PROVIDERS:
        raise ValueError(f"Unsupported provider: {provider}")
    if state not in ACTIVE_STATES:
        raise InvalidTransitionError("New tasks must start pending or processing")
    if credit_cost < 0:
        raise ValueError("credit_cost must not be negative")

    task = VideoTask(
        id=internal_id or str(uuid.uuid4()),
        task_id=task_id,
        owner_user_id=owner_user_id,
        provider=provider,
        state=state,
        request_parameters_json=_json_dumps(parameters),
        credit_cost=credit_cost,
    )
    session.add(task)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if find_by_task_id(session, task_id) is not None:
            raise DuplicateTaskError(task_id) from exc
        raise
    return task


def adopt_orphan(
    session: Session,
    *,
    task_id: str,
    owner_user_id: str,
    parameters: Dict[str, Any],
    credit_cost: int,
) -> TransitionResult:
    """Attach owner, parameters and cost to a record created before dispatch persisted.

    Only ownerless records are adopted; any other existing record is returned
    unchanged with ``transitioned=False``.
    """

    result = session.execute(
        update(VideoTask)
        .where(VideoTask.task_id == task_id, VideoTask.owner_user_id.is_(None))
        .values(
            owner_user_id=owner_user_id,
            request_parameters_json=_json_dumps(parameters),
            credit_cost=credit_cost,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    task = _require(session, task_id)
    session.refresh(task)
    return TransitionResult(task=task, transitioned=result.rowcount == 1)


def mark_completed(session: Session, task_id: str, result: TaskResult) -> TransitionResult:
    """Move an active task to ``completed``; terminal tasks are returned unchanged."""

    if not result.video_url:
        raise InvalidTransitionError("A completed task requires a video url")

    outcome = session.execute(
        update(VideoTask)
        .where(VideoTask.task_id == task_id, VideoTask.state.in_(ACTIVE_STATES))
        .values(
            state=STATE_COMPLETED,
            video_url=result.video_url,
            thumbnail_url=result.thumbnail_url or result.video_url,
            resolution=result.resolution,
            completed_at=_now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    task = _require(session, task_id)
    session.refresh(task)
    return TransitionResult(task=task, transitioned=outcome.rowcount == 1)


def mark_failed(
    session: Session,
    task_id: str,
    *,
    reason: str,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> TransitionResult:
    """Move an active task to ``failed``; terminal tasks are returned unchanged."""

    if not reason:
        raise InvalidTransitionError("A failed task requires a failure reason")

    outcome = session.execute(
        update(VideoTask)
        .where(VideoTask.task_id == task_id, VideoTask.state.in_(ACTIVE_STATES))
        .values(
            state=STATE_FAILED,
            failure_reason=reason[:40],
            error_code=str(error_code)[:16] if error_code else None,
            error_message=error_message[:255] if error_message else None,
            completed_at=_now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    task = _require(session, task_id)
    session.refresh(task)
    return TransitionResult(task=task, transitioned=outcome.rowcount == 1)


def mark_media_processed(session: Session, task_id: str, *, hosted_video_path: Optional[str]) -> bool:
    outcome = session.execute(
        update(VideoTask)
        .where(
            VideoTask.task_id == task_id,
            VideoTask.state == STATE_COMPLETED,
            VideoTask.media_processed_at.is_(None),
        )
        .values(media_processed_at=_now_utc(), hosted_video_path=hosted_video_path)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return outcome.rowcount == 1


def list_for_owner(session: Session, *, owner_user_id: str, limit: int = 20) -> List[VideoTask]:
    safe_limit = max(1, min(limit, 100))
    statement = (
        select(VideoTask)
        .where(VideoTask.owner_user_id == owner_user_id)
        .order_by(desc(VideoTask.created_at))
        .limit(safe_limit)
    )
    return list(session.scalars(statement).all())


def delete_task(session: Session, task_id: str) -> bool:
    """Administrative cleanup. Normal operation never deletes tasks."""

    outcome = session.execute(delete(VideoTask).where(VideoTask.task_id == task_id))
    session.commit()
    return outcome.rowcount == 1
