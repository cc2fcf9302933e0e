"""Video task lifecycle: dispatch, notification ingestion, polling and refunds.

Push (webhook) and pull (status poll) outcomes both go through
``apply_normalized_result``; the conditional transitions in the task store and
the per-task refund key in the ledger make either path safe to repeat.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, Callable, Optional, Tuple
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.core.config import SUPPORTED_PROVIDERS, get_settings
from src.core.logger import bind_task_context, get_logger
from src.core.metrics import (
    record_credit_refund,
    record_generation_dispatched,
    record_notification,
    record_task_transition,
)
from src.core.observability import capture_exception
from src.credits.ledger import (
    LedgerResult,
    debit_credits,
    find_refund_for_task,
    refund_credits,
)
from src.generation.params import (
    GenerationParams,
    InvalidParametersError,
    build_generation_prompt,
    calculate_credit_cost,
)
from src.providers.base import (
    FAILURE_REASONS,
    REASON_SERVER_ERROR,
    DispatchRequest,
    MalformedPayloadError,
    NormalizedResult,
    ProviderError,
    VideoProvider,
)
from src.providers.factory import get_video_provider
from src.providers.normalize import normalize_callback
from src.storage.models import ProviderNotification, VideoTask
from src.tasks.store import (
    STATE_COMPLETED,
    STATE_FAILED,
    STATE_PENDING,
    STATE_PROCESSING,
    TERMINAL_STATES,
    DuplicateTaskError,
    TaskNotFoundError,
    TaskResult,
    TransitionResult,
    adopt_orphan,
    create_task,
    find_by_task_id,
    mark_completed,
    mark_failed,
    task_result,
)


ProviderFactory = Callable[[str], VideoProvider]

PROGRESS_BY_STATE = {
    STATE_PENDING: 10,
    STATE_PROCESSING: 50,
    STATE_COMPLETED: 100,
    STATE_FAILED: 0,
}

NOTIFICATION_PROCESSED = "processed"
NOTIFICATION_MALFORMED = "malformed"
NOTIFICATION_FAILED = "failed"

logger = get_logger("asmrgen.generation")


class ProviderDispatchFailedError(RuntimeError):
    """Raised when the provider did not accept a request; the debit was refunded."""

    def __init__(self, message: str, *, provider: str, refunded_credits: int, remaining_credits: int) -> None:
        self.provider = provider
        self.refunded_credits = refunded_credits
        self.remaining_credits = remaining_credits
        super().__init__(message)


class TaskPersistFailedError(RuntimeError):
    """Raised when an accepted dispatch could not be recorded; the debit was refunded."""

    def __init__(self, message: str, *, task_id: str, refunded_credits: int, remaining_credits: int) -> None:
        self.task_id = task_id
        self.refunded_credits = refunded_credits
        self.remaining_credits = remaining_credits
        super().__init__(message)


class TaskAccessDeniedError(PermissionError):
    """Raised when a user addresses a task owned by someone else."""


class RefundNotAllowedError(ValueError):
    """Raised when a manual refund targets a task that is not refundable."""


@dataclass(frozen=True)
class GenerationOutcome:
    task: VideoTask
    credits_deducted: int
    remaining_credits: int
    estimated_seconds: int


@dataclass(frozen=True)
class NotificationAck:
    status: str
    provider: str
    task_id: Optional[str] = None
    state: Optional[str] = None
    transitioned: bool = False


@dataclass(frozen=True)
class TaskStatusView:
    task: VideoTask
    progress: int
    credits_refunded: bool = False
    transitioned: bool = False

    @property
    def status(self) -> str:
        return self.task.state

    @property
    def result(self) -> Optional[TaskResult]:
        return task_result(self.task)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _payload_json(payload: Any) -> str:
    try:
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return json.dumps({"unserializable": str(payload)})


def build_callback_url(provider: str) -> str:
    base_url = get_settings().app_public_base_url.strip().rstrip("/")
    return f"{base_url}/callbacks/kie/{provider}"


def resolve_provider_name(provider: Optional[str]) -> str:
    normalized = (provider or get_settings().default_video_provider).strip().lower()
    if normalized not in SUPPORTED_PROVIDERS:
        raise InvalidParametersError("provider must be one of: " + ", ".join(sorted(SUPPORTED_PROVIDERS)))
    return normalized


def refund_failed_task(session: Session, task: VideoTask, *, reason: str = "task_failed") -> Optional[LedgerResult]:
    """Return the task's reserved credits to its owner, at most once per task.

    Tasks without an owner or without a cost are never refunded.
    """

    if task.state != STATE_FAILED or not task.owner_user_id or task.credit_cost <= 0:
        return None

    refund = refund_credits(
        session,
        user_id=task.owner_user_id,
        amount=task.credit_cost,
        description=f"Refund for failed video generation {task.task_id}",
        related_task_id=task.task_id,
    )
    if refund.applied:
        record_credit_refund(reason=reason)
        logger.info(
            "video_task_refunded",
            task_id=task.task_id,
            user_id=task.owner_user_id,
            amount=task.credit_cost,
            reason=reason,
        )
    return refund


def _persist_dispatched_task(
    session: Session,
    *,
    task_id: str,
    user_id: str,
    provider: str,
    params: GenerationParams,
    credit_cost: int,
    internal_id: str,
) -> Tuple[VideoTask, Optional[LedgerResult]]:
    try:
        task = create_task(
            session,
            task_id=task_id,
            owner_user_id=user_id,
            provider=provider,
            parameters=params.as_record(),
            credit_cost=credit_cost,
            state=STATE_PROCESSING,
            internal_id=internal_id,
        )
        return task, None
    except DuplicateTaskError:
        pass

    adoption = adopt_orphan(
        session,
        task_id=task_id,
        owner_user_id=user_id,
        parameters=params.as_record(),
        credit_cost=credit_cost,
    )
    task = adoption.task
    logger.info("video_task_adopted", task_id=task.task_id, state=task.state, adopted=adoption.transitioned)
    if not adoption.transitioned:
        logger.warning("video_task_duplicate_dispatch", task_id=task_id, owner_user_id=task.owner_user_id)
        return task, None
    if task.state == STATE_FAILED:
        return task, refund_failed_task(session, task, reason="adopted_failed")
    return task, None


def request_generation(
    session: Session,
    *,
    user_id: str,
    params: GenerationParams,
    provider: Optional[str] = None,
    provider_factory: Optional[ProviderFactory] = None,
) -> GenerationOutcome:
    """Price, debit, dispatch and persist one generation request.

    Pricing and validation errors happen before any credit is touched. A
    provider failure after the debit, or a database failure while recording an
    accepted task, refunds the debit before raising.
    """

    provider_name = resolve_provider_name(provider)
    credit_cost = calculate_credit_cost(params.duration, params.quality)
    internal_id = str(uuid.uuid4())
    settings = get_settings()

    debit = debit_credits(
        session,
        user_id=user_id,
        amount=credit_cost,
        description=f"Video generation ({params.duration}s {params.quality}, {provider_name})",
        reference_id=internal_id,
    )

    dispatch_request = DispatchRequest(
        prompt=build_generation_prompt(params),
        duration=params.duration,
        quality=params.quality,
        aspect_ratio=params.aspect_ratio,
        callback_url=build_callback_url(provider_name),
        image_url=params.image_url,
    )
    try:
        dispatch = (provider_factory or get_video_provider)(provider_name).start_generation(dispatch_request)
    except ProviderError as exc:
        refund = refund_credits(
            session,
            user_id=user_id,
            amount=credit_cost,
            description=f"Refund: {provider_name} dispatch failed",
            idempotency_key=f"refund:dispatch:{internal_id}",
        )
        record_generation_dispatched(provider=provider_name, status="failed")
        record_credit_refund(reason="dispatch_failed")
        logger.warning(
            "video_dispatch_failed",
            user_id=user_id,
            provider=provider_name,
            credit_cost=credit_cost,
            error=str(exc),
        )
        raise ProviderDispatchFailedError(
            str(exc),
            provider=provider_name,
            refunded_credits=credit_cost,
            remaining_credits=refund.new_balance,
        ) from exc

    bind_task_context(dispatch.task_id, provider=provider_name)
    record_generation_dispatched(provider=provider_name, status="accepted")
    remaining_credits = debit.new_balance
    try:
        task, adopted_refund = _persist_dispatched_task(
            session,
            task_id=dispatch.task_id,
            user_id=user_id,
            provider=provider_name,
            params=params,
            credit_cost=credit_cost,
            internal_id=internal_id,
        )
    except SQLAlchemyError as exc:
        session.rollback()
        capture_exception(exc)
        refund = refund_credits(
            session,
            user_id=user_id,
            amount=credit_cost,
            description=f"Refund: video task {dispatch.task_id} could not be recorded",
            idempotency_key=f"refund:dispatch:{internal_id}",
        )
        record_credit_refund(reason="persist_failed")
        logger.error(
            "video_task_persist_failed",
            task_id=dispatch.task_id,
            user_id=user_id,
            provider=provider_name,
            credit_cost=credit_cost,
            error=str(exc),
        )
        raise TaskPersistFailedError(
            f"video task {dispatch.task_id} could not be recorded",
            task_id=dispatch.task_id,
            refunded_credits=credit_cost,
            remaining_credits=refund.new_balance,
        ) from exc
    if adopted_refund is not None:
        remaining_credits = adopted_refund.new_balance

    logger.info(
        "video_task_dispatched",
        task_id=task.task_id,
        user_id=user_id,
        provider=provider_name,
        credit_cost=credit_cost,
    )
    return GenerationOutcome(
        task=task,
        credits_deducted=credit_cost,
        remaining_credits=remaining_credits,
        estimated_seconds=settings.generation_estimated_seconds,
    )


def apply_normalized_result(session: Session, result: NormalizedResult, *, provider: str) -> TransitionResult:
    """Drive a task to its terminal state from one normalized outcome.

    Unknown task ids get a best-effort ownerless record first, so the outcome
    is not lost when the notification beats the dispatch path's insert.
    """

    bind_task_context(result.task_id, provider=provider)
    if find_by_task_id(session, result.task_id) is None:
        try:
            create_task(
                session,
                task_id=result.task_id,
                owner_user_id=None,
                provider=provider,
                parameters={},
                credit_cost=0,
            )
            logger.info("video_task_created_from_notification", task_id=result.task_id)
        except DuplicateTaskError:
            pass

    if result.succeeded:
        transition = mark_completed(
            session,
            result.task_id,
            TaskResult(
                video_url=result.video_url or "",
                thumbnail_url=result.thumbnail_url,
                resolution=result.resolution,
            ),
        )
    else:
        transition = mark_failed(
            session,
            result.task_id,
            reason=result.failure_reason if result.failure_reason in FAILURE_REASONS else REASON_SERVER_ERROR,
            error_code=result.error_code,
            error_message=result.error_message,
        )
        refund_failed_task(session, transition.task)

    if transition.transitioned:
        record_task_transition(provider=provider, state=transition.task.state)
        logger.info(
            "video_task_" + transition.task.state,
            task_id=transition.task.task_id,
            failure_reason=transition.task.failure_reason,
        )
    else:
        logger.info("video_task_notification_ignored", task_id=transition.task.task_id, state=transition.task.state)
    return transition


def _record_notification(
    session: Session,
    *,
    provider: str,
    source: str,
    status: str,
    payload: Any,
    task_id: Optional[str] = None,
    outcome: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    session.add(
        ProviderNotification(
            provider=provider,
            source=source,
            task_id=task_id,
            outcome=outcome,
            status=status,
            payload_json=_payload_json(payload),
            error_message=error_message[:255] if error_message else None,
            processed_at=_now_utc(),
        )
    )
    session.commit()
    record_notification(provider=provider, status=status)


def _ingest_result(
    session: Session,
    result: NormalizedResult,
    *,
    provider: str,
    source: str,
    payload: Any,
) -> NotificationAck:
    try:
        transition = apply_normalized_result(session, result, provider=provider)
    except Exception as exc:
        session.rollback()
        capture_exception(exc)
        logger.error(
            "provider_notification_failed",
            provider=provider,
            source=source,
            task_id=result.task_id,
            error=str(exc),
        )
        _record_notification(
            session,
            provider=provider,
            source=source,
            status=NOTIFICATION_FAILED,
            payload=payload,
            task_id=result.task_id,
            outcome=result.outcome,
            error_message=str(exc),
        )
        return NotificationAck(status=NOTIFICATION_FAILED, provider=provider, task_id=result.task_id)

    _record_notification(
        session,
        provider=provider,
        source=source,
        status=NOTIFICATION_PROCESSED,
        payload=payload,
        task_id=result.task_id,
        outcome=result.outcome,
    )
    return NotificationAck(
        status=NOTIFICATION_PROCESSED,
        provider=provider,
        task_id=result.task_id,
        state=transition.task.state,
        transitioned=transition.transitioned,
    )


def ingest_notification(session: Session, *, provider: str, payload: Any, source: str = "webhook") -> NotificationAck:
    """Normalize and apply one inbound notification; never raises for bad payloads."""

    try:
        result = normalize_callback(provider, payload)
    except MalformedPayloadError as exc:
        logger.warning("provider_notification_malformed", provider=provider, source=source, error=str(exc))
        _record_notification(
            session,
            provider=provider,
            source=source,
            status=NOTIFICATION_MALFORMED,
            payload=payload,
            error_message=str(exc),
        )
        return NotificationAck(status=NOTIFICATION_MALFORMED, provider=provider)

    return _ingest_result(session, result, provider=provider, source=source, payload=payload)


def _require_visible_task(session: Session, *, task_id: str, user_id: Optional[str]) -> VideoTask:
    task = find_by_task_id(session, task_id)
    if task is None:
        raise TaskNotFoundError(f"Video task not found: {task_id}")
    if user_id is None:
        return task
    if task.owner_user_id is None:
        raise TaskNotFoundError(f"Video task not found: {task_id}")
    if task.owner_user_id != user_id:
        raise TaskAccessDeniedError(f"Video task {task_id} belongs to another user")
    return task


def check_status(
    session: Session,
    *,
    task_id: str,
    user_id: Optional[str] = None,
    provider_factory: Optional[ProviderFactory] = None,
) -> TaskStatusView:
    """Read a task, asking the provider only while no terminal record exists."""

    task = _require_visible_task(session, task_id=task_id, user_id=user_id)

    if task.state in TERMINAL_STATES:
        if task.state == STATE_FAILED:
            refund_failed_task(session, task)
        return TaskStatusView(
            task=task,
            progress=PROGRESS_BY_STATE[task.state],
            credits_refunded=find_refund_for_task(session, related_task_id=task.task_id) is not None,
        )

    settings = get_settings()
    if not settings.status_poll_provider_enabled or task.provider not in SUPPORTED_PROVIDERS:
        return TaskStatusView(task=task, progress=PROGRESS_BY_STATE[task.state])

    try:
        poll = (provider_factory or get_video_provider)(task.provider).fetch_status(task.task_id)
    except ProviderError as exc:
        logger.warning("video_status_poll_failed", task_id=task.task_id, provider=task.provider, error=str(exc))
        return TaskStatusView(task=task, progress=PROGRESS_BY_STATE[task.state])

    if not poll.terminal or poll.result is None:
        return TaskStatusView(task=task, progress=poll.progress)

    ack = _ingest_result(
        session,
        poll.result,
        provider=task.provider,
        source="poll",
        payload={"task_id": task.task_id, "state": poll.state},
    )
    refreshed = find_by_task_id(session, task.task_id) or task
    return TaskStatusView(
        task=refreshed,
        progress=PROGRESS_BY_STATE.get(refreshed.state, poll.progress),
        credits_refunded=find_refund_for_task(session, related_task_id=refreshed.task_id) is not None,
        transitioned=ack.transitioned,
    )


def request_manual_refund(session: Session, *, task_id: str, user_id: str) -> LedgerResult:
    """Owner-initiated refund of a failed task; repeated calls return ``applied=False``."""

    task = _require_visible_task(session, task_id=task_id, user_id=user_id)
    if task.state != STATE_FAILED:
        raise RefundNotAllowedError("Only failed tasks can be refunded")
    if task.credit_cost <= 0:
        raise RefundNotAllowedError("Task has no reserved credits")

    refund = refund_failed_task(session, task, reason="manual")
    if refund is None:  # pragma: no cover
        raise RefundNotAllowedError("Task is not refundable")
    return refund
