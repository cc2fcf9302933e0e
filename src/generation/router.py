"""Client-facing video generation routes."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from src.auth.dependencies import require_auth_context, require_role
from src.auth.jwt import ROLE_ADMIN, AuthContext
from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.metrics import record_rate_limit_block
from src.core.rate_limit import get_generation_rate_limiter
from src.credits.ledger import InsufficientCreditsError, LedgerError, UserNotFoundError
from src.generation.media import process_task_media
from src.generation.params import InvalidCombinationError, InvalidParametersError, validate_generation_params
from src.generation.service import (
    ProviderDispatchFailedError,
    RefundNotAllowedError,
    TaskAccessDeniedError,
    TaskPersistFailedError,
    TaskStatusView,
    check_status,
    request_generation,
    request_manual_refund,
    resolve_provider_name,
)
from src.schemas.generation import (
    ErrorResponse,
    GenerateRequest,
    GenerateResponse,
    RefundRequest,
    RefundResponse,
    StatusResponse,
    TaskDeleteResponse,
    TaskListItem,
    TaskListResponse,
    VideoResult,
)
from src.storage.db import get_session
from src.tasks.store import STATE_COMPLETED, TaskNotFoundError, delete_task, list_for_owner


router = APIRouter(prefix="/generate", tags=["generation"])
logger = get_logger("asmrgen.api.generation")


def _error(status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    body = ErrorResponse(error=code, message=message, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True))


def _schedule_media(background_tasks: BackgroundTasks, task_id: str) -> None:
    if get_settings().media_rehost_enabled:
        background_tasks.add_task(process_task_media, task_id)


def _status_response(view: TaskStatusView) -> StatusResponse:
    task = view.task
    result = view.result
    return StatusResponse(
        task_id=task.task_id,
        status=task.state,
        progress=view.progress,
        provider=task.provider,
        result=(
            VideoResult(
                video_url=result.video_url,
                thumbnail_url=result.thumbnail_url,
                resolution=result.resolution,
            )
            if result is not None
            else None
        ),
        error=task.failure_reason,
        credits_refunded=view.credits_refunded,
        created_at=task.created_at,
        completed_at=task.completed_at,
    )


@router.post("", response_model=GenerateResponse)
def generate_video(
    payload: GenerateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
):
    try:
        params = validate_generation_params(
            prompt=payload.prompt,
            triggers=payload.triggers,
            duration=payload.duration,
            quality=payload.quality,
            aspect_ratio=payload.aspect_ratio,
            image_url=payload.image_url,
        )
        provider_name = resolve_provider_name(payload.provider)
    except InvalidCombinationError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, "INVALID_COMBINATION", str(exc))
    except InvalidParametersError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, "INVALID_PARAMETERS", str(exc))

    if get_settings().generation_rate_limit_enabled:
        decision = get_generation_rate_limiter().check(key=auth.user_id)
        if not decision.allowed:
            record_rate_limit_block(kind="generation")
            return _error(
                status.HTTP_429_TOO_MANY_REQUESTS,
                "GENERATION_LIMIT_EXCEEDED",
                "Video generation limit exceeded, try again later",
                {"limit": decision.limit, "resetSeconds": decision.reset_seconds},
            )

    try:
        outcome = request_generation(session, user_id=auth.user_id, params=params, provider=provider_name)
    except InsufficientCreditsError as exc:
        return _error(
            status.HTTP_402_PAYMENT_REQUIRED,
            "INSUFFICIENT_CREDITS",
            "Not enough credits for this video",
            {"required": exc.required, "available": exc.available},
        )
    except UserNotFoundError:
        return _error(
            status.HTTP_402_PAYMENT_REQUIRED,
            "INSUFFICIENT_CREDITS",
            "No credit account for this user",
            {"required": None, "available": 0},
        )
    except ProviderDispatchFailedError as exc:
        return _error(
            status.HTTP_502_BAD_GATEWAY,
            "PROVIDER_DISPATCH_FAILED",
            "Video provider did not accept the request; credits were refunded",
            {"refundedCredits": exc.refunded_credits, "remainingCredits": exc.remaining_credits},
        )
    except TaskPersistFailedError as exc:
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "TASK_PERSIST_FAILED",
            "Video task could not be recorded; credits were refunded",
            {"taskId": exc.task_id, "refundedCredits": exc.refunded_credits, "remainingCredits": exc.remaining_credits},
        )
    except LedgerError as exc:
        logger.error("generation_ledger_error", user_id=auth.user_id, error=str(exc))
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "LEDGER_UNAVAILABLE", "Credits could not be updated")

    return GenerateResponse(
        task_id=outcome.task.task_id,
        status=outcome.task.state,
        provider=outcome.task.provider,
        credits_deducted=outcome.credits_deducted,
        remaining_credits=outcome.remaining_credits,
        estimated_time=outcome.estimated_seconds,
    )


@router.get("/status", response_model=StatusResponse)
def generation_status(
    background_tasks: BackgroundTasks,
    task_id: str = Query(alias="taskId", min_length=1, max_length=128),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
):
    try:
        visible_to = None if auth.role == ROLE_ADMIN else auth.user_id
        view = check_status(session, task_id=task_id, user_id=visible_to)
    except TaskNotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, "TASK_NOT_FOUND", "Video task not found")
    except TaskAccessDeniedError:
        return _error(status.HTTP_403_FORBIDDEN, "ACCESS_DENIED", "Video task belongs to another user")

    if view.transitioned and view.task.state == STATE_COMPLETED:
        _schedule_media(background_tasks, view.task.task_id)
    return _status_response(view)


@router.post("/refund", response_model=RefundResponse)
def refund_generation(
    payload: RefundRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
):
    try:
        refund = request_manual_refund(session, task_id=payload.task_id, user_id=auth.user_id)
    except TaskNotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, "TASK_NOT_FOUND", "Video task not found")
    except TaskAccessDeniedError:
        return _error(status.HTTP_403_FORBIDDEN, "ACCESS_DENIED", "Video task belongs to another user")
    except RefundNotAllowedError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, "REFUND_NOT_ALLOWED", str(exc))

    return RefundResponse(
        task_id=payload.task_id,
        refunded_credits=abs(refund.amount),
        new_balance=refund.new_balance,
        already_refunded=not refund.applied,
    )


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> TaskListResponse:
    tasks = list_for_owner(session, owner_user_id=auth.user_id, limit=limit)
    return TaskListResponse(
        items=[
            TaskListItem(
                task_id=task.task_id,
                status=task.state,
                provider=task.provider,
                credit_cost=task.credit_cost,
                failure_reason=task.failure_reason,
                video_url=task.video_url,
                thumbnail_url=task.thumbnail_url,
                created_at=task.created_at,
                completed_at=task.completed_at,
            )
            for task in tasks
        ]
    )


@router.delete("/tasks/{task_id}", response_model=TaskDeleteResponse)
def admin_delete_task(
    task_id: str,
    auth: AuthContext = Depends(require_role(ROLE_ADMIN)),
    session: Session = Depends(get_session),
):
    deleted = delete_task(session, task_id)
    if not deleted:
        return _error(status.HTTP_404_NOT_FOUND, "TASK_NOT_FOUND", "Video task not found")
    logger.info("video_task_deleted", task_id=task_id, admin_user_id=auth.user_id)
    return TaskDeleteResponse(success=True, task_id=task_id)
