"""Normalization of provider callback and status payloads.

Each provider tag owns exactly one payload shape. The tag comes from the route
that received the payload, never from sniffing its fields.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from src.providers.base import (
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    REASON_CONTENT_POLICY,
    REASON_INVALID_FORMAT,
    REASON_INVALID_REQUEST,
    REASON_QUOTA_EXCEEDED,
    REASON_SERVER_ERROR,
    MalformedPayloadError,
    NormalizedResult,
    PollStatus,
)


MISSING_RESULT_URL = "missing result URL"

_CONTENT_POLICY_PHRASES = ("inappropriate content", "content polic", "violating")
_FORMAT_PHRASES = ("format",)
_QUOTA_PHRASES = ("quota", "limit")


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first_url(values: Any) -> Optional[str]:
    if not isinstance(values, list):
        return None
    for item in values:
        text = _as_text(item)
        if text:
            return text
    return None


def _object(payload: Any, context: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedPayloadError(f"{context} must be a JSON object")
    return payload


def classify_failure(code: Optional[int], message: Optional[str]) -> str:
    """Best-effort mapping of a provider error to a small fixed category set."""

    text = (message or "").lower()
    if any(phrase in text for phrase in _CONTENT_POLICY_PHRASES):
        return REASON_CONTENT_POLICY
    if any(phrase in text for phrase in _FORMAT_PHRASES):
        return REASON_INVALID_FORMAT
    if any(phrase in text for phrase in _QUOTA_PHRASES):
        return REASON_QUOTA_EXCEEDED
    if code is not None and code >= 500:
        return REASON_SERVER_ERROR
    return REASON_INVALID_REQUEST


def _failure(task_id: str, code: Optional[int], message: Optional[str]) -> NormalizedResult:
    return NormalizedResult(
        task_id=task_id,
        outcome=OUTCOME_FAILURE,
        error_message=message or "generation failed",
        error_code=str(code) if code is not None else None,
        failure_reason=classify_failure(code, message),
    )


def _missing_url(task_id: str) -> NormalizedResult:
    return NormalizedResult(
        task_id=task_id,
        outcome=OUTCOME_FAILURE,
        error_message=MISSING_RESULT_URL,
        error_code="500",
        failure_reason=REASON_SERVER_ERROR,
    )


def normalize_flat_callback(payload: Any) -> NormalizedResult:
    """``{code, msg, data: {task_id, video_id, video_url, image_url}}``."""

    body = _object(payload, "callback payload")
    data = body.get("data")
    data = data if isinstance(data, dict) else {}
    task_id = _as_text(data.get("task_id"))
    if not task_id:
        raise MalformedPayloadError("callback payload missing data.task_id")

    code = _as_int(body.get("code"))
    message = _as_text(body.get("msg"))
    if code != 200:
        return _failure(task_id, code, message)

    video_url = _as_text(data.get("video_url"))
    if not video_url:
        return _missing_url(task_id)
    return NormalizedResult(
        task_id=task_id,
        outcome=OUTCOME_SUCCESS,
        video_url=video_url,
        thumbnail_url=_as_text(data.get("image_url")) or video_url,
    )


def normalize_nested_callback(payload: Any) -> NormalizedResult:
    """``{code, msg, data: {taskId, info: {resultUrls, originUrls, resolution}, fallbackFlag}}``."""

    body = _object(payload, "callback payload")
    data = body.get("data")
    data = data if isinstance(data, dict) else {}
    task_id = _as_text(data.get("taskId"))
    if not task_id:
        raise MalformedPayloadError("callback payload missing data.taskId")

    code = _as_int(body.get("code"))
    message = _as_text(body.get("msg"))
    if code != 200:
        return _failure(task_id, code, message)

    info = data.get("info")
    info = info if isinstance(info, dict) else {}
    video_url = _first_url(info.get("resultUrls"))
    if not video_url:
        return _missing_url(task_id)
    return NormalizedResult(
        task_id=task_id,
        outcome=OUTCOME_SUCCESS,
        video_url=video_url,
        thumbnail_url=_first_url(info.get("originUrls")) or video_url,
        resolution=_as_text(info.get("resolution")),
    )


CALLBACK_NORMALIZERS: Dict[str, Callable[[Any], NormalizedResult]] = {
    "runway": normalize_flat_callback,
    "legacy": normalize_flat_callback,
    "veo3": normalize_nested_callback,
}


def normalize_callback(provider: str, payload: Any) -> NormalizedResult:
    normalizer = CALLBACK_NORMALIZERS.get(provider)
    if normalizer is None:
        raise MalformedPayloadError(f"Unsupported provider: {provider}")
    return normalizer(payload)


def _status_envelope(payload: Any) -> Dict[str, Any]:
    body = _object(payload, "status payload")
    code = _as_int(body.get("code"))
    if code != 200:
        raise MalformedPayloadError(f"status payload code={code} msg={body.get('msg')}")
    data = body.get("data")
    if not isinstance(data, dict):
        raise MalformedPayloadError("status payload missing data")
    return data


def normalize_runway_record(task_id: str, payload: Any) -> PollStatus:
    """``/runway/record-detail``: ``data.state`` plus ``videoInfo`` or ``failMsg``."""

    data = _status_envelope(payload)
    state = (_as_text(data.get("state")) or "").lower()

    if state == "success":
        video_info = data.get("videoInfo")
        video_info = video_info if isinstance(video_info, dict) else {}
        video_url = _as_text(video_info.get("videoUrl"))
        if not video_url:
            return PollStatus(task_id=task_id, state="failed", progress=0, result=_missing_url(task_id))
        result = NormalizedResult(
            task_id=task_id,
            outcome=OUTCOME_SUCCESS,
            video_url=video_url,
            thumbnail_url=_as_text(video_info.get("imageUrl")) or video_url,
        )
        return PollStatus(task_id=task_id, state="completed", progress=100, result=result)
    if state in {"fail", "failed"}:
        code = _as_int(data.get("failCode"))
        message = _as_text(data.get("failMsg")) or "Generation failed"
        return PollStatus(task_id=task_id, state="failed", progress=0, result=_failure(task_id, code, message))
    if state in {"processing", "running", "generating"}:
        return PollStatus(task_id=task_id, state="processing", progress=50)
    return PollStatus(task_id=task_id, state="pending", progress=10)


def normalize_veo3_record(task_id: str, payload: Any) -> PollStatus:
    """``/veo/record-info``: ``successFlag`` 0 running, 1 success, 2/3 failed."""

    data = _status_envelope(payload)
    flag = _as_int(data.get("successFlag"))

    if flag == 1:
        response = data.get("response")
        response = response if isinstance(response, dict) else {}
        video_url = _first_url(response.get("resultUrls"))
        if not video_url:
            return PollStatus(task_id=task_id, state="failed", progress=0, result=_missing_url(task_id))
        result = NormalizedResult(
            task_id=task_id,
            outcome=OUTCOME_SUCCESS,
            video_url=video_url,
            thumbnail_url=_first_url(response.get("originUrls")) or video_url,
            resolution=_as_text(response.get("resolution")),
        )
        return PollStatus(task_id=task_id, state="completed", progress=100, result=result)
    if flag in {2, 3}:
        code = _as_int(data.get("errorCode"))
        message = _as_text(data.get("errorMessage")) or "Generation failed"
        return PollStatus(task_id=task_id, state="failed", progress=0, result=_failure(task_id, code, message))
    if flag == 0:
        return PollStatus(task_id=task_id, state="processing", progress=50)
    return PollStatus(task_id=task_id, state="pending", progress=10)


STATUS_NORMALIZERS: Dict[str, Callable[[str, Any], PollStatus]] = {
    "runway": normalize_runway_record,
    "veo3": normalize_veo3_record,
}


def supported_callback_providers() -> List[str]:
    return sorted(CALLBACK_NORMALIZERS)
