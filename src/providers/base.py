"""Provider contracts for third-party video generation backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"

REASON_CONTENT_POLICY = "content_policy_violation"
REASON_INVALID_FORMAT = "invalid_format"
REASON_QUOTA_EXCEEDED = "quota_exceeded"
REASON_SERVER_ERROR = "server_error"
REASON_INVALID_REQUEST = "invalid_request"
FAILURE_REASONS = {
    REASON_CONTENT_POLICY,
    REASON_INVALID_FORMAT,
    REASON_QUOTA_EXCEEDED,
    REASON_SERVER_ERROR,
    REASON_INVALID_REQUEST,
}


class ProviderError(RuntimeError):
    """Base error for provider interactions."""


class ProviderDispatchError(ProviderError):
    """Raised when the provider does not accept a generation request."""


class ProviderStatusError(ProviderError):
    """Raised when the provider status endpoint cannot be read."""


class MalformedPayloadError(ValueError):
    """Raised when a callback or status payload cannot be normalized."""


@dataclass(frozen=True)
class NormalizedResult:
    task_id: str
    outcome: str
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    resolution: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS


@dataclass(frozen=True)
class DispatchRequest:
    prompt: str
    duration: int
    quality: str
    aspect_ratio: str
    callback_url: str
    image_url: Optional[str] = None


@dataclass(frozen=True)
class DispatchResult:
    task_id: str
    provider: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PollStatus:
    """Provider-side view of a task; ``result`` is set only for terminal states."""

    task_id: str
    state: str
    progress: int
    result: Optional[NormalizedResult] = None

    @property
    def terminal(self) -> bool:
        return self.result is not None


class VideoProvider(Protocol):
    provider_name: str

    def start_generation(self, request: DispatchRequest) -> DispatchResult:
        raise NotImplementedError

    def fetch_status(self, task_id: str) -> PollStatus:
        raise NotImplementedError
