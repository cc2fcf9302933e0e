"""Video generation provider integrations."""

from src.providers.base import (
    DispatchRequest,
    DispatchResult,
    MalformedPayloadError,
    NormalizedResult,
    PollStatus,
    ProviderDispatchError,
    ProviderError,
    ProviderStatusError,
    VideoProvider,
)
from src.providers.factory import get_video_provider, reset_video_provider_cache
from src.providers.kie_client import KieVideoProvider
from src.providers.mock_provider import MockVideoProvider
from src.providers.normalize import classify_failure, normalize_callback

__all__ = [
    "DispatchRequest",
    "DispatchResult",
    "KieVideoProvider",
    "MalformedPayloadError",
    "MockVideoProvider",
    "NormalizedResult",
    "PollStatus",
    "ProviderDispatchError",
    "ProviderError",
    "ProviderStatusError",
    "VideoProvider",
    "classify_failure",
    "get_video_provider",
    "normalize_callback",
    "reset_video_provider_cache",
]
