"""Factory to resolve the video provider for a provider tag."""

from __future__ import annotations

from functools import lru_cache

from src.core.config import SUPPORTED_PROVIDERS, get_settings
from src.providers.base import VideoProvider
from src.providers.kie_client import KieVideoProvider
from src.providers.mock_provider import MockVideoProvider


@lru_cache(maxsize=4)
def get_video_provider(provider_name: str) -> VideoProvider:
    normalized = provider_name.strip().lower()
    if normalized not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unsupported video provider: {provider_name}")

    settings = get_settings()
    if settings.video_provider_mode.strip().lower() == "mock":
        return MockVideoProvider(provider_name=normalized)
    return KieVideoProvider(
        provider_name=normalized,
        api_key=settings.kie_api_key,
        base_url=settings.kie_base_url,
        timeout_seconds=settings.kie_timeout_seconds,
        max_retries=settings.kie_max_retries,
        backoff_seconds=settings.kie_retry_backoff_seconds,
        veo3_model=settings.kie_veo3_model,
    )


def reset_video_provider_cache() -> None:
    get_video_provider.cache_clear()
