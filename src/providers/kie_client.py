"""HTTP client for the KIE video generation API (Runway and VEO3 models)."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

import httpx

from src.core.logger import get_logger
from src.providers.base import (
    DispatchRequest,
    DispatchResult,
    MalformedPayloadError,
    PollStatus,
    ProviderDispatchError,
    ProviderStatusError,
    VideoProvider,
)
from src.providers.normalize import STATUS_NORMALIZERS


RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

logger = get_logger("asmrgen.providers.kie")


class KieVideoProvider(VideoProvider):
    """One instance per provider tag; the tag selects endpoints and payload shape."""

    _ENDPOINTS = {
        "runway": ("/runway/generate", "/runway/record-detail"),
        "veo3": ("/veo/generate", "/veo/record-info"),
    }

    def __init__(
        self,
        *,
        provider_name: str,
        api_key: str,
        base_url: str = "https://api.kie.ai/api/v1",
        timeout_seconds: int = 30,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        veo3_model: str = "veo3_fast",
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if provider_name not in self._ENDPOINTS:
            raise ValueError(f"Unsupported KIE provider: {provider_name}")
        self.provider_name = provider_name
        self._api_key = api_key.strip()
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._max_retries = max(1, max_retries)
        self._backoff_seconds = max(0.0, backoff_seconds)
        self._veo3_model = veo3_model
        self._client = client
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url}{path}"
        if self._client is not None:
            return self._client.request(method, url, headers=self._headers(), **kwargs)
        with httpx.Client(timeout=self._timeout_seconds) as client:
            return client.request(method, url, headers=self._headers(), **kwargs)

    def _request(self, method: str, path: str, *, error_cls: type, **kwargs: Any) -> Dict[str, Any]:
        """Send with retry on connection failures and throttling responses.

        Read timeouts are not retried: the provider may already have accepted
        the request, and a retry could start a second paid generation.
        """

        if not self._api_key:
            raise error_cls("kie_api_key_missing")

        last_error = "kie_request_failed"
        for attempt in range(1, self._max_retries + 1):
            try:
                response = self._send(method, path, **kwargs)
            except httpx.ConnectError as exc:
                last_error = f"kie_connect_failed detail={exc}"
            except httpx.TimeoutException as exc:
                raise error_cls(f"kie_request_timeout path={path}") from exc
            except httpx.HTTPError as exc:
                raise error_cls(f"kie_request_failed detail={exc}") from exc
            else:
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    return self._parse(response, error_cls=error_cls)
                last_error = f"kie_request_failed status={response.status_code}"

            if attempt < self._max_retries:
                delay = self._backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "kie_request_retry",
                    provider=self.provider_name,
                    path=path,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=last_error,
                )
                self._sleep(delay)

        raise error_cls(last_error)

    @staticmethod
    def _parse(response: httpx.Response, *, error_cls: type) -> Dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 240:
                detail = detail[:240] + "..."
            raise error_cls(f"kie_request_failed status={response.status_code} detail={detail}")
        try:
            body = response.json()
        except ValueError as exc:
            raise error_cls("kie_invalid_json_response") from exc
        if not isinstance(body, dict):
            raise error_cls("kie_invalid_payload_format")
        return body

    def _generation_body(self, request: DispatchRequest) -> Dict[str, Any]:
        if self.provider_name == "veo3":
            body: Dict[str, Any] = {
                "prompt": request.prompt,
                "model": self._veo3_model,
                "aspectRatio": request.aspect_ratio,
                "callBackUrl": request.callback_url,
            }
            if request.image_url:
                body["imageUrls"] = [request.image_url]
            return body

        body = {
            "prompt": request.prompt,
            "duration": request.duration,
            "quality": request.quality,
            "aspectRatio": request.aspect_ratio,
            "waterMark": "",
            "callBackUrl": request.callback_url,
        }
        if request.image_url:
            body["imageUrl"] = request.image_url
        return body

    def start_generation(self, request: DispatchRequest) -> DispatchResult:
        generate_path, _ = self._ENDPOINTS[self.provider_name]
        body = self._request(
            "POST",
            generate_path,
            error_cls=ProviderDispatchError,
            json=self._generation_body(request),
        )

        if body.get("code") != 200:
            raise ProviderDispatchError(f"kie_generation_rejected code={body.get('code')} msg={body.get('msg')}")
        data = body.get("data")
        task_id = data.get("taskId") if isinstance(data, dict) else None
        if not isinstance(task_id, str) or not task_id.strip():
            raise ProviderDispatchError("kie_generation_missing_task_id")

        logger.info("kie_generation_started", provider=self.provider_name, task_id=task_id)
        return DispatchResult(task_id=task_id.strip(), provider=self.provider_name, payload=body)

    def fetch_status(self, task_id: str) -> PollStatus:
        _, status_path = self._ENDPOINTS[self.provider_name]
        body = self._request(
            "GET",
            status_path,
            error_cls=ProviderStatusError,
            params={"taskId": task_id},
        )
        try:
            return STATUS_NORMALIZERS[self.provider_name](task_id, body)
        except MalformedPayloadError as exc:
            raise ProviderStatusError(str(exc)) from exc
