"""Local/dev video provider that accepts every request and never finishes on its own."""

from __future__ import annotations

import hashlib
import uuid

from src.providers.base import DispatchRequest, DispatchResult, PollStatus, VideoProvider


class MockVideoProvider(VideoProvider):
    def __init__(self, *, provider_name: str = "runway") -> None:
        self.provider_name = provider_name

    def start_generation(self, request: DispatchRequest) -> DispatchResult:
        seed = hashlib.sha1(f"{request.prompt}:{uuid.uuid4()}".encode("utf-8")).hexdigest()[:20]
        task_id = f"mock_{self.provider_name}_{seed}"
        return DispatchResult(
            task_id=task_id,
            provider=self.provider_name,
            payload={"code": 200, "msg": "success", "data": {"taskId": task_id}},
        )

    def fetch_status(self, task_id: str) -> PollStatus:
        return PollStatus(task_id=task_id, state="processing", progress=50)
