from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import itertools
import uuid

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import src.api.main as api_main
from src.auth.jwt import ROLE_USER, AuthContext, create_access_token
from src.billing.packages import load_credit_packages
from src.core.config import get_settings
from src.core.metrics import reset_metrics_for_tests
from src.core.rate_limit import reset_rate_limiters
from src.providers.base import (
    DispatchRequest,
    DispatchResult,
    PollStatus,
    ProviderDispatchError,
)
from src.providers.factory import reset_video_provider_cache
from src.storage.db import Base, get_session, load_models
from src.storage.models import UserAccount


class FakeRedis:
    def __init__(self) -> None:
        self._store: Dict[str, str] = {}

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        del ex
        if nx and key in self._store:
            return False
        self._store[key] = str(value)
        return True

    def get(self, key: str):
        return self._store.get(key)

    def delete(self, key: str):
        return 1 if self._store.pop(key, None) is not None else 0

    def incr(self, key: str):
        value = int(self._store.get(key, "0")) + 1
        self._store[key] = str(value)
        return value

    def expire(self, key: str, seconds: int):
        del seconds
        return 1 if key in self._store else 0

    def eval(self, script: str, numkeys: int, key: str, token: str):
        del script, numkeys
        if self._store.get(key) == token:
            self._store.pop(key, None)
            return 1
        return 0


@dataclass
class FakeVideoProvider:
    """Records dispatches and replays configured poll statuses."""

    provider_name: str = "runway"
    fail_with: Optional[Exception] = None
    task_ids: List[str] = field(default_factory=list)
    requests: List[DispatchRequest] = field(default_factory=list)
    statuses: Dict[str, PollStatus] = field(default_factory=dict)
    status_calls: List[str] = field(default_factory=list)
    _counter: "itertools.count[int]" = field(default_factory=lambda: itertools.count(1))

    def start_generation(self, request: DispatchRequest) -> DispatchResult:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        task_id = self.task_ids.pop(0) if self.task_ids else f"{self.provider_name}-task-{next(self._counter)}"
        return DispatchResult(task_id=task_id, provider=self.provider_name, payload={"code": 200})

    def fetch_status(self, task_id: str) -> PollStatus:
        self.status_calls.append(task_id)
        return self.statuses.get(task_id, PollStatus(task_id=task_id, state="processing", progress=50))

    def factory(self) -> Callable[[str], "FakeVideoProvider"]:
        def _resolve(provider_name: str) -> "FakeVideoProvider":
            self.provider_name = provider_name
            return self

        return _resolve


def failing_provider(message: str = "kie_request_timeout path=/runway/generate") -> FakeVideoProvider:
    return FakeVideoProvider(fail_with=ProviderDispatchError(message))


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("SECRET_KEY", "test-secret-key")
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "https://asmr.example.test")
    monkeypatch.setenv("VIDEO_PROVIDER_MODE", "mock")
    monkeypatch.setenv("GENERATION_RATE_LIMIT_ENABLED", "false")
    monkeypatch.setenv("MEDIA_REHOST_ENABLED", "false")
    monkeypatch.setenv("CREDIT_PACKAGES_FILE_PATH", "config/credit_packages.yaml")
    get_settings.cache_clear()
    reset_video_provider_cache()
    reset_rate_limiters()
    load_credit_packages.cache_clear()
    reset_metrics_for_tests()
    yield
    get_settings.cache_clear()
    reset_video_provider_cache()
    reset_rate_limiters()
    load_credit_packages.cache_clear()


@pytest.fixture()
def session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


def seed_user(session_factory: sessionmaker, *, credits: int = 100, email: Optional[str] = None) -> str:
    user_id = str(uuid.uuid4())
    with session_factory() as session:
        session.add(UserAccount(id=user_id, email=email or f"{user_id[:8]}@example.test", credits=credits))
        session.commit()
    return user_id


def user_balance(session_factory: sessionmaker, user_id: str) -> int:
    with session_factory() as session:
        account = session.get(UserAccount, user_id)
        assert account is not None
        return int(account.credits)


@pytest.fixture()
def api_client(session_factory: sessionmaker):
    def override_get_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    api_main.app.dependency_overrides[get_session] = override_get_session
    try:
        yield TestClient(api_main.app)
    finally:
        api_main.app.dependency_overrides.clear()


def auth_headers(user_id: str, *, role: str = ROLE_USER) -> Dict[str, str]:
    token, _ = create_access_token(AuthContext(user_id=user_id, role=role))
    return {"Authorization": f"Bearer {token}"}
