import pytest

from src.core.config import get_settings


def _set_minimum_production_env(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "prod-secret-key")
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://app:password@db:5432/asmrgen")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "https://asmr.example.com")
    monkeypatch.setenv("VIDEO_PROVIDER_MODE", "kie")
    monkeypatch.setenv("KIE_API_KEY", "kie-prod-key")


def test_requires_secret_key_in_production(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("SECRET_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="SECRET_KEY"):
        get_settings()

    get_settings.cache_clear()


def test_production_requires_callback_base_url_and_provider_key(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "")
    monkeypatch.setenv("KIE_API_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="APP_PUBLIC_BASE_URL, KIE_API_KEY"):
        get_settings()

    get_settings.cache_clear()


def test_production_rejects_mock_provider(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("VIDEO_PROVIDER_MODE", "mock")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="VIDEO_PROVIDER_MODE=mock"):
        get_settings()

    get_settings.cache_clear()


def test_production_settings_load(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "production"
    assert settings.app_public_base_url == "https://asmr.example.com"
    assert settings.kie_api_key == "kie-prod-key"

    get_settings.cache_clear()


def test_loads_environment_values(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./data/asmrgen.sqlite")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/9")
    monkeypatch.setenv("DEFAULT_VIDEO_PROVIDER", "veo3")
    monkeypatch.setenv("STATUS_POLL_PROVIDER_ENABLED", "false")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "development"
    assert settings.secret_key == "test-secret"
    assert settings.database_url.endswith("asmrgen.sqlite")
    assert settings.redis_url.endswith("/9")
    assert settings.default_video_provider == "veo3"
    assert settings.status_poll_provider_enabled is False

    get_settings.cache_clear()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("SENTRY_TRACES_SAMPLE_RATE", "1.2"),
        ("IP_RATE_LIMIT_REQUESTS_PER_WINDOW", "0"),
        ("GENERATION_RATE_LIMIT_PER_WINDOW", "0"),
        ("KIE_MAX_RETRIES", "0"),
        ("KIE_RETRY_BACKOFF_SECONDS", "-1"),
        ("TASK_LOCK_TTL_SECONDS", "0"),
        ("VIDEO_PROVIDER_MODE", "replicate"),
        ("DEFAULT_VIDEO_PROVIDER", "sora"),
    ],
)
def test_rejects_invalid_values(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv(name, value)
    get_settings.cache_clear()

    with pytest.raises(ValueError, match=name):
        get_settings()

    get_settings.cache_clear()
