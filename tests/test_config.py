import pytest

from assessment_service.config import Settings


def test_defaults(monkeypatch):
    for name in ("DATABASE_URL", "RECOMMENDATION_SERVICE_URL", "CORS_ORIGINS", "TIMER_TICK_SECONDS",
                 "AUTOSAVE_WARNING_THRESHOLD", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    s = Settings.from_env()
    assert s.database_url == "sqlite:///./assessment.db"
    assert s.recommendation_service_url is None
    assert s.cors_origins == ["*"]
    assert s.timer_tick_seconds == 1.0
    assert s.autosave_warning_threshold == 2


def test_values_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://u:p@db/tna")
    monkeypatch.setenv("RECOMMENDATION_SERVICE_URL", "http://ai:8005/")
    monkeypatch.setenv("CORS_ORIGINS", "http://a.example, http://b.example")
    monkeypatch.setenv("TIMER_TICK_SECONDS", "0.5")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    s = Settings.from_env()
    assert s.database_url == "postgresql+psycopg://u:p@db/tna"
    assert s.recommendation_service_url == "http://ai:8005"
    assert s.cors_origins == ["http://a.example", "http://b.example"]
    assert s.timer_tick_seconds == 0.5
    assert s.log_level == "DEBUG"


def test_invalid_number_fails_fast(monkeypatch):
    monkeypatch.setenv("TIMER_TICK_SECONDS", "soon")
    with pytest.raises(RuntimeError):
        Settings.from_env()
