import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None or val.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return val.strip()


def _get_float(name: str, default: float) -> float:
    raw = _get_env(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Invalid number for {name}: {raw!r}")


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Invalid integer for {name}: {raw!r}")


def _parse_origins(raw: str) -> list[str]:
    raw = (raw or "").strip()
    if not raw or raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


@dataclass
class Settings:
    database_url: str = "sqlite:///./assessment.db"
    recommendation_service_url: Optional[str] = None
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    timer_tick_seconds: float = 1.0
    autosave_warning_threshold: int = 2
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        rec_url = (os.getenv("RECOMMENDATION_SERVICE_URL") or "").strip()
        return cls(
            database_url=_get_env("DATABASE_URL", "sqlite:///./assessment.db"),
            recommendation_service_url=rec_url.rstrip("/") or None,
            cors_origins=_parse_origins(os.getenv("CORS_ORIGINS", "*")),
            timer_tick_seconds=_get_float("TIMER_TICK_SECONDS", 1.0),
            autosave_warning_threshold=_get_int("AUTOSAVE_WARNING_THRESHOLD", 2),
            log_level=_get_env("LOG_LEVEL", "INFO").upper(),
        )
