import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    # "memory" keeps everything in process, "rest" talks to the hosted backend
    data_backend: str = "memory"
    supabase_url: str | None = None
    supabase_key: str | None = None
    http_timeout_seconds: float = 10.0

    query_stale_seconds: float = 30.0
    analytics_stale_seconds: float = 120.0
    dashboard_shift_limit: int = 10
    invitation_ttl_hours: int = 48
    notification_history: int = 100

    log_level: str = "INFO"


def load_settings() -> Settings:
    return Settings(
        data_backend=os.getenv("DATA_BACKEND", "memory").lower(),
        supabase_url=os.getenv("SUPABASE_URL"),
        supabase_key=os.getenv("SUPABASE_KEY"),
        http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 10.0),
        query_stale_seconds=_env_float("QUERY_STALE_SECONDS", 30.0),
        analytics_stale_seconds=_env_float("ANALYTICS_STALE_SECONDS", 120.0),
        dashboard_shift_limit=_env_int("DASHBOARD_SHIFT_LIMIT", 10),
        invitation_ttl_hours=_env_int("INVITATION_TTL_HOURS", 48),
        notification_history=_env_int("NOTIFICATION_HISTORY", 100),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Reduce verbosity of third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
