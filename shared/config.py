from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


TRUTHY = {"1", "true", "yes", "on"}
DEFAULT_TICK_INTERVAL_SEC = 60
MIN_TICK_INTERVAL_SEC = 1


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY


def _env_number(name: str, default: float, cast=int):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    notifier_url: str | None = None
    scheduler_enabled: bool = True
    tick_interval_seconds: int = DEFAULT_TICK_INTERVAL_SEC
    http_timeout_seconds: float = 10.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        tick = _env_number("TICK_INTERVAL_SEC", DEFAULT_TICK_INTERVAL_SEC)
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            notifier_url=os.getenv("NOTIFIER_URL") or None,
            scheduler_enabled=_env_flag("SCHEDULER_ENABLED", True),
            tick_interval_seconds=max(tick, MIN_TICK_INTERVAL_SEC),
            http_timeout_seconds=_env_number("HTTP_TIMEOUT_SEC", 10.0, cast=float),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def load_settings() -> Settings:
    load_dotenv()
    return Settings.from_env()
