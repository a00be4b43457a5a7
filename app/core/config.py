from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[2]

DEFAULT_DATABASE_URL = "sqlite:///medisense.db"
DEFAULT_TIMEZONE = "Asia/Kolkata"


def load_env() -> None:
    load_dotenv(dotenv_path=ROOT_DIR / ".env", override=False)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    timezone: str = DEFAULT_TIMEZONE

    fast2sms_api_key: str | None = None
    sms_transport: str = "fast2sms"
    sms_timeout_seconds: float = 10.0
    sms_brand: str = "MediSense"
    sms_max_length: int = 300

    notification_poll_ms: int = 15000
    notification_batch_size: int = 50

    escalation_threshold: int = 5
    missed_grace_minutes: int = 60
    missed_repeat_minutes: int = 30

    scheduler_enabled: bool = True
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def poll_seconds(self) -> float:
        return self.notification_poll_ms / 1000


def load_settings() -> Settings:
    load_env()

    transport = os.getenv("SMS_TRANSPORT", "fast2sms").strip().lower()
    if transport not in {"fast2sms", "memory"}:
        raise ValueError(f"SMS_TRANSPORT must be 'fast2sms' or 'memory', got {transport!r}")

    timezone_name = os.getenv("MEDISENSE_TIMEZONE", DEFAULT_TIMEZONE)
    try:
        ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"Unknown MEDISENSE_TIMEZONE: {timezone_name!r}") from exc

    return Settings(
        database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
        timezone=timezone_name,
        fast2sms_api_key=os.getenv("FAST2SMS_API_KEY") or None,
        sms_transport=transport,
        sms_timeout_seconds=_env_float("SMS_TIMEOUT_SECONDS", 10.0),
        sms_brand=os.getenv("SMS_BRAND", "MediSense"),
        sms_max_length=_env_int("SMS_MAX_LENGTH", 300, minimum=20),
        notification_poll_ms=_env_int("NOTIFICATION_POLL_INTERVAL_MS", 15000, minimum=1000),
        notification_batch_size=_env_int("NOTIFICATION_BATCH_SIZE", 50, minimum=1),
        escalation_threshold=_env_int("ESCALATION_THRESHOLD", 5, minimum=1),
        missed_grace_minutes=_env_int("MISSED_DOSE_GRACE_MINUTES", 60),
        missed_repeat_minutes=_env_int("MISSED_DOSE_REPEAT_MINUTES", 30, minimum=1),
        scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_file=os.getenv("LOG_FILE") or None,
    )
