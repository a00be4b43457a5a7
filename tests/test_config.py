import logging

import pytest

from app.core import config
from app.core.config import Settings, load_settings
from app.core.logging_utils import kv, setup_logging


@pytest.fixture(autouse=True)
def no_dotenv(monkeypatch):
    monkeypatch.setattr(config, "load_env", lambda: None)
    for name in (
        "DATABASE_URL",
        "MEDISENSE_TIMEZONE",
        "FAST2SMS_API_KEY",
        "SMS_TRANSPORT",
        "NOTIFICATION_POLL_INTERVAL_MS",
        "ESCALATION_THRESHOLD",
        "SCHEDULER_ENABLED",
        "LOG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = load_settings()

    assert settings.timezone == "Asia/Kolkata"
    assert settings.escalation_threshold == 5
    assert settings.missed_grace_minutes == 60
    assert settings.missed_repeat_minutes == 30
    assert settings.poll_seconds == 15
    assert settings.fast2sms_api_key is None
    assert settings.scheduler_enabled is True


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("FAST2SMS_API_KEY", "key")
    monkeypatch.setenv("SMS_TRANSPORT", "Memory")
    monkeypatch.setenv("ESCALATION_THRESHOLD", "3")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("MEDISENSE_TIMEZONE", "UTC")

    settings = load_settings()

    assert settings.fast2sms_api_key == "key"
    assert settings.sms_transport == "memory"
    assert settings.escalation_threshold == 3
    assert settings.scheduler_enabled is False
    assert settings.tz.key == "UTC"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("ESCALATION_THRESHOLD", "zero"),
        ("ESCALATION_THRESHOLD", "0"),
        ("NOTIFICATION_POLL_INTERVAL_MS", "10"),
        ("SMS_TRANSPORT", "carrier-pigeon"),
        ("MEDISENSE_TIMEZONE", "Mars/Olympus"),
    ],
)
def test_invalid_values_fail_fast(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        load_settings()


def test_setup_logging_adds_rotating_file(tmp_path):
    log_file = tmp_path / "logs" / "medisense.log"
    root = setup_logging(Settings(log_file=str(log_file)))
    try:
        logging.getLogger("medisense").info("hello %s", kv(medicine_id=1))
        for handler in root.handlers:
            handler.flush()
        assert "hello medicine_id=1" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
