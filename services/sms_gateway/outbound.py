from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set

import httpx

from app.core.logging_utils import kv

logger = logging.getLogger(__name__)

FAST2SMS_URL = "https://www.fast2sms.com/dev/bulkV2"
DEFAULT_BRAND = "MediSense"
DEFAULT_MAX_LENGTH = 300

_NON_DIGITS = re.compile(r"[^0-9]")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Reduce an Indian mobile number to its 10-digit local form, or None if it cannot be."""
    if not raw:
        return None
    digits = _NON_DIGITS.sub("", str(raw))
    if digits.startswith("0"):
        digits = digits[1:]
    if digits.startswith("91") and len(digits) == 12:
        digits = digits[2:]
    if len(digits) != 10:
        return None
    return digits


def compose_message(
    body: Optional[str],
    title: Optional[str] = None,
    recipient_name: Optional[str] = None,
    brand: str = DEFAULT_BRAND,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> str:
    greeting = f"Hi {recipient_name}, " if recipient_name else ""
    head = f"{greeting}{body or title or 'Notification'}"
    suffix = f" - {brand}"
    text = f"{head}{suffix}".strip()
    max_length = max(max_length, 0)
    if len(text) <= max_length:
        return text
    # The brand suffix is kept whole; only the body is shortened.
    room = max_length - len(suffix) - 3
    if room <= 0:
        return text[:max_length]
    return f"{head[:room].rstrip()}...{suffix}"


@dataclass
class SendResult:
    ok: bool
    status_code: Optional[int] = None
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class SmsTransport(Protocol):
    @property
    def is_configured(self) -> bool: ...

    def send(self, to: str, text: str) -> SendResult: ...


class Fast2SmsTransport:
    """Fast2SMS Quick SMS route; failures come back as ``SendResult(ok=False)``, never raised."""

    def __init__(
        self,
        api_key: Optional[str],
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
        url: str = FAST2SMS_URL,
    ) -> None:
        self.api_key = api_key
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def send(self, to: str, text: str) -> SendResult:
        if not self.api_key:
            return SendResult(ok=False, error="FAST2SMS_API_KEY not configured")
        number = normalize_phone(to)
        if number is None:
            return SendResult(ok=False, error="Invalid phone number")

        params = {
            "authorization": self.api_key,
            "message": text,
            "language": "english",
            "route": "q",
            "numbers": number,
        }
        try:
            response = self.client.get(self.url, params=params)
        except httpx.HTTPError as exc:
            logger.warning("fast2sms request failed %s", kv(error=str(exc)))
            return SendResult(ok=False, error=str(exc))

        try:
            payload = response.json() if response.content else {}
        except ValueError as exc:
            return SendResult(ok=False, status_code=response.status_code, error=f"invalid JSON: {exc}")
        if not isinstance(payload, dict):
            return SendResult(ok=False, status_code=response.status_code, error="unexpected response body")

        ok = response.is_success and payload.get("return") is True
        return SendResult(
            ok=ok,
            status_code=response.status_code,
            response=payload,
            error=None if ok else str(payload.get("message") or f"HTTP {response.status_code}"),
        )

    def close(self) -> None:
        self.client.close()


@dataclass
class InMemoryTransport:
    """Records messages instead of sending them; numbers listed in ``failures`` fail."""

    sent: List[Dict[str, str]] = field(default_factory=list)
    failures: Set[str] = field(default_factory=set)

    @property
    def is_configured(self) -> bool:
        return True

    def send(self, to: str, text: str) -> SendResult:
        number = normalize_phone(to)
        if number is None:
            return SendResult(ok=False, error="Invalid phone number")
        if number in self.failures:
            return SendResult(ok=False, error="simulated transport failure")
        self.sent.append({"to": number, "text": text})
        return SendResult(ok=True, status_code=200, response={"return": True})
