from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from app.core.logging_utils import kv
from app.core.timez import ensure_aware, now_utc
from app.db.models import Medicine, Notification
from app.db.store import NotificationQueue
from shared.contracts.enums import DeliveryOutcome, NotificationType
from shared.contracts.models import DeliveryReport

from .outbound import DEFAULT_BRAND, DEFAULT_MAX_LENGTH, SmsTransport, compose_message, normalize_phone

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 1000
REVALIDATED_TYPES = {NotificationType.REMINDER, NotificationType.MISSED_DOSE}


@dataclass
class _Outgoing:
    notification_id: int
    type: NotificationType
    recipient: str
    phone: Optional[str]
    text: str


class DeliveryWorker:
    """
    Drains the notification queue to the SMS transport.

    One cycle at a time per worker (overlapping calls return immediately).
    Each notification is re-checked just before sending: reminders and
    missed-dose nags for a dose that has since been taken are marked sent
    without calling the transport. Failed sends stay unsent and are retried
    on the next cycle.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        transport: SmsTransport,
        batch_size: int = 50,
        brand: str = DEFAULT_BRAND,
        max_length: int = DEFAULT_MAX_LENGTH,
    ) -> None:
        self.session_factory = session_factory
        self.transport = transport
        self.batch_size = batch_size
        self.brand = brand
        self.max_length = max_length
        self.audit_log: List[Dict[str, Any]] = []
        self._cycle_lock = threading.Lock()

    @property
    def in_flight(self) -> bool:
        return self._cycle_lock.locked()

    def run_once(self, now: Optional[datetime] = None) -> DeliveryReport:
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("delivery cycle already running; skipping")
            return DeliveryReport(in_flight=True)
        try:
            return self._cycle(ensure_aware(now))
        finally:
            self._cycle_lock.release()

    def pending(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Notification]:
        with self.session_factory() as session:
            return list(NotificationQueue(session).pending(ensure_aware(now), limit or self.batch_size))

    def _cycle(self, now: datetime) -> DeliveryReport:
        report = DeliveryReport()
        if not self.transport.is_configured:
            logger.warning("SMS transport not configured; skipping delivery cycle")
            return report

        notification_ids = [n.id for n in self.pending(now)]
        for notification_id in notification_ids:
            try:
                outcome = self._deliver(notification_id)
            except Exception:
                logger.exception("delivery failed %s", kv(notification_id=notification_id))
                outcome = DeliveryOutcome.ERROR
                self._append_log({"notification_id": notification_id, "outcome": outcome.value})
            report.record(outcome)

        if notification_ids:
            logger.info(
                "delivery cycle done %s",
                kv(processed=report.processed, **{k.value: v for k, v in report.outcomes.items()}),
            )
        return report

    def _deliver(self, notification_id: int) -> DeliveryOutcome:
        outgoing, outcome = self._prepare(notification_id)
        if outgoing is None:
            return outcome

        if outcome is DeliveryOutcome.RESOLVED:
            self._mark_sent(outgoing.notification_id)
            logger.info("dose already taken, not sending %s", kv(notification_id=notification_id))
            return self._record(outgoing, outcome)

        if not outgoing.phone:
            logger.warning(
                "no phone for recipient; leaving unsent %s",
                kv(notification_id=notification_id, recipient=outgoing.recipient),
            )
            return self._record(outgoing, DeliveryOutcome.NO_PHONE)

        number = normalize_phone(outgoing.phone)
        if number is None:
            logger.warning(
                "invalid phone; leaving unsent %s",
                kv(notification_id=notification_id, recipient=outgoing.recipient),
            )
            return self._record(outgoing, DeliveryOutcome.INVALID_PHONE)

        result = self.transport.send(number, outgoing.text)
        if not result.ok:
            logger.error(
                "sms send failed %s",
                kv(notification_id=notification_id, status=result.status_code, error=result.error),
            )
            return self._record(outgoing, DeliveryOutcome.FAILED, to=number, error=result.error)

        if not self._mark_sent(outgoing.notification_id):
            logger.warning("notification was already marked sent %s", kv(notification_id=notification_id))
        logger.info(
            "sms sent %s",
            kv(notification_id=notification_id, type=outgoing.type.value, recipient=outgoing.recipient),
        )
        return self._record(outgoing, DeliveryOutcome.SENT, to=number)

    def _prepare(self, notification_id: int) -> tuple[Optional[_Outgoing], DeliveryOutcome]:
        """Snapshot everything needed for the send, so no session is held across the HTTP call."""
        with self.session_factory() as session:
            notification = session.get(Notification, notification_id)
            if notification is None or notification.is_sent:
                return None, DeliveryOutcome.SKIPPED

            if notification.is_emergency_contact_notification:
                recipient = "emergency_contact"
                phone = notification.emergency_contact_phone
                name = notification.emergency_contact_name
            else:
                recipient = "user"
                phone = notification.user.phone if notification.user else None
                name = notification.user.name if notification.user else None

            outgoing = _Outgoing(
                notification_id=notification.id,
                type=notification.type,
                recipient=recipient,
                phone=phone,
                text=compose_message(
                    notification.message,
                    title=notification.title,
                    recipient_name=name,
                    brand=self.brand,
                    max_length=self.max_length,
                ),
            )
            if not notification.is_emergency_contact_notification and self._already_resolved(session, notification):
                return outgoing, DeliveryOutcome.RESOLVED
            return outgoing, DeliveryOutcome.SENT

    @staticmethod
    def _already_resolved(session: Session, notification: Notification) -> bool:
        if notification.type not in REVALIDATED_TYPES or notification.timing is None:
            return False
        if notification.medicine_id is None:
            # The medicine was deleted; nothing left to remind about.
            return True
        medicine = session.get(Medicine, notification.medicine_id)
        if medicine is None:
            return True
        return medicine.is_taken(notification.timing)

    def _mark_sent(self, notification_id: int) -> bool:
        with self.session_factory.begin() as session:
            return NotificationQueue(session).mark_sent(notification_id)

    def _record(self, outgoing: _Outgoing, outcome: DeliveryOutcome, **extra: Any) -> DeliveryOutcome:
        self._append_log(
            {
                "notification_id": outgoing.notification_id,
                "type": outgoing.type.value,
                "recipient": outgoing.recipient,
                "outcome": outcome.value,
                "logged_at": now_utc().isoformat(),
                **extra,
            }
        )
        return outcome

    def _append_log(self, entry: Dict[str, Any]) -> None:
        self.audit_log.append(entry)
        if len(self.audit_log) > MAX_LOG_ENTRIES:
            del self.audit_log[0 : len(self.audit_log) - MAX_LOG_ENTRIES]
