from __future__ import annotations

from datetime import date, datetime
from typing import Sequence

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from shared.contracts.enums import DoseSlot, NotificationType

from .models import Medicine, Notification, Prescription, User


class MedicineStore:
    """Medicine Record Store: reads and row-locked loads of Medicine rows."""

    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _active(stmt: Select, day: date) -> Select:
        return stmt.where(Medicine.start_date <= day, Medicine.end_date >= day)

    def get(self, medicine_id: int, lock: bool = False) -> Medicine | None:
        stmt = select(Medicine).where(Medicine.id == medicine_id)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def get_owned(self, medicine_id: int, patient_id: int, lock: bool = False) -> Medicine | None:
        stmt = select(Medicine).where(Medicine.id == medicine_id, Medicine.patient_id == patient_id)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def active_ids(
        self,
        day: date,
        scheduled: DoseSlot | None = None,
        untaken: DoseSlot | None = None,
    ) -> list[int]:
        stmt = self._active(select(Medicine.id), day)
        if scheduled is not None:
            stmt = stmt.where(Medicine.timing_column(scheduled).is_(True))
        if untaken is not None:
            stmt = stmt.where(Medicine.taken_column(untaken).is_(False))
        return list(self.session.scalars(stmt.order_by(Medicine.id)))

    def active_for_patient(self, patient_id: int, day: date) -> Sequence[Medicine]:
        stmt = self._active(select(Medicine), day).where(Medicine.patient_id == patient_id)
        return self.session.scalars(stmt.order_by(Medicine.id)).all()

    def reset_candidate_ids(self, today: date, closing_day: date) -> list[int]:
        """Medicines active on either side of the boundary and not yet reset today."""
        stmt = select(Medicine.id).where(
            Medicine.start_date <= today,
            Medicine.end_date >= closing_day,
            or_(Medicine.last_reset_date.is_(None), Medicine.last_reset_date < today),
        )
        return list(self.session.scalars(stmt.order_by(Medicine.id)))

    def escalation_candidate_ids(self, day: date, threshold: int) -> list[int]:
        stmt = self._active(select(Medicine.id), day).where(
            Medicine.consecutive_missed_count >= threshold,
            Medicine.emergency_contact_notified.is_(False),
        )
        return list(self.session.scalars(stmt.order_by(Medicine.id)))

    def ending_between(self, first: date, last: date) -> list[int]:
        stmt = select(Medicine.id).where(Medicine.end_date >= first, Medicine.end_date <= last)
        return list(self.session.scalars(stmt.order_by(Medicine.id)))

    def for_patient(self, patient_id: int) -> Sequence[Medicine]:
        stmt = select(Medicine).where(Medicine.patient_id == patient_id)
        return self.session.scalars(stmt.order_by(Medicine.created_at.desc(), Medicine.id.desc())).all()

    def add(self, medicine: Medicine) -> Medicine:
        self.session.add(medicine)
        self.session.flush()
        return medicine

    def delete(self, medicine: Medicine) -> None:
        self.session.delete(medicine)
        self.session.flush()


class UserStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User | None:
        return self.session.get(User, user_id)

    def add_prescription(self, patient_id: int, prescribed_by: int) -> Prescription:
        prescription = Prescription(patient_id=patient_id, prescribed_by=prescribed_by)
        self.session.add(prescription)
        self.session.flush()
        return prescription


class NotificationQueue:
    """
    Durable mailbox of outbound messages.

    Holds no business rules: inserts, dedupe lookups by
    (medicine_id, timing, type, scheduled_for) and the pending query.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def enqueue(
        self,
        *,
        user_id: int,
        type: NotificationType,
        title: str,
        message: str,
        scheduled_for: datetime,
        medicine_id: int | None = None,
        timing: DoseSlot | None = None,
        emergency_contact_name: str | None = None,
        emergency_contact_phone: str | None = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            medicine_id=medicine_id,
            type=type,
            title=title,
            message=message,
            timing=timing,
            scheduled_for=scheduled_for,
            is_read=False,
            is_sent=False,
            is_emergency_contact_notification=type == NotificationType.EMERGENCY_CONTACT_ALERT,
            emergency_contact_name=emergency_contact_name,
            emergency_contact_phone=emergency_contact_phone,
        )
        self.session.add(notification)
        self.session.flush()
        return notification

    def _window(
        self,
        medicine_id: int,
        type: NotificationType,
        start: datetime,
        end: datetime,
        timing: DoseSlot | None = None,
    ) -> Select:
        stmt = select(Notification).where(
            Notification.medicine_id == medicine_id,
            Notification.type == type,
            Notification.scheduled_for >= start,
            Notification.scheduled_for < end,
        )
        if timing is not None:
            stmt = stmt.where(Notification.timing == timing)
        return stmt

    def exists(
        self,
        medicine_id: int,
        type: NotificationType,
        start: datetime,
        end: datetime,
        timing: DoseSlot | None = None,
    ) -> bool:
        stmt = self._window(medicine_id, type, start, end, timing).limit(1)
        return self.session.scalars(stmt).first() is not None

    def latest(
        self,
        medicine_id: int,
        type: NotificationType,
        start: datetime,
        end: datetime,
        timing: DoseSlot | None = None,
    ) -> Notification | None:
        stmt = self._window(medicine_id, type, start, end, timing)
        stmt = stmt.order_by(Notification.scheduled_for.desc(), Notification.id.desc()).limit(1)
        return self.session.scalars(stmt).first()

    def pending(self, now: datetime, limit: int = 50) -> Sequence[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.is_sent.is_(False), Notification.scheduled_for <= now)
            .order_by(Notification.scheduled_for.asc(), Notification.id.asc())
            .limit(limit)
            .options(selectinload(Notification.user))
        )
        return self.session.scalars(stmt).all()

    def mark_sent(self, notification_id: int) -> bool:
        """Compare-and-set; False when another writer already marked it."""
        result = self.session.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.is_sent.is_(False))
            .values(is_sent=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def mark_reminders_read(self, medicine_id: int, timing: DoseSlot, start: datetime, end: datetime) -> int:
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.medicine_id == medicine_id,
                Notification.timing == timing,
                Notification.type == NotificationType.REMINDER,
                Notification.is_read.is_(False),
                Notification.scheduled_for >= start,
                Notification.scheduled_for < end,
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def for_user(self, user_id: int, unread_only: bool = False, limit: int = 50) -> Sequence[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.scheduled_for.desc(), Notification.id.desc()).limit(limit)
        return self.session.scalars(stmt).all()

    def unread_count(self, user_id: int) -> int:
        stmt = select(func.count(Notification.id)).where(
            Notification.user_id == user_id, Notification.is_read.is_(False)
        )
        return int(self.session.scalar(stmt) or 0)

    def mark_read(self, user_id: int, notification_id: int) -> Notification | None:
        notification = self.session.scalars(
            select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
        ).first()
        if notification is not None:
            notification.is_read = True
        return notification

    def mark_all_read(self, user_id: int) -> int:
        result = self.session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
