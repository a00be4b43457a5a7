from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from shared.contracts.enums import DoseSlot, NotificationType, UserType


class Base(DeclarativeBase):
    """Declarative base for application models."""


class UTCDateTime(TypeDecorator):
    """Stores UTC, always hands back timezone-aware UTC datetimes (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), unique=True)
    phone: Mapped[str | None] = mapped_column(String(32), index=True)
    user_type: Mapped[UserType] = mapped_column(
        Enum(UserType, name="user_type", values_callable=_enum_values),
        nullable=False,
        default=UserType.USER,
    )

    emergency_contact_name: Mapped[str | None] = mapped_column(String(255))
    emergency_contact_phone: Mapped[str | None] = mapped_column(String(32))
    emergency_contact_relationship: Mapped[str | None] = mapped_column(String(64))

    medicines: Mapped[list[Medicine]] = relationship(
        back_populates="patient", foreign_keys="Medicine.patient_id"
    )
    notifications: Mapped[list[Notification]] = relationship(back_populates="user")


class Prescription(TimestampMixin, Base):
    __tablename__ = "prescriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    prescribed_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    medicines: Mapped[list[Medicine]] = relationship(back_populates="prescription")


class Medicine(TimestampMixin, Base):
    __tablename__ = "medicines"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_medicines_quantity_non_negative"),
        CheckConstraint("taken_count >= 0", name="ck_medicines_taken_count_non_negative"),
        Index("ix_medicines_active_window", "start_date", "end_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    prescribed_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    prescription_id: Mapped[int | None] = mapped_column(
        ForeignKey("prescriptions.id", ondelete="SET NULL"), index=True
    )

    medicine_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    timing_before_breakfast: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timing_after_breakfast: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timing_before_lunch: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timing_after_lunch: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timing_before_dinner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timing_after_dinner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Reset at the daily boundary.
    taken_before_breakfast: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    taken_after_breakfast: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    taken_before_lunch: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    taken_after_lunch: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    taken_before_dinner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    taken_after_dinner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_reset_date: Mapped[date | None] = mapped_column(Date)

    taken_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    missed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_missed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    emergency_contact_notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_emergency_notification_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    patient: Mapped[User] = relationship(back_populates="medicines", foreign_keys=[patient_id])
    prescriber: Mapped[User] = relationship(foreign_keys=[prescribed_by])
    prescription: Mapped[Prescription | None] = relationship(back_populates="medicines")

    @staticmethod
    def timing_column(slot: DoseSlot):
        return getattr(Medicine, f"timing_{slot.field}")

    @staticmethod
    def taken_column(slot: DoseSlot):
        return getattr(Medicine, f"taken_{slot.field}")

    def is_scheduled(self, slot: DoseSlot) -> bool:
        return bool(getattr(self, f"timing_{slot.field}"))

    def is_taken(self, slot: DoseSlot) -> bool:
        # Unscheduled slots never count as taken.
        return self.is_scheduled(slot) and bool(getattr(self, f"taken_{slot.field}"))

    def set_taken(self, slot: DoseSlot, value: bool) -> None:
        setattr(self, f"taken_{slot.field}", value)

    def schedule(self, slots) -> None:
        chosen = {DoseSlot(s) for s in slots}
        for slot in DoseSlot:
            setattr(self, f"timing_{slot.field}", slot in chosen)

    @property
    def scheduled_slots(self) -> list[DoseSlot]:
        return [slot for slot in DoseSlot if self.is_scheduled(slot)]

    def untaken_slots(self) -> list[DoseSlot]:
        return [slot for slot in self.scheduled_slots if not self.is_taken(slot)]

    def is_active_on(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


class Notification(TimestampMixin, Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_dedupe", "medicine_id", "timing", "type", "scheduled_for"),
        Index("ix_notifications_pending", "is_sent", "scheduled_for"),
        Index("ix_notifications_user_read", "user_id", "is_read"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    medicine_id: Mapped[int | None] = mapped_column(ForeignKey("medicines.id", ondelete="SET NULL"))
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, name="notification_type", values_callable=_enum_values), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    timing: Mapped[DoseSlot | None] = mapped_column(
        Enum(DoseSlot, name="dose_slot", values_callable=_enum_values)
    )
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Snapshot taken when the alert is queued; never re-read from the user.
    is_emergency_contact_notification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    emergency_contact_phone: Mapped[str | None] = mapped_column(String(32))
    emergency_contact_name: Mapped[str | None] = mapped_column(String(255))

    user: Mapped[User] = relationship(back_populates="notifications")
    medicine: Mapped[Medicine | None] = relationship()
