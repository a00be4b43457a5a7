from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import DeliveryOutcome, DoseSlot, NotificationType


class TakeDoseRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timing: DoseSlot


class DoseUpdate(BaseModel):
    medicine_id: int
    medicine_name: str
    timing: DoseSlot
    taken: bool
    quantity_left: int
    taken_count: int


class ScheduledDose(BaseModel):
    medicine_id: int
    name: str
    quantity_remaining: int
    taken: bool


class SlotSchedule(BaseModel):
    slot: DoseSlot
    label: str
    hour: int
    minute: int
    medicines: list[ScheduledDose] = Field(default_factory=list)


class TodaySchedule(BaseModel):
    patient_id: int
    date: date
    slots: list[SlotSchedule]


class MedicineStats(BaseModel):
    medicine_id: int
    name: str
    quantity_remaining: int
    taken_count: int
    missed_count: int
    consecutive_missed_count: int
    emergency_contact_notified: bool
    scheduled_today: int
    taken_today: int
    pending_today: int


class PatientStats(BaseModel):
    patient_id: int
    date: date
    total_medicines: int
    scheduled_today: int
    taken_today: int
    pending_today: int
    taken_all_time: int
    missed_all_time: int
    adherence_rate: float = Field(ge=0.0, le=1.0)
    medicines: list[MedicineStats] = Field(default_factory=list)


class MedicineIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=255)
    quantity: int = Field(ge=0)
    start_date: date
    end_date: date
    timing: list[DoseSlot] = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("timing")
    @classmethod
    def dedupe_timing(cls, value: list[DoseSlot]) -> list[DoseSlot]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def validate_window(self) -> "MedicineIn":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class CreatePrescriptionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    patient_id: int
    medicines: list[MedicineIn] = Field(min_length=1)


class MedicineOut(BaseModel):
    id: int
    patient_id: int
    prescribed_by: int
    prescription_id: int | None = None
    name: str
    quantity: int
    start_date: date
    end_date: date
    timing: list[DoseSlot]


class PrescriptionOut(BaseModel):
    prescription_id: int
    patient_id: int
    prescribed_by: int
    medicines: list[MedicineOut]


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    medicine_id: int | None = None
    type: NotificationType
    title: str
    message: str
    timing: DoseSlot | None = None
    scheduled_for: datetime
    is_sent: bool
    is_read: bool
    is_emergency_contact_notification: bool = False


class TriggerReminderRequest(BaseModel):
    timing: DoseSlot


class TriggerResult(BaseModel):
    job: str
    status: Literal["ok", "error"]
    affected: int | None = None
    detail: str | None = None


class DeliveryReport(BaseModel):
    in_flight: bool = False
    processed: int = 0
    outcomes: dict[DeliveryOutcome, int] = Field(default_factory=dict)

    def record(self, outcome: DeliveryOutcome) -> None:
        self.processed += 1
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def count(self, outcome: DeliveryOutcome) -> int:
        return self.outcomes.get(outcome, 0)
