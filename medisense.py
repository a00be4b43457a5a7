from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, Iterable

from sqlalchemy.orm import Session, sessionmaker

from app.core.logging_utils import kv
from app.core.timez import day_bounds, ensure_aware, local_date, slot_datetime
from app.db.models import Medicine, User
from app.db.store import MedicineStore, NotificationQueue, UserStore
from shared.contracts.enums import DoseSlot, NotificationType, UserType
from shared.contracts.models import (
    DoseUpdate,
    MedicineIn,
    MedicineOut,
    MedicineStats,
    PatientStats,
    PrescriptionOut,
    ScheduledDose,
    SlotSchedule,
    TodaySchedule,
)
from shared.contracts.slots import ORDERED_SLOTS, SLOT_SCHEDULE, parse_slot, slot_label

logger = logging.getLogger(__name__)


ESCALATION_THRESHOLD = 5
MISSED_DOSE_GRACE_MINUTES = 60
MISSED_DOSE_REPEAT_MINUTES = 30
EXPIRING_SOON_DAYS = 3


class AdherenceError(Exception):
    """Base for failures reported synchronously to interactive callers."""

    reason = "adherence_error"


class InvalidDoseRequest(AdherenceError, ValueError):
    reason = "invalid_request"


class SlotNotScheduled(InvalidDoseRequest):
    reason = "slot_not_scheduled"


class MedicineNotFound(AdherenceError, LookupError):
    reason = "not_found"

    def __init__(self, medicine_id: int) -> None:
        super().__init__(f"Medicine {medicine_id} not found")
        self.medicine_id = medicine_id


class PatientNotFound(AdherenceError, LookupError):
    reason = "not_found"

    def __init__(self, patient_id: int) -> None:
        super().__init__(f"Patient {patient_id} not found")
        self.patient_id = patient_id


class DoseConflict(AdherenceError):
    reason = "conflict"


class AlreadyTaken(DoseConflict):
    reason = "already_taken"


class NotCurrentlyTaken(DoseConflict):
    reason = "not_taken"


class OutOfStock(AdherenceError):
    reason = "out_of_stock"


class PermissionDenied(AdherenceError):
    reason = "forbidden"


def _coerce_slot(value: DoseSlot | str | None) -> DoseSlot:
    slot = parse_slot(value)
    if slot is None:
        valid = ", ".join(s.value for s in DoseSlot)
        raise InvalidDoseRequest(f"Invalid timing slot {value!r}; valid slots: {valid}")
    return slot


def _to_medicine_out(medicine: Medicine) -> MedicineOut:
    return MedicineOut(
        id=medicine.id,
        patient_id=medicine.patient_id,
        prescribed_by=medicine.prescribed_by,
        prescription_id=medicine.prescription_id,
        name=medicine.medicine_name,
        quantity=medicine.quantity,
        start_date=medicine.start_date,
        end_date=medicine.end_date,
        timing=medicine.scheduled_slots,
    )


class AdherenceEngine:
    """
    Time-driven dose scheduling and adherence state machine.

    Scheduled operations (reminders, missed checks, reset, expiry, escalation)
    process each medicine in its own transaction and never raise: a failing
    medicine is logged and the sweep moves on. Interactive operations (take,
    untake, create) raise typed ``AdherenceError`` subclasses and leave state
    untouched on failure.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        tz: tzinfo,
        escalation_threshold: int = ESCALATION_THRESHOLD,
        grace_minutes: int = MISSED_DOSE_GRACE_MINUTES,
        missed_repeat_minutes: int = MISSED_DOSE_REPEAT_MINUTES,
    ) -> None:
        if escalation_threshold < 1:
            raise ValueError("escalation_threshold must be >= 1")
        if missed_repeat_minutes < 1:
            raise ValueError("missed_repeat_minutes must be >= 1")
        self.session_factory = session_factory
        self.tz = tz
        self.escalation_threshold = escalation_threshold
        self.grace = timedelta(minutes=grace_minutes)
        self.missed_repeat = timedelta(minutes=missed_repeat_minutes)

    # ------------------------------------------------------------------ helpers

    def _clock(self, now: datetime | None) -> tuple[datetime, date]:
        safe_now = ensure_aware(now)
        return safe_now, local_date(safe_now, self.tz)

    def _ids(self, query: Callable[[MedicineStore], list[int]]) -> list[int]:
        with self.session_factory() as session:
            return query(MedicineStore(session))

    def _for_each(self, job: str, medicine_ids: Iterable[int], step: Callable[[Session, Medicine], int]) -> int:
        """Run ``step`` per medicine in its own transaction; failures are logged and skipped."""
        total = 0
        failures = 0
        for medicine_id in medicine_ids:
            try:
                with self.session_factory.begin() as session:
                    medicine = MedicineStore(session).get(medicine_id, lock=True)
                    if medicine is None:
                        continue
                    total += step(session, medicine)
            except Exception:
                failures += 1
                logger.exception("%s failed %s", job, kv(medicine_id=medicine_id))
        logger.info("%s done %s", job, kv(affected=total, failures=failures))
        return total

    # ------------------------------------------------------------- reminders

    def compute_due_reminders(self, slot: DoseSlot | str, now: datetime | None = None) -> int:
        """Queue one reminder per (medicine, slot, day) for untaken scheduled doses."""
        slot = _coerce_slot(slot)
        safe_now, today = self._clock(now)
        start, end = day_bounds(today, self.tz)
        label = slot_label(slot)

        def step(session: Session, medicine: Medicine) -> int:
            if not medicine.is_active_on(today) or not medicine.is_scheduled(slot) or medicine.is_taken(slot):
                return 0
            queue = NotificationQueue(session)
            if queue.exists(medicine.id, NotificationType.REMINDER, start, end, timing=slot):
                return 0
            queue.enqueue(
                user_id=medicine.patient_id,
                medicine_id=medicine.id,
                type=NotificationType.REMINDER,
                title="Medicine Reminder",
                message=f"Time to take {medicine.medicine_name} - {label}",
                timing=slot,
                scheduled_for=safe_now,
            )
            logger.info("reminder queued %s", kv(medicine_id=medicine.id, slot=slot.value))
            return 1

        ids = self._ids(lambda store: store.active_ids(today, scheduled=slot, untaken=slot))
        return self._for_each(f"reminders[{slot.value}]", ids, step)

    def compute_missed_doses(self, now: datetime | None = None) -> int:
        """
        Queue missed-dose nags for scheduled, untaken slots past their grace period.

        A new nag is queued when none exists today for the (medicine, slot) or the
        latest one is older than the repeat interval, so an untaken dose is nagged
        at most once per interval until it is taken or the day resets.
        """
        safe_now, today = self._clock(now)
        start, end = day_bounds(today, self.tz)
        repeat_cutoff = safe_now - self.missed_repeat

        def step(session: Session, medicine: Medicine) -> int:
            if not medicine.is_active_on(today):
                return 0
            queue = NotificationQueue(session)
            created = 0
            for slot in medicine.untaken_slots():
                if safe_now < slot_datetime(today, slot, self.tz) + self.grace:
                    continue
                last = queue.latest(medicine.id, NotificationType.MISSED_DOSE, start, end, timing=slot)
                if last is not None and last.scheduled_for >= repeat_cutoff:
                    continue
                queue.enqueue(
                    user_id=medicine.patient_id,
                    medicine_id=medicine.id,
                    type=NotificationType.MISSED_DOSE,
                    title="Missed Dose Alert",
                    message=(
                        f"You missed your dose of {medicine.medicine_name} - "
                        f"{slot_label(slot)}. Please take it now!"
                    ),
                    timing=slot,
                    scheduled_for=safe_now,
                )
                created += 1
                logger.info("missed dose queued %s", kv(medicine_id=medicine.id, slot=slot.value))
            return created

        ids = self._ids(lambda store: store.active_ids(today))
        return self._for_each("missed_doses", ids, step)

    # ----------------------------------------------------------- take/untake

    def take_dose(
        self,
        medicine_id: int,
        slot: DoseSlot | str,
        patient_id: int,
        now: datetime | None = None,
    ) -> DoseUpdate:
        slot = _coerce_slot(slot)
        _, today = self._clock(now)
        start, end = day_bounds(today, self.tz)

        with self.session_factory.begin() as session:
            medicine = MedicineStore(session).get_owned(medicine_id, patient_id, lock=True)
            if medicine is None:
                raise MedicineNotFound(medicine_id)
            if not medicine.is_scheduled(slot):
                raise SlotNotScheduled(f"{medicine.medicine_name} is not scheduled for {slot.value}")
            if medicine.is_taken(slot):
                raise AlreadyTaken(f"{medicine.medicine_name} already taken for {slot_label(slot)}")
            if medicine.quantity <= 0:
                raise OutOfStock(f"No {medicine.medicine_name} tablets left. Please refill.")

            medicine.set_taken(slot, True)
            medicine.quantity -= 1
            medicine.taken_count += 1
            # Any dose taken forgives the whole streak, not just this slot.
            medicine.consecutive_missed_count = 0
            medicine.emergency_contact_notified = False

            NotificationQueue(session).mark_reminders_read(medicine.id, slot, start, end)
            result = DoseUpdate(
                medicine_id=medicine.id,
                medicine_name=medicine.medicine_name,
                timing=slot,
                taken=True,
                quantity_left=medicine.quantity,
                taken_count=medicine.taken_count,
            )

        logger.info("dose taken %s", kv(medicine_id=medicine_id, slot=slot.value, quantity_left=result.quantity_left))
        return result

    def untake_dose(
        self,
        medicine_id: int,
        slot: DoseSlot | str,
        patient_id: int,
    ) -> DoseUpdate:
        """Same-day correction of a take; streak counters are left alone."""
        slot = _coerce_slot(slot)

        with self.session_factory.begin() as session:
            medicine = MedicineStore(session).get_owned(medicine_id, patient_id, lock=True)
            if medicine is None:
                raise MedicineNotFound(medicine_id)
            if not medicine.is_taken(slot):
                raise NotCurrentlyTaken(
                    f"{medicine.medicine_name} was not marked as taken for {slot_label(slot)}"
                )

            medicine.set_taken(slot, False)
            medicine.quantity += 1
            medicine.taken_count = max(0, medicine.taken_count - 1)
            result = DoseUpdate(
                medicine_id=medicine.id,
                medicine_name=medicine.medicine_name,
                timing=slot,
                taken=False,
                quantity_left=medicine.quantity,
                taken_count=medicine.taken_count,
            )

        logger.info("dose untaken %s", kv(medicine_id=medicine_id, slot=slot.value))
        return result

    # ------------------------------------------------------ reset/escalation

    def tally_missed_before_reset(self, session: Session, medicine: Medicine, now: datetime) -> int:
        """Count scheduled-but-untaken slots as misses; escalate when the streak crosses the threshold."""
        missed = len(medicine.untaken_slots())
        if missed == 0:
            return 0

        medicine.missed_count += missed
        medicine.consecutive_missed_count += missed
        logger.info(
            "misses tallied %s",
            kv(
                medicine_id=medicine.id,
                missed=missed,
                total=medicine.missed_count,
                consecutive=medicine.consecutive_missed_count,
            ),
        )
        if (
            medicine.consecutive_missed_count >= self.escalation_threshold
            and not medicine.emergency_contact_notified
        ):
            self.escalate(session, medicine, now)
        return missed

    def daily_reset(self, now: datetime | None = None) -> int:
        """
        Close out the previous calendar day.

        For every medicine not yet reset today: tally yesterday's misses (only if it
        was active yesterday), then zero all taken flags and stamp ``last_reset_date``.
        Tally and zeroing share one transaction per medicine, tally first.
        """
        safe_now, today = self._clock(now)
        closing_day = today - timedelta(days=1)

        def step(session: Session, medicine: Medicine) -> int:
            if medicine.last_reset_date is not None and medicine.last_reset_date >= today:
                return 0
            if medicine.is_active_on(closing_day):
                self.tally_missed_before_reset(session, medicine, safe_now)
            for slot in DoseSlot:
                medicine.set_taken(slot, False)
            medicine.last_reset_date = today
            return 1

        ids = self._ids(lambda store: store.reset_candidate_ids(today, closing_day))
        return self._for_each("daily_reset", ids, step)

    def escalate(self, session: Session, medicine: Medicine, now: datetime) -> bool:
        """Queue an emergency-contact alert carrying a snapshot of the contact; latch the medicine."""
        patient: User | None = medicine.patient
        if patient is None or not patient.emergency_contact_phone:
            logger.warning(
                "escalation skipped, no emergency contact %s",
                kv(medicine_id=medicine.id, patient_id=medicine.patient_id),
            )
            return False

        contact_name = patient.emergency_contact_name or "Emergency Contact"
        relationship = patient.emergency_contact_relationship or "family member"
        NotificationQueue(session).enqueue(
            user_id=patient.id,
            medicine_id=medicine.id,
            type=NotificationType.EMERGENCY_CONTACT_ALERT,
            title="Medication Alert - Immediate Attention Required",
            message=(
                f'Your {relationship} {patient.name} has missed their medication "{medicine.medicine_name}" '
                f"{medicine.consecutive_missed_count} times consecutively. Please check on them and "
                "ensure they are taking their prescribed medicines."
            ),
            scheduled_for=ensure_aware(now),
            emergency_contact_name=contact_name,
            emergency_contact_phone=patient.emergency_contact_phone,
        )
        medicine.emergency_contact_notified = True
        medicine.last_emergency_notification_at = ensure_aware(now)
        logger.warning(
            "emergency contact alert queued %s",
            kv(medicine_id=medicine.id, patient_id=patient.id, consecutive=medicine.consecutive_missed_count),
        )
        return True

    def check_consecutive_missed(self, now: datetime | None = None) -> int:
        """Sweep for streaks at/over the threshold that have not escalated yet."""
        safe_now, today = self._clock(now)

        def step(session: Session, medicine: Medicine) -> int:
            if (
                medicine.consecutive_missed_count < self.escalation_threshold
                or medicine.emergency_contact_notified
            ):
                return 0
            return int(self.escalate(session, medicine, safe_now))

        ids = self._ids(lambda store: store.escalation_candidate_ids(today, self.escalation_threshold))
        return self._for_each("escalation_check", ids, step)

    # ----------------------------------------------------------------- expiry

    def check_expiry(self, now: datetime | None = None) -> int:
        safe_now, today = self._clock(now)
        start, end = day_bounds(today, self.tz)

        def step(session: Session, medicine: Medicine) -> int:
            days_left = (medicine.end_date - today).days
            queue = NotificationQueue(session)
            if days_left == 0:
                if queue.exists(medicine.id, NotificationType.MEDICINE_EXPIRED, start, end):
                    return 0
                queue.enqueue(
                    user_id=medicine.patient_id,
                    medicine_id=medicine.id,
                    type=NotificationType.MEDICINE_EXPIRED,
                    title="Medicine Course Completed",
                    message=(
                        f"Your course of {medicine.medicine_name} has ended today. "
                        "Please consult your doctor if needed."
                    ),
                    scheduled_for=safe_now,
                )
                return 1
            if 1 <= days_left <= EXPIRING_SOON_DAYS:
                if queue.exists(medicine.id, NotificationType.MEDICINE_EXPIRING_SOON, start, end):
                    return 0
                unit = "day" if days_left == 1 else "days"
                queue.enqueue(
                    user_id=medicine.patient_id,
                    medicine_id=medicine.id,
                    type=NotificationType.MEDICINE_EXPIRING_SOON,
                    title="Medicine Course Ending Soon",
                    message=(
                        f"Your course of {medicine.medicine_name} will end in {days_left} {unit}. "
                        "Please consult your doctor for renewal if needed."
                    ),
                    scheduled_for=safe_now,
                )
                return 1
            return 0

        ids = self._ids(lambda store: store.ending_between(today, today + timedelta(days=EXPIRING_SOON_DAYS)))
        return self._for_each("expiry_check", ids, step)

    # --------------------------------------------------------------- creation

    def create_medicine(
        self,
        patient_id: int,
        prescriber_id: int,
        name: str,
        quantity: int,
        start_date: date,
        end_date: date,
        scheduled_slots: Iterable[DoseSlot | str],
        prescription_id: int | None = None,
        now: datetime | None = None,
    ) -> MedicineOut:
        slots = [_coerce_slot(s) for s in scheduled_slots]
        item = self._validate_item(name, quantity, start_date, end_date, slots)

        _, today = self._clock(now)
        with self.session_factory.begin() as session:
            users = UserStore(session)
            if users.get(patient_id) is None:
                raise PatientNotFound(patient_id)
            medicine = self._insert_medicine(session, patient_id, prescriber_id, item, prescription_id, today)
            created = _to_medicine_out(medicine)

        self._notify_new_medicine(created, now)
        return created

    def create_prescription(
        self,
        prescriber_id: int,
        patient_id: int,
        medicines: list[MedicineIn],
        now: datetime | None = None,
    ) -> PrescriptionOut:
        if not medicines:
            raise InvalidDoseRequest("At least one medicine is required")
        _, today = self._clock(now)

        with self.session_factory.begin() as session:
            users = UserStore(session)
            prescriber = users.get(prescriber_id)
            if prescriber is None or prescriber.user_type != UserType.ORGANISATION:
                raise PermissionDenied("Only organisations can create prescriptions.")
            if users.get(patient_id) is None:
                raise PatientNotFound(patient_id)

            prescription = users.add_prescription(patient_id=patient_id, prescribed_by=prescriber_id)
            created = [
                _to_medicine_out(
                    self._insert_medicine(session, patient_id, prescriber_id, item, prescription.id, today)
                )
                for item in medicines
            ]
            result = PrescriptionOut(
                prescription_id=prescription.id,
                patient_id=patient_id,
                prescribed_by=prescriber_id,
                medicines=created,
            )

        for medicine in created:
            self._notify_new_medicine(medicine, now)
        logger.info(
            "prescription created %s",
            kv(prescription_id=result.prescription_id, patient_id=patient_id, medicines=len(created)),
        )
        return result

    @staticmethod
    def _validate_item(
        name: str, quantity: int, start_date: date, end_date: date, slots: list[DoseSlot]
    ) -> MedicineIn:
        try:
            return MedicineIn(
                name=name,
                quantity=quantity,
                start_date=start_date,
                end_date=end_date,
                timing=slots,
            )
        except ValueError as exc:
            raise InvalidDoseRequest(str(exc)) from exc

    @staticmethod
    def _insert_medicine(
        session: Session,
        patient_id: int,
        prescriber_id: int,
        item: MedicineIn,
        prescription_id: int | None,
        today: date,
    ) -> Medicine:
        medicine = Medicine(
            patient_id=patient_id,
            prescribed_by=prescriber_id,
            prescription_id=prescription_id,
            medicine_name=item.name,
            quantity=item.quantity,
            start_date=item.start_date,
            end_date=item.end_date,
            taken_count=0,
            missed_count=0,
            consecutive_missed_count=0,
            emergency_contact_notified=False,
            last_reset_date=today,
        )
        medicine.schedule(item.timing)
        for slot in DoseSlot:
            medicine.set_taken(slot, False)
        return MedicineStore(session).add(medicine)

    def _notify_new_medicine(self, medicine: MedicineOut, now: datetime | None) -> None:
        labels = ", ".join(slot_label(slot) for slot in medicine.timing)
        try:
            with self.session_factory.begin() as session:
                NotificationQueue(session).enqueue(
                    user_id=medicine.patient_id,
                    medicine_id=medicine.id,
                    type=NotificationType.NEW_MEDICINE_ADDED,
                    title="New Medicine Added",
                    message=f"{medicine.name} has been added to your prescription. Take it at: {labels}",
                    scheduled_for=ensure_aware(now),
                )
        except Exception:
            logger.exception("new medicine notification failed %s", kv(medicine_id=medicine.id))

    def delete_medicine(self, medicine_id: int, patient_id: int) -> None:
        """Patients delete their own medicines; queued notifications keep a NULL medicine_id."""
        with self.session_factory.begin() as session:
            store = MedicineStore(session)
            medicine = store.get_owned(medicine_id, patient_id, lock=True)
            if medicine is None:
                raise MedicineNotFound(medicine_id)
            store.delete(medicine)
        logger.info("medicine deleted %s", kv(medicine_id=medicine_id, patient_id=patient_id))

    # ---------------------------------------------------------------- queries

    def list_medicines(self, patient_id: int) -> list[MedicineOut]:
        with self.session_factory() as session:
            return [_to_medicine_out(m) for m in MedicineStore(session).for_patient(patient_id)]

    def get_today_schedule(self, patient_id: int, now: datetime | None = None) -> TodaySchedule:
        _, today = self._clock(now)
        slots = {
            slot: SlotSchedule(slot=slot, label=info.label, hour=info.hour, minute=info.minute)
            for slot, info in SLOT_SCHEDULE.items()
        }
        with self.session_factory() as session:
            for medicine in MedicineStore(session).active_for_patient(patient_id, today):
                for slot in medicine.scheduled_slots:
                    slots[slot].medicines.append(
                        ScheduledDose(
                            medicine_id=medicine.id,
                            name=medicine.medicine_name,
                            quantity_remaining=medicine.quantity,
                            taken=medicine.is_taken(slot),
                        )
                    )
        return TodaySchedule(patient_id=patient_id, date=today, slots=[slots[s] for s in ORDERED_SLOTS])

    def get_stats(self, patient_id: int, now: datetime | None = None) -> PatientStats:
        _, today = self._clock(now)
        per_medicine: list[MedicineStats] = []
        with self.session_factory() as session:
            for medicine in MedicineStore(session).active_for_patient(patient_id, today):
                scheduled = len(medicine.scheduled_slots)
                taken = scheduled - len(medicine.untaken_slots())
                per_medicine.append(
                    MedicineStats(
                        medicine_id=medicine.id,
                        name=medicine.medicine_name,
                        quantity_remaining=medicine.quantity,
                        taken_count=medicine.taken_count,
                        missed_count=medicine.missed_count,
                        consecutive_missed_count=medicine.consecutive_missed_count,
                        emergency_contact_notified=medicine.emergency_contact_notified,
                        scheduled_today=scheduled,
                        taken_today=taken,
                        pending_today=scheduled - taken,
                    )
                )

        taken_all_time = sum(m.taken_count for m in per_medicine)
        missed_all_time = sum(m.missed_count for m in per_medicine)
        scheduled_today = sum(m.scheduled_today for m in per_medicine)
        taken_today = sum(m.taken_today for m in per_medicine)
        denominator = taken_all_time + missed_all_time
        rate = (taken_all_time / denominator) if denominator else 1.0

        return PatientStats(
            patient_id=patient_id,
            date=today,
            total_medicines=len(per_medicine),
            scheduled_today=scheduled_today,
            taken_today=taken_today,
            pending_today=scheduled_today - taken_today,
            taken_all_time=taken_all_time,
            missed_all_time=missed_all_time,
            adherence_rate=round(rate, 3),
            medicines=per_medicine,
        )
