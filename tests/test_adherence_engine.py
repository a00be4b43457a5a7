import math
from datetime import timedelta

import pytest

from app.db.models import Medicine
from conftest import TODAY, at
from medisense import (
    AdherenceEngine,
    AlreadyTaken,
    InvalidDoseRequest,
    MedicineNotFound,
    NotCurrentlyTaken,
    OutOfStock,
    PatientNotFound,
    PermissionDenied,
    SlotNotScheduled,
)
from shared.contracts.enums import DoseSlot, NotificationType, UserType
from shared.contracts.models import MedicineIn

DAY2 = TODAY + timedelta(days=1)
DAY3 = TODAY + timedelta(days=2)


def _patient_of(load_medicine, medicine_id):
    return load_medicine(medicine_id).patient_id


def test_reminders_are_created_once_per_slot_and_day(adherence, make_medicine, notifications):
    medicine_id = make_medicine()

    assert adherence.compute_due_reminders(DoseSlot.AFTER_BREAKFAST, now=at(9)) == 1
    assert adherence.compute_due_reminders(DoseSlot.AFTER_BREAKFAST, now=at(9, 5)) == 0

    reminders = notifications(type=NotificationType.REMINDER, medicine_id=medicine_id)
    assert len(reminders) == 1
    assert reminders[0].timing == DoseSlot.AFTER_BREAKFAST
    assert reminders[0].message == "Time to take Metformin - After Breakfast (9:00 AM)"

    # A new calendar day gets its own reminder.
    assert adherence.compute_due_reminders(DoseSlot.AFTER_BREAKFAST, now=at(9, day=DAY2)) == 1


def test_reminders_skip_taken_unscheduled_and_inactive(adherence, make_medicine, load_medicine):
    taken_id = make_medicine()
    make_medicine(slots=[DoseSlot.BEFORE_LUNCH])
    make_medicine(start_date=TODAY + timedelta(days=1))
    make_medicine(end_date=TODAY - timedelta(days=1))

    adherence.take_dose(taken_id, DoseSlot.AFTER_BREAKFAST, _patient_of(load_medicine, taken_id), now=at(8, 55))

    assert adherence.compute_due_reminders(DoseSlot.AFTER_BREAKFAST, now=at(9)) == 0


def test_reminder_rejects_unknown_slot(adherence):
    with pytest.raises(InvalidDoseRequest):
        adherence.compute_due_reminders("midnightSnack", now=at(9))


def test_missed_dose_waits_for_grace_period(adherence, make_medicine):
    make_medicine(slots=[DoseSlot.AFTER_BREAKFAST])

    assert adherence.compute_missed_doses(now=at(9, 59)) == 0
    assert adherence.compute_missed_doses(now=at(10)) == 1


def test_missed_dose_nags_at_most_every_thirty_minutes(adherence, make_medicine, notifications):
    medicine_id = make_medicine(slots=[DoseSlot.AFTER_BREAKFAST])

    start = at(10)
    window_minutes = 91
    for minute in range(window_minutes):
        adherence.compute_missed_doses(now=start + timedelta(minutes=minute))

    missed = notifications(type=NotificationType.MISSED_DOSE, medicine_id=medicine_id)
    assert len(missed) <= math.ceil(window_minutes / 30)
    times = [n.scheduled_for for n in missed]
    assert times == [at(10), at(10, 31), at(11, 2)]
    assert missed[0].message == (
        "You missed your dose of Metformin - After Breakfast (9:00 AM). Please take it now!"
    )


def test_missed_dose_stops_once_taken(adherence, make_medicine, load_medicine, notifications):
    medicine_id = make_medicine(slots=[DoseSlot.AFTER_BREAKFAST])
    adherence.compute_missed_doses(now=at(10))

    adherence.take_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, _patient_of(load_medicine, medicine_id), now=at(10, 15))

    assert adherence.compute_missed_doses(now=at(11)) == 0
    assert len(notifications(type=NotificationType.MISSED_DOSE)) == 1


def test_take_dose_updates_counters_and_marks_reminder_read(adherence, make_medicine, load_medicine, notifications):
    medicine_id = make_medicine(consecutive_missed_count=3, emergency_contact_notified=True)
    patient_id = _patient_of(load_medicine, medicine_id)
    adherence.compute_due_reminders(DoseSlot.AFTER_BREAKFAST, now=at(9))

    update = adherence.take_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, patient_id, now=at(9, 10))

    assert update.taken is True
    assert update.quantity_left == 9
    assert update.taken_count == 1
    medicine = load_medicine(medicine_id)
    assert medicine.is_taken(DoseSlot.AFTER_BREAKFAST)
    assert not medicine.is_taken(DoseSlot.AFTER_DINNER)
    assert medicine.consecutive_missed_count == 0
    assert medicine.emergency_contact_notified is False
    assert notifications(type=NotificationType.REMINDER)[0].is_read is True


def test_take_dose_preconditions(adherence, make_medicine, make_user, load_medicine):
    medicine_id = make_medicine()
    patient_id = _patient_of(load_medicine, medicine_id)
    stranger = make_user(name="Someone Else")

    with pytest.raises(MedicineNotFound):
        adherence.take_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, stranger)
    with pytest.raises(MedicineNotFound):
        adherence.take_dose(9999, DoseSlot.AFTER_BREAKFAST, patient_id)
    with pytest.raises(SlotNotScheduled):
        adherence.take_dose(medicine_id, DoseSlot.BEFORE_LUNCH, patient_id)
    with pytest.raises(InvalidDoseRequest):
        adherence.take_dose(medicine_id, "lunchtime", patient_id)

    adherence.take_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, patient_id)
    with pytest.raises(AlreadyTaken) as excinfo:
        adherence.take_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, patient_id)
    assert excinfo.value.reason == "already_taken"

    medicine = load_medicine(medicine_id)
    assert medicine.quantity == 9
    assert medicine.taken_count == 1


def test_take_dose_never_goes_below_zero(adherence, make_medicine, load_medicine):
    medicine_id = make_medicine(quantity=1)
    patient_id = _patient_of(load_medicine, medicine_id)

    adherence.take_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, patient_id)
    with pytest.raises(OutOfStock):
        adherence.take_dose(medicine_id, DoseSlot.AFTER_DINNER, patient_id)

    medicine = load_medicine(medicine_id)
    assert medicine.quantity == 0
    assert medicine.taken_count == 1
    assert not medicine.is_taken(DoseSlot.AFTER_DINNER)


def test_take_then_untake_restores_state(adherence, make_medicine, load_medicine):
    medicine_id = make_medicine(quantity=7, taken_count=4)
    patient_id = _patient_of(load_medicine, medicine_id)

    adherence.take_dose(medicine_id, DoseSlot.AFTER_DINNER, patient_id)
    update = adherence.untake_dose(medicine_id, DoseSlot.AFTER_DINNER, patient_id)

    assert update.taken is False
    medicine = load_medicine(medicine_id)
    assert medicine.quantity == 7
    assert medicine.taken_count == 4
    assert not medicine.is_taken(DoseSlot.AFTER_DINNER)


def test_untake_requires_taken_slot_and_keeps_streak(adherence, make_medicine, load_medicine):
    medicine_id = make_medicine(consecutive_missed_count=2)
    patient_id = _patient_of(load_medicine, medicine_id)

    with pytest.raises(NotCurrentlyTaken):
        adherence.untake_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, patient_id)

    adherence.take_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, patient_id)
    adherence.untake_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, patient_id)

    # The take forgave the streak; the correction does not bring it back.
    assert load_medicine(medicine_id).consecutive_missed_count == 0


def test_daily_reset_tallies_before_zeroing(adherence, make_medicine, load_medicine):
    medicine_id = make_medicine(slots=[DoseSlot.BEFORE_BREAKFAST, DoseSlot.AFTER_BREAKFAST, DoseSlot.AFTER_DINNER])
    patient_id = _patient_of(load_medicine, medicine_id)
    adherence.take_dose(medicine_id, DoseSlot.BEFORE_BREAKFAST, patient_id, now=at(7, 5))

    assert adherence.daily_reset(now=at(0, 0, day=DAY2)) == 1

    medicine = load_medicine(medicine_id)
    assert medicine.missed_count == 2
    assert medicine.consecutive_missed_count == 2
    assert medicine.scheduled_slots and not any(medicine.is_taken(s) for s in DoseSlot)
    assert medicine.last_reset_date == DAY2


def test_daily_reset_is_idempotent_within_a_day(adherence, make_medicine, load_medicine):
    medicine_id = make_medicine()

    adherence.daily_reset(now=at(0, 0, day=DAY2))
    assert adherence.daily_reset(now=at(0, 5, day=DAY2)) == 0

    assert load_medicine(medicine_id).missed_count == 2


def test_medicine_created_today_survives_a_same_day_reset(adherence, make_user, load_medicine):
    patient_id = make_user()
    clinic_id = make_user(name="Clinic", user_type=UserType.ORGANISATION)
    created = adherence.create_medicine(
        patient_id, clinic_id, "Amlodipine", 10, TODAY, TODAY + timedelta(days=9), ["afterBreakfast"], now=at(8)
    )
    adherence.take_dose(created.id, DoseSlot.AFTER_BREAKFAST, patient_id, now=at(9))

    assert adherence.daily_reset(now=at(10)) == 0

    medicine = load_medicine(created.id)
    assert medicine.last_reset_date == TODAY
    assert medicine.is_taken(DoseSlot.AFTER_BREAKFAST)
    assert (medicine.quantity, medicine.taken_count, medicine.missed_count) == (9, 1, 0)
    with pytest.raises(AlreadyTaken):
        adherence.take_dose(created.id, DoseSlot.AFTER_BREAKFAST, patient_id, now=at(11))

    # The creation day is closed normally at the next midnight.
    assert adherence.daily_reset(now=at(0, 0, day=DAY2)) == 1
    medicine = load_medicine(created.id)
    assert (medicine.quantity, medicine.missed_count) == (9, 0)
    assert not medicine.is_taken(DoseSlot.AFTER_BREAKFAST)


def test_daily_reset_ignores_medicines_not_active_yesterday(adherence, make_medicine, load_medicine):
    starts_today = make_medicine(start_date=DAY2)

    adherence.daily_reset(now=at(0, 0, day=DAY2))

    medicine = load_medicine(starts_today)
    assert medicine.missed_count == 0
    assert medicine.last_reset_date == DAY2


def test_two_day_scenario(adherence, make_medicine, load_medicine):
    medicine_id = make_medicine(slots=[DoseSlot.AFTER_BREAKFAST, DoseSlot.AFTER_DINNER], quantity=10)
    patient_id = _patient_of(load_medicine, medicine_id)

    adherence.daily_reset(now=at(0, 0, day=DAY2))
    medicine = load_medicine(medicine_id)
    assert (medicine.missed_count, medicine.consecutive_missed_count, medicine.quantity) == (2, 2, 10)

    update = adherence.take_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, patient_id, now=at(9, 5, day=DAY2))
    assert (update.quantity_left, update.taken_count) == (9, 1)
    assert load_medicine(medicine_id).consecutive_missed_count == 0

    adherence.daily_reset(now=at(0, 0, day=DAY3))
    medicine = load_medicine(medicine_id)
    assert (medicine.missed_count, medicine.consecutive_missed_count) == (3, 1)


def test_escalation_fires_once_per_streak(adherence, make_medicine, make_user, load_medicine, notifications):
    patient_id = make_user(
        emergency_contact_name="Ravi",
        emergency_contact_phone="+91 98765 00000",
        emergency_contact_relationship="son",
    )
    medicine_id = make_medicine(
        patient_id=patient_id,
        slots=[DoseSlot.BEFORE_BREAKFAST, DoseSlot.AFTER_LUNCH, DoseSlot.AFTER_DINNER],
        start_date=TODAY - timedelta(days=10),
    )

    adherence.daily_reset(now=at(0, 0, day=DAY2))
    assert notifications(type=NotificationType.EMERGENCY_CONTACT_ALERT) == []

    adherence.daily_reset(now=at(0, 0, day=DAY3))
    adherence.daily_reset(now=at(0, 0, day=DAY3 + timedelta(days=1)))
    adherence.check_consecutive_missed(now=at(12, day=DAY3 + timedelta(days=1)))

    alerts = notifications(type=NotificationType.EMERGENCY_CONTACT_ALERT)
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.is_emergency_contact_notification is True
    assert alert.emergency_contact_name == "Ravi"
    assert alert.emergency_contact_phone == "+91 98765 00000"
    assert "Your son Asha has missed their medication \"Metformin\" 6 times consecutively" in alert.message

    medicine = load_medicine(medicine_id)
    assert medicine.consecutive_missed_count == 9
    assert medicine.emergency_contact_notified is True
    assert medicine.last_emergency_notification_at == at(0, 0, day=DAY3)


def test_escalation_without_contact_is_skipped_then_caught_by_sweep(
    adherence, session_factory, make_medicine, load_medicine, notifications
):
    medicine_id = make_medicine(slots=list(DoseSlot))
    adherence.daily_reset(now=at(0, 0, day=DAY2))

    medicine = load_medicine(medicine_id)
    assert medicine.consecutive_missed_count == 6
    assert medicine.emergency_contact_notified is False
    assert notifications(type=NotificationType.EMERGENCY_CONTACT_ALERT) == []

    with session_factory.begin() as session:
        patient = session.get(Medicine, medicine_id).patient
        patient.emergency_contact_phone = "9000000001"

    assert adherence.check_consecutive_missed(now=at(2, day=DAY2)) == 1
    assert adherence.check_consecutive_missed(now=at(4, day=DAY2)) == 0
    alert = notifications(type=NotificationType.EMERGENCY_CONTACT_ALERT)[0]
    assert alert.emergency_contact_name == "Emergency Contact"
    assert "Your family member Asha" in alert.message


def test_one_failing_medicine_does_not_stop_the_sweep(adherence, make_medicine, load_medicine, monkeypatch):
    broken_id = make_medicine(name="Broken")
    healthy_id = make_medicine(name="Healthy")

    real_tally = AdherenceEngine.tally_missed_before_reset

    def flaky(self, session, medicine, now):
        if medicine.id == broken_id:
            raise RuntimeError("boom")
        return real_tally(self, session, medicine, now)

    monkeypatch.setattr(AdherenceEngine, "tally_missed_before_reset", flaky)

    assert adherence.daily_reset(now=at(0, 0, day=DAY2)) == 1

    assert load_medicine(healthy_id).missed_count == 2
    broken = load_medicine(broken_id)
    assert broken.missed_count == 0
    assert broken.last_reset_date is None


def test_expiry_notifications(adherence, make_medicine, notifications):
    ends_today = make_medicine(end_date=TODAY)
    ends_soon = make_medicine(end_date=TODAY + timedelta(days=2))
    make_medicine(end_date=TODAY + timedelta(days=4))

    assert adherence.check_expiry(now=at(8)) == 2
    assert adherence.check_expiry(now=at(9)) == 0

    expired = notifications(type=NotificationType.MEDICINE_EXPIRED)
    assert [n.medicine_id for n in expired] == [ends_today]
    soon = notifications(type=NotificationType.MEDICINE_EXPIRING_SOON)
    assert [n.medicine_id for n in soon] == [ends_soon]
    assert "will end in 2 days" in soon[0].message


def test_create_medicine_enqueues_summary(adherence, make_user, notifications):
    patient_id = make_user()
    clinic_id = make_user(name="Clinic", user_type=UserType.ORGANISATION)

    created = adherence.create_medicine(
        patient_id=patient_id,
        prescriber_id=clinic_id,
        name="  Amlodipine ",
        quantity=30,
        start_date=TODAY,
        end_date=TODAY + timedelta(days=29),
        scheduled_slots=["afterBreakfast", DoseSlot.AFTER_DINNER, "afterBreakfast"],
        now=at(10),
    )

    assert created.name == "Amlodipine"
    assert created.timing == [DoseSlot.AFTER_BREAKFAST, DoseSlot.AFTER_DINNER]
    added = notifications(type=NotificationType.NEW_MEDICINE_ADDED)
    assert len(added) == 1
    assert added[0].message == (
        "Amlodipine has been added to your prescription. "
        "Take it at: After Breakfast (9:00 AM), After Dinner (9:00 PM)"
    )


def test_create_medicine_validation(adherence, make_user):
    patient_id = make_user()

    with pytest.raises(InvalidDoseRequest):
        adherence.create_medicine(patient_id, patient_id, "X", 1, TODAY, TODAY - timedelta(days=1), ["afterLunch"])
    with pytest.raises(InvalidDoseRequest):
        adherence.create_medicine(patient_id, patient_id, "X", 1, TODAY, TODAY, [])
    with pytest.raises(PatientNotFound):
        adherence.create_medicine(4242, patient_id, "X", 1, TODAY, TODAY, ["afterLunch"])


def test_create_prescription_requires_organisation(adherence, make_user, notifications):
    patient_id = make_user()
    clinic_id = make_user(name="Clinic", user_type=UserType.ORGANISATION)
    items = [
        MedicineIn(name="A", quantity=10, start_date=TODAY, end_date=TODAY, timing=[DoseSlot.BEFORE_LUNCH]),
        MedicineIn(name="B", quantity=5, start_date=TODAY, end_date=TODAY, timing=[DoseSlot.AFTER_LUNCH]),
    ]

    with pytest.raises(PermissionDenied):
        adherence.create_prescription(prescriber_id=patient_id, patient_id=patient_id, medicines=items)
    with pytest.raises(PatientNotFound):
        adherence.create_prescription(prescriber_id=clinic_id, patient_id=9999, medicines=items)

    result = adherence.create_prescription(prescriber_id=clinic_id, patient_id=patient_id, medicines=items)

    assert [m.name for m in result.medicines] == ["A", "B"]
    assert {m.prescription_id for m in result.medicines} == {result.prescription_id}
    assert len(notifications(type=NotificationType.NEW_MEDICINE_ADDED)) == 2


def test_today_schedule_groups_by_slot(adherence, make_user, make_medicine, load_medicine):
    patient_id = make_user()
    first = make_medicine(patient_id=patient_id, slots=[DoseSlot.AFTER_BREAKFAST], name="A")
    make_medicine(patient_id=patient_id, slots=[DoseSlot.AFTER_BREAKFAST, DoseSlot.AFTER_DINNER], name="B")
    make_medicine(patient_id=patient_id, end_date=TODAY - timedelta(days=1), name="Old")
    adherence.take_dose(first, DoseSlot.AFTER_BREAKFAST, patient_id, now=at(9))

    schedule = adherence.get_today_schedule(patient_id, now=at(12))

    assert schedule.date == TODAY
    assert [s.slot for s in schedule.slots] == list(DoseSlot)
    by_slot = {s.slot: s for s in schedule.slots}
    assert [(m.name, m.taken) for m in by_slot[DoseSlot.AFTER_BREAKFAST].medicines] == [("A", True), ("B", False)]
    assert [m.name for m in by_slot[DoseSlot.AFTER_DINNER].medicines] == ["B"]
    assert by_slot[DoseSlot.BEFORE_LUNCH].medicines == []


def test_stats_adherence_rate(adherence, make_user, make_medicine):
    patient_id = make_user()
    assert adherence.get_stats(patient_id, now=at(12)).adherence_rate == 1.0

    medicine_id = make_medicine(patient_id=patient_id)
    adherence.take_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, patient_id, now=at(9))
    adherence.take_dose(medicine_id, DoseSlot.AFTER_DINNER, patient_id, now=at(21))
    adherence.daily_reset(now=at(0, 0, day=DAY2))
    adherence.take_dose(medicine_id, DoseSlot.AFTER_BREAKFAST, patient_id, now=at(9, day=DAY2))
    adherence.daily_reset(now=at(0, 0, day=DAY3))

    stats = adherence.get_stats(patient_id, now=at(12, day=DAY3))

    assert stats.taken_all_time == 3
    assert stats.missed_all_time == 1
    assert stats.adherence_rate == 0.75
    assert stats.scheduled_today == 2
    assert stats.pending_today == 2
    assert stats.medicines[0].consecutive_missed_count == 1


def test_local_timezone_defines_the_day(session_factory, make_medicine):
    from zoneinfo import ZoneInfo

    engine = AdherenceEngine(session_factory, tz=ZoneInfo("Asia/Kolkata"))
    make_medicine(slots=[DoseSlot.AFTER_BREAKFAST])

    # 03:31 UTC is 09:01 IST: still inside the grace period.
    assert engine.compute_missed_doses(now=at(3, 31)) == 0
    # 04:30 UTC is 10:00 IST.
    assert engine.compute_missed_doses(now=at(4, 30)) == 1


def test_list_medicines_returns_only_own_newest_first(adherence, make_user, make_medicine):
    patient_id = make_user()
    older = make_medicine(patient_id=patient_id, name="A")
    newer = make_medicine(patient_id=patient_id, name="B", end_date=TODAY - timedelta(days=1))
    make_medicine(name="Someone else's")

    listed = adherence.list_medicines(patient_id)

    assert [m.id for m in listed] == [newer, older]
    assert listed[0].name == "B"
    assert adherence.list_medicines(9999) == []


def test_delete_medicine_is_owner_scoped(adherence, make_user, make_medicine, load_medicine, notifications):
    patient_id = make_user()
    medicine_id = make_medicine(patient_id=patient_id)
    adherence.compute_due_reminders(DoseSlot.AFTER_BREAKFAST, now=at(9))

    with pytest.raises(MedicineNotFound):
        adherence.delete_medicine(medicine_id, patient_id=make_user(name="Other"))
    assert load_medicine(medicine_id) is not None

    adherence.delete_medicine(medicine_id, patient_id=patient_id)

    assert load_medicine(medicine_id) is None
    assert [n.medicine_id for n in notifications(type=NotificationType.REMINDER)] == [None]
    with pytest.raises(MedicineNotFound):
        adherence.delete_medicine(medicine_id, patient_id=patient_id)
