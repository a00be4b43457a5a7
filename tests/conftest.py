from datetime import date, datetime, timedelta, timezone

import pytest

from app.core.config import Settings
from app.db.models import Medicine, Notification, User
from app.db.session import build_engine, build_session_factory, init_schema
from medisense import AdherenceEngine
from services.scheduler.jobs import build_runtime
from services.sms_gateway.outbound import InMemoryTransport
from services.sms_gateway.worker import DeliveryWorker
from shared.contracts.enums import DoseSlot, UserType

TODAY = date(2026, 3, 10)


def at(hour: int, minute: int = 0, day: date = TODAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_schema(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def adherence(session_factory):
    return AdherenceEngine(session_factory, tz=timezone.utc)


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def worker(session_factory, transport):
    return DeliveryWorker(session_factory, transport)


@pytest.fixture
def make_user(session_factory):
    def _make(
        name: str = "Asha",
        phone: str | None = "9876543210",
        user_type: UserType = UserType.USER,
        **extra,
    ) -> int:
        with session_factory.begin() as session:
            user = User(name=name, phone=phone, user_type=user_type, **extra)
            session.add(user)
            session.flush()
            return user.id

    return _make


@pytest.fixture
def make_medicine(session_factory, make_user):
    def _make(
        slots=(DoseSlot.AFTER_BREAKFAST, DoseSlot.AFTER_DINNER),
        patient_id: int | None = None,
        quantity: int = 10,
        start_date: date = TODAY - timedelta(days=7),
        end_date: date = TODAY + timedelta(days=20),
        name: str = "Metformin",
        **extra,
    ) -> int:
        if patient_id is None:
            patient_id = make_user()
        prescriber_id = make_user(name="City Clinic", phone=None, user_type=UserType.ORGANISATION)
        with session_factory.begin() as session:
            medicine = Medicine(
                patient_id=patient_id,
                prescribed_by=prescriber_id,
                medicine_name=name,
                quantity=quantity,
                start_date=start_date,
                end_date=end_date,
                **extra,
            )
            medicine.schedule(slots)
            session.add(medicine)
            session.flush()
            return medicine.id

    return _make


@pytest.fixture
def load_medicine(session_factory):
    def _load(medicine_id: int) -> Medicine:
        with session_factory() as session:
            return session.get(Medicine, medicine_id)

    return _load


@pytest.fixture
def notifications(session_factory):
    def _list(type=None, medicine_id=None) -> list[Notification]:
        with session_factory() as session:
            query = session.query(Notification)
            if type is not None:
                query = query.filter(Notification.type == type)
            if medicine_id is not None:
                query = query.filter(Notification.medicine_id == medicine_id)
            return query.order_by(Notification.id).all()

    return _list


@pytest.fixture
def runtime():
    settings = Settings(
        database_url="sqlite://",
        timezone="UTC",
        sms_transport="memory",
        scheduler_enabled=False,
    )
    rt = build_runtime(settings)
    yield rt
    rt.engine.dispose()
