from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.core.logging_utils import kv
from app.db.session import build_engine, build_session_factory, init_schema
from medisense import AdherenceEngine
from services.sms_gateway.outbound import Fast2SmsTransport, InMemoryTransport, SmsTransport
from services.sms_gateway.worker import DeliveryWorker
from shared.contracts.enums import DoseSlot
from shared.contracts.models import DeliveryReport, TriggerResult
from shared.contracts.slots import SLOT_SCHEDULE

logger = logging.getLogger(__name__)

DAILY_RESET = "daily_reset"
MISSED_CHECK = "missed_check"
EXPIRY_CHECK = "expiry_check"
ESCALATION_CHECK = "escalation_check"
DELIVER_NOTIFICATIONS = "deliver_notifications"

MISSED_CHECK_MINUTES = 30
ESCALATION_CHECK_HOURS = 2
EXPIRY_CHECK_HOUR = 8
MISFIRE_GRACE_SECONDS = 300


def reminder_job(slot: DoseSlot) -> str:
    return f"reminder:{slot.value}"


@dataclass
class Runtime:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    adherence: AdherenceEngine
    transport: SmsTransport
    worker: DeliveryWorker


def build_transport(settings: Settings) -> SmsTransport:
    if settings.sms_transport == "memory":
        return InMemoryTransport()
    return Fast2SmsTransport(settings.fast2sms_api_key, timeout=settings.sms_timeout_seconds)


def build_runtime(settings: Settings) -> Runtime:
    engine = build_engine(settings.database_url)
    init_schema(engine)
    session_factory = build_session_factory(engine)
    transport = build_transport(settings)
    return Runtime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        adherence=AdherenceEngine(
            session_factory,
            tz=settings.tz,
            escalation_threshold=settings.escalation_threshold,
            grace_minutes=settings.missed_grace_minutes,
            missed_repeat_minutes=settings.missed_repeat_minutes,
        ),
        transport=transport,
        worker=DeliveryWorker(
            session_factory,
            transport,
            batch_size=settings.notification_batch_size,
            brand=settings.sms_brand,
            max_length=settings.sms_max_length,
        ),
    )


@dataclass
class JobRunner:
    """Named, independently triggerable jobs; running one never raises."""

    adherence: AdherenceEngine
    worker: DeliveryWorker
    tasks: Dict[str, Callable[[Optional[datetime]], int]] = field(init=False)

    def __post_init__(self) -> None:
        self.tasks = {DAILY_RESET: self.adherence.daily_reset}
        for slot in DoseSlot:
            self.tasks[reminder_job(slot)] = partial(self.adherence.compute_due_reminders, slot)
        self.tasks[MISSED_CHECK] = self.adherence.compute_missed_doses
        self.tasks[EXPIRY_CHECK] = self.adherence.check_expiry
        self.tasks[ESCALATION_CHECK] = self.adherence.check_consecutive_missed
        self.tasks[DELIVER_NOTIFICATIONS] = self._deliver

    @property
    def names(self) -> List[str]:
        return list(self.tasks)

    def _deliver(self, now: Optional[datetime] = None) -> int:
        report: DeliveryReport = self.worker.run_once(now)
        return report.processed

    def run(self, name: str, now: Optional[datetime] = None) -> TriggerResult:
        task = self.tasks.get(name)
        if task is None:
            raise KeyError(name)
        try:
            affected = task(now)
        except Exception as exc:
            logger.exception("job crashed %s", kv(job=name))
            return TriggerResult(job=name, status="error", detail=str(exc))
        return TriggerResult(job=name, status="ok", affected=affected)

    def catch_up(self, now: Optional[datetime] = None) -> TriggerResult:
        """Run the daily reset once at startup in case local midnight passed while stopped."""
        result = self.run(DAILY_RESET, now)
        logger.info("startup reset catch-up %s", kv(status=result.status, affected=result.affected))
        return result


def build_scheduler(runner: JobRunner, settings: Settings) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone=settings.tz)

    def add(name: str, trigger) -> None:
        scheduler.add_job(
            runner.run,
            trigger=trigger,
            id=name,
            name=name,
            args=[name],
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
        )

    add(DAILY_RESET, CronTrigger(hour=0, minute=0, timezone=settings.tz))
    for slot, info in SLOT_SCHEDULE.items():
        add(reminder_job(slot), CronTrigger(hour=info.hour, minute=info.minute, timezone=settings.tz))
    add(MISSED_CHECK, IntervalTrigger(minutes=MISSED_CHECK_MINUTES, timezone=settings.tz))
    add(EXPIRY_CHECK, CronTrigger(hour=EXPIRY_CHECK_HOUR, minute=0, timezone=settings.tz))
    add(ESCALATION_CHECK, IntervalTrigger(hours=ESCALATION_CHECK_HOURS, timezone=settings.tz))
    add(DELIVER_NOTIFICATIONS, IntervalTrigger(seconds=settings.poll_seconds, timezone=settings.tz))

    logger.info("scheduler configured %s", kv(jobs=len(scheduler.get_jobs()), tz=settings.timezone))
    return scheduler
