from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo

from shared.contracts.enums import DoseSlot
from shared.contracts.slots import slot_info


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime:
    """Default to now; naive datetimes are taken to be UTC."""
    base = value or now_utc()
    return base if base.tzinfo else base.replace(tzinfo=timezone.utc)


def local_date(moment: datetime, tz: tzinfo) -> date:
    return ensure_aware(moment).astimezone(tz).date()


def day_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    """[start, end) of a local calendar day, in UTC."""
    start = datetime(day.year, day.month, day.day, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def slot_datetime(day: date, slot: DoseSlot, tz: tzinfo) -> datetime:
    """Nominal time of ``slot`` on ``day`` in local time, as a UTC datetime."""
    return datetime.combine(day, slot_info(slot).nominal_time, tzinfo=tz).astimezone(timezone.utc)
