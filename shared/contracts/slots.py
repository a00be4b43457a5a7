from __future__ import annotations

from dataclasses import dataclass
from datetime import time

from .enums import DoseSlot


@dataclass(frozen=True)
class SlotInfo:
    slot: DoseSlot
    hour: int
    minute: int
    label: str

    @property
    def nominal_time(self) -> time:
        return time(self.hour, self.minute)


SLOT_SCHEDULE: dict[DoseSlot, SlotInfo] = {
    DoseSlot.BEFORE_BREAKFAST: SlotInfo(DoseSlot.BEFORE_BREAKFAST, 7, 0, "Before Breakfast (7:00 AM)"),
    DoseSlot.AFTER_BREAKFAST: SlotInfo(DoseSlot.AFTER_BREAKFAST, 9, 0, "After Breakfast (9:00 AM)"),
    DoseSlot.BEFORE_LUNCH: SlotInfo(DoseSlot.BEFORE_LUNCH, 12, 0, "Before Lunch (12:00 PM)"),
    DoseSlot.AFTER_LUNCH: SlotInfo(DoseSlot.AFTER_LUNCH, 14, 0, "After Lunch (2:00 PM)"),
    DoseSlot.BEFORE_DINNER: SlotInfo(DoseSlot.BEFORE_DINNER, 19, 0, "Before Dinner (7:00 PM)"),
    DoseSlot.AFTER_DINNER: SlotInfo(DoseSlot.AFTER_DINNER, 21, 0, "After Dinner (9:00 PM)"),
}

# Declaration order of DoseSlot is the day order.
ORDERED_SLOTS: tuple[DoseSlot, ...] = tuple(DoseSlot)


def slot_info(slot: DoseSlot | str) -> SlotInfo:
    return SLOT_SCHEDULE[DoseSlot(slot)]


def slot_label(slot: DoseSlot | str) -> str:
    return slot_info(slot).label


def parse_slot(value: DoseSlot | str | None) -> DoseSlot | None:
    """Return the slot for a wire value or member name, or None when unknown."""
    if value is None:
        return None
    if isinstance(value, DoseSlot):
        return value
    try:
        return DoseSlot(value)
    except ValueError:
        return DoseSlot.__members__.get(str(value).upper())
