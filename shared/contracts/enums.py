from enum import Enum


class DoseSlot(str, Enum):
    BEFORE_BREAKFAST = "beforeBreakfast"
    AFTER_BREAKFAST = "afterBreakfast"
    BEFORE_LUNCH = "beforeLunch"
    AFTER_LUNCH = "afterLunch"
    BEFORE_DINNER = "beforeDinner"
    AFTER_DINNER = "afterDinner"

    @property
    def field(self) -> str:
        """Snake-case suffix of the per-slot columns on ``Medicine``."""
        return self.name.lower()


class NotificationType(str, Enum):
    REMINDER = "medicine_reminder"
    MISSED_DOSE = "missed_dose"
    MEDICINE_EXPIRED = "medicine_expired"
    MEDICINE_EXPIRING_SOON = "medicine_expiring_soon"
    NEW_MEDICINE_ADDED = "new_medicine_added"
    EMERGENCY_CONTACT_ALERT = "emergency_contact_alert"


class UserType(str, Enum):
    USER = "user"
    ORGANISATION = "organisation"


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    RESOLVED = "resolved"
    NO_PHONE = "no_phone"
    INVALID_PHONE = "invalid_phone"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"
