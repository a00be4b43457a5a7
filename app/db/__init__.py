from .models import (
    Base,
    Medicine,
    Notification,
    Prescription,
    User,
)

__all__ = [
    "Base",
    "Medicine",
    "Notification",
    "Prescription",
    "User",
]
