"""Local-first baby activity tracker with cloud snapshot sync."""

from .const import APP_VERSION
from .models import ActivityType, Caregiver, Child, JoinRequest, LogEntry, RecordKind, VaccineAppointment
from .settings import AppSettings
from .snapshot import Snapshot
from .storage import RecordStore, RecordStoreError
from .tracker import BabyTracker

__version__ = APP_VERSION

__all__ = [
    "ActivityType",
    "AppSettings",
    "BabyTracker",
    "Caregiver",
    "Child",
    "JoinRequest",
    "LogEntry",
    "RecordKind",
    "RecordStore",
    "RecordStoreError",
    "Snapshot",
    "VaccineAppointment",
]
