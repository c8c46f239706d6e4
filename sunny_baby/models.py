"""Record types shared by the local store, the tracker and the sync engine."""

from __future__ import annotations

import math
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


class ActivityType(str, Enum):
    """Kinds of events a caregiver can log."""

    NURSING = "NURSING"
    BOTTLE = "BOTTLE"
    FOOD = "FOOD"
    DIAPER = "DIAPER"
    SLEEP = "SLEEP"
    HEALTH = "HEALTH"
    GROWTH = "GROWTH"
    VACCINE = "VACCINE"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: Any) -> ActivityType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.OTHER


class RecordKind(str, Enum):
    """The five record collections; values are the snapshot wire keys."""

    LOGS = "logs"
    CHILDREN = "children"
    APPOINTMENTS = "appointments"
    CAREGIVERS = "caregivers"
    JOIN_REQUESTS = "joinRequests"

    @property
    def table(self) -> str:
        return "join_requests" if self is RecordKind.JOIN_REQUESTS else self.value

    @property
    def record_type(self) -> type[SyncRecord]:
        return RECORD_TYPES[self]


def _opt_number(value: Any) -> int | float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def _opt_int(value: Any) -> int | None:
    number = _opt_number(value)
    return int(number) if number is not None else None


def _text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def _required_id(payload: Mapping[str, Any], key: str = "id") -> str:
    raw = payload.get(key)
    ident = str(raw).strip() if raw is not None else ""
    if not ident:
        raise ValueError(f"record payload missing {key}")
    return ident


def _extras(payload: Mapping[str, Any], known: frozenset[str]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in known}


def _compact(payload: dict[str, Any], extras: Mapping[str, Any]) -> dict[str, Any]:
    result = dict(extras)
    result.update({key: value for key, value in payload.items() if value is not None})
    return result


@dataclass(slots=True)
class Child:
    """A tracked child. ``sleep_start_time`` is set while a sleep timer runs."""

    WIRE_KEYS: ClassVar[frozenset[str]] = frozenset(
        {"id", "name", "dob", "photoUrl", "gender", "updatedAt", "sleepStartTime"}
    )

    id: str
    name: str = "Baby"
    dob: str = ""
    photo_url: str = ""
    gender: str = "boy"
    updated_at: int | None = None
    sleep_start_time: int | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return self.id

    @property
    def sync_timestamp(self) -> int:
        return self.updated_at if self.updated_at is not None else 0

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Child:
        return cls(
            id=_required_id(payload),
            name=_text(payload.get("name"), "Baby"),
            dob=_text(payload.get("dob")),
            photo_url=_text(payload.get("photoUrl")),
            gender=_text(payload.get("gender"), "boy"),
            updated_at=_opt_int(payload.get("updatedAt")),
            sleep_start_time=_opt_int(payload.get("sleepStartTime")),
            extras=_extras(payload, cls.WIRE_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "name": self.name,
                "dob": self.dob,
                "photoUrl": self.photo_url,
                "gender": self.gender,
                "updatedAt": self.updated_at,
                "sleepStartTime": self.sleep_start_time,
            },
            self.extras,
        )


@dataclass(slots=True)
class LogEntry:
    """A single logged event. ``timestamp`` is event time, ``updated_at`` edit time."""

    WIRE_KEYS: ClassVar[frozenset[str]] = frozenset(
        {"id", "childId", "type", "timestamp", "details", "value", "subType", "notes", "imageUrl", "updatedAt"}
    )

    id: str
    child_id: str
    type: ActivityType = ActivityType.OTHER
    timestamp: int | None = None
    details: str = ""
    value: int | float | None = None
    sub_type: str | None = None
    notes: str | None = None
    image_url: str | None = None
    updated_at: int | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return self.id

    @property
    def sync_timestamp(self) -> int:
        if self.updated_at is not None:
            return self.updated_at
        return self.timestamp if self.timestamp is not None else 0

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> LogEntry:
        raw_type = payload.get("type")
        activity = ActivityType.parse(raw_type)
        extras = _extras(payload, cls.WIRE_KEYS)
        # types from newer clients are kept verbatim and written back unchanged
        if activity is ActivityType.OTHER and raw_type is not None and str(raw_type).strip().upper() != "OTHER":
            extras["type"] = raw_type
        return cls(
            id=_required_id(payload),
            child_id=_text(payload.get("childId")),
            type=activity,
            timestamp=_opt_int(payload.get("timestamp")),
            details=_text(payload.get("details")),
            value=_opt_number(payload.get("value")),
            sub_type=payload.get("subType"),
            notes=payload.get("notes"),
            image_url=payload.get("imageUrl"),
            updated_at=_opt_int(payload.get("updatedAt")),
            extras=extras,
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "childId": self.child_id,
                "type": self._wire_type(),
                "timestamp": self.timestamp,
                "details": self.details,
                "value": self.value,
                "subType": self.sub_type,
                "notes": self.notes,
                "imageUrl": self.image_url,
                "updatedAt": self.updated_at,
            },
            self.extras,
        )

    def _wire_type(self) -> Any:
        if self.type is ActivityType.OTHER and "type" in self.extras:
            return self.extras["type"]
        return self.type.value


@dataclass(slots=True)
class VaccineAppointment:
    """Planned vaccination date, keyed by ``(child_id, vaccine_name)``."""

    WIRE_KEYS: ClassVar[frozenset[str]] = frozenset({"childId", "vaccineName", "plannedDate"})

    child_id: str
    vaccine_name: str
    planned_date: str = ""
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.child_id, self.vaccine_name)

    @property
    def sync_timestamp(self) -> int:
        return 0

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> VaccineAppointment:
        return cls(
            child_id=_required_id(payload, "childId"),
            vaccine_name=_required_id(payload, "vaccineName"),
            planned_date=_text(payload.get("plannedDate")),
            extras=_extras(payload, cls.WIRE_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {"childId": self.child_id, "vaccineName": self.vaccine_name, "plannedDate": self.planned_date},
            self.extras,
        )


@dataclass(slots=True)
class Caregiver:
    """A family member with an access level."""

    WIRE_KEYS: ClassVar[frozenset[str]] = frozenset(
        {"id", "name", "email", "role", "photoUrl", "accessLevel", "status", "joinedAt", "updatedAt"}
    )
    ACCESS_LEVELS: ClassVar[tuple[str, ...]] = ("Owner", "Editor", "Viewer")

    id: str
    name: str = ""
    email: str = ""
    role: str = "Caregiver"
    photo_url: str = ""
    access_level: str = "Editor"
    status: str = "approved"
    joined_at: int | None = None
    updated_at: int | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return self.id

    @property
    def sync_timestamp(self) -> int:
        return self.updated_at if self.updated_at is not None else 0

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Caregiver:
        return cls(
            id=_required_id(payload),
            name=_text(payload.get("name")),
            email=_text(payload.get("email")),
            role=_text(payload.get("role"), "Caregiver"),
            photo_url=_text(payload.get("photoUrl")),
            access_level=_text(payload.get("accessLevel"), "Editor"),
            status=_text(payload.get("status"), "approved"),
            joined_at=_opt_int(payload.get("joinedAt")),
            updated_at=_opt_int(payload.get("updatedAt")),
            extras=_extras(payload, cls.WIRE_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "name": self.name,
                "email": self.email,
                "role": self.role,
                "photoUrl": self.photo_url,
                "accessLevel": self.access_level,
                "status": self.status,
                "joinedAt": self.joined_at,
                "updatedAt": self.updated_at,
            },
            self.extras,
        )


@dataclass(slots=True)
class JoinRequest:
    """Pending request from another user to join the family."""

    WIRE_KEYS: ClassVar[frozenset[str]] = frozenset(
        {"id", "userId", "userName", "userEmail", "inviteCode", "status", "timestamp"}
    )

    id: str
    user_id: str = ""
    user_name: str = "Anonymous"
    user_email: str = "unknown"
    invite_code: str = ""
    status: str = "pending"
    timestamp: int | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return self.id

    @property
    def sync_timestamp(self) -> int:
        return self.timestamp if self.timestamp is not None else 0

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> JoinRequest:
        return cls(
            id=_required_id(payload),
            user_id=_text(payload.get("userId")),
            user_name=_text(payload.get("userName"), "Anonymous"),
            user_email=_text(payload.get("userEmail"), "unknown"),
            invite_code=_text(payload.get("inviteCode")),
            status=_text(payload.get("status"), "pending"),
            timestamp=_opt_int(payload.get("timestamp")),
            extras=_extras(payload, cls.WIRE_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "userId": self.user_id,
                "userName": self.user_name,
                "userEmail": self.user_email,
                "inviteCode": self.invite_code,
                "status": self.status,
                "timestamp": self.timestamp,
            },
            self.extras,
        )


SyncRecord = Child | LogEntry | VaccineAppointment | Caregiver | JoinRequest

RECORD_TYPES: dict[RecordKind, type[SyncRecord]] = {
    RecordKind.LOGS: LogEntry,
    RecordKind.CHILDREN: Child,
    RecordKind.APPOINTMENTS: VaccineAppointment,
    RecordKind.CAREGIVERS: Caregiver,
    RecordKind.JOIN_REQUESTS: JoinRequest,
}

ALL_KINDS: tuple[RecordKind, ...] = tuple(RecordKind)


def initial_children() -> list[Child]:
    """Seed data used when no stored or legacy children exist."""

    return [
        Child(
            id="c1",
            name="Leo",
            dob="2023-09-15",
            photo_url="https://picsum.photos/200?random=1",
            gender="boy",
            updated_at=now_ms(),
        )
    ]


__all__ = [
    "ALL_KINDS",
    "ActivityType",
    "Caregiver",
    "Child",
    "JoinRequest",
    "LogEntry",
    "RECORD_TYPES",
    "RecordKind",
    "SyncRecord",
    "VaccineAppointment",
    "initial_children",
    "now_ms",
]
