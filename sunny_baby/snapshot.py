from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .const import SNAPSHOT_LAST_SYNC
from .models import (
    ALL_KINDS,
    Caregiver,
    Child,
    JoinRequest,
    LogEntry,
    RecordKind,
    SyncRecord,
    VaccineAppointment,
)

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Snapshot:
    """Full state of the five collections as stored in the remote file."""

    logs: list[LogEntry] = field(default_factory=list)
    children: list[Child] = field(default_factory=list)
    appointments: list[VaccineAppointment] = field(default_factory=list)
    caregivers: list[Caregiver] = field(default_factory=list)
    join_requests: list[JoinRequest] = field(default_factory=list)
    last_sync: int | None = None

    def collection(self, kind: RecordKind) -> list[Any]:
        if kind is RecordKind.LOGS:
            return self.logs
        if kind is RecordKind.CHILDREN:
            return self.children
        if kind is RecordKind.APPOINTMENTS:
            return self.appointments
        if kind is RecordKind.CAREGIVERS:
            return self.caregivers
        return self.join_requests

    def collections(self) -> dict[RecordKind, list[Any]]:
        return {kind: self.collection(kind) for kind in ALL_KINDS}

    @classmethod
    def from_collections(
        cls, collections: Mapping[RecordKind, Iterable[SyncRecord]], *, last_sync: int | None = None
    ) -> Snapshot:
        return cls(
            logs=list(collections.get(RecordKind.LOGS, ())),
            children=list(collections.get(RecordKind.CHILDREN, ())),
            appointments=list(collections.get(RecordKind.APPOINTMENTS, ())),
            caregivers=list(collections.get(RecordKind.CAREGIVERS, ())),
            join_requests=list(collections.get(RecordKind.JOIN_REQUESTS, ())),
            last_sync=last_sync,
        )

    def is_empty(self) -> bool:
        return not any(self.collection(kind) for kind in ALL_KINDS)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            kind.value: [record.to_dict() for record in self.collection(kind)] for kind in ALL_KINDS
        }
        payload[SNAPSHOT_LAST_SYNC] = self.last_sync
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Snapshot:
        """Decode a snapshot; absent or malformed arrays become empty lists."""

        collections: dict[RecordKind, list[SyncRecord]] = {}
        for kind in ALL_KINDS:
            raw = payload.get(kind.value)
            collections[kind] = _decode_records(kind, raw)
        last_sync = payload.get(SNAPSHOT_LAST_SYNC)
        if isinstance(last_sync, bool) or not isinstance(last_sync, int | float):
            last_sync = None
        elif isinstance(last_sync, float) and not math.isfinite(last_sync):
            last_sync = None
        return cls.from_collections(collections, last_sync=int(last_sync) if last_sync is not None else None)

    @classmethod
    def from_json(cls, blob: str | bytes | None) -> Snapshot | None:
        """Return ``None`` when the remote file has no content yet."""

        if blob is None:
            return None
        if isinstance(blob, bytes | bytearray):
            blob = blob.decode("utf-8")
        if not blob.strip():
            return None
        payload = json.loads(blob)
        if not isinstance(payload, Mapping):
            raise ValueError("snapshot payload must be a JSON object")
        if not payload:
            return None
        return cls.from_dict(payload)


def _decode_records(kind: RecordKind, raw: Any) -> list[SyncRecord]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        _LOGGER.warning("Ignoring malformed %s collection in snapshot", kind.value)
        return []
    record_type = kind.record_type
    records: list[SyncRecord] = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        try:
            records.append(record_type.from_dict(item))
        except ValueError as err:
            _LOGGER.debug("Skipping %s record without identity: %s", kind.value, err)
    return records


__all__ = ["Snapshot"]
