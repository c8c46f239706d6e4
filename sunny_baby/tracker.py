"""In-memory application state and the local-first write path.

Every mutation is written to the :class:`RecordStore` first, then applied to
the in-memory collections, then the cross-collection invariants are
re-established and change listeners are notified. The cloud sync manager
registers a listener to schedule its debounced upload.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from pathlib import Path
from typing import Any

from .const import CONF_STARTUP_TIMEOUT, DEFAULT_STARTUP_TIMEOUT
from .invariants import enforce_vaccine_completions
from .models import (
    ALL_KINDS,
    ActivityType,
    Caregiver,
    Child,
    JoinRequest,
    LogEntry,
    RecordKind,
    VaccineAppointment,
    now_ms,
)
from .settings import AppSettings
from .snapshot import Snapshot
from .storage import RecordStore, RecordStoreError, load_legacy_state

_LOGGER = logging.getLogger(__name__)

ChangeListener = Callable[[frozenset[RecordKind]], None]

SOURCE_STORE = "store"
SOURCE_LEGACY = "legacy"
SOURCE_FALLBACK = "fallback"


def format_sleep_duration(minutes: int) -> str:
    if minutes >= 60:
        return f"Slept for {minutes // 60}h {minutes % 60}m"
    return f"Slept for {minutes}m"


class BabyTracker:
    """Owns the five collections the presentation layer renders."""

    def __init__(
        self,
        store: RecordStore,
        settings: AppSettings | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.settings = settings or AppSettings()
        self._clock = clock
        self.children: list[Child] = []
        self.logs: list[LogEntry] = []
        self.appointments: list[VaccineAppointment] = []
        self.caregivers: list[Caregiver] = []
        self.join_requests: list[JoinRequest] = []
        self.current_child_id: str | None = None
        self._listeners: list[ChangeListener] = []
        self._last_id = 0

    # ------------------------------------------------------------------
    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener`` for change notifications; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, kinds: Iterable[RecordKind]) -> None:
        changed = frozenset(kinds)
        for listener in list(self._listeners):
            try:
                listener(changed)
            except Exception:  # pragma: no cover - listener bug
                _LOGGER.exception("Change listener failed")

    def _now(self) -> int:
        return int(self._clock())

    def _new_id(self) -> str:
        stamp = max(self._now(), self._last_id + 1)
        self._last_id = stamp
        return str(stamp)

    # ------------------------------------------------------------------
    @property
    def current_child(self) -> Child | None:
        for child in self.children:
            if child.id == self.current_child_id:
                return child
        return self.children[0] if self.children else None

    def get_child(self, child_id: str) -> Child | None:
        return next((child for child in self.children if child.id == child_id), None)

    def get_log(self, log_id: str) -> LogEntry | None:
        return next((log for log in self.logs if log.id == log_id), None)

    def child_logs(self, child_id: str | None = None) -> list[LogEntry]:
        target = child_id or (self.current_child.id if self.current_child else None)
        return [log for log in self.logs if log.child_id == target]

    def child_appointments(self, child_id: str | None = None) -> list[VaccineAppointment]:
        target = child_id or (self.current_child.id if self.current_child else None)
        return [appt for appt in self.appointments if appt.child_id == target]

    def snapshot(self, *, last_sync: int | None = None) -> Snapshot:
        """Consistent copy of the in-memory collections."""

        return Snapshot(
            logs=list(self.logs),
            children=list(self.children),
            appointments=list(self.appointments),
            caregivers=list(self.caregivers),
            join_requests=list(self.join_requests),
            last_sync=last_sync,
        )

    def _sort_logs(self) -> None:
        self.logs.sort(key=lambda log: log.timestamp or 0, reverse=True)

    def _select_child(self, preferred: str | None = None) -> None:
        ids = [child.id for child in self.children]
        if preferred in ids:
            self.current_child_id = preferred
        elif self.current_child_id not in ids:
            self.current_child_id = ids[0] if ids else None

    def switch_child(self) -> Child | None:
        """Cycle the current child; no-op with fewer than two children."""

        if len(self.children) <= 1:
            return self.current_child
        ids = [child.id for child in self.children]
        index = ids.index(self.current_child_id) if self.current_child_id in ids else -1
        self.current_child_id = ids[(index + 1) % len(ids)]
        return self.current_child

    def _resolve_child(self, child_id: str | None) -> Child | None:
        if child_id is None:
            return self.current_child
        return self.get_child(child_id)

    # ------------------------------------------------------------------
    async def async_load(self, legacy_path: str | Path | None = None, *, timeout: float | None = None) -> str:
        """Load all collections from the store, bounded by ``timeout`` seconds.

        Falls back to the legacy key/value dump when the store stalls or fails,
        and to legacy children when the store holds none. Returns the source used.
        """

        if timeout is None:
            timeout = float(self.settings.options.get(CONF_STARTUP_TIMEOUT, DEFAULT_STARTUP_TIMEOUT))
        try:
            snapshot = await asyncio.wait_for(asyncio.to_thread(self.store.load_all), timeout)
        except (asyncio.TimeoutError, RecordStoreError) as err:
            _LOGGER.error("Local store load failed, falling back to legacy state: %s", err)
            legacy = load_legacy_state(legacy_path)
            self.children = list(legacy.children)
            self.logs = list(legacy.logs)
            self.appointments = list(legacy.appointments)
            self.caregivers = []
            self.join_requests = []
            source = SOURCE_FALLBACK
        else:
            if snapshot.children:
                self.children = snapshot.children
                self.logs = snapshot.logs
                self.appointments = snapshot.appointments
                self.caregivers = snapshot.caregivers
                self.join_requests = snapshot.join_requests
                self.settings.mark_onboarding_complete()
                source = SOURCE_STORE
            else:
                self.children = list(load_legacy_state(legacy_path).children)
                if self.children:
                    self.settings.mark_onboarding_complete()
                source = SOURCE_LEGACY
        self._sort_logs()
        self.appointments, _removed = enforce_vaccine_completions(self.logs, self.appointments)
        self.current_child_id = self.children[0].id if self.children else None
        _LOGGER.debug("Loaded %d children and %d logs from %s", len(self.children), len(self.logs), source)
        return source

    async def async_replace_all(self, snapshot: Snapshot) -> None:
        """Persist ``snapshot`` transactionally, then adopt it in memory."""

        appointments, removed = enforce_vaccine_completions(snapshot.logs, snapshot.appointments)
        if removed:
            snapshot = replace(snapshot, appointments=appointments)
        self.store.replace_all(snapshot)
        self.children = list(snapshot.children)
        self.logs = list(snapshot.logs)
        self.appointments = list(snapshot.appointments)
        self.caregivers = list(snapshot.caregivers)
        self.join_requests = list(snapshot.join_requests)
        self._sort_logs()
        self._select_child()
        self._maintain_invariants()
        self._notify(ALL_KINDS)

    def _maintain_invariants(self) -> bool:
        """Delete appointments completed by a VACCINE log from store and memory."""

        kept, removed = enforce_vaccine_completions(self.logs, self.appointments)
        if not removed:
            return False
        for appt in removed:
            self.store.delete_appointment(appt.child_id, appt.vaccine_name)
        self.appointments = kept
        _LOGGER.debug("Cleared %d completed vaccine appointment(s)", len(removed))
        return True

    def _after_mutation(self, *kinds: RecordKind) -> None:
        changed = set(kinds)
        if self._maintain_invariants():
            changed.add(RecordKind.APPOINTMENTS)
        self._notify(changed)

    # ------------------------------------------------------------------
    async def async_add_log(
        self,
        activity_type: ActivityType | str = ActivityType.OTHER,
        details: str = "",
        *,
        child_id: str | None = None,
        timestamp: int | None = None,
        value: int | float | None = None,
        sub_type: str | None = None,
        notes: str | None = None,
        image_url: str | None = None,
    ) -> LogEntry | None:
        """Log an activity for a child (the current child by default).

        A SLEEP entry without a ``value`` drives the sleep timer: the first call
        starts it and returns ``None``, the next call stops it and returns the
        SLEEP log with the measured duration in minutes.
        """

        child = self._resolve_child(child_id)
        if child is None:
            _LOGGER.warning("Cannot add a log without a child")
            return None
        activity = ActivityType.parse(activity_type)
        if activity is ActivityType.SLEEP and value is None:
            return await self._async_toggle_sleep(child, notes=notes)

        now = self._now()
        entry = LogEntry(
            id=self._new_id(),
            child_id=child.id,
            type=activity,
            timestamp=timestamp if timestamp is not None else now,
            details=details,
            value=value,
            sub_type=sub_type,
            notes=notes,
            image_url=image_url,
            updated_at=now,
        )
        self.store.bulk_insert(RecordKind.LOGS, [entry])
        self.logs.insert(0, entry)
        self._sort_logs()
        self._after_mutation(RecordKind.LOGS)
        return entry

    async def _async_toggle_sleep(self, child: Child, *, notes: str | None = None) -> LogEntry | None:
        now = self._now()
        if child.sleep_start_time is None:
            self.store.update_by_id(RecordKind.CHILDREN, child.id, {"updatedAt": now, "sleepStartTime": now})
            self._replace_child(replace(child, updated_at=now, sleep_start_time=now))
            self._after_mutation(RecordKind.CHILDREN)
            return None

        minutes = max(1, int((now - child.sleep_start_time) / 60000 + 0.5))
        entry = LogEntry(
            id=self._new_id(),
            child_id=child.id,
            type=ActivityType.SLEEP,
            timestamp=now,
            details=format_sleep_duration(minutes),
            value=minutes,
            notes=notes or "",
            updated_at=now,
        )
        self.store.bulk_insert(RecordKind.LOGS, [entry])
        self.logs.insert(0, entry)
        self._sort_logs()
        self.store.update_by_id(RecordKind.CHILDREN, child.id, {"updatedAt": now, "sleepStartTime": None})
        self._replace_child(replace(child, updated_at=now, sleep_start_time=None))
        self._after_mutation(RecordKind.LOGS, RecordKind.CHILDREN)
        return entry

    async def async_update_log(self, log_id: str, **changes: Any) -> LogEntry | None:
        current = self.get_log(log_id)
        if current is None:
            return None
        if "type" in changes:
            changes["type"] = ActivityType.parse(changes["type"])
            changes.setdefault("extras", {key: value for key, value in current.extras.items() if key != "type"})
        changes.pop("id", None)
        changes.pop("updated_at", None)
        updated = replace(current, **changes, updated_at=self._now())
        self.store.put(RecordKind.LOGS, updated)
        self.logs = [updated if log.id == log_id else log for log in self.logs]
        self._sort_logs()
        self._after_mutation(RecordKind.LOGS)
        return updated

    async def async_delete_log(self, log_id: str) -> bool:
        if self.get_log(log_id) is None:
            return False
        self.store.delete_by_id(RecordKind.LOGS, log_id)
        self.logs = [log for log in self.logs if log.id != log_id]
        self._after_mutation(RecordKind.LOGS)
        return True

    async def async_update_appointment(
        self, vaccine_name: str, planned_date: str | None, *, child_id: str | None = None
    ) -> VaccineAppointment | None:
        """Plan (or with ``planned_date=None`` cancel) a vaccination for a child."""

        child = self._resolve_child(child_id)
        if child is None:
            return None
        remaining = [
            appt for appt in self.appointments if appt.identity != (child.id, vaccine_name)
        ]
        if not planned_date:
            self.store.delete_appointment(child.id, vaccine_name)
            self.appointments = remaining
            self._after_mutation(RecordKind.APPOINTMENTS)
            return None
        appt = VaccineAppointment(child_id=child.id, vaccine_name=vaccine_name, planned_date=planned_date)
        self.store.put(RecordKind.APPOINTMENTS, appt)
        self.appointments = [*remaining, appt]
        self._after_mutation(RecordKind.APPOINTMENTS)
        return appt if appt in self.appointments else None

    # ------------------------------------------------------------------
    def _replace_child(self, child: Child) -> None:
        self.children = [child if item.id == child.id else item for item in self.children]

    async def async_add_child(
        self,
        name: str = "Baby",
        *,
        dob: str | None = None,
        gender: str = "boy",
        photo_url: str | None = None,
    ) -> Child:
        now = self._now()
        child = Child(
            id=f"c{self._new_id()}",
            name=name or "Baby",
            dob=dob or "",
            gender=gender or "boy",
            photo_url=photo_url or f"https://picsum.photos/200?random={now}",
            updated_at=now,
        )
        self.store.bulk_insert(RecordKind.CHILDREN, [child])
        self.children = [*self.children, child]
        self.current_child_id = child.id
        self.settings.mark_onboarding_complete()
        self._after_mutation(RecordKind.CHILDREN)
        return child

    async def async_update_child(self, child_id: str, **changes: Any) -> Child | None:
        """Edit a child's profile fields; the running sleep timer is preserved."""

        current = self.get_child(child_id)
        if current is None:
            return None
        changes.pop("sleep_start_time", None)
        changes.pop("id", None)
        changes.pop("updated_at", None)
        updated = replace(current, **changes, updated_at=self._now())
        self.store.put(RecordKind.CHILDREN, updated)
        self._replace_child(updated)
        self._after_mutation(RecordKind.CHILDREN)
        return updated

    async def async_delete_child(self, child_id: str) -> bool:
        """Delete a child together with its logs and appointments."""

        if self.get_child(child_id) is None:
            return False
        kinds = (RecordKind.CHILDREN, RecordKind.LOGS, RecordKind.APPOINTMENTS)
        with self.store.transaction(kinds) as txn:
            txn.delete_by_id(RecordKind.CHILDREN, child_id)
            txn.delete_by_child(RecordKind.LOGS, child_id)
            txn.delete_by_child(RecordKind.APPOINTMENTS, child_id)
        self.children = [child for child in self.children if child.id != child_id]
        self.logs = [log for log in self.logs if log.child_id != child_id]
        self.appointments = [appt for appt in self.appointments if appt.child_id != child_id]
        self._select_child()
        self._after_mutation(*kinds)
        return True

    # ------------------------------------------------------------------
    async def async_add_caregiver(
        self,
        name: str,
        email: str = "",
        *,
        role: str = "Caregiver",
        access_level: str = "Editor",
        photo_url: str = "",
        status: str = "approved",
    ) -> Caregiver:
        if access_level not in Caregiver.ACCESS_LEVELS:
            raise ValueError(f"unknown access level: {access_level}")
        now = self._now()
        caregiver = Caregiver(
            id=self._new_id(),
            name=name,
            email=email,
            role=role,
            photo_url=photo_url,
            access_level=access_level,
            status=status,
            joined_at=now,
            updated_at=now,
        )
        self.store.bulk_insert(RecordKind.CAREGIVERS, [caregiver])
        self.caregivers = [*self.caregivers, caregiver]
        self._after_mutation(RecordKind.CAREGIVERS)
        return caregiver

    async def async_update_caregiver(self, caregiver_id: str, **changes: Any) -> Caregiver | None:
        current = next((item for item in self.caregivers if item.id == caregiver_id), None)
        if current is None:
            return None
        level = changes.get("access_level")
        if level is not None and level not in Caregiver.ACCESS_LEVELS:
            raise ValueError(f"unknown access level: {level}")
        changes.pop("id", None)
        changes.pop("updated_at", None)
        updated = replace(current, **changes, updated_at=self._now())
        self.store.put(RecordKind.CAREGIVERS, updated)
        self.caregivers = [updated if item.id == caregiver_id else item for item in self.caregivers]
        self._after_mutation(RecordKind.CAREGIVERS)
        return updated

    async def async_delete_caregiver(self, caregiver_id: str) -> bool:
        if all(item.id != caregiver_id for item in self.caregivers):
            return False
        self.store.delete_by_id(RecordKind.CAREGIVERS, caregiver_id)
        self.caregivers = [item for item in self.caregivers if item.id != caregiver_id]
        self._after_mutation(RecordKind.CAREGIVERS)
        return True

    # ------------------------------------------------------------------
    async def async_request_join(self, invite_code: str) -> JoinRequest:
        """Record a pending request to join the family behind ``invite_code``."""

        profile = self.settings.profile
        request_id = self._new_id()
        request = JoinRequest(
            id=request_id,
            user_id=str(profile.get("id") or request_id),
            user_name=str(profile.get("name") or "Anonymous"),
            user_email=str(profile.get("email") or "unknown"),
            invite_code=invite_code.strip(),
            status="pending",
            timestamp=self._now(),
        )
        self.store.bulk_insert(RecordKind.JOIN_REQUESTS, [request])
        self.join_requests = [*self.join_requests, request]
        self._after_mutation(RecordKind.JOIN_REQUESTS)
        return request

    async def async_approve_join_request(self, request_id: str) -> Caregiver | None:
        """Turn a join request into an approved Editor caregiver."""

        request = next((item for item in self.join_requests if item.id == request_id), None)
        if request is None:
            return None
        now = self._now()
        user_id = request.user_id or request.id
        caregiver = Caregiver(
            id=user_id,
            name=request.user_name,
            email=request.user_email,
            role="Caregiver",
            photo_url=f"https://picsum.photos/100?u={user_id}",
            access_level="Editor",
            status="approved",
            joined_at=now,
            updated_at=now,
        )
        with self.store.transaction((RecordKind.CAREGIVERS, RecordKind.JOIN_REQUESTS)) as txn:
            txn.delete_by_id(RecordKind.CAREGIVERS, caregiver.id)
            txn.bulk_insert(RecordKind.CAREGIVERS, [caregiver])
            txn.delete_by_id(RecordKind.JOIN_REQUESTS, request_id)
        self.caregivers = [*(item for item in self.caregivers if item.id != caregiver.id), caregiver]
        self.join_requests = [item for item in self.join_requests if item.id != request_id]
        self._after_mutation(RecordKind.CAREGIVERS, RecordKind.JOIN_REQUESTS)
        return caregiver

    async def async_deny_join_request(self, request_id: str) -> bool:
        if all(item.id != request_id for item in self.join_requests):
            return False
        self.store.delete_by_id(RecordKind.JOIN_REQUESTS, request_id)
        self.join_requests = [item for item in self.join_requests if item.id != request_id]
        self._after_mutation(RecordKind.JOIN_REQUESTS)
        return True

    # ------------------------------------------------------------------
    async def async_clear_all(self) -> None:
        """Wipe every collection and the per-device settings."""

        self.store.clear_all()
        self.children = []
        self.logs = []
        self.appointments = []
        self.caregivers = []
        self.join_requests = []
        self.current_child_id = None
        self.settings.clear()
        self._notify(ALL_KINDS)


__all__ = ["BabyTracker", "ChangeListener", "format_sleep_duration"]
