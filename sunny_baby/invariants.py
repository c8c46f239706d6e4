"""Cross-collection invariants that must hold after every mutation and merge."""

from __future__ import annotations

from collections.abc import Iterable

from .models import ActivityType, LogEntry, VaccineAppointment


def completed_vaccines(logs: Iterable[LogEntry]) -> set[tuple[str, str]]:
    """Return ``(child_id, vaccine_name)`` pairs that have a VACCINE log."""

    return {(log.child_id, log.details) for log in logs if log.type is ActivityType.VACCINE}


def enforce_vaccine_completions(
    logs: Iterable[LogEntry],
    appointments: Iterable[VaccineAppointment],
) -> tuple[list[VaccineAppointment], list[VaccineAppointment]]:
    """Drop appointments already completed by a VACCINE log.

    Returns ``(kept, removed)``. A log completes an appointment when it belongs
    to the same child and its ``details`` equal the appointment's vaccine name.
    """

    done = completed_vaccines(logs)
    kept: list[VaccineAppointment] = []
    removed: list[VaccineAppointment] = []
    for appt in appointments:
        if appt.identity in done:
            removed.append(appt)
        else:
            kept.append(appt)
    return kept, removed
