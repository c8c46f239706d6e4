from __future__ import annotations

import json
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from sunny_baby.models import ActivityType, Caregiver, Child, LogEntry, RecordKind
from sunny_baby.settings import AppSettings
from sunny_baby.snapshot import Snapshot
from sunny_baby.storage import RecordStore, RecordStoreError
from sunny_baby.tracker import BabyTracker, format_sleep_duration


@pytest.mark.asyncio
async def test_add_log_persists_and_stamps(tracker: BabyTracker, store: RecordStore, clock) -> None:
    child = await tracker.async_add_child("Leo", dob="2023-09-15")
    entry = await tracker.async_add_log(ActivityType.BOTTLE, "120ml", value=120)

    assert entry is not None
    assert entry.child_id == child.id
    assert entry.timestamp == clock.now
    assert entry.updated_at == clock.now
    assert [log.id for log in store.list_all(RecordKind.LOGS)] == [entry.id]


@pytest.mark.asyncio
async def test_logs_sorted_newest_first(tracker: BabyTracker) -> None:
    await tracker.async_add_child("Leo")
    await tracker.async_add_log("DIAPER", "wet", timestamp=100)
    await tracker.async_add_log("FOOD", "banana", timestamp=300)
    await tracker.async_add_log("NURSING", "left", timestamp=200)
    assert [log.timestamp for log in tracker.logs] == [300, 200, 100]


@pytest.mark.asyncio
async def test_add_log_without_child_is_ignored(tracker: BabyTracker) -> None:
    assert await tracker.async_add_log(ActivityType.DIAPER) is None
    assert tracker.logs == []


@pytest.mark.asyncio
async def test_update_and_delete_log(tracker: BabyTracker, store: RecordStore, clock) -> None:
    await tracker.async_add_child("Leo")
    entry = await tracker.async_add_log(ActivityType.FOOD, "apple")
    clock.advance(1000)

    updated = await tracker.async_update_log(entry.id, details="pear", updated_at=1)

    assert updated.details == "pear"
    assert updated.updated_at == clock.now
    assert store.get(RecordKind.LOGS, entry.id).details == "pear"
    assert await tracker.async_delete_log(entry.id)
    assert store.count(RecordKind.LOGS) == 0
    assert await tracker.async_delete_log(entry.id) is False


@pytest.mark.asyncio
async def test_vaccine_log_clears_matching_appointment(tracker: BabyTracker, store: RecordStore) -> None:
    await tracker.async_add_child("Leo")
    await tracker.async_update_appointment("MMR", "2024-05-01")
    await tracker.async_update_appointment("Polio", "2024-06-01")
    assert store.count(RecordKind.APPOINTMENTS) == 2

    await tracker.async_add_log(ActivityType.VACCINE, "MMR")

    assert [appt.vaccine_name for appt in tracker.appointments] == ["Polio"]
    assert [appt.vaccine_name for appt in store.list_all(RecordKind.APPOINTMENTS)] == ["Polio"]


@pytest.mark.asyncio
async def test_planning_completed_vaccine_is_cleared(tracker: BabyTracker) -> None:
    await tracker.async_add_child("Leo")
    await tracker.async_add_log(ActivityType.VACCINE, "MMR")
    assert await tracker.async_update_appointment("MMR", "2024-05-01") is None
    assert tracker.appointments == []


@pytest.mark.asyncio
async def test_cancel_appointment(tracker: BabyTracker, store: RecordStore) -> None:
    await tracker.async_add_child("Leo")
    appt = await tracker.async_update_appointment("MMR", "2024-05-01")
    assert appt is not None and appt.planned_date == "2024-05-01"
    await tracker.async_update_appointment("MMR", None)
    assert tracker.appointments == []
    assert store.count(RecordKind.APPOINTMENTS) == 0


@pytest.mark.asyncio
async def test_sleep_timer_start_and_stop(tracker: BabyTracker, store: RecordStore, clock) -> None:
    child = await tracker.async_add_child("Leo")
    started_at = clock.now

    assert await tracker.async_add_log(ActivityType.SLEEP) is None
    assert tracker.get_child(child.id).sleep_start_time == started_at
    assert store.get(RecordKind.CHILDREN, child.id).sleep_start_time == started_at

    clock.advance(90 * 60_000 + 20_000)
    entry = await tracker.async_add_log(ActivityType.SLEEP)

    assert entry is not None
    assert entry.value == 90
    assert entry.details == "Slept for 1h 30m"
    assert tracker.get_child(child.id).sleep_start_time is None
    assert store.get(RecordKind.CHILDREN, child.id).sleep_start_time is None
    assert store.count(RecordKind.LOGS) == 1


@pytest.mark.asyncio
async def test_short_sleep_counts_one_minute(tracker: BabyTracker, clock) -> None:
    await tracker.async_add_child("Leo")
    await tracker.async_add_log(ActivityType.SLEEP)
    clock.advance(10_000)
    entry = await tracker.async_add_log(ActivityType.SLEEP)
    assert entry.value == 1
    assert entry.details == "Slept for 1m"


@pytest.mark.asyncio
async def test_manual_sleep_entry_bypasses_timer(tracker: BabyTracker) -> None:
    child = await tracker.async_add_child("Leo")
    entry = await tracker.async_add_log(ActivityType.SLEEP, "nap", value=45)
    assert entry.value == 45
    assert tracker.get_child(child.id).sleep_start_time is None


def test_format_sleep_duration() -> None:
    assert format_sleep_duration(5) == "Slept for 5m"
    assert format_sleep_duration(60) == "Slept for 1h 0m"
    assert format_sleep_duration(135) == "Slept for 2h 15m"


@pytest.mark.asyncio
async def test_update_child_preserves_sleep_timer(tracker: BabyTracker, clock) -> None:
    child = await tracker.async_add_child("Leo")
    await tracker.async_add_log(ActivityType.SLEEP)
    clock.advance(5000)

    updated = await tracker.async_update_child(child.id, name="Leonard", sleep_start_time=None)

    assert updated.name == "Leonard"
    assert updated.sleep_start_time is not None
    assert updated.updated_at == clock.now


@pytest.mark.asyncio
async def test_delete_child_cascades(tracker: BabyTracker, store: RecordStore) -> None:
    first = await tracker.async_add_child("Leo")
    second = await tracker.async_add_child("Mia")
    await tracker.async_add_log(ActivityType.DIAPER, child_id=first.id)
    await tracker.async_add_log(ActivityType.DIAPER, child_id=second.id)
    await tracker.async_update_appointment("MMR", "2024-05-01", child_id=first.id)
    caregiver = await tracker.async_add_caregiver("Sam", "sam@example.com")
    tracker.current_child_id = first.id

    assert await tracker.async_delete_child(first.id)

    assert [child.id for child in tracker.children] == [second.id]
    assert tracker.current_child_id == second.id
    assert {log.child_id for log in tracker.logs} == {second.id}
    assert tracker.appointments == []
    assert [log.child_id for log in store.list_all(RecordKind.LOGS)] == [second.id]
    assert store.count(RecordKind.APPOINTMENTS) == 0
    assert [cg.id for cg in store.list_all(RecordKind.CAREGIVERS)] == [caregiver.id]


@pytest.mark.asyncio
async def test_switch_child_cycles(tracker: BabyTracker) -> None:
    first = await tracker.async_add_child("Leo")
    assert tracker.switch_child().id == first.id
    second = await tracker.async_add_child("Mia")
    assert tracker.current_child_id == second.id
    assert tracker.switch_child().id == first.id
    assert tracker.switch_child().id == second.id


@pytest.mark.asyncio
async def test_caregiver_management(tracker: BabyTracker, store: RecordStore) -> None:
    caregiver = await tracker.async_add_caregiver("Sam", "sam@example.com", access_level="Viewer")
    updated = await tracker.async_update_caregiver(caregiver.id, access_level="Owner")
    assert updated.access_level == "Owner"
    assert store.get(RecordKind.CAREGIVERS, caregiver.id).access_level == "Owner"

    with pytest.raises(ValueError):
        await tracker.async_add_caregiver("Eve", access_level="Admin")
    with pytest.raises(ValueError):
        await tracker.async_update_caregiver(caregiver.id, access_level="Root")

    assert await tracker.async_delete_caregiver(caregiver.id)
    assert tracker.caregivers == []
    assert store.count(RecordKind.CAREGIVERS) == 0


@pytest.mark.asyncio
async def test_join_request_approval(tracker: BabyTracker, settings: AppSettings, store: RecordStore) -> None:
    settings.set_profile({"id": "u-42", "name": "Sam", "email": "sam@example.com"})
    request = await tracker.async_request_join(" FAMILY1 ")
    assert request.invite_code == "FAMILY1"
    assert request.status == "pending"

    caregiver = await tracker.async_approve_join_request(request.id)

    assert isinstance(caregiver, Caregiver)
    assert caregiver.id == "u-42"
    assert caregiver.access_level == "Editor"
    assert caregiver.status == "approved"
    assert caregiver.photo_url == "https://picsum.photos/100?u=u-42"
    assert tracker.join_requests == []
    assert store.count(RecordKind.JOIN_REQUESTS) == 0
    assert [cg.id for cg in store.list_all(RecordKind.CAREGIVERS)] == ["u-42"]


@pytest.mark.asyncio
async def test_join_request_denial(tracker: BabyTracker, store: RecordStore) -> None:
    request = await tracker.async_request_join("FAMILY1")
    assert await tracker.async_deny_join_request(request.id)
    assert tracker.join_requests == []
    assert store.count(RecordKind.JOIN_REQUESTS) == 0
    assert tracker.caregivers == []
    assert await tracker.async_approve_join_request(request.id) is None


@pytest.mark.asyncio
async def test_listeners_receive_changed_kinds(tracker: BabyTracker) -> None:
    listener = MagicMock()
    unsubscribe = tracker.add_listener(listener)
    await tracker.async_add_child("Leo")
    await tracker.async_update_appointment("MMR", "2024-05-01")
    await tracker.async_add_log(ActivityType.VACCINE, "MMR")

    kinds = [call.args[0] for call in listener.call_args_list]
    assert kinds[0] == frozenset({RecordKind.CHILDREN})
    assert kinds[-1] == frozenset({RecordKind.LOGS, RecordKind.APPOINTMENTS})

    unsubscribe()
    await tracker.async_add_log(ActivityType.DIAPER)
    assert listener.call_count == len(kinds)


@pytest.mark.asyncio
async def test_clear_all_wipes_everything(tracker: BabyTracker, store: RecordStore, settings: AppSettings) -> None:
    await tracker.async_add_child("Leo")
    await tracker.async_add_log(ActivityType.DIAPER)
    assert settings.onboarding_complete

    await tracker.async_clear_all()

    assert store.load_all().is_empty()
    assert tracker.children == []
    assert tracker.logs == []
    assert settings.google_token is None
    assert settings.onboarding_complete is False


@pytest.mark.asyncio
async def test_load_from_store(store: RecordStore, settings: AppSettings) -> None:
    store.bulk_insert(RecordKind.CHILDREN, [Child(id="c5", name="Ada")])
    tracker = BabyTracker(store, settings)

    assert await tracker.async_load() == "store"
    assert tracker.current_child_id == "c5"
    assert settings.onboarding_complete


@pytest.mark.asyncio
async def test_load_empty_store_uses_seed_children(store: RecordStore, settings: AppSettings) -> None:
    tracker = BabyTracker(store, settings)
    assert await tracker.async_load() == "legacy"
    assert [child.name for child in tracker.children] == ["Leo"]
    assert tracker.logs == []


def _write_legacy(path: Path) -> Path:
    path.write_text(
        json.dumps(
            {
                "sunnyBaby_children": [{"id": "c3", "name": "Noa"}],
                "babyTrackerLogs": [{"id": "1", "childId": "c3", "type": "DIAPER", "timestamp": 4}],
                "babyTrackerAppointments": [{"childId": "c3", "vaccineName": "MMR", "plannedDate": "2024-01-01"}],
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.mark.asyncio
async def test_load_falls_back_on_store_error(store: RecordStore, settings: AppSettings, tmp_path: Path) -> None:
    legacy = _write_legacy(tmp_path / "legacy.json")
    tracker = BabyTracker(store, settings)

    with patch.object(store, "load_all", side_effect=RecordStoreError("corrupt")):
        source = await tracker.async_load(legacy)

    assert source == "fallback"
    assert [child.id for child in tracker.children] == ["c3"]
    assert [log.id for log in tracker.logs] == ["1"]
    assert [appt.vaccine_name for appt in tracker.appointments] == ["MMR"]


@pytest.mark.asyncio
async def test_load_falls_back_on_timeout(store: RecordStore, settings: AppSettings, tmp_path: Path) -> None:
    legacy = _write_legacy(tmp_path / "legacy.json")
    tracker = BabyTracker(store, settings)

    def stalled_load():
        time.sleep(0.5)
        return store.list_all(RecordKind.CHILDREN)

    with patch.object(store, "load_all", side_effect=stalled_load):
        source = await tracker.async_load(legacy, timeout=0.05)

    assert source == "fallback"
    assert [child.id for child in tracker.children] == ["c3"]


@pytest.mark.asyncio
async def test_unrecognised_log_type_survives_edits_until_retyped(tracker: BabyTracker, store: RecordStore) -> None:
    child = await tracker.async_add_child("Leo")
    entry = LogEntry.from_dict({"id": "n1", "childId": child.id, "type": "TUMMY_TIME", "timestamp": 5})
    await tracker.async_replace_all(Snapshot(children=list(tracker.children), logs=[entry]))

    edited = await tracker.async_update_log("n1", details="10 min")
    assert edited.to_dict()["type"] == "TUMMY_TIME"
    assert store.get(RecordKind.LOGS, "n1").to_dict()["type"] == "TUMMY_TIME"

    retyped = await tracker.async_update_log("n1", type="other")
    assert retyped.to_dict()["type"] == "OTHER"
    assert "type" not in retyped.extras
