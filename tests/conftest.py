from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path

import pytest

from sunny_baby.cloudsync import CloudSyncManager
from sunny_baby.settings import AppSettings
from sunny_baby.snapshot import Snapshot
from sunny_baby.storage import RecordStore
from sunny_baby.tracker import BabyTracker

START_MS = 1_700_000_000_000


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeBlobChannel:
    """In-memory stand-in for the Drive app data folder."""

    def __init__(self) -> None:
        self.names: dict[str, str] = {}
        self.files: dict[str, bytes | None] = {}
        self.reads = 0
        self.write_calls = 0
        self.writes: list[bytes] = []
        self.closed = 0
        self.fail_read: Exception | None = None
        self.fail_write: Exception | None = None
        self.read_gate: asyncio.Event | None = None
        self.write_gate: asyncio.Event | None = None

    async def resolve_or_create_file(self, name: str) -> str:
        if name not in self.names:
            self.names[name] = f"file-{len(self.names) + 1}"
            self.files.setdefault(self.names[name], None)
        return self.names[name]

    async def read_file(self, file_id: str) -> bytes | None:
        self.reads += 1
        if self.read_gate is not None:
            await self.read_gate.wait()
        if self.fail_read is not None:
            raise self.fail_read
        return self.files.get(file_id)

    async def write_file(self, file_id: str, blob: bytes) -> None:
        self.write_calls += 1
        if self.write_gate is not None:
            await self.write_gate.wait()
        if self.fail_write is not None:
            raise self.fail_write
        self.writes.append(blob)
        self.files[file_id] = blob

    async def async_close(self) -> None:
        self.closed += 1

    def seed(self, snapshot: Snapshot, name: str = "database.json") -> None:
        file_id = self.names.setdefault(name, f"file-{len(self.names) + 1}")
        self.files[file_id] = snapshot.to_json().encode("utf-8")

    def remote(self, name: str = "database.json") -> Snapshot | None:
        file_id = self.names.get(name)
        if file_id is None:
            return None
        return Snapshot.from_json(self.files.get(file_id))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        {"google_token": "token-123", "sync_debounce_seconds": 0.05},
        path=tmp_path / "settings.json",
    )


@pytest.fixture
def store(tmp_path: Path) -> Iterator[RecordStore]:
    store = RecordStore(tmp_path / "sunny_baby.db")
    yield store
    store.close()


@pytest.fixture
def tracker(store: RecordStore, settings: AppSettings, clock: FakeClock) -> BabyTracker:
    return BabyTracker(store, settings, clock=clock)


@pytest.fixture
def channel() -> FakeBlobChannel:
    return FakeBlobChannel()


@pytest.fixture
def manager(
    tracker: BabyTracker, settings: AppSettings, channel: FakeBlobChannel, clock: FakeClock
) -> CloudSyncManager:
    return CloudSyncManager(
        tracker,
        settings,
        channel_factory=lambda _config, _session: channel,
        clock=clock,
    )
