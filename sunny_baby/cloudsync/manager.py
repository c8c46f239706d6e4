"""Sequence pull/merge/persist cycles and debounced uploads of local state."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from aiohttp import ClientSession

from ..const import (
    CONF_CLOUD_SYNC_ENABLED,
    CONF_DRIVE_BASE_URL,
    CONF_GOOGLE_TOKEN,
    CONF_SNAPSHOT_FILE,
    CONF_SYNC_DEBOUNCE,
    DEFAULT_DRIVE_BASE_URL,
    DEFAULT_SNAPSHOT_FILE,
    DEFAULT_SYNC_DEBOUNCE,
)
from ..models import RecordKind, now_ms
from ..settings import AppSettings
from ..snapshot import Snapshot
from ..storage import RecordStoreError
from ..tracker import BabyTracker
from .drive import BlobChannel, DriveBlobChannel, DriveError
from .merge import SnapshotMerger

_LOGGER = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    """Sync state shown to the user."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class CloudSyncError(RuntimeError):
    """Raised when a manual sync operation cannot be completed."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(slots=True)
class CloudSyncConfig:
    """Configuration required to talk to the remote snapshot file."""

    enabled: bool = True
    access_token: str = ""
    file_name: str = DEFAULT_SNAPSHOT_FILE
    base_url: str = DEFAULT_DRIVE_BASE_URL
    debounce_seconds: float = DEFAULT_SYNC_DEBOUNCE

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> CloudSyncConfig:
        enabled = bool(options.get(CONF_CLOUD_SYNC_ENABLED, True))
        access_token = str(options.get(CONF_GOOGLE_TOKEN, "") or "").strip()
        file_name = str(options.get(CONF_SNAPSHOT_FILE, "") or "").strip() or DEFAULT_SNAPSHOT_FILE
        base_url = str(options.get(CONF_DRIVE_BASE_URL, "") or "").strip() or DEFAULT_DRIVE_BASE_URL
        debounce_raw = options.get(CONF_SYNC_DEBOUNCE, DEFAULT_SYNC_DEBOUNCE)
        try:
            debounce = max(0.0, float(debounce_raw))
        except (TypeError, ValueError):  # pragma: no cover - validated by the settings schema
            debounce = DEFAULT_SYNC_DEBOUNCE
        return cls(
            enabled=enabled,
            access_token=access_token,
            file_name=file_name,
            base_url=base_url,
            debounce_seconds=debounce,
        )

    @property
    def linked(self) -> bool:
        return bool(self.enabled and self.access_token)


ChannelFactory = Callable[[CloudSyncConfig, ClientSession | None], BlobChannel]
StatusListener = Callable[[SyncStatus], None]


def drive_channel_factory(config: CloudSyncConfig, session: ClientSession | None) -> BlobChannel:
    return DriveBlobChannel(config.access_token, session=session, base_url=config.base_url)


def _iso(ms: int | None) -> str | None:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=UTC).isoformat()


class CloudSyncManager:
    """Keep the local collections and the remote snapshot converging.

    Pulls download the remote snapshot, merge it with the store's collections
    and persist the result in one transaction. Local changes schedule an
    upload of the whole in-memory snapshot after a quiet period; every new
    change restarts that period.
    """

    def __init__(
        self,
        tracker: BabyTracker,
        settings: AppSettings | None = None,
        *,
        session: ClientSession | None = None,
        channel_factory: ChannelFactory | None = None,
        merger: SnapshotMerger | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.tracker = tracker
        self.settings = settings or tracker.settings
        self.config = CloudSyncConfig.from_options(self.settings.options)
        self.merger = merger or SnapshotMerger()
        self._session = session
        self._channel_factory = channel_factory or drive_channel_factory
        self._clock = clock
        self._status = SyncStatus.IDLE
        self._status_listeners: list[StatusListener] = []
        self._sync_lock = asyncio.Lock()
        self._pull_in_flight = False
        self._push_task: asyncio.Task | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._file_id: str | None = None
        self.last_pull_at: int | None = None
        self.last_push_at: int | None = None
        self.last_error: str | None = None
        self.pull_count = 0
        self.push_count = 0
        self.coalesced_pulls = 0

    # ------------------------------------------------------------------
    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def linked(self) -> bool:
        return self._reload_config().linked

    @property
    def push_pending(self) -> bool:
        return self._push_task is not None and not self._push_task.done()

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def _remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return _remove

    def _set_status(self, status: SyncStatus) -> None:
        if status is self._status:
            return
        self._status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as err:  # pragma: no cover - listener bug
                _LOGGER.debug("Status listener raised error: %s", err, exc_info=True)

    def _reload_config(self) -> CloudSyncConfig:
        self.config = CloudSyncConfig.from_options(self.settings.options)
        return self.config

    # ------------------------------------------------------------------
    async def async_start(self) -> None:
        """Listen for local changes, pull once and queue an upload when linked."""

        if self._unsubscribe is None:
            self._unsubscribe = self.tracker.add_listener(self._on_local_change)
        if self.linked:
            await self.async_sync()
            # an empty or recreated remote file is seeded from local state
            self.schedule_push()

    async def async_stop(self) -> None:
        """Stop listening and drop any upload that has not started yet."""

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._cancel_pending_push()

    async def _cancel_pending_push(self) -> None:
        task = self._push_task
        self._push_task = None
        if task and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    def _on_local_change(self, _kinds: frozenset[RecordKind]) -> None:
        self.schedule_push()

    # ------------------------------------------------------------------
    def schedule_push(self) -> bool:
        """(Re)start the debounce timer for an upload. Requires a running loop."""

        config = self._reload_config()
        if not config.linked:
            return False
        if self._push_task and not self._push_task.done():
            self._push_task.cancel()
        self._push_task = asyncio.get_running_loop().create_task(self._delayed_push(config.debounce_seconds))
        return True

    async def _delayed_push(self, delay: float) -> None:
        current = asyncio.current_task()
        if delay > 0:
            await asyncio.sleep(delay)
        # past this point a new change schedules another upload instead of cancelling this one
        if self._push_task is current:
            self._push_task = None
        await self.async_push()

    async def async_flush(self) -> bool:
        """Upload immediately if an upload is waiting for its quiet period."""

        if not self.push_pending:
            return False
        await self._cancel_pending_push()
        return await self.async_push()

    async def async_push(self) -> bool:
        """Overwrite the remote file with the current in-memory snapshot."""

        config = self._reload_config()
        if not config.linked:
            return False
        async with self._sync_lock:
            snapshot = self.tracker.snapshot(last_sync=self._clock())
            if not snapshot.logs and not snapshot.children:
                _LOGGER.debug("Nothing to upload; local state is empty")
                return False
            blob = snapshot.to_json().encode("utf-8")
            self._set_status(SyncStatus.SYNCING)
            channel: BlobChannel | None = None
            try:
                channel = self._channel_factory(config, self._session)
                file_id = await self._resolve_file(channel, config)
                await channel.write_file(file_id, blob)
            except asyncio.CancelledError:
                raise
            except Exception as err:
                self._record_failure("push", err)
                return False
            finally:
                if channel is not None:
                    await channel.async_close()
            self.last_push_at = snapshot.last_sync
            self.push_count += 1
            self.last_error = None
            self._set_status(SyncStatus.IDLE)
            _LOGGER.info(
                "Uploaded snapshot with %d logs and %d children", len(snapshot.logs), len(snapshot.children)
            )
            return True

    # ------------------------------------------------------------------
    async def async_sync(self) -> bool:
        """Run one pull-merge-persist cycle. Never raises for sync failures.

        Returns ``False`` when not linked, when another pull is already in
        flight, or when the cycle failed (status becomes ``error``).
        """

        config = self._reload_config()
        if not config.linked:
            _LOGGER.debug("Cloud sync is not linked; skipping pull")
            return False
        if self._pull_in_flight:
            self.coalesced_pulls += 1
            _LOGGER.debug("Pull already in flight; coalescing trigger")
            return False
        self._pull_in_flight = True
        try:
            async with self._sync_lock:
                return await self._async_pull_merge_persist(config)
        finally:
            self._pull_in_flight = False

    async def async_retry_sync(self) -> bool:
        return await self.async_sync()

    async def _async_pull_merge_persist(self, config: CloudSyncConfig) -> bool:
        self._set_status(SyncStatus.SYNCING)
        channel: BlobChannel | None = None
        try:
            channel = self._channel_factory(config, self._session)
            file_id = await self._resolve_file(channel, config)
            remote = Snapshot.from_json(await channel.read_file(file_id))
            if remote is None:
                _LOGGER.info("Remote snapshot is empty; nothing to merge")
            else:
                local = self.tracker.store.load_all()
                merged = self.merger.merge(local, remote)
                await self.tracker.async_replace_all(merged)
                _LOGGER.info(
                    "Merged remote snapshot: %d logs, %d children, %d appointments",
                    len(merged.logs),
                    len(merged.children),
                    len(merged.appointments),
                )
        except asyncio.CancelledError:
            raise
        except Exception as err:
            self._record_failure("pull", err)
            return False
        finally:
            if channel is not None:
                await channel.async_close()
        self.last_pull_at = self._clock()
        self.pull_count += 1
        self.last_error = None
        self._set_status(SyncStatus.IDLE)
        return True

    async def _resolve_file(self, channel: BlobChannel, config: CloudSyncConfig) -> str:
        if self._file_id is None:
            self._file_id = await channel.resolve_or_create_file(config.file_name)
        return self._file_id

    def _record_failure(self, direction: str, err: Exception) -> None:
        self.last_error = str(err) or err.__class__.__name__
        if isinstance(err, DriveError) and err.status == 404:
            self._file_id = None
        if isinstance(err, DriveError | RecordStoreError | ValueError):
            _LOGGER.warning("Cloud %s failed: %s", direction, err)
        else:
            _LOGGER.exception("Unexpected cloud %s error: %s", direction, err)
        self._set_status(SyncStatus.ERROR)

    # ------------------------------------------------------------------
    async def async_link(self, access_token: str) -> bool:
        """Store a fresh Drive credential, pull immediately and queue an upload."""

        self.settings.set_google_token(access_token)
        self._file_id = None
        if not self.linked:
            return False
        result = await self.async_sync()
        self.schedule_push()
        return result

    async def async_unlink(self) -> None:
        self.settings.set_google_token(None)
        self._file_id = None
        await self._cancel_pending_push()
        self.last_error = None
        self._set_status(SyncStatus.IDLE)

    async def async_visibility_changed(self, visible: bool) -> bool:
        """Pull when the app returns to the foreground."""

        if not visible or not self.linked:
            return False
        _LOGGER.debug("App became visible; triggering pull")
        return await self.async_sync()

    async def async_sync_now(self, *, pull: bool = True, push: bool = True) -> dict[str, Any]:
        """Run an explicit one-off cycle, raising :class:`CloudSyncError` on failure."""

        if not pull and not push:
            raise CloudSyncError("at least one of push/pull must be enabled", reason="invalid_request")
        if not self.linked:
            raise CloudSyncError("cloud sync is not linked", reason="not_configured")
        pulled = pushed = False
        if pull:
            pulled = await self.async_sync()
            if not pulled:
                raise CloudSyncError(self.last_error or "pull did not run", reason="sync_failed")
        if push:
            await self._cancel_pending_push()
            pushed = await self.async_push()
            if self._status is SyncStatus.ERROR:
                raise CloudSyncError(self.last_error or "push failed", reason="sync_failed")
        return {"pulled": pulled, "pushed": pushed, "status": self.diagnostics()}

    def diagnostics(self) -> dict[str, Any]:
        """Return runtime status information for the status indicator and CLI."""

        config = self._reload_config()
        return {
            "status": self._status.value,
            "linked": config.linked,
            "enabled": config.enabled,
            "file_name": config.file_name,
            "file_id": self._file_id,
            "debounce_seconds": config.debounce_seconds,
            "push_pending": self.push_pending,
            "last_pull_at": _iso(self.last_pull_at),
            "last_push_at": _iso(self.last_push_at),
            "last_error": self.last_error,
            "pull_count": self.pull_count,
            "push_count": self.push_count,
            "coalesced_pulls": self.coalesced_pulls,
        }


__all__ = [
    "CloudSyncConfig",
    "CloudSyncError",
    "CloudSyncManager",
    "SyncStatus",
    "drive_channel_factory",
]
