"""SQLite-backed record store plus the legacy key/value fallback source."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .const import LEGACY_APPOINTMENTS_KEY, LEGACY_CHILDREN_KEY, LEGACY_LOGS_KEY
from .models import (
    ALL_KINDS,
    Child,
    LogEntry,
    RecordKind,
    SyncRecord,
    VaccineAppointment,
    initial_children,
)
from .snapshot import Snapshot

_LOGGER = logging.getLogger(__name__)


class RecordStoreError(RuntimeError):
    """Raised when the local database cannot be read or written."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


def record_key(record: SyncRecord) -> str:
    """Primary key used for a record's row."""

    identity = record.identity
    if isinstance(identity, tuple):
        return json.dumps(list(identity), separators=(",", ":"), ensure_ascii=False)
    return str(identity)


def appointment_key(child_id: str, vaccine_name: str) -> str:
    return json.dumps([child_id, vaccine_name], separators=(",", ":"), ensure_ascii=False)


def _child_id(record: SyncRecord) -> str | None:
    return getattr(record, "child_id", None)


class StoreTransaction:
    """Clear/insert operations sharing one connection until commit."""

    def __init__(self, conn: sqlite3.Connection, kinds: Iterable[RecordKind]) -> None:
        self._conn = conn
        self.kinds = frozenset(kinds)

    def _check(self, kind: RecordKind) -> None:
        if kind not in self.kinds:
            raise RecordStoreError(f"{kind.value} is not part of this transaction", reason="kind_not_locked")

    def clear(self, kind: RecordKind) -> None:
        self._check(kind)
        self._conn.execute(f"DELETE FROM {kind.table}")

    def bulk_insert(self, kind: RecordKind, records: Iterable[SyncRecord]) -> None:
        self._check(kind)
        _insert_rows(self._conn, kind, records, replace=False)

    def delete_by_id(self, kind: RecordKind, key: str) -> None:
        self._check(kind)
        self._conn.execute(f"DELETE FROM {kind.table} WHERE record_key = ?", (key,))

    def delete_by_child(self, kind: RecordKind, child_id: str) -> None:
        self._check(kind)
        self._conn.execute(f"DELETE FROM {kind.table} WHERE child_id = ?", (child_id,))


def _insert_rows(conn: sqlite3.Connection, kind: RecordKind, records: Iterable[SyncRecord], *, replace: bool) -> None:
    verb = "INSERT OR REPLACE" if replace else "INSERT"
    conn.executemany(
        f"{verb} INTO {kind.table}(record_key, child_id, payload) VALUES(?, ?, ?)",
        (
            (record_key(record), _child_id(record), json.dumps(record.to_dict(), separators=(",", ":")))
            for record in records
        ),
    )


class RecordStore:
    """Durable storage for the five record collections."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._is_memory = str(path) == ":memory:"
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            if self._is_memory:
                if self._shared_conn is None:
                    # the startup load reads from a worker thread
                    self._shared_conn = sqlite3.connect(":memory:", check_same_thread=False)
                    self._shared_conn.row_factory = sqlite3.Row
                yield self._shared_conn
            else:
                conn = sqlite3.connect(self.path)
                conn.row_factory = sqlite3.Row
                try:
                    yield conn
                finally:
                    conn.close()
        except sqlite3.Error as err:
            raise RecordStoreError(f"record store failure: {err}", reason="sqlite") from err

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            for kind in ALL_KINDS:
                conn.executescript(
                    f"""
                    CREATE TABLE IF NOT EXISTS {kind.table} (
                        record_key TEXT PRIMARY KEY,
                        child_id TEXT,
                        payload TEXT NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS idx_{kind.table}_child ON {kind.table}(child_id);
                    """
                )
            conn.commit()

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    # ------------------------------------------------------------------
    def list_all(self, kind: RecordKind) -> list[SyncRecord]:
        with self._connection() as conn:
            rows = conn.execute(f"SELECT payload FROM {kind.table}").fetchall()
        return self._decode_rows(kind, rows)

    def get(self, kind: RecordKind, key: str) -> SyncRecord | None:
        with self._connection() as conn:
            row = conn.execute(f"SELECT payload FROM {kind.table} WHERE record_key = ?", (key,)).fetchone()
        if not row:
            return None
        records = self._decode_rows(kind, [row])
        return records[0] if records else None

    def count(self, kind: RecordKind) -> int:
        with self._connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM {kind.table}").fetchone()
        return int(row["total"]) if row and row["total"] is not None else 0

    def bulk_insert(self, kind: RecordKind, records: Iterable[SyncRecord]) -> None:
        """Insert new records; an identity already stored is an error."""

        with self._connection() as conn:
            try:
                _insert_rows(conn, kind, records, replace=False)
            except sqlite3.IntegrityError:
                conn.rollback()
                raise
            conn.commit()

    def put(self, kind: RecordKind, record: SyncRecord) -> None:
        with self._connection() as conn:
            _insert_rows(conn, kind, [record], replace=True)
            conn.commit()

    def clear(self, kind: RecordKind) -> None:
        with self._connection() as conn:
            conn.execute(f"DELETE FROM {kind.table}")
            conn.commit()

    def update_by_id(self, kind: RecordKind, key: str, fields: Mapping[str, Any]) -> bool:
        """Merge wire-format ``fields`` into the stored record. Returns ``False`` if absent.

        A ``None`` value removes the key from the stored payload.
        """

        with self._connection() as conn:
            row = conn.execute(f"SELECT payload FROM {kind.table} WHERE record_key = ?", (key,)).fetchone()
            if not row:
                return False
            payload = json.loads(row["payload"])
            for name, value in fields.items():
                if value is None:
                    payload.pop(name, None)
                else:
                    payload[name] = value
            record = kind.record_type.from_dict(payload)
            conn.execute(
                f"UPDATE {kind.table} SET payload = ?, child_id = ? WHERE record_key = ?",
                (json.dumps(record.to_dict(), separators=(",", ":")), _child_id(record), key),
            )
            conn.commit()
        return True

    def delete_by_id(self, kind: RecordKind, key: str) -> int:
        with self._connection() as conn:
            cur = conn.execute(f"DELETE FROM {kind.table} WHERE record_key = ?", (key,))
            conn.commit()
        return cur.rowcount

    def delete_by_child(self, kind: RecordKind, child_id: str) -> int:
        with self._connection() as conn:
            cur = conn.execute(f"DELETE FROM {kind.table} WHERE child_id = ?", (child_id,))
            conn.commit()
        return cur.rowcount

    def delete_appointment(self, child_id: str, vaccine_name: str) -> int:
        return self.delete_by_id(RecordKind.APPOINTMENTS, appointment_key(child_id, vaccine_name))

    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self, kinds: Iterable[RecordKind]) -> Iterator[StoreTransaction]:
        """Run clear/bulk-insert calls atomically across ``kinds``.

        Either every statement issued through the yielded transaction commits
        or none of them does.
        """

        with self._connection() as conn:
            txn = StoreTransaction(conn, kinds)
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield txn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def load_all(self) -> Snapshot:
        return Snapshot.from_collections({kind: self.list_all(kind) for kind in ALL_KINDS})

    def replace_all(self, snapshot: Snapshot) -> None:
        """Clear and rewrite every collection in a single transaction."""

        with self.transaction(ALL_KINDS) as txn:
            for kind in ALL_KINDS:
                txn.clear(kind)
            for kind in ALL_KINDS:
                txn.bulk_insert(kind, snapshot.collection(kind))

    def clear_all(self) -> None:
        with self.transaction(ALL_KINDS) as txn:
            for kind in ALL_KINDS:
                txn.clear(kind)

    # ------------------------------------------------------------------
    def _decode_rows(self, kind: RecordKind, rows: Iterable[sqlite3.Row]) -> list[SyncRecord]:
        record_type = kind.record_type
        records: list[SyncRecord] = []
        for row in rows:
            try:
                records.append(record_type.from_dict(json.loads(row["payload"])))
            except (ValueError, TypeError) as err:
                _LOGGER.warning("Skipping unreadable %s row: %s", kind.value, err)
        return records


@dataclass(slots=True)
class LegacyState:
    """Data recovered from the pre-database key/value dump."""

    children: list[Child] = field(default_factory=initial_children)
    logs: list[LogEntry] = field(default_factory=list)
    appointments: list[VaccineAppointment] = field(default_factory=list)


def _safe_records(data: Mapping[str, Any], key: str, kind: RecordKind) -> list[Any] | None:
    raw = data.get(key)
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as err:
            _LOGGER.warning("Error parsing legacy key %s: %s", key, err)
            return None
    if not isinstance(raw, list):
        _LOGGER.warning("Legacy key %s does not hold a list", key)
        return None
    records = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        try:
            records.append(kind.record_type.from_dict(item))
        except ValueError as err:
            _LOGGER.debug("Skipping legacy %s entry: %s", kind.value, err)
    return records


def load_legacy_state(path: str | Path | None) -> LegacyState:
    """Read the legacy dump at ``path``; any failure yields defaults."""

    state = LegacyState()
    if path is None:
        return state
    p = Path(path)
    if not p.exists():
        return state
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as err:
        _LOGGER.warning("Unable to read legacy data %s: %s", p, err)
        return state
    if not isinstance(data, Mapping):
        return state

    children = _safe_records(data, LEGACY_CHILDREN_KEY, RecordKind.CHILDREN)
    if children is not None:
        state.children = children
    logs = _safe_records(data, LEGACY_LOGS_KEY, RecordKind.LOGS)
    if logs is not None:
        state.logs = logs
    appointments = _safe_records(data, LEGACY_APPOINTMENTS_KEY, RecordKind.APPOINTMENTS)
    if appointments is not None:
        state.appointments = appointments
    return state


__all__ = [
    "LegacyState",
    "RecordStore",
    "RecordStoreError",
    "StoreTransaction",
    "appointment_key",
    "load_legacy_state",
    "record_key",
]
