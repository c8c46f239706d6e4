from __future__ import annotations

from collections.abc import Hashable, Iterable, Mapping
from enum import Enum
from typing import Protocol, TypeVar

from ..invariants import enforce_vaccine_completions
from ..models import ALL_KINDS, RecordKind
from ..snapshot import Snapshot


class MergeableRecord(Protocol):
    @property
    def identity(self) -> Hashable: ...

    @property
    def sync_timestamp(self) -> int: ...


T = TypeVar("T", bound=MergeableRecord)


class MergePolicy(str, Enum):
    """Supported per-collection reconciliation strategies."""

    LWW = "lww"
    FILL_GAPS = "fill_gaps"


DEFAULT_POLICIES: dict[RecordKind, MergePolicy] = {
    RecordKind.LOGS: MergePolicy.LWW,
    RecordKind.CHILDREN: MergePolicy.LWW,
    RecordKind.APPOINTMENTS: MergePolicy.FILL_GAPS,
    RecordKind.CAREGIVERS: MergePolicy.LWW,
    RecordKind.JOIN_REQUESTS: MergePolicy.LWW,
}


def merge_records(local: Iterable[T], remote: Iterable[T]) -> list[T]:
    """Last-writer-wins union of two collections of the same record kind.

    Remote-only identities are adopted. On a shared identity the remote record
    replaces the local one only when its timestamp is strictly greater, so
    local wins ties. Missing timestamps count as 0.
    """

    merged: dict[Hashable, T] = {}
    for record in local:
        _offer(merged, record)
    for record in remote:
        _offer(merged, record)
    return list(merged.values())


def _offer(merged: dict[Hashable, T], candidate: T) -> None:
    key = candidate.identity
    existing = merged.get(key)
    if existing is None or candidate.sync_timestamp > existing.sync_timestamp:
        merged[key] = candidate


def fill_gaps(local: Iterable[T], remote: Iterable[T]) -> list[T]:
    """Union where any local entry wins outright; remote only fills gaps."""

    merged: dict[Hashable, T] = {}
    for record in local:
        merged.setdefault(record.identity, record)
    for record in remote:
        merged.setdefault(record.identity, record)
    return list(merged.values())


class SnapshotMerger:
    """Reconcile a local snapshot against a remote one, collection by collection."""

    def __init__(self, policies: Mapping[RecordKind, MergePolicy] | None = None) -> None:
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)

    def merge_collection(self, kind: RecordKind, local: Iterable[T], remote: Iterable[T]) -> list[T]:
        policy = self.policies.get(kind, MergePolicy.LWW)
        if policy == MergePolicy.FILL_GAPS:
            return fill_gaps(local, remote)
        return merge_records(local, remote)

    def merge(self, local: Snapshot, remote: Snapshot) -> Snapshot:
        """Return the reconciled snapshot with cross-collection invariants applied."""

        merged = {
            kind: self.merge_collection(kind, local.collection(kind), remote.collection(kind)) for kind in ALL_KINDS
        }
        kept, _removed = enforce_vaccine_completions(
            merged[RecordKind.LOGS],
            merged[RecordKind.APPOINTMENTS],
        )
        merged[RecordKind.APPOINTMENTS] = kept
        return Snapshot.from_collections(merged, last_sync=max(local.last_sync or 0, remote.last_sync or 0) or None)


__all__ = ["MergePolicy", "SnapshotMerger", "fill_gaps", "merge_records"]
