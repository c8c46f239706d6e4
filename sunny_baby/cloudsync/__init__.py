"""Offline-first sync between the local record store and the cloud snapshot."""

from .drive import BlobChannel, DriveBlobChannel, DriveError
from .manager import CloudSyncConfig, CloudSyncError, CloudSyncManager, SyncStatus
from .merge import MergePolicy, SnapshotMerger, fill_gaps, merge_records

__all__ = [
    "BlobChannel",
    "DriveBlobChannel",
    "DriveError",
    "CloudSyncConfig",
    "CloudSyncError",
    "CloudSyncManager",
    "SyncStatus",
    "MergePolicy",
    "SnapshotMerger",
    "fill_gaps",
    "merge_records",
]
