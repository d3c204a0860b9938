"""
rumpeldrop/store/

Executed distributions and wallet snapshots.
"""

from .snapshot_store import (
    DistributionSnapshotStore,
    KVRestSnapshotStore,
    InMemorySnapshotStore,
    load_snapshot_file,
)

__all__ = [
    "DistributionSnapshotStore",
    "KVRestSnapshotStore",
    "InMemorySnapshotStore",
    "load_snapshot_file",
]
