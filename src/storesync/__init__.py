"""storesync - two-way synchronization between a local store and a remote commerce platform."""

__version__ = "0.1.0"

from .sync import (
    ConflictResolver,
    IdentityMap,
    OperationQueue,
    Resolution,
    SyncAuditLog,
    SyncEngine,
    SyncState,
)

__all__ = [
    "ConflictResolver",
    "IdentityMap",
    "OperationQueue",
    "Resolution",
    "SyncAuditLog",
    "SyncEngine",
    "SyncState",
    "__version__",
]
