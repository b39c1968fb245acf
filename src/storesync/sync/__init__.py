"""Synchronization subsystem for storesync."""

from .audit_log import SyncAuditLog
from .conflict_resolver import ConflictResolver, Resolution
from .database import SyncDatabase
from .engine import SyncEngine
from .identity_map import IdentityMap
from .local_store import InMemoryLocalStore, JsonFileLocalStore, LocalStore
from .models import (
    AuditEntry,
    AuditOperation,
    BatchResult,
    BatchStatus,
    ConflictStrategy,
    EntityKind,
    IdentityMapping,
    LocalRecord,
    OperationStatus,
    OperationType,
    QueuedOperation,
    RemotePage,
    RemoteRecord,
    ResolutionAction,
    SyncDirection,
    SyncState,
    SyncStatistics,
)
from .operation_queue import OperationQueue
from .remote import RateLimiter, RemoteClient
from .scheduler import SyncScheduler
from .sync_lock import SyncLock
from .webhooks import WebhookTranslator

__all__ = [
    "SyncAuditLog",
    "ConflictResolver",
    "Resolution",
    "SyncDatabase",
    "SyncEngine",
    "IdentityMap",
    "InMemoryLocalStore",
    "JsonFileLocalStore",
    "LocalStore",
    "AuditEntry",
    "AuditOperation",
    "BatchResult",
    "BatchStatus",
    "ConflictStrategy",
    "EntityKind",
    "IdentityMapping",
    "LocalRecord",
    "OperationStatus",
    "OperationType",
    "QueuedOperation",
    "RemotePage",
    "RemoteRecord",
    "ResolutionAction",
    "SyncDirection",
    "SyncState",
    "SyncStatistics",
    "OperationQueue",
    "RateLimiter",
    "RemoteClient",
    "SyncScheduler",
    "SyncLock",
    "WebhookTranslator",
]
