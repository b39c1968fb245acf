"""Data models shared across the synchronization subsystem.

This module contains the enums and dataclasses used by the identity map, the
audit log, the operation queue and the engine. A single ``SyncState`` enum is
used for mapping state, audit outcome and status display alike.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..utils.datetime import now_utc, ensure_aware, parse_iso, to_iso_string


class SyncState(Enum):
    """Sync state of a mapping, also used as audit outcome."""
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"
    CONFLICT = "conflict"
    DISABLED = "disabled"

    @property
    def display_name(self) -> str:
        return self.value.title()


class SyncDirection(Enum):
    """Which way changes may flow for a mapping."""
    TO_REMOTE = "to_remote"
    FROM_REMOTE = "from_remote"
    BIDIRECTIONAL = "bidirectional"

    def allows_push(self) -> bool:
        return self in (SyncDirection.TO_REMOTE, SyncDirection.BIDIRECTIONAL)

    def allows_pull(self) -> bool:
        return self in (SyncDirection.FROM_REMOTE, SyncDirection.BIDIRECTIONAL)


class ConflictStrategy(Enum):
    """Conflict resolution strategies."""
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    MOST_RECENT_WINS = "most_recent_wins"
    MANUAL = "manual"


class EntityKind(Enum):
    """Local entity kinds mirrored on the remote system."""
    CUSTOMER = "customer"
    INVENTORY_ITEM = "inventory_item"


class AuditOperation(Enum):
    """Kinds of audited sync actions."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BATCH_IMPORT = "batch_import"
    BATCH_EXPORT = "batch_export"
    WEBHOOK_RECEIVED = "webhook_received"
    CONFLICT_RESOLVED = "conflict_resolved"
    MAPPING_CREATED = "mapping_created"
    MAPPING_DELETED = "mapping_deleted"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class OperationType(Enum):
    """Queued operation types."""
    UPLOAD_CUSTOMER = "upload_customer"
    UPLOAD_TICKET_DERIVED_INVENTORY_CHANGE = "upload_ticket_derived_inventory_change"
    UPLOAD_INVENTORY = "upload_inventory"
    DOWNLOAD_CUSTOMERS = "download_customers"
    DOWNLOAD_INVENTORY = "download_inventory"
    DELETE_CUSTOMER = "delete_customer"
    DELETE_INVENTORY = "delete_inventory"
    COMPOSITE = "composite"

    @property
    def is_upload(self) -> bool:
        return self.value.startswith("upload_")

    @property
    def is_download(self) -> bool:
        return self.value.startswith("download_")

    @property
    def is_delete(self) -> bool:
        return self.value.startswith("delete_")

    @property
    def entity_kind(self) -> Optional[EntityKind]:
        """Entity kind this operation type acts on, None for composites."""
        if self in (OperationType.UPLOAD_CUSTOMER, OperationType.DOWNLOAD_CUSTOMERS,
                    OperationType.DELETE_CUSTOMER):
            return EntityKind.CUSTOMER
        if self is OperationType.COMPOSITE:
            return None
        return EntityKind.INVENTORY_ITEM

    @classmethod
    def upload_for(cls, kind: EntityKind) -> "OperationType":
        return cls.UPLOAD_CUSTOMER if kind is EntityKind.CUSTOMER else cls.UPLOAD_INVENTORY

    @classmethod
    def download_for(cls, kind: EntityKind) -> "OperationType":
        return cls.DOWNLOAD_CUSTOMERS if kind is EntityKind.CUSTOMER else cls.DOWNLOAD_INVENTORY

    @classmethod
    def delete_for(cls, kind: EntityKind) -> "OperationType":
        return cls.DELETE_CUSTOMER if kind is EntityKind.CUSTOMER else cls.DELETE_INVENTORY


class OperationStatus(Enum):
    """Queued operation status. COMPLETED and FAILED are terminal."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.FAILED)


class ResolutionAction(Enum):
    """Outcome of a conflict decision."""
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MERGE = "merge"
    REQUIRES_MANUAL = "requires_manual"


class BatchStatus(Enum):
    """Lifecycle of one sync run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"


def _coerce_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


@dataclass
class IdentityMapping:
    """Durable association between a local entity and its remote counterpart."""

    local_id: uuid.UUID
    remote_object_id: str
    entity_kind: EntityKind = EntityKind.INVENTORY_ITEM
    remote_sub_object_id: Optional[str] = None
    last_synced_at: datetime = field(default_factory=now_utc)
    sync_state: SyncState = SyncState.PENDING
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_strategy: ConflictStrategy = ConflictStrategy.MOST_RECENT_WINS
    version: int = 1
    remote_version: Optional[int] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=now_utc)

    def __post_init__(self):
        self.local_id = _coerce_uuid(self.local_id)
        self.last_synced_at = ensure_aware(self.last_synced_at)
        self.created_at = ensure_aware(self.created_at)

    @property
    def is_active(self) -> bool:
        return self.sync_state is not SyncState.DISABLED

    def record_successful_write(self, remote_version: Optional[int] = None,
                                synced_at: Optional[datetime] = None):
        """Advance the mapping after a write landed on either side."""
        self.version += 1
        if remote_version is not None:
            self.remote_version = remote_version
        self.last_synced_at = synced_at or now_utc()
        self.sync_state = SyncState.SYNCED
        self.last_error = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data = asdict(self)
        data['local_id'] = str(self.local_id)
        data['entity_kind'] = self.entity_kind.value
        data['sync_state'] = self.sync_state.value
        data['direction'] = self.direction.value
        data['conflict_strategy'] = self.conflict_strategy.value
        data['last_synced_at'] = to_iso_string(self.last_synced_at)
        data['created_at'] = to_iso_string(self.created_at)
        return data


@dataclass(frozen=True)
class AuditEntry:
    """One immutable row of the sync audit trail."""

    operation: AuditOperation
    outcome: SyncState
    batch_id: Optional[uuid.UUID] = None
    entity_id: Optional[uuid.UUID] = None
    remote_object_id: Optional[str] = None
    error_message: Optional[str] = None
    changed_fields: tuple = ()
    duration_ms: float = 0.0
    details: Optional[str] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    timestamp: datetime = field(default_factory=now_utc)

    def __post_init__(self):
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, 'changed_fields', tuple(self.changed_fields or ()))
        object.__setattr__(self, 'entity_id', _coerce_uuid(self.entity_id))
        object.__setattr__(self, 'batch_id', _coerce_uuid(self.batch_id))
        object.__setattr__(self, 'timestamp', ensure_aware(self.timestamp))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            'id': str(self.id),
            'timestamp': to_iso_string(self.timestamp),
            'operation': self.operation.value,
            'outcome': self.outcome.value,
            'batch_id': str(self.batch_id) if self.batch_id else None,
            'entity_id': str(self.entity_id) if self.entity_id else None,
            'remote_object_id': self.remote_object_id,
            'error_message': self.error_message,
            'changed_fields': list(self.changed_fields),
            'duration_ms': self.duration_ms,
            'details': self.details,
        }


@dataclass
class QueuedOperation:
    """A pending sync operation persisted in the offline queue."""

    op_type: OperationType
    local_id: Optional[uuid.UUID] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    sequence: Optional[int] = None
    idempotency_key: Optional[str] = None
    enqueued_at: datetime = field(default_factory=now_utc)
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    status: OperationStatus = OperationStatus.PENDING
    last_error: Optional[str] = None

    def __post_init__(self):
        self.local_id = _coerce_uuid(self.local_id)
        self.enqueued_at = ensure_aware(self.enqueued_at)
        self.last_attempt_at = ensure_aware(self.last_attempt_at)
        self.next_retry_at = ensure_aware(self.next_retry_at)

    @property
    def entity_kind(self) -> Optional[EntityKind]:
        kind = self.payload.get('entity_kind')
        if kind:
            return EntityKind(kind)
        return self.op_type.entity_kind

    @property
    def remote_object_id(self) -> Optional[str]:
        return self.payload.get('remote_object_id')

    @property
    def steps(self) -> List[Dict[str, Any]]:
        """Ordered sub-operations of a composite operation."""
        return list(self.payload.get('steps', []))

    @classmethod
    def composite(cls, local_id, steps: List["QueuedOperation"], **payload) -> "QueuedOperation":
        """Bundle operations that must reach the remote system in a fixed order."""
        return cls(
            op_type=OperationType.COMPOSITE,
            local_id=local_id,
            payload={
                **payload,
                'steps': [{'op_type': step.op_type.value, 'payload': step.payload} for step in steps],
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            'id': str(self.id),
            'sequence': self.sequence,
            'op_type': self.op_type.value,
            'local_id': str(self.local_id) if self.local_id else None,
            'payload': self.payload,
            'idempotency_key': self.idempotency_key,
            'enqueued_at': to_iso_string(self.enqueued_at),
            'attempt_count': self.attempt_count,
            'last_attempt_at': to_iso_string(self.last_attempt_at),
            'next_retry_at': to_iso_string(self.next_retry_at),
            'status': self.status.value,
            'last_error': self.last_error,
        }


@dataclass
class RecordSnapshot:
    """Point-in-time view of one side of a mapped record."""

    fields: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    version: Optional[int] = None

    def __post_init__(self):
        self.updated_at = ensure_aware(self.updated_at)


@dataclass
class LocalRecord:
    """A business entity as seen through the LocalStore boundary."""

    local_id: uuid.UUID
    entity_kind: EntityKind
    fields: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    deleted: bool = False

    def __post_init__(self):
        self.local_id = _coerce_uuid(self.local_id)
        self.updated_at = ensure_aware(self.updated_at)

    def snapshot(self) -> RecordSnapshot:
        return RecordSnapshot(fields=dict(self.fields), updated_at=self.updated_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'local_id': str(self.local_id),
            'entity_kind': self.entity_kind.value,
            'fields': dict(self.fields),
            'updated_at': to_iso_string(self.updated_at),
            'deleted': self.deleted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LocalRecord':
        return cls(
            local_id=data['local_id'],
            entity_kind=EntityKind(data['entity_kind']),
            fields=dict(data.get('fields') or {}),
            updated_at=parse_iso(data.get('updated_at')),
            deleted=bool(data.get('deleted', False)),
        )


@dataclass
class RemoteRecord:
    """An object as returned by the remote system."""

    entity_kind: EntityKind
    fields: Dict[str, Any] = field(default_factory=dict)
    remote_id: Optional[str] = None
    remote_sub_object_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    version: Optional[int] = None
    deleted: bool = False
    reference_id: Optional[str] = None  # local id echoed back by the remote

    def __post_init__(self):
        self.updated_at = ensure_aware(self.updated_at)

    def snapshot(self) -> RecordSnapshot:
        return RecordSnapshot(fields=dict(self.fields), updated_at=self.updated_at,
                              version=self.version)

    def referenced_local_id(self) -> Optional[uuid.UUID]:
        """The local id this object was created from, if it carries a valid one."""
        if not self.reference_id:
            return None
        try:
            return uuid.UUID(str(self.reference_id))
        except ValueError:
            return None


@dataclass
class RemotePage:
    """One page of a cursor-paginated change feed."""

    records: List[RemoteRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None
    # (remote id if known, reason) for objects that could not be parsed
    invalid: List[Tuple[Optional[str], str]] = field(default_factory=list)


@dataclass
class BatchResult:
    """Result of one sync batch."""

    batch_id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: BatchStatus = BatchStatus.IDLE
    pulled: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    uploaded: int = 0
    linked: int = 0
    conflicts: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def add_error(self, error: str):
        """Add an error to the result."""
        self.errors.append(error)
        self.failed += 1

    def complete(self):
        """Mark the batch finished and pick the terminal status."""
        self.completed_at = now_utc()
        self.status = BatchStatus.PARTIALLY_FAILED if self.failed else BatchStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['batch_id'] = str(self.batch_id)
        data['status'] = self.status.value
        data['started_at'] = to_iso_string(self.started_at)
        data['completed_at'] = to_iso_string(self.completed_at)
        return data


@dataclass
class SyncStatistics:
    """Aggregate counts for status displays."""

    total_mappings: int = 0
    synced: int = 0
    pending: int = 0
    failed: int = 0
    conflict: int = 0
    disabled: int = 0
    queued_operations: int = 0
    failed_operations: int = 0
    last_sync_duration_ms: Optional[float] = None
    average_sync_duration_ms: Optional[float] = None
    last_full_sync: Optional[datetime] = None
    last_batch: Optional[Dict[str, Any]] = None


@dataclass
class MappingDetail:
    """A mapping needing attention, with both sides of the record."""

    mapping: IdentityMapping
    local: Optional[LocalRecord] = None
    remote: Optional[RemoteRecord] = None
    changed_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mapping': self.mapping.to_dict(),
            'local_fields': dict(self.local.fields) if self.local else None,
            'remote_fields': dict(self.remote.fields) if self.remote else None,
            'remote_version': self.remote.version if self.remote else None,
            'changed_fields': list(self.changed_fields),
        }
