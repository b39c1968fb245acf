"""Sync engine: orchestrates one batch between the local store and the remote system.

A batch pulls remote changes per entity kind, scans local changes made since
the last full sync, then drains the operation queue with a pool of asyncio
workers. Every local write happens inside ``local_store.transaction()``
together with the identity-mapping update and its audit entries, so a failure
in either side rolls both back.
"""

import asyncio
import json
import time
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..utils.datetime import now_utc, parse_iso
from .audit_log import SyncAuditLog
from .conflict_resolver import ConflictResolver, Resolution
from .database import SyncDatabase, to_db_timestamp
from .errors import (
    ConflictError,
    EntityNotFoundError,
    InsufficientPermissionsError,
    InvalidRemoteResponseError,
    MappingNotFoundError,
    NotAuthenticatedError,
    NotConfiguredError,
    RequestTimeoutError,
    SyncError,
    SyncInProgressError,
    VersionConflictError,
    is_retryable,
)
from .identity_map import IdentityMap
from .local_store import LocalStore
from .models import (
    AuditEntry,
    AuditOperation,
    BatchResult,
    BatchStatus,
    EntityKind,
    IdentityMapping,
    LocalRecord,
    MappingDetail,
    OperationType,
    QueuedOperation,
    RemoteRecord,
    ResolutionAction,
    SyncState,
    SyncStatistics,
)
from .operation_queue import OperationQueue
from .remote import RemoteClient
from .sync_lock import SyncLock
from .webhooks import WebhookTranslator


logger = logging.getLogger(__name__)


LAST_FULL_SYNC_KEY = "last_full_sync"
LAST_BATCH_KEY = "last_batch"
FATAL_ERRORS = (NotAuthenticatedError, InsufficientPermissionsError)


class SyncEngine:
    """Explicitly constructed sync engine.

    Collaborators are injected; the stores default to instances built on the
    given database using the settings' queue policy and lock timeout.
    """

    def __init__(self, settings, remote: RemoteClient, local_store: LocalStore,
                 database: SyncDatabase, identity_map: Optional[IdentityMap] = None,
                 queue: Optional[OperationQueue] = None, audit_log: Optional[SyncAuditLog] = None,
                 lock: Optional[SyncLock] = None, resolver: Optional[ConflictResolver] = None,
                 webhook_translator: Optional[WebhookTranslator] = None):
        """Initialize the engine.

        Args:
            settings: SyncSettings with credentials, defaults and tuning
            remote: Remote system client
            local_store: Local business-entity store
            database: Sync database holding mappings, audit and queue
        """
        self.settings = settings
        self.remote = remote
        self.local_store = local_store
        self.db = database
        self.identity_map = identity_map or IdentityMap(database)
        self.queue = queue or OperationQueue(
            database,
            base_delay=settings.queue.base_delay,
            max_delay=settings.queue.max_delay,
            max_attempts=settings.queue.max_attempts,
        )
        self.audit_log = audit_log or SyncAuditLog(database, self.identity_map)
        self.lock = lock or SyncLock(database, lock_timeout=settings.lock_timeout)
        self.resolver = resolver or ConflictResolver()
        self.webhooks = webhook_translator or WebhookTranslator()

        self.worker_count = settings.worker_count
        self.request_timeout = settings.request_timeout

        self.status = BatchStatus.IDLE
        self.current_batch: Optional[BatchResult] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._fatal_error: Optional[SyncError] = None
        self._lock_token: Optional[str] = None

        self.logger = logging.getLogger(__name__)

    # Public API

    @property
    def sync_target(self) -> str:
        credentials = self.settings.credentials
        return f"{credentials.merchant_id}:{credentials.location_id}"

    async def run_batch(self, entity_kinds: Optional[Iterable[EntityKind]] = None) -> BatchResult:
        """Run one complete sync batch.

        Args:
            entity_kinds: Kinds to sync, defaults to the configured kinds

        Returns:
            BatchResult with counters and final status

        Raises:
            NotConfiguredError: If required settings are missing (nothing is touched)
            SyncInProgressError: If another batch holds the run lock
            NotAuthenticatedError: If the remote rejects the credentials
        """
        self._check_configured()
        kinds = list(entity_kinds or self.settings.entity_kinds)

        self._lock_token = self.lock.acquire(self.sync_target)
        result = BatchResult(status=BatchStatus.RUNNING)
        self.current_batch = result
        self.status = BatchStatus.RUNNING
        self._stop_event = asyncio.Event()
        self._fatal_error = None
        import_errors = 0

        self.logger.info(f"Starting sync batch {result.batch_id} for {[k.value for k in kinds]}")
        try:
            self.queue.recover_interrupted()
            last_full_sync = self.last_full_sync()

            for kind in kinds:
                if self._stopping():
                    break
                before = result.failed
                try:
                    await self._pull(kind, result)
                except FATAL_ERRORS as e:
                    self._fatal_error = e
                    self._stop_event.set()
                    result.add_error(str(e))
                except SyncError as e:
                    self.logger.error(f"Failed to fetch {kind.value} changes: {e}")
                    result.add_error(f"fetch {kind.value}: {e}")
                import_errors += result.failed - before

            for kind in kinds:
                if self._stopping():
                    break
                await self._scan_local(kind, last_full_sync, result)

            if not self._stopping():
                await self._drain(result)

            if self._fatal_error is None and self._stop_event.is_set():
                result.cancelled = True
            elif self._fatal_error is None:
                self.db.set_meta(LAST_FULL_SYNC_KEY, to_db_timestamp(result.started_at))
        finally:
            # ops abandoned by a fatal error or task cancellation go back to pending
            self.queue.recover_interrupted()
            result.complete()
            self._write_batch_summaries(result, import_errors)
            self.db.set_meta_json(LAST_BATCH_KEY, result.to_dict())
            self.lock.release(self.sync_target, self._lock_token)
            self._lock_token = None
            self.status = result.status

        self.logger.info(
            f"Sync batch {result.batch_id} {result.status.value}: pulled={result.pulled} "
            f"created={result.created} linked={result.linked} updated={result.updated} uploaded={result.uploaded} "
            f"deleted={result.deleted} conflicts={result.conflicts} failed={result.failed}"
        )
        if self._fatal_error is not None:
            raise self._fatal_error
        return result

    def request_stop(self):
        """Ask a running batch to stop after the in-flight operations."""
        if self._stop_event is not None:
            self.logger.info("Stop requested for running sync batch")
            self._stop_event.set()

    async def resolve_conflict(self, local_id: uuid.UUID, resolution: Resolution) -> IdentityMapping:
        """Apply an explicit resolution to a mapping in Conflict state.

        The freshest remote snapshot is fetched and used as the remote side of
        the resolution. Exactly one ConflictResolved audit entry is written and
        the mapping returns to Synced.

        Raises:
            MappingNotFoundError: If the entity has no mapping
            ConflictError: If the mapping has no pending conflict
            EntityNotFoundError: If either side of the record is gone
        """
        self._check_configured()
        if resolution.action is ResolutionAction.REQUIRES_MANUAL:
            raise ValueError("requires_manual is not a resolution")

        mapping = self.identity_map.lookup(local_id)
        if mapping is None:
            raise MappingNotFoundError(f"No mapping for local id {local_id}")
        if mapping.sync_state is not SyncState.CONFLICT:
            raise ConflictError(f"Mapping {local_id} has no pending conflict")

        local = await self.local_store.read(local_id)
        if local is None:
            raise EntityNotFoundError(f"Local entity {local_id} no longer exists")
        fresh = await self._call(self.remote.fetch_by_remote_id(mapping.entity_kind, mapping.remote_object_id))
        if fresh is None:
            raise EntityNotFoundError(f"Remote object {mapping.remote_object_id} no longer exists")

        started = time.monotonic()
        changed = self.resolver.changed_fields(local.snapshot(), fresh.snapshot())

        if resolution.action is ResolutionAction.USE_REMOTE:
            mapping.record_successful_write(remote_version=fresh.version)
            entry = self._audit(
                AuditOperation.CONFLICT_RESOLVED, SyncState.SYNCED, mapping=mapping,
                changed_fields=changed, duration_ms=self._elapsed_ms(started),
                details=resolution.action.value,
            )
            await self._apply_local(self._local_from_remote(mapping, fresh), mapping, [entry])

        elif resolution.action is ResolutionAction.USE_LOCAL:
            stored = await self._call(self.remote.create_or_update(
                self._remote_from_local(local, mapping, local.fields),
                uuid.uuid4().hex,
                fresh.version,
            ))
            mapping.record_successful_write(remote_version=stored.version)
            self._commit(mapping, [self._audit(
                AuditOperation.CONFLICT_RESOLVED, SyncState.SYNCED, mapping=mapping,
                changed_fields=changed, duration_ms=self._elapsed_ms(started),
                details=resolution.action.value,
            )])

        else:
            merged = self.resolver.apply_merge(local.snapshot(), fresh.snapshot(), resolution.fields)
            stored = await self._call(self.remote.create_or_update(
                self._remote_from_local(local, mapping, merged),
                uuid.uuid4().hex,
                fresh.version,
            ))
            mapping.record_successful_write(remote_version=stored.version)
            entry = self._audit(
                AuditOperation.CONFLICT_RESOLVED, SyncState.SYNCED, mapping=mapping,
                changed_fields=changed, duration_ms=self._elapsed_ms(started),
                details=f"merge: {sorted(resolution.fields)}",
            )
            record = LocalRecord(
                local_id=local_id, entity_kind=mapping.entity_kind,
                fields=merged, updated_at=stored.updated_at or now_utc(),
            )
            await self._apply_local(record, mapping, [entry])

        self.logger.info(f"Resolved conflict for {local_id} with {resolution.action.value}")
        return mapping

    async def handle_webhook(self, payload: Dict[str, Any]) -> QueuedOperation:
        """Enqueue the download operation for a verified webhook payload.

        Raises:
            InvalidRemoteResponseError: If the payload type is not handled
        """
        self._check_configured()
        try:
            op = self.webhooks.translate(payload)
        except InvalidRemoteResponseError as e:
            self.logger.warning(f"Rejected webhook: {e}")
            self.audit_log.record(self._audit(
                AuditOperation.WEBHOOK_RECEIVED, SyncState.FAILED, error=str(e),
                details=json.dumps(payload, default=str)[:500],
            ))
            raise

        with self.db.transaction() as conn:
            self.queue.enqueue(op, conn=conn)
            self.audit_log.record(self._audit(
                AuditOperation.WEBHOOK_RECEIVED, SyncState.PENDING,
                remote_id=op.remote_object_id, details=op.payload.get("event_type"),
            ), conn=conn)
        return op

    def statistics(self) -> SyncStatistics:
        """Aggregate counts for status displays."""
        counts = self.identity_map.count_by_state()
        durations = self.audit_log.duration_stats()
        return SyncStatistics(
            total_mappings=sum(counts.values()),
            synced=counts[SyncState.SYNCED],
            pending=counts[SyncState.PENDING],
            failed=counts[SyncState.FAILED],
            conflict=counts[SyncState.CONFLICT],
            disabled=counts[SyncState.DISABLED],
            queued_operations=self.queue.pending_count(),
            failed_operations=len(self.queue.failed_operations()),
            last_sync_duration_ms=durations['last_ms'],
            average_sync_duration_ms=durations['average_ms'],
            last_full_sync=self.last_full_sync(),
            last_batch=self.db.get_meta_json(LAST_BATCH_KEY),
        )

    def last_full_sync(self) -> Optional[datetime]:
        return parse_iso(self.db.get_meta(LAST_FULL_SYNC_KEY))

    async def mapping_details(self, state: SyncState) -> List[MappingDetail]:
        """Mappings in ``state`` with their local record.

        Conflicted mappings also get the freshest remote snapshot and the
        fields that differ between the two sides.
        """
        details = []
        for mapping in self.identity_map.list_by_state(state):
            detail = MappingDetail(mapping=mapping, local=await self.local_store.read(mapping.local_id))
            if state is SyncState.CONFLICT:
                detail.remote = await self._call(
                    self.remote.fetch_by_remote_id(mapping.entity_kind, mapping.remote_object_id)
                )
                if detail.local is not None and detail.remote is not None:
                    detail.changed_fields = self.resolver.changed_fields(
                        detail.local.snapshot(), detail.remote.snapshot()
                    )
            details.append(detail)
        return details

    async def conflicts(self) -> List[MappingDetail]:
        """Mappings awaiting a manual resolution, with their conflicting fields."""
        return await self.mapping_details(SyncState.CONFLICT)

    def retry_operation(self, op_id: uuid.UUID) -> QueuedOperation:
        """Manually requeue a terminally failed operation.

        Raises:
            SyncError: If the operation does not exist or has not failed
        """
        op = self.queue.retry(op_id)
        if op is None:
            raise SyncError(f"Operation {op_id} is not a failed operation")
        if op.local_id is not None:
            mapping = self.identity_map.lookup(op.local_id)
            if mapping is not None and mapping.sync_state is SyncState.FAILED:
                self.identity_map.mark_state(op.local_id, SyncState.PENDING)
        return op

    def unlink(self, local_id: uuid.UUID, reason: str = "unlinked") -> IdentityMapping:
        """Disable a mapping without touching either side's data."""
        with self.db.transaction() as conn:
            mapping = self.identity_map.disable(local_id, reason, conn=conn)
            self.audit_log.record(self._audit(
                AuditOperation.MAPPING_DELETED, SyncState.DISABLED, mapping=mapping, details=reason,
            ), conn=conn)
        return mapping

    def reset_sync_state(self) -> Dict[str, int]:
        """Drop mappings, queue, locks and cursors for a full resync.

        Raises:
            SyncInProgressError: If a batch is running
        """
        if self.lock.is_locked(self.sync_target):
            raise SyncInProgressError("Cannot reset while a sync batch is running")
        removed = self.db.reset_sync_state()
        self.audit_log.record(self._audit(
            AuditOperation.MAPPING_DELETED, SyncState.DISABLED,
            details=f"sync state reset: {removed}",
        ))
        return removed

    # Pull

    async def _pull(self, kind: EntityKind, result: BatchResult):
        """Fetch remote changes since the stored cursor and apply them."""
        cursor_key = f"cursor:{kind.value}"
        cursor = self.db.get_meta(cursor_key)
        while True:
            page = await self._call(self.remote.fetch_changes(kind, cursor))
            for remote_id, reason in page.invalid:
                result.pulled += 1
                self._record_remote_failure(
                    kind, remote_id, InvalidRemoteResponseError(reason), time.monotonic(), result
                )
            for record in page.records:
                if self._stopping():
                    return
                result.pulled += 1
                await self._apply_remote_safely(record, result)

            if page.next_cursor:
                self.db.set_meta(cursor_key, page.next_cursor)
                self._heartbeat()
            if not page.next_cursor or page.next_cursor == cursor:
                break
            cursor = page.next_cursor

    async def _apply_remote_safely(self, record: RemoteRecord, result: BatchResult):
        """Apply one remote record; data errors skip the record, not the batch."""
        started = time.monotonic()
        try:
            await self._process_remote_record(record, result)
        except FATAL_ERRORS:
            raise
        except SyncError as e:
            self._record_remote_failure(record.entity_kind, record.remote_id, e, started, result)

    def _record_remote_failure(self, kind: EntityKind, remote_id: Optional[str], error: SyncError,
                               started: float, result: BatchResult):
        self.logger.error(f"Failed to apply remote {kind.value} {remote_id}: {error}")
        mapping = self.identity_map.lookup_by_remote(remote_id) if remote_id else None
        if mapping is not None and mapping.is_active and mapping.sync_state is not SyncState.CONFLICT:
            mapping = self.identity_map.mark_state(mapping.local_id, SyncState.FAILED, str(error))
        self.audit_log.record(self._audit(
            AuditOperation.UPDATE if mapping else AuditOperation.CREATE, SyncState.FAILED,
            mapping=mapping, remote_id=remote_id, error=str(error),
            duration_ms=self._elapsed_ms(started), details=type(error).__name__,
        ))
        result.add_error(f"{remote_id}: {error}")

    async def _process_remote_record(self, remote: RemoteRecord, result: BatchResult):
        if not remote.remote_id:
            raise InvalidRemoteResponseError("Remote record without an id")

        started = time.monotonic()
        mapping = self.identity_map.lookup_by_remote(remote.remote_id)

        if mapping is None:
            if remote.deleted:
                result.skipped += 1
                return
            # our own create whose response never arrived
            local = await self._unmapped_local_for_reference(remote)
            if local is not None:
                await self._link_existing_local(local, remote, "reference id", started, result)
                return
            direction = self.settings.default_direction
            if not direction.allows_pull():
                result.skipped += 1
                self.audit_log.record(self._audit(
                    AuditOperation.CREATE, SyncState.DISABLED, remote_id=remote.remote_id,
                    details=f"ignored: default direction is {direction.value}",
                ))
                return
            local = await self._unmapped_local_for_natural_key(remote)
            if local is not None:
                await self._link_existing_local(local, remote, "natural key", started, result)
                return
            await self._create_local_from_remote(remote, started, result)
            return

        if not mapping.is_active or not mapping.direction.allows_pull():
            # disabled mappings are never resurrected from a stale remote read
            result.skipped += 1
            return
        if mapping.sync_state is SyncState.CONFLICT:
            result.skipped += 1
            return

        if remote.deleted:
            await self._delete_local_for_remote(mapping, started, result)
            return

        if self._remote_unchanged(mapping, remote):
            result.skipped += 1
            return

        local = await self.local_store.read(mapping.local_id)
        if local is None:
            if self.queue.has_pending(mapping.local_id):
                # local deletion still on its way out
                result.skipped += 1
                return
            raise EntityNotFoundError(f"Local entity {mapping.local_id} for {remote.remote_id} is missing")

        local_changed = local.updated_at is not None and local.updated_at > mapping.last_synced_at
        if local_changed and mapping.direction.allows_push():
            resolution = self.resolver.resolve(local.snapshot(), remote.snapshot(), mapping.conflict_strategy)
        else:
            resolution = Resolution.use_remote("Local unchanged since last sync")

        await self._apply_resolution(mapping, local, remote, resolution, started, result)

    async def _apply_resolution(self, mapping: IdentityMapping, local: LocalRecord, remote: RemoteRecord,
                                resolution: Resolution, started: float, result: BatchResult,
                                complete_op_id: Optional[uuid.UUID] = None):
        changed = self.resolver.changed_fields(local.snapshot(), remote.snapshot())

        if resolution.action is ResolutionAction.USE_REMOTE:
            mapping.record_successful_write(remote_version=remote.version)
            if remote.remote_sub_object_id:
                mapping.remote_sub_object_id = remote.remote_sub_object_id
            entry = self._audit(
                AuditOperation.UPDATE, SyncState.SYNCED, mapping=mapping, changed_fields=changed,
                duration_ms=self._elapsed_ms(started), details=resolution.reason,
            )
            await self._apply_local(self._local_from_remote(mapping, remote), mapping, [entry], complete_op_id)
            result.updated += 1

        elif resolution.action is ResolutionAction.USE_LOCAL:
            if not self.queue.has_pending(mapping.local_id, OperationType.upload_for(mapping.entity_kind)):
                self.queue.enqueue(self._upload_operation(local, mapping, expected_version=remote.version))
            self._commit(complete_op_id=complete_op_id)

        elif resolution.action is ResolutionAction.REQUIRES_MANUAL:
            with self.db.transaction() as conn:
                self.identity_map.mark_state(
                    mapping.local_id, SyncState.CONFLICT, "Changed on both sides", conn=conn
                )
                self.audit_log.record(self._audit(
                    AuditOperation.UPDATE, SyncState.CONFLICT, mapping=mapping, changed_fields=changed,
                    duration_ms=self._elapsed_ms(started), details=resolution.reason,
                ), conn=conn)
                if complete_op_id is not None:
                    self.queue.complete(complete_op_id, conn=conn)
            result.conflicts += 1

        else:
            raise SyncError(f"Unexpected automatic resolution: {resolution.action.value}")

    async def _unmapped_local_for_reference(self, remote: RemoteRecord) -> Optional[LocalRecord]:
        local_id = remote.referenced_local_id()
        if local_id is None or self.identity_map.lookup(local_id) is not None:
            return None
        local = await self.local_store.read(local_id)
        if local is None or local.entity_kind is not remote.entity_kind:
            return None
        return local

    async def _unmapped_local_for_natural_key(self, remote: RemoteRecord) -> Optional[LocalRecord]:
        local = await self.local_store.find_by_natural_key(remote.entity_kind, remote.fields)
        if local is None or self.identity_map.lookup(local.local_id) is not None:
            return None
        return local

    async def _link_existing_local(self, local: LocalRecord, remote: RemoteRecord, matched_by: str,
                                   started: float, result: BatchResult):
        """Map an unknown remote object onto a local entity that already exists.

        Differing fields are then settled like any other change on both sides.
        """
        mapping = IdentityMapping(
            local_id=local.local_id,
            remote_object_id=remote.remote_id,
            entity_kind=remote.entity_kind,
            remote_sub_object_id=remote.remote_sub_object_id,
            sync_state=SyncState.SYNCED,
            direction=self.settings.default_direction,
            conflict_strategy=self.settings.default_strategy,
            remote_version=remote.version,
        )
        self._commit(mapping, [self._audit(
            AuditOperation.MAPPING_CREATED, SyncState.SYNCED, mapping=mapping,
            duration_ms=self._elapsed_ms(started), details=f"linked by {matched_by}",
        )])
        result.linked += 1
        self.logger.info(f"Linked remote {remote.remote_id} to local {local.local_id} by {matched_by}")

        if not self.resolver.changed_fields(local.snapshot(), remote.snapshot()):
            return
        if not mapping.direction.allows_pull():
            resolution = Resolution.use_local("Direction does not allow pulling")
        elif not mapping.direction.allows_push():
            resolution = Resolution.use_remote("Direction does not allow pushing")
        else:
            resolution = self.resolver.resolve(local.snapshot(), remote.snapshot(), mapping.conflict_strategy)
        await self._apply_resolution(mapping, local, remote, resolution, started, result)

    async def _create_local_from_remote(self, remote: RemoteRecord, started: float, result: BatchResult):
        mapping = IdentityMapping(
            local_id=uuid.uuid4(),
            remote_object_id=remote.remote_id,
            entity_kind=remote.entity_kind,
            remote_sub_object_id=remote.remote_sub_object_id,
            sync_state=SyncState.SYNCED,
            direction=self.settings.default_direction,
            conflict_strategy=self.settings.default_strategy,
            remote_version=remote.version,
        )
        entries = [
            self._audit(AuditOperation.MAPPING_CREATED, SyncState.SYNCED, mapping=mapping),
            self._audit(
                AuditOperation.CREATE, SyncState.SYNCED, mapping=mapping,
                changed_fields=list(remote.fields), duration_ms=self._elapsed_ms(started),
            ),
        ]
        await self._apply_local(self._local_from_remote(mapping, remote), mapping, entries)
        result.created += 1

    async def _delete_local_for_remote(self, mapping: IdentityMapping, started: float, result: BatchResult):
        mapping.sync_state = SyncState.DISABLED
        mapping.last_error = "deleted remotely"
        entry = self._audit(
            AuditOperation.DELETE, SyncState.SYNCED, mapping=mapping,
            duration_ms=self._elapsed_ms(started), details="remote tombstone",
        )
        async with self.local_store.transaction():
            await self.local_store.delete(mapping.local_id)
            self._commit(mapping, [entry])
        result.deleted += 1

    def _remote_unchanged(self, mapping: IdentityMapping, remote: RemoteRecord) -> bool:
        if remote.version is not None and mapping.remote_version is not None:
            return remote.version <= mapping.remote_version
        if remote.updated_at is not None:
            return remote.updated_at <= mapping.last_synced_at
        return False

    # Local scan

    async def _scan_local(self, kind: EntityKind, since: Optional[datetime], result: BatchResult):
        """Enqueue uploads and deletes for local changes since the last full sync."""
        records = await self.local_store.changed_since(kind, since)
        for record in records:
            mapping = self.identity_map.lookup(record.local_id)

            if record.deleted:
                if mapping is None or not mapping.is_active or not mapping.direction.allows_push():
                    continue
                delete_type = OperationType.delete_for(kind)
                if not self.queue.has_pending(record.local_id, delete_type):
                    self.queue.enqueue(QueuedOperation(
                        op_type=delete_type,
                        local_id=record.local_id,
                        payload={'entity_kind': kind.value, 'remote_object_id': mapping.remote_object_id},
                    ))
                continue

            if mapping is None:
                if not self.settings.default_direction.allows_push():
                    result.skipped += 1
                    continue
            elif (not mapping.is_active or mapping.sync_state is SyncState.CONFLICT
                  or not mapping.direction.allows_push()):
                continue
            elif record.updated_at is None or record.updated_at <= mapping.last_synced_at:
                continue

            if not self.queue.has_pending(record.local_id, OperationType.upload_for(kind)):
                self.queue.enqueue(self._upload_operation(record, mapping))

    def _upload_operation(self, record: LocalRecord, mapping: Optional[IdentityMapping],
                          expected_version: Optional[int] = None) -> QueuedOperation:
        payload: Dict[str, Any] = {
            'entity_kind': record.entity_kind.value,
            'snapshot': record.fields,
        }
        if mapping is not None:
            payload['remote_object_id'] = mapping.remote_object_id
            payload['expected_version'] = (
                expected_version if expected_version is not None else mapping.remote_version
            )
        return QueuedOperation(
            op_type=OperationType.upload_for(record.entity_kind),
            local_id=record.local_id,
            payload=payload,
        )

    # Queue drain

    async def _drain(self, result: BatchResult):
        workers = [asyncio.create_task(self._worker(result)) for _ in range(self.worker_count)]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            # no worker may outlive the batch that releases the lock
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    async def _worker(self, result: BatchResult):
        while not self._stopping():
            op = self.queue.dequeue_next()
            if op is None:
                return
            await self._execute_operation(op, result)
            self._heartbeat()

    async def _execute_operation(self, op: QueuedOperation, result: BatchResult):
        started = time.monotonic()
        try:
            if op.op_type is OperationType.COMPOSITE:
                for index, step in enumerate(op.steps):
                    step_type = OperationType(step['op_type'])
                    if step_type is OperationType.COMPOSITE:
                        raise SyncError("Composite operations cannot be nested")
                    step_op = QueuedOperation(
                        op_type=step_type,
                        local_id=op.local_id,
                        payload=step.get('payload') or {},
                        id=op.id,
                        idempotency_key=f"{op.idempotency_key}:{index}",
                    )
                    await self._execute_step(step_op, result, complete_op_id=None)
                self.queue.complete(op.id)
            else:
                await self._execute_step(op, result, complete_op_id=op.id)
        except FATAL_ERRORS as e:
            self.logger.error(f"Stopping batch: {e}")
            self._fatal_error = e
            self._stop_event.set()
            result.add_error(str(e))
        except SyncError as e:
            retryable = is_retryable(e) or isinstance(e, VersionConflictError)
            failed = self.queue.fail(op.id, str(e), retryable=retryable)
            mapping = self.identity_map.lookup(op.local_id) if op.local_id else None
            if (mapping is not None and mapping.is_active and mapping.sync_state is not SyncState.CONFLICT
                    and failed is not None and failed.status.is_terminal):
                mapping = self.identity_map.mark_state(op.local_id, SyncState.FAILED, str(e))
            self.audit_log.record(self._audit(
                self._audit_operation_for(op.op_type), SyncState.FAILED, mapping=mapping,
                local_id=op.local_id, remote_id=op.remote_object_id, error=str(e),
                duration_ms=self._elapsed_ms(started),
                details=f"{op.op_type.value} attempt {failed.attempt_count if failed else '?'}",
            ))
            result.add_error(f"{op.op_type.value} {op.local_id}: {e}")

    async def _execute_step(self, op: QueuedOperation, result: BatchResult,
                            complete_op_id: Optional[uuid.UUID]):
        if op.op_type.is_upload:
            await self._execute_upload(op, result, complete_op_id)
        elif op.op_type.is_delete:
            await self._execute_delete(op, result, complete_op_id)
        elif op.op_type.is_download:
            await self._execute_download(op, result, complete_op_id)
        else:
            raise SyncError(f"Unsupported operation type: {op.op_type.value}")

    async def _execute_upload(self, op: QueuedOperation, result: BatchResult,
                              complete_op_id: Optional[uuid.UUID]):
        started = time.monotonic()
        local = await self.local_store.read(op.local_id)
        if local is None:
            # entity deleted after enqueue; its delete operation follows
            self._commit(complete_op_id=complete_op_id)
            result.skipped += 1
            return

        mapping = self.identity_map.lookup(op.local_id)
        if mapping is not None and (not mapping.is_active or mapping.sync_state is SyncState.CONFLICT
                                    or not mapping.direction.allows_push()):
            self._commit(complete_op_id=complete_op_id)
            result.skipped += 1
            return

        expected_version = op.payload.get('expected_version')
        if expected_version is None and mapping is not None:
            expected_version = mapping.remote_version

        synced_at = now_utc()
        try:
            stored = await self._call(self.remote.create_or_update(
                self._remote_from_local(local, mapping, local.fields, op.remote_object_id),
                op.idempotency_key,
                expected_version,
            ))
        except VersionConflictError:
            await self._handle_version_conflict(op, local, mapping, result, complete_op_id)
            return

        self._record_upload(op, local, mapping, stored, synced_at, started, complete_op_id)
        result.uploaded += 1

    def _record_upload(self, op: QueuedOperation, local: LocalRecord, mapping: Optional[IdentityMapping],
                       stored: RemoteRecord, synced_at: datetime, started: float,
                       complete_op_id: Optional[uuid.UUID]):
        changed = list(local.fields)
        if mapping is None:
            if not stored.remote_id:
                raise InvalidRemoteResponseError("Remote create returned no id")
            mapping = IdentityMapping(
                local_id=local.local_id,
                remote_object_id=stored.remote_id,
                entity_kind=local.entity_kind,
                remote_sub_object_id=stored.remote_sub_object_id,
                last_synced_at=synced_at,
                sync_state=SyncState.SYNCED,
                direction=self.settings.default_direction,
                conflict_strategy=self.settings.default_strategy,
                remote_version=stored.version,
            )
            entries = [
                self._audit(AuditOperation.MAPPING_CREATED, SyncState.SYNCED, mapping=mapping),
                self._audit(AuditOperation.CREATE, SyncState.SYNCED, mapping=mapping,
                            changed_fields=changed, duration_ms=self._elapsed_ms(started),
                            details=op.op_type.value),
            ]
        else:
            mapping.record_successful_write(remote_version=stored.version, synced_at=synced_at)
            if stored.remote_sub_object_id:
                mapping.remote_sub_object_id = stored.remote_sub_object_id
            entries = [
                self._audit(AuditOperation.UPDATE, SyncState.SYNCED, mapping=mapping,
                            changed_fields=changed, duration_ms=self._elapsed_ms(started),
                            details=op.op_type.value),
            ]
        self._commit(mapping, entries, complete_op_id)

    async def _handle_version_conflict(self, op: QueuedOperation, local: LocalRecord,
                                       mapping: Optional[IdentityMapping], result: BatchResult,
                                       complete_op_id: Optional[uuid.UUID]):
        """Re-resolve an upload rejected because the remote version moved on."""
        started = time.monotonic()
        remote_id = mapping.remote_object_id if mapping else op.remote_object_id
        fresh = await self._call(self.remote.fetch_by_remote_id(local.entity_kind, remote_id))
        if fresh is None:
            raise EntityNotFoundError(f"Remote object {remote_id} disappeared during upload")
        if mapping is None:
            raise VersionConflictError(remote_id, op.payload.get('expected_version'), fresh.version)

        self.logger.info(f"Version conflict on {remote_id}, re-resolving against v{fresh.version}")
        if mapping.direction.allows_pull():
            resolution = self.resolver.resolve(local.snapshot(), fresh.snapshot(), mapping.conflict_strategy)
        else:
            # remote data never flows into the local store for this mapping
            resolution = Resolution.use_local("Direction does not allow pulling")

        if resolution.action is ResolutionAction.USE_LOCAL:
            synced_at = now_utc()
            stored = await self._call(self.remote.create_or_update(
                self._remote_from_local(local, mapping, local.fields),
                f"{op.idempotency_key}:v{fresh.version}",
                fresh.version,
            ))
            self._record_upload(op, local, mapping, stored, synced_at, started, complete_op_id)
            result.uploaded += 1
        else:
            await self._apply_resolution(mapping, local, fresh, resolution, started, result, complete_op_id)

    async def _execute_delete(self, op: QueuedOperation, result: BatchResult,
                              complete_op_id: Optional[uuid.UUID]):
        started = time.monotonic()
        mapping = self.identity_map.lookup(op.local_id) if op.local_id else None
        remote_id = op.remote_object_id or (mapping.remote_object_id if mapping else None)
        if remote_id is None:
            self._commit(complete_op_id=complete_op_id)
            result.skipped += 1
            return

        kind = op.entity_kind
        await self._call(self.remote.delete(kind, remote_id, op.idempotency_key))

        if mapping is not None and mapping.is_active:
            mapping.sync_state = SyncState.DISABLED
            mapping.last_error = "deleted locally"
        else:
            mapping = None
        entry = self._audit(
            AuditOperation.DELETE, SyncState.SYNCED, mapping=mapping, local_id=op.local_id,
            remote_id=remote_id, duration_ms=self._elapsed_ms(started), details=op.op_type.value,
        )
        self._commit(mapping, [entry], complete_op_id)
        result.deleted += 1

    async def _execute_download(self, op: QueuedOperation, result: BatchResult,
                                complete_op_id: Optional[uuid.UUID]):
        kind = op.entity_kind
        remote_id = op.remote_object_id
        if remote_id is None:
            await self._pull(kind, result)
            self._commit(complete_op_id=complete_op_id)
            return

        remote = await self._call(self.remote.fetch_by_remote_id(kind, remote_id))
        if remote is None:
            remote = RemoteRecord(entity_kind=kind, remote_id=remote_id, deleted=True)
        result.pulled += 1
        await self._process_remote_record(remote, result)
        self._commit(complete_op_id=complete_op_id)

    # Helpers

    def _check_configured(self):
        if not self.settings.enabled:
            raise NotConfiguredError(["enabled"])
        missing = self.settings.missing_fields()
        if missing:
            raise NotConfiguredError(missing)

    async def _call(self, awaitable):
        """Await a remote call with the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(f"Remote call exceeded {self.request_timeout}s", cause=e)

    async def _apply_local(self, record: LocalRecord, mapping: IdentityMapping, entries: List[AuditEntry],
                           complete_op_id: Optional[uuid.UUID] = None):
        """Write the local record and its mapping/audit rows as one unit."""
        async with self.local_store.transaction():
            await self.local_store.write(record)
            mapping.last_synced_at = now_utc()
            self._commit(mapping, entries, complete_op_id)

    def _commit(self, mapping: Optional[IdentityMapping] = None, entries: Iterable[AuditEntry] = (),
                complete_op_id: Optional[uuid.UUID] = None):
        with self.db.transaction() as conn:
            if mapping is not None:
                self.identity_map.upsert(mapping, conn=conn)
            for entry in entries:
                self.audit_log.record(entry, conn=conn)
            if complete_op_id is not None:
                self.queue.complete(complete_op_id, conn=conn)

    def _local_from_remote(self, mapping: IdentityMapping, remote: RemoteRecord) -> LocalRecord:
        return LocalRecord(
            local_id=mapping.local_id,
            entity_kind=mapping.entity_kind,
            fields=dict(remote.fields),
            updated_at=remote.updated_at or now_utc(),
        )

    def _remote_from_local(self, local: LocalRecord, mapping: Optional[IdentityMapping],
                           fields: Dict[str, Any], remote_id: Optional[str] = None) -> RemoteRecord:
        return RemoteRecord(
            entity_kind=local.entity_kind,
            fields=dict(fields),
            remote_id=mapping.remote_object_id if mapping else remote_id,
            remote_sub_object_id=mapping.remote_sub_object_id if mapping else None,
            updated_at=local.updated_at,
            reference_id=str(local.local_id),
        )

    def _audit(self, operation: AuditOperation, outcome: SyncState, *,
               mapping: Optional[IdentityMapping] = None, local_id: Optional[uuid.UUID] = None,
               remote_id: Optional[str] = None, error: Optional[str] = None,
               changed_fields: Iterable[str] = (), duration_ms: float = 0.0,
               details: Optional[str] = None) -> AuditEntry:
        return AuditEntry(
            operation=operation,
            outcome=outcome,
            batch_id=self.current_batch.batch_id if self._batch_running() else None,
            entity_id=mapping.local_id if mapping else local_id,
            remote_object_id=remote_id or (mapping.remote_object_id if mapping else None),
            error_message=error,
            changed_fields=tuple(changed_fields),
            duration_ms=duration_ms,
            details=details,
        )

    def _audit_operation_for(self, op_type: OperationType) -> AuditOperation:
        if op_type.is_delete:
            return AuditOperation.DELETE
        if op_type.is_download:
            return AuditOperation.BATCH_IMPORT
        return AuditOperation.UPDATE

    def _write_batch_summaries(self, result: BatchResult, import_errors: int):
        duration_ms = result.duration_seconds * 1000.0
        export_errors = result.failed - import_errors
        import_details = {
            'pulled': result.pulled, 'created': result.created, 'updated': result.updated,
            'conflicts': result.conflicts, 'skipped': result.skipped,
        }
        export_details = {
            'uploaded': result.uploaded, 'deleted': result.deleted,
            'failed': export_errors, 'cancelled': result.cancelled,
        }
        if result.cancelled:
            export_outcome = SyncState.PENDING
        else:
            export_outcome = SyncState.FAILED if export_errors else SyncState.SYNCED
        with self.db.transaction() as conn:
            self.audit_log.record(self._audit(
                AuditOperation.BATCH_IMPORT,
                SyncState.FAILED if import_errors else SyncState.SYNCED,
                duration_ms=duration_ms, details=json.dumps(import_details),
                error="; ".join(result.errors[:5]) if import_errors else None,
            ), conn=conn)
            self.audit_log.record(self._audit(
                AuditOperation.BATCH_EXPORT, export_outcome,
                duration_ms=duration_ms, details=json.dumps(export_details),
                error="; ".join(result.errors[-5:]) if export_errors else None,
            ), conn=conn)

    def _batch_running(self) -> bool:
        # status flips away from RUNNING only after the batch summaries are written
        return self.current_batch is not None and self.status is BatchStatus.RUNNING

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    def _heartbeat(self):
        if self._lock_token is not None:
            self.lock.heartbeat(self.sync_target, self._lock_token)

    def _elapsed_ms(self, started: float) -> float:
        return (time.monotonic() - started) * 1000.0
