"""Boundary contract for the remote commerce system.

This module defines the interface that every remote client must implement
so the engine can push and pull records without knowing the wire format.
"""

import asyncio
import time
import logging
from abc import ABC, abstractmethod
from typing import Optional

from .models import EntityKind, RemotePage, RemoteRecord


logger = logging.getLogger(__name__)


class RemoteClient(ABC):
    """Base class for remote system clients.

    Implementations translate between the remote API and ``RemoteRecord``
    values and raise the ``storesync.sync.errors`` hierarchy: authentication
    problems as ``NotAuthenticatedError``, transport failures as
    ``NetworkError`` and unparseable payloads as ``InvalidRemoteResponseError``.
    """

    @abstractmethod
    async def fetch_changes(self, entity_kind: EntityKind, cursor: Optional[str] = None) -> RemotePage:
        """Fetch one page of changes for an entity kind.

        Args:
            entity_kind: Kind of records to fetch
            cursor: Opaque cursor from the previous page, None for the start

        Returns:
            Page of records plus the cursor of the next page (None when done)
        """
        pass

    @abstractmethod
    async def create_or_update(self, record: RemoteRecord, idempotency_key: str,
                               expected_version: Optional[int] = None) -> RemoteRecord:
        """Create a remote object, or update it when ``record.remote_id`` is set.

        Args:
            record: Record to write
            idempotency_key: Key the remote system uses to de-duplicate retries
            expected_version: Remote version the write is based on

        Returns:
            The stored record with its remote id and new version

        Raises:
            VersionConflictError: If the remote version moved past expected_version
        """
        pass

    @abstractmethod
    async def delete(self, entity_kind: EntityKind, remote_id: str,
                     idempotency_key: Optional[str] = None) -> bool:
        """Delete a remote object. Deleting an absent object is not an error.

        Returns:
            True if the object existed
        """
        pass

    @abstractmethod
    async def fetch_by_remote_id(self, entity_kind: EntityKind, remote_id: str) -> Optional[RemoteRecord]:
        """Fetch a single object, None if it does not exist."""
        pass

    async def close(self):
        """Release network resources."""
        pass


class RateLimiter:
    """Token-bucket rate limiter for API calls."""

    def __init__(self, requests_per_minute: int = 60):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
        """
        self.rate = requests_per_minute
        self.tokens = requests_per_minute
        self.updated_at = time.monotonic()
        self.lock = asyncio.Lock()

    async def acquire(self):
        """Wait if necessary to respect rate limits."""
        async with self.lock:
            self._refill()
            while self.tokens < 1:
                await asyncio.sleep(0.1)
                self._refill()
            self.tokens -= 1

    def _refill(self):
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.updated_at

        tokens_to_add = elapsed * (self.rate / 60.0)
        self.tokens = min(self.rate, self.tokens + tokens_to_add)
        self.updated_at = now
