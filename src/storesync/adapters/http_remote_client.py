"""httpx-based client for the remote commerce REST API.

Objects travel as ``{"id", "version", "updated_at", "is_deleted",
"variation_id", "reference_id", "data"}``; ``reference_id`` carries the local
id an object was created from. Change feeds are cursor-paginated
(``{"objects": [...], "cursor": ...}``) and every write carries an
``Idempotency-Key`` header so a retried request is applied at most once.
"""

import httpx
import logging
from typing import Any, Dict, Optional

from ..sync.errors import (
    InsufficientPermissionsError,
    InvalidRemoteResponseError,
    NetworkError,
    NotAuthenticatedError,
    RateLimitError,
    RequestTimeoutError,
    VersionConflictError,
)
from ..sync.models import EntityKind, RemotePage, RemoteRecord
from ..sync.remote import RateLimiter, RemoteClient
from ..utils.datetime import parse_iso, to_iso_string


logger = logging.getLogger(__name__)


BASE_URLS = {
    "sandbox": "https://connect.squareupsandbox.com/v2/",
    "production": "https://connect.squareup.com/v2/",
}

COLLECTIONS = {
    EntityKind.CUSTOMER: "customers",
    EntityKind.INVENTORY_ITEM: "catalog/items",
}


class HttpRemoteClient(RemoteClient):
    """REST client for the remote commerce platform."""

    def __init__(self, access_token: str, environment: str = "sandbox",
                 location_id: Optional[str] = None, timeout: float = 30.0,
                 requests_per_minute: int = 120, base_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize the client.

        Args:
            access_token: Bearer token for the merchant account
            environment: "sandbox" or "production"
            location_id: Location scoping inventory reads, if any
            timeout: Per-request timeout in seconds
            requests_per_minute: Client-side rate limit
            base_url: Override for the environment's base URL
            transport: Custom httpx transport (used by tests)
        """
        if environment not in BASE_URLS and base_url is None:
            raise ValueError(f"Unknown environment: {environment}")
        self.base_url = base_url or BASE_URLS[environment]
        self.location_id = location_id
        self.headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        self.rate_limiter = RateLimiter(requests_per_minute)
        self.client = httpx.AsyncClient(
            base_url=self.base_url, headers=self.headers, timeout=timeout, transport=transport
        )
        self.logger = logging.getLogger(__name__)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.client.aclose()

    async def _make_request(self, method: str, endpoint: str, params: Optional[Dict] = None,
                            data: Optional[Dict] = None, idempotency_key: Optional[str] = None,
                            allow_not_found: bool = False) -> Optional[Dict[str, Any]]:
        """Make HTTP request to the remote API.

        Returns:
            Decoded JSON body, ``{}`` for 204, None for an allowed 404

        Raises:
            NotAuthenticatedError: On 401
            InsufficientPermissionsError: On 403
            VersionConflictError: On 409
            RateLimitError: On 429
            NetworkError: On 5xx or transport failure
            InvalidRemoteResponseError: On other 4xx or a malformed body
        """
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        await self.rate_limiter.acquire()
        try:
            response = await self.client.request(
                method, endpoint, params=params, json=data, headers=headers
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Remote request timed out: {method} {endpoint}", cause=e)
        except httpx.RequestError as e:
            raise NetworkError(f"Remote request failed: {e}", cause=e)

        status = response.status_code
        if status == 401:
            raise NotAuthenticatedError("Invalid remote access token")
        elif status == 403:
            raise InsufficientPermissionsError("Remote API access forbidden")
        elif status == 404 and allow_not_found:
            return None
        elif status == 409:
            body = self._decode(response, strict=False)
            raise VersionConflictError(
                body.get("id"), body.get("expected_version"), body.get("current_version")
            )
        elif status == 429:
            raise RateLimitError("Remote API rate limit exceeded")
        elif status >= 500:
            raise NetworkError(f"Remote API error {status}: {response.text}")
        elif status >= 400:
            raise InvalidRemoteResponseError(f"Remote API error {status}: {response.text}")

        if status == 204:
            return {}
        return self._decode(response)

    def _decode(self, response: httpx.Response, strict: bool = True) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            if not strict:
                return {}
            raise InvalidRemoteResponseError(f"Remote API returned invalid JSON: {e}")
        if not isinstance(body, dict):
            if not strict:
                return {}
            raise InvalidRemoteResponseError("Remote API returned a non-object body")
        return body

    def _collection(self, entity_kind: EntityKind) -> str:
        return COLLECTIONS[entity_kind]

    def _parse_object(self, entity_kind: EntityKind, obj: Any) -> RemoteRecord:
        """Convert a wire object into a RemoteRecord."""
        if not isinstance(obj, dict) or not obj.get("id"):
            raise InvalidRemoteResponseError(f"Malformed remote object: {obj!r}")
        try:
            updated_at = parse_iso(obj.get("updated_at"))
        except ValueError as e:
            raise InvalidRemoteResponseError(f"Bad updated_at on {obj['id']}: {e}")
        version = obj.get("version")
        if version is not None:
            try:
                version = int(version)
            except (TypeError, ValueError):
                raise InvalidRemoteResponseError(f"Bad version on {obj['id']}: {version!r}")
        reference_id = obj.get("reference_id")
        return RemoteRecord(
            entity_kind=entity_kind,
            fields=dict(obj.get("data") or {}),
            remote_id=str(obj["id"]),
            remote_sub_object_id=obj.get("variation_id"),
            updated_at=updated_at,
            version=version,
            deleted=bool(obj.get("is_deleted", False)),
            reference_id=str(reference_id) if reference_id else None,
        )

    def _serialize(self, record: RemoteRecord, expected_version: Optional[int]) -> Dict[str, Any]:
        obj: Dict[str, Any] = {"data": dict(record.fields)}
        if record.remote_id:
            obj["id"] = record.remote_id
        if record.remote_sub_object_id:
            obj["variation_id"] = record.remote_sub_object_id
        if record.reference_id:
            obj["reference_id"] = record.reference_id
        if expected_version is not None:
            obj["version"] = expected_version
        if record.updated_at is not None:
            obj["updated_at"] = to_iso_string(record.updated_at)
        return obj

    # RemoteClient implementation

    async def fetch_changes(self, entity_kind: EntityKind, cursor: Optional[str] = None) -> RemotePage:
        params: Dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor
        if self.location_id and entity_kind is EntityKind.INVENTORY_ITEM:
            params["location_id"] = self.location_id

        body = await self._make_request("GET", self._collection(entity_kind), params=params)
        objects = body.get("objects", [])
        if not isinstance(objects, list):
            raise InvalidRemoteResponseError("Change feed 'objects' is not a list")

        # one malformed object must not hide the rest of the page
        records = []
        invalid = []
        for obj in objects:
            try:
                records.append(self._parse_object(entity_kind, obj))
            except InvalidRemoteResponseError as e:
                remote_id = obj.get("id") if isinstance(obj, dict) else None
                self.logger.warning(f"Skipping malformed {entity_kind.value} object: {e}")
                invalid.append((str(remote_id) if remote_id else None, str(e)))

        self.logger.debug(f"Fetched {len(records)} {entity_kind.value} change(s), {len(invalid)} malformed")
        return RemotePage(records=records, next_cursor=body.get("cursor") or None, invalid=invalid)

    async def create_or_update(self, record: RemoteRecord, idempotency_key: str,
                               expected_version: Optional[int] = None) -> RemoteRecord:
        collection = self._collection(record.entity_kind)
        payload = {
            "idempotency_key": idempotency_key,
            "object": self._serialize(record, expected_version),
        }
        if record.remote_id:
            body = await self._make_request(
                "PUT", f"{collection}/{record.remote_id}", data=payload, idempotency_key=idempotency_key
            )
        else:
            body = await self._make_request(
                "POST", collection, data=payload, idempotency_key=idempotency_key
            )
        return self._parse_object(record.entity_kind, body.get("object"))

    async def delete(self, entity_kind: EntityKind, remote_id: str,
                     idempotency_key: Optional[str] = None) -> bool:
        body = await self._make_request(
            "DELETE", f"{self._collection(entity_kind)}/{remote_id}",
            idempotency_key=idempotency_key, allow_not_found=True,
        )
        return body is not None

    async def fetch_by_remote_id(self, entity_kind: EntityKind, remote_id: str) -> Optional[RemoteRecord]:
        body = await self._make_request(
            "GET", f"{self._collection(entity_kind)}/{remote_id}", allow_not_found=True
        )
        if body is None:
            return None
        return self._parse_object(entity_kind, body.get("object"))
