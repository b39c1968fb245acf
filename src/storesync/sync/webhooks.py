"""Translate verified webhook notifications into queued downloads.

Signature verification is the caller's job; this module only routes the
notification type to the download operation for the affected entity kind.
"""

import logging
from typing import Any, Dict

from .errors import InvalidRemoteResponseError
from .models import EntityKind, OperationType, QueuedOperation


logger = logging.getLogger(__name__)


class WebhookTranslator:
    """Maps a webhook payload to exactly one download operation."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def entity_kind_for(self, event_type: str) -> EntityKind:
        """Pick the entity kind from the notification type.

        Raises:
            InvalidRemoteResponseError: If the type names no synchronized kind
        """
        lowered = (event_type or "").lower()
        if "customer" in lowered:
            return EntityKind.CUSTOMER
        if "inventory" in lowered or "catalog" in lowered:
            return EntityKind.INVENTORY_ITEM
        raise InvalidRemoteResponseError(f"Unhandled webhook type: {event_type!r}")

    def translate(self, payload: Dict[str, Any]) -> QueuedOperation:
        """Build the download operation for a webhook payload.

        Args:
            payload: ``{"type": ..., "data": {"id": ...}}``; a missing id
                means a full pull for the entity kind

        Raises:
            InvalidRemoteResponseError: If the payload is malformed or the
                type is not handled
        """
        if not isinstance(payload, dict):
            raise InvalidRemoteResponseError("Webhook payload must be an object")

        event_type = payload.get("type")
        if not isinstance(event_type, str) or not event_type:
            raise InvalidRemoteResponseError("Webhook payload has no type")

        kind = self.entity_kind_for(event_type)
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise InvalidRemoteResponseError("Webhook 'data' must be an object")

        op_payload: Dict[str, Any] = {"entity_kind": kind.value, "event_type": event_type}
        if data.get("id"):
            op_payload["remote_object_id"] = str(data["id"])
        if payload.get("event_id"):
            op_payload["event_id"] = payload["event_id"]

        self.logger.debug(f"Webhook {event_type} -> {OperationType.download_for(kind).value}")
        return QueuedOperation(op_type=OperationType.download_for(kind), payload=op_payload)
