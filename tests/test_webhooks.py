"""Tests for webhook translation."""

import pytest

from storesync.sync.errors import InvalidRemoteResponseError
from storesync.sync.models import EntityKind, OperationType
from storesync.sync.webhooks import WebhookTranslator


@pytest.fixture
def translator():
    return WebhookTranslator()


@pytest.mark.parametrize("event_type,expected", [
    ("customer.created", OperationType.DOWNLOAD_CUSTOMERS),
    ("customer.updated", OperationType.DOWNLOAD_CUSTOMERS),
    ("inventory.count.updated", OperationType.DOWNLOAD_INVENTORY),
    ("catalog.version.updated", OperationType.DOWNLOAD_INVENTORY),
])
def test_event_type_routes_to_download(translator, event_type, expected):
    op = translator.translate({"type": event_type, "data": {"id": "R1"}})

    assert op.op_type is expected
    assert op.remote_object_id == "R1"
    assert op.payload["event_type"] == event_type


def test_missing_object_id_means_full_pull(translator):
    op = translator.translate({"type": "customer.deleted", "data": {}})

    assert op.remote_object_id is None
    assert op.entity_kind is EntityKind.CUSTOMER


def test_event_id_is_kept(translator):
    op = translator.translate({"type": "customer.updated", "event_id": "evt-1", "data": {"id": "C1"}})

    assert op.payload["event_id"] == "evt-1"


@pytest.mark.parametrize("payload", [
    {"type": "payment.created", "data": {"id": "P1"}},
    {"data": {"id": "C1"}},
    {"type": "customer.updated", "data": "C1"},
    ["customer.updated"],
])
def test_malformed_or_unhandled_payload(translator, payload):
    with pytest.raises(InvalidRemoteResponseError):
        translator.translate(payload)
