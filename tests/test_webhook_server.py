"""
Integration tests for the webhook receiver
"""

import json

import pytest
from fastapi.testclient import TestClient

from storesync.sync.models import AuditOperation, OperationType, SyncState
from storesync.webhook_server import SIGNATURE_HEADER, compute_signature, create_app, verify_signature


SIGNATURE_KEY = "shh-secret"


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine, SIGNATURE_KEY))


def signed_post(client, payload, key=SIGNATURE_KEY):
    body = json.dumps(payload).encode("utf-8")
    return client.post(
        "/webhook",
        content=body,
        headers={SIGNATURE_HEADER: compute_signature(body, key), "Content-Type": "application/json"},
    )


class TestSignature:

    def test_verify_signature(self):
        body = b'{"type": "customer.updated"}'
        signature = compute_signature(body, SIGNATURE_KEY)

        assert verify_signature(body, signature, SIGNATURE_KEY)
        assert not verify_signature(body + b" ", signature, SIGNATURE_KEY)
        assert not verify_signature(body, signature, "other-key")
        assert not verify_signature(body, None, SIGNATURE_KEY)

    def test_key_is_required(self, engine):
        with pytest.raises(ValueError):
            create_app(engine, "")


class TestWebhookEndpoint:

    def test_signed_notification_is_queued(self, client, engine):
        response = signed_post(client, {"type": "inventory.count.updated", "data": {"id": "ITEM1"}})

        assert response.status_code == 202
        data = response.json()
        assert data["operation_type"] == OperationType.DOWNLOAD_INVENTORY.value
        assert data["remote_object_id"] == "ITEM1"
        assert engine.queue.pending_count() == 1

        [entry] = engine.audit_log.recent(limit=5)
        assert entry.operation is AuditOperation.WEBHOOK_RECEIVED
        assert entry.outcome is SyncState.PENDING

    def test_bad_signature_is_rejected(self, client, engine):
        response = signed_post(client, {"type": "customer.created"}, key="wrong-key")

        assert response.status_code == 401
        assert engine.queue.pending_count() == 0

    def test_missing_signature_is_rejected(self, client):
        response = client.post("/webhook", content=b'{"type": "customer.created"}')

        assert response.status_code == 401

    def test_invalid_json(self, client):
        body = b"{not json"
        response = client.post("/webhook", content=body,
                               headers={SIGNATURE_HEADER: compute_signature(body, SIGNATURE_KEY)})

        assert response.status_code == 400

    def test_unhandled_type(self, client, engine):
        response = signed_post(client, {"type": "payment.created", "data": {"id": "P1"}})

        assert response.status_code == 400
        assert engine.queue.pending_count() == 0

    def test_unconfigured_engine(self, client, engine):
        engine.settings.credentials.access_token = None

        response = signed_post(client, {"type": "customer.created"})

        assert response.status_code == 503

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["configured"] is True
        assert response.json()["queued_operations"] == 0
