"""
FastAPI receiver for remote webhook notifications.

Each notification is checked against the account's signature key before it
reaches the engine, which turns it into a queued download.
"""

import base64
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from pydantic import BaseModel
import uvicorn

from . import __version__
from .sync.engine import SyncEngine
from .sync.errors import InvalidRemoteResponseError, NotConfiguredError


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Square-Signature"


class WebhookAccepted(BaseModel):
    """Response model for an accepted notification."""
    operation_id: str
    operation_type: str
    remote_object_id: Optional[str] = None


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str = "healthy"
    version: str
    configured: bool
    queued_operations: int


def compute_signature(body: bytes, signature_key: str) -> str:
    """Base64 HMAC-SHA256 of the raw request body."""
    digest = hmac.new(signature_key.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: Optional[str], signature_key: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(body, signature_key), signature)


def create_app(engine: SyncEngine, signature_key: str) -> FastAPI:
    """Build the webhook application around an engine.

    Args:
        engine: Engine that queues downloads for accepted notifications
        signature_key: Shared secret the remote signs notifications with
    """
    if not signature_key:
        raise ValueError("A webhook signature key is required")

    app = FastAPI(
        title="storesync webhooks",
        description="Receives remote change notifications",
        version=__version__,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            version=__version__,
            configured=engine.settings.is_configured(),
            queued_operations=engine.queue.pending_count(),
        )

    @app.post("/webhook", response_model=WebhookAccepted, status_code=status.HTTP_202_ACCEPTED)
    async def receive_webhook(request: Request):
        body = await request.body()
        if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), signature_key):
            logger.warning("Rejected webhook with a bad signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")

        try:
            op = await engine.handle_webhook(payload)
        except NotConfiguredError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        except InvalidRemoteResponseError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        return WebhookAccepted(
            operation_id=str(op.id),
            operation_type=op.op_type.value,
            remote_object_id=op.remote_object_id,
        )

    return app


def start_server(engine: SyncEngine, signature_key: str, host: str = "127.0.0.1", port: int = 8080):
    """Serve the webhook receiver until interrupted."""
    app = create_app(engine, signature_key)
    logger.info(f"Listening for webhooks on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")
