"""
DocSpace Flow Hub - Webhooks Router

Inbound DocSpace webhooks. The signature is computed over the exact raw
request bytes, so the body is read from the Request instead of a model.
"""

from fastapi import APIRouter, HTTPException, Request, Response
import logging

from routes.auth import http_error
from services.errors import FlowHubError, SignatureError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Webhook ingestor - set by main app
ingestor = None


def set_dependencies(webhook_ingestor):
    global ingestor
    ingestor = webhook_ingestor


@router.head("/docspace")
async def webhook_probe():
    """Liveness probe used by DocSpace when the webhook is registered."""
    return Response(status_code=200)


@router.post("/docspace")
async def receive_docspace_webhook(request: Request):
    raw_body = await request.body()
    try:
        return await ingestor.ingest(raw_body, request.headers)
    except SignatureError as e:
        raise HTTPException(
            status_code=401, detail={"ok": False, "error": "Invalid signature", "details": e.reason}
        )
    except FlowHubError as e:
        raise http_error(e)
