"""
Webhooks API Endpoints
======================

Inbound billing events from RevenueCat.

Authentication:
    RevenueCat sends the authorization value configured in its dashboard in
    the ``Authorization`` header (bare or ``Bearer``-prefixed); the
    ``X-RevenueCat-Signature`` header is accepted as well.

Idempotency:
    Every event is recorded in ``webhook_logs`` keyed by
    ``(source, event_id)``. Redeliveries of a processed event are
    acknowledged with 200 and never applied twice.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request

from app.dependencies import Processor
from app.schemas.billing import WebhookResponse
from app.services.signature import extract_credential

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/revenuecat",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
)
async def revenuecat_webhook(
    request: Request,
    processor: Processor,
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
    signature: Optional[str] = Header(default=None, alias="X-RevenueCat-Signature"),
):
    """
    Handle RevenueCat webhook events.

    Responses:
    - 200: processed, duplicate, or already processed
    - 400: malformed body or invalid app user id
    - 401: invalid credential
    - 500: processing failed; RevenueCat retries
    """
    body = await request.body()
    return await processor.handle(body, extract_credential(authorization, signature))
