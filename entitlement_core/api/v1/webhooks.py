"""
Webhooks API Endpoints
======================

Google Play real-time developer notifications (Pub/Sub push).

Authentication:
    When ``PUBSUB_VERIFICATION_TOKEN`` is set, the push endpoint URL must
    carry it as ``?token=...``.

Acknowledgment:
    Anything other than a 2xx makes Pub/Sub redeliver, so only an
    undecodable envelope is answered with 400. Processing failures are
    logged and acknowledged.

Notices:
    Lifecycle pushes run as background tasks after the response, and only
    for transitions that were committed.

Idempotency:
    Delivered ``messageId`` values are remembered in Redis for a week.
    The credit ledger's unique reference is the actual guard against
    double grants.
"""

import hmac
import json
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request

from entitlement_core.api.v1.subscription import Catalogs
from entitlement_core.config import settings
from entitlement_core.core.errors import (
    AuthenticationError,
    EnvelopeDecodeError,
    ErrorCodes,
    ValidationError,
)
from entitlement_core.dependencies import (
    DBSession,
    NoticeSender,
    get_entitlement_service,
    get_notice_sender,
    get_receipt_verifier,
)
from entitlement_core.schemas.webhook import WebhookAck
from entitlement_core.services.cache import is_message_processed, mark_message_processed
from entitlement_core.services.entitlement_service import EntitlementService
from entitlement_core.services.receipt_verifier import ReceiptVerifier
from entitlement_core.services.webhook_ingestor import WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter()


def get_webhook_ingestor(
    entitlements: Annotated[EntitlementService, Depends(get_entitlement_service)],
    verifier: Annotated[ReceiptVerifier, Depends(get_receipt_verifier)],
    catalogs: Catalogs,
) -> WebhookIngestor:
    return WebhookIngestor(entitlements, verifier, catalogs)


def verify_push_token(token: Optional[str]) -> bool:
    """Check the shared token on the push endpoint URL, if one is configured."""
    expected = settings.PUBSUB_VERIFICATION_TOKEN
    if not expected:
        return True
    return bool(token) and hmac.compare_digest(token, expected)


@router.post("/google-play", response_model=WebhookAck, response_model_exclude_none=True)
async def google_play_webhook(
    request: Request,
    db: DBSession,
    background_tasks: BackgroundTasks,
    ingestor: Annotated[WebhookIngestor, Depends(get_webhook_ingestor)],
    send_notice: Annotated[NoticeSender, Depends(get_notice_sender)],
    token: Annotated[Optional[str], Query()] = None,
) -> WebhookAck:
    """
    Handle a Google Play RTDN push.

    Returns 200 for every decodable envelope, including ones that
    could not be applied.
    """
    if not verify_push_token(token):
        logger.warning("Unauthorized Play webhook attempt")
        raise AuthenticationError(
            code=ErrorCodes.WEBHOOK_UNAUTHORIZED,
            message="Invalid webhook token",
        )

    try:
        envelope = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.error("Invalid webhook payload: %s", exc)
        raise ValidationError("Invalid JSON payload", code=ErrorCodes.WEBHOOK_INVALID_ENVELOPE)

    message_id = None
    if isinstance(envelope, dict) and isinstance(envelope.get("message"), dict):
        message_id = envelope["message"].get("messageId")

    if message_id and await is_message_processed(message_id):
        logger.info("Duplicate Play message %s, skipping", message_id)
        return WebhookAck(duplicate=True)

    try:
        result = await ingestor.ingest(envelope)
    except EnvelopeDecodeError as exc:
        logger.error("Undecodable Play envelope: %s", exc)
        raise ValidationError(str(exc), code=ErrorCodes.WEBHOOK_INVALID_ENVELOPE)

    if result.action == "failed":
        await db.rollback()
        return WebhookAck(action=result.action)

    await db.commit()
    if message_id:
        await mark_message_processed(message_id)
    if result.notice is not None and result.user_id is not None:
        background_tasks.add_task(send_notice, result.user_id, result.notice)

    logger.info("Play message %s handled: action=%s user=%s", message_id, result.action, result.user_id)
    return WebhookAck(action=result.action)
