"""Provider webhook endpoints.

Every business outcome (processed, duplicate, unknown account, malformed
payload, unknown event type) is acknowledged with 200 so the provider does
not retry it. Only exhausted storage retries answer 503, which the provider
retries; redelivery is safe because ingestion is idempotent.
"""

import hashlib
import hmac
import json
import secrets
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response

from unibox.config import settings
from unibox.exceptions import InvalidSignature, TransientStorageError
from unibox.middleware.rate_limit import RATE_LIMIT_WEBHOOK, limiter
from unibox.pipeline.ingest import WebhookPipeline, get_webhook_pipeline

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Unipile-Signature"
EMAIL_TOKEN_HEADER = "X-Webhook-Token"

Pipeline = Annotated[WebhookPipeline, Depends(get_webhook_pipeline)]


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    """Check an HMAC-SHA256 hex signature over the raw body.

    Raises:
        InvalidSignature: If the signature is missing or does not match.
    """
    if not signature:
        raise InvalidSignature
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256=") :]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(provided.lower(), expected):
        raise InvalidSignature


def _parse_body(raw_body: bytes) -> dict[str, Any]:
    try:
        body = json.loads(raw_body or b"null")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Webhook body is not valid JSON", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be a JSON object")
    return body


async def _ingest(
    pipeline: WebhookPipeline, provider_hint: str | None, body: dict[str, Any]
) -> dict[str, Any]:
    try:
        result = await pipeline.handle(provider_hint, body)
    except TransientStorageError as e:
        logger.error(
            "Webhook not processed, storage unavailable",
            operation=e.operation,
            attempts=e.attempts,
        )
        raise HTTPException(status_code=503, detail="Storage temporarily unavailable") from e
    return result.to_response()


@router.post("/unipile")
@limiter.limit(RATE_LIMIT_WEBHOOK)
async def handle_unipile_webhook(
    request: Request,
    response: Response,  # noqa: ARG001
    pipeline: Pipeline,
) -> dict[str, Any]:
    """Relay webhook: new messages, receipts and account status changes."""
    raw_body = await request.body()

    if settings.UNIPILE_WEBHOOK_SECRET:
        try:
            verify_signature(
                raw_body, request.headers.get(SIGNATURE_HEADER), settings.UNIPILE_WEBHOOK_SECRET
            )
        except InvalidSignature as e:
            logger.warning("Invalid relay webhook signature")
            raise HTTPException(status_code=401, detail="Invalid signature") from e

    body = _parse_body(raw_body)
    logger.info("Received relay webhook", event_type=body.get("event") or body.get("type"))
    return await _ingest(pipeline, None, body)


@router.post("/email")
@limiter.limit(RATE_LIMIT_WEBHOOK)
async def handle_email_webhook(
    request: Request,
    response: Response,  # noqa: ARG001
    pipeline: Pipeline,
) -> dict[str, Any]:
    """Inbound email webhook; the event wrapper is optional."""
    if settings.EMAIL_WEBHOOK_TOKEN:
        token = request.headers.get(EMAIL_TOKEN_HEADER) or ""
        if not secrets.compare_digest(token, settings.EMAIL_WEBHOOK_TOKEN):
            logger.warning("Invalid email webhook token")
            raise HTTPException(status_code=401, detail="Invalid webhook token")

    body = _parse_body(await request.body())
    logger.info("Received email webhook", event_type=body.get("event") or "mail_received")
    return await _ingest(pipeline, "email", body)
