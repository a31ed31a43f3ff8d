"""
Webhook Endpoints

Public endpoints called by Meta and Twilio. Authenticity is checked
before anything else; after that every delivery is acknowledged with
200 so providers do not retry on our own failures.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import PlainTextResponse

from clinicbot.config import Settings, get_settings
from clinicbot.core.exceptions import SignatureError, ValidationError
from clinicbot.core.webhook.processor import WebhookProcessor, get_webhook_processor
from clinicbot.core.webhook.signatures import (
    verify_meta_signature,
    verify_token,
    verify_twilio_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

EMPTY_TWIML = "<?xml version=\"1.0\" encoding=\"UTF-8\"?><Response></Response>"


# === Meta ===

@router.get(
    "/meta",
    response_class=PlainTextResponse,
    summary="Meta webhook verification",
)
async def verify_meta_webhook(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    settings: Settings = Depends(get_settings),
) -> PlainTextResponse:
    if mode == "subscribe" and verify_token(token, settings.meta_webhook_verify_token):
        logger.info("Meta webhook verification succeeded")
        return PlainTextResponse(challenge or "", status_code=status.HTTP_200_OK)

    logger.warning(f"Meta webhook verification failed, mode={mode}")
    return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)


@router.post(
    "/meta",
    response_class=PlainTextResponse,
    summary="Meta webhook deliveries",
)
async def receive_meta_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> PlainTextResponse:
    raw_body = await request.body()
    signature = request.headers.get("X-Hub-Signature-256")

    if not verify_meta_signature(raw_body, signature, settings.meta_app_secret):
        raise SignatureError("Invalid signature")

    try:
        payload = json.loads(raw_body)
        if not isinstance(payload, dict):
            raise ValueError("payload is not an object")
        summary = await processor.process_meta(payload)
        logger.info(f"Meta delivery processed: {summary.to_dict()}")
    except Exception as e:
        logger.error(f"Meta delivery failed: {e}", exc_info=True)

    return PlainTextResponse("OK", status_code=status.HTTP_200_OK)


# === Twilio ===

@router.post(
    "/twilio/inbound",
    summary="Twilio inbound messages",
)
async def receive_twilio_inbound(
    request: Request,
    settings: Settings = Depends(get_settings),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> Response:
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    line = await processor.resolve_twilio_line(params)
    auth_token = (line.twilio_auth_token if line else None) or settings.twilio_auth_token
    url = settings.twilio_webhook_url or str(request.url)

    if not verify_twilio_signature(url, params, request.headers.get("X-Twilio-Signature"), auth_token):
        logger.warning(f"Twilio signature mismatch for {url}")
        raise SignatureError("Invalid signature")

    try:
        summary = await processor.process_twilio_inbound(params)
        logger.info(f"Twilio inbound processed: {summary.to_dict()}")
    except Exception as e:
        logger.error(f"Twilio inbound failed: {e}", exc_info=True)

    return Response(content=EMPTY_TWIML, media_type="application/xml")


@router.post(
    "/twilio/status",
    summary="Twilio delivery status callbacks",
)
async def receive_twilio_status(
    request: Request,
    token: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> dict:
    if not verify_token(token, settings.twilio_status_webhook_token):
        raise SignatureError("Unauthorized")

    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    if not (params.get("MessageSid") or params.get("SmsSid")):
        raise ValidationError("Missing MessageSid/MessageStatus")

    try:
        applied = await processor.process_twilio_status(params)
    except Exception as e:
        logger.error(f"Twilio status update failed: {e}", exc_info=True)
        applied = False

    return {"ok": True, "applied": applied}
