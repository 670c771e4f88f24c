import time
from datetime import datetime, timezone
from functools import lru_cache

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from shopbot.config import settings
from shopbot.logging_config import get_logger
from shopbot.schemas.webhook import WebhookAck, WebhookPayload
from shopbot.services.alert_service import alert_critical
from shopbot.services.background import spawn_detached
from shopbot.services.pipeline import WebhookPipeline, build_pipeline
from shopbot.services.signature import SIGNATURE_HEADER, verify_signature

logger = get_logger("webhook")

router = APIRouter()


@lru_cache(maxsize=1)
def get_pipeline() -> WebhookPipeline:
    return build_pipeline()


@router.get("/webhook/messenger")
async def verify_subscription(request: Request):
    """Meta subscription handshake: echo hub.challenge when the verify token matches."""
    mode = request.query_params.get("hub.mode")
    token = request.query_params.get("hub.verify_token")
    challenge = request.query_params.get("hub.challenge") or ""

    if mode == "subscribe" and settings.messenger_verify_token and token == settings.messenger_verify_token:
        logger.info("Messenger webhook verified")
        return PlainTextResponse(challenge)

    logger.warning("Messenger webhook verification failed", extra={"context": {"mode": mode}})
    return JSONResponse(status_code=403, content={"error": "Verification failed"})


@router.post("/webhook/messenger", response_model=WebhookAck)
async def handle_messenger_webhook(request: Request, pipeline: WebhookPipeline = Depends(get_pipeline)):
    started = time.monotonic()

    if not settings.facebook_app_secret:
        logger.error("FACEBOOK_APP_SECRET is not configured")
        return JSONResponse(status_code=500, content={"error": "Webhook not configured"})

    raw_body = await request.body()
    if not verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), settings.facebook_app_secret):
        logger.warning("Rejected webhook with invalid signature")
        return JSONResponse(status_code=403, content={"error": "Invalid signature"})

    try:
        payload = WebhookPayload.model_validate_json(raw_body)
    except ValidationError as e:
        logger.warning("Webhook payload validation failed", extra={"context": {"errors": e.error_count()}})
        return WebhookAck(status="ignored")

    try:
        status = await pipeline.handle_payload(payload)
    except Exception as e:
        duration_ms = round((time.monotonic() - started) * 1000)
        context = {
            "duration_ms": duration_ms,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "object": payload.object,
            "error": type(e).__name__,
        }
        logger.error(f"Webhook processing failed: {e}", extra={"context": context}, exc_info=True)
        spawn_detached(
            lambda: alert_critical("Messenger webhook processing failed", context),
            name="alert_webhook",
        )
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    logger.debug(
        "Webhook processed",
        extra={"context": {"duration_ms": round((time.monotonic() - started) * 1000), "status": status}},
    )
    return WebhookAck(status=status)
