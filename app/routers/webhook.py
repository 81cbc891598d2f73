import json

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.schemas.webhook import WebhookAck, WhatsAppWebhookPayload, extract_messages, extract_statuses
from app.services.alert_service import alert_error
from app.services.ingress_service import Route, apply_status_updates, process_inbound_message
from app.services.whatsapp_service import verify_signature

logger = get_logger("webhook")

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])

SIGNATURE_HEADER = "X-Hub-Signature-256"


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    """Subscription handshake: echo the challenge when the verify token matches."""
    expected = settings.whatsapp_verify_token
    if hub_mode == "subscribe" and expected and hub_verify_token == expected:
        return PlainTextResponse(hub_challenge or "")
    logger.warning(f"Webhook verification refused: mode={hub_mode}")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/webhook", response_model=WebhookAck)
async def handle_webhook(request: Request, db: Session = Depends(get_db)):
    raw_body = await request.body()
    if not verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Webhook signature rejected")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = WhatsAppWebhookPayload.model_validate(json.loads(raw_body or b"{}"))
    except (ValueError, ValidationError) as e:
        logger.warning(f"Webhook payload rejected: {e}")
        return WebhookAck(ok=False)

    ack = WebhookAck()
    statuses = extract_statuses(payload)
    if statuses:
        try:
            apply_status_updates(db, statuses)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Status update failed: {e}", exc_info=True)
        ack.statuses = len(statuses)

    for msg in extract_messages(payload):
        try:
            route = process_inbound_message(db, msg)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(
                "Inbound processing failed",
                exc_info=True,
                extra={"context": {"wa_message_id": msg.wa_message_id, "error": str(e)}},
            )
            alert_error("WhatsApp inbound failed", {"wa_message_id": msg.wa_message_id, "error": str(e)})
            continue
        if route == Route.DUPLICATE:
            ack.duplicates += 1
        elif route != Route.SKIPPED:
            ack.processed += 1

    return ack
