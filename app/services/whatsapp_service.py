"""WhatsApp Cloud API transport: the single outbound send primitive and webhook signature checks."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.alert_service import alert_critical

logger = get_logger("whatsapp_service")

GRAPH_BASE_URL = "https://graph.facebook.com"
SEND_TIMEOUT_SECONDS = 15.0
RECIPIENT_NOT_ALLOWED_CODE = 131030
TEST_MODE_MESSAGE_ID = "wamid_TEST_MODE"


@dataclass(frozen=True)
class SendOutcome:
    ok: bool
    provider_message_id: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "sent" if self.ok else "failed"


def _messages_url() -> str:
    return f"{GRAPH_BASE_URL}/{settings.whatsapp_graph_version}/{settings.whatsapp_phone_number_id}/messages"


def send_text(to_e164: str, body: str) -> SendOutcome:
    """Send one text message. Never raises; failures are returned as outcomes."""
    if not to_e164 or not body:
        logger.warning(f"send_text: missing recipient or body (to={to_e164})")
        return SendOutcome(ok=False, reason="missing_input")

    if settings.test_mode:
        return SendOutcome(ok=True, provider_message_id=TEST_MODE_MESSAGE_ID)

    if not settings.whatsapp_access_token or not settings.whatsapp_phone_number_id:
        logger.error("WhatsApp credentials missing (WHATSAPP_ACCESS_TOKEN / WHATSAPP_PHONE_NUMBER_ID)")
        alert_critical("WhatsApp send failed", {"to": to_e164, "error": "missing_credentials"})
        return SendOutcome(ok=False, reason="missing_credentials")

    payload = {
        "messaging_product": "whatsapp",
        "to": to_e164.lstrip("+"),
        "type": "text",
        "text": {"body": body},
    }
    try:
        with httpx.Client(timeout=SEND_TIMEOUT_SECONDS) as client:
            response = client.post(
                _messages_url(),
                headers={
                    "Authorization": f"Bearer {settings.whatsapp_access_token}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
    except httpx.HTTPError as e:
        logger.error(f"Error sending WhatsApp message: {e}")
        alert_critical("WhatsApp send failed", {"to": to_e164, "error": str(e)})
        return SendOutcome(ok=False, reason="transport_error")

    try:
        data = response.json()
    except ValueError:
        data = {}

    if response.status_code != 200:
        meta_code = (data.get("error") or {}).get("code") if isinstance(data, dict) else None
        if response.status_code == 400 and meta_code == RECIPIENT_NOT_ALLOWED_CODE:
            # Sandbox numbers can only message allow-listed recipients.
            logger.warning(
                "WhatsApp recipient not in allowed list",
                extra={"context": {"to": to_e164, "meta_code": meta_code}},
            )
            return SendOutcome(ok=False, skipped=True, reason="recipient_not_allowed_list")
        logger.error(f"WhatsApp send failed: status={response.status_code}, body={response.text[:300]}")
        alert_critical("WhatsApp send failed", {"to": to_e164, "status": response.status_code})
        return SendOutcome(ok=False, reason=f"http_{response.status_code}")

    messages = data.get("messages") or [] if isinstance(data, dict) else []
    provider_id = messages[0].get("id") if messages else None
    logger.info(f"Delivered via WhatsApp: to={to_e164}, id={provider_id}")
    return SendOutcome(ok=True, provider_message_id=provider_id)


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, header_value: str | None) -> bool:
    """Check X-Hub-Signature-256 ("sha256=<hex>") against the app secret."""
    if settings.test_mode:
        return True
    secret = settings.whatsapp_app_secret
    if not secret:
        logger.error("WHATSAPP_APP_SECRET not configured, rejecting webhook")
        return False
    if not header_value:
        return False
    provided = header_value[len("sha256="):] if header_value.startswith("sha256=") else header_value
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, provided.strip().lower())
