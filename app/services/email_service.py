"""Transactional e-mail over the Resend API, plus the account-linking templates."""

from __future__ import annotations

import random
import time
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models.communication_log import CommunicationLog
from app.services.result import Result

logger = get_logger("email_service")

RESEND_URL = "https://api.resend.com/emails"
EMAIL_TIMEOUT_SECONDS = 12.0
DEFAULT_MAX_ATTEMPTS = 5
BACKOFF_BASE_SECONDS = 0.6
BACKOFF_MAX_SECONDS = 10.0
TEST_MODE_EMAIL_ID = "resend_TEST_MODE"


def _backoff_seconds(attempt: int) -> float:
    exp = min(BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)))
    return min(BACKOFF_MAX_SECONDS, exp + random.uniform(0, 0.25))


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def send_email(to: str, subject: str, html: str, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> Result[dict]:
    """Send one e-mail. Retries 429/5xx and transport errors with capped backoff."""
    if settings.test_mode:
        return Result.success({"id": TEST_MODE_EMAIL_ID}, skipped=True)
    if not settings.resend_api_key:
        return Result.failure("Missing RESEND_API_KEY", "not_configured")

    attempts = max(1, min(8, max_attempts))
    last_error = "Resend retry exhausted"
    for attempt in range(1, attempts + 1):
        try:
            with httpx.Client(timeout=EMAIL_TIMEOUT_SECONDS) as client:
                response = client.post(
                    RESEND_URL,
                    headers={"Authorization": f"Bearer {settings.resend_api_key}"},
                    json={"from": settings.sender_email, "to": [to], "subject": subject, "html": html},
                )
        except httpx.HTTPError as e:
            last_error = f"Resend transport error: {e}"
            logger.warning(f"{last_error} (attempt {attempt}/{attempts})")
            if attempt < attempts:
                time.sleep(_backoff_seconds(attempt))
            continue

        if response.status_code < 300:
            try:
                data = response.json()
            except ValueError:
                data = {}
            return Result.success(data, attempts=attempt)

        last_error = f"Resend error {response.status_code}: {response.text[:200]}"
        if _is_retryable(response.status_code) and attempt < attempts:
            logger.warning(f"{last_error} (attempt {attempt}/{attempts}), retrying")
            time.sleep(_backoff_seconds(attempt))
            continue
        return Result.failure(last_error, "provider_error", status=response.status_code)

    return Result.failure(last_error, "retry_exhausted")


def run_nonblocking(label: str, func: Callable[[], object]) -> None:
    """Run a fire-and-forget side effect; failures are logged, never raised."""
    try:
        func()
    except Exception as e:
        logger.warning(f"Non-blocking side effect failed ({label}): {e}", exc_info=True)


def log_communication(
    db: Session,
    account_id,
    type: str,
    status: str,
    metadata: Optional[dict] = None,
    channel: str = "email",
) -> None:
    db.add(
        CommunicationLog(
            account_id=account_id,
            channel=channel,
            type=type,
            status=status,
            log_metadata=metadata or {},
        )
    )
    db.flush()


def build_link_deeplink(token: str) -> str:
    return f"https://wa.me/{settings.whatsapp_default_number}?text=LINK:{token}"


def _wrap_html(greeting: str, paragraphs: list[str]) -> str:
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    return (
        f"<div style=\"font-family: Arial, sans-serif; line-height: 1.5\">"
        f"<p>{greeting}</p>{body}"
        f"<p>Sophia</p></div>"
    )


def _greeting(full_name: Optional[str]) -> str:
    first = (full_name or "").strip().split(" ")[0]
    return f"Bonjour {first}," if first else "Bonjour,"


def render_link_email(full_name: Optional[str], token: str, *, change_number: bool) -> tuple[str, str]:
    link = build_link_deeplink(token)
    button = f"<a href=\"{link}\">Relier mon WhatsApp</a>"
    if change_number:
        subject = "Confirme ton nouveau numéro WhatsApp"
        paragraphs = [
            "Quelqu'un (toi, on espère) veut relier un nouveau numéro WhatsApp à ton compte Sophia.",
            "Ce numéro est différent de celui enregistré sur ton compte. Si c'est bien toi, ouvre ce lien "
            f"depuis ton téléphone : {button}",
            f"Ce lien est valable {settings.link_ownership_token_ttl_days} jours et ne fonctionne qu'une fois.",
            f"Si ce n'est pas toi, ignore cet e-mail ou écris-nous à {settings.support_email}.",
        ]
    else:
        subject = "Relie ton WhatsApp à Sophia"
        paragraphs = [
            f"Pour relier ton WhatsApp à ton compte, ouvre ce lien depuis ton téléphone : {button}",
            f"Ce lien est valable {settings.link_ownership_token_ttl_days} jours et ne fonctionne qu'une fois.",
        ]
    return subject, _wrap_html(_greeting(full_name), paragraphs)


def render_security_notice_email(full_name: Optional[str]) -> tuple[str, str]:
    subject = "Ton numéro WhatsApp a été relié à un autre compte"
    paragraphs = [
        "Le numéro WhatsApp associé à ton compte Sophia vient d'être relié à un autre compte, "
        "après une confirmation par lien sécurisé.",
        f"Si ce n'est pas normal, écris-nous tout de suite à {settings.support_email}.",
        f"Tu peux relier un autre numéro à tout moment depuis {settings.site_url}.",
    ]
    return subject, _wrap_html(_greeting(full_name), paragraphs)


def render_wrong_number_email(full_name: Optional[str], token: str) -> tuple[str, str]:
    link = build_link_deeplink(token)
    subject = "Ton numéro WhatsApp semble incorrect"
    paragraphs = [
        "La personne qui a reçu nos messages WhatsApp nous a indiqué que ce n'était pas son numéro. "
        "On a donc arrêté les messages sur ce numéro.",
        "Pour relier ton vrai numéro, ouvre ce lien depuis ton téléphone : "
        f"<a href=\"{link}\">Relier mon WhatsApp</a>",
        f"Ce lien est valable {settings.link_token_ttl_days} jours. Tu peux aussi mettre ton numéro à jour sur "
        f"{settings.site_url}.",
    ]
    return subject, _wrap_html(_greeting(full_name), paragraphs)
