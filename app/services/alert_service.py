"""Operator alerts pushed to a Telegram chat."""

import os
from typing import Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = os.environ.get("ALERT_BOT_TOKEN")
ALERT_CHAT_ID = os.environ.get("ALERT_CHAT_ID")

LEVEL_EMOJI = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}
MAX_CONTEXT_VALUE_CHARS = 300


def _format_alert(level: str, message: str, context: Optional[dict]) -> str:
    text = f"{LEVEL_EMOJI.get(level, '📢')} *{level}* [sophia-whatsapp]\n\n{message}"
    if context:
        lines = []
        for key, value in context.items():
            rendered = str(value)
            if len(rendered) > MAX_CONTEXT_VALUE_CHARS:
                rendered = rendered[:MAX_CONTEXT_VALUE_CHARS] + "..."
            lines.append(f"  {key}: {rendered}")
        text += "\n\n```\n" + "\n".join(lines) + "\n```"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send an alert to the operator chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if Telegram accepted the message
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={
                    "chat_id": ALERT_CHAT_ID,
                    "text": _format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for ERROR level alert."""
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for CRITICAL level alert."""
    return send_alert("CRITICAL", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for WARNING level alert."""
    return send_alert("WARNING", message, context)


def alert_support_escalation(account_id, reason: str, excerpt: Optional[str] = None) -> bool:
    """Ask a human to follow up with a user the assistant could not unblock."""
    context = {"account_id": account_id, "reason": reason}
    if excerpt:
        context["last_message"] = excerpt
    return send_alert("WARNING", "Support escalation requested", context)
