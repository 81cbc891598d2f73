"""STOP, opt-in and daily-bilan fast paths for linked accounts.

These run before pending actions and onboarding: each one answers a
proactive template we sent (opt-in, daily bilan) or the STOP keyword.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models.account import Account
from app.models.pending_action import ScheduledCheckin
from app.schemas.webhook import InboundMessage
from app.services import reply_service
from app.services.intent_service import BilanIntent, classify_bilan_reply
from app.services.message_catalog import get_message
from app.services.onboarding_machine import OnboardingState
from app.services.onboarding_service import set_state
from app.services.pending_action_service import PendingKind, create_pending_action, format_delay
from app.services.phrase_service import is_optin_yes

logger = get_logger("optin_service")

# Purpose tags of the proactive templates sent by the out-of-band workers.
OPTIN_PROMPT_PURPOSE = "optin"
DAILY_BILAN_PURPOSE = "daily_bilan"

OPTOUT_REASON_STOP = "stop_inbound"

BILAN_KICKOFF_DIRECTIVE = (
    "L'utilisateur accepte de faire son bilan du soir.\n"
    "Pose exactement 2 questions courtes: une victoire aujourd'hui ? un truc à ajuster pour demain ?"
)
OPTIN_WELCOME_WITH_PLAN = (
    "L'utilisateur vient d'accepter de recevoir des messages WhatsApp et a un plan actif.\n"
    "Message court et chaleureux. Demande un score de motivation sur 10 pour ce plan."
)
OPTIN_WELCOME_NO_PLAN = (
    "L'utilisateur vient d'accepter de recevoir des messages WhatsApp mais n'a pas encore de plan actif.\n"
    "Explique que tu ne vois pas encore de plan, demande de le finaliser sur {site_url}, "
    "et de répondre \"c'est bon\" quand c'est fait."
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _outstanding(db: Session, account: Account, purpose: str, window: timedelta, now: datetime) -> bool:
    """A template is outstanding while it is recent and still the last thing we said."""
    if reply_service.last_outbound_purpose(db, account.id) != purpose:
        return False
    return reply_service.has_recent_purpose(db, account.id, [purpose], window, now)


def handle_stop(
    db: Session, account: Account, to_e164: str, msg: InboundMessage, now: Optional[datetime] = None
) -> bool:
    """Opt the account out. The confirmation is sent once per opt-out."""
    now = now or _now()
    account.whatsapp_opted_in = False
    account.whatsapp_bilan_opted_in = False
    account.whatsapp_optout_at = now
    account.whatsapp_optout_reason = OPTOUT_REASON_STOP

    if account.whatsapp_optout_confirmed_at is not None:
        logger.info(f"Repeated STOP ignored: account={account.id}")
        db.flush()
        return True

    reply_service.send_and_log(
        db,
        account.id,
        to_e164,
        get_message("optin.stop_confirmation"),
        purpose="optout_confirmation",
        reply_to_wa_message_id=msg.wa_message_id,
    )
    account.whatsapp_optout_confirmed_at = now
    db.flush()
    logger.info("Account opted out", extra={"context": {"account_id": account.id}})
    return True


def is_optin_reply(db: Session, account: Account, msg: InboundMessage, now: Optional[datetime] = None) -> bool:
    if msg.interactive_id and is_optin_yes(None, msg.interactive_id):
        return True
    if not is_optin_yes(msg.text):
        return False
    window = timedelta(hours=settings.optin_prompt_window_hours)
    return _outstanding(db, account, OPTIN_PROMPT_PURPOSE, window, now or _now())


def handle_optin_yes(
    db: Session,
    account: Account,
    to_e164: str,
    msg: InboundMessage,
    *,
    returning: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    now = now or _now()
    account.whatsapp_opted_in = True
    account.whatsapp_bilan_opted_in = True
    account.whatsapp_optout_at = None
    account.whatsapp_optout_reason = None
    account.whatsapp_optout_confirmed_at = None

    plan_active = reply_service.has_active_plan(db, account.id)
    if plan_active:
        set_state(account, OnboardingState.AWAITING_PLAN_MOTIVATION, now)
        directive = OPTIN_WELCOME_WITH_PLAN
    else:
        set_state(account, OnboardingState.AWAITING_PLAN_FINALIZATION, now)
        directive = OPTIN_WELCOME_NO_PLAN.format(site_url=settings.site_url)
    db.flush()

    reply_service.reply_with_brain(
        db,
        account,
        to_e164,
        msg.text or "Oui",
        purpose="optin_yes_welcome_ai",
        directive=directive,
        fallback_text=get_message("optin.welcome_fallback"),
        returning=returning,
        reply_to_wa_message_id=msg.wa_message_id,
    )
    logger.info(
        "Opt-in accepted",
        extra={"context": {"account_id": account.id, "plan_active": plan_active, "state": account.whatsapp_state}},
    )
    return True


def handle_bilan_prompt_reply(
    db: Session,
    account: Account,
    to_e164: str,
    msg: InboundMessage,
    *,
    history: Optional[List[dict]] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Answer to the daily bilan template. False when no prompt is outstanding or the reply is inconclusive."""
    now = now or _now()
    window = timedelta(hours=settings.bilan_prompt_window_hours)
    if not _outstanding(db, account, DAILY_BILAN_PURPOSE, window, now):
        return False

    if history is None:
        history = reply_service.load_history(db, account.id)
    verdict = classify_bilan_reply(msg.text, history, now=now)
    if verdict.source == "default":
        # Nothing recognisable: let the message reach the normal flow.
        return False

    reply_to = msg.wa_message_id
    if verdict.intent == BilanIntent.ACCEPT:
        account.whatsapp_bilan_opted_in = True
        reply_service.reply_with_brain(
            db,
            account,
            to_e164,
            msg.text,
            purpose="daily_bilan_kickoff_ai",
            directive=BILAN_KICKOFF_DIRECTIVE,
            fallback_text=get_message("optin.bilan_kickoff_fallback"),
            reply_to_wa_message_id=reply_to,
        )
    elif verdict.intent == BilanIntent.DECLINE:
        reply_service.send_and_log(
            db,
            account.id,
            to_e164,
            get_message("optin.bilan_declined"),
            purpose="daily_bilan_declined",
            reply_to_wa_message_id=reply_to,
        )
    elif verdict.delay_minutes:
        db.add(
            ScheduledCheckin(
                account_id=account.id,
                kind="bilan",
                scheduled_for=now + timedelta(minutes=verdict.delay_minutes),
                status="pending",
            )
        )
        db.flush()
        reply_service.send_and_log(
            db,
            account.id,
            to_e164,
            get_message("pending.bilan_rescheduled", when=format_delay(verdict.delay_minutes)),
            purpose="bilan_rescheduled",
            reply_to_wa_message_id=reply_to,
        )
    else:
        created = create_pending_action(db, account.id, PendingKind.BILAN_RESCHEDULE, {"retries": 0})
        if not created.ok:
            logger.info(f"Bilan reschedule already pending: account={account.id}")
        reply_service.send_and_log(
            db,
            account.id,
            to_e164,
            get_message("pending.bilan_reschedule_ask"),
            purpose="bilan_reschedule_ask",
            reply_to_wa_message_id=reply_to,
        )

    logger.info(
        "Daily bilan reply handled",
        extra={"context": {"account_id": account.id, **verdict.as_dict(), "source": verdict.source}},
    )
    return True
