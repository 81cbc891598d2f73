"""Routes one normalized inbound message through the handlers, in priority order."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import bind_logger, get_logger
from app.models.account import Account
from app.models.inbound_event import InboundEvent
from app.models.outbound_message import OutboundDeliveryFailure
from app.schemas.webhook import InboundMessage, WhatsAppStatus
from app.services import linking_service, onboarding_service, optin_service, reply_service
from app.services.identity_service import ResolutionKind, find_verified_owner, resolve_account
from app.services.message_catalog import get_fallback
from app.services.pending_action_service import handle_pending_reply
from app.services.phone_service import normalize_from
from app.services.phrase_service import extract_link_token, is_stop_keyword, is_wrong_number_claim
from app.services.signal_service import analyze_signals

logger = get_logger("ingress_service")

DEFAULT_REPLY_PURPOSE = "whatsapp_reply"


class Route:
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    UNLINKED = "unlinked"
    LINK_TOKEN = "link_token"
    WRONG_NUMBER = "wrong_number"
    STOP = "stop"
    OPTIN = "optin"
    BILAN = "bilan"
    PENDING = "pending"
    ONBOARDING = "onboarding"
    DEFAULT = "default"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def record_inbound_event(db: Session, msg: InboundMessage, from_e164: str) -> bool:
    """Insert-if-absent on the platform message id. False for a redelivery."""
    stmt = (
        insert(InboundEvent)
        .values(
            wa_message_id=msg.wa_message_id,
            from_e164=from_e164,
            message_type=msg.type,
            text=msg.text or "",
            interactive_id=msg.interactive_id,
            interactive_title=msg.interactive_title,
            profile_name=msg.profile_name,
            raw=msg.raw,
        )
        .on_conflict_do_nothing(index_elements=["wa_message_id"])
        .returning(InboundEvent.id)
    )
    return db.execute(stmt).first() is not None


def _attach_event(db: Session, wa_message_id: str, account_id) -> None:
    db.execute(
        update(InboundEvent)
        .where(InboundEvent.wa_message_id == wa_message_id)
        .values(account_id=account_id)
        .execution_options(synchronize_session=False)
    )


def _default_reply(
    db: Session,
    account: Account,
    phone: str,
    msg: InboundMessage,
    history: list,
    *,
    returning: bool,
    now: datetime,
) -> None:
    signals = analyze_signals(msg.text, history)
    if onboarding_service.maybe_surface_deferred_step(
        db,
        account,
        phone,
        msg.text,
        signals=signals,
        reply_to_wa_message_id=msg.wa_message_id,
        returning=returning,
        now=now,
    ):
        return

    adaptive = None
    if signals.defers_onboarding:
        adaptive = reply_service.AdaptiveFlow(flow=signals.urgency.value, detected_topic=signals.detected_topic)
    reply_service.reply_with_brain(
        db,
        account,
        phone,
        msg.text,
        purpose=DEFAULT_REPLY_PURPOSE,
        fallback_text=get_fallback("default"),
        adaptive=adaptive,
        returning=returning,
        reply_to_wa_message_id=msg.wa_message_id,
    )


def _route_linked(
    db: Session, account: Account, phone: str, msg: InboundMessage, now: datetime
) -> str:
    if is_wrong_number_claim(msg.text, msg.interactive_id):
        linking_service.handle_wrong_number(db, account, phone, msg, now)
        return Route.WRONG_NUMBER

    returning = reply_service.is_returning_user(account.whatsapp_last_inbound_at, now)
    account.whatsapp_last_inbound_at = now
    onboarding_service.ensure_first_touch(db, account, now)

    if is_stop_keyword(msg.text, msg.interactive_id):
        optin_service.handle_stop(db, account, phone, msg, now)
        return Route.STOP

    if optin_service.is_optin_reply(db, account, msg, now):
        optin_service.handle_optin_yes(db, account, phone, msg, returning=returning, now=now)
        return Route.OPTIN

    history = reply_service.load_history(db, account.id)
    if optin_service.handle_bilan_prompt_reply(db, account, phone, msg, history=history, now=now):
        return Route.BILAN

    if handle_pending_reply(db, account, phone, msg.text, reply_to_wa_message_id=msg.wa_message_id, now=now):
        return Route.PENDING

    if onboarding_service.handle_onboarding_turn(
        db,
        account,
        phone,
        msg.text,
        reply_to_wa_message_id=msg.wa_message_id,
        returning=returning,
        now=now,
    ):
        return Route.ONBOARDING

    _default_reply(db, account, phone, msg, history, returning=returning, now=now)
    return Route.DEFAULT


def process_inbound_message(db: Session, msg: InboundMessage, now: Optional[datetime] = None) -> str:
    """Handle one inbound message end to end; returns the route taken.

    The caller owns the transaction: commit on return, roll back on exception.
    """
    now = now or _now()
    log = bind_logger("ingress_service", wa_message_id=msg.wa_message_id)
    phone = normalize_from(msg.from_raw)
    if not phone:
        log.warning("Inbound skipped, invalid sender")
        return Route.SKIPPED

    if not record_inbound_event(db, msg, phone):
        log.info("Inbound handled", context={"account_id": None, "route": Route.DUPLICATE})
        return Route.DUPLICATE

    token = extract_link_token(msg.text)
    if token and find_verified_owner(db, phone) is not None:
        # Before resolution: an unverified candidate must not be claimed only to be evicted.
        outcome = linking_service.handle_link_token(db, msg, phone, token, now=now)
        log.info("Linking step", context={"phone": phone, "outcome": outcome})
        db.flush()
        log.info("Inbound handled", context={"account_id": None, "route": Route.LINK_TOKEN})
        return Route.LINK_TOKEN

    resolution = resolve_account(db, msg.from_raw, now)
    account_id = None
    if resolution.is_linked:
        account = resolution.account
        account_id = account.id
        route = _route_linked(db, account, phone, msg, now)
        # Attached after routing so the message is not part of its own history.
        _attach_event(db, msg.wa_message_id, account_id)
    else:
        outcome = linking_service.handle_unlinked_message(
            db, msg, phone, ambiguous=resolution.kind == ResolutionKind.AMBIGUOUS, now=now
        )
        log.info("Linking step", context={"phone": phone, "outcome": outcome})
        route = Route.UNLINKED

    db.flush()
    log.info("Inbound handled", context={"account_id": account_id, "route": route})
    return route


def apply_status_updates(db: Session, statuses: Iterable[WhatsAppStatus]) -> int:
    """Record platform-reported delivery failures; the outbound audit rows themselves are never updated."""
    failed = 0
    for status in statuses:
        if status.status != "failed":
            continue
        stmt = (
            insert(OutboundDeliveryFailure)
            .values(provider_message_id=status.id, status=status.status, errors=status.errors or [])
            .on_conflict_do_nothing(index_elements=["provider_message_id"])
            .returning(OutboundDeliveryFailure.id)
        )
        if db.execute(stmt).first() is not None:
            failed += 1
            logger.warning(
                "Outbound delivery failed",
                extra={"context": {"provider_message_id": status.id, "errors": status.errors}},
            )
    return failed
