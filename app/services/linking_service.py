"""Linking protocol for phones that do not resolve to exactly one account.

Linking never happens on an e-mail address alone: a matching address only
earns a single-use token sent to that mailbox, and the phone is attached when
the token comes back from the phone itself (``LINK:<token>``).
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models.account import Account
from app.models.inbound_event import UnlinkedInboundMessage
from app.models.link_request import LinkRequest, LinkToken
from app.schemas.webhook import InboundMessage
from app.services import email_service, reply_service
from app.services.identity_service import transfer_verified_phone
from app.services.message_catalog import get_message
from app.services.onboarding_machine import OnboardingState
from app.services.onboarding_service import set_state
from app.services.phone_service import normalize_from, phone_variants
from app.services.phrase_service import (
    extract_email,
    extract_link_token,
    is_stop_keyword,
    is_yes_reply,
    mask_email,
    normalize_email,
)
from app.services.result import Result

logger = get_logger("linking_service")

TOKEN_BYTES = 18


class LinkStatus(str, Enum):
    PENDING = "pending"
    CONFIRM_EMAIL = "confirm_email"
    SUPPORT_REQUIRED = "support_required"
    LINKED = "linked"
    BLOCKED = "blocked"


TERMINAL_STATUSES = (LinkStatus.SUPPORT_REQUIRED.value, LinkStatus.BLOCKED.value)


class _LinkAborted(Exception):
    def __init__(self, code: str):
        self.code = code
        super().__init__(code)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_link_token(
    db: Session, account_id, ttl_days: int, purpose: str = "link", now: Optional[datetime] = None
) -> str:
    token = secrets.token_urlsafe(TOKEN_BYTES)
    db.add(
        LinkToken(
            token=token,
            account_id=account_id,
            purpose=purpose,
            status="active",
            expires_at=(now or _now()) + timedelta(days=ttl_days),
        )
    )
    db.flush()
    return token


def consume_link_token(db: Session, token: str, now: Optional[datetime] = None) -> Result:
    """Single-use: only an active, unexpired token flips to consumed. Fails closed otherwise."""
    now = now or _now()
    stmt = (
        update(LinkToken)
        .where(LinkToken.token == token, LinkToken.status == "active", LinkToken.expires_at > now)
        .values(status="consumed", consumed_at=now)
        .returning(LinkToken.account_id)
        .execution_options(synchronize_session=False)
    )
    row = db.execute(stmt).first()
    if row is None:
        return Result.failure("Link token unusable", "token_unusable")
    return Result.success(row[0])


def get_link_request(db: Session, phone_e164: str) -> Optional[LinkRequest]:
    return db.query(LinkRequest).filter(LinkRequest.phone_e164 == phone_e164).first()


def upsert_link_request(db: Session, phone_e164: str, now: Optional[datetime] = None, **values):
    """Create or update the request for this phone; returns its id."""
    now = now or _now()
    values["updated_at"] = now
    stmt = (
        insert(LinkRequest)
        .values(phone_e164=phone_e164, **values)
        .on_conflict_do_update(index_elements=["phone_e164"], set_=values)
        .returning(LinkRequest.id)
    )
    row = db.execute(stmt).first()
    return row[0] if row else None


def record_unlinked_inbound(db: Session, msg: InboundMessage, phone_e164: str, link_request_id=None) -> None:
    stmt = (
        insert(UnlinkedInboundMessage)
        .values(
            wa_message_id=msg.wa_message_id,
            phone_e164=phone_e164,
            link_request_id=link_request_id,
            text=msg.text or "",
            raw=msg.raw,
        )
        .on_conflict_do_nothing(index_elements=["wa_message_id"])
    )
    db.execute(stmt)


def reset_link_request(db: Session, phone_e164: str, now: Optional[datetime] = None) -> Result[LinkRequest]:
    """Reopen a support_required / blocked request so the e-mail protocol can start over."""
    now = now or _now()
    stmt = (
        update(LinkRequest)
        .where(LinkRequest.phone_e164 == phone_e164, LinkRequest.status.in_(TERMINAL_STATUSES))
        .values(status=LinkStatus.PENDING.value, attempts=0, last_prompted_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        existing = get_link_request(db, phone_e164)
        if existing is None:
            return Result.failure("No link request for this phone", "not_found")
        return Result.failure(f"Link request is {existing.status}", "not_resettable", status=existing.status)
    logger.info(f"Link request reset: phone={phone_e164}")
    return Result.success(get_link_request(db, phone_e164))


def _maybe_expire_terminal(db: Session, link_request: Optional[LinkRequest], now: datetime) -> Optional[LinkRequest]:
    hours = settings.support_required_reset_hours
    if not link_request or hours <= 0 or link_request.status not in TERMINAL_STATUSES:
        return link_request
    if link_request.updated_at and link_request.updated_at < now - timedelta(hours=hours):
        result = reset_link_request(db, link_request.phone_e164, now)
        if result.ok:
            return result.value
    return link_request


def _elapsed(since: Optional[datetime], window: timedelta, now: datetime) -> bool:
    return since is None or now - since >= window


def _same_phone(stored: str, phone_e164: str) -> bool:
    """Signup phones may be stored as "+33...", "33..." or "06..."."""
    compact = "".join(stored.split())
    return compact in phone_variants(phone_e164) or normalize_from(compact) == phone_e164


def _send(db: Session, phone: str, content: str, purpose: str, msg: InboundMessage, account_id=None) -> None:
    reply_service.send_and_log(
        db, account_id, phone, content, purpose=purpose, reply_to_wa_message_id=msg.wa_message_id
    )


def _notify_previous_owners(db: Session, evicted_ids: list) -> None:
    for account_id in evicted_ids:
        previous = db.query(Account).filter(Account.id == account_id).first()
        if not previous or not previous.email:
            continue

        def _send_notice(previous=previous):
            subject, html = email_service.render_security_notice_email(previous.full_name)
            result = email_service.send_email(previous.email, subject, html)
            if not result.ok:
                logger.warning(f"Security notice not delivered to account {previous.id}: {result.error}")

        email_service.run_nonblocking("phone_transfer_security_notice", _send_notice)


def _link_with_token(
    db: Session, msg: InboundMessage, phone: str, token: str, link_request: Optional[LinkRequest], now: datetime
) -> str:
    try:
        with db.begin_nested():
            consumed = consume_link_token(db, token, now)
            if not consumed.ok:
                raise _LinkAborted("token_unusable")
            account_id = consumed.value
            transferred = transfer_verified_phone(db, account_id, phone, now)
            if not transferred.ok:
                raise _LinkAborted(transferred.error_code or "transfer_failed")
    except _LinkAborted as aborted:
        if aborted.code == "token_unusable":
            _send(db, phone, get_message("link.token_invalid"), "link_token_invalid", msg)
            return "token_invalid"
        logger.warning(f"Token link aborted: phone={phone}, code={aborted.code}")
        _send(db, phone, get_message("link.token_error"), "link_token_error", msg)
        return "token_error"

    _notify_previous_owners(db, transferred.value)
    upsert_link_request(
        db,
        phone,
        now,
        status=LinkStatus.LINKED.value,
        attempts=(link_request.attempts if link_request else 0) + 1,
        linked_account_id=account_id,
        last_prompted_at=now,
        last_email_attempted=None,
    )

    account = db.query(Account).filter(Account.id == account_id).first()
    plan_active = reply_service.has_active_plan(db, account_id)
    if account is not None:
        account.whatsapp_opted_in = True
        account.whatsapp_optout_at = None
        account.whatsapp_optout_reason = None
        if account.whatsapp_first_touched_at is None:
            account.whatsapp_first_touched_at = now
        if not plan_active and account.whatsapp_state is None:
            set_state(account, OnboardingState.AWAITING_PLAN_FINALIZATION, now)
    key = "link.linked_plan_active" if plan_active else "link.linked_no_plan"
    _send(db, phone, get_message(key), "link_welcome", msg, account_id)
    logger.info("Phone linked by token", extra={"context": {"account_id": account_id, "phone": phone}})
    return "linked"


def _send_support_notice(
    db: Session, msg: InboundMessage, phone: str, link_request: Optional[LinkRequest], now: datetime
) -> bool:
    last = link_request.last_prompted_at if link_request else None
    if not _elapsed(last, timedelta(hours=settings.link_block_notice_cooldown_hours), now):
        return False
    _send(db, phone, get_message("link.support_required"), "link_support_required", msg)
    return True


def _route_to_support(
    db: Session,
    msg: InboundMessage,
    phone: str,
    link_request: Optional[LinkRequest],
    now: datetime,
    attempts: int,
    email: Optional[str],
) -> str:
    _send(db, phone, get_message("link.support_required"), "link_support_required", msg)
    upsert_link_request(
        db,
        phone,
        now,
        status=LinkStatus.SUPPORT_REQUIRED.value,
        attempts=attempts,
        last_prompted_at=now,
        last_email_attempted=email or (link_request.last_email_attempted if link_request else None),
    )
    logger.info(f"Link request routed to support: phone={phone}, attempts={attempts}")
    return "support_required"


def _link_with_email(
    db: Session, msg: InboundMessage, phone: str, email: str, link_request: Optional[LinkRequest], now: datetime
) -> str:
    email_norm = normalize_email(email)
    if (
        link_request is not None
        and link_request.status == LinkStatus.PENDING.value
        and link_request.linked_account_id is not None
        and not _elapsed(link_request.last_prompted_at, timedelta(minutes=settings.link_prompt_cooldown_minutes), now)
    ):
        # A confirmation e-mail already went out for this phone; never mail on every message.
        logger.info(f"Link e-mail suppressed by cooldown: phone={phone}")
        return "email_suppressed"
    attempts = (link_request.attempts if link_request else 0) + 1
    target = db.query(Account).filter(func.lower(Account.email) == email_norm).first()

    if target is None:
        if attempts >= settings.link_max_attempts:
            return _route_to_support(db, msg, phone, link_request, now, attempts, email_norm)
        _send(db, phone, get_message("link.email_not_found_confirm", email=email_norm), "link_email_not_found", msg)
        upsert_link_request(
            db,
            phone,
            now,
            status=LinkStatus.CONFIRM_EMAIL.value,
            attempts=attempts,
            last_prompted_at=now,
            last_email_attempted=email_norm,
        )
        return "email_not_found"

    change_number = bool(target.phone_number) and not _same_phone(target.phone_number, phone)
    token = create_link_token(db, target.id, settings.link_ownership_token_ttl_days, "link", now)
    subject, html = email_service.render_link_email(target.full_name, token, change_number=change_number)
    sent = email_service.send_email(target.email, subject, html)
    email_service.log_communication(
        db,
        target.id,
        "whatsapp_link_change_number_email" if change_number else "whatsapp_link_validation_email",
        "sent" if sent.ok else "failed",
        {"phone_e164": phone} if sent.ok else {"phone_e164": phone, "error": sent.error},
    )
    upsert_link_request(
        db,
        phone,
        now,
        status=LinkStatus.PENDING.value,
        attempts=attempts,
        last_prompted_at=now,
        linked_account_id=target.id,
        last_email_attempted=email_norm,
    )
    if not sent.ok:
        _send(db, phone, get_message("link.email_failed"), "link_email_failed", msg)
        return "email_failed"
    _send(db, phone, get_message("link.email_sent", email_masked=mask_email(email_norm)), "link_email_sent", msg)
    return "email_sent"


def handle_unlinked_message(
    db: Session,
    msg: InboundMessage,
    phone_e164: str,
    *,
    ambiguous: bool = False,
    now: Optional[datetime] = None,
) -> str:
    """Run one step of the linking protocol; returns a short outcome label for logs."""
    now = now or _now()

    if is_stop_keyword(msg.text, msg.interactive_id):
        return "stop_ignored"

    link_request = _maybe_expire_terminal(db, get_link_request(db, phone_e164), now)
    record_unlinked_inbound(db, msg, phone_e164, link_request.id if link_request else None)

    token = extract_link_token(msg.text)
    if token:
        return _link_with_token(db, msg, phone_e164, token, link_request, now)

    status = link_request.status if link_request else None
    if status in TERMINAL_STATUSES:
        return "support_notice" if _send_support_notice(db, msg, phone_e164, link_request, now) else "suppressed"

    email = extract_email(msg.text)
    if status == LinkStatus.CONFIRM_EMAIL.value and not email and is_yes_reply(msg.text):
        # "Yes, that was the right address": nothing more to try here.
        attempts = (link_request.attempts if link_request else 0) + 1
        return _route_to_support(db, msg, phone_e164, link_request, now, attempts, None)

    if email:
        return _link_with_email(db, msg, phone_e164, email, link_request, now)

    last = link_request.last_prompted_at if link_request else None
    if not _elapsed(last, timedelta(minutes=settings.link_prompt_cooldown_minutes), now):
        return "suppressed"
    key = "link.prompt_ambiguous" if ambiguous else "link.prompt"
    _send(db, phone_e164, get_message(key), "link_prompt_ambiguous" if ambiguous else "link_prompt", msg)
    upsert_link_request(
        db,
        phone_e164,
        now,
        status=status or LinkStatus.PENDING.value,
        attempts=link_request.attempts if link_request else 0,
        last_prompted_at=now,
    )
    return "prompted"


def handle_link_token(
    db: Session, msg: InboundMessage, phone_e164: str, token: str, now: Optional[datetime] = None
) -> str:
    """``LINK:<token>`` from a phone that already has a verified owner: the token decides the owner."""
    now = now or _now()
    return _link_with_token(db, msg, phone_e164, token, get_link_request(db, phone_e164), now)


def handle_wrong_number(
    db: Session, account: Account, phone_e164: str, msg: InboundMessage, now: Optional[datetime] = None
) -> str:
    """The person on this phone says the account is not theirs: detach, opt out, e-mail the owner."""
    now = now or _now()
    account.phone_number = None
    account.verified_phone = None
    account.phone_verified_at = None
    account.whatsapp_opted_in = False
    account.whatsapp_bilan_opted_in = False
    account.whatsapp_optout_at = now
    account.whatsapp_optout_reason = "wrong_number"
    account.whatsapp_optout_confirmed_at = None
    account.whatsapp_state = None
    db.flush()

    upsert_link_request(
        db,
        phone_e164,
        now,
        status=LinkStatus.PENDING.value,
        attempts=0,
        linked_account_id=None,
        last_prompted_at=now,
    )
    _send(db, phone_e164, get_message("link.wrong_number_ack"), "wrong_number_ack", msg, account.id)

    if account.email:
        token = create_link_token(db, account.id, settings.link_token_ttl_days, "wrong_number_relink", now)
        subject, html = email_service.render_wrong_number_email(account.full_name, token)
        sent = email_service.send_email(account.email, subject, html)
        email_service.log_communication(
            db,
            account.id,
            "whatsapp_wrong_number_email",
            "sent" if sent.ok else "failed",
            {"previous_phone": phone_e164} if sent.ok else {"previous_phone": phone_e164, "error": sent.error},
        )
    logger.info("Wrong number handled", extra={"context": {"account_id": account.id, "phone": phone_e164}})
    return "wrong_number"
