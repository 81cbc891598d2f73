"""Durable record of assistant-initiated invitations awaiting a reply.

At most one ``pending`` row per (account, kind) is enforced by a partial
unique index; every status change is a conditional update filtered on
``status = 'pending'`` so two concurrent deliveries cannot both resolve the
same invitation.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models.account import Account
from app.models.pending_action import PendingAction, ScheduledCheckin
from app.services import reply_service
from app.services.ai_service import generate_text
from app.services.intent_service import BilanIntent, classify_bilan_reply
from app.services.message_catalog import get_message
from app.services.phrase_service import is_decline_reply, is_echo_yes, is_later_reply, is_yes_reply
from app.services.result import Result

logger = get_logger("pending_action_service")

CHECKIN_SNOOZE = timedelta(minutes=10)
ECHO_TEMPERATURE = 0.7


class PendingKind(str, Enum):
    SCHEDULED_CHECKIN = "scheduled_checkin"
    MEMORY_ECHO = "memory_echo"
    BILAN_RESCHEDULE = "bilan_reschedule"


class PendingStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_pending_action(
    db: Session,
    account_id,
    kind: PendingKind,
    payload: Optional[dict] = None,
    scheduled_checkin_id=None,
) -> Result[uuid.UUID]:
    """Insert-if-absent. ``already_pending`` when a pending row of this kind exists."""
    pending_id = uuid.uuid4()
    stmt = (
        insert(PendingAction)
        .values(
            id=pending_id,
            account_id=account_id,
            kind=kind.value,
            status=PendingStatus.PENDING.value,
            payload=payload or {},
            scheduled_checkin_id=scheduled_checkin_id,
        )
        .on_conflict_do_nothing(
            index_elements=["account_id", "kind"],
            index_where=text("status = 'pending'"),
        )
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        logger.info(f"Pending action already open: account={account_id}, kind={kind.value}")
        return Result.failure("A pending action of this kind already exists", "already_pending")
    logger.info(f"Pending action created: account={account_id}, kind={kind.value}, id={pending_id}")
    return Result.success(pending_id)


def mark_pending(
    db: Session,
    pending_id,
    status: PendingStatus,
    *,
    payload: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Conditional transition out of ``pending``. False when another delivery won."""
    values: dict = {"status": status.value}
    if status != PendingStatus.PENDING:
        values["processed_at"] = now or _now()
    if payload is not None:
        values["payload"] = payload
    stmt = (
        update(PendingAction)
        .where(PendingAction.id == pending_id, PendingAction.status == PendingStatus.PENDING.value)
        .values(**values)
    )
    return db.execute(stmt).rowcount == 1


def _is_expired(row: PendingAction, now: datetime) -> bool:
    if row.created_at is None:
        return False
    return row.created_at < now - timedelta(hours=settings.pending_action_expiry_hours)


def fetch_latest_pending(
    db: Session, account_id, kind: PendingKind, now: Optional[datetime] = None
) -> Optional[PendingAction]:
    """Latest open row of ``kind``; stale rows are expired on read and ignored."""
    now = now or _now()
    row = (
        db.query(PendingAction)
        .filter(
            PendingAction.account_id == account_id,
            PendingAction.kind == kind.value,
            PendingAction.status == PendingStatus.PENDING.value,
        )
        .order_by(PendingAction.created_at.desc())
        .first()
    )
    if row is None:
        return None
    if _is_expired(row, now):
        mark_pending(db, row.id, PendingStatus.EXPIRED, now=now)
        logger.info(f"Pending action expired on read: id={row.id}, kind={kind.value}")
        return None
    return row


def list_open_pending(db: Session, account_id, now: Optional[datetime] = None) -> List[PendingAction]:
    """Open rows of every kind, newest first."""
    now = now or _now()
    rows = (
        db.query(PendingAction)
        .filter(PendingAction.account_id == account_id, PendingAction.status == PendingStatus.PENDING.value)
        .order_by(PendingAction.created_at.desc())
        .all()
    )
    open_rows = []
    for row in rows:
        if _is_expired(row, now):
            mark_pending(db, row.id, PendingStatus.EXPIRED, now=now)
            continue
        open_rows.append(row)
    return open_rows


def resolve_latest(
    db: Session, account_id, kind: PendingKind, outcome: PendingStatus, now: Optional[datetime] = None
) -> Result[PendingAction]:
    row = fetch_latest_pending(db, account_id, kind, now)
    if row is None:
        return Result.failure("No pending action", "none")
    if not mark_pending(db, row.id, outcome, now=now):
        return Result.failure("Pending action already resolved", "none")
    return Result.success(row)


def format_delay(minutes: int) -> str:
    """Human French phrasing for a delay: "dans 45 min", "dans 2h30", "dans 2 jours"."""
    if minutes < 60:
        return f"dans {minutes} min"
    if minutes < 24 * 60:
        hours, rest = divmod(minutes, 60)
        return f"dans {hours}h{rest:02d}" if rest else f"dans {hours}h"
    days = round(minutes / (24 * 60))
    return "demain" if days <= 1 else f"dans {days} jours"


def _send(db: Session, account: Account, to_e164: str, content: str, purpose: str, reply_to: Optional[str]) -> None:
    reply_service.send_and_log(
        db, account.id, to_e164, content, purpose=purpose, reply_to_wa_message_id=reply_to
    )


def _handle_checkin(
    db: Session, account: Account, to_e164: str, text_in: str, row: PendingAction, now: datetime, reply_to
) -> bool:
    checkin = None
    if row.scheduled_checkin_id:
        checkin = db.query(ScheduledCheckin).filter(ScheduledCheckin.id == row.scheduled_checkin_id).first()

    if is_yes_reply(text_in):
        if not mark_pending(db, row.id, PendingStatus.DONE, now=now):
            return False
        draft = (row.payload or {}).get("draft_message") or (checkin.draft_message if checkin else None)
        if isinstance(draft, str) and draft.strip():
            _send(db, account, to_e164, draft.strip(), "scheduled_checkin_draft", reply_to)
        if checkin:
            checkin.status = "sent"
            checkin.processed_at = now
        return True

    if is_later_reply(text_in):
        if not mark_pending(db, row.id, PendingStatus.CANCELLED, now=now):
            return False
        if checkin:
            checkin.status = "pending"
            checkin.scheduled_for = now + CHECKIN_SNOOZE
        _send(db, account, to_e164, get_message("pending.checkin_later"), "scheduled_checkin_later", reply_to)
        return True

    return False


def build_echo_prompt(payload: dict) -> str:
    strategy = payload.get("strategy") or "rappel bienveillant"
    data = json.dumps(payload.get("data") or {}, ensure_ascii=False, default=str)
    return (
        "Tu es \"L'Archiviste\", une facette de Sophia.\n"
        f"Stratégie: {strategy}\n"
        f"Données: {data}\n\n"
        "Génère un message bref, impactant et bienveillant qui reconnecte l'utilisateur à cet élément du passé. "
        "Pas de markdown."
    )


def _handle_echo(
    db: Session, account: Account, to_e164: str, text_in: str, row: PendingAction, now: datetime, reply_to
) -> bool:
    if is_later_reply(text_in) or is_decline_reply(text_in):
        if not mark_pending(db, row.id, PendingStatus.CANCELLED, now=now):
            return False
        _send(db, account, to_e164, get_message("pending.echo_later"), "memory_echo_later", reply_to)
        return True

    if is_echo_yes(text_in):
        if not mark_pending(db, row.id, PendingStatus.DONE, now=now):
            return False
        _send(db, account, to_e164, get_message("pending.echo_intro"), "memory_echo_intro", reply_to)
        echo = generate_text(
            build_echo_prompt(row.payload or {}),
            "Génère le message d'écho.",
            temperature=ECHO_TEMPERATURE,
            stage="echo_llm_ms",
            timing_context={"account_id": str(account.id)},
        )
        _send(db, account, to_e164, echo or get_message("pending.echo_fallback"), "memory_echo", reply_to)
        return True

    return False


def _handle_bilan_reschedule(
    db: Session, account: Account, to_e164: str, text_in: str, row: PendingAction, now: datetime, reply_to
) -> bool:
    if is_decline_reply(text_in):
        if not mark_pending(db, row.id, PendingStatus.CANCELLED, now=now):
            return False
        _send(db, account, to_e164, get_message("pending.bilan_declined"), "bilan_reschedule_declined", reply_to)
        return True

    history = reply_service.load_history(db, account.id)
    classification = classify_bilan_reply(text_in, history, now=now)

    if classification.intent == BilanIntent.ACCEPT:
        if not mark_pending(db, row.id, PendingStatus.DONE, now=now):
            return False
        reply_service.reply_with_brain(
            db,
            account,
            to_e164,
            text_in,
            purpose="daily_bilan_kickoff_ai",
            directive="L'utilisateur est prêt pour son bilan du soir. Lance-le avec une première question simple.",
            reply_to_wa_message_id=reply_to,
        )
        return True

    if classification.intent == BilanIntent.DEFER and classification.delay_minutes:
        checkin = ScheduledCheckin(
            account_id=account.id,
            kind="bilan",
            scheduled_for=now + timedelta(minutes=classification.delay_minutes),
            status="pending",
        )
        db.add(checkin)
        db.flush()
        payload = {**(row.payload or {}), "delay_minutes": classification.delay_minutes}
        if not mark_pending(db, row.id, PendingStatus.DONE, payload=payload, now=now):
            db.delete(checkin)
            return False
        _send(
            db,
            account,
            to_e164,
            get_message("pending.bilan_rescheduled", when=format_delay(classification.delay_minutes)),
            "bilan_rescheduled",
            reply_to,
        )
        logger.info(
            "Bilan rescheduled",
            extra={"context": {"account_id": account.id, "delay_minutes": classification.delay_minutes}},
        )
        return True

    retries = int((row.payload or {}).get("retries") or 0) + 1
    payload = {**(row.payload or {}), "retries": retries}
    if retries >= settings.bilan_reschedule_max_retries:
        mark_pending(db, row.id, PendingStatus.EXPIRED, payload=payload, now=now)
        logger.info(f"Bilan reschedule gave up after {retries} unparsed replies: account={account.id}")
        return False

    stmt = (
        update(PendingAction)
        .where(PendingAction.id == row.id, PendingAction.status == PendingStatus.PENDING.value)
        .values(payload=payload)
    )
    if db.execute(stmt).rowcount != 1:
        return False
    _send(db, account, to_e164, get_message("pending.bilan_reschedule_retry"), "bilan_reschedule_retry", reply_to)
    return True


_HANDLERS = {
    PendingKind.SCHEDULED_CHECKIN.value: _handle_checkin,
    PendingKind.MEMORY_ECHO.value: _handle_echo,
    PendingKind.BILAN_RESCHEDULE.value: _handle_bilan_reschedule,
}


def handle_pending_reply(
    db: Session,
    account: Account,
    to_e164: str,
    text_in: str,
    *,
    reply_to_wa_message_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Resolve the newest open invitation this reply answers.

    Returns False when nothing matched so the caller falls through to the
    next handler; a bare "oui" with no open invitation is never consumed here.
    """
    now = now or _now()
    for row in list_open_pending(db, account.id, now):
        handler = _HANDLERS.get(row.kind)
        if handler is None:
            logger.warning(f"Unknown pending action kind: {row.kind}")
            continue
        if handler(db, account, to_e164, text_in, row, now, reply_to_wa_message_id):
            logger.info(
                "Pending action resolved",
                extra={"context": {"account_id": account.id, "kind": row.kind, "pending_id": row.id}},
            )
            return True
    return False
