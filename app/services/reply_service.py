"""Reply composition: context assembly, generation, sending and the outbound audit log."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlalchemy import exists
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models.account import Account
from app.models.inbound_event import InboundEvent
from app.models.memory import Memory, ProfileFact
from app.models.outbound_message import OutboundDeliveryFailure, OutboundMessage
from app.models.plan import UserPlan
from app.services import whatsapp_service
from app.services.ai_service import generate_text
from app.services.message_catalog import get_fallback
from app.services.whatsapp_service import SendOutcome

logger = get_logger("reply_service")

HISTORY_LIMIT = 20
MEMORY_LIMIT = 3
MEMORY_MAX_CHARS = 200
RETURNING_USER_AFTER = timedelta(days=3)
ACTIVE_PLAN_STATUSES = ("active", "in_progress")
PERSONAL_FACT_MEMORY_TYPE = "whatsapp_personal_fact"

FLOW_URGENT = "urgent"
FLOW_SERIOUS_TOPIC = "serious_topic"
FLOW_DEFERRED = "deferred"

# profile fact key -> label shown in the style block
STYLE_FACT_LABELS = {
    "tone": "Ton",
    "conversation.tone": "Ton",
    "verbosity": "Longueur",
    "conversation.verbosity": "Longueur",
    "use_emojis": "Emojis",
    "conversation.use_emojis": "Emojis",
}


@dataclass(frozen=True)
class AdaptiveFlow:
    flow: str
    detected_topic: Optional[str] = None
    deferred_steps: tuple = ()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def load_history(db: Session, account_id, limit: int = HISTORY_LIMIT) -> List[dict]:
    """Last ``limit`` WhatsApp turns, oldest first, as chat messages."""
    inbound = (
        db.query(InboundEvent)
        .filter(InboundEvent.account_id == account_id)
        .order_by(InboundEvent.received_at.desc())
        .limit(limit)
        .all()
    )
    outbound = (
        db.query(OutboundMessage)
        .filter(OutboundMessage.account_id == account_id, OutboundMessage.status != "failed")
        .order_by(OutboundMessage.created_at.desc())
        .limit(limit)
        .all()
    )
    turns = [(event.received_at, "user", event.text or event.interactive_title or "") for event in inbound]
    turns += [(message.created_at, "assistant", message.content) for message in outbound]
    turns = [turn for turn in turns if turn[2]]
    turns.sort(key=lambda turn: turn[0] or datetime.min.replace(tzinfo=timezone.utc))
    return [{"role": role, "content": content} for _, role, content in turns[-limit:]]


def load_profile_facts(db: Session, account_id) -> dict:
    rows = db.query(ProfileFact).filter(ProfileFact.account_id == account_id).all()
    return {row.key: row.value for row in rows if row.value is not None}


def load_recent_memories(db: Session, account_id, limit: int = MEMORY_LIMIT) -> List[str]:
    rows = (
        db.query(Memory)
        .filter(Memory.account_id == account_id)
        .order_by(Memory.created_at.desc())
        .limit(limit)
        .all()
    )
    memories = []
    for row in rows:
        content = (row.content or "").strip()
        if not content:
            continue
        if len(content) > MEMORY_MAX_CHARS:
            content = content[:MEMORY_MAX_CHARS].rstrip() + "…"
        memories.append(content)
    return memories


def has_active_plan(db: Session, account_id) -> bool:
    row = (
        db.query(UserPlan.id)
        .filter(UserPlan.account_id == account_id, UserPlan.status.in_(ACTIVE_PLAN_STATUSES))
        .first()
    )
    return row is not None


def has_personal_fact(db: Session, account_id) -> bool:
    row = (
        db.query(Memory.id)
        .filter(Memory.account_id == account_id, Memory.type == PERSONAL_FACT_MEMORY_TYPE)
        .first()
    )
    return row is not None


def is_returning_user(previous_inbound_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if previous_inbound_at is None:
        return False
    return (now or _now()) - previous_inbound_at >= RETURNING_USER_AFTER


def has_recent_purpose(
    db: Session,
    account_id,
    purposes: Iterable[str],
    within: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """Cooldown check: was a message with one of these purpose tags sent, and not reported failed, inside the window?"""
    since = (now or _now()) - within
    reported_failed = exists().where(
        OutboundDeliveryFailure.provider_message_id == OutboundMessage.provider_message_id
    )
    row = (
        db.query(OutboundMessage.id)
        .filter(
            OutboundMessage.account_id == account_id,
            OutboundMessage.purpose.in_(list(purposes)),
            OutboundMessage.status != "failed",
            ~reported_failed,
            OutboundMessage.created_at >= since,
        )
        .first()
    )
    return row is not None


def last_outbound_purpose(db: Session, account_id) -> Optional[str]:
    row = (
        db.query(OutboundMessage.purpose)
        .filter(OutboundMessage.account_id == account_id)
        .order_by(OutboundMessage.created_at.desc())
        .first()
    )
    return row[0] if row else None


def _plan_line(plan_active: Optional[bool]) -> str:
    if plan_active is True:
        return (
            "PLAN: un plan actif est détecté. Tu peux aider à exécuter la prochaine action (petit pas), "
            "pas à refondre le plan complet."
        )
    if plan_active is False:
        return (
            "PLAN: aucun plan actif détecté. Ne prétends pas voir un plan. "
            "Ne propose pas de créer ou modifier un plan complet sur WhatsApp."
        )
    return "PLAN: statut incertain."


def build_style_block(profile_facts: dict) -> str:
    lines = []
    seen_labels = set()
    for key, label in STYLE_FACT_LABELS.items():
        if label in seen_labels or key not in profile_facts:
            continue
        value = profile_facts[key]
        if isinstance(value, bool):
            value = "oui" if value else "non"
        lines.append(f"- {label}: {value}")
        seen_labels.add(label)
    if not lines:
        return ""
    return "STYLE PERSONNALISÉ (adapte-toi):\n" + "\n".join(lines)


def build_onboarding_context(
    *,
    state: Optional[str],
    plan_active: Optional[bool],
    profile_facts: Optional[dict] = None,
    memories: Optional[List[str]] = None,
    returning: bool = False,
) -> str:
    """System context shared by every WhatsApp reply."""
    sections = [
        "=== WHATSAPP MODE (CONTEXT) ===",
        f"STATE: {state or 'none'}",
        _plan_line(plan_active),
        "\n".join(
            [
                "RÈGLES CRITIQUES:",
                "- WhatsApp: messages courts, pas de markdown, pas de **gras**, 1 question max.",
                "- Tu ne vois pas l'écran de l'utilisateur: n'invente jamais de boutons, menus ou positions.",
                "- N'invente aucune URL. Si besoin, donne exactement ces informations:",
                f"  Site: {settings.site_url}",
                f"  Support: {settings.support_email}",
                "- Si ça tourne en rond (plan non visible, latence), propose le support et avance hors-app.",
            ]
        ),
    ]
    style = build_style_block(profile_facts or {})
    if style:
        sections.append(style)
    if memories:
        sections.append("SOUVENIRS RÉCENTS:\n" + "\n".join(f"- {m}" for m in memories))
    if returning:
        sections.append(
            "USER REVENANT: l'utilisateur n'a pas écrit depuis plusieurs jours. "
            "Accueille-le chaleureusement (ex: \"Content de te retrouver\") sans lui reprocher son absence."
        )
    return "\n\n".join(sections)


def build_adaptive_context(adaptive: AdaptiveFlow) -> str:
    if adaptive.flow == FLOW_URGENT:
        return "\n".join(
            [
                "URGENCE DÉTECTÉE:",
                "- L'utilisateur traverse un moment difficile. Priorité absolue: écoute et soutien.",
                "- SKIP la question motivation et toute question d'onboarding.",
                "- Si danger immédiat, encourage à appeler le 15 ou le 3114 (prévention suicide).",
            ]
        )
    if adaptive.flow == FLOW_SERIOUS_TOPIC:
        topic = adaptive.detected_topic or "un sujet important"
        return "\n".join(
            [
                f"SUJET SÉRIEUX DÉTECTÉ: {topic}",
                "- Accueille le sujet avec sérieux, pose une seule question ouverte.",
                "- Ne relance pas l'onboarding dans ce message.",
            ]
        )
    if adaptive.flow == FLOW_DEFERRED:
        steps = ", ".join(adaptive.deferred_steps) or "aucune"
        return "\n".join(
            [
                f"ÉTAPES DIFFÉRÉES: {steps}",
                "- Ces questions ont été mises de côté plus tôt. C'est un bon moment pour les poser,",
                "  une seule à la fois, intégrée naturellement à ta réponse.",
            ]
        )
    return ""


def build_reply_context(
    db: Session,
    account: Account,
    *,
    directive: Optional[str] = None,
    adaptive: Optional[AdaptiveFlow] = None,
    returning: bool = False,
) -> str:
    plan_active: Optional[bool]
    try:
        plan_active = has_active_plan(db, account.id)
    except SQLAlchemyError as e:
        logger.warning(f"Plan lookup failed while building context: {e}")
        plan_active = None
    context = build_onboarding_context(
        state=account.whatsapp_state,
        plan_active=plan_active,
        profile_facts=load_profile_facts(db, account.id),
        memories=load_recent_memories(db, account.id),
        returning=returning,
    )
    if adaptive:
        adaptive_block = build_adaptive_context(adaptive)
        if adaptive_block:
            context += "\n\n" + adaptive_block
    if directive:
        context += "\n\nCONSIGNE POUR CE MESSAGE:\n" + directive
    return context


def send_and_log(
    db: Session,
    account_id,
    to_e164: str,
    content: str,
    *,
    purpose: str,
    is_proactive: bool = False,
    reply_to_wa_message_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> SendOutcome:
    """Send through the single primitive and append the audit row."""
    outcome = whatsapp_service.send_text(to_e164, content)
    tracking_id = uuid.uuid4().hex
    db.add(
        OutboundMessage(
            account_id=account_id,
            to_e164=to_e164,
            content=content,
            provider_message_id=outcome.provider_message_id,
            tracking_id=tracking_id,
            purpose=purpose,
            is_proactive=is_proactive,
            reply_to_wa_message_id=reply_to_wa_message_id,
            status=outcome.status,
            message_metadata={**(metadata or {}), **({"reason": outcome.reason} if outcome.reason else {})},
        )
    )
    db.flush()
    logger.info(
        "Outbound logged",
        extra={
            "context": {
                "account_id": account_id,
                "purpose": purpose,
                "status": outcome.status,
                "tracking_id": tracking_id,
            }
        },
    )
    return outcome


def reply_with_brain(
    db: Session,
    account: Account,
    to_e164: str,
    inbound_text: str,
    *,
    purpose: str,
    directive: Optional[str] = None,
    fallback_text: Optional[str] = None,
    adaptive: Optional[AdaptiveFlow] = None,
    returning: bool = False,
    reply_to_wa_message_id: Optional[str] = None,
    temperature: float = 0.7,
) -> SendOutcome:
    """Generate a contextual reply (catalogue fallback on failure) and send it."""
    context = build_reply_context(db, account, directive=directive, adaptive=adaptive, returning=returning)
    history = load_history(db, account.id)
    content = generate_text(
        context,
        inbound_text,
        temperature=temperature,
        history=history,
        timing_context={"account_id": str(account.id), "purpose": purpose},
    )
    used_fallback = False
    if not content:
        content = fallback_text or get_fallback(purpose)
        used_fallback = True
    return send_and_log(
        db,
        account.id,
        to_e164,
        content,
        purpose=purpose,
        reply_to_wa_message_id=reply_to_wa_message_id,
        metadata={"fallback": used_fallback, "state": account.whatsapp_state},
    )
