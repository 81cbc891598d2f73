"""Runs the onboarding state machine against an account and applies its effects."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models.account import Account
from app.models.memory import Memory
from app.services import reply_service
from app.services.alert_service import alert_support_escalation
from app.services.intent_service import classify_focus_choice, classify_plan_finalization
from app.services.message_catalog import get_fallback, get_message
from app.services.onboarding_machine import (
    DeferredStep,
    DeferStepsEffect,
    EscalateSupportEffect,
    OnboardingSnapshot,
    OnboardingState,
    Purpose,
    ReplyEffect,
    ResolveDeferredStepEffect,
    StoreMemoryEffect,
    Transition,
    TurnClassification,
    advance,
    parse_state,
    surface_deferred_step,
)
from app.services.signal_service import SignalReport, analyze_signals, is_calm_moment

logger = get_logger("onboarding_service")

FINALIZATION_STATES = (
    OnboardingState.AWAITING_PLAN_FINALIZATION,
    OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_deferred_steps(account: Account) -> List[DeferredStep]:
    steps = []
    for raw in account.deferred_onboarding_steps or []:
        try:
            step = DeferredStep(raw)
        except ValueError:
            continue
        if step not in steps:
            steps.append(step)
    return steps


def set_deferred_steps(account: Account, steps: Iterable[DeferredStep]) -> None:
    ordered: List[DeferredStep] = []
    for step in steps:
        if step not in ordered:
            ordered.append(step)
    # Reassign so the JSONB column is flagged dirty.
    account.deferred_onboarding_steps = [step.value for step in ordered]


def add_deferred_steps(account: Account, steps: Iterable[DeferredStep]) -> None:
    set_deferred_steps(account, get_deferred_steps(account) + list(steps))


def remove_deferred_step(account: Account, step: DeferredStep) -> None:
    set_deferred_steps(account, [s for s in get_deferred_steps(account) if s != step])


def set_state(account: Account, state: Optional[OnboardingState], now: Optional[datetime] = None) -> None:
    account.whatsapp_state = state.value if state else None
    account.whatsapp_state_updated_at = now or _now()


def ensure_first_touch(db: Session, account: Account, now: Optional[datetime] = None) -> bool:
    """Stamp the first WhatsApp contact; arm plan finalization when no plan is active.

    Failures are logged and never block the reply. Returns True when the state was armed.
    """
    if account.whatsapp_first_touched_at is not None:
        return False
    now = now or _now()
    try:
        with db.begin_nested():
            account.whatsapp_first_touched_at = now
            armed = False
            if account.whatsapp_state is None and not reply_service.has_active_plan(db, account.id):
                set_state(account, OnboardingState.AWAITING_PLAN_FINALIZATION, now)
                armed = True
            db.flush()
    except SQLAlchemyError as e:
        logger.warning(f"First-touch bookkeeping failed for account {account.id}: {e}")
        return False
    if armed:
        logger.info("Plan finalization armed on first contact", extra={"context": {"account_id": account.id}})
    return armed


def build_snapshot(db: Session, account: Account, now: Optional[datetime] = None) -> OnboardingSnapshot:
    state = parse_state(account.whatsapp_state)
    has_plan = reply_service.has_active_plan(db, account.id) if state in FINALIZATION_STATES else False
    escalated = False
    if state == OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT:
        escalated = reply_service.has_recent_purpose(
            db,
            account.id,
            [Purpose.FINALIZATION_ESCALATION],
            timedelta(hours=settings.support_escalation_cooldown_hours),
            now,
        )
    return OnboardingSnapshot(
        state=state,
        has_active_plan=has_plan,
        has_personal_fact=reply_service.has_personal_fact(db, account.id),
        deferred_steps=tuple(get_deferred_steps(account)),
        last_outbound_purpose=reply_service.last_outbound_purpose(db, account.id),
        escalated_recently=escalated,
    )


def classify_turn(snapshot: OnboardingSnapshot, text: str, history: List[dict]) -> TurnClassification:
    signals = analyze_signals(text, history)
    if signals.defers_onboarding:
        return TurnClassification(signals=signals)
    if snapshot.state in FINALIZATION_STATES:
        return TurnClassification(signals=signals, finalization=classify_plan_finalization(text, history))
    if snapshot.state == OnboardingState.AWAITING_ONBOARDING_FOCUS_CHOICE:
        return TurnClassification(signals=signals, focus=classify_focus_choice(text, history))
    return TurnClassification(signals=signals)


def apply_transition(
    db: Session,
    account: Account,
    to_e164: str,
    text: str,
    result: Transition,
    *,
    reply_to_wa_message_id: Optional[str] = None,
    returning: bool = False,
    now: Optional[datetime] = None,
) -> None:
    """State first, then bookkeeping effects, then replies (so replies see the new state)."""
    now = now or _now()
    set_state(account, result.next_state, now)

    replies: List[ReplyEffect] = []
    for effect in result.effects:
        if isinstance(effect, ReplyEffect):
            replies.append(effect)
        elif isinstance(effect, StoreMemoryEffect):
            db.add(
                Memory(
                    account_id=account.id,
                    type=effect.memory_type,
                    content=effect.content,
                    source_type="whatsapp",
                    memory_metadata=dict(effect.metadata),
                )
            )
        elif isinstance(effect, DeferStepsEffect):
            add_deferred_steps(account, effect.steps)
        elif isinstance(effect, ResolveDeferredStepEffect):
            remove_deferred_step(account, effect.step)
        elif isinstance(effect, EscalateSupportEffect):
            alert_support_escalation(account.id, effect.reason, excerpt=(text or "")[:200])
    db.flush()

    for reply in replies:
        if reply.message_key:
            reply_service.send_and_log(
                db,
                account.id,
                to_e164,
                get_message(reply.message_key),
                purpose=reply.purpose,
                reply_to_wa_message_id=reply_to_wa_message_id,
                metadata={"state": account.whatsapp_state},
            )
            continue
        adaptive = None
        if reply.adaptive_flow:
            adaptive = reply_service.AdaptiveFlow(
                flow=reply.adaptive_flow,
                detected_topic=reply.detected_topic,
                deferred_steps=tuple(step.value for step in get_deferred_steps(account)),
            )
        reply_service.reply_with_brain(
            db,
            account,
            to_e164,
            text,
            purpose=reply.purpose,
            directive=reply.directive,
            fallback_text=get_fallback(reply.fallback_purpose or reply.purpose),
            adaptive=adaptive,
            returning=returning,
            reply_to_wa_message_id=reply_to_wa_message_id,
        )


def handle_onboarding_turn(
    db: Session,
    account: Account,
    to_e164: str,
    text: str,
    *,
    reply_to_wa_message_id: Optional[str] = None,
    returning: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    """Advance the onboarding state for this turn. False when no onboarding state is set."""
    now = now or _now()
    snapshot = build_snapshot(db, account, now)
    if snapshot.state is None:
        return False

    history = reply_service.load_history(db, account.id)
    verdict = classify_turn(snapshot, text, history)
    result = advance(snapshot, text, verdict)
    apply_transition(
        db,
        account,
        to_e164,
        text,
        result,
        reply_to_wa_message_id=reply_to_wa_message_id,
        returning=returning,
        now=now,
    )
    logger.info(
        "Onboarding advanced",
        extra={
            "context": {
                "account_id": account.id,
                "from_state": snapshot.state.value,
                "to_state": result.next_state.value if result.next_state else None,
                "urgency": verdict.signals.urgency.value,
            }
        },
    )
    return True


def maybe_surface_deferred_step(
    db: Session,
    account: Account,
    to_e164: str,
    text: str,
    *,
    signals: Optional[SignalReport] = None,
    reply_to_wa_message_id: Optional[str] = None,
    returning: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    """On a calm moment with deferred steps pending, ask one of them inside a normal reply."""
    if account.whatsapp_state is not None:
        return False
    steps = get_deferred_steps(account)
    if not steps:
        return False
    if signals is None:
        signals = analyze_signals(text, reply_service.load_history(db, account.id))
    if not is_calm_moment(text, signals):
        return False
    result = surface_deferred_step(OnboardingSnapshot(state=None, deferred_steps=tuple(steps)))
    if result is None:
        return False
    apply_transition(
        db,
        account,
        to_e164,
        text,
        result,
        reply_to_wa_message_id=reply_to_wa_message_id,
        returning=returning,
        now=now,
    )
    logger.info(
        "Deferred onboarding step surfaced",
        extra={"context": {"account_id": account.id, "step": steps[0].value}},
    )
    return True
