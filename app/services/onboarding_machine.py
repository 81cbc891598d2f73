"""WhatsApp onboarding state machine.

Pure transitions: every handler takes the current state, the user's text,
a snapshot of the account and the classifier verdicts for this turn, and
returns the next state plus a list of effects. Nothing here touches the
database or the network; ``onboarding_service`` applies the effects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union

from app.services.intent_service import FinalizationStatus, FocusChoice
from app.services.phrase_service import (
    extract_after_done_phrase,
    mentions_tiredness,
    normalize_for_matching,
    strip_first_motivation_score,
)
from app.services.signal_service import SignalReport, Urgency

MOTIVATION_MEMORY_TYPE = "whatsapp_motivation_score"
PERSONAL_FACT_MEMORY_TYPE = "whatsapp_personal_fact"
MIN_PIGGYBACK_FACT_CHARS = 3


class OnboardingState(str, Enum):
    AWAITING_PLAN_FINALIZATION = "awaiting_plan_finalization"
    AWAITING_PLAN_FINALIZATION_SUPPORT = "awaiting_plan_finalization_support"
    AWAITING_ONBOARDING_FOCUS_CHOICE = "awaiting_onboarding_focus_choice"
    AWAITING_PLAN_MOTIVATION = "awaiting_plan_motivation"
    AWAITING_PERSONAL_FACT = "awaiting_personal_fact"
    AWAITING_DEFERRED_MOTIVATION = "awaiting_deferred_motivation"
    AWAITING_DEFERRED_PERSONAL_FACT = "awaiting_deferred_personal_fact"


class DeferredStep(str, Enum):
    MOTIVATION = "motivation"
    PERSONAL_FACT = "personal_fact"


class Purpose:
    """Stable purpose tags written to the outbound audit log."""

    FINALIZATION_SOFT_REPLY = "awaiting_plan_finalization_soft_reply"
    FINALIZATION_CLARIFY = "awaiting_plan_finalization_clarify"
    FINALIZATION_STILL_MISSING = "awaiting_plan_finalization_still_missing_soft"
    FINALIZATION_ESCALATION = "awaiting_plan_finalization_support_escalation"
    FOCUS_CHOICE_PROMPT = "awaiting_onboarding_focus_choice_prompt"
    FOCUS_CHOICE_REASK = "awaiting_onboarding_focus_choice_reask"
    FOCUS_OTHER = "awaiting_onboarding_focus_choice_other"
    MOTIVATION_PROMPT = "awaiting_plan_motivation_prompt_soft"
    MOTIVATION_RETRY = "awaiting_plan_motivation_soft_retry"
    MOTIVATION_ASK_FACT = "awaiting_plan_motivation_score_ask_fact"
    MOTIVATION_KICKOFF = "awaiting_plan_motivation_score_kickoff"
    PERSONAL_FACT_ACK = "awaiting_personal_fact_ack"
    PERSONAL_FACT_FOLLOWUP = "awaiting_personal_fact_followup"
    URGENT_SUPPORT = "onboarding_urgent_support"
    SERIOUS_TOPIC = "onboarding_serious_topic"
    DEFERRED_PROMPT = "deferred_step_prompt"
    DEFERRED_CAPTURED = "deferred_step_captured"


VALID_TRANSITIONS = {
    # Entry points: first contact, opt-in acceptance, deferred-step surfacing.
    None: [
        OnboardingState.AWAITING_PLAN_FINALIZATION,
        OnboardingState.AWAITING_PLAN_MOTIVATION,
        OnboardingState.AWAITING_DEFERRED_MOTIVATION,
        OnboardingState.AWAITING_DEFERRED_PERSONAL_FACT,
    ],
    OnboardingState.AWAITING_PLAN_FINALIZATION: [
        OnboardingState.AWAITING_PLAN_FINALIZATION,
        OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT,
        OnboardingState.AWAITING_ONBOARDING_FOCUS_CHOICE,
        None,
    ],
    OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT: [
        OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT,
        OnboardingState.AWAITING_ONBOARDING_FOCUS_CHOICE,
        None,
    ],
    OnboardingState.AWAITING_ONBOARDING_FOCUS_CHOICE: [
        OnboardingState.AWAITING_ONBOARDING_FOCUS_CHOICE,
        OnboardingState.AWAITING_PLAN_MOTIVATION,
        None,
    ],
    OnboardingState.AWAITING_PLAN_MOTIVATION: [
        OnboardingState.AWAITING_PLAN_MOTIVATION,
        OnboardingState.AWAITING_PERSONAL_FACT,
        None,
    ],
    OnboardingState.AWAITING_PERSONAL_FACT: [OnboardingState.AWAITING_PERSONAL_FACT, None],
    OnboardingState.AWAITING_DEFERRED_MOTIVATION: [None],
    OnboardingState.AWAITING_DEFERRED_PERSONAL_FACT: [None],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: Optional[OnboardingState], to_state: Optional[OnboardingState]):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {_label(from_state)} -> {_label(to_state)}")


def _label(state: Optional[OnboardingState]) -> str:
    return state.value if state else "none"


def can_transition(from_state: Optional[OnboardingState], to_state: Optional[OnboardingState]) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def transition(
    from_state: Optional[OnboardingState], to_state: Optional[OnboardingState]
) -> Optional[OnboardingState]:
    """Validate a state change. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def parse_state(value: Optional[str]) -> Optional[OnboardingState]:
    if not value:
        return None
    try:
        return OnboardingState(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class ReplyEffect:
    """Send one message. ``message_key`` sends fixed catalogue copy; otherwise the reply is generated."""

    purpose: str
    directive: Optional[str] = None
    message_key: Optional[str] = None
    fallback_purpose: Optional[str] = None
    adaptive_flow: Optional[str] = None
    detected_topic: Optional[str] = None


@dataclass(frozen=True)
class StoreMemoryEffect:
    memory_type: str
    content: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class DeferStepsEffect:
    steps: Tuple[DeferredStep, ...]


@dataclass(frozen=True)
class ResolveDeferredStepEffect:
    step: DeferredStep


@dataclass(frozen=True)
class EscalateSupportEffect:
    reason: str


Effect = Union[ReplyEffect, StoreMemoryEffect, DeferStepsEffect, ResolveDeferredStepEffect, EscalateSupportEffect]


@dataclass(frozen=True)
class Transition:
    next_state: Optional[OnboardingState]
    effects: Tuple[Effect, ...] = ()


@dataclass(frozen=True)
class OnboardingSnapshot:
    state: Optional[OnboardingState]
    has_active_plan: bool = False
    has_personal_fact: bool = False
    deferred_steps: Tuple[DeferredStep, ...] = ()
    last_outbound_purpose: Optional[str] = None
    escalated_recently: bool = False


@dataclass(frozen=True)
class TurnClassification:
    """Classifier verdicts for this turn; only the one relevant to the state is set."""

    signals: SignalReport = field(default_factory=SignalReport)
    finalization: Optional[FinalizationStatus] = None
    focus: Optional[FocusChoice] = None


def remaining_steps(snapshot: OnboardingSnapshot) -> Tuple[DeferredStep, ...]:
    state = snapshot.state
    if state in (OnboardingState.AWAITING_PERSONAL_FACT, OnboardingState.AWAITING_DEFERRED_PERSONAL_FACT):
        return (DeferredStep.PERSONAL_FACT,)
    if state == OnboardingState.AWAITING_DEFERRED_MOTIVATION:
        return (DeferredStep.MOTIVATION,)
    steps = [DeferredStep.MOTIVATION]
    if not snapshot.has_personal_fact:
        steps.append(DeferredStep.PERSONAL_FACT)
    return tuple(steps)


def _exit_for_signal(snapshot: OnboardingSnapshot, signals: SignalReport) -> Transition:
    if signals.urgency == Urgency.URGENT:
        reply = ReplyEffect(
            purpose=Purpose.URGENT_SUPPORT,
            directive="Réponds avec chaleur et présence. Aucune question d'onboarding.",
            adaptive_flow="urgent",
        )
    else:
        reply = ReplyEffect(
            purpose=Purpose.SERIOUS_TOPIC,
            directive="Accueille le sujet et pose une seule question ouverte.",
            adaptive_flow="serious_topic",
            detected_topic=signals.detected_topic,
        )
    return Transition(None, (DeferStepsEffect(remaining_steps(snapshot)), reply))


def _focus_choice_prompt() -> ReplyEffect:
    return ReplyEffect(
        purpose=Purpose.FOCUS_CHOICE_PROMPT,
        directive=(
            "Le plan est bien actif. Félicite brièvement, puis demande s'il préfère commencer "
            "par son plan ou parler d'autre chose d'abord."
        ),
    )


def _piggyback_fact(text: str) -> Tuple[Effect, ...]:
    fact = extract_after_done_phrase(text)
    if len(fact) < MIN_PIGGYBACK_FACT_CHARS:
        return ()
    return (StoreMemoryEffect(PERSONAL_FACT_MEMORY_TYPE, fact, {"source": "plan_finalization"}),)


def _on_plan_finalization(snapshot: OnboardingSnapshot, text: str, verdict: TurnClassification) -> Transition:
    status = verdict.finalization or FinalizationStatus.NOT_DONE
    state = OnboardingState.AWAITING_PLAN_FINALIZATION

    if status == FinalizationStatus.UNCERTAIN:
        if snapshot.last_outbound_purpose == Purpose.FINALIZATION_CLARIFY:
            return Transition(state, (ReplyEffect(purpose=Purpose.FINALIZATION_SOFT_REPLY),))
        return Transition(
            state,
            (ReplyEffect(purpose=Purpose.FINALIZATION_CLARIFY, message_key="onboarding.finalization_clarify"),),
        )

    if status == FinalizationStatus.DONE:
        facts = _piggyback_fact(text)
        if snapshot.has_active_plan:
            return Transition(OnboardingState.AWAITING_ONBOARDING_FOCUS_CHOICE, facts + (_focus_choice_prompt(),))
        return Transition(
            OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT,
            facts
            + (
                ReplyEffect(
                    purpose=Purpose.FINALIZATION_STILL_MISSING,
                    directive=(
                        "Il dit avoir fini mais aucun plan actif n'est visible. Propose un seul essai simple "
                        "(recharger la page puis valider le plan) et demande de te redire quand c'est fait."
                    ),
                ),
            ),
        )

    return Transition(
        state,
        (
            ReplyEffect(
                purpose=Purpose.FINALIZATION_SOFT_REPLY,
                directive="Il n'a pas encore finalisé son plan. Réponds à son message, sans insister.",
            ),
        ),
    )


def _on_finalization_support(snapshot: OnboardingSnapshot, text: str, verdict: TurnClassification) -> Transition:
    status = verdict.finalization or FinalizationStatus.NOT_DONE
    state = OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT

    if status == FinalizationStatus.DONE:
        facts = _piggyback_fact(text)
        if snapshot.has_active_plan:
            return Transition(OnboardingState.AWAITING_ONBOARDING_FOCUS_CHOICE, facts + (_focus_choice_prompt(),))
        if not snapshot.escalated_recently:
            return Transition(
                state,
                facts
                + (
                    EscalateSupportEffect("plan_not_visible_after_retry"),
                    ReplyEffect(purpose=Purpose.FINALIZATION_ESCALATION, message_key="onboarding.support_escalation"),
                ),
            )
        return Transition(
            state,
            facts
            + (
                ReplyEffect(
                    purpose=Purpose.FINALIZATION_STILL_MISSING,
                    directive="Le support est déjà prévenu. Rassure et continue la conversation hors-app.",
                ),
            ),
        )

    return Transition(
        state,
        (
            ReplyEffect(
                purpose=Purpose.FINALIZATION_SOFT_REPLY,
                directive="Le plan n'est pas encore visible. Réponds à son message sans insister.",
            ),
        ),
    )


def _motivation_prompt() -> ReplyEffect:
    return ReplyEffect(
        purpose=Purpose.MOTIVATION_PROMPT,
        directive="Demande, en une phrase, sa motivation pour ce plan sur une échelle de 0 à 10.",
    )


def _on_focus_choice(snapshot: OnboardingSnapshot, text: str, verdict: TurnClassification) -> Transition:
    choice = verdict.focus or FocusChoice.UNCLEAR
    if choice == FocusChoice.PLAN:
        return Transition(OnboardingState.AWAITING_PLAN_MOTIVATION, (_motivation_prompt(),))
    if choice == FocusChoice.OTHER:
        return Transition(
            None,
            (
                DeferStepsEffect(remaining_steps(snapshot)),
                ReplyEffect(
                    purpose=Purpose.FOCUS_OTHER,
                    directive="Il veut parler d'autre chose: réponds librement à son message.",
                ),
            ),
        )
    return Transition(
        OnboardingState.AWAITING_ONBOARDING_FOCUS_CHOICE,
        (ReplyEffect(purpose=Purpose.FOCUS_CHOICE_REASK, message_key="onboarding.focus_choice_reask"),),
    )


def _score_captured(score: int, rest: str, snapshot: OnboardingSnapshot, extra: Tuple[Effect, ...] = ()) -> Transition:
    store = StoreMemoryEffect(MOTIVATION_MEMORY_TYPE, str(score), {"score": score})
    note = f" Il a aussi écrit: \"{rest}\"." if rest else ""
    if snapshot.has_personal_fact:
        return Transition(
            None,
            (store,)
            + extra
            + (
                ReplyEffect(
                    purpose=Purpose.MOTIVATION_KICKOFF,
                    directive=f"Motivation notée: {score}/10.{note} Remercie et lance la conversation sur le plan.",
                ),
            ),
        )
    return Transition(
        OnboardingState.AWAITING_PERSONAL_FACT,
        (store,)
        + extra
        + (
            ReplyEffect(
                purpose=Purpose.MOTIVATION_ASK_FACT,
                directive=(
                    f"Motivation notée: {score}/10.{note} Remercie puis demande un seul fait personnel "
                    "simple (métier, passion, rythme de vie)."
                ),
            ),
        ),
    )


def _on_motivation(snapshot: OnboardingSnapshot, text: str, verdict: TurnClassification) -> Transition:
    score, rest = strip_first_motivation_score(text)
    if score is not None:
        return _score_captured(score, rest, snapshot)

    if snapshot.last_outbound_purpose != Purpose.MOTIVATION_RETRY:
        return Transition(
            OnboardingState.AWAITING_PLAN_MOTIVATION,
            (ReplyEffect(purpose=Purpose.MOTIVATION_RETRY, message_key="onboarding.motivation_retry"),),
        )

    # Second miss: park the question and move on.
    defer = DeferStepsEffect((DeferredStep.MOTIVATION,))
    if snapshot.has_personal_fact:
        return Transition(
            None,
            (
                defer,
                ReplyEffect(
                    purpose=Purpose.MOTIVATION_KICKOFF,
                    directive="Laisse tomber le chiffre, réponds à son message.",
                ),
            ),
        )
    return Transition(
        OnboardingState.AWAITING_PERSONAL_FACT,
        (
            defer,
            ReplyEffect(
                purpose=Purpose.MOTIVATION_ASK_FACT,
                directive="Ne redemande pas de chiffre. Demande un seul fait personnel simple (métier, passion).",
            ),
        ),
    )


def _fact_captured(text: str, extra: Tuple[Effect, ...] = ()) -> Transition:
    fact = text.strip()
    ack_key = "onboarding.personal_fact_ack_tired" if mentions_tiredness(fact) else "onboarding.personal_fact_ack"
    return Transition(
        None,
        (StoreMemoryEffect(PERSONAL_FACT_MEMORY_TYPE, fact, {"source": "onboarding"}),)
        + extra
        + (
            ReplyEffect(purpose=Purpose.PERSONAL_FACT_ACK, message_key=ack_key),
            ReplyEffect(purpose=Purpose.PERSONAL_FACT_FOLLOWUP, message_key="onboarding.personal_fact_followup"),
        ),
    )


def _on_personal_fact(snapshot: OnboardingSnapshot, text: str, verdict: TurnClassification) -> Transition:
    if not normalize_for_matching(text):
        return Transition(
            OnboardingState.AWAITING_PERSONAL_FACT,
            (
                ReplyEffect(
                    purpose=Purpose.MOTIVATION_ASK_FACT, directive="Redemande gentiment un fait personnel simple."
                ),
            ),
        )
    return _fact_captured(text, (ResolveDeferredStepEffect(DeferredStep.PERSONAL_FACT),))


def _on_deferred_motivation(snapshot: OnboardingSnapshot, text: str, verdict: TurnClassification) -> Transition:
    resolved = (ResolveDeferredStepEffect(DeferredStep.MOTIVATION),)
    score, rest = strip_first_motivation_score(text)
    if score is None:
        return Transition(
            None,
            resolved
            + (ReplyEffect(purpose=Purpose.DEFERRED_CAPTURED, directive="Réponds simplement à son message."),),
        )
    note = f" Il a aussi écrit: \"{rest}\"." if rest else ""
    return Transition(
        None,
        (StoreMemoryEffect(MOTIVATION_MEMORY_TYPE, str(score), {"score": score, "deferred": True}),)
        + resolved
        + (
            ReplyEffect(
                purpose=Purpose.DEFERRED_CAPTURED,
                directive=f"Motivation notée: {score}/10.{note} Remercie brièvement et continue la conversation.",
            ),
        ),
    )


def _on_deferred_personal_fact(snapshot: OnboardingSnapshot, text: str, verdict: TurnClassification) -> Transition:
    resolved = (ResolveDeferredStepEffect(DeferredStep.PERSONAL_FACT),)
    if not normalize_for_matching(text):
        return Transition(None, resolved)
    return _fact_captured(text, resolved)


_HANDLERS = {
    OnboardingState.AWAITING_PLAN_FINALIZATION: _on_plan_finalization,
    OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT: _on_finalization_support,
    OnboardingState.AWAITING_ONBOARDING_FOCUS_CHOICE: _on_focus_choice,
    OnboardingState.AWAITING_PLAN_MOTIVATION: _on_motivation,
    OnboardingState.AWAITING_PERSONAL_FACT: _on_personal_fact,
    OnboardingState.AWAITING_DEFERRED_MOTIVATION: _on_deferred_motivation,
    OnboardingState.AWAITING_DEFERRED_PERSONAL_FACT: _on_deferred_personal_fact,
}


def advance(snapshot: OnboardingSnapshot, text: str, verdict: TurnClassification) -> Transition:
    """Compute the next state and effects for one user turn."""
    state = snapshot.state
    if state is None:
        return Transition(None)
    if verdict.signals.defers_onboarding:
        result = _exit_for_signal(snapshot, verdict.signals)
    else:
        result = _HANDLERS[state](snapshot, text or "", verdict)
    transition(state, result.next_state)
    return result


_DEFERRED_DIRECTIVES = {
    DeferredStep.MOTIVATION: (
        OnboardingState.AWAITING_DEFERRED_MOTIVATION,
        "Réponds à son message, puis demande naturellement sa motivation du moment sur une échelle de 0 à 10.",
    ),
    DeferredStep.PERSONAL_FACT: (
        OnboardingState.AWAITING_DEFERRED_PERSONAL_FACT,
        "Réponds à son message, puis demande naturellement un fait personnel simple (métier, passion).",
    ),
}


def surface_deferred_step(snapshot: OnboardingSnapshot) -> Optional[Transition]:
    """Ask the first deferred question, woven into a normal reply. None when nothing is deferred."""
    if snapshot.state is not None or not snapshot.deferred_steps:
        return None
    step = snapshot.deferred_steps[0]
    next_state, directive = _DEFERRED_DIRECTIVES[step]
    result = Transition(
        next_state,
        (
            ReplyEffect(
                purpose=Purpose.DEFERRED_PROMPT,
                directive=directive,
                adaptive_flow="deferred",
            ),
        ),
    )
    transition(snapshot.state, result.next_state)
    return result
