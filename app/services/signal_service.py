"""General-purpose conversational signal analysis.

Independent from the bilan classifier: it decides whether a turn is urgent
(safety / acute distress), a serious topic, or normal, and gathers the
lighter signals (engagement, satisfaction, greeting) used to detect calm
moments.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from app.logging_config import get_logger
from app.services.ai_service import classify_json
from app.services.phrase_service import (
    is_bare_greeting,
    is_satisfaction_phrase,
    normalize_for_matching,
    normalize_text,
)

logger = get_logger("signal_service")

CALM_MAX_WORDS = 6
LLM_MIN_WORDS = 4
MAX_TOPIC_CHARS = 80


class Urgency(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    SERIOUS_TOPIC = "serious_topic"


class Engagement(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    DISENGAGED = "disengaged"


@dataclass(frozen=True)
class SignalReport:
    urgency: Urgency = Urgency.NORMAL
    safety_active: bool = False
    engagement: Engagement = Engagement.MEDIUM
    topic_satisfaction: bool = False
    is_greeting: bool = False
    detected_topic: Optional[str] = None
    source: str = "heuristic"  # heuristic, llm, fallback

    @property
    def defers_onboarding(self) -> bool:
        return self.urgency in (Urgency.URGENT, Urgency.SERIOUS_TOPIC)


SAFETY_PATTERNS = (
    re.compile(r"\bsuicid\w*\b"),
    re.compile(r"\b(me|m')\s*(tuer|foutre\s+en\s+l'air)\b"),
    re.compile(r"\ben\s+finir\b"),
    re.compile(r"\b(envie|besoin)\s+de\s+mourir\b"),
    re.compile(r"\bje\s+veux\s+mourir\b"),
    re.compile(r"\bme\s+faire\s+du\s+mal\b"),
    re.compile(r"\bme\s+scarifi\w*\b"),
    re.compile(r"\b(il|elle)\s+me\s+(frappe|bat|menace)\b"),
)

DISTRESS_PATTERNS = (
    re.compile(r"\bje\s+craque\b"),
    re.compile(r"\bcrise\s+d'angoisse\b"),
    re.compile(r"\b(attaque|crise)\s+de\s+panique\b"),
    re.compile(r"\bje\s+panique\b"),
    re.compile(r"\bje\s+(n'en\s+)?peux\s+plus\b"),
    re.compile(r"\bau\s+bout\s+du\s+rouleau\b"),
    re.compile(r"\bj'ai\s+besoin\s+d'aide\b"),
    re.compile(r"\baide[- ]moi\b"),
    re.compile(r"\bje\s+suis\s+au\s+bout\b"),
    re.compile(r"\bj'arrive\s+plus\s+a\s+respirer\b"),
)

SERIOUS_TOPIC_PATTERNS = (
    (re.compile(r"\b(rupture|on\s+s'est\s+separes?|divorce)\b"), "une rupture"),
    (re.compile(r"\b(deuil|decede|decedee|est\s+mort|est\s+morte|enterrement)\b"), "un deuil"),
    (re.compile(r"\bburn[- ]?out\b"), "un burn-out"),
    (re.compile(r"\b(licencie|licenciee|licenciement|vire\s+du\s+boulot)\b"), "une perte d'emploi"),
    (re.compile(r"\bdepression\b|\bdeprime\b"), "un moment de déprime"),
    (re.compile(r"\bharcel\w*\b"), "du harcèlement"),
    (re.compile(r"\b(hopital|diagnostic|maladie|cancer)\b"), "un souci de santé"),
    (re.compile(r"\b(probleme|souci|conflit|stress)\s+au\s+(travail|boulot)\b"), "un problème au travail"),
    (re.compile(r"\bpeur\s+du\s+jugement\b"), "la peur du jugement"),
)

SIGNAL_PROMPT = """Tu analyses le dernier message d'un utilisateur d'une app de coaching sur WhatsApp.
Réponds UNIQUEMENT avec un objet JSON:
{"safety": "none|urgent", "topic_depth": "none|light|serious|need_support",
 "engagement": "high|medium|low|disengaged", "topic_satisfaction": true|false,
 "detected_topic": "3 à 8 mots ou chaîne vide"}
- safety=urgent seulement en cas de danger pour la personne ou autrui.
- need_support: détresse actuelle, besoin d'être soutenu maintenant.
- serious: sujet profond (travail, relations, peurs) exprimé sans urgence.
- topic_satisfaction: l'utilisateur semble satisfait ("merci", "ça m'aide", "je vois")."""

ONBOARDING_STATUS_PROMPT = """L'assistant a demandé à l'utilisateur s'il a fini de finaliser son plan sur le site.
Réponds UNIQUEMENT avec un objet JSON {"status": "done|uncertain|not_done"}.
- done : il affirme que c'est fait.
- uncertain : il ne sait pas, pense que oui sans en être sûr, ou demande comment vérifier.
- not_done : pas encore, ou il parle d'autre chose."""


def _word_count(text: str) -> int:
    return len([w for w in text.split() if w])


def estimate_engagement(text: str | None) -> Engagement:
    normalized = normalize_for_matching(text)
    words = _word_count(normalized)
    if words == 0:
        return Engagement.DISENGAGED
    if words <= 2:
        return Engagement.LOW
    if words >= 15 or "?" in (text or ""):
        return Engagement.HIGH
    return Engagement.MEDIUM


def detect_signals_fast(text: str | None) -> SignalReport | None:
    """Deterministic pass. Returns a report when the verdict is clear without the model."""
    normalized = normalize_text(text)
    if not normalized:
        return SignalReport(engagement=Engagement.DISENGAGED)

    if any(pattern.search(normalized) for pattern in SAFETY_PATTERNS):
        return SignalReport(urgency=Urgency.URGENT, safety_active=True, engagement=Engagement.HIGH)
    if any(pattern.search(normalized) for pattern in DISTRESS_PATTERNS):
        return SignalReport(urgency=Urgency.URGENT, safety_active=False, engagement=Engagement.HIGH)
    for pattern, topic in SERIOUS_TOPIC_PATTERNS:
        if pattern.search(normalized):
            return SignalReport(
                urgency=Urgency.SERIOUS_TOPIC,
                engagement=estimate_engagement(text),
                detected_topic=topic,
            )

    if is_bare_greeting(text):
        return SignalReport(is_greeting=True, engagement=Engagement.LOW)
    if is_satisfaction_phrase(text):
        return SignalReport(topic_satisfaction=True, engagement=estimate_engagement(text))
    if _word_count(normalized) < LLM_MIN_WORDS:
        return SignalReport(engagement=estimate_engagement(text))
    return None


def _parse_signal_payload(payload: dict, text: str | None) -> SignalReport:
    safety = str(payload.get("safety") or "none").strip().lower()
    depth = str(payload.get("topic_depth") or "none").strip().lower()
    try:
        engagement = Engagement(str(payload.get("engagement") or "").strip().lower())
    except ValueError:
        engagement = estimate_engagement(text)
    topic = str(payload.get("detected_topic") or "").strip()[:MAX_TOPIC_CHARS] or None

    if safety == "urgent":
        urgency, safety_active = Urgency.URGENT, True
    elif depth == "need_support":
        urgency, safety_active = Urgency.URGENT, False
    elif depth == "serious":
        urgency, safety_active = Urgency.SERIOUS_TOPIC, False
    else:
        urgency, safety_active = Urgency.NORMAL, False

    return SignalReport(
        urgency=urgency,
        safety_active=safety_active,
        engagement=engagement,
        topic_satisfaction=payload.get("topic_satisfaction") is True,
        is_greeting=is_bare_greeting(text),
        detected_topic=topic,
        source="llm",
    )


def analyze_signals(text: str | None, history: List[dict] | None = None, *, use_llm: bool = True) -> SignalReport:
    fast = detect_signals_fast(text)
    if fast:
        return fast
    if use_llm:
        payload = classify_json(SIGNAL_PROMPT, text or "", stage="signal_llm_ms", history=history)
        if payload:
            report = _parse_signal_payload(payload, text)
            logger.info(
                "Signals",
                extra={
                    "context": {
                        "urgency": report.urgency.value,
                        "engagement": report.engagement.value,
                        "source": report.source,
                    }
                },
            )
            return report
    return SignalReport(engagement=estimate_engagement(text), source="fallback")


def is_calm_moment(text: str | None, report: SignalReport) -> bool:
    """Short message, topic satisfaction, low engagement or a bare greeting, never during safety signals."""
    if report.safety_active or report.urgency != Urgency.NORMAL:
        return False
    if report.is_greeting or report.topic_satisfaction:
        return True
    if report.engagement in (Engagement.LOW, Engagement.DISENGAGED):
        return True
    normalized = normalize_for_matching(text)
    return 0 < _word_count(normalized) <= CALM_MAX_WORDS and "?" not in (text or "")


def analyze_onboarding_status(text: str | None, history: List[dict] | None = None) -> str | None:
    """Model-backed done / uncertain / not_done verdict for ambiguous plan-finalization replies."""
    if not normalize_for_matching(text):
        return None
    payload = classify_json(ONBOARDING_STATUS_PROMPT, text or "", stage="finalization_llm_ms", history=history)
    if not payload:
        return None
    status = str(payload.get("status") or "").strip().lower()
    if status not in {"done", "uncertain", "not_done"}:
        logger.warning(f"Onboarding status payload rejected: {payload}")
        return None
    return status
