"""Two-tier intent classification for replies to assistant prompts.

Tier 1 is pure pattern matching (button labels, template replies, simple
delays) and never calls out. Tier 2 asks the model for a single JSON object
from a closed vocabulary and is only used when tier 1 is inconclusive.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional
from zoneinfo import ZoneInfo

from app.logging_config import get_logger
from app.services import signal_service
from app.services.ai_service import classify_json
from app.services.phrase_service import (
    is_decline_reply,
    is_done_phrase,
    is_later_reply,
    is_not_done_phrase,
    is_uncertain_phrase,
    is_yes_reply,
    match_focus_choice,
    normalize_for_matching,
    normalize_text,
)

logger = get_logger("intent_service")

USER_TIMEZONE = ZoneInfo("Europe/Paris")
MAX_DELAY_MINUTES = 7 * 24 * 60
MORNING_HOUR = 9
EVENING_HOUR = 20
HISTORY_TURNS = 6


class BilanIntent(str, Enum):
    ACCEPT = "accept"
    DEFER = "defer"
    DECLINE = "decline"


class FinalizationStatus(str, Enum):
    DONE = "done"
    UNCERTAIN = "uncertain"
    NOT_DONE = "not_done"


class FocusChoice(str, Enum):
    PLAN = "plan"
    OTHER = "other"
    UNCLEAR = "unclear"


@dataclass(frozen=True)
class BilanClassification:
    intent: BilanIntent
    delay_minutes: Optional[int] = None
    source: str = "template"  # template, delay_pattern, llm, fallback, default

    def as_dict(self) -> dict:
        return {"intent": self.intent.value, "delay_minutes": self.delay_minutes}


# Labels of the quick-reply buttons sent with bilan prompts, plus their usual typed variants.
BILAN_ACCEPT_TEMPLATES = {
    "carrement",
    "go",
    "go!",
    "oui",
    "ok",
    "yes",
    "c'est parti",
    "allez",
    "allons-y",
    "vas-y",
    "let's go",
    "avec plaisir",
    "oui carrement",
    "grave",
}
BILAN_DEFER_TEMPLATES = {
    "plus tard",
    "pas tout de suite",
    "pas maintenant",
    "on fera ca demain",
    "demain",
    "dans un moment",
    "tout a l'heure",
}
BILAN_DECLINE_TEMPLATES = {
    "non",
    "non merci",
    "pas ce soir",
    "pas aujourd'hui",
    "skip",
    "pas envie",
    "on saute",
}

_HOURS_MINUTES = re.compile(r"\b(\d{1,2})\s*(?:h|heures?)\s*(\d{1,2})\b")
_HOURS = re.compile(r"\b(\d{1,2}(?:[.,]5)?)\s*(?:h|hrs?|heures?)\b")
_MINUTES = re.compile(r"\b(\d{1,3})\s*(?:min|mins|minutes?|mn)\b")
_WORD_DELAYS = (
    (re.compile(r"\bune\s+heure\s+et\s+demie\b"), 90),
    (re.compile(r"\bune\s+demi[- ]heure\b"), 30),
    (re.compile(r"\bun\s+quart\s+d'heure\b"), 15),
    (re.compile(r"\btrois\s+quarts?\s+d'heure\b"), 45),
    (re.compile(r"\bune\s+heure\b"), 60),
    (re.compile(r"\bdeux\s+heures\b"), 120),
    (re.compile(r"\btrois\s+heures\b"), 180),
)
_CLOCK_AFTER_PREPOSITION = re.compile(r"\b(?:a|vers|pour)\s+(\d{1,2})\s*(?:h|heures?)\s*(\d{2})?\b")
_BARE_HOURS = re.compile(r"\b(dans\s+)?(\d{1,2})\s*(?:h|heures?)\s*(\d{2})?\b")
# A bare "21h" names a time of day; a bare "2h" or "2h30" is a duration.
MAX_BARE_DURATION_HOURS = 6
_TOMORROW = re.compile(r"\bdemain\b")
_TONIGHT = re.compile(r"\bce\s+soir\b")
_DELAY_ONLY = re.compile(
    r"^((dans|vers|a|pour)\s+)?(\d{1,2}\s*(h|heures?)\s*\d{0,2}|\d{1,3}\s*(min|mins|minutes?|mn)|demain|ce\s+soir|"
    r"une\s+heure(\s+et\s+demie)?|une\s+demi[- ]heure|un\s+quart\s+d'heure)"
    r"(\s+(stp|svp|merci))?$"
)

BILAN_CLASSIFY_PROMPT = """Tu classes la réponse d'un utilisateur à une invitation à faire son bilan du soir.
Réponds UNIQUEMENT avec un objet JSON de la forme {"intent": "accept|defer|decline", "delay_minutes": number|null}.
- accept : il veut faire le bilan maintenant.
- defer : il veut le faire plus tard. delay_minutes = délai demandé en minutes si indiqué, sinon null.
- decline : il ne veut pas le faire cette fois.
En cas de doute, choisis defer."""

FOCUS_CLASSIFY_PROMPT = """L'assistant a demandé à l'utilisateur s'il veut commencer par son plan
ou parler d'autre chose.
Réponds UNIQUEMENT avec un objet JSON {"choice": "plan|other|unclear"}.
- plan : il veut avancer sur son plan.
- other : il veut parler d'autre chose (un sujet, une question, un souci).
- unclear : impossible de savoir."""


def _minutes_until(hour: int, now: datetime, *, next_day: bool, minute: int = 0) -> int:
    local_now = now.astimezone(USER_TIMEZONE)
    target = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if next_day:
        target = target + timedelta(days=1)
    return int((target - local_now).total_seconds() // 60)


def _clock_time(normalized: str) -> tuple[int, int] | None:
    """Time of day in "vers 21h", "a 20h30" or a bare "21h"; None for durations."""
    match = _CLOCK_AFTER_PREPOSITION.search(normalized)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2) or 0)
    else:
        match = _BARE_HOURS.search(normalized)
        if not match or match.group(1):
            return None
        hour, minute = int(match.group(2)), int(match.group(3) or 0)
        if hour <= MAX_BARE_DURATION_HOURS:
            return None
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def _minutes_until_clock(hour: int, minute: int, now: datetime, *, tomorrow: bool) -> int:
    remaining = _minutes_until(hour, now, next_day=tomorrow, minute=minute)
    if remaining <= 0:
        remaining += 24 * 60
    return remaining


def parse_delay_minutes(text: str | None, now: datetime | None = None) -> int | None:
    """Parse "2h30", "45 min", "vers 21h", "demain", "ce soir" into minutes from now."""
    normalized = normalize_text(text)
    if not normalized:
        return None
    now = now or datetime.now(USER_TIMEZONE)

    minutes: int | None = None
    clock = _clock_time(normalized)
    if clock:
        minutes = _minutes_until_clock(*clock, now, tomorrow=bool(_TOMORROW.search(normalized)))
    if minutes is None:
        match = _HOURS_MINUTES.search(normalized)
        if match:
            minutes = int(match.group(1)) * 60 + int(match.group(2))
    if minutes is None:
        match = _HOURS.search(normalized)
        if match:
            minutes = int(float(match.group(1).replace(",", ".")) * 60)
    if minutes is None:
        match = _MINUTES.search(normalized)
        if match:
            minutes = int(match.group(1))
    if minutes is None:
        for pattern, value in _WORD_DELAYS:
            if pattern.search(normalized):
                minutes = value
                break
    if minutes is None and _TOMORROW.search(normalized):
        minutes = _minutes_until(MORNING_HOUR, now, next_day=True)
    if minutes is None and _TONIGHT.search(normalized):
        remaining = _minutes_until(EVENING_HOUR, now, next_day=False)
        minutes = remaining if remaining > 0 else None

    if minutes is None or minutes <= 0:
        return None
    return min(minutes, MAX_DELAY_MINUTES)


def classify_bilan_fast(text: str | None, now: datetime | None = None) -> BilanClassification | None:
    """Tier 1: template labels and bare delays. None when inconclusive."""
    normalized = normalize_for_matching(text)
    if not normalized:
        return None

    if normalized in BILAN_ACCEPT_TEMPLATES:
        return BilanClassification(BilanIntent.ACCEPT, None, "template")
    if normalized in BILAN_DECLINE_TEMPLATES:
        return BilanClassification(BilanIntent.DECLINE, None, "template")
    if _DELAY_ONLY.match(normalized):
        delay = parse_delay_minutes(normalized, now)
        if delay:
            return BilanClassification(BilanIntent.DEFER, delay, "delay_pattern")
    if normalized in BILAN_DEFER_TEMPLATES:
        return BilanClassification(BilanIntent.DEFER, None, "template")
    return None


def _classify_bilan_loose(text: str | None, now: datetime | None = None) -> BilanClassification | None:
    """Substring rules used only after the model failed to answer."""
    delay = parse_delay_minutes(text, now)
    if delay:
        return BilanClassification(BilanIntent.DEFER, delay, "fallback")
    if is_later_reply(text):
        return BilanClassification(BilanIntent.DEFER, None, "fallback")
    if is_decline_reply(text):
        return BilanClassification(BilanIntent.DECLINE, None, "fallback")
    if is_yes_reply(text):
        return BilanClassification(BilanIntent.ACCEPT, None, "fallback")
    return None


def _coerce_delay(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        minutes = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    if minutes <= 0:
        return None
    return min(minutes, MAX_DELAY_MINUTES)


def parse_bilan_payload(payload: dict | None) -> BilanClassification | None:
    if not isinstance(payload, dict):
        return None
    raw_intent = str(payload.get("intent") or "").strip().lower()
    try:
        intent = BilanIntent(raw_intent)
    except ValueError:
        return None
    delay = _coerce_delay(payload.get("delay_minutes")) if intent == BilanIntent.DEFER else None
    return BilanClassification(intent, delay, "llm")


def classify_bilan_reply(
    text: str | None,
    recent_context: List[dict] | None = None,
    now: datetime | None = None,
) -> BilanClassification:
    """Classify a reply to a bilan invitation into accept / defer / decline (+ delay)."""
    fast = classify_bilan_fast(text, now)
    if fast:
        logger.info("Bilan intent (fast)", extra={"context": {**fast.as_dict(), "source": fast.source}})
        return fast

    history = (recent_context or [])[-HISTORY_TURNS:]
    payload = classify_json(BILAN_CLASSIFY_PROMPT, text or "", stage="bilan_intent_llm_ms", history=history)
    parsed = parse_bilan_payload(payload)
    if parsed:
        logger.info("Bilan intent (llm)", extra={"context": parsed.as_dict()})
        return parsed
    if payload is not None:
        logger.warning(f"Bilan classifier payload rejected: {payload}")

    loose = _classify_bilan_loose(text, now)
    if loose:
        return loose
    # A false decline ends the conversation; a false defer only asks again.
    return BilanClassification(BilanIntent.DEFER, None, "default")


def classify_finalization_fast(text: str | None) -> FinalizationStatus | None:
    if is_not_done_phrase(text):
        return FinalizationStatus.NOT_DONE
    if is_uncertain_phrase(text):
        return FinalizationStatus.UNCERTAIN
    if is_done_phrase(text):
        return FinalizationStatus.DONE
    return None


def classify_plan_finalization(text: str | None, recent_context: List[dict] | None = None) -> FinalizationStatus:
    """Did the user say their plan is finalized? Lexical check, then the signal analyzer."""
    fast = classify_finalization_fast(text)
    if fast:
        return fast
    status = signal_service.analyze_onboarding_status(text, (recent_context or [])[-HISTORY_TURNS:])
    if status:
        try:
            return FinalizationStatus(status)
        except ValueError:
            logger.warning(f"Unknown onboarding status from analyzer: {status}")
    return FinalizationStatus.NOT_DONE


def classify_focus_choice(text: str | None, recent_context: List[dict] | None = None) -> FocusChoice:
    fast = match_focus_choice(text)
    if fast:
        return FocusChoice(fast)
    if not normalize_for_matching(text):
        return FocusChoice.UNCLEAR
    history = (recent_context or [])[-HISTORY_TURNS:]
    payload = classify_json(FOCUS_CLASSIFY_PROMPT, text or "", stage="focus_llm_ms", history=history)
    if payload:
        raw = str(payload.get("choice") or "").strip().lower()
        try:
            return FocusChoice(raw)
        except ValueError:
            logger.warning(f"Focus classifier payload rejected: {payload}")
    return FocusChoice.UNCLEAR
