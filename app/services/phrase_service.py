"""Deterministic phrase matching for French WhatsApp replies.

Everything here is pure and cheap: no I/O, no LLM. Classifiers call these
first and only fall back to the model when nothing conclusive matches.
"""

from __future__ import annotations

import re
import unicodedata

STOP_PATTERN = re.compile(r"^(stop|unsubscribe|unsub|opt-?out|desinscrire|desinscription|desabonner)\b")
STOP_INTERACTIVE_IDS = {"STOP", "OPTOUT", "OPT_OUT"}

WRONG_NUMBER_INTERACTIVE_IDS = {"OPTIN_WRONG_NUMBER"}
WRONG_NUMBER_PATTERNS = (
    re.compile(r"\bmauvais\s+num(ero)?\b"),
    re.compile(r"\bpas\s+(le\s+bon|mon)\s+num(ero)?\b"),
    re.compile(r"\bc'?\s*est\s+pas\s+moi\b"),
    re.compile(r"\bc\s+pas\s+moi\b"),
    re.compile(r"\bce\s+n'?est\s+pas\s+moi\b"),
    re.compile(r"\bwrong\s+number\b"),
    re.compile(r"\berreur\s+de\s+num(ero)?\b"),
    re.compile(r"\bje\s+ne\s+(connais|suis)\s+pas\b.*\b(sophia|inscrit)"),
)

OPTIN_YES_PATTERN = re.compile(r"^(oui|yes|absolument|carrement)$")
OPTIN_YES_INTERACTIVE_IDS = {"OPTIN_YES"}

YES_EXACT = {
    "oui",
    "ouais",
    "ouep",
    "yes",
    "ok",
    "okay",
    "d'accord",
    "dac",
    "go",
    "vas-y",
    "vas y",
    "carrement",
    "avec plaisir",
    "bien sur",
    "grave",
    "absolument",
    "let's go",
    "allez",
    "volontiers",
}
YES_PREFIX_PATTERN = re.compile(r"^(oui|ok|yes|go|vas-y|vas y|carrement|d'accord|avec plaisir)\b")

LATER_PATTERNS = (
    re.compile(r"\bplus\s+tard\b"),
    re.compile(r"\bpas\s+(maintenant|tout\s+de\s+suite|dispo|le\s+temps)\b"),
    re.compile(r"\bon\s+fera\s+(ca|ça)\b"),
    re.compile(r"\b(later|apres|tout\s+a\s+l'heure)\b"),
    re.compile(r"\brelance[- ]moi\b"),
)

DECLINE_EXACT = {
    "non",
    "no",
    "nope",
    "non merci",
    "pas ce soir",
    "pas aujourd'hui",
    "laisse tomber",
    "skip",
    "annule",
    "pas envie",
    "jamais",
}
DECLINE_PATTERNS = (
    re.compile(r"^non\b"),
    re.compile(r"\bpas\s+(ce\s+soir|aujourd'hui|envie)\b"),
    re.compile(r"\blaisse\s+tomber\b"),
    re.compile(r"\bon\s+saute\b"),
)

ECHO_YES_PATTERN = re.compile(r"(m'interesse|vas-y|vas y|\boui\b|\bok\b|\bgo\b|raconte)")

DONE_PHRASE_PATTERN = re.compile(
    r"^(c'est bon|cest bon|c bon|c'est fait|cest fait|c'est valide|ok c'est bon|ok|fait|done|fini|"
    r"termine|j'ai fini|j'ai termine|j'ai valide|valide|voila|c'est ok)\b"
)
NOT_DONE_PATTERNS = (
    re.compile(r"\bpas\s+(encore|fini|termine|valide)\b"),
    re.compile(r"\btoujours\s+pas\b"),
    re.compile(r"^non\b"),
    re.compile(r"\bj'y\s+suis\s+pas\s+arrive\b"),
    re.compile(r"\bj'ai\s+pas\s+(fini|termine|eu\s+le\s+temps)\b"),
)
UNCERTAIN_PATTERNS = (
    re.compile(r"\bje\s+(crois|pense)\b"),
    re.compile(r"\b(peut-etre|normalement|il\s+me\s+semble|je\s+sais\s+pas|aucune\s+idee)\b"),
    re.compile(r"\bcomment\s+(on\s+)?(sait|savoir|voir)\b"),
)

GREETING_EXACT = {
    "salut",
    "hello",
    "coucou",
    "bonjour",
    "bonsoir",
    "hey",
    "yo",
    "cc",
    "hi",
    "slt",
    "re",
    "bjr",
    "salut sophia",
    "coucou sophia",
    "hello sophia",
    "bonjour sophia",
}

SATISFACTION_PATTERNS = (
    re.compile(r"^(merci|ok merci|super merci|top merci|merci beaucoup)\b"),
    re.compile(r"\b(je\s+vois|ca\s+m'aide|ca\s+m'a\s+aide|c'est\s+clair|parfait|nickel|top)\b"),
)

PLAN_CHOICE_PATTERNS = (
    re.compile(r"\b(le\s+)?plan\b"),
    re.compile(r"\b(on\s+)?commence\b"),
    re.compile(r"^(1|a)$"),
)
OTHER_CHOICE_PATTERNS = (
    re.compile(r"\bautre\s+chose\b"),
    re.compile(r"\bparler\s+d'(un\s+)?autre\b"),
    re.compile(r"\bd'abord\s+(parler|discuter)\b"),
    re.compile(r"^(2|b)$"),
)

TIRED_FACT_PATTERN = re.compile(r"\b(fatigue|epuise|creve|irregulier|horaires\s+decales|nuit)\b")

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")
LINK_TOKEN_PATTERN = re.compile(r"(?:^|\s)link\s*:\s*([A-Za-z0-9_-]{10,})", re.IGNORECASE)
MOTIVATION_SCORE_PATTERN = re.compile(r"\b(10|[0-9])\b")

APOSTROPHES = {"’": "'", "‘": "'", "`": "'"}


def normalize_text(text: str | None) -> str:
    """Lowercase, unify apostrophes, strip accents, collapse whitespace."""
    if not text:
        return ""
    normalized = "".join(APOSTROPHES.get(ch, ch) for ch in text)
    normalized = unicodedata.normalize("NFD", normalized.casefold())
    normalized = "".join(ch for ch in normalized if unicodedata.category(ch) != "Mn")
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip()


def normalize_for_matching(text: str | None) -> str:
    """normalize_text + trim surrounding punctuation and emojis ("Carrément !" -> "carrement")."""
    normalized = normalize_text(text)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def is_stop_keyword(text: str | None, interactive_id: str | None = None) -> bool:
    if interactive_id and interactive_id.strip().upper() in STOP_INTERACTIVE_IDS:
        return True
    return bool(STOP_PATTERN.search(normalize_for_matching(text)))


def is_wrong_number_claim(text: str | None, interactive_id: str | None = None) -> bool:
    if interactive_id and interactive_id.strip().upper() in WRONG_NUMBER_INTERACTIVE_IDS:
        return True
    normalized = normalize_text(text)
    if not normalized:
        return False
    return any(pattern.search(normalized) for pattern in WRONG_NUMBER_PATTERNS)


def is_optin_yes(text: str | None, interactive_id: str | None = None) -> bool:
    if interactive_id and interactive_id.strip().upper() in OPTIN_YES_INTERACTIVE_IDS:
        return True
    return bool(OPTIN_YES_PATTERN.match(normalize_for_matching(text)))


def is_yes_reply(text: str | None) -> bool:
    normalized = normalize_for_matching(text)
    if not normalized:
        return False
    if normalized in YES_EXACT:
        return True
    return bool(YES_PREFIX_PATTERN.match(normalized)) and not is_later_reply(text)


def is_later_reply(text: str | None) -> bool:
    normalized = normalize_text(text)
    if not normalized:
        return False
    return any(pattern.search(normalized) for pattern in LATER_PATTERNS)


def is_decline_reply(text: str | None) -> bool:
    normalized = normalize_for_matching(text)
    if not normalized:
        return False
    if normalized in DECLINE_EXACT:
        return True
    return any(pattern.search(normalized) for pattern in DECLINE_PATTERNS)


def is_echo_yes(text: str | None) -> bool:
    normalized = normalize_text(text)
    return bool(normalized) and bool(ECHO_YES_PATTERN.search(normalized)) and not is_later_reply(text)


def is_done_phrase(text: str | None) -> bool:
    return bool(DONE_PHRASE_PATTERN.match(normalize_for_matching(text)))


def is_not_done_phrase(text: str | None) -> bool:
    normalized = normalize_for_matching(text)
    if not normalized:
        return False
    return any(pattern.search(normalized) for pattern in NOT_DONE_PATTERNS)


def is_uncertain_phrase(text: str | None) -> bool:
    normalized = normalize_for_matching(text)
    if not normalized:
        return False
    return any(pattern.search(normalized) for pattern in UNCERTAIN_PATTERNS)


def _normalize_with_offsets(text: str) -> tuple[str, list[int]]:
    """normalize_text without the final strip, plus the source index of every output character."""
    chars: list[str] = []
    origins: list[int] = []
    for index, ch in enumerate(text):
        ch = APOSTROPHES.get(ch, ch)
        for part in unicodedata.normalize("NFD", ch.casefold()):
            if unicodedata.category(part) == "Mn":
                continue
            if part.isspace():
                if not chars or chars[-1] == " ":
                    continue
                part = " "
            chars.append(part)
            origins.append(index)
    return "".join(chars), origins


def extract_after_done_phrase(text: str | None) -> str:
    """Return what follows a leading done phrase ("c'est bon, je suis infirmière" -> "je suis infirmière")."""
    if not text:
        return ""
    normalized, origins = _normalize_with_offsets(text)
    start = re.match(r"[^\w]*", normalized).end()
    match = DONE_PHRASE_PATTERN.match(normalized[start:])
    if not match:
        return ""
    end = start + match.end()
    if end >= len(normalized):
        return ""
    rest = re.sub(r"^[\s,;:.!\-–—]+", "", text[origins[end]:])
    return rest.strip() if len(rest.strip()) >= 3 else ""


def parse_motivation_score(text: str | None) -> int | None:
    if not text:
        return None
    match = MOTIVATION_SCORE_PATTERN.search(text)
    if not match:
        return None
    return int(match.group(1))


def strip_first_motivation_score(text: str | None) -> tuple[int | None, str]:
    """Split "7, mais je suis crevé" into (7, "mais je suis crevé")."""
    if not text:
        return None, ""
    match = MOTIVATION_SCORE_PATTERN.search(text)
    if not match:
        return None, text.strip()
    rest = (text[: match.start()] + text[match.end():]).strip()
    rest = re.sub(r"^(/\s*10|sur\s+10)\b", "", rest).strip()
    rest = re.sub(r"^[\s,;:.!\-–—]+", "", rest).strip()
    return int(match.group(1)), rest


def is_bare_greeting(text: str | None) -> bool:
    return normalize_for_matching(text) in GREETING_EXACT


def is_satisfaction_phrase(text: str | None) -> bool:
    normalized = normalize_for_matching(text)
    if not normalized:
        return False
    return any(pattern.search(normalized) for pattern in SATISFACTION_PATTERNS)


def match_focus_choice(text: str | None) -> str | None:
    """Return "plan", "other" or None when the reply is not conclusive."""
    normalized = normalize_for_matching(text)
    if not normalized:
        return None
    wants_other = any(pattern.search(normalized) for pattern in OTHER_CHOICE_PATTERNS)
    wants_plan = any(pattern.search(normalized) for pattern in PLAN_CHOICE_PATTERNS)
    if wants_other and not wants_plan:
        return "other"
    if wants_plan and not wants_other:
        return "plan"
    return None


def mentions_tiredness(text: str | None) -> bool:
    return bool(TIRED_FACT_PATTERN.search(normalize_text(text)))


def extract_email(text: str | None) -> str | None:
    if not text:
        return None
    match = EMAIL_PATTERN.search(text)
    return match.group(0) if match else None


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def extract_link_token(text: str | None) -> str | None:
    if not text:
        return None
    match = LINK_TOKEN_PATTERN.search(text)
    return match.group(1) if match else None


def mask_email(email: str) -> str:
    local, _, domain = (email or "").partition("@")
    if not domain:
        return email
    visible = local[:2] if len(local) > 2 else local[:1]
    return f"{visible}***@{domain}"
