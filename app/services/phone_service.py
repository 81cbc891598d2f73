from __future__ import annotations

import re

from sqlalchemy.exc import IntegrityError

MIN_PHONE_DIGITS = 8
MAX_PHONE_DIGITS = 15


def normalize_from(raw: str | None) -> str | None:
    """Normalize a platform sender id to E.164 ("33612345678" -> "+33612345678").

    Returns None when the value cannot be a phone number.
    """
    if not raw:
        return None
    cleaned = re.sub(r"[()\s\-.]", "", str(raw).strip())
    if cleaned.startswith("00"):
        cleaned = "+" + cleaned[2:]
    if not cleaned.startswith("+"):
        cleaned = "+" + cleaned
    digits = cleaned[1:]
    if not digits.isdigit():
        return None
    if not (MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS):
        return None
    return cleaned


def e164_to_french_local(e164: str) -> str | None:
    """+33612345678 -> 0612345678; None for non-French numbers."""
    if not e164 or not e164.startswith("+33"):
        return None
    national = e164[3:]
    if len(national) != 9:
        return None
    return "0" + national


def phone_variants(e164: str) -> list[str]:
    """All spellings a phone may have been stored with at signup."""
    variants = [e164, e164.lstrip("+")]
    local = e164_to_french_local(e164)
    if local:
        variants.append(local)
    seen: set[str] = set()
    return [v for v in variants if not (v in seen or seen.add(v))]


def is_phone_unique_violation(exc: Exception) -> bool:
    if not isinstance(exc, IntegrityError):
        return False
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == "23505":
        return True
    message = str(exc).lower()
    return "duplicate key" in message or "unique" in message
