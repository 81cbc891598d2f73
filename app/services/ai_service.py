"""Thin layer over the LLM provider: timing logs, bounded calls, JSON parsing."""

from __future__ import annotations

import json
import re
import time
from typing import List, Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.llm import LLMProviderError, OpenAIProvider

logger = get_logger("ai_service")

CLASSIFIER_MAX_TOKENS = 120
REPLY_MAX_TOKENS = 600

# Global LLM provider instance
_llm_provider = None


def get_llm_provider() -> OpenAIProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(api_key=settings.openai_api_key, default_model=settings.fast_model)
    return _llm_provider


def _log_timing(
    stage: str,
    elapsed_ms: float,
    *,
    timing_context: dict | None = None,
    extra: dict | None = None,
) -> None:
    context: dict = {}
    if timing_context:
        context.update(timing_context)
    if extra:
        context.update(extra)
    context["stage"] = stage
    context["elapsed_ms"] = round(elapsed_ms, 2)
    logger.info("Timing", extra={"context": context})


def call_llm(
    messages: List[dict],
    *,
    stage: str,
    model: str,
    temperature: float,
    max_tokens: int,
    timeout_seconds: float,
    json_mode: bool = False,
    timing_context: dict | None = None,
) -> Optional[str]:
    """One bounded round trip to the model. Returns None on timeout or provider failure."""
    llm = get_llm_provider()
    llm_start = time.monotonic()
    try:
        response = llm.generate(
            messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
            json_mode=json_mode,
        )
    except httpx.TimeoutException as exc:
        _log_timing(
            stage,
            (time.monotonic() - llm_start) * 1000,
            timing_context=timing_context,
            extra={"model_name": model, "timeout": True, "timeout_seconds": timeout_seconds},
        )
        logger.warning(f"LLM timeout after {timeout_seconds}s ({stage}): {exc}")
        return None
    except (LLMProviderError, httpx.HTTPError) as exc:
        _log_timing(
            stage,
            (time.monotonic() - llm_start) * 1000,
            timing_context=timing_context,
            extra={"model_name": model, "timeout": False, "error": str(exc)},
        )
        logger.warning(f"LLM call failed ({stage}): {exc}")
        return None

    _log_timing(
        stage,
        (time.monotonic() - llm_start) * 1000,
        timing_context=timing_context,
        extra={"model_name": model, "timeout": False},
    )
    content = (response.content or "").strip()
    return content or None


def parse_json_object(content: str | None) -> dict | None:
    """Parse a model answer that should be one JSON object.

    Tolerates ```json fences and prose around the object.
    """
    if not content:
        return None
    cleaned = content.strip()
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*```$", "", cleaned)
    payload = None
    try:
        payload = json.loads(cleaned)
    except (TypeError, ValueError):
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if match:
            try:
                payload = json.loads(match.group(0))
            except (TypeError, ValueError):
                payload = None
    return payload if isinstance(payload, dict) else None


def classify_json(
    system_prompt: str,
    user_content: str,
    *,
    stage: str,
    history: List[dict] | None = None,
) -> dict | None:
    """Classifier call constrained to a single JSON object."""
    if not settings.openai_api_key:
        logger.info(f"Classifier skipped ({stage}): OPENAI_API_KEY missing")
        return None
    messages = [{"role": "system", "content": system_prompt}]
    if history:
        messages.extend(history)
    messages.append({"role": "user", "content": user_content})
    content = call_llm(
        messages,
        stage=stage,
        model=settings.fast_model,
        temperature=0.0,
        max_tokens=CLASSIFIER_MAX_TOKENS,
        timeout_seconds=settings.intent_timeout_seconds,
        json_mode=True,
    )
    payload = parse_json_object(content)
    if content and payload is None:
        logger.warning(f"Classifier returned non-JSON ({stage}): {content[:120]}")
    return payload


def generate_text(
    system_context: str,
    user_turn: str,
    *,
    temperature: float = 0.7,
    history: List[dict] | None = None,
    stage: str = "reply_llm_ms",
    timing_context: dict | None = None,
) -> Optional[str]:
    """Conversation generation: system context + history + user turn -> text (None on failure)."""
    if not settings.openai_api_key:
        logger.warning("Generation skipped: OPENAI_API_KEY missing")
        return None
    messages: List[dict] = [{"role": "system", "content": system_context}]
    if history:
        messages.extend(history)
    if user_turn and (not history or history[-1].get("content") != user_turn):
        messages.append({"role": "user", "content": user_turn})
    return call_llm(
        messages,
        stage=stage,
        model=settings.reply_model,
        temperature=temperature,
        max_tokens=REPLY_MAX_TOKENS,
        timeout_seconds=settings.reply_timeout_seconds,
        timing_context=timing_context,
    )
