from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import LLMProvider, LLMProviderError, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat-completions provider."""

    def __init__(self, api_key: Optional[str], default_model: str = "gpt-5-mini"):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = "https://api.openai.com/v1/chat/completions"

    def _temperature_for(self, model: str, temperature: float) -> float:
        # gpt-5 family only accepts the default temperature.
        if model.strip().lower().startswith("gpt-5"):
            return 1.0
        return temperature

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        if not self.api_key:
            raise LLMProviderError("OPENAI_API_KEY is not configured")

        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": self._temperature_for(model, temperature),
            "max_completion_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        timeout = timeout_seconds if timeout_seconds is not None else 30.0
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}, json_mode={json_mode}")
        with httpx.Client(timeout=timeout) as client:
            response = client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

        if response.status_code != 200:
            logger.error(f"OpenAI error: status={response.status_code} body={response.text[:300]}")
            raise LLMProviderError(f"OpenAI API error: {response.status_code}", status_code=response.status_code)

        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise LLMProviderError("OpenAI returned no choices")
        content = (choices[0].get("message") or {}).get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
