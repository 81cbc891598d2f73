from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from app.config import settings
from app.services.ai_service import call_llm, classify_json, generate_text, parse_json_object
from app.services.llm import LLMProviderError, LLMResponse, OpenAIProvider


@pytest.fixture
def with_key():
    with patch.object(settings, "openai_api_key", "test-key"):
        yield


class TestParseJsonObject:
    def test_plain(self):
        assert parse_json_object('{"intent": "accept"}') == {"intent": "accept"}

    def test_fenced(self):
        assert parse_json_object('```json\n{"status": "done"}\n```') == {"status": "done"}

    def test_prose_around_object(self):
        assert parse_json_object('Voici: {"choice": "plan"} voilà') == {"choice": "plan"}

    def test_not_an_object(self):
        assert parse_json_object("[1, 2]") is None
        assert parse_json_object("pas du json") is None
        assert parse_json_object(None) is None


class TestCallLlm:
    @patch("app.services.ai_service.get_llm_provider")
    def test_returns_stripped_content(self, mock_provider):
        mock_provider.return_value.generate.return_value = LLMResponse(content="  Salut  ", model="m")

        result = call_llm(
            [{"role": "user", "content": "hi"}],
            stage="reply_llm_ms",
            model="m",
            temperature=0.7,
            max_tokens=10,
            timeout_seconds=1.0,
        )

        assert result == "Salut"

    @patch("app.services.ai_service.get_llm_provider")
    def test_timeout_returns_none(self, mock_provider):
        mock_provider.return_value.generate.side_effect = httpx.ReadTimeout("slow")

        assert (
            call_llm([], stage="intent_llm_ms", model="m", temperature=0.0, max_tokens=10, timeout_seconds=0.1)
            is None
        )

    @patch("app.services.ai_service.get_llm_provider")
    def test_provider_error_returns_none(self, mock_provider):
        mock_provider.return_value.generate.side_effect = LLMProviderError("boom", status_code=500)

        assert call_llm([], stage="x", model="m", temperature=0.0, max_tokens=10, timeout_seconds=1.0) is None


class TestClassifyJson:
    def test_without_api_key(self):
        with patch.object(settings, "openai_api_key", None):
            assert classify_json("sys", "oui", stage="x") is None

    @patch("app.services.ai_service.call_llm")
    def test_uses_json_mode_and_history(self, mock_call, with_key):
        mock_call.return_value = '{"intent": "defer"}'
        history = [{"role": "assistant", "content": "Bilan ?"}]

        assert classify_json("sys", "plus tard", stage="bilan_intent_llm_ms", history=history) == {"intent": "defer"}

        messages = mock_call.call_args[0][0]
        assert [m["role"] for m in messages] == ["system", "assistant", "user"]
        assert mock_call.call_args[1]["json_mode"] is True
        assert mock_call.call_args[1]["temperature"] == 0.0


class TestGenerateText:
    @patch("app.services.ai_service.call_llm")
    def test_user_turn_not_duplicated(self, mock_call, with_key):
        mock_call.return_value = "ok"
        history = [{"role": "user", "content": "salut"}]

        generate_text("CTX", "salut", history=history)

        messages = mock_call.call_args[0][0]
        assert [m["content"] for m in messages] == ["CTX", "salut"]

    @patch("app.services.ai_service.call_llm")
    def test_user_turn_appended(self, mock_call, with_key):
        mock_call.return_value = "ok"

        generate_text("CTX", "salut", history=[{"role": "assistant", "content": "Hello"}])

        assert mock_call.call_args[0][0][-1] == {"role": "user", "content": "salut"}


class TestOpenAIProvider:
    def test_missing_key(self):
        with pytest.raises(LLMProviderError):
            OpenAIProvider(api_key=None).generate([{"role": "user", "content": "hi"}])

    @patch("app.services.llm.openai_provider.httpx.Client")
    def test_gpt5_forces_default_temperature_and_json_mode(self, mock_client):
        response = Mock(status_code=200)
        response.json.return_value = {"choices": [{"message": {"content": "{}"}}], "model": "gpt-5-mini"}
        client = MagicMock()
        client.__enter__.return_value.post.return_value = response
        mock_client.return_value = client

        OpenAIProvider(api_key="k").generate([], model="gpt-5-mini", temperature=0.0, json_mode=True)

        payload = client.__enter__.return_value.post.call_args[1]["json"]
        assert payload["temperature"] == 1.0
        assert payload["response_format"] == {"type": "json_object"}

    @patch("app.services.llm.openai_provider.httpx.Client")
    def test_http_error(self, mock_client):
        response = Mock(status_code=429, text="rate limited")
        mock_client.return_value.__enter__.return_value.post.return_value = response

        with pytest.raises(LLMProviderError) as exc:
            OpenAIProvider(api_key="k").generate([])
        assert exc.value.status_code == 429
