"""Tests for src.core.llm — provider selection and routing (no network)."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.config import settings
from src.core import llm


@pytest.fixture(autouse=True)
def fresh_provider():
    llm.reset_provider()
    yield
    llm.reset_provider()


class TestSelectProvider:
    def test_default_model_per_provider(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_PROVIDER", "Anthropic")
        monkeypatch.setattr(settings, "LLM_MODEL", "")
        fn, model, _ = llm._select_provider()
        assert fn is llm._complete_anthropic
        assert model == "claude-haiku-4-5-20251001"

    def test_model_override(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_PROVIDER", "openai")
        monkeypatch.setattr(settings, "LLM_MODEL", "gpt-4o")
        _, model, _ = llm._select_provider()
        assert model == "gpt-4o"

    def test_unknown_provider_raises(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_PROVIDER", "mystery")
        with pytest.raises(ValueError, match="Unknown LLM_PROVIDER"):
            llm._select_provider()


class TestIsConfigured:
    def test_empty_key(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_API_KEY", "")
        assert llm.is_configured() is False

    def test_placeholder_key(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_API_KEY", "your-llm-api-key")
        assert llm.is_configured() is False

    def test_real_key(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_API_KEY", "sk-test")
        assert llm.is_configured() is True


class TestComplete:
    @pytest.mark.asyncio
    async def test_routes_to_selected_provider(self, monkeypatch):
        fake = AsyncMock(return_value='{"intent": "help"}')
        monkeypatch.setitem(llm._PROVIDERS, "openai", (fake, "gpt-4o-mini"))
        monkeypatch.setattr(settings, "LLM_PROVIDER", "openai")
        monkeypatch.setattr(settings, "LLM_MODEL", "")
        monkeypatch.setattr(settings, "LLM_API_KEY", "sk-test")

        result = await llm.complete("system prompt", "hello", max_tokens=100, json_mode=True)

        assert result == '{"intent": "help"}'
        fake.assert_awaited_once_with("sk-test", "gpt-4o-mini", "system prompt", "hello", 100, True)

    @pytest.mark.asyncio
    async def test_openai_json_mode(self):
        message = MagicMock()
        message.content = '{"intent": "help"}'
        response = MagicMock()
        response.choices = [MagicMock(message=message)]
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=response)

        with patch("openai.AsyncOpenAI", return_value=client):
            text = await llm._complete_openai("sk-test", "gpt-4o-mini", "sys", "hi", 256, True)

        assert text == '{"intent": "help"}'
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}

    @pytest.mark.asyncio
    async def test_anthropic(self):
        response = MagicMock()
        response.content = [MagicMock(text="ok")]
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=response)

        with patch("anthropic.AsyncAnthropic", return_value=client):
            text = await llm._complete_anthropic("key", "claude", "sys", "hi", 64, False)

        assert text == "ok"
        assert client.messages.create.call_args.kwargs["system"] == "sys"
