"""Tests for the LLM providers and the provider factory, without network access."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from regwatch.ai.domain.message import Message, Role
from regwatch.ai.providers import OllamaProvider, OpenAIProvider, create_provider
from regwatch.exceptions import (
    ConfigurationError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    is_retryable,
)
from regwatch.utils.config import LLMConfig, Settings

OPENAI_URL = "https://api.openai.com/v1/chat/completions"


def user(text: str) -> list[Message]:
    return [Message(role=Role.USER, content=text)]


def completion(content: str) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=4, total_tokens=16),
    )


def openai_client(**create_kwargs) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(**create_kwargs)
    client.close = AsyncMock()
    return client


def status_response(code: int) -> httpx.Response:
    return httpx.Response(code, request=httpx.Request("POST", OPENAI_URL))


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_generate_builds_payload(self):
        client = openai_client(return_value=completion('{"extractions": []}'))
        provider = OpenAIProvider(api_key="sk-test", client=client)

        response = await provider.generate(
            user("Izvuci stope"), system_prompt="You are a regulatory data extractor", json_mode=True
        )

        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "You are a regulatory data extractor"}
        assert kwargs["messages"][1] == {"role": "user", "content": "Izvuci stope"}
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["temperature"] == 0.1
        assert response.success
        assert response.content == '{"extractions": []}'
        assert response.usage.total_tokens == 16
        assert response.provider == "openai"

    @pytest.mark.asyncio
    async def test_duplicate_system_messages_are_dropped(self):
        client = openai_client(return_value=completion("{}"))
        provider = OpenAIProvider(api_key="sk-test", client=client)

        await provider.generate(
            [Message(role=Role.SYSTEM, content="old"), *user("hi")], system_prompt="new"
        )

        messages = client.chat.completions.create.await_args.kwargs["messages"]
        assert [m["content"] for m in messages] == ["new", "hi"]

    @pytest.mark.parametrize(
        "error, expected",
        [
            (
                lambda: openai.AuthenticationError("bad key", response=status_response(401), body=None),
                ProviderAuthError,
            ),
            (
                lambda: openai.RateLimitError("slow down", response=status_response(429), body=None),
                ProviderRateLimitError,
            ),
            (
                lambda: openai.APITimeoutError(request=httpx.Request("POST", OPENAI_URL)),
                ProviderTimeoutError,
            ),
            (
                lambda: openai.InternalServerError("boom", response=status_response(500), body=None),
                ProviderError,
            ),
        ],
    )
    @pytest.mark.asyncio
    async def test_errors_are_translated(self, error, expected):
        provider = OpenAIProvider(api_key="sk-test", client=openai_client(side_effect=error()))

        with pytest.raises(expected) as exc_info:
            await provider.generate(user("hi"))

        assert type(exc_info.value) is expected
        assert exc_info.value.original_error is not None

    @pytest.mark.asyncio
    async def test_server_errors_are_retryable_but_auth_is_not(self):
        provider = OpenAIProvider(
            api_key="sk-test",
            client=openai_client(
                side_effect=openai.InternalServerError("boom", response=status_response(503), body=None)
            ),
        )

        with pytest.raises(ProviderError) as exc_info:
            await provider.generate(user("hi"))

        assert exc_info.value.status_code == 503
        assert is_retryable(exc_info.value)
        assert not is_retryable(ProviderAuthError("bad key", status_code=401))


class TestOllamaProvider:
    def make_provider(self, handler) -> OllamaProvider:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://ollama.test")
        return OllamaProvider(base_url="http://ollama.test", model="llama3", http_client=client)

    @pytest.mark.asyncio
    async def test_generate(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(
                200,
                json={"message": {"content": '{"ok": true}'}, "prompt_eval_count": 20, "eval_count": 5},
            )

        provider = self.make_provider(handler)

        response = await provider.generate(user("hi"), system_prompt="sys", json_mode=True)

        assert seen["format"] == "json"
        assert seen["stream"] is False
        assert seen["messages"][0] == {"role": "system", "content": "sys"}
        assert response.content == '{"ok": true}'
        assert response.usage.total_tokens == 25

    @pytest.mark.asyncio
    async def test_token_counts_fall_back_to_estimate(self):
        provider = self.make_provider(
            lambda request: httpx.Response(200, json={"message": {"content": "12345678"}})
        )

        response = await provider.generate(user("abcdefgh"))

        assert response.usage.prompt_tokens == 2
        assert response.usage.completion_tokens == 2

    @pytest.mark.parametrize(
        "status, expected",
        [(401, ProviderAuthError), (429, ProviderRateLimitError), (500, ProviderError)],
    )
    @pytest.mark.asyncio
    async def test_http_errors_are_translated(self, status, expected):
        provider = self.make_provider(lambda request: httpx.Response(status))

        with pytest.raises(expected) as exc_info:
            await provider.generate(user("hi"))

        assert type(exc_info.value) is expected
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = self.make_provider(handler)

        with pytest.raises(ProviderUnavailableError, match="ollama serve"):
            await provider.generate(user("hi"))

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self):
        provider = self.make_provider(lambda request: httpx.Response(200, json={}))

        async with provider:
            pass

        assert provider._http_client is not None
        assert not provider._http_client.is_closed


class TestCreateProvider:
    def test_ollama(self):
        settings = Settings(llm=LLMConfig(provider="ollama", model="llama3.1"))

        provider = create_provider(settings)

        assert isinstance(provider, OllamaProvider)
        assert provider.model == "llama3.1"
        assert provider.base_url == "http://localhost:11434"

    def test_openai_with_key(self):
        settings = Settings(llm=LLMConfig(provider="OpenAI", api_key="sk-test", max_tokens=512))

        provider = create_provider(settings, model="gpt-4o")

        assert isinstance(provider, OpenAIProvider)
        assert (provider.model, provider.max_tokens) == ("gpt-4o", 512)

    def test_openai_compatible_endpoint_needs_no_key(self):
        settings = Settings(llm=LLMConfig(provider="openai", base_url="http://vllm.local/v1"))

        provider = create_provider(settings)

        assert provider.base_url == "http://vllm.local/v1"

    def test_missing_key(self):
        with pytest.raises(ConfigurationError, match="API key not configured"):
            create_provider(Settings(llm=LLMConfig(provider="openai")))

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="Unknown LLM provider"):
            create_provider(Settings(llm=LLMConfig(provider="anthropic")))
