"""Ollama provider implementation for local LLMs."""

import time

import httpx

from regwatch.ai.domain.message import Message
from regwatch.ai.domain.response import AgentResponse, ResponseStatus, UsageMetrics
from regwatch.ai.providers.base import BaseLLMProvider
from regwatch.exceptions import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)


class OllamaProvider(BaseLLMProvider):
    """
    Ollama provider using the ``/api/chat`` endpoint.

    No API key required - runs entirely locally.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3",
        temperature: float = 0.1,
        max_tokens: int = 4096,
        timeout: float = 300.0,  # Longer timeout for local inference
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(model=model, temperature=temperature, max_tokens=max_tokens, timeout=timeout)
        self.base_url = base_url
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def provider_name(self) -> str:
        return "ollama"

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._http_client

    async def generate(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> AgentResponse:
        """Generate response using Ollama API."""
        start_time = time.time()

        chat_messages = [m.to_dict() for m in messages]
        if system_prompt:
            chat_messages.insert(0, {"role": "system", "content": system_prompt})

        payload = {
            "model": self.model,
            "messages": chat_messages,
            "stream": False,
            "options": {
                "temperature": self._get_temperature(temperature),
                "num_predict": self._get_max_tokens(max_tokens),
            },
        }
        if json_mode:
            payload["format"] = "json"

        logger.info("ollama_request_started", model=self.model, message_count=len(chat_messages))

        try:
            response = await self._get_http_client().post("/api/chat", json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("ollama_timeout", error=str(e))
            raise ProviderTimeoutError(
                f"Ollama request timeout after {self.timeout}s",
                provider=self.provider_name,
                model=self.model,
                original_error=e,
            )
        except httpx.ConnectError as e:
            logger.error("ollama_connection_error", error=str(e), base_url=self.base_url)
            raise ProviderUnavailableError(
                f"Cannot connect to Ollama at {self.base_url}. "
                "Make sure Ollama is running (ollama serve)",
                provider=self.provider_name,
                model=self.model,
                original_error=e,
            )
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error("ollama_http_error", error=str(e), status=status)
            error_class = {401: ProviderAuthError, 429: ProviderRateLimitError}.get(
                status, ProviderError
            )
            raise error_class(
                f"Ollama HTTP error: {e}",
                provider=self.provider_name,
                model=self.model,
                status_code=status,
                original_error=e,
            )

        data = response.json()
        content = data.get("message", {}).get("content", "")

        prompt_tokens = data.get("prompt_eval_count") or sum(
            self.count_tokens(m["content"]) for m in chat_messages
        )
        completion_tokens = data.get("eval_count") or self.count_tokens(content)
        usage = UsageMetrics(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
        latency_ms = (time.time() - start_time) * 1000

        logger.info(
            "ollama_request_completed",
            model=self.model,
            tokens=usage.total_tokens,
            latency_ms=latency_ms,
        )

        return AgentResponse(
            content=content,
            status=ResponseStatus.SUCCESS,
            model=self.model,
            provider=self.provider_name,
            usage=usage,
            latency_ms=latency_ms,
        )

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
