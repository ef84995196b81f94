"""OpenAI provider implementation (any OpenAI-compatible endpoint)."""

from __future__ import annotations

import time
from typing import Any

import openai
from openai import AsyncOpenAI

from regwatch.ai.domain.message import Message, Role
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


class OpenAIProvider(BaseLLMProvider):
    """OpenAI Chat Completions provider."""

    def __init__(
        self,
        api_key: str | None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.1,
        max_tokens: int = 4096,
        timeout: float = 120.0,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(model=model, temperature=temperature, max_tokens=max_tokens, timeout=timeout)
        self.base_url = base_url
        # The runner owns retries; the SDK must not retry on its own
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            timeout=timeout,
            base_url=base_url,
            max_retries=0,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    def _build_chat_payload(
        self, messages: list[Message], system_prompt: str | None
    ) -> list[dict[str, Any]]:
        chat_messages: list[dict[str, Any]] = []
        if system_prompt:
            chat_messages.append({"role": "system", "content": system_prompt})
        for message in messages:
            if message.role == Role.SYSTEM and system_prompt:
                # System messages are handled via system_prompt, skip duplicates
                continue
            chat_messages.append(message.to_dict())
        return chat_messages

    def _build_usage_metrics(self, usage: Any | None) -> UsageMetrics:
        return UsageMetrics(
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            total_tokens=getattr(usage, "total_tokens", 0) or 0,
        )

    async def generate(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> AgentResponse:
        """Generate response using OpenAI API."""
        start_time = time.time()
        api_params: dict[str, Any] = {
            "model": self.model,
            "messages": self._build_chat_payload(messages, system_prompt),
            "temperature": self._get_temperature(temperature),
            "max_tokens": self._get_max_tokens(max_tokens),
        }
        if json_mode:
            api_params["response_format"] = {"type": "json_object"}

        logger.info(
            "openai_request_started",
            model=self.model,
            message_count=len(api_params["messages"]),
            temperature=api_params["temperature"],
        )

        try:
            response = await self.client.chat.completions.create(**api_params)
        except openai.AuthenticationError as e:
            logger.error("openai_auth_error", model=self.model)
            raise ProviderAuthError(
                "OpenAI rejected the API key",
                provider=self.provider_name,
                model=self.model,
                status_code=401,
                original_error=e,
            )
        except openai.RateLimitError as e:
            logger.warning("openai_rate_limited", model=self.model)
            raise ProviderRateLimitError(
                "OpenAI rate limit exceeded",
                provider=self.provider_name,
                model=self.model,
                status_code=429,
                original_error=e,
            )
        except openai.APITimeoutError as e:
            logger.error("openai_timeout", model=self.model, timeout=self.timeout)
            raise ProviderTimeoutError(
                f"OpenAI request timeout after {self.timeout}s",
                provider=self.provider_name,
                model=self.model,
                original_error=e,
            )
        except openai.APIConnectionError as e:
            logger.error("openai_connection_error", error=str(e), base_url=self.base_url)
            raise ProviderUnavailableError(
                f"Cannot connect to OpenAI endpoint: {e}",
                provider=self.provider_name,
                model=self.model,
                original_error=e,
            )
        except openai.APIStatusError as e:
            logger.error("openai_http_error", status=e.status_code, error=str(e))
            error_class = ProviderAuthError if e.status_code == 401 else ProviderError
            raise error_class(
                f"OpenAI HTTP error {e.status_code}: {e}",
                provider=self.provider_name,
                model=self.model,
                status_code=e.status_code,
                original_error=e,
            )

        content = response.choices[0].message.content or ""
        usage = self._build_usage_metrics(response.usage)
        latency_ms = (time.time() - start_time) * 1000

        logger.info(
            "openai_request_completed",
            model=self.model,
            tokens=usage.total_tokens,
            latency_ms=latency_ms,
            finish_reason=response.choices[0].finish_reason,
        )

        return AgentResponse(
            content=content,
            status=ResponseStatus.SUCCESS,
            model=self.model,
            provider=self.provider_name,
            usage=usage,
            latency_ms=latency_ms,
            metadata={"finish_reason": response.choices[0].finish_reason},
        )

    async def close(self) -> None:
        await self.client.close()
