"""Base class for LLM providers."""

from abc import ABC, abstractmethod

from regwatch.ai.domain.message import Message
from regwatch.ai.domain.response import AgentResponse


class BaseLLMProvider(ABC):
    """
    LLM collaborator used by the agent runner.

    Implementations translate transport failures into the provider error
    hierarchy: 401 -> ProviderAuthError, 429 -> ProviderRateLimitError,
    timeouts -> ProviderTimeoutError, other non-2xx -> ProviderError.
    """

    def __init__(
        self,
        model: str,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        timeout: float = 120.0,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> AgentResponse:
        """Generate a completion for the conversation."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...

    def count_tokens(self, text: str) -> int:
        """Rough token estimate (4 characters per token)."""
        return len(text) // 4

    def _get_temperature(self, temperature: float | None) -> float:
        return self.temperature if temperature is None else temperature

    def _get_max_tokens(self, max_tokens: int | None) -> int:
        return self.max_tokens if max_tokens is None else max_tokens

    async def close(self) -> None:
        """Release network resources."""
