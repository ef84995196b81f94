"""Factory for creating LLM providers."""

from regwatch.ai.providers.base import BaseLLMProvider
from regwatch.ai.providers.ollama import OllamaProvider
from regwatch.ai.providers.openai import OpenAIProvider
from regwatch.exceptions import ConfigurationError
from regwatch.utils.config import Settings, get_settings
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)


def create_provider(settings: Settings | None = None, **kwargs) -> BaseLLMProvider:
    """
    Create the configured LLM provider.

    Args:
        settings: Application settings (if None, uses global settings)
        **kwargs: Overrides passed to the provider constructor

    Raises:
        ConfigurationError: unknown provider or missing API key
    """
    settings = settings or get_settings()
    llm = settings.llm
    provider = llm.provider.lower()

    if provider == "openai":
        api_key = kwargs.pop("api_key", llm.api_key)
        if not api_key and not llm.base_url:
            raise ConfigurationError(
                "OpenAI API key not configured",
                setting="REGWATCH_LLM__API_KEY",
                expected="API key or an OpenAI-compatible base_url",
            )
        logger.info("provider_created", provider=provider, model=llm.model)
        return OpenAIProvider(
            api_key=api_key or "not-needed",
            model=kwargs.pop("model", llm.model),
            max_tokens=kwargs.pop("max_tokens", llm.max_tokens),
            base_url=kwargs.pop("base_url", llm.base_url),
            **kwargs,
        )

    if provider == "ollama":
        logger.info("provider_created", provider=provider, model=llm.model)
        return OllamaProvider(
            base_url=kwargs.pop("base_url", llm.ollama_base_url),
            model=kwargs.pop("model", llm.model),
            max_tokens=kwargs.pop("max_tokens", llm.max_tokens),
            **kwargs,
        )

    raise ConfigurationError(
        f"Unknown LLM provider: {llm.provider}",
        setting="REGWATCH_LLM__PROVIDER",
        expected="openai or ollama",
    )
