"""LLM provider implementations."""

from regwatch.ai.providers.base import BaseLLMProvider
from regwatch.ai.providers.factory import create_provider
from regwatch.ai.providers.ollama import OllamaProvider
from regwatch.ai.providers.openai import OpenAIProvider

__all__ = ["BaseLLMProvider", "OllamaProvider", "OpenAIProvider", "create_provider"]
