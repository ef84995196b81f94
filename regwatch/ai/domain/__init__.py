"""Message and response models exchanged with LLM providers."""

from regwatch.ai.domain.message import Message, Role
from regwatch.ai.domain.response import AgentResponse, ResponseStatus, UsageMetrics

__all__ = ["AgentResponse", "Message", "ResponseStatus", "Role", "UsageMetrics"]
