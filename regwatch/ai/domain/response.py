"""Response models for LLM calls."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from regwatch.utils.datetime import utc_now


class ResponseStatus(str, Enum):
    """Status of a provider response."""

    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"


class UsageMetrics(BaseModel):
    """Token usage metrics."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class AgentResponse(BaseModel):
    """
    Raw response from an LLM provider.

    The agent runner parses ``content`` into the agent's output schema.
    """

    content: str
    status: ResponseStatus = ResponseStatus.SUCCESS

    model: str | None = None
    provider: str | None = None

    usage: UsageMetrics = Field(default_factory=UsageMetrics)

    timestamp: datetime = Field(default_factory=utc_now)
    latency_ms: float | None = None

    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == ResponseStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "status": self.status.value,
            "model": self.model,
            "provider": self.provider,
            "tokens_used": self.usage.total_tokens,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }
