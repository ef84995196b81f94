"""Standardized exception hierarchy for regwatch.

Every error carries a human-readable message, a context dict for structured
logging and the original error when it wraps a third-party exception.

The retry wrapper decides what to retry through :func:`is_retryable`, so the
taxonomy below is the single source of truth for retry behaviour:

- TransientNetworkError: retry with backoff
- RateLimitSignal: retry with a much longer backoff
- TimeoutError: retry up to the limit
- ValidationError, CircuitOpenError, BlockedDomainError: fail immediately

Usage:
    from regwatch.exceptions import ValidationError

    try:
        validate(payload)
    except ValidationError as e:
        logger.error("validation_failed", error=str(e), context=e.context)
"""

from __future__ import annotations

from typing import Any


class RegwatchError(Exception):
    """Base exception for all regwatch errors.

    Attributes:
        message: Human-readable error message
        context: Additional context for debugging (dict)
        original_error: Original exception if wrapped
    """

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Format exception with context for logging."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base = f"{base} ({ctx_str})"
        if self.original_error:
            base = f"{base} [caused by: {type(self.original_error).__name__}]"
        return base

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, context={self.context!r})"


# =============================================================================
# Validation & Configuration Errors
# =============================================================================


class ValidationError(RegwatchError):
    """Raised when input does not match its schema.

    Never retried: a schema mismatch cannot succeed on a second attempt.
    """

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)[:100]
        if constraint:
            context["constraint"] = constraint
        kwargs["context"] = context
        super().__init__(message, **kwargs)


class ConfigurationError(RegwatchError):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        *,
        setting: str | None = None,
        expected: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if setting:
            context["setting"] = setting
        if expected:
            context["expected"] = expected
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Database & Persistence Errors
# =============================================================================


class DatabaseError(RegwatchError):
    """Base class for database-related errors."""


class RecordNotFoundError(DatabaseError):
    """Raised when a database record is not found."""

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        entity_id: int | str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if entity_type:
            context["entity_type"] = entity_type
        if entity_id:
            context["entity_id"] = str(entity_id)
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Rule Lifecycle Errors
# =============================================================================


class InvalidTransitionError(RegwatchError):
    """Raised when a rule transition violates the review state machine."""

    def __init__(
        self,
        message: str,
        *,
        rule_id: int | None = None,
        current_state: str | None = None,
        attempted_state: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if rule_id is not None:
            context["rule_id"] = rule_id
        if current_state:
            context["current_state"] = current_state
        if attempted_state:
            context["attempted_state"] = attempted_state
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# HTTP & Network Errors
# =============================================================================


class NetworkError(RegwatchError):
    """Base class for network-related errors."""


class TransientNetworkError(NetworkError):
    """Connection reset, 5xx and similar failures that may succeed on retry."""


class HTTPError(NetworkError):
    """Raised when an HTTP request fails with a non-retryable status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        url: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if status_code:
            context["status_code"] = status_code
        if url:
            context["url"] = url[:100]
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.status_code = status_code


class RateLimitSignal(NetworkError):
    """The remote side asked us to slow down (HTTP 429 or provider quota)."""

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        if retry_after is not None:
            context["retry_after"] = retry_after
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TimeoutError(NetworkError):
    """Raised when a network fetch or LLM call exceeds its timeout."""


class CircuitOpenError(NetworkError):
    """Domain excluded after too many consecutive errors. No request is made."""

    def __init__(self, message: str, *, domain: str | None = None, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        if domain:
            context["domain"] = domain
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.domain = domain


class BlockedDomainError(NetworkError):
    """Raised before any network call for blocked or test domains."""

    def __init__(self, message: str, *, domain: str | None = None, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        if domain:
            context["domain"] = domain
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.domain = domain


# =============================================================================
# AI & LLM Errors
# =============================================================================


class AIError(RegwatchError):
    """Base class for AI/LLM related errors."""


class ProviderError(AIError):
    """Raised when the LLM provider call fails."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        model: str | None = None,
        status_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if provider:
            context["provider"] = provider
        if model:
            context["model"] = model
        if status_code:
            context["status_code"] = status_code
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.provider = provider
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """HTTP 401 from the provider. A configuration problem, never retried."""


class ProviderRateLimitError(ProviderError):
    """Provider quota exceeded (HTTP 429)."""


class ProviderTimeoutError(ProviderError):
    """Provider request timed out."""


class ProviderUnavailableError(ProviderError):
    """Provider endpoint cannot be reached."""


class AgentOutputError(AIError):
    """The LLM answered but the answer is not a valid JSON object for the schema."""

    def __init__(self, message: str, *, raw_output: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.raw_output = raw_output


class AgentRunError(AIError):
    """Terminal failure of an agent run, returned to callers (not raised)."""

    def __init__(
        self,
        message: str,
        *,
        agent_type: str | None = None,
        run_id: int | None = None,
        error_kind: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if agent_type:
            context["agent_type"] = agent_type
        if run_id is not None:
            context["run_id"] = run_id
        if error_kind:
            context["error_kind"] = error_kind
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.agent_type = agent_type
        self.run_id = run_id
        self.error_kind = error_kind


# =============================================================================
# Utility Functions
# =============================================================================

_RETRYABLE = (
    TransientNetworkError,
    RateLimitSignal,
    TimeoutError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    AgentOutputError,
)

_NON_RETRYABLE = (
    ValidationError,
    CircuitOpenError,
    BlockedDomainError,
    ProviderAuthError,
    HTTPError,
    ConfigurationError,
)


def is_retryable(error: BaseException) -> bool:
    """Return True when retrying ``error`` can plausibly succeed."""
    if isinstance(error, _NON_RETRYABLE):
        return False
    if isinstance(error, _RETRYABLE):
        return True
    if isinstance(error, ProviderError):
        # Any other non-2xx from the provider is retryable; 401 is handled above
        return error.status_code != 401
    return False


def is_rate_limit(error: BaseException) -> bool:
    """Return True for errors that should use the long rate-limit backoff."""
    return isinstance(error, RateLimitSignal | ProviderRateLimitError)


def wrap_exception(
    error: Exception,
    message: str,
    *,
    exception_class: type[RegwatchError] = RegwatchError,
    **context: Any,
) -> RegwatchError:
    """Wrap an external exception in the regwatch exception hierarchy.

    Example:
        try:
            session.commit()
        except IntegrityError as e:
            raise wrap_exception(e, "Failed to store evidence", exception_class=DatabaseError)
    """
    return exception_class(
        message,
        context=context,
        original_error=error,
    )


__all__ = [
    "RegwatchError",
    "ValidationError",
    "ConfigurationError",
    "DatabaseError",
    "RecordNotFoundError",
    "InvalidTransitionError",
    "NetworkError",
    "TransientNetworkError",
    "HTTPError",
    "RateLimitSignal",
    "TimeoutError",
    "CircuitOpenError",
    "BlockedDomainError",
    "AIError",
    "ProviderError",
    "ProviderAuthError",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "AgentOutputError",
    "AgentRunError",
    "is_retryable",
    "is_rate_limit",
    "wrap_exception",
]
