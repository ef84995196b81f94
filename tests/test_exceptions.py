"""Tests for the exception hierarchy and retry classification."""

import pytest
from sqlalchemy.exc import IntegrityError

from regwatch.exceptions import (
    AgentOutputError,
    BlockedDomainError,
    CircuitOpenError,
    ConfigurationError,
    DatabaseError,
    HTTPError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    RateLimitSignal,
    RegwatchError,
    TimeoutError,
    TransientNetworkError,
    ValidationError,
    is_rate_limit,
    is_retryable,
    wrap_exception,
)


def test_str_renders_context_and_cause():
    error = RegwatchError("fetch failed", context={"domain": "hzzo.hr"}, original_error=OSError("reset"))

    assert str(error) == "fetch failed (domain=hzzo.hr) [caused by: OSError]"


def test_http_error_truncates_url():
    error = HTTPError("not found", status_code=404, url="https://nn.hr/" + "a" * 200)

    assert error.status_code == 404
    assert len(error.context["url"]) == 100


def test_wrap_exception():
    cause = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    wrapped = wrap_exception(cause, "Failed to store evidence", exception_class=DatabaseError, url="x")

    assert isinstance(wrapped, DatabaseError)
    assert wrapped.original_error is cause
    assert wrapped.context == {"url": "x"}


@pytest.mark.parametrize(
    "error, retryable",
    [
        (TransientNetworkError("reset"), True),
        (RateLimitSignal("429", retry_after=60), True),
        (TimeoutError("slow"), True),
        (AgentOutputError("not json"), True),
        (ProviderRateLimitError("quota", status_code=429), True),
        (ProviderError("bad gateway", status_code=502), True),
        (ProviderAuthError("bad key", status_code=401), False),
        (ProviderError("unauthorized", status_code=401), False),
        (ValidationError("bad input"), False),
        (CircuitOpenError("open", domain="nn.hr"), False),
        (BlockedDomainError("blocked", domain="example.com"), False),
        (HTTPError("gone", status_code=410), False),
        (ConfigurationError("no key"), False),
        (ValueError("bug"), False),
    ],
)
def test_is_retryable(error, retryable):
    assert is_retryable(error) is retryable


def test_is_rate_limit():
    assert is_rate_limit(RateLimitSignal("429"))
    assert is_rate_limit(ProviderRateLimitError("quota"))
    assert not is_rate_limit(TransientNetworkError("reset"))
