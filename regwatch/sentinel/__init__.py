"""Sentinel: polite fetching, discovery, drift detection and adaptive rescans."""

from regwatch.sentinel.fetcher import FetchClient, FetchFailure, FetchResult, FetchSuccess
from regwatch.sentinel.rate_limiter import DomainHealth, DomainRateLimiter, HealthLabel

__all__ = [
    "DomainHealth",
    "DomainRateLimiter",
    "FetchClient",
    "FetchFailure",
    "FetchResult",
    "FetchSuccess",
    "HealthLabel",
]
