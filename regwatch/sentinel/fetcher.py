"""HTTP fetch client.

Every request goes through the domain rate limiter, carries a fixed timeout
and is retried with bounded exponential (full-jitter) backoff. The outcome is
a ``FetchResult`` value: callers branch on success/failure instead of
catching exceptions, so one failed fetch never aborts sibling work. Bodies
over ``FetchConfig.max_content_length`` fail rather than being cut short.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from urllib.parse import urlparse

import httpx

from regwatch import exceptions
from regwatch.exceptions import (
    BlockedDomainError,
    HTTPError,
    NetworkError,
    RateLimitSignal,
    RegwatchError,
    TransientNetworkError,
    wrap_exception,
)
from regwatch.sentinel.rate_limiter import DomainRateLimiter
from regwatch.utils.config import FetchConfig
from regwatch.utils.logging import get_logger
from regwatch.utils.retry import RetryConfig, retry_async

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 500, 502, 503, 504})
TEST_DOMAIN_SUFFIXES = (".test", ".invalid", ".example", ".localhost")


@dataclass(frozen=True)
class FetchSuccess:
    url: str
    final_url: str
    status_code: int
    content: bytes
    content_type: str
    headers: dict[str, str] = field(default_factory=dict)
    elapsed_ms: float = 0.0

    ok = True

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class FetchFailure:
    url: str
    error: RegwatchError
    attempts: int = 0

    ok = False


FetchResult = FetchSuccess | FetchFailure


def domain_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def is_blocked_domain(domain: str, blocked: Sequence[str]) -> bool:
    """Blocked and test domains are rejected before any network call."""
    domain = domain.lower()
    if not domain:
        return True
    if domain.endswith(TEST_DOMAIN_SUFFIXES):
        return True
    return any(domain == b or domain.endswith("." + b) for b in blocked)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class FetchClient:
    """Rate-limited, retrying HTTP client for regulatory sources."""

    def __init__(
        self,
        rate_limiter: DomainRateLimiter,
        config: FetchConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.config = config or FetchConfig()
        self._http_client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep
        self.retry_config = RetryConfig(
            max_retries=self.config.max_retries,
            base_delay=self.config.base_retry_delay,
            max_delay=self.config.max_retry_delay,
            full_jitter=True,
            is_retryable=exceptions.is_retryable,
            is_rate_limit=exceptions.is_rate_limit,
            # 429: wait at least Retry-After, capped at the normal max delay
            rate_limit=RetryConfig(
                max_retries=self.config.max_retries,
                base_delay=self.config.base_retry_delay,
                max_delay=self.config.max_retry_delay,
                full_jitter=True,
            ),
        )

    async def __aenter__(self) -> "FetchClient":
        self._get_http_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                follow_redirects=True,
                headers={"User-Agent": self.config.user_agent},
            )
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch(self, url: str) -> FetchResult:
        """Fetch one URL. Never raises for network or HTTP failures."""
        domain = domain_of(url)

        if is_blocked_domain(domain, self.config.blocked_domains):
            logger.warning("fetch_blocked_domain", url=url, domain=domain)
            return FetchFailure(
                url=url,
                error=BlockedDomainError(f"Blocked or test domain: {domain}", domain=domain),
                attempts=0,
            )

        attempts = 0

        async def attempt() -> FetchSuccess:
            nonlocal attempts
            attempts += 1
            return await self._fetch_once(url, domain)

        try:
            result = await retry_async(attempt, config=self.retry_config, sleep=self._sleep)
        except RegwatchError as e:
            logger.warning(
                "fetch_failed",
                url=url,
                attempts=attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            return FetchFailure(url=url, error=e, attempts=attempts)
        except Exception as e:
            logger.error(
                "fetch_crashed",
                url=url,
                attempts=attempts,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            error = wrap_exception(
                e,
                f"Unexpected {type(e).__name__} fetching {url}: {e}",
                exception_class=NetworkError,
                url=url[:100],
            )
            return FetchFailure(url=url, error=error, attempts=attempts)

        return result

    async def _fetch_once(self, url: str, domain: str) -> FetchSuccess:
        handle = await self.rate_limiter.acquire(domain)
        try:
            start = time.perf_counter()
            try:
                response = await self._get_http_client().get(
                    url, timeout=self.config.timeout_seconds
                )
            except httpx.TimeoutException as e:
                self.rate_limiter.record_error(domain, e)
                raise exceptions.TimeoutError(
                    f"Timeout fetching {url}", context={"url": url[:100]}, original_error=e
                )
            except httpx.TransportError as e:
                self.rate_limiter.record_error(domain, e)
                raise TransientNetworkError(
                    f"Network error fetching {url}: {e}",
                    context={"url": url[:100]},
                    original_error=e,
                )

            elapsed_ms = (time.perf_counter() - start) * 1000
            status = response.status_code

            if status == 429:
                self.rate_limiter.record_error(domain, "HTTP 429")
                raise RateLimitSignal(
                    f"Rate limited by {domain}", retry_after=_retry_after(response)
                )
            if status in RETRYABLE_STATUS_CODES:
                self.rate_limiter.record_error(domain, f"HTTP {status}")
                raise TransientNetworkError(
                    f"HTTP {status} from {url}", context={"status_code": status}
                )
            if status >= 400:
                self.rate_limiter.record_error(domain, f"HTTP {status}")
                raise HTTPError(f"HTTP {status} from {url}", status_code=status, url=url)

            content = response.content
            self.rate_limiter.record_success(domain)

            if len(content) > self.config.max_content_length:
                logger.warning(
                    "fetch_content_too_large",
                    url=url,
                    size=len(content),
                    limit=self.config.max_content_length,
                )
                raise HTTPError(
                    f"Response from {url} is {len(content)} bytes, "
                    f"over the {self.config.max_content_length} byte limit",
                    status_code=status,
                    url=url,
                )

            logger.info(
                "fetch_completed",
                url=url,
                status_code=status,
                bytes=len(content),
                elapsed_ms=round(elapsed_ms, 1),
            )

            return FetchSuccess(
                url=url,
                final_url=str(response.url),
                status_code=status,
                content=content,
                content_type=response.headers.get("content-type", ""),
                headers=dict(response.headers),
                elapsed_ms=elapsed_ms,
            )
        finally:
            handle.release()

    async def fetch_many(self, urls: Sequence[str]) -> list[FetchResult]:
        """Fetch URLs concurrently; results keep input order."""
        return list(await asyncio.gather(*(self.fetch(url) for url in urls)))
