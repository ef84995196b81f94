"""Per-domain politeness gate.

One ``DomainRateLimiter`` is constructed at process start and passed to every
fetch call site. It holds the only shared mutable state of the sentinel:
per-domain last-request time, active request count and consecutive errors.

Access is serialized by a short poll-wait loop instead of a lock: the check
and the update in ``acquire`` happen without an intervening ``await``, so on
a single event loop no two tasks can claim the same slot.

Example:
    >>> limiter = DomainRateLimiter(RateLimitConfig())
    >>> async with limiter.slot("porezna-uprava.gov.hr"):
    ...     response = await client.get(url)
"""

import asyncio
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from regwatch.exceptions import CircuitOpenError
from regwatch.utils.config import RateLimitConfig
from regwatch.utils.datetime import utc_now
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)


class HealthLabel(str, Enum):
    """Coarse domain health used by dashboards and confidence scoring."""

    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    CRITICAL = "CRITICAL"


@dataclass
class DomainState:
    """Mutable per-domain limiter state."""

    last_request_at: float = 0.0
    active_requests: int = 0
    consecutive_errors: int = 0
    last_error_at: float | None = None
    last_error: str | None = None
    last_success_at: datetime | None = None
    success_count: int = 0
    error_count: int = 0


@dataclass(frozen=True)
class DomainHealth:
    """Snapshot of a domain's fetch health."""

    domain: str
    success_rate: float
    consecutive_errors: int
    is_circuit_open: bool
    last_success_at: datetime | None
    last_error: str | None
    label: HealthLabel = field(default=HealthLabel.GOOD)


class ReleaseHandle:
    """Returned by ``acquire``; releases the domain slot exactly once."""

    def __init__(self, limiter: "DomainRateLimiter", domain: str) -> None:
        self._limiter = limiter
        self.domain = domain
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._limiter._release(self.domain)

    async def __aenter__(self) -> "ReleaseHandle":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class DomainRateLimiter:
    """Concurrency cap, randomized minimum delay and circuit breaker per domain."""

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._domains: dict[str, DomainState] = {}

    def _state(self, domain: str) -> DomainState:
        domain = domain.lower()
        if domain not in self._domains:
            self._domains[domain] = DomainState()
        return self._domains[domain]

    def _next_delay(self) -> float:
        """Randomized delay within [min_delay, max_delay]."""
        return random.uniform(self.config.min_delay, self.config.max_delay)

    async def acquire(self, domain: str) -> ReleaseHandle:
        """Wait until the domain accepts another request.

        Raises:
            CircuitOpenError: domain is excluded after too many consecutive errors
        """
        if self.is_circuit_open(domain):
            raise CircuitOpenError(f"Circuit open for {domain}", domain=domain)

        state = self._state(domain)
        required_delay = self._next_delay()

        while True:
            now = self._clock()
            elapsed = now - state.last_request_at
            if state.active_requests < self.config.max_concurrent and elapsed >= required_delay:
                state.active_requests += 1
                state.last_request_at = now
                return ReleaseHandle(self, domain)

            wait = self.config.poll_interval
            if state.active_requests < self.config.max_concurrent:
                wait = max(min(required_delay - elapsed, wait), 0.001)
            await self._sleep(wait)

    @asynccontextmanager
    async def slot(self, domain: str) -> AsyncIterator[ReleaseHandle]:
        """``async with`` form of acquire/release."""
        handle = await self.acquire(domain)
        try:
            yield handle
        finally:
            handle.release()

    def _release(self, domain: str) -> None:
        state = self._state(domain)
        state.active_requests = max(0, state.active_requests - 1)

    def record_success(self, domain: str) -> None:
        state = self._state(domain)
        state.consecutive_errors = 0
        state.success_count += 1
        state.last_success_at = utc_now()

    def record_error(self, domain: str, error: str | Exception | None = None) -> None:
        state = self._state(domain)
        state.consecutive_errors += 1
        state.error_count += 1
        state.last_error_at = self._clock()
        state.last_error = str(error) if error is not None else None

        if state.consecutive_errors == self.config.circuit_breaker_threshold:
            logger.warning(
                "circuit_breaker_opened",
                domain=domain,
                consecutive_errors=state.consecutive_errors,
                last_error=state.last_error,
            )

    def is_circuit_open(self, domain: str) -> bool:
        """True while the domain is excluded from scheduling.

        Errors reset automatically once the domain has been inactive for
        ``circuit_reset_hours``.
        """
        state = self._domains.get(domain.lower())
        if state is None or state.consecutive_errors < self.config.circuit_breaker_threshold:
            return False

        last_activity = max(state.last_request_at, state.last_error_at or 0.0)
        if self._clock() - last_activity >= self.config.circuit_reset_hours * 3600:
            logger.info(
                "circuit_breaker_auto_reset",
                domain=domain,
                consecutive_errors=state.consecutive_errors,
            )
            state.consecutive_errors = 0
            return False

        return True

    def reset(self, domain: str) -> None:
        """Manually clear the error counter of a domain."""
        state = self._state(domain)
        state.consecutive_errors = 0
        logger.info("circuit_breaker_reset", domain=domain)

    def open_circuits(self) -> list[str]:
        """Domains currently excluded from scheduling."""
        return [domain for domain in list(self._domains) if self.is_circuit_open(domain)]

    def get_health(self, domain: str) -> DomainHealth:
        state = self._state(domain)
        total = state.success_count + state.error_count
        success_rate = state.success_count / total if total else 1.0
        circuit_open = self.is_circuit_open(domain)

        if circuit_open:
            label = HealthLabel.CRITICAL
        elif success_rate >= 0.95:
            label = HealthLabel.EXCELLENT
        elif success_rate >= 0.85:
            label = HealthLabel.GOOD
        elif success_rate >= 0.7:
            label = HealthLabel.FAIR
        else:
            label = HealthLabel.POOR

        return DomainHealth(
            domain=domain,
            success_rate=round(success_rate, 4),
            consecutive_errors=state.consecutive_errors,
            is_circuit_open=circuit_open,
            last_success_at=state.last_success_at,
            last_error=state.last_error,
            label=label,
        )

    def get_all_health(self) -> dict[str, DomainHealth]:
        return {domain: self.get_health(domain) for domain in list(self._domains)}
