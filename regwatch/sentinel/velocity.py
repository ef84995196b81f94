"""Change-velocity tracking and next-scan calculation.

Each discovered item carries an exponentially weighted estimate of how often
it changes. Items that change often are rescanned sooner; stable items back
off toward the maximum interval.
"""

import hashlib
import re
from datetime import datetime, timedelta

from regwatch.storage.database.models import EndpointPriority, FreshnessRisk
from regwatch.utils.config import SentinelConfig
from regwatch.utils.datetime import utc_now

MIN_FREQUENCY = 0.01
MAX_FREQUENCY = 0.99
JITTER_FRACTION = 0.10

CRITICAL_URL_KEYWORDS = (
    "porez",
    "pdv",
    "stopa",
    "rok",
    "zakon",
    "pravilnik",
    "tax",
    "rate",
    "deadline",
)
ARCHIVE_PATTERN = re.compile(r"arhiva|archive|/20[01]\d/", re.IGNORECASE)

RISK_RANK = {
    FreshnessRisk.CRITICAL: 0,
    FreshnessRisk.HIGH: 1,
    FreshnessRisk.MEDIUM: 2,
    FreshnessRisk.LOW: 3,
}


def update_velocity(frequency: float, scan_count: int, changed: bool) -> float:
    """EWMA update of an item's change frequency.

    The learning rate starts at 0.3 and decays with scan count (floor 0.1) so
    early observations move the estimate quickly.
    """
    alpha = max(0.1, 0.3 / (1 + scan_count / 10))
    target = 1.0 if changed else 0.0
    new_frequency = frequency + alpha * (target - frequency)
    return min(MAX_FREQUENCY, max(MIN_FREQUENCY, new_frequency))


def base_interval_hours(risk: FreshnessRisk, config: SentinelConfig | None = None) -> float:
    config = config or SentinelConfig()
    return {
        FreshnessRisk.CRITICAL: config.interval_critical_hours,
        FreshnessRisk.HIGH: config.interval_high_hours,
        FreshnessRisk.MEDIUM: config.interval_medium_hours,
        FreshnessRisk.LOW: config.interval_low_hours,
    }[risk]


def _jitter(seed: str | None) -> float:
    """Deterministic factor in [1 - JITTER_FRACTION, 1 + JITTER_FRACTION]."""
    if not seed:
        return 1.0
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    unit = int.from_bytes(digest[:8], "big") / 2**64
    return 1.0 + (unit * 2 - 1) * JITTER_FRACTION


def calculate_next_scan(
    frequency: float,
    risk: FreshnessRisk,
    now: datetime | None = None,
    seed: str | None = None,
    config: SentinelConfig | None = None,
) -> datetime:
    """When an item should next be scanned.

    Higher frequency yields a shorter interval. For the same risk tier and
    seed, a changed item is therefore due earlier than an unchanged one,
    unless both intervals are clamped to the same bound.
    """
    config = config or SentinelConfig()
    now = now or utc_now()

    interval = base_interval_hours(risk, config) * (1 - frequency) * 2
    interval *= _jitter(seed)
    interval = min(config.max_interval_hours, max(config.min_interval_hours, interval))

    return now + timedelta(hours=interval)


def classify_url_risk(url: str, endpoint_priority: EndpointPriority | None = None) -> FreshnessRisk:
    """Freshness risk of a URL from its text and the endpoint's priority."""
    lowered = url.lower()

    if any(keyword in lowered for keyword in CRITICAL_URL_KEYWORDS):
        return FreshnessRisk.CRITICAL

    if endpoint_priority in (EndpointPriority.CRITICAL, EndpointPriority.HIGH):
        return FreshnessRisk.HIGH

    if ARCHIVE_PATTERN.search(lowered):
        return FreshnessRisk.LOW

    return FreshnessRisk.MEDIUM
