"""Sentinel orchestration: endpoint discovery runs and adaptive item rescans.

Example:
    >>> limiter = DomainRateLimiter(settings.rate_limit)
    >>> async with FetchClient(limiter, settings.fetch) as client:
    ...     sentinel = Sentinel(client, session_factory, queue, store)
    ...     result = await sentinel.run_sentinel(EndpointPriority.CRITICAL)
    ...     summary = await sentinel.scheduler.run_due_scans()
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from regwatch.core.events import AuditLogger, SentinelAnomalyEvent
from regwatch.core.queue import WorkQueue
from regwatch.evidence.store import EvidenceStore
from regwatch.evidence.text import normalize_html_for_hash
from regwatch.exceptions import RegwatchError
from regwatch.sentinel.discovery import DiscoveryScanner
from regwatch.sentinel.fetcher import FetchClient, FetchSuccess
from regwatch.sentinel.fingerprint import DriftMonitor
from regwatch.sentinel.rate_limiter import DomainRateLimiter
from regwatch.sentinel.velocity import calculate_next_scan, update_velocity
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import (
    DiscoveredItem,
    DiscoveredItemStatus,
    DiscoveryEndpoint,
    EndpointPriority,
    FreshnessRisk,
    RegulatorySource,
    ScrapeFrequency,
    WorkKind,
)
from regwatch.storage.session import session_scope
from regwatch.utils.config import SentinelConfig, get_settings
from regwatch.utils.datetime import ensure_aware, utc_now
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)

SCRAPE_INTERVAL_HOURS = {
    ScrapeFrequency.EVERY_RUN: 0,
    ScrapeFrequency.DAILY: 24,
    ScrapeFrequency.TWICE_WEEKLY: 84,
    ScrapeFrequency.WEEKLY: 168,
    ScrapeFrequency.MONTHLY: 720,
}


@dataclass(frozen=True)
class ManifestEntry:
    """A due item, detached from the session that selected it."""

    item_id: int
    endpoint_id: int
    domain: str
    url: str
    content_hash: str | None
    change_frequency: float
    scan_count: int
    freshness_risk: FreshnessRisk
    next_scan_due: datetime
    retry_count: int


@dataclass
class ScanSummary:
    scanned: int = 0
    changed: int = 0
    unchanged: int = 0
    failed: int = 0
    evidence_created: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class SentinelResult:
    cycle_id: str
    endpoints_checked: int = 0
    new_items: int = 0
    errors: int = 0
    anomalies: int = 0
    drift_alerts: int = 0


def risk_rank():
    """SQL expression ordering CRITICAL first."""
    return case(
        (DiscoveredItem.freshness_risk == FreshnessRisk.CRITICAL, 0),
        (DiscoveredItem.freshness_risk == FreshnessRisk.HIGH, 1),
        (DiscoveredItem.freshness_risk == FreshnessRisk.MEDIUM, 2),
        else_=3,
    )


def get_due_manifest(
    session: Session,
    now: datetime | None = None,
    limit: int = 500,
    rate_limiter: DomainRateLimiter | None = None,
) -> list[ManifestEntry]:
    """Items due for a rescan, most at-risk first, then oldest due first."""
    now = now or utc_now()
    stmt = (
        select(DiscoveredItem, DiscoveryEndpoint.domain)
        .join(DiscoveryEndpoint, DiscoveredItem.endpoint_id == DiscoveryEndpoint.id)
        .where(DiscoveredItem.next_scan_due <= now)
        .where(DiscoveredItem.status != DiscoveredItemStatus.SKIPPED)
        .where(DiscoveryEndpoint.is_active.is_(True))
    )

    open_domains = rate_limiter.open_circuits() if rate_limiter is not None else []
    if open_domains:
        stmt = stmt.where(DiscoveryEndpoint.domain.not_in(open_domains))

    stmt = stmt.order_by(risk_rank(), DiscoveredItem.next_scan_due, DiscoveredItem.id).limit(limit)

    return [
        ManifestEntry(
            item_id=item.id,
            endpoint_id=item.endpoint_id,
            domain=domain,
            url=item.url,
            content_hash=item.content_hash,
            change_frequency=item.change_frequency,
            scan_count=item.scan_count,
            freshness_risk=item.freshness_risk,
            next_scan_due=ensure_aware(item.next_scan_due),
            retry_count=item.retry_count or 0,
        )
        for item, domain in session.execute(stmt).all()
    ]


def get_or_create_source(session_factory: SessionFactory, domain: str) -> RegulatorySource:
    """Source for a domain, created on first sight."""
    domain = domain.lower()
    with session_scope(session_factory) as db:
        source = db.scalars(select(RegulatorySource).where(RegulatorySource.domain == domain)).first()
        if source is not None:
            return source

    try:
        with session_scope(session_factory) as db:
            source = RegulatorySource(
                slug=domain.replace(".", "-"),
                name=domain,
                domain=domain,
                url=f"https://{domain}",
            )
            db.add(source)
            db.flush()
            logger.info("regulatory_source_created", domain=domain, source_id=source.id)
            return source
    except IntegrityError:
        with session_scope(session_factory) as db:
            return db.scalars(
                select(RegulatorySource).where(RegulatorySource.domain == domain)
            ).one()


def content_hash_of(result: FetchSuccess) -> str:
    """Change-detection hash; HTML ignores scripts, styles and whitespace."""
    if "html" in result.content_type.lower():
        return hashlib.sha256(normalize_html_for_hash(result.text).encode("utf-8")).hexdigest()
    return hashlib.sha256(result.content).hexdigest()


class AdaptiveScheduler:
    """Rescans due items and feeds changed content into the Evidence Store."""

    def __init__(
        self,
        fetch_client: FetchClient,
        session_factory: SessionFactory,
        queue: WorkQueue,
        store: EvidenceStore,
        config: SentinelConfig | None = None,
    ) -> None:
        self.fetch_client = fetch_client
        self._session_factory = session_factory
        self.queue = queue
        self.store = store
        self.config = config or get_settings().sentinel

    def get_due_manifest(self, now: datetime | None = None) -> list[ManifestEntry]:
        with session_scope(self._session_factory) as db:
            return get_due_manifest(
                db, now, self.config.manifest_limit, self.fetch_client.rate_limiter
            )

    async def run_due_scans(self, now: datetime | None = None) -> ScanSummary:
        """Scan every due item: endpoints in parallel, items within one endpoint in order."""
        manifest = self.get_due_manifest(now)
        summary = ScanSummary()
        if not manifest:
            logger.info("due_manifest_empty")
            return summary

        groups: dict[int, list[ManifestEntry]] = defaultdict(list)
        for entry in manifest:
            groups[entry.endpoint_id].append(entry)

        semaphore = asyncio.Semaphore(self.config.max_concurrent_groups)

        async def run_group(entries: list[ManifestEntry]) -> None:
            async with semaphore:
                for entry in sorted(entries, key=lambda e: e.next_scan_due):
                    await self._scan_item(entry, summary)

        logger.info("due_scans_started", items=len(manifest), endpoints=len(groups))
        await asyncio.gather(*(run_group(entries) for entries in groups.values()))
        logger.info(
            "due_scans_completed",
            scanned=summary.scanned,
            changed=summary.changed,
            failed=summary.failed,
        )
        return summary

    async def _scan_item(self, entry: ManifestEntry, summary: ScanSummary) -> None:
        summary.scanned += 1
        result = await self.fetch_client.fetch(entry.url)
        now = utc_now()

        if not isinstance(result, FetchSuccess):
            summary.failed += 1
            summary.errors.append(f"{entry.url}: {result.error}")
            self._record_failure(entry, str(result.error), now)
            return

        content_hash = content_hash_of(result)
        changed = content_hash != entry.content_hash
        frequency = update_velocity(entry.change_frequency, entry.scan_count, changed)
        next_due = calculate_next_scan(
            frequency, entry.freshness_risk, now=now, seed=entry.url, config=self.config
        )

        evidence_id = None
        if changed:
            summary.changed += 1
            try:
                source = get_or_create_source(self._session_factory, entry.domain)
                capture = self.store.capture(
                    entry.url, result.content, result.content_type, source_id=source.id
                )
            except RegwatchError as e:
                summary.failed += 1
                summary.errors.append(f"{entry.url}: {e}")
                self._record_failure(entry, str(e), now)
                return

            evidence_id = capture.evidence.id
            if capture.created:
                summary.evidence_created += 1
            # Scanned PDFs are extracted after OCR, office documents after conversion
            if capture.ready_for_extraction:
                self.queue.enqueue(
                    WorkKind.EXTRACTION,
                    {"evidence_id": evidence_id},
                    f"extraction:{evidence_id}",
                )
        else:
            summary.unchanged += 1

        with session_scope(self._session_factory) as db:
            item = db.get(DiscoveredItem, entry.item_id)
            item.content_hash = content_hash
            item.change_frequency = frequency
            item.scan_count = entry.scan_count + 1
            item.next_scan_due = next_due
            item.status = DiscoveredItemStatus.FETCHED
            item.retry_count = 0
            item.error_message = None
            if changed:
                item.last_changed_at = now
                item.evidence_id = evidence_id

        logger.debug(
            "item_scanned",
            item_id=entry.item_id,
            changed=changed,
            change_frequency=round(frequency, 3),
            next_scan_due=next_due.isoformat(),
        )

    def _record_failure(self, entry: ManifestEntry, error: str, now: datetime) -> None:
        retry_count = entry.retry_count + 1
        with session_scope(self._session_factory) as db:
            item = db.get(DiscoveredItem, entry.item_id)
            item.retry_count = retry_count
            item.error_message = error[:2000]
            if retry_count > self.config.max_item_retries:
                item.status = DiscoveredItemStatus.SKIPPED
            else:
                item.status = DiscoveredItemStatus.FAILED
                backoff = self.config.min_interval_hours * (2**retry_count)
                item.next_scan_due = now + timedelta(hours=backoff)

        logger.warning("item_scan_failed", item_id=entry.item_id, retry_count=retry_count, error=error)


def endpoint_is_due(endpoint: DiscoveryEndpoint, now: datetime | None = None) -> bool:
    """Whether an endpoint's scrape frequency makes it due for discovery."""
    if endpoint.last_scraped_at is None:
        return True
    hours = SCRAPE_INTERVAL_HOURS[endpoint.scrape_frequency]
    if hours == 0:
        return True
    now = now or utc_now()
    return now - ensure_aware(endpoint.last_scraped_at) >= timedelta(hours=hours)


class Sentinel:
    """One discovery pass over the configured endpoints."""

    def __init__(
        self,
        fetch_client: FetchClient,
        session_factory: SessionFactory,
        queue: WorkQueue,
        store: EvidenceStore,
        audit: AuditLogger | None = None,
        config: SentinelConfig | None = None,
    ) -> None:
        self.config = config or get_settings().sentinel
        self._session_factory = session_factory
        self.audit = audit or AuditLogger()
        self.scanner = DiscoveryScanner(fetch_client, session_factory, self.config)
        self.drift_monitor = DriftMonitor(
            session_factory, queue, self.audit, threshold=self.config.drift_threshold
        )
        self.scheduler = AdaptiveScheduler(fetch_client, session_factory, queue, store, self.config)

    def _due_endpoints(self, priority: EndpointPriority | None, now: datetime) -> list[DiscoveryEndpoint]:
        with session_scope(self._session_factory) as db:
            stmt = select(DiscoveryEndpoint).where(DiscoveryEndpoint.is_active.is_(True))
            if priority is not None:
                stmt = stmt.where(DiscoveryEndpoint.priority == priority)
            endpoints = db.scalars(stmt.order_by(DiscoveryEndpoint.id)).all()
        return [e for e in endpoints if endpoint_is_due(e, now)]

    def _known_item_count(self, endpoint_id: int) -> int:
        with session_scope(self._session_factory) as db:
            return db.scalar(
                select(func.count(DiscoveredItem.id)).where(DiscoveredItem.endpoint_id == endpoint_id)
            ) or 0

    def _anomaly(self, endpoint_id: int, anomaly: str, detail: str, result: SentinelResult) -> None:
        result.anomalies += 1
        logger.warning("sentinel_anomaly", endpoint_id=endpoint_id, anomaly=anomaly, detail=detail)
        self.audit.record(SentinelAnomalyEvent(endpoint_id=endpoint_id, anomaly=anomaly, detail=detail))

    async def run_sentinel(
        self,
        priority: EndpointPriority | None = None,
        cycle_id: str | None = None,
    ) -> SentinelResult:
        """Discover new items on every due endpoint, several endpoints at a time.

        Endpoint errors never abort the run; the rate limiter keeps each
        domain polite.
        """
        cycle_id = cycle_id or uuid.uuid4().hex
        now = utc_now()
        result = SentinelResult(cycle_id=cycle_id)
        endpoints = self._due_endpoints(priority, now)

        logger.info(
            "sentinel_run_started",
            cycle_id=cycle_id,
            priority=priority.value if priority else None,
            endpoints=len(endpoints),
        )

        semaphore = asyncio.Semaphore(self.config.max_concurrent_groups)

        async def check(endpoint: DiscoveryEndpoint) -> None:
            async with semaphore:
                result.endpoints_checked += 1
                try:
                    await self._check_endpoint(endpoint, result, now, cycle_id)
                except Exception as e:
                    logger.error(
                        "endpoint_check_crashed",
                        endpoint_id=endpoint.id,
                        error=str(e),
                        exc_info=True,
                    )
                    result.errors += 1
                    self._record_endpoint_error(endpoint.id, f"{type(e).__name__}: {e}")

        await asyncio.gather(*(check(endpoint) for endpoint in endpoints))

        logger.info(
            "sentinel_run_completed",
            cycle_id=cycle_id,
            endpoints_checked=result.endpoints_checked,
            new_items=result.new_items,
            errors=result.errors,
        )
        return result

    async def _check_endpoint(
        self,
        endpoint: DiscoveryEndpoint,
        result: SentinelResult,
        now: datetime,
        cycle_id: str,
    ) -> None:
        known_before = self._known_item_count(endpoint.id)
        try:
            outcome = await self.scanner.scan(endpoint)
        except RegwatchError as e:
            result.errors += 1
            self._record_endpoint_error(endpoint.id, str(e))
            return

        new_items = self.scanner.persist_discovered(endpoint, outcome.urls)
        result.new_items += new_items

        if not outcome.urls and known_before > 0:
            self._anomaly(
                endpoint.id,
                "ZERO_ITEMS",
                f"No items found; {known_before} previously discovered",
                result,
            )
        if outcome.duplicates_removed > len(outcome.urls):
            self._anomaly(
                endpoint.id,
                "DUPLICATE_URLS",
                f"{outcome.duplicates_removed} duplicates for {len(outcome.urls)} unique urls",
                result,
            )

        drift = self.drift_monitor.evaluate(endpoint, outcome.page_html, new_items, cycle_id)
        if drift.should_alert:
            result.drift_alerts += 1

        with session_scope(self._session_factory) as db:
            row = db.get(DiscoveryEndpoint, endpoint.id)
            row.last_scraped_at = now
            row.last_content_hash = hashlib.sha256(
                normalize_html_for_hash(outcome.page_html).encode("utf-8")
            ).hexdigest()
            row.consecutive_errors = 0
            row.last_error = None

    def _record_endpoint_error(self, endpoint_id: int, error: str) -> None:
        with session_scope(self._session_factory) as db:
            row = db.get(DiscoveryEndpoint, endpoint_id)
            row.consecutive_errors = (row.consecutive_errors or 0) + 1
            row.last_error = error[:2000]
            errors = row.consecutive_errors
        logger.warning("endpoint_scan_failed", endpoint_id=endpoint_id, consecutive_errors=errors, error=error)


class SentinelScheduler:
    """Periodic sentinel runs per endpoint priority.

    Uses APScheduler AsyncIOScheduler: every job is a coroutine on the event
    loop that called ``start``, the loop the shared fetch client and rate
    limiter live on. Call ``start`` from inside that running loop.
    """

    JOBS = (
        ("sentinel_critical", EndpointPriority.CRITICAL, "schedule_critical_hours"),
        ("sentinel_high", EndpointPriority.HIGH, "schedule_high_hours"),
        ("sentinel_normal", EndpointPriority.MEDIUM, "schedule_normal_hours"),
        ("sentinel_low", EndpointPriority.LOW, "schedule_low_hours"),
    )

    def __init__(self, sentinel: Sentinel, config: SentinelConfig | None = None) -> None:
        self.sentinel = sentinel
        self.config = config or sentinel.config
        self.scheduler = AsyncIOScheduler()
        self.running = False
        self.last_runs: dict[str, datetime] = {}

    def register_jobs(self) -> None:
        for job_id, priority, setting in self.JOBS:
            hours = getattr(self.config, setting)
            self.scheduler.add_job(
                func=self._run_job,
                trigger=IntervalTrigger(hours=hours),
                args=[job_id, priority],
                id=job_id,
                name=f"Sentinel {priority.value}",
                replace_existing=True,
            )
        self.scheduler.add_job(
            func=self._run_due_scans,
            trigger=IntervalTrigger(hours=self.config.min_interval_hours),
            id="adaptive_scan",
            name="Adaptive rescans",
            replace_existing=True,
        )

    def start(self) -> None:
        if self.running:
            logger.warning("sentinel_scheduler_already_running")
            return
        self.register_jobs()
        self.scheduler.start()
        self.running = True
        logger.info("sentinel_scheduler_started", jobs=[job[0] for job in self.JOBS])

    def stop(self) -> None:
        if not self.running:
            logger.warning("sentinel_scheduler_not_running")
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("sentinel_scheduler_stopped")

    async def _run_job(self, job_id: str, priority: EndpointPriority) -> None:
        self.last_runs[job_id] = utc_now()
        try:
            await self.sentinel.run_sentinel(priority)
        except Exception as e:
            logger.error("sentinel_job_failed", job_id=job_id, error=str(e), exc_info=True)

    async def _run_due_scans(self) -> None:
        self.last_runs["adaptive_scan"] = utc_now()
        try:
            await self.sentinel.scheduler.run_due_scans()
        except Exception as e:
            logger.error("adaptive_scan_job_failed", error=str(e), exc_info=True)

    def get_status(self) -> dict[str, object]:
        return {
            "running": self.running,
            "jobs": [job.id for job in self.scheduler.get_jobs()],
            "last_runs": {k: v.isoformat() for k, v in self.last_runs.items()},
        }
