"""Structural fingerprinting and drift detection for endpoint pages.

A fingerprint is a compact structural summary of a listing page. Comparing
the current fingerprint with the APPROVED baseline tells us when a site
redesign has silently broken our selectors.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError
from sqlalchemy import select

from regwatch.core.events import AuditLogger, BaselineApprovedEvent, DriftDetectedEvent
from regwatch.core.queue import WorkQueue
from regwatch.exceptions import RecordNotFoundError
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import (
    BaselineStatus,
    DiscoveryEndpoint,
    StructuralBaseline,
    WorkKind,
)
from regwatch.storage.session import session_scope
from regwatch.utils.datetime import utc_now
from regwatch.utils.logging import get_logger, log_drift_detected

logger = get_logger(__name__)

STRUCTURAL_TAGS = (
    "div",
    "p",
    "a",
    "table",
    "tr",
    "td",
    "ul",
    "li",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "article",
    "section",
    "span",
    "form",
)

DRIFT_WEIGHTS = {
    "tags": 0.25,
    "selectors": 0.40,
    "content_ratio": 0.25,
    "elements": 0.10,
}

DEFAULT_DRIFT_THRESHOLD = 30.0


@dataclass
class StructuralFingerprint:
    tag_counts: dict[str, int]
    selector_yields: dict[str, int]
    content_ratio: float
    total_elements: int
    captured_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tag_counts": dict(self.tag_counts),
            "selector_yields": dict(self.selector_yields),
            "content_ratio": self.content_ratio,
            "total_elements": self.total_elements,
            "captured_at": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StructuralFingerprint:
        captured = data.get("captured_at")
        return cls(
            tag_counts={k: int(v) for k, v in data.get("tag_counts", {}).items()},
            selector_yields={k: int(v) for k, v in data.get("selector_yields", {}).items()},
            content_ratio=float(data.get("content_ratio", 0.0)),
            total_elements=int(data.get("total_elements", 0)),
            captured_at=datetime.fromisoformat(captured) if captured else utc_now(),
        )


@dataclass
class DriftResult:
    drift_percent: float
    should_alert: bool
    threshold: float
    components: dict[str, float] = field(default_factory=dict)
    baseline_pending: bool = False


def fingerprint(content: str, selectors: Sequence[str] = ()) -> StructuralFingerprint:
    """Summarize the structure of an HTML page."""
    soup = BeautifulSoup(content or "", "html.parser")

    tag_counts = {tag: len(soup.find_all(tag)) for tag in STRUCTURAL_TAGS}

    selector_yields: dict[str, int] = {}
    for selector in selectors:
        try:
            selector_yields[selector] = len(soup.select(selector))
        except SelectorSyntaxError:
            logger.warning("fingerprint_invalid_selector", selector=selector)
            selector_yields[selector] = 0

    text_length = len(soup.get_text(strip=True))
    html_length = len(content or "")
    content_ratio = min(text_length / html_length, 1.0) if html_length else 0.0

    return StructuralFingerprint(
        tag_counts=tag_counts,
        selector_yields=selector_yields,
        content_ratio=round(content_ratio, 4),
        total_elements=len(soup.find_all(True)),
    )


def _tag_score(current: StructuralFingerprint, baseline: StructuralFingerprint) -> float:
    tags = set(current.tag_counts) | set(baseline.tag_counts)
    total_diff = 0
    total_max = 0
    for tag in tags:
        a = baseline.tag_counts.get(tag, 0)
        b = current.tag_counts.get(tag, 0)
        total_diff += abs(a - b)
        total_max += max(a, b)
    return total_diff / total_max * 100 if total_max else 0.0


def _selector_score(current: StructuralFingerprint, baseline: StructuralFingerprint) -> float:
    selectors = list(baseline.selector_yields)
    if not selectors:
        return 0.0

    scores = []
    for selector in selectors:
        before = baseline.selector_yields.get(selector, 0)
        after = current.selector_yields.get(selector, 0)
        if before > 0 and after == 0:
            # Selector stopped matching
            scores.append(100.0)
        elif max(before, after) == 0:
            scores.append(0.0)
        else:
            scores.append(abs(before - after) / max(before, after) * 100)
    return sum(scores) / len(scores)


def _ratio_score(current: StructuralFingerprint, baseline: StructuralFingerprint) -> float:
    top = max(current.content_ratio, baseline.content_ratio)
    if top == 0:
        return 0.0
    return abs(current.content_ratio - baseline.content_ratio) / top * 100


def _element_score(current: StructuralFingerprint, baseline: StructuralFingerprint) -> float:
    if baseline.total_elements == 0:
        return 100.0 if current.total_elements > 0 else 0.0
    diff = abs(current.total_elements - baseline.total_elements)
    return min(diff / baseline.total_elements * 100, 100.0)


def check_drift(
    current: StructuralFingerprint,
    baseline: StructuralFingerprint,
    threshold: float = DEFAULT_DRIFT_THRESHOLD,
) -> DriftResult:
    """Weighted structural distance between two fingerprints, in percent."""
    components = {
        "tags": _tag_score(current, baseline),
        "selectors": _selector_score(current, baseline),
        "content_ratio": _ratio_score(current, baseline),
        "elements": _element_score(current, baseline),
    }
    drift = sum(DRIFT_WEIGHTS[name] * score for name, score in components.items())
    drift_percent = round(drift, 2)

    return DriftResult(
        drift_percent=drift_percent,
        should_alert=drift_percent > threshold,
        threshold=threshold,
        components={name: round(score, 2) for name, score in components.items()},
    )


# Baseline governance


def _baseline_for(db, endpoint_id: int, status: BaselineStatus) -> StructuralBaseline | None:
    return db.scalars(
        select(StructuralBaseline)
        .where(StructuralBaseline.endpoint_id == endpoint_id)
        .where(StructuralBaseline.status == status)
        .order_by(StructuralBaseline.id.desc())
    ).first()


def get_approved_baseline(session_factory: SessionFactory, endpoint_id: int) -> StructuralBaseline | None:
    with session_scope(session_factory) as db:
        return _baseline_for(db, endpoint_id, BaselineStatus.APPROVED)


def create_initial_baseline(
    session_factory: SessionFactory, endpoint_id: int, fp: StructuralFingerprint
) -> StructuralBaseline:
    """Store the first fingerprint of an endpoint. It stays PENDING until approved."""
    with session_scope(session_factory) as db:
        baseline = StructuralBaseline(
            endpoint_id=endpoint_id,
            fingerprint=fp.to_dict(),
            status=BaselineStatus.PENDING,
            updated_by="initial",
        )
        db.add(baseline)
        db.flush()
        logger.info("baseline_created", endpoint_id=endpoint_id, baseline_id=baseline.id)
        return baseline


def propose_baseline_update(
    session_factory: SessionFactory,
    endpoint_id: int,
    fp: StructuralFingerprint,
    proposed_by: str,
) -> StructuralBaseline:
    """Store a candidate baseline; the approved one stays in force until review."""
    with session_scope(session_factory) as db:
        baseline = StructuralBaseline(
            endpoint_id=endpoint_id,
            fingerprint=fp.to_dict(),
            status=BaselineStatus.PENDING,
            updated_by=proposed_by,
        )
        db.add(baseline)
        db.flush()
        logger.info(
            "baseline_update_proposed",
            endpoint_id=endpoint_id,
            baseline_id=baseline.id,
            proposed_by=proposed_by,
        )
        return baseline


def approve_baseline(
    session_factory: SessionFactory,
    baseline_id: int,
    approved_by: str,
    audit: AuditLogger | None = None,
) -> StructuralBaseline:
    """Promote a pending baseline and supersede the previously approved one."""
    with session_scope(session_factory) as db:
        baseline = db.get(StructuralBaseline, baseline_id)
        if baseline is None:
            raise RecordNotFoundError(
                f"Baseline {baseline_id} not found",
                entity_type="StructuralBaseline",
                entity_id=baseline_id,
            )

        previous = _baseline_for(db, baseline.endpoint_id, BaselineStatus.APPROVED)
        if previous is not None and previous.id != baseline.id:
            previous.status = BaselineStatus.SUPERSEDED

        baseline.status = BaselineStatus.APPROVED
        baseline.approved_by = approved_by
        baseline.approved_at = utc_now()
        endpoint_id = baseline.endpoint_id

    if audit is not None:
        audit.record(
            BaselineApprovedEvent(
                baseline_id=baseline_id, endpoint_id=endpoint_id, approved_by=approved_by
            )
        )
    logger.info("baseline_approved", baseline_id=baseline_id, approved_by=approved_by)
    return baseline


class DriftMonitor:
    """Per-cycle drift evaluation of an endpoint page."""

    def __init__(
        self,
        session_factory: SessionFactory,
        queue: WorkQueue,
        audit: AuditLogger | None = None,
        threshold: float = DEFAULT_DRIFT_THRESHOLD,
    ) -> None:
        self._session_factory = session_factory
        self.queue = queue
        self.audit = audit or AuditLogger()
        self.threshold = threshold

    @staticmethod
    def adaptation_key(endpoint_id: int, cycle_id: str) -> str:
        return f"selector-adaptation:{endpoint_id}:{cycle_id}"

    def evaluate(
        self,
        endpoint: DiscoveryEndpoint,
        html: str,
        new_item_count: int,
        cycle_id: str,
    ) -> DriftResult:
        """Fingerprint the page, compare with the approved baseline and signal drift.

        Selector adaptation is requested only when the page drifted *and* the
        scan found nothing new: drift with new items means the selectors still
        work.
        """
        selectors = list((endpoint.meta or {}).get("selectors", []))
        current = fingerprint(html, selectors)

        with session_scope(self._session_factory) as db:
            approved = _baseline_for(db, endpoint.id, BaselineStatus.APPROVED)
            has_any = approved is not None or _baseline_for(
                db, endpoint.id, BaselineStatus.PENDING
            ) is not None

        if approved is None:
            if not has_any:
                create_initial_baseline(self._session_factory, endpoint.id, current)
            logger.info("drift_baseline_pending", endpoint_id=endpoint.id)
            return DriftResult(
                drift_percent=0.0,
                should_alert=False,
                threshold=self.threshold,
                baseline_pending=True,
            )

        result = check_drift(
            current, StructuralFingerprint.from_dict(approved.fingerprint), self.threshold
        )
        if not result.should_alert:
            logger.debug(
                "drift_within_threshold",
                endpoint_id=endpoint.id,
                drift_percent=result.drift_percent,
            )
            return result

        log_drift_detected(logger, endpoint.id, result.drift_percent, self.threshold)

        enqueued = False
        if new_item_count == 0:
            enqueued = self.queue.enqueue(
                WorkKind.SELECTOR_ADAPTATION,
                {
                    "endpoint_id": endpoint.id,
                    "drift_percent": result.drift_percent,
                    "cycle_id": cycle_id,
                },
                self.adaptation_key(endpoint.id, cycle_id),
            )

        self.audit.record(
            DriftDetectedEvent(
                endpoint_id=endpoint.id,
                drift_percent=result.drift_percent,
                threshold=self.threshold,
                new_item_count=new_item_count,
                adaptation_enqueued=enqueued,
            )
        )
        return result
