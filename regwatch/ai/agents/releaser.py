"""Releaser: publishes APPROVED rules as a versioned, hashed release."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select

from regwatch.ai.agents.summaries import rule_payload
from regwatch.core.events import AuditLogger, BaseEvent, RulePublishedEvent
from regwatch.rules.conflicts import active_rule, has_open_conflict
from regwatch.rules.state import apply_transition
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import RegulatoryRule, RiskTier, RuleRelease, RuleStatus
from regwatch.storage.session import session_scope
from regwatch.utils.datetime import ensure_aware, utc_now
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)

RELEASER_ACTOR = "RELEASER"
EARLIEST = datetime.min.replace(tzinfo=UTC)


@dataclass
class ReleaseResult:
    success: bool
    version: str | None = None
    release_id: int | None = None
    published_rule_ids: list[int] = field(default_factory=list)
    superseded_rule_ids: list[int] = field(default_factory=list)
    skipped: dict[int, str] = field(default_factory=dict)
    error: str | None = None


def bump_version(previous: str | None, tiers: set[RiskTier]) -> str:
    """Semver bump: major for any T0, minor for T1, patch otherwise."""
    major, minor, patch = (int(part) for part in (previous or "0.0.0").split("."))
    if RiskTier.T0 in tiers:
        return f"{major + 1}.0.0"
    if RiskTier.T1 in tiers:
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"


def content_hash(payloads: list[dict]) -> str:
    ordered = sorted(payloads, key=lambda p: p["id"])
    canonical = json.dumps(ordered, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def changelog(rules: list[RegulatoryRule], superseded: dict[int, int]) -> str:
    lines = []
    for rule in rules:
        line = f"- [{rule.risk_tier.value}] {rule.concept_slug}: {rule.value} ({rule.value_type})"
        if rule.id in superseded:
            line += f", supersedes rule {superseded[rule.id]}"
        lines.append(line)
    return "\n".join(lines)


class Releaser:
    def __init__(self, session_factory: SessionFactory, audit: AuditLogger | None = None) -> None:
        self._session_factory = session_factory
        self.audit = audit or AuditLogger()

    def release(self, rule_ids: list[int], approved_by: list[str] | None = None) -> ReleaseResult:
        result = ReleaseResult(success=False)
        events: list[BaseEvent] = []
        superseded: dict[int, int] = {}

        with session_scope(self._session_factory) as db:
            rules = db.scalars(
                select(RegulatoryRule).where(RegulatoryRule.id.in_(rule_ids))
            ).all()
            found = {rule.id for rule in rules}
            for missing in sorted(set(rule_ids) - found):
                result.skipped[missing] = "not found"

            eligible = []
            for rule in rules:
                if rule.status != RuleStatus.APPROVED:
                    result.skipped[rule.id] = f"status {rule.status.value}, not APPROVED"
                elif rule.is_active:
                    result.skipped[rule.id] = "already published"
                elif has_open_conflict(db, rule.id):
                    result.skipped[rule.id] = "blocked by open conflict"
                else:
                    eligible.append(rule)

            if not eligible:
                result.error = "No eligible rules to release"
                logger.info("release_skipped", skipped=result.skipped)
                return result

            # Oldest effective date first so a later rule supersedes an earlier one in the same batch
            eligible.sort(key=lambda r: (ensure_aware(r.effective_from) or EARLIEST, r.id))
            now = utc_now()
            for rule in eligible:
                prior = active_rule(db, rule.concept_slug, exclude_id=rule.id)
                if prior is not None:
                    prior.effective_until = rule.effective_from or now
                    events.append(
                        apply_transition(
                            prior, RuleStatus.DEPRECATED, RELEASER_ACTOR, f"superseded by rule {rule.id}"
                        )
                    )
                    rule.supersedes_id = prior.id
                    superseded[rule.id] = prior.id
                rule.is_active = True
                rule.published_at = now
                db.flush()

            previous = db.scalar(select(RuleRelease.version).order_by(RuleRelease.id.desc()).limit(1))
            version = bump_version(previous, {rule.risk_tier for rule in eligible})
            release = RuleRelease(
                version=version,
                released_at=now,
                rule_ids=[rule.id for rule in eligible],
                content_hash=content_hash([rule_payload(rule) for rule in eligible]),
                changelog=changelog(eligible, superseded),
                approved_by=approved_by or sorted({r.approved_by for r in eligible if r.approved_by}),
            )
            db.add(release)
            db.flush()

            result.success = True
            result.version = version
            result.release_id = release.id
            result.published_rule_ids = [rule.id for rule in eligible]
            result.superseded_rule_ids = list(superseded.values())

        for event in events:
            self.audit.record(event)
        for rule_id in result.published_rule_ids:
            self.audit.record(
                RulePublishedEvent(
                    rule_id=rule_id,
                    release_version=result.version,
                    superseded_rule_id=superseded.get(rule_id),
                )
            )

        logger.info(
            "rules_released",
            version=result.version,
            rules=len(result.published_rule_ids),
            superseded=len(superseded),
            skipped=len(result.skipped),
        )
        return result

    def run_release_batch(self, limit: int = 50) -> ReleaseResult:
        """Publish APPROVED rules that no release has picked up yet, such as human approvals."""
        with session_scope(self._session_factory) as db:
            rule_ids = list(
                db.scalars(
                    select(RegulatoryRule.id)
                    .where(
                        RegulatoryRule.status == RuleStatus.APPROVED,
                        RegulatoryRule.is_active.is_(False),
                        RegulatoryRule.published_at.is_(None),
                    )
                    .order_by(RegulatoryRule.id)
                    .limit(limit)
                )
            )
        if not rule_ids:
            return ReleaseResult(success=False, error="No eligible rules to release")
        return self.release(rule_ids)

    def get_active_rule(self, concept_slug: str, as_of: datetime | None = None) -> RegulatoryRule | None:
        with session_scope(self._session_factory) as db:
            return active_rule(db, concept_slug, as_of=as_of)
