"""
Pytest configuration and global fixtures.

This module provides shared fixtures used across all tests: an in-memory
database, a fresh event bus with an audit sink, an in-memory work queue and a
scripted LLM provider.
"""

import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest

from regwatch.ai.agents.runner import AgentRunner
from regwatch.ai.domain.message import Message
from regwatch.ai.domain.response import AgentResponse, UsageMetrics
from regwatch.ai.providers.base import BaseLLMProvider
from regwatch.core.events import AuditLogger, BaseEvent, GlobalEventBus
from regwatch.core.queue import InMemoryWorkQueue
from regwatch.evidence.store import EvidenceStore
from regwatch.storage.database.base import create_session_factory
from regwatch.storage.database.models import (
    AuthorityLevel,
    Evidence,
    RegulatoryRule,
    RegulatorySource,
    RiskTier,
    RuleStatus,
    SourcePointer,
)
from regwatch.storage.session import session_scope
from regwatch.utils.config import AgentConfig

PDV_HTML = """
<html><body>
<article>
<h1>Zakon o porezu na dodanu vrijednost</h1>
<p>Članak 38. Stopa PDV-a iznosi 25% na sve isporuke dobara i usluga.</p>
<p>Snižena stopa PDV-a iznosi 13% za usluge smještaja.</p>
</article>
</body></html>
"""


class ScriptedProvider(BaseLLMProvider):
    """Fake LLM: replies come from a script, routed by the system prompt.

    ``script`` is either a list consumed in order, or a mapping from a prompt
    marker (a substring of the system prompt) to such a list. Items are JSON
    strings, dicts (serialized) or exceptions (raised).
    """

    def __init__(self, script: list[Any] | dict[str, list[Any]] | None = None) -> None:
        super().__init__(model="fake-model")
        self.script = script if script is not None else []
        self.calls: list[dict[str, Any]] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    def _next(self, system_prompt: str | None) -> Any:
        if isinstance(self.script, dict):
            for marker, replies in self.script.items():
                if system_prompt and marker in system_prompt:
                    return replies.pop(0)
            raise AssertionError(f"No scripted reply for prompt: {system_prompt[:60]!r}")
        return self.script.pop(0)

    async def generate(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> AgentResponse:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "input": json.loads(messages[-1].content),
                "temperature": temperature,
                "json_mode": json_mode,
            }
        )
        reply = self._next(system_prompt)
        if isinstance(reply, Exception):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return AgentResponse(
            content=content,
            provider="fake",
            model=self.model,
            usage=UsageMetrics(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )


class FakeSleep:
    """Records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite database per test."""
    factory = create_session_factory("sqlite:///:memory:")
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def event_bus() -> GlobalEventBus:
    return GlobalEventBus()


@pytest.fixture
def recorded_events(event_bus) -> list[BaseEvent]:
    events: list[BaseEvent] = []
    event_bus.subscribe(BaseEvent, events.append)
    return events


@pytest.fixture
def audit(event_bus) -> AuditLogger:
    return AuditLogger(event_bus)


@pytest.fixture
def queue() -> InMemoryWorkQueue:
    return InMemoryWorkQueue()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def make_runner(session_factory, fake_sleep) -> Callable[..., tuple[AgentRunner, ScriptedProvider]]:
    def _make(script=None, **config) -> tuple[AgentRunner, ScriptedProvider]:
        provider = ScriptedProvider(script)
        runner = AgentRunner(
            provider, session_factory, config=AgentConfig(**config), sleep=fake_sleep
        )
        return runner, provider

    return _make


@pytest.fixture
def store(session_factory, queue, audit) -> EvidenceStore:
    return EvidenceStore(session_factory, queue=queue, audit=audit)


@pytest.fixture
def law_source(session_factory) -> int:
    with session_scope(session_factory) as db:
        source = RegulatorySource(
            slug="narodne-novine",
            name="Narodne novine",
            domain="narodne-novine.nn.hr",
            url="https://narodne-novine.nn.hr",
            hierarchy=1,
        )
        db.add(source)
        db.flush()
        return source.id


@pytest.fixture
def pdv_evidence(store, law_source) -> Evidence:
    result = store.capture(
        "https://narodne-novine.nn.hr/clanci/sluzbeni/2013_06_73_1451.html",
        PDV_HTML.encode("utf-8"),
        "text/html; charset=utf-8",
        source_id=law_source,
    )
    return result.evidence


@pytest.fixture
def make_rule(session_factory) -> Callable[..., int]:
    """Insert a rule (with one pointer on a fresh evidence) and return its id."""

    def _make(
        concept_slug: str = "pdv-standardna-stopa",
        value: str = "25",
        risk_tier: RiskTier = RiskTier.T3,
        confidence: float = 0.9,
        status: RuleStatus = RuleStatus.DRAFT,
        authority_level: AuthorityLevel = AuthorityLevel.LAW,
        effective_from: datetime | None = datetime(2013, 7, 1, tzinfo=UTC),
        is_active: bool = False,
        quote: str = "Stopa PDV-a iznosi 25%",
    ) -> int:
        with session_scope(session_factory) as db:
            evidence = Evidence(
                url=f"https://porezna-uprava.gov.hr/{concept_slug}/{value}",
                content_hash=f"{concept_slug}-{value}-{datetime.now(UTC).timestamp()}",
                raw_content=quote,
                content_type="text",
            )
            db.add(evidence)
            db.flush()
            pointer = SourcePointer(
                evidence_id=evidence.id,
                domain="pdv",
                value_type="percentage",
                extracted_value=value,
                exact_quote=quote,
                confidence=0.95,
            )
            rule = RegulatoryRule(
                concept_slug=concept_slug,
                title_hr="Standardna stopa PDV-a",
                risk_tier=risk_tier,
                authority_level=authority_level,
                applies_when={"op": "true"},
                value=value,
                value_type="percentage",
                effective_from=effective_from,
                confidence=confidence,
                status=status,
                is_active=is_active,
                source_pointers=[pointer],
            )
            db.add(rule)
            db.flush()
            return rule.id

    return _make
