"""Serialized embedding of evidence for semantic duplicate detection.

Embedding calls never run inline with capture. Evidence ids are put on an
``asyncio.Queue`` and a single background task embeds them one at a time.

Example:
    >>> queue = EmbeddingQueue(session_factory, OpenAIEmbedder())
    >>> await queue.start()
    >>> await queue.submit(evidence_id)
    >>> await queue.join()
    >>> await queue.stop()
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, Protocol

from openai import AsyncOpenAI
from sqlalchemy import select

from regwatch.evidence.text import html_to_text, truncate
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import ContentClass, Evidence, EvidenceArtifact
from regwatch.storage.session import session_scope
from regwatch.utils.config import get_settings
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)

EMBEDDING_TEXT_LIMIT = 1000
DUPLICATE_SIMILARITY = 0.95


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]:
        ...


class OpenAIEmbedder:
    """Embedder backed by the OpenAI embeddings API."""

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        settings = get_settings()
        self.model = model or settings.llm.embedding_model
        self.client = client or AsyncOpenAI(
            api_key=api_key or settings.llm.api_key,
            base_url=base_url or settings.llm.base_url,
        )

    async def embed(self, text: str) -> list[float]:
        response = await self.client.embeddings.create(model=self.model, input=text)
        return list(response.data[0].embedding)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def embedding_text(evidence: Evidence, artifact_text: str | None = None) -> str:
    """Text to embed: primary artifact, else tag-stripped raw content."""
    if artifact_text:
        text = artifact_text
    elif evidence.content_class == ContentClass.HTML:
        text = html_to_text(evidence.raw_content)
    elif evidence.content_class in (ContentClass.XML, ContentClass.JSON, ContentClass.TEXT):
        text = evidence.raw_content
    else:
        text = ""
    return truncate(" ".join(text.split()), EMBEDDING_TEXT_LIMIT)


class EmbeddingQueue:
    """Single-consumer background embedding queue."""

    def __init__(
        self,
        session_factory: SessionFactory,
        embedder: Embedder,
        similarity_threshold: float = DUPLICATE_SIMILARITY,
    ) -> None:
        self._session_factory = session_factory
        self.embedder = embedder
        self.similarity_threshold = similarity_threshold

        self._queue: asyncio.Queue[int] = asyncio.Queue()
        self._running = False
        self._task: asyncio.Task | None = None

        self._total_processed = 0
        self._total_failed = 0

    async def start(self) -> None:
        if self._running:
            logger.warning("embedding_queue_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._processing_loop())
        logger.info("embedding_queue_started")

    async def stop(self) -> None:
        if not self._running:
            logger.warning("embedding_queue_not_running")
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("embedding_queue_stopped", processed=self._total_processed)

    async def submit(self, evidence_id: int) -> None:
        await self._queue.put(evidence_id)

    async def join(self) -> None:
        """Wait until every submitted id has been handled."""
        await self._queue.join()

    async def _processing_loop(self) -> None:
        while self._running:
            evidence_id = await self._queue.get()
            try:
                await self.process(evidence_id)
            finally:
                self._queue.task_done()

    async def process(self, evidence_id: int) -> list[int]:
        """Embed one evidence and record near-duplicates. Returns duplicate ids.

        Failures are recorded on the row and never propagate.
        """
        with session_scope(self._session_factory) as db:
            evidence = db.get(Evidence, evidence_id)
            if evidence is None:
                logger.warning("embedding_evidence_missing", evidence_id=evidence_id)
                return []
            artifact_text = None
            if evidence.primary_text_artifact_id is not None:
                artifact = db.get(EvidenceArtifact, evidence.primary_text_artifact_id)
                artifact_text = artifact.content if artifact else None
            text = embedding_text(evidence, artifact_text)
            url = evidence.url

        if not text:
            self._mark(evidence_id, status="SKIPPED")
            return []

        try:
            vector = await self.embedder.embed(text)
        except Exception as e:
            self._total_failed += 1
            logger.error(
                "embedding_failed",
                evidence_id=evidence_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._mark(evidence_id, status="FAILED")
            return []

        duplicates = self._find_duplicates(evidence_id, url, vector)
        self._mark(evidence_id, status="COMPLETED", vector=vector, duplicates=duplicates)
        self._total_processed += 1

        if duplicates:
            logger.info("semantic_duplicates_found", evidence_id=evidence_id, duplicates=duplicates)
        return duplicates

    def _find_duplicates(self, evidence_id: int, url: str, vector: list[float]) -> list[int]:
        with session_scope(self._session_factory) as db:
            candidates = db.execute(
                select(Evidence.id, Evidence.embedding)
                .where(Evidence.id != evidence_id)
                .where(Evidence.url != url)
                .where(Evidence.embedding.is_not(None))
            ).all()

        return [
            candidate_id
            for candidate_id, embedding in candidates
            if embedding and cosine_similarity(vector, embedding) >= self.similarity_threshold
        ]

    def _mark(
        self,
        evidence_id: int,
        status: str,
        vector: list[float] | None = None,
        duplicates: list[int] | None = None,
    ) -> None:
        with session_scope(self._session_factory) as db:
            evidence = db.get(Evidence, evidence_id)
            if evidence is None:
                return
            evidence.embedding_status = status
            if vector is not None:
                evidence.embedding = vector
            if duplicates is not None:
                evidence.duplicate_of_ids = duplicates

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "pending": self._queue.qsize(),
            "total_processed": self._total_processed,
            "total_failed": self._total_failed,
        }
