"""Tests for the background embedding queue."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from regwatch.evidence.embedding_queue import (
    EmbeddingQueue,
    OpenAIEmbedder,
    cosine_similarity,
    embedding_text,
)
from regwatch.storage.database.models import ContentClass, Evidence


class FakeEmbedder:
    """Maps known phrases to fixed vectors."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.texts: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.texts.append(text)
        if self.fail:
            raise RuntimeError("embedding backend down")
        if "PDV" in text:
            return [1.0, 0.0, 0.1]
        return [0.0, 1.0, 0.0]


def page(text: str) -> bytes:
    return f"<html><body><p>{text}</p></body></html>".encode()


class TestCosineSimilarity:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_degenerate_inputs(self):
        assert cosine_similarity([], []) == 0.0
        assert cosine_similarity([1.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


class TestOpenAIEmbedder:
    @pytest.mark.asyncio
    async def test_embed_returns_first_vector(self):
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(embedding=(0.1, 0.2, 0.3))])
        )
        embedder = OpenAIEmbedder(model="text-embedding-3-small", client=client)

        vector = await embedder.embed("Stopa PDV-a iznosi 25%")

        assert vector == [0.1, 0.2, 0.3]
        client.embeddings.create.assert_awaited_once_with(
            model="text-embedding-3-small", input="Stopa PDV-a iznosi 25%"
        )


class TestEmbeddingText:
    def test_prefers_artifact(self):
        evidence = Evidence(raw_content="<p>raw</p>", content_class=ContentClass.HTML)

        assert embedding_text(evidence, "artifact  text") == "artifact text"

    def test_binary_without_artifact_is_empty(self):
        evidence = Evidence(raw_content="JVBERi0=", content_class=ContentClass.PDF_SCANNED)

        assert embedding_text(evidence) == ""

    def test_truncates(self):
        evidence = Evidence(raw_content="x" * 5000, content_class=ContentClass.TEXT)

        assert len(embedding_text(evidence)) == 1000


class TestEmbeddingQueue:
    @pytest.mark.asyncio
    async def test_process_finds_duplicates_across_urls(self, store, session_factory):
        first = store.capture("https://porezna-uprava.gov.hr/a", page("Stopa PDV-a 25%"), "text/html")
        second = store.capture("https://mfin.gov.hr/b", page("Stopa PDV-a je 25%"), "text/html")
        other = store.capture("https://hzzo.hr/c", page("Dopunsko osiguranje"), "text/html")
        queue = EmbeddingQueue(session_factory, FakeEmbedder())

        assert await queue.process(first.evidence_id) == []
        assert await queue.process(other.evidence_id) == []
        assert await queue.process(second.evidence_id) == [first.evidence_id]

        reloaded = store.get(second.evidence_id)
        assert reloaded.embedding_status == "COMPLETED"
        assert reloaded.duplicate_of_ids == [first.evidence_id]

    @pytest.mark.asyncio
    async def test_failure_is_recorded_not_raised(self, store, session_factory):
        captured = store.capture("https://hzzo.hr/c", page("Obavijest"), "text/html")
        queue = EmbeddingQueue(session_factory, FakeEmbedder(fail=True))

        assert await queue.process(captured.evidence_id) == []
        assert store.get(captured.evidence_id).embedding_status == "FAILED"
        assert queue.get_stats()["total_failed"] == 1

    @pytest.mark.asyncio
    async def test_missing_evidence(self, session_factory):
        queue = EmbeddingQueue(session_factory, FakeEmbedder())

        assert await queue.process(999) == []

    @pytest.mark.asyncio
    async def test_background_loop(self, store, session_factory):
        captured = store.capture("https://hzzo.hr/c", page("Obavijest"), "text/html")
        embedder = FakeEmbedder()
        queue = EmbeddingQueue(session_factory, embedder)

        await queue.start()
        await queue.submit(captured.evidence_id)
        await queue.join()
        await queue.stop()

        assert embedder.texts == ["Obavijest"]
        assert store.get(captured.evidence_id).embedding_status == "COMPLETED"
