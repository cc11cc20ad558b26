"""Tests for the RAG service.

Runs ingestion, retrieval and monitoring end to end on in-memory stores with
a deterministic keyword embedding provider, and injects failures to check
that a document is never left completed with stale or partial chunks.
"""

import asyncio
import gc

import pytest
from unittest.mock import AsyncMock, patch

from teamrag.config.settings import RAGSettings, Settings
from teamrag.core.exceptions import (
    DimensionMismatch,
    DocumentNotFound,
    EmbeddingFailed,
    ExtractionTooShort,
    StoreWriteFailed,
)
from teamrag.rag.chunk_store import InMemoryChunkStore
from teamrag.rag.embeddings import Embedder, EmbeddingProvider
from teamrag.rag.models import Domain, ProcessingStatus
from teamrag.rag.service import RAGService

REVENUE = "Revenue grew and the sales pipeline expanded this quarter."
HOLIDAY = "The holiday schedule and onboarding checklist for new staff."


class FailingChunkStore(InMemoryChunkStore):
    """Chunk store whose writes can be switched to fail, optionally after a partial write."""

    def __init__(self):
        super().__init__()
        self.fail = False
        self.partial = False

    async def replace_chunks(self, document_id, team_id, chunks):
        if self.fail:
            if self.partial:
                await super().replace_chunks(document_id, team_id, chunks[:1])
            raise StoreWriteFailed("replace", "disk full", details={"document_id": document_id})
        return await super().replace_chunks(document_id, team_id, chunks)


class BlockingProvider(EmbeddingProvider):
    """Wraps a provider and waits until released before answering."""

    name = "blocking"

    def __init__(self, inner):
        self.inner = inner
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def embed_documents(self, texts):
        self.started.set()
        await self.release.wait()
        return await self.inner.embed_documents(texts)


async def ingest(service, source_id, text, team_id="team-1", name=None):
    return await service.process_document(
        source_id=source_id,
        team_id=team_id,
        name=name or f"{source_id}.txt",
        media_type="text/plain",
        folder_label="Shared",
        text=text
    )


@pytest.mark.asyncio
async def test_process_document(rag_service, text_of):
    processed = await ingest(rag_service, "src-revenue", text_of(REVENUE, 500))

    document = processed.document
    assert document.processing_status == ProcessingStatus.COMPLETED
    assert document.version == 1
    assert document.chunk_count == 3
    assert document.embedding_count == 3
    assert document.content_length == 500
    assert document.folder_path == "Shared"
    assert processed.embedding_count == 3
    assert [(c.start, c.end) for c in processed.chunks] == [(0, 200), (150, 350), (300, 500)]
    assert all(c.version == 1 for c in processed.chunks)
    assert processed.chunks[0].metadata.total_chunks == 3


@pytest.mark.asyncio
async def test_query_matching_one_chunk_returns_that_chunk(keyword_provider):
    settings = Settings(rag=RAGSettings(
        chunk_size=200,
        chunk_overlap=50,
        min_document_length=50,
        similarity_threshold=0.5,
        max_results=1,
    ))
    # Letter counts give each of the three windows a different direction
    provider = keyword_provider(["a", "b", "c"])
    service = RAGService(Embedder(provider, batch_size=8, max_attempts=1), settings=settings)
    processed = await ingest(service, "src-letters", "a" * 150 + "b" * 200 + "c" * 150)

    assert [c.chunk_index for c in processed.chunks] == [0, 1, 2]
    assert [c.embedding for c in processed.chunks] == [[150.0, 50.0, 0.0], [0.0, 200.0, 0.0], [0.0, 50.0, 150.0]]

    bundle = await service.create_context(processed.chunks[1].text, "team-1", max_results=1)

    assert bundle.has_relevant_context is True
    assert [d.chunk_index for d in bundle.documents] == [1]
    assert bundle.documents[0].similarity == pytest.approx(1.0)
    assert bundle.total_candidates_considered == 3


@pytest.mark.asyncio
async def test_short_text_stores_nothing(rag_service):
    with pytest.raises(ExtractionTooShort):
        await ingest(rag_service, "src-short", "a" * 30)

    assert await rag_service.list_team_documents("team-1") == []
    assert await rag_service.chunk_store.get_chunks_by_team("team-1") == []


@pytest.mark.asyncio
async def test_create_context_returns_relevant_document(rag_service, text_of):
    await ingest(rag_service, "src-revenue", text_of(REVENUE, 500), name="q3-report.txt")
    await ingest(rag_service, "src-holiday", text_of(HOLIDAY, 500), name="handbook.txt")

    bundle = await rag_service.create_context("revenue pipeline", "team-1", max_results=3)

    assert bundle.has_relevant_context is True
    assert bundle.total_documents == 1
    assert {d.file_name for d in bundle.documents} == {"q3-report.txt"}
    assert bundle.context.startswith("1. q3-report.txt (text/plain, similarity: ")
    assert bundle.total_candidates_considered == 6


@pytest.mark.asyncio
async def test_unrelated_query_has_no_context(rag_service, text_of):
    await ingest(rag_service, "src-revenue", text_of(REVENUE, 500))

    bundle = await rag_service.create_context("security audit", "team-1", max_results=3)

    assert bundle.has_relevant_context is False
    assert bundle.context == ""
    assert bundle.documents == []


@pytest.mark.asyncio
async def test_context_is_team_scoped(rag_service, text_of):
    await ingest(rag_service, "src-revenue", text_of(REVENUE, 500), team_id="team-1")

    bundle = await rag_service.create_context("revenue pipeline", "team-2", max_results=3)

    assert bundle.has_relevant_context is False
    assert bundle.total_candidates_considered == 0


@pytest.mark.asyncio
async def test_reprocessing_updates_in_place(rag_service, text_of):
    first = await ingest(rag_service, "src-1", text_of(REVENUE, 500))
    second = await ingest(rag_service, "src-1", text_of(HOLIDAY, 800))

    assert second.document.id == first.document.id
    assert second.document.version == 2
    assert second.document.created_at == first.document.created_at
    assert len(await rag_service.list_team_documents("team-1")) == 1

    chunks = await rag_service.chunk_store.get_chunks_by_document(first.document.id)
    assert len(chunks) == second.document.chunk_count
    assert {c.version for c in chunks} == {2}
    assert not (await rag_service.create_context("revenue pipeline", "team-1")).has_relevant_context


@pytest.mark.asyncio
async def test_store_failure_marks_document_failed(embedder, settings, text_of):
    store = FailingChunkStore()
    service = RAGService(embedder, chunk_store=store, settings=settings)
    first = await ingest(service, "src-1", text_of(REVENUE, 500))

    store.fail = True
    with pytest.raises(StoreWriteFailed):
        await ingest(service, "src-1", text_of(REVENUE, 600))

    document = await service.get_document_by_source("team-1", "src-1")
    assert document.processing_status == ProcessingStatus.FAILED
    assert document.version == 2
    assert document.chunk_count == 0
    assert "disk full" in document.error
    assert await store.get_chunks_by_document(first.document.id) == []
    assert not (await service.create_context("revenue pipeline", "team-1")).has_relevant_context


@pytest.mark.asyncio
async def test_partial_write_is_cleaned_up(embedder, settings, text_of):
    store = FailingChunkStore()
    store.fail = True
    store.partial = True
    service = RAGService(embedder, chunk_store=store, settings=settings)

    with pytest.raises(StoreWriteFailed):
        await ingest(service, "src-1", text_of(REVENUE, 500))

    document = await service.get_document_by_source("team-1", "src-1")
    assert document.processing_status == ProcessingStatus.FAILED
    assert await store.get_chunks_by_team("team-1") == []


@pytest.mark.asyncio
async def test_embedding_failure_marks_document_failed(rag_service, text_of):
    with patch.object(rag_service.embedder, "embed_batch",
                      AsyncMock(side_effect=EmbeddingFailed("keyword", 3, "service unavailable"))):
        with pytest.raises(EmbeddingFailed):
            await ingest(rag_service, "src-1", text_of(REVENUE, 500))

    document = await rag_service.get_document_by_source("team-1", "src-1")
    assert document.processing_status == ProcessingStatus.FAILED
    assert document.embedding_count == 0


@pytest.mark.asyncio
async def test_cancelled_ingestion_is_marked_failed(settings, text_of, keyword_provider):
    provider = BlockingProvider(keyword_provider())
    service = RAGService(Embedder(provider, batch_size=8, max_attempts=1), settings=settings)

    task = asyncio.create_task(ingest(service, "src-1", text_of(REVENUE, 500)))
    await provider.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    document = await service.get_document_by_source("team-1", "src-1")
    assert document.processing_status == ProcessingStatus.FAILED
    assert document.error == "ingestion cancelled"
    assert await service.chunk_store.get_chunks_by_team("team-1") == []


@pytest.mark.asyncio
async def test_document_being_written_is_not_retrievable(settings, text_of, keyword_provider):
    provider = BlockingProvider(keyword_provider())
    provider.release.set()
    service = RAGService(Embedder(provider, batch_size=8, max_attempts=1), settings=settings)
    await ingest(service, "src-1", text_of(REVENUE, 500))

    provider.release.clear()
    task = asyncio.create_task(ingest(service, "src-1", text_of(REVENUE, 700)))
    provider.started.clear()
    await provider.started.wait()

    # A query needs an embedding too, so answer it from a separate embedder
    reader = RAGService(
        Embedder(keyword_provider(), batch_size=8, max_attempts=1),
        chunk_store=service.chunk_store,
        documents=service.documents,
        settings=settings
    )
    during = await reader.create_context("revenue pipeline", "team-1")
    provider.release.set()
    processed = await task
    after = await reader.create_context("revenue pipeline", "team-1")

    assert during.has_relevant_context is False
    assert after.has_relevant_context is True
    assert processed.document.version == 2


@pytest.mark.asyncio
async def test_same_source_ingestions_serialize(rag_service, text_of):
    results = await asyncio.gather(
        ingest(rag_service, "src-1", text_of(REVENUE, 500)),
        ingest(rag_service, "src-1", text_of(HOLIDAY, 700)),
    )

    assert sorted(r.document.version for r in results) == [1, 2]
    document = await rag_service.get_document_by_source("team-1", "src-1")
    assert document.processing_status == ProcessingStatus.COMPLETED
    chunks = await rag_service.chunk_store.get_chunks_by_document(document.id)
    assert len(chunks) == document.chunk_count
    assert {c.version for c in chunks} == {document.version}


@pytest.mark.asyncio
async def test_dimension_mismatch_with_team_corpus(rag_service, settings, text_of, keyword_provider):
    await ingest(rag_service, "src-1", text_of(REVENUE, 500))
    other = RAGService(
        Embedder(keyword_provider(["revenue", "pipeline"]), batch_size=8, max_attempts=1),
        chunk_store=rag_service.chunk_store,
        documents=rag_service.documents,
        settings=settings
    )

    with pytest.raises(DimensionMismatch):
        await ingest(other, "src-2", text_of(REVENUE, 500))

    failed = await rag_service.get_document_by_source("team-1", "src-2")
    assert failed.processing_status == ProcessingStatus.FAILED
    processed = await ingest(other, "src-3", text_of(REVENUE, 500), team_id="team-2")
    assert processed.document.processing_status == ProcessingStatus.COMPLETED


@pytest.mark.asyncio
async def test_retrieval_errors_degrade_to_empty_context(rag_service, text_of):
    await ingest(rag_service, "src-1", text_of(REVENUE, 500))

    with patch.object(rag_service.embedder, "embed",
                      AsyncMock(side_effect=EmbeddingFailed("keyword", 3, "timeout"))):
        bundle = await rag_service.create_context("revenue pipeline", "team-1")
        results = await rag_service.search_documents("revenue pipeline", "team-1")

    assert bundle.has_relevant_context is False
    assert bundle.context == ""
    assert results == []


@pytest.mark.asyncio
async def test_blank_query(rag_service):
    bundle = await rag_service.create_context("   ", "team-1")

    assert bundle.has_relevant_context is False


@pytest.mark.asyncio
async def test_search_documents(rag_service, text_of):
    await ingest(rag_service, "src-revenue", text_of(REVENUE, 500))
    await ingest(rag_service, "src-holiday", text_of(HOLIDAY, 500))

    results = await rag_service.search_documents("holiday onboarding", "team-1", max_results=2)

    assert len(results) == 2
    assert all(r.chunk.metadata.file_name == "src-holiday.txt" for r in results)
    assert results[0].similarity >= results[1].similarity


@pytest.mark.asyncio
async def test_delete_document(rag_service, text_of):
    processed = await ingest(rag_service, "src-1", text_of(REVENUE, 500))

    assert await rag_service.delete_document(processed.document.id) is True

    assert await rag_service.get_document_by_source("team-1", "src-1") is None
    assert await rag_service.chunk_store.get_chunks_by_team("team-1") == []
    with pytest.raises(DocumentNotFound):
        await rag_service.delete_document(processed.document.id)


@pytest.mark.asyncio
async def test_source_locks_are_released(rag_service, text_of):
    for i in range(5):
        processed = await ingest(rag_service, f"src-{i}", text_of(REVENUE, 500))
        await rag_service.delete_document(processed.document.id)

    gc.collect()
    assert len(rag_service._source_locks) == 0


@pytest.mark.asyncio
async def test_team_document_stats(rag_service, text_of):
    await ingest(rag_service, "src-1", text_of(REVENUE, 500))
    await ingest(rag_service, "src-2", text_of(HOLIDAY, 500))
    await ingest(rag_service, "src-3", text_of(HOLIDAY, 500), team_id="team-2")

    stats = await rag_service.get_team_document_stats("team-1")

    assert stats.document_count == 2
    assert stats.chunk_count == 6
    assert stats.total_characters == 1000


@pytest.mark.asyncio
async def test_record_interactions_and_metrics(rag_service):
    for i in range(10):
        await rag_service.record_interaction(Domain.GENERAL, i < 7, 0.9)

    metrics = await rag_service.get_metrics()

    assert metrics.total_interactions == 10
    assert metrics.success_rate == pytest.approx(0.7)
    assert metrics.examples_added == 0


@pytest.mark.asyncio
async def test_interactions_with_query_become_examples(rag_service):
    await rag_service.record_interaction(Domain.CHART, True, 0.8, query="pie chart of deals")
    await rag_service.record_interaction(Domain.CHART, False, 0.3, query="graph of nothing")
    await rag_service.log_example(Domain.CRM, "update contact email", True, details={"field": "email"})

    metrics = await rag_service.get_metrics()
    breakdown = await rag_service.get_detailed_breakdown()

    assert metrics.examples_added == 3
    assert metrics.patterns_learned == 2
    assert breakdown["domains"]["chart"] == {"interactions": 2, "success_rate": 0.5}
    assert breakdown["examples"]["by_domain"]["crm"] == 1
    assert breakdown["metrics"]["total_interactions"] == 2


@pytest.mark.asyncio
async def test_evaluation_report(rag_service):
    for success in [False] * 4 + [True] * 4:
        await rag_service.record_interaction(Domain.ANALYSIS, success, 0.5)

    report = await rag_service.get_evaluation_report(window=4)

    assert report.success_rate_improvement == pytest.approx(1.0)
