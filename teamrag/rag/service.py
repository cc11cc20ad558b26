"""RAG Service Module

This module provides the main RAG service that integrates all components:
document ingestion, context retrieval for a team, and the interaction
monitoring / learning loop.
"""

from typing import Any, Dict, List, Optional, Tuple
import asyncio
from datetime import datetime
import time
import weakref

import structlog

from teamrag.config.settings import Settings, get_settings
from teamrag.core.exceptions import DimensionMismatch, DocumentNotFound, TeamRAGException
from teamrag.core.metrics import (
    record_ingestion_failure,
    record_ingestion_metrics,
    record_retrieval_metrics,
)
from teamrag.rag.chunk_store import ChunkStore, InMemoryChunkStore
from teamrag.rag.chunker import TextChunker
from teamrag.rag.context import ContextAssembler
from teamrag.rag.documents import DocumentRepository, InMemoryDocumentRepository
from teamrag.rag.embeddings import Embedder
from teamrag.rag.example_bank import ExampleBank
from teamrag.rag.models import (
    Chunk,
    ChunkMetadata,
    ContextBundle,
    Document,
    Domain,
    EvaluationReport,
    Interaction,
    LearningExample,
    MetricsSnapshot,
    ProcessedDocument,
    ProcessingStatus,
    RankedChunk,
    TeamDocumentStats,
    utcnow,
)
from teamrag.rag.monitor import InteractionMonitor, success_rate
from teamrag.rag.retriever import Retriever

logger = structlog.get_logger(__name__)


class RAGService:
    """Main service for team-scoped RAG functionality."""

    def __init__(
        self,
        embedder: Embedder,
        chunk_store: Optional[ChunkStore] = None,
        documents: Optional[DocumentRepository] = None,
        monitor: Optional[InteractionMonitor] = None,
        example_bank: Optional[ExampleBank] = None,
        chunker: Optional[TextChunker] = None,
        retriever: Optional[Retriever] = None,
        assembler: Optional[ContextAssembler] = None,
        settings: Optional[Settings] = None
    ):
        """Initialize the RAG service.

        Args:
            embedder: Embedder for chunks and queries
            chunk_store: Chunk storage; in-memory by default
            documents: Document records; in-memory by default
            monitor: Interaction monitor; a fresh one by default
            example_bank: Learning example bank; a fresh one by default
            chunker: Text chunker; configured from settings by default
            retriever: Similarity retriever
            assembler: Context assembler; configured from settings by default
            settings: Settings; the cached application settings by default
        """
        self.settings = settings or get_settings()
        rag = self.settings.rag

        self.embedder = embedder
        self.chunk_store = chunk_store or InMemoryChunkStore()
        self.documents = documents or InMemoryDocumentRepository()
        self.example_bank = example_bank or ExampleBank()
        self.monitor = monitor or InteractionMonitor(
            example_bank=self.example_bank,
            improvement_window=self.settings.monitoring.improvement_window
        )
        self.chunker = chunker or TextChunker(rag.chunk_size, rag.chunk_overlap, rag.min_document_length)
        self.retriever = retriever or Retriever()
        self.assembler = assembler or ContextAssembler(rag.context_char_budget)

        # One lock per (team_id, source_id); dropped once no ingestion holds it
        self._source_locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _source_lock(self, team_id: str, source_id: str) -> asyncio.Lock:
        key = (team_id, source_id)
        lock = self._source_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._source_locks[key] = lock
        return lock

    # Ingestion

    async def process_document(
        self,
        source_id: str,
        team_id: str,
        name: str,
        media_type: str,
        folder_label: Optional[str],
        text: str,
        last_modified: Optional[datetime] = None
    ) -> ProcessedDocument:
        """Chunk, embed and store a document, replacing any previous version.

        Re-processing the same ``source_id`` for a team updates the existing
        Document in place and swaps its whole chunk set.

        Args:
            source_id: File-store id of the document
            team_id: Owning team
            name: Display name
            media_type: MIME type
            folder_label: Folder the document lives in
            text: Extracted document text
            last_modified: Modification time reported by the file store

        Returns:
            The stored document with its chunks

        Raises:
            ExtractionTooShort: If the text is too short; nothing is stored
            EmbeddingFailed: If embedding fails; the document is marked failed
            DimensionMismatch: If vectors do not fit the team's corpus; the document is marked failed
            StoreWriteFailed: If the chunk store rejects the write; the document is marked failed
        """
        start = time.perf_counter()
        try:
            spans = self.chunker.chunk(text)
        except TeamRAGException as e:
            record_ingestion_failure(e.error_code)
            logger.warning(
                "Document rejected",
                team_id=team_id,
                source_id=source_id,
                name=name,
                error_code=e.error_code
            )
            raise

        async with self._source_lock(team_id, source_id):
            document = await self._begin_ingestion(
                source_id, team_id, name, media_type, folder_label, text, last_modified
            )
            try:
                vectors = await self.embedder.embed_batch([span.text for span in spans])

                team_dimension = await self.chunk_store.get_team_dimension(team_id, exclude_document_id=document.id)
                if team_dimension is not None and vectors and vectors[0].shape[0] != team_dimension:
                    raise DimensionMismatch(team_dimension, int(vectors[0].shape[0]), details={
                        "expected": team_dimension,
                        "actual": int(vectors[0].shape[0]),
                        "team_id": team_id,
                        "document_id": document.id,
                    })

                metadata = ChunkMetadata(
                    file_name=document.name,
                    file_type=document.media_type,
                    folder_path=document.folder_path,
                    total_chunks=len(spans),
                    last_modified=document.last_modified
                )
                chunks = [
                    Chunk(
                        team_id=team_id,
                        document_id=document.id,
                        chunk_index=span.index,
                        text=span.text,
                        start=span.start,
                        end=span.end,
                        embedding=vector.tolist(),
                        version=document.version,
                        metadata=metadata
                    )
                    for span, vector in zip(spans, vectors)
                ]

                stored = await self.chunk_store.replace_chunks(document.id, team_id, chunks)

                document = await self.documents.save(document.model_copy(update={
                    "chunk_count": stored,
                    "embedding_count": len(vectors),
                    "processing_status": ProcessingStatus.COMPLETED,
                    "error": None,
                    "updated_at": utcnow(),
                }))
            except (Exception, asyncio.CancelledError) as e:
                await self._fail_ingestion(document, e)
                raise

        duration = time.perf_counter() - start
        record_ingestion_metrics(media_type, len(chunks), duration)
        logger.info(
            "Document processed",
            document_id=document.id,
            team_id=team_id,
            source_id=source_id,
            name=name,
            version=document.version,
            chunks=len(chunks),
            duration=duration
        )
        return ProcessedDocument(document=document, chunks=chunks, embedding_count=len(vectors))

    async def _begin_ingestion(
        self,
        source_id: str,
        team_id: str,
        name: str,
        media_type: str,
        folder_label: Optional[str],
        text: str,
        last_modified: Optional[datetime]
    ) -> Document:
        """Save the document as ``processing`` under a new version."""
        now = utcnow()
        fields = {
            "name": name,
            "media_type": media_type,
            "folder_path": folder_label or "Unknown",
            "content_length": len(text),
            "processing_status": ProcessingStatus.PROCESSING,
            "error": None,
            "last_modified": last_modified or now,
            "updated_at": now,
        }

        existing = await self.documents.get_by_source(team_id, source_id)
        if existing is not None:
            document = existing.model_copy(update={**fields, "version": existing.version + 1})
        else:
            document = Document(team_id=team_id, source_id=source_id, version=1, created_at=now, **fields)

        return await self.documents.save(document)

    async def _fail_ingestion(self, document: Document, error: BaseException) -> None:
        """Mark a document failed and drop its chunks."""
        if isinstance(error, asyncio.CancelledError):
            message = "ingestion cancelled"
            error_code = "CANCELLED"
        else:
            message = str(error) or error.__class__.__name__
            error_code = getattr(error, "error_code", error.__class__.__name__)

        record_ingestion_failure(error_code)
        try:
            await self.documents.save(document.model_copy(update={
                "processing_status": ProcessingStatus.FAILED,
                "chunk_count": 0,
                "embedding_count": 0,
                "error": message,
                "updated_at": utcnow(),
            }))
            await self.chunk_store.delete_document_chunks(document.id)
        except Exception as cleanup_error:
            logger.error(
                "Failed to clean up after ingestion failure",
                document_id=document.id,
                error=str(cleanup_error)
            )

        logger.error(
            "Document processing failed",
            document_id=document.id,
            team_id=document.team_id,
            source_id=document.source_id,
            version=document.version,
            error_code=error_code,
            error=message
        )

    async def delete_document(self, document_id: str) -> bool:
        """Delete a document together with its chunks.

        Raises:
            DocumentNotFound: If no such document exists
        """
        document = await self.documents.get(document_id)
        if document is None:
            raise DocumentNotFound(document_id)

        async with self._source_lock(document.team_id, document.source_id):
            # Readers drop the document as soon as its version moves
            await self.documents.save(document.model_copy(update={
                "version": document.version + 1,
                "processing_status": ProcessingStatus.PROCESSING,
                "updated_at": utcnow(),
            }))
            removed = await self.chunk_store.delete_document_chunks(document_id)
            await self.documents.delete(document_id)

        logger.info("Document deleted", document_id=document_id, team_id=document.team_id, chunks=removed)
        return True

    # Retrieval

    async def _candidate_pool(self, team_id: str) -> List[Chunk]:
        """Chunks of the team's completed documents.

        Documents are read before and after the chunks. A document's chunks
        are kept only if its version and status did not change in between,
        it is completed, and the chunks carry its current version.
        """
        before = {d.id: (d.version, d.processing_status) for d in await self.documents.list_by_team(team_id)}
        chunks = await self.chunk_store.get_chunks_by_team(team_id)
        after = {d.id: (d.version, d.processing_status) for d in await self.documents.list_by_team(team_id)}

        stable = {
            document_id: state[0]
            for document_id, state in before.items()
            if state[1] == ProcessingStatus.COMPLETED and after.get(document_id) == state
        }
        return [c for c in chunks if stable.get(c.document_id) == c.version]

    async def _rank(self, query: str, team_id: str, max_results: int) -> Tuple[List[RankedChunk], int]:
        candidates = await self._candidate_pool(team_id)
        if not candidates:
            return [], 0

        query_vector = await self.embedder.embed(query)
        ranked = self.retriever.retrieve(
            query_vector,
            candidates,
            k=max_results,
            min_similarity=self.settings.rag.similarity_threshold
        )
        return ranked, len(candidates)

    async def create_context(self, query: str, team_id: str, max_results: Optional[int] = None) -> ContextBundle:
        """Build LLM-ready context for a query from the team's documents.

        Errors never propagate: any failure yields an empty bundle with
        ``has_relevant_context`` false.
        """
        max_results = max_results or self.settings.rag.max_results
        start = time.perf_counter()

        if not query or not query.strip():
            return ContextBundle(query=query or "")

        try:
            ranked, considered = await self._rank(query, team_id, max_results)
            bundle = self.assembler.assemble(query, ranked, max_results, total_candidates=considered)
        except Exception as e:
            record_retrieval_metrics("error", time.perf_counter() - start)
            logger.error("Context creation failed", team_id=team_id, error=str(e))
            return ContextBundle(query=query)

        outcome = "relevant" if bundle.has_relevant_context else "no_context"
        record_retrieval_metrics(outcome, time.perf_counter() - start)
        logger.info(
            "Context created",
            team_id=team_id,
            candidates=considered,
            included=len(bundle.included_documents),
            has_relevant_context=bundle.has_relevant_context
        )
        return bundle

    async def search_documents(self, query: str, team_id: str, max_results: Optional[int] = None) -> List[RankedChunk]:
        """Rank the team's chunks against a query.

        Returns:
            Ranked chunks above the similarity threshold; empty on error
        """
        max_results = max_results or self.settings.rag.max_results
        if not query or not query.strip():
            return []
        try:
            ranked, _ = await self._rank(query, team_id, max_results)
        except Exception as e:
            logger.error("Document search failed", team_id=team_id, error=str(e))
            return []
        return ranked

    # Documents

    async def list_team_documents(self, team_id: str) -> List[Document]:
        return await self.documents.list_by_team(team_id)

    async def get_document_by_source(self, team_id: str, source_id: str) -> Optional[Document]:
        return await self.documents.get_by_source(team_id, source_id)

    async def get_team_document_stats(self, team_id: str) -> TeamDocumentStats:
        """Document, chunk and character counts for a team."""
        documents = await self.documents.list_by_team(team_id)
        return TeamDocumentStats(
            document_count=len(documents),
            chunk_count=sum(d.chunk_count for d in documents),
            total_characters=sum(d.content_length for d in documents)
        )

    # Monitoring and learning

    async def record_interaction(
        self,
        domain: Domain,
        success: bool,
        confidence: float,
        query: str = "",
        response_time_ms: Optional[float] = None
    ) -> Interaction:
        """Record the outcome of a retrieval/generation round.

        Interactions that carry a query are also kept as learning examples
        in their domain.
        """
        interaction = await self.monitor.record_outcome(
            domain, success, confidence, query=query, response_time_ms=response_time_ms
        )
        if query:
            await self.example_bank.add_example(LearningExample(
                query=query,
                domain=domain,
                success=success,
                confidence=confidence,
                timestamp=interaction.timestamp
            ))
        return interaction

    async def log_example(
        self,
        domain: Domain,
        query: str,
        success: bool,
        confidence: float = 1.0,
        note: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> LearningExample:
        """Store a labeled example without recording an interaction."""
        return await self.example_bank.log_example(
            domain, query, success, confidence=confidence, note=note, details=details
        )

    async def get_metrics(self) -> MetricsSnapshot:
        return await self.monitor.current_metrics()

    async def get_evaluation_report(self, window: Optional[int] = None) -> EvaluationReport:
        return await self.monitor.evaluation_report(window or self.settings.monitoring.evaluation_window)

    async def get_detailed_breakdown(self) -> Dict[str, Any]:
        """Metrics snapshot with per-domain success rates and example counts."""
        metrics = await self.monitor.current_metrics()
        interactions = await self.monitor.export_interactions()

        domains: Dict[str, Dict[str, Any]] = {}
        for domain in Domain:
            in_domain = [i for i in interactions if i.domain == domain]
            domains[domain.value] = {
                "interactions": len(in_domain),
                "success_rate": success_rate(in_domain),
            }

        return {
            "metrics": metrics.model_dump(mode="json"),
            "domains": domains,
            "examples": await self.example_bank.stats(),
        }
