"""Service wiring.

Builds a ``RAGService`` from settings, picking the configured chunk store,
embedding provider and log storage.
"""

from typing import Optional

import structlog

from teamrag.config.settings import Settings, get_settings
from teamrag.core.connections import ConnectionManager
from teamrag.core.exceptions import ConfigurationError
from teamrag.rag.chunk_store import ChunkStore, InMemoryChunkStore, QdrantChunkStore
from teamrag.rag.context import ContextAssembler
from teamrag.rag.chunker import TextChunker
from teamrag.rag.documents import DocumentRepository, InMemoryDocumentRepository, RedisDocumentRepository
from teamrag.rag.embeddings import Embedder, EmbeddingProvider, create_embedding_provider
from teamrag.rag.example_bank import ExampleBank
from teamrag.rag.log_storage import InMemoryLog, RedisLog
from teamrag.rag.models import Domain, Interaction, LearningExample
from teamrag.rag.monitor import InteractionMonitor
from teamrag.rag.service import RAGService

logger = structlog.get_logger(__name__)


def build_chunk_store(settings: Settings, connections: ConnectionManager) -> ChunkStore:
    backend = settings.rag.store_backend
    if backend == "memory":
        return InMemoryChunkStore()
    if backend == "qdrant":
        return QdrantChunkStore(connections.get_qdrant_client(), settings.rag.collection_name)
    raise ConfigurationError("rag", f"unknown store backend {backend}")


def build_document_repository(settings: Settings, connections: ConnectionManager) -> DocumentRepository:
    if settings.redis.enabled:
        return RedisDocumentRepository(connections.get_redis_client(), prefix=settings.redis.key_prefix)
    return InMemoryDocumentRepository()


def build_monitoring(settings: Settings, connections: ConnectionManager):
    """Build the example bank and interaction monitor on the configured storage."""
    if settings.redis.enabled:
        redis = connections.get_redis_client()
        prefix = settings.redis.key_prefix
        bank = ExampleBank(
            lambda domain: RedisLog(redis, LearningExample, f"{prefix}:examples:{domain.value}")
        )
        interaction_log = RedisLog(redis, Interaction, f"{prefix}:interactions")
    else:
        bank = ExampleBank()
        interaction_log = InMemoryLog()

    monitor = InteractionMonitor(
        interaction_log,
        example_bank=bank,
        improvement_window=settings.monitoring.improvement_window
    )
    return bank, monitor


def build_rag_service(
    settings: Optional[Settings] = None,
    connections: Optional[ConnectionManager] = None,
    provider: Optional[EmbeddingProvider] = None
) -> RAGService:
    """Wire a RAG service from configuration.

    Args:
        settings: Settings; the cached application settings by default
        connections: Connection manager for Qdrant and Redis backends
        provider: Embedding provider; built from the embedding settings by default

    Returns:
        A ready RAG service
    """
    settings = settings or get_settings()
    connections = connections or ConnectionManager(settings)
    embedding = settings.embedding

    embedder = Embedder(
        provider or create_embedding_provider(embedding),
        batch_size=embedding.batch_size,
        max_attempts=embedding.max_attempts,
        initial_backoff=embedding.initial_backoff_seconds,
        max_backoff=embedding.max_backoff_seconds,
        dimension=embedding.dimension
    )
    bank, monitor = build_monitoring(settings, connections)

    service = RAGService(
        embedder,
        chunk_store=build_chunk_store(settings, connections),
        documents=build_document_repository(settings, connections),
        monitor=monitor,
        example_bank=bank,
        chunker=TextChunker(settings.rag.chunk_size, settings.rag.chunk_overlap, settings.rag.min_document_length),
        assembler=ContextAssembler(settings.rag.context_char_budget),
        settings=settings
    )
    logger.info(
        "RAG service built",
        store_backend=settings.rag.store_backend,
        embedding_provider=embedding.provider,
        redis_enabled=settings.redis.enabled,
        domains=[d.value for d in Domain]
    )
    return service
