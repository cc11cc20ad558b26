"""Unit tests for service wiring and connection management."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from teamrag.config.settings import EmbeddingSettings, RAGSettings, RedisSettings, Settings
from teamrag.core.connections import ConnectionManager
from teamrag.rag.chunk_store import InMemoryChunkStore, QdrantChunkStore
from teamrag.rag.dependencies import build_rag_service
from teamrag.rag.documents import InMemoryDocumentRepository, RedisDocumentRepository
from teamrag.rag.embeddings import SentenceTransformerProvider
from teamrag.rag.log_storage import InMemoryLog, RedisLog
from teamrag.rag.models import Domain
from teamrag.rag.service import RAGService


@pytest.fixture
def connections():
    manager = MagicMock(spec=ConnectionManager)
    manager.get_qdrant_client.return_value = MagicMock()
    manager.get_redis_client.return_value = MagicMock()
    return manager


def test_build_in_memory_service(connections, keyword_provider):
    settings = Settings(rag=RAGSettings(chunk_size=300, chunk_overlap=30, context_char_budget=1234))

    service = build_rag_service(settings, connections, provider=keyword_provider())

    assert isinstance(service, RAGService)
    assert isinstance(service.chunk_store, InMemoryChunkStore)
    assert isinstance(service.documents, InMemoryDocumentRepository)
    assert isinstance(service.monitor.log, InMemoryLog)
    assert service.monitor.example_bank is service.example_bank
    assert service.chunker.chunk_size == 300
    assert service.assembler.char_budget == 1234
    connections.get_qdrant_client.assert_not_called()
    connections.get_redis_client.assert_not_called()


def test_build_qdrant_and_redis_service(connections, keyword_provider):
    settings = Settings(
        rag=RAGSettings(store_backend="qdrant", collection_name="team_chunks"),
        redis=RedisSettings(enabled=True, key_prefix="acme"),
    )

    service = build_rag_service(settings, connections, provider=keyword_provider())

    assert isinstance(service.chunk_store, QdrantChunkStore)
    assert service.chunk_store.collection_name == "team_chunks"
    assert isinstance(service.documents, RedisDocumentRepository)
    assert isinstance(service.monitor.log, RedisLog)
    assert service.monitor.log.key == "acme:interactions"
    assert service.example_bank.logs[Domain.CHART].key == "acme:examples:chart"


def test_build_uses_configured_provider(connections):
    settings = Settings(embedding=EmbeddingSettings(model_name="tiny-model", max_attempts=2))

    service = build_rag_service(settings, connections)

    assert isinstance(service.embedder.provider, SentenceTransformerProvider)
    assert service.embedder.provider.model_name == "tiny-model"
    assert service.embedder.max_attempts == 2


@pytest.mark.asyncio
async def test_connection_manager_lifecycle():
    settings = Settings(redis=RedisSettings(host="cache"))
    with patch("teamrag.core.connections.AsyncQdrantClient") as qdrant_factory, \
            patch("teamrag.core.connections.ConnectionPool") as pool_factory, \
            patch("teamrag.core.connections.Redis") as redis_factory:
        qdrant_client = qdrant_factory.return_value
        qdrant_client.close = AsyncMock()
        redis_client = redis_factory.return_value
        redis_client.aclose = AsyncMock()

        manager = ConnectionManager(settings)
        assert manager.get_qdrant_client() is manager.get_qdrant_client()
        assert manager.get_redis_client() is manager.get_redis_client()
        await manager.close()

    qdrant_factory.assert_called_once()
    pool_factory.from_url.assert_called_once()
    assert pool_factory.from_url.call_args.args[0] == "redis://cache:6379/0"
    qdrant_client.close.assert_awaited_once()
    redis_client.aclose.assert_awaited_once()
    assert manager.qdrant_client is None
    assert manager.redis_client is None


@pytest.mark.asyncio
async def test_health_check_reports_failures():
    manager = ConnectionManager(Settings())
    manager.redis_client = MagicMock()
    manager.redis_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
    manager.qdrant_client = MagicMock()
    manager.qdrant_client.get_collections = AsyncMock()

    status = await manager.health_check()

    assert status["qdrant"] == "healthy"
    assert status["redis"].startswith("unhealthy")
