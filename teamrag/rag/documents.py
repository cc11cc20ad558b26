"""Document Repository

Stores Document records (name, media type, counts, processing status and
write version) per team. Records are returned as copies, so callers never
mutate stored state in place.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple
import threading

import structlog
from redis.asyncio import Redis

from teamrag.rag.models import Document

logger = structlog.get_logger(__name__)


class DocumentRepository(ABC):
    """Persistent Document records."""

    @abstractmethod
    async def get(self, document_id: str) -> Optional[Document]:
        """Get a document by id."""

    @abstractmethod
    async def get_by_source(self, team_id: str, source_id: str) -> Optional[Document]:
        """Get a team's document by its source (file-store) id."""

    @abstractmethod
    async def list_by_team(self, team_id: str) -> List[Document]:
        """List a team's documents, most recently updated first."""

    @abstractmethod
    async def save(self, document: Document) -> Document:
        """Insert or replace a document record."""

    @abstractmethod
    async def delete(self, document_id: str) -> bool:
        """Delete a document record."""


class InMemoryDocumentRepository(DocumentRepository):
    """Process-local document records."""

    def __init__(self):
        self._documents: Dict[str, Document] = {}
        self._sources: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    async def get(self, document_id: str) -> Optional[Document]:
        document = self._documents.get(document_id)
        return document.model_copy(deep=True) if document else None

    async def get_by_source(self, team_id: str, source_id: str) -> Optional[Document]:
        document_id = self._sources.get((team_id, source_id))
        return await self.get(document_id) if document_id else None

    async def list_by_team(self, team_id: str) -> List[Document]:
        documents = [d.model_copy(deep=True) for d in list(self._documents.values()) if d.team_id == team_id]
        return sorted(documents, key=lambda d: d.updated_at, reverse=True)

    async def save(self, document: Document) -> Document:
        stored = document.model_copy(deep=True)
        with self._lock:
            self._documents[stored.id] = stored
            self._sources[(stored.team_id, stored.source_id)] = stored.id
        return stored.model_copy(deep=True)

    async def delete(self, document_id: str) -> bool:
        with self._lock:
            document = self._documents.pop(document_id, None)
            if document is None:
                return False
            self._sources.pop((document.team_id, document.source_id), None)
        return True


class RedisDocumentRepository(DocumentRepository):
    """Document records in Redis.

    Keys:
        ``{prefix}:documents`` hash of document id -> JSON record
        ``{prefix}:documents:sources:{team_id}`` hash of source id -> document id
        ``{prefix}:documents:team:{team_id}`` set of document ids
    """

    def __init__(self, redis: Redis, prefix: str = "teamrag"):
        self.redis = redis
        self.prefix = prefix

    @property
    def _records_key(self) -> str:
        return f"{self.prefix}:documents"

    def _sources_key(self, team_id: str) -> str:
        return f"{self.prefix}:documents:sources:{team_id}"

    def _team_key(self, team_id: str) -> str:
        return f"{self.prefix}:documents:team:{team_id}"

    async def get(self, document_id: str) -> Optional[Document]:
        data = await self.redis.hget(self._records_key, document_id)
        if not data:
            return None
        return Document.model_validate_json(data)

    async def get_by_source(self, team_id: str, source_id: str) -> Optional[Document]:
        document_id = await self.redis.hget(self._sources_key(team_id), source_id)
        if not document_id:
            return None
        if isinstance(document_id, bytes):
            document_id = document_id.decode("utf-8")
        return await self.get(document_id)

    async def list_by_team(self, team_id: str) -> List[Document]:
        document_ids = await self.redis.smembers(self._team_key(team_id))
        if not document_ids:
            return []
        records = await self.redis.hmget(self._records_key, list(document_ids))
        documents = [Document.model_validate_json(r) for r in records if r]
        return sorted(documents, key=lambda d: d.updated_at, reverse=True)

    async def save(self, document: Document) -> Document:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._records_key, document.id, document.model_dump_json())
            pipe.hset(self._sources_key(document.team_id), document.source_id, document.id)
            pipe.sadd(self._team_key(document.team_id), document.id)
            await pipe.execute()
        return document.model_copy(deep=True)

    async def delete(self, document_id: str) -> bool:
        document = await self.get(document_id)
        if document is None:
            return False
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self._records_key, document_id)
            pipe.hdel(self._sources_key(document.team_id), document.source_id)
            pipe.srem(self._team_key(document.team_id), document_id)
            await pipe.execute()
        logger.debug("Document record deleted", document_id=document_id)
        return True
