"""Chunk Store for RAG

Holds the ordered chunk set of every document, with replace-by-document and
read-all-by-team access. Two adapters are provided: an in-process
copy-on-write store and a Qdrant-backed store.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple
import threading
import uuid

import structlog
from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qdrant_models

from teamrag.core.exceptions import StoreWriteFailed
from teamrag.rag.models import Chunk

logger = structlog.get_logger(__name__)

_POINT_NAMESPACE = uuid.UUID("8f5d0c3e-4b8e-4a53-9d3c-2f2f6a1c7b10")


class ChunkStore(ABC):
    """Storage for document chunk sets, keyed by team and document."""

    @abstractmethod
    async def replace_chunks(self, document_id: str, team_id: str, chunks: List[Chunk]) -> int:
        """Replace the whole chunk set of a document.

        Returns:
            Number of chunks stored

        Raises:
            StoreWriteFailed: If the underlying storage rejects the write
        """

    @abstractmethod
    async def get_chunks_by_team(self, team_id: str) -> List[Chunk]:
        """Get all chunks of all documents of a team."""

    @abstractmethod
    async def get_chunks_by_document(self, document_id: str) -> List[Chunk]:
        """Get the chunks of one document ordered by chunk index."""

    @abstractmethod
    async def delete_document_chunks(self, document_id: str) -> int:
        """Delete every chunk of a document."""

    async def get_team_dimension(self, team_id: str, exclude_document_id: Optional[str] = None) -> Optional[int]:
        """Embedding dimension of the team's stored corpus, if any chunk exists."""
        for chunk in await self.get_chunks_by_team(team_id):
            if chunk.document_id != exclude_document_id:
                return len(chunk.embedding)
        return None


class InMemoryChunkStore(ChunkStore):
    """In-process chunk store.

    Each team maps to an immutable tuple of chunks. Writers build a new tuple
    and swap it in under a lock; readers take the current tuple without
    locking and always see either the old or the new chunk set of a document.
    """

    def __init__(self):
        self._teams: Dict[str, Tuple[Chunk, ...]] = {}
        self._document_teams: Dict[str, str] = {}
        self._lock = threading.Lock()

    async def replace_chunks(self, document_id: str, team_id: str, chunks: List[Chunk]) -> int:
        for chunk in chunks:
            if chunk.document_id != document_id or chunk.team_id != team_id:
                raise StoreWriteFailed(
                    "replace",
                    "chunk does not belong to the target document",
                    details={"document_id": document_id, "chunk_document_id": chunk.document_id}
                )

        new_chunks = tuple(sorted(chunks, key=lambda c: c.chunk_index))
        with self._lock:
            previous_team = self._document_teams.get(document_id)
            if previous_team is not None and previous_team != team_id:
                self._teams[previous_team] = tuple(
                    c for c in self._teams.get(previous_team, ()) if c.document_id != document_id
                )
            kept = tuple(c for c in self._teams.get(team_id, ()) if c.document_id != document_id)
            self._teams[team_id] = kept + new_chunks
            self._document_teams[document_id] = team_id

        logger.debug("Chunks replaced", document_id=document_id, team_id=team_id, count=len(new_chunks))
        return len(new_chunks)

    async def get_chunks_by_team(self, team_id: str) -> List[Chunk]:
        return list(self._teams.get(team_id, ()))

    async def get_chunks_by_document(self, document_id: str) -> List[Chunk]:
        team_id = self._document_teams.get(document_id)
        if team_id is None:
            return []
        return [c for c in self._teams.get(team_id, ()) if c.document_id == document_id]

    async def delete_document_chunks(self, document_id: str) -> int:
        with self._lock:
            team_id = self._document_teams.pop(document_id, None)
            if team_id is None:
                return 0
            current = self._teams.get(team_id, ())
            kept = tuple(c for c in current if c.document_id != document_id)
            self._teams[team_id] = kept
        return len(current) - len(kept)


class QdrantChunkStore(ChunkStore):
    """Chunk store backed by a Qdrant collection.

    Qdrant has no multi-point transaction, so a replace is a delete followed
    by an upsert. Every point carries the ``version`` of the ingestion that
    wrote it; readers combine that with the document record to ignore chunk
    sets that are still being written.
    """

    def __init__(self, client: AsyncQdrantClient, collection_name: str = "document_chunks",
                 scroll_page_size: int = 256):
        """Initialize the store.

        Args:
            client: Async Qdrant client
            collection_name: Collection holding chunk points
            scroll_page_size: Points fetched per scroll request
        """
        self.client = client
        self.collection_name = collection_name
        self.scroll_page_size = scroll_page_size
        self._collection_ready = False

    async def ensure_collection(self, vector_size: int) -> bool:
        """Create the collection and its payload indexes if missing.

        Returns:
            True if the collection was created
        """
        if self._collection_ready:
            return False

        collections = await self.client.get_collections()
        if self.collection_name in [c.name for c in collections.collections]:
            self._collection_ready = True
            return False

        await self.client.create_collection(
            collection_name=self.collection_name,
            vectors_config=qdrant_models.VectorParams(
                size=vector_size,
                distance=qdrant_models.Distance.COSINE
            )
        )
        for field_name in ("team_id", "document_id"):
            await self.client.create_payload_index(
                collection_name=self.collection_name,
                field_name=field_name,
                field_schema=qdrant_models.PayloadSchemaType.KEYWORD
            )

        self._collection_ready = True
        logger.info("Collection created", collection=self.collection_name, vector_size=vector_size)
        return True

    async def replace_chunks(self, document_id: str, team_id: str, chunks: List[Chunk]) -> int:
        try:
            if chunks:
                await self.ensure_collection(len(chunks[0].embedding))

            await self.client.delete(
                collection_name=self.collection_name,
                points_selector=qdrant_models.FilterSelector(filter=_match("document_id", document_id)),
                wait=True
            )

            if chunks:
                await self.client.upsert(
                    collection_name=self.collection_name,
                    points=[self._to_point(chunk) for chunk in chunks],
                    wait=True
                )
        except Exception as e:
            logger.error(
                "Chunk replace failed",
                collection=self.collection_name,
                document_id=document_id,
                error=str(e)
            )
            raise StoreWriteFailed("replace", str(e), details={"document_id": document_id}) from e

        logger.info("Chunks replaced", collection=self.collection_name, document_id=document_id, count=len(chunks))
        return len(chunks)

    async def get_chunks_by_team(self, team_id: str) -> List[Chunk]:
        return await self._scroll(_match("team_id", team_id))

    async def get_chunks_by_document(self, document_id: str) -> List[Chunk]:
        chunks = await self._scroll(_match("document_id", document_id))
        return sorted(chunks, key=lambda c: c.chunk_index)

    async def delete_document_chunks(self, document_id: str) -> int:
        existing = await self.get_chunks_by_document(document_id)
        if not existing:
            return 0
        try:
            await self.client.delete(
                collection_name=self.collection_name,
                points_selector=qdrant_models.FilterSelector(filter=_match("document_id", document_id)),
                wait=True
            )
        except Exception as e:
            raise StoreWriteFailed("delete", str(e), details={"document_id": document_id}) from e
        return len(existing)

    async def get_team_dimension(self, team_id: str, exclude_document_id: Optional[str] = None) -> Optional[int]:
        if not self._collection_ready:
            collections = await self.client.get_collections()
            if self.collection_name not in [c.name for c in collections.collections]:
                return None
        scroll_filter = qdrant_models.Filter(
            must=_match("team_id", team_id).must,
            must_not=_match("document_id", exclude_document_id).must if exclude_document_id else None
        )
        points, _ = await self.client.scroll(
            collection_name=self.collection_name,
            scroll_filter=scroll_filter,
            limit=1,
            with_payload=False,
            with_vectors=True
        )
        if not points:
            return None
        return len(points[0].vector)

    async def _scroll(self, scroll_filter: qdrant_models.Filter) -> List[Chunk]:
        if not self._collection_ready:
            collections = await self.client.get_collections()
            if self.collection_name not in [c.name for c in collections.collections]:
                return []
            self._collection_ready = True

        chunks = []
        offset = None
        while True:
            points, offset = await self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=scroll_filter,
                limit=self.scroll_page_size,
                offset=offset,
                with_payload=True,
                with_vectors=True
            )
            chunks.extend(self._from_point(point) for point in points)
            if offset is None:
                break
        return chunks

    @staticmethod
    def _to_point(chunk: Chunk) -> qdrant_models.PointStruct:
        point_id = uuid.uuid5(_POINT_NAMESPACE, f"{chunk.document_id}:{chunk.version}:{chunk.chunk_index}")
        return qdrant_models.PointStruct(
            id=str(point_id),
            vector=list(chunk.embedding),
            payload=chunk.model_dump(mode="json", exclude={"embedding"})
        )

    @staticmethod
    def _from_point(point) -> Chunk:
        return Chunk(**point.payload, embedding=list(point.vector))


def _match(key: str, value: str) -> qdrant_models.Filter:
    return qdrant_models.Filter(
        must=[qdrant_models.FieldCondition(key=key, match=qdrant_models.MatchValue(value=value))]
    )
