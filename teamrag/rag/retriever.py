"""Similarity Retriever

Exact cosine-similarity ranking of candidate chunks against a query vector.
"""

from typing import List, Sequence

import numpy as np
import structlog

from teamrag.core.exceptions import DimensionMismatch
from teamrag.rag.models import Chunk, RankedChunk

logger = structlog.get_logger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    if vec_a.shape != vec_b.shape:
        raise DimensionMismatch(int(vec_a.shape[0]), int(vec_b.shape[0]))

    norm = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if norm == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / norm)


class Retriever:
    """Linear-scan retriever.

    Scores every candidate, so the ranking is exact for any corpus size.
    """

    def retrieve(
        self,
        query_vector: Sequence[float],
        candidates: Sequence[Chunk],
        k: int,
        min_similarity: float
    ) -> List[RankedChunk]:
        """Rank candidates by similarity to the query.

        Args:
            query_vector: Query embedding
            candidates: Chunks to score
            k: Maximum number of results
            min_similarity: Relevance floor, inclusive

        Returns:
            At most ``k`` chunks with ``similarity >= min_similarity``, best
            first; equal similarities are ordered by ascending chunk index
            and then document id

        Raises:
            DimensionMismatch: If a candidate's embedding size differs from the query's
        """
        if k <= 0 or not candidates:
            return []

        query = np.asarray(query_vector, dtype=np.float64)
        dimension = query.shape[0]
        for chunk in candidates:
            if len(chunk.embedding) != dimension:
                raise DimensionMismatch(dimension, len(chunk.embedding), details={
                    "expected": dimension,
                    "actual": len(chunk.embedding),
                    "document_id": chunk.document_id,
                    "chunk_index": chunk.chunk_index,
                })

        matrix = np.asarray([chunk.embedding for chunk in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.zeros(len(candidates), dtype=np.float64)
        nonzero = norms > 0
        scores[nonzero] = dots[nonzero] / norms[nonzero]

        ranked = [
            RankedChunk(chunk=chunk, similarity=float(score))
            for chunk, score in zip(candidates, scores)
            if score >= min_similarity
        ]
        ranked.sort(key=lambda r: (-r.similarity, r.chunk.chunk_index, r.chunk.document_id))

        logger.debug(
            "Chunks ranked",
            candidates=len(candidates),
            above_threshold=len(ranked),
            k=k,
            min_similarity=min_similarity
        )
        return ranked[:k]
