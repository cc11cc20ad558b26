"""Test configuration for pytest.

This module sets up the Python path for tests and provides fixtures shared
by the RAG tests: a deterministic keyword embedding provider and a service
wired on in-memory storage.
"""

import sys
from pathlib import Path
from typing import List, Sequence

import pytest

# Add the project root directory to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from teamrag.config.settings import RAGSettings, Settings  # noqa: E402
from teamrag.rag.embeddings import Embedder, EmbeddingProvider  # noqa: E402
from teamrag.rag.service import RAGService  # noqa: E402

VOCABULARY = [
    "revenue", "pipeline", "contract", "holiday",
    "security", "onboarding", "pricing", "hiring",
]


class KeywordEmbeddingProvider(EmbeddingProvider):
    """Bag-of-words vectors over a fixed vocabulary.

    Texts sharing vocabulary words get a positive cosine similarity, texts
    with disjoint vocabulary are orthogonal.
    """

    name = "keyword"

    def __init__(self, vocabulary: Sequence[str] = VOCABULARY):
        self.vocabulary = list(vocabulary)
        self.calls = 0

    def vector(self, text: str) -> List[float]:
        lower = text.lower()
        return [float(lower.count(word)) for word in self.vocabulary]

    async def embed_documents(self, texts: List[str]) -> List[Sequence[float]]:
        self.calls += 1
        return [self.vector(text) for text in texts]


def make_text(sentence: str, length: int) -> str:
    """Repeat a sentence up to exactly ``length`` characters."""
    repeated = (sentence + " ") * (length // (len(sentence) + 1) + 1)
    return repeated[:length]


@pytest.fixture
def provider():
    return KeywordEmbeddingProvider()


@pytest.fixture
def embedder(provider):
    return Embedder(provider, batch_size=8, max_attempts=3, initial_backoff=0, max_backoff=0)


@pytest.fixture
def settings():
    return Settings(rag=RAGSettings(
        chunk_size=200,
        chunk_overlap=50,
        min_document_length=50,
        similarity_threshold=0.3,
        max_results=3,
        context_char_budget=2000,
    ))


@pytest.fixture
def rag_service(embedder, settings):
    """RAG service on in-memory stores with the keyword provider."""
    return RAGService(embedder, settings=settings)


@pytest.fixture
def text_of():
    return make_text


@pytest.fixture
def keyword_provider():
    """Factory for keyword providers over a custom vocabulary."""
    return KeywordEmbeddingProvider
