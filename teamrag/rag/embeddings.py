"""Embedding Providers for RAG

This module converts chunk and query text into fixed-length vectors. Providers
wrap a concrete model; the ``Embedder`` adds batching, retry with exponential
backoff and corpus-wide dimension checks on top of any provider.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence
import asyncio

import numpy as np
import structlog
import openai
from openai import AsyncOpenAI
from sentence_transformers import SentenceTransformer
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from teamrag.config.settings import EmbeddingSettings, get_settings
from teamrag.core.exceptions import ConfigurationError, DimensionMismatch, EmbeddingFailed
from teamrag.core.metrics import record_embedding_retry

logger = structlog.get_logger(__name__)

# One embedding: a 1-D float32 array whose length is the corpus dimension.
Vector = np.ndarray


class TransientEmbeddingError(Exception):
    """Provider failure worth retrying (rate limit, network, timeout)."""


TRANSIENT_ERRORS = (
    TransientEmbeddingError,
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
    asyncio.TimeoutError,
    ConnectionError,
)


def to_vector(values: Sequence[float], dimension: Optional[int] = None) -> Vector:
    """Convert raw floats into a ``Vector``, enforcing the dimension if given."""
    vector = np.asarray(values, dtype=np.float32)
    if vector.ndim != 1:
        raise ValueError("An embedding must be one-dimensional")
    if dimension is not None and vector.shape != (dimension,):
        raise DimensionMismatch(dimension, int(vector.shape[0]))
    return vector


class EmbeddingProvider(ABC):
    """External text-to-vector model."""

    name: str = "provider"

    @abstractmethod
    async def embed_documents(self, texts: List[str]) -> List[Sequence[float]]:
        """Embed a batch of texts, one vector per text, in order."""


class SentenceTransformerProvider(EmbeddingProvider):
    """Local sentence-transformers model run in a thread pool."""

    name = "sentence_transformers"

    def __init__(self, model_name: str, device: str = "cpu"):
        self.model_name = model_name
        self.device = device
        self._model = None

    def _load_model(self) -> SentenceTransformer:
        if self._model is None:
            try:
                self._model = SentenceTransformer(self.model_name, device=self.device)
                logger.info(
                    "Embedding model initialized",
                    model=self.model_name,
                    vector_size=self._model.get_sentence_embedding_dimension()
                )
            except Exception as e:
                logger.error(
                    "Failed to initialize embedding model",
                    model=self.model_name,
                    error=str(e)
                )
                raise
        return self._model

    def _encode(self, texts: List[str]) -> np.ndarray:
        return self._load_model().encode(texts, normalize_embeddings=True)

    async def embed_documents(self, texts: List[str]) -> List[Sequence[float]]:
        # Run in thread pool to avoid blocking the event loop
        loop = asyncio.get_running_loop()
        embeddings = await loop.run_in_executor(None, self._encode, texts)
        return list(embeddings)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings API."""

    name = "openai"

    def __init__(self, model_name: str = "text-embedding-3-small", api_key: Optional[str] = None,
                 client: Optional[AsyncOpenAI] = None):
        self.model_name = model_name
        self.client = client or AsyncOpenAI(api_key=api_key)

    async def embed_documents(self, texts: List[str]) -> List[Sequence[float]]:
        response = await self.client.embeddings.create(
            model=self.model_name,
            input=texts,
            encoding_format="float",
        )
        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]


class Embedder:
    """Batched, retried embedding with a fixed corpus dimension."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        initial_backoff: Optional[float] = None,
        max_backoff: Optional[float] = None,
        dimension: Optional[int] = None
    ):
        """Initialize the embedder.

        Args:
            provider: Model that turns texts into vectors
            batch_size: Maximum texts per provider call
            max_attempts: Attempts per batch before giving up
            initial_backoff: First retry delay in seconds
            max_backoff: Upper bound on the retry delay in seconds
            dimension: Pin the vector size; learned from the first call otherwise
        """
        config = get_settings().embedding
        self.provider = provider
        self.batch_size = batch_size or config.batch_size
        self.max_attempts = max_attempts or config.max_attempts
        self.initial_backoff = config.initial_backoff_seconds if initial_backoff is None else initial_backoff
        self.max_backoff = config.max_backoff_seconds if max_backoff is None else max_backoff
        self._dimension = dimension if dimension is not None else config.dimension

    @property
    def dimension(self) -> Optional[int]:
        """Vector size produced by this embedder, once known."""
        return self._dimension

    async def embed(self, text: str) -> Vector:
        """Embed a single text."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[Vector]:
        """Embed texts in provider batches.

        Raises:
            EmbeddingFailed: If a batch fails permanently or exhausts retries
            DimensionMismatch: If a vector's size differs from the corpus dimension
        """
        vectors: List[Vector] = []
        for offset in range(0, len(texts), self.batch_size):
            batch = texts[offset:offset + self.batch_size]
            raw = await self._call_with_retry(batch)
            if len(raw) != len(batch):
                raise EmbeddingFailed(
                    self.provider.name, 1,
                    f"provider returned {len(raw)} vectors for {len(batch)} texts"
                )
            for values in raw:
                vector = to_vector(values)
                if self._dimension is None:
                    self._dimension = int(vector.shape[0])
                elif vector.shape != (self._dimension,):
                    raise DimensionMismatch(self._dimension, int(vector.shape[0]))
                vectors.append(vector)

        logger.debug("Texts embedded", provider=self.provider.name, count=len(vectors))
        return vectors

    async def _call_with_retry(self, batch: List[str]) -> List[Sequence[float]]:
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_backoff, max=self.max_backoff),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=self._before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    return await self.provider.embed_documents(batch)
        except Exception as e:
            logger.error(
                "Embedding failed",
                provider=self.provider.name,
                attempts=attempts,
                error=str(e)
            )
            raise EmbeddingFailed(self.provider.name, attempts, str(e)) from e

    def _before_sleep(self, retry_state) -> None:
        record_embedding_retry(self.provider.name)
        logger.warning(
            "Retrying embedding call",
            provider=self.provider.name,
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception())
        )


def create_embedding_provider(config: Optional[EmbeddingSettings] = None) -> EmbeddingProvider:
    """Build the provider named in the embedding settings."""
    config = config or get_settings().embedding
    if config.provider == "sentence_transformers":
        return SentenceTransformerProvider(config.model_name, device=config.device)
    if config.provider == "openai":
        if not config.openai_api_key:
            raise ConfigurationError("embedding", "EMBEDDING_OPENAI_API_KEY is required for the openai provider")
        return OpenAIEmbeddingProvider(config.openai_model, api_key=config.openai_api_key)
    raise ConfigurationError("embedding", f"unknown provider {config.provider}")
