"""
Configuration settings for the team RAG service.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RAGSettings(BaseSettings):
    """Chunking, retrieval and context assembly settings."""

    chunk_size: int = Field(default=1000)
    chunk_overlap: int = Field(default=200)
    min_document_length: int = Field(default=50)
    similarity_threshold: float = Field(default=0.3)
    max_results: int = Field(default=3)
    context_char_budget: int = Field(default=8000)
    store_backend: str = Field(default="memory")
    collection_name: str = Field(default="document_chunks")

    model_config = SettingsConfigDict(env_prefix="RAG_")

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v):
        """Only the in-memory and Qdrant chunk stores are supported."""
        if v not in ("memory", "qdrant"):
            raise ValueError(f"Unsupported store backend: {v}")
        return v

    @model_validator(mode="after")
    def check_overlap(self):
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")
        return self


class EmbeddingSettings(BaseSettings):
    """Embedding provider configuration settings."""

    provider: str = Field(default="sentence_transformers")
    model_name: str = Field(default="all-MiniLM-L6-v2")
    device: str = Field(default="cpu")
    openai_model: str = Field(default="text-embedding-3-small")
    openai_api_key: Optional[str] = Field(default=None)
    batch_size: int = Field(default=64)
    max_attempts: int = Field(default=4)
    initial_backoff_seconds: float = Field(default=1.0)
    max_backoff_seconds: float = Field(default=20.0)
    dimension: Optional[int] = Field(default=None)

    model_config = SettingsConfigDict(env_prefix="EMBEDDING_")

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v):
        if v not in ("sentence_transformers", "openai"):
            raise ValueError(f"Unsupported embedding provider: {v}")
        return v


class QdrantSettings(BaseSettings):
    """Qdrant vector database configuration settings."""

    host: str = Field(default="localhost")
    port: int = Field(default=6333)
    grpc_port: int = Field(default=6334)
    api_key: Optional[str] = Field(default=None)
    prefer_grpc: bool = Field(default=False)
    timeout: int = Field(default=30)

    model_config = SettingsConfigDict(env_prefix="QDRANT_")

    @property
    def http_url(self) -> str:
        """Get Qdrant HTTP URL."""
        return f"http://{self.host}:{self.port}"


class RedisSettings(BaseSettings):
    """Redis configuration settings."""

    enabled: bool = Field(default=False)
    host: str = Field(default="localhost")
    port: int = Field(default=6379)
    db: int = Field(default=0)
    password: Optional[str] = Field(default=None)
    key_prefix: str = Field(default="teamrag")

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    @property
    def url(self) -> str:
        """Get Redis connection URL."""
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class MonitoringSettings(BaseSettings):
    """Logging, metrics and interaction monitoring settings."""

    log_level: str = Field(default="info")
    log_format: str = Field(default="json")
    improvement_window: int = Field(default=10)
    evaluation_window: int = Field(default=20)

    model_config = SettingsConfigDict(env_prefix="MONITORING_")


class Settings(BaseSettings):
    """Main settings class that combines all configuration sections."""

    rag: RAGSettings = Field(default_factory=RAGSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    qdrant: QdrantSettings = Field(default_factory=QdrantSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    return Settings()
