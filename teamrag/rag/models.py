"""RAG Data Models

This module defines the data models used for document ingestion, chunk
storage, retrieval, context assembly and interaction monitoring.
"""

from typing import Dict, List, Optional, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingStatus(str, Enum):
    """Document processing status enumeration."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Domain(str, Enum):
    """Interaction domain enumeration."""
    GENERAL = "general"
    CHART = "chart"
    ANALYSIS = "analysis"
    CRM = "crm"
    CONVERSATION = "conversation"


class Outcome(str, Enum):
    """Learning example outcome enumeration."""
    SUCCESSFUL = "successful"
    FAILED = "failed"


class Document(BaseModel):
    """Document record owned by a team."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    team_id: str
    source_id: str
    name: str
    media_type: str
    folder_path: str = "Unknown"
    content_length: int = 0
    chunk_count: int = 0
    embedding_count: int = 0
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    version: int = 0
    error: Optional[str] = None
    last_modified: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ChunkMetadata(BaseModel):
    """Snapshot of document metadata stored with every chunk."""
    file_name: str
    file_type: str
    folder_path: str
    total_chunks: int
    last_modified: datetime


class ChunkSpan(BaseModel):
    """A window of document text produced by the chunker."""
    model_config = ConfigDict(frozen=True)

    index: int
    text: str
    length: int
    start: int
    end: int


class Chunk(BaseModel):
    """Stored chunk with its embedding."""
    team_id: str
    document_id: str
    chunk_index: int
    text: str
    start: int = 0
    end: int = 0
    embedding: List[float]
    version: int = 0
    metadata: ChunkMetadata
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return f"{self.document_id}_chunk_{self.chunk_index}"


class ProcessedDocument(BaseModel):
    """Result of ingesting a document."""
    document: Document
    chunks: List[Chunk] = Field(default_factory=list)
    embedding_count: int = 0


class RankedChunk(BaseModel):
    """A chunk paired with its similarity to a query."""
    chunk: Chunk
    similarity: float


class DocumentContext(BaseModel):
    """A chunk included in an assembled context."""
    document_id: str
    file_name: str
    file_type: str
    chunk_text: str
    chunk_index: int
    similarity: float


class ContextBundle(BaseModel):
    """LLM-ready context for a query."""
    query: str
    has_relevant_context: bool = False
    context_text: str = ""
    included_documents: List[DocumentContext] = Field(default_factory=list)
    total_candidates_considered: int = 0
    total_documents: int = 0

    @property
    def context(self) -> str:
        return self.context_text

    @property
    def documents(self) -> List[DocumentContext]:
        return self.included_documents


class TeamDocumentStats(BaseModel):
    """Document statistics for a team."""
    document_count: int = 0
    chunk_count: int = 0
    total_characters: int = 0


class Interaction(BaseModel):
    """A single retrieval/generation attempt."""
    model_config = ConfigDict(frozen=True)

    query: str = ""
    domain: Domain = Domain.GENERAL
    success: bool
    confidence: float = Field(ge=0.0, le=1.0)
    response_time_ms: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)


class LearningExample(BaseModel):
    """A labeled interaction retained for analysis and prompt tuning."""
    model_config = ConfigDict(frozen=True)

    query: str
    domain: Domain = Domain.GENERAL
    success: bool
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    outcome: Optional[Outcome] = Field(default=None, validate_default=True)
    note: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("outcome", mode="before")
    @classmethod
    def default_outcome(cls, v, info):
        if v is None:
            success = info.data.get("success")
            return Outcome.SUCCESSFUL if success else Outcome.FAILED
        return v


class MetricsSnapshot(BaseModel):
    """Aggregate derived from the interaction log."""
    timestamp: datetime = Field(default_factory=utcnow)
    total_interactions: int = 0
    successful_interactions: int = 0
    failed_interactions: int = 0
    success_rate: float = 0.0
    average_confidence: float = 0.0
    domain_breakdown: Dict[str, int] = Field(default_factory=dict)
    examples_added: int = 0
    patterns_learned: int = 0
    improvement: float = 0.0


class WindowStats(BaseModel):
    """Success statistics over one window of interactions."""
    interactions: int = 0
    success_rate: float = 0.0
    average_confidence: float = 0.0


class EvaluationReport(BaseModel):
    """Comparison of a recent window against the window before it."""
    window: int
    baseline: WindowStats
    recent: WindowStats
    success_rate_improvement: float = 0.0
    confidence_improvement: float = 0.0
