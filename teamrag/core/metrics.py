"""
Prometheus metrics for ingestion, retrieval and interaction monitoring.
"""
from prometheus_client import Counter, Histogram, Gauge
import structlog

logger = structlog.get_logger(__name__)

# Ingestion metrics
DOCUMENTS_INGESTED = Counter('teamrag_documents_ingested_total', 'Total documents ingested', ['media_type'])
DOCUMENTS_FAILED = Counter('teamrag_documents_failed_total', 'Total failed document ingestions', ['error_code'])
CHUNKS_STORED = Counter('teamrag_chunks_stored_total', 'Total chunks stored')
INGESTION_TIME = Histogram('teamrag_ingestion_duration_seconds', 'Document ingestion time')

# Embedding metrics
EMBEDDING_RETRIES = Counter('teamrag_embedding_retries_total', 'Embedding calls retried', ['provider'])

# Retrieval metrics
RETRIEVAL_QUERIES = Counter('teamrag_retrieval_queries_total', 'Total retrieval queries', ['outcome'])
RETRIEVAL_TIME = Histogram('teamrag_retrieval_duration_seconds', 'Retrieval and context assembly time')

# Interaction metrics
INTERACTIONS_RECORDED = Counter('teamrag_interactions_total', 'Interactions recorded', ['domain', 'success'])
SUCCESS_RATE = Gauge('teamrag_interaction_success_rate', 'Current interaction success rate')


def record_ingestion_metrics(media_type: str, chunk_count: int, duration: float):
    """Record a successful document ingestion."""
    try:
        DOCUMENTS_INGESTED.labels(media_type=media_type).inc()
        CHUNKS_STORED.inc(chunk_count)
        INGESTION_TIME.observe(duration)
    except Exception as e:
        logger.error("Failed to record ingestion metrics", error=str(e))


def record_ingestion_failure(error_code: str):
    """Record a failed document ingestion."""
    try:
        DOCUMENTS_FAILED.labels(error_code=error_code).inc()
    except Exception as e:
        logger.error("Failed to record ingestion failure", error=str(e))


def record_embedding_retry(provider: str):
    """Record one retried embedding call."""
    try:
        EMBEDDING_RETRIES.labels(provider=provider).inc()
    except Exception as e:
        logger.error("Failed to record embedding retry", error=str(e))


def record_retrieval_metrics(outcome: str, duration: float):
    """Record a retrieval query.

    Args:
        outcome: ``relevant``, ``no_context`` or ``error``
        duration: Seconds spent embedding, ranking and assembling
    """
    try:
        RETRIEVAL_QUERIES.labels(outcome=outcome).inc()
        RETRIEVAL_TIME.observe(duration)
    except Exception as e:
        logger.error("Failed to record retrieval metrics", error=str(e))


def record_interaction_metrics(domain: str, success: bool):
    """Record an interaction outcome."""
    try:
        INTERACTIONS_RECORDED.labels(domain=domain, success=str(success).lower()).inc()
    except Exception as e:
        logger.error("Failed to record interaction metrics", error=str(e))


def update_success_rate(rate: float):
    """Update the success rate gauge."""
    try:
        SUCCESS_RATE.set(rate)
    except Exception as e:
        logger.error("Failed to update success rate", error=str(e))
