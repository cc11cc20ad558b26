"""
Connection management for the stores behind the team RAG service.
"""
from typing import Optional

from qdrant_client import AsyncQdrantClient
from redis.asyncio import ConnectionPool, Redis
import structlog

from teamrag.config.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Lazily creates and closes the Qdrant and Redis clients."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.redis_client: Optional[Redis] = None
        self.qdrant_client: Optional[AsyncQdrantClient] = None

    def get_qdrant_client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, creating it on first use."""
        if self.qdrant_client is None:
            qdrant = self.settings.qdrant
            try:
                self.qdrant_client = AsyncQdrantClient(
                    url=qdrant.http_url,
                    api_key=qdrant.api_key,
                    grpc_port=qdrant.grpc_port,
                    prefer_grpc=qdrant.prefer_grpc,
                    timeout=qdrant.timeout,
                )
                logger.info("Qdrant client initialized", url=qdrant.http_url)
            except Exception as e:
                logger.error("Failed to initialize Qdrant client", error=str(e))
                raise
        return self.qdrant_client

    def get_redis_client(self) -> Redis:
        """Get the Redis client, creating it on first use."""
        if self.redis_client is None:
            try:
                pool = ConnectionPool.from_url(
                    self.settings.redis.url,
                    retry_on_timeout=True,
                    health_check_interval=30,
                )
                self.redis_client = Redis(connection_pool=pool)
                logger.info("Redis client initialized", host=self.settings.redis.host)
            except Exception as e:
                logger.error("Failed to initialize Redis client", error=str(e))
                raise
        return self.redis_client

    async def health_check(self) -> dict:
        """Ping every client that has been created."""
        status = {}
        if self.redis_client is not None:
            try:
                await self.redis_client.ping()
                status["redis"] = "healthy"
            except Exception as e:
                status["redis"] = f"unhealthy: {e}"
        if self.qdrant_client is not None:
            try:
                await self.qdrant_client.get_collections()
                status["qdrant"] = "healthy"
            except Exception as e:
                status["qdrant"] = f"unhealthy: {e}"
        return status

    async def close(self):
        """Close all open clients."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("Redis connection closed")

        if self.qdrant_client is not None:
            await self.qdrant_client.close()
            self.qdrant_client = None
            logger.info("Qdrant connection closed")
