"""Service layer for the ingestion pipeline."""

from app.services.chunk_loader import ChunkLoader, LoadResult
from app.services.ingestion_scheduler import (
    IngestionScheduler,
    JobNotFoundError,
    get_ingestion_scheduler,
)
from app.services.payload_cache import CachedPayload, PayloadCache
from app.services.vectorizer import Vectorizer, VectorizeResult

__all__ = [
    "ChunkLoader",
    "LoadResult",
    "IngestionScheduler",
    "JobNotFoundError",
    "get_ingestion_scheduler",
    "CachedPayload",
    "PayloadCache",
    "Vectorizer",
    "VectorizeResult",
]
