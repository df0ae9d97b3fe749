"""
API Dependencies - Dependency Injection for FastAPI

Provides the pipeline services to route handlers. Tests override these via
`app.dependency_overrides`.
"""
from typing import Annotated

from fastapi import Depends

from app.services.ingestion_scheduler import IngestionScheduler, get_ingestion_scheduler
from app.services.upload_sessions import UploadSessionStore

_upload_store = None


def get_scheduler() -> IngestionScheduler:
    return get_ingestion_scheduler()


def get_upload_store() -> UploadSessionStore:
    """Get or create the shared UploadSessionStore."""
    global _upload_store
    if _upload_store is None:
        _upload_store = UploadSessionStore()
    return _upload_store


# =============================================================================
# Service Dependencies
# =============================================================================

Scheduler = Annotated[IngestionScheduler, Depends(get_scheduler)]

UploadStore = Annotated[UploadSessionStore, Depends(get_upload_store)]
