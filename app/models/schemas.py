"""
Pydantic Schemas for API Request/Response
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

from app.models.ingestion_job import IngestJobResponse, RecordType


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)"""
    return datetime.now(timezone.utc)


class ComponentStatus(str, Enum):
    """Status of a system component"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


# =============================================================================
# Ingest Request/Response Schemas
# =============================================================================

class ApiIngestRequest(BaseModel):
    """
    Ingest rows from a JSON API.

    `payload` is either an inline JSON document (array of rows or a single
    row) or an http(s) URL returning one.
    """
    partition_id: str = Field(..., min_length=1, description="Target partition (project)")
    payload: str = Field(..., min_length=1, description="Inline JSON or endpoint URL")
    record_type: RecordType = Field(default=RecordType.TASK)
    source: Optional[str] = Field(default=None, description="Source tag stored on each record")
    filter_keywords: list[str] = Field(default_factory=list)
    generate_embeddings: bool = Field(default=False)


class ChunkedUploadRequest(BaseModel):
    """One call of the chunked CSV upload protocol (camelCase as sent by the uploader)."""
    action: Literal["start", "chunk", "complete"]
    uploadId: str = Field(..., min_length=1, max_length=100)
    partition_id: Optional[str] = None
    record_type: RecordType = RecordType.TASK
    fileName: Optional[str] = None
    totalChunks: Optional[int] = None
    generateEmbeddings: bool = True
    chunkIndex: Optional[int] = None
    content: Optional[str] = None


class ChunkedUploadResponse(BaseModel):
    success: bool = True
    uploadId: str
    receivedChunk: Optional[int] = None
    totalReceived: Optional[int] = None
    totalExpected: Optional[int] = None
    job_id: Optional[str] = None


class EnqueueResponse(BaseModel):
    """Returned when a job has been queued."""
    job_id: str
    status: str = "PENDING"
    message: str = "Ingestion job queued"


class JobListResponse(BaseModel):
    jobs: list[IngestJobResponse]
    total: int


class DeleteJobResponse(BaseModel):
    job_id: str
    deleted_records: int


class RetroactiveVectorizationRequest(BaseModel):
    partition_id: Optional[str] = Field(default=None, description="Limit to one partition")


class RetroactiveVectorizationResponse(BaseModel):
    job_ids: list[str]
    message: str


# =============================================================================
# Health Check Schemas
# =============================================================================

class ComponentHealth(BaseModel):
    """Health status of a single component"""
    name: str = Field(..., description="Component name")
    status: ComponentStatus = Field(..., description="Component status")
    latency_ms: Optional[float] = Field(default=None, description="Response latency in ms")
    message: Optional[str] = Field(default=None, description="Status message or error")


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Overall system status")
    version: str = Field(..., description="Application version")
    environment: str = Field(..., description="Current environment")
    components: dict[str, ComponentHealth] = Field(
        ...,
        description="Status of all components: API, Database, Scheduler"
    )
    timestamp: datetime = Field(default_factory=utc_now, description="Check timestamp")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "status": "healthy",
                    "version": "0.1.0",
                    "environment": "development",
                    "components": {
                        "api": {"name": "API", "status": "healthy", "latency_ms": 0.1},
                        "database": {"name": "Database", "status": "healthy", "latency_ms": 4.2},
                        "scheduler": {"name": "Ingestion Scheduler", "status": "healthy"}
                    }
                }
            ]
        }
    }


# =============================================================================
# Error Response Schemas
# =============================================================================

class ErrorDetail(BaseModel):
    """Detail of a validation or processing error"""
    field: Optional[str] = Field(default=None, description="Field that caused the error")
    message: str = Field(..., description="Error message")
    code: Optional[str] = Field(default=None, description="Error code")


class ErrorResponse(BaseModel):
    """Standard error response format"""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[list[ErrorDetail]] = Field(default=None, description="Error details")
    request_id: Optional[str] = Field(default=None, description="Request ID for tracking")
    timestamp: datetime = Field(default_factory=utc_now, description="Error timestamp")
