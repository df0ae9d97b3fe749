"""
Ingestion Job Model.

One row per ingestion attempt. Status, counters and skip details are
mutated only by the Scheduler, the Chunk Loader and the Vectorizer; the
polling UI reads them concurrently.

Lifecycle:
    PENDING -> PROCESSING -> (QUEUED_FOR_VEC -> VECTORIZING)? -> COMPLETED
    any non-COMPLETED state -> CANCELLED | FAILED
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.database import Base, _utc_now


class JobStatus(str, Enum):
    """Ingestion job status enum."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    QUEUED_FOR_VEC = "QUEUED_FOR_VEC"
    VECTORIZING = "VECTORIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Statuses that block retroactive vectorization for a partition
ACTIVE_STATUSES = (
    JobStatus.PENDING,
    JobStatus.PROCESSING,
    JobStatus.QUEUED_FOR_VEC,
    JobStatus.VECTORIZING,
)


class RecordType(str, Enum):
    """Kind of content a job ingests."""
    TASK = "TASK"
    FEEDBACK = "FEEDBACK"


class IngestionKind(str, Enum):
    """Where a job's rows come from."""
    CSV = "CSV"
    API = "API"
    VECTORIZE = "VECTORIZE"  # payload-less, Phase 2 only


class IngestJobModel(Base):
    """SQLAlchemy model for ingest_jobs table."""

    __tablename__ = "ingest_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    partition_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    record_type: Mapped[str] = mapped_column(String(20), nullable=False, default=RecordType.TASK.value)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.PENDING.value)
    ingestion_kind: Mapped[str] = mapped_column(String(20), nullable=False, default=IngestionKind.CSV.value)
    source: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    generate_embeddings: Mapped[bool] = mapped_column(Boolean, default=False)

    total_records: Mapped[int] = mapped_column(Integer, default=0)
    saved_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_details: Mapped[dict] = mapped_column(JSON, default=dict)
    embedded_count: Mapped[int] = mapped_column(Integer, default=0)
    embedding_failed_count: Mapped[int] = mapped_column(Integer, default=0)

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)

    __table_args__ = (
        Index("idx_ingest_jobs_partition_status_created", "partition_id", "status", "created_at"),
    )


@dataclass
class IngestJob:
    """Detached snapshot of an ingest_jobs row."""
    id: str
    partition_id: str
    record_type: RecordType
    status: JobStatus
    ingestion_kind: IngestionKind
    source: Optional[str]
    generate_embeddings: bool
    total_records: int
    saved_count: int
    skipped_count: int
    skipped_details: Dict[str, int] = field(default_factory=dict)
    embedded_count: int = 0
    embedding_failed_count: int = 0
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, model: IngestJobModel) -> "IngestJob":
        return cls(
            id=model.id,
            partition_id=model.partition_id,
            record_type=RecordType(model.record_type),
            status=JobStatus(model.status),
            ingestion_kind=IngestionKind(model.ingestion_kind),
            source=model.source,
            generate_embeddings=bool(model.generate_embeddings),
            total_records=model.total_records or 0,
            saved_count=model.saved_count or 0,
            skipped_count=model.skipped_count or 0,
            skipped_details=dict(model.skipped_details or {}),
            embedded_count=model.embedded_count or 0,
            embedding_failed_count=model.embedding_failed_count or 0,
            error=model.error,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


# Pydantic schemas
class IngestOptions(BaseModel):
    """Options attached to a job at enqueue time."""
    partition_id: str = Field(..., min_length=1)
    source: str = "csv"
    record_type: RecordType = RecordType.TASK
    filter_keywords: List[str] = Field(default_factory=list)
    generate_embeddings: bool = False


class IngestJobResponse(BaseModel):
    """Schema for ingestion job API response."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    partition_id: str
    record_type: RecordType
    status: JobStatus
    ingestion_kind: IngestionKind
    source: Optional[str] = None
    generate_embeddings: bool = False
    total_records: int = 0
    saved_count: int = 0
    skipped_count: int = 0
    skipped_details: Dict[str, int] = Field(default_factory=dict)
    embedded_count: int = 0
    embedding_failed_count: int = 0
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
