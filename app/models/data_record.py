"""
Data Record Model.

One ingested content unit. The original source row is kept verbatim in
`metadata`; the external identifier used for duplicate suppression is
lifted into its own indexed column so the duplicate check is a point
lookup rather than a JSON-path scan. Embedding progress is tracked by a
first-class `embedding_state` column for the same reason.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.database import Base, _utc_now
from app.models.ingestion_job import RecordType


class RecordCategory(str, Enum):
    """Quality label derived from a row's rating fields."""
    TOP_10 = "TOP_10"
    BOTTOM_10 = "BOTTOM_10"


class EmbeddingState(str, Enum):
    """Phase 2 progress for a single record."""
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"  # retries exhausted, never picked up again automatically


class DataRecordModel(Base):
    """SQLAlchemy model for data_records table."""

    __tablename__ = "data_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    partition_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ingest_job_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    record_type: Mapped[str] = mapped_column(String(20), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    row_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    embedding: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    embedding_state: Mapped[str] = mapped_column(String(20), nullable=False, default=EmbeddingState.PENDING.value)
    embedding_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_by_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_by_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    __table_args__ = (
        Index("idx_data_records_external_id", "partition_id", "record_type", "external_id"),
        Index("idx_data_records_embedding_scan", "partition_id", "embedding_state", "id"),
    )


@dataclass
class DataRecord:
    """
    Detached view of a data_records row.

    Also used as the insert payload: the Chunk Loader builds these and the
    Record Store persists them.
    """
    partition_id: str
    record_type: RecordType
    content: str
    id: str = field(default_factory=lambda: str(uuid4()))
    ingest_job_id: Optional[str] = None
    category: Optional[RecordCategory] = None
    source: Optional[str] = None
    external_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None
    embedding_state: EmbeddingState = EmbeddingState.PENDING
    embedding_error: Optional[str] = None
    created_by_id: Optional[str] = None
    created_by_name: Optional[str] = None
    created_by_email: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_model(self) -> DataRecordModel:
        now = _utc_now()
        return DataRecordModel(
            id=self.id,
            partition_id=self.partition_id,
            ingest_job_id=self.ingest_job_id,
            record_type=self.record_type.value,
            category=self.category.value if self.category else None,
            source=self.source,
            content=self.content,
            external_id=self.external_id,
            row_metadata=self.metadata,
            embedding=self.embedding,
            embedding_state=self.embedding_state.value,
            embedding_error=self.embedding_error,
            created_by_id=self.created_by_id,
            created_by_name=self.created_by_name,
            created_by_email=self.created_by_email,
            created_at=self.created_at or now,
            updated_at=self.updated_at or now,
        )

    @classmethod
    def from_model(cls, model: DataRecordModel) -> "DataRecord":
        return cls(
            id=model.id,
            partition_id=model.partition_id,
            ingest_job_id=model.ingest_job_id,
            record_type=RecordType(model.record_type),
            category=RecordCategory(model.category) if model.category else None,
            source=model.source,
            content=model.content,
            external_id=model.external_id,
            metadata=dict(model.row_metadata or {}),
            embedding=model.embedding,
            embedding_state=EmbeddingState(model.embedding_state),
            embedding_error=model.embedding_error,
            created_by_id=model.created_by_id,
            created_by_name=model.created_by_name,
            created_by_email=model.created_by_email,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )
