"""
Job Repository - durable Job Store for ingestion jobs.

All status changes that can race with an operator's cancel request go
through `transition()`, a conditional UPDATE that only applies when the
row is still in one of the expected states. A CANCELLED job therefore can
never be flipped back to QUEUED_FOR_VEC or COMPLETED by a lane that was
still finishing its batch.

**SINGLETON PATTERN**: one repository per process sharing the engine pool.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import delete, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.data_record import DataRecordModel, EmbeddingState
from app.models.database import _utc_now
from app.models.ingestion_job import (
    IngestionKind,
    IngestJob,
    IngestJobModel,
    JobStatus,
    RecordType,
)

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "status",
    "source",
    "total_records",
    "saved_count",
    "skipped_count",
    "skipped_details",
    "embedded_count",
    "embedding_failed_count",
    "error",
}


def merge_skip_details(current: Optional[Dict[str, int]], batch: Dict[str, int]) -> Dict[str, int]:
    """Additively merge a batch's skip-reason counts into the cumulative map."""
    merged = dict(current or {})
    for reason, count in batch.items():
        merged[reason] = merged.get(reason, 0) + count
    return merged


class JobRepository:
    """
    Repository for ingest_jobs rows.

    Returns detached `IngestJob` snapshots; callers never hold ORM objects
    across awaits.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from app.core.database import get_shared_session_factory
            session_factory = get_shared_session_factory()
        self._session_factory = session_factory
        self._last_created_at: Optional[datetime] = None

    def _next_created_at(self) -> datetime:
        # FIFO admission orders by created_at; keep it strictly increasing
        # within this process even on coarse clocks.
        now = _utc_now()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    @staticmethod
    def _coerce(fields: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        values = dict(fields)
        if isinstance(values.get("status"), JobStatus):
            values["status"] = values["status"].value
        values["updated_at"] = _utc_now()
        return values

    async def create(
        self,
        partition_id: str,
        record_type: RecordType = RecordType.TASK,
        ingestion_kind: IngestionKind = IngestionKind.CSV,
        source: Optional[str] = None,
        generate_embeddings: bool = False,
        status: JobStatus = JobStatus.PENDING,
        total_records: int = 0,
        saved_count: int = 0,
        job_id: Optional[str] = None,
    ) -> IngestJob:
        """Insert a new job row (PENDING unless told otherwise)."""
        created_at = self._next_created_at()
        model = IngestJobModel(
            id=job_id or str(uuid4()),
            partition_id=partition_id,
            record_type=record_type.value,
            status=status.value,
            ingestion_kind=ingestion_kind.value,
            source=source,
            generate_embeddings=generate_embeddings,
            total_records=total_records,
            saved_count=saved_count,
            skipped_count=0,
            skipped_details={},
            embedded_count=0,
            embedding_failed_count=0,
            created_at=created_at,
            updated_at=created_at,
        )
        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
            job = IngestJob.from_model(model)

        logger.info(f"Created ingest job {job.id} for partition {partition_id} ({status.value})")
        return job

    async def get(self, job_id: str) -> Optional[IngestJob]:
        async with self._session_factory() as session:
            model = await session.get(IngestJobModel, job_id)
            return IngestJob.from_model(model) if model else None

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        """Lightweight status read used at cancellation checkpoints."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(IngestJobModel.status).where(IngestJobModel.id == job_id)
            )
            value = result.scalar_one_or_none()
            return JobStatus(value) if value else None

    async def update(self, job_id: str, **fields: Any) -> Optional[IngestJob]:
        """Unconditional update of status/counters/error."""
        values = self._coerce(fields)
        async with self._session_factory() as session:
            model = await session.get(IngestJobModel, job_id)
            if model is None:
                return None
            for key, value in values.items():
                setattr(model, key, value)
            await session.commit()
            return IngestJob.from_model(model)

    async def transition(
        self,
        job_id: str,
        status: JobStatus,
        from_statuses: Optional[Iterable[JobStatus]] = None,
        **fields: Any,
    ) -> bool:
        """
        Move a job to `status` if it is currently in one of `from_statuses`.

        Args:
            job_id: Job to update
            status: Target status
            from_statuses: Allowed current statuses (None = any non-terminal)
            **fields: Extra columns to set in the same statement (e.g. error)

        Returns:
            True if the row was updated
        """
        if from_statuses is None:
            allowed = [s.value for s in JobStatus if not s.is_terminal]
        else:
            allowed = [s.value for s in from_statuses]

        values = self._coerce({**fields, "status": status})
        async with self._session_factory() as session:
            result = await session.execute(
                update(IngestJobModel)
                .where(IngestJobModel.id == job_id, IngestJobModel.status.in_(allowed))
                .values(**values)
            )
            await session.commit()
            changed = result.rowcount > 0

        if changed:
            logger.info(f"Job {job_id} -> {status.value}")
        else:
            logger.debug(f"Job {job_id} not moved to {status.value} (status outside {allowed})")
        return changed

    async def record_load_progress(
        self,
        job_id: str,
        saved_count: int,
        skipped_count: int,
        batch_skips: Dict[str, int],
    ) -> Dict[str, int]:
        """
        Persist Phase 1 counters after a batch.

        skipped_details is merged additively with what is already stored,
        never overwritten.

        Returns:
            The cumulative skipped_details map
        """
        async with self._session_factory() as session:
            model = await session.get(IngestJobModel, job_id)
            if model is None:
                raise LookupError(f"Ingest job {job_id} not found")
            merged = merge_skip_details(model.skipped_details, batch_skips)
            model.saved_count = saved_count
            model.skipped_count = skipped_count
            # assign a new dict so the JSON column is flagged dirty
            model.skipped_details = merged
            model.updated_at = _utc_now()
            await session.commit()
            return merged

    async def find_processing(self, partition_id: str) -> Optional[IngestJob]:
        return await self.find_oldest_with_status(partition_id, JobStatus.PROCESSING)

    async def find_oldest_pending(self, partition_id: str) -> Optional[IngestJob]:
        return await self.find_oldest_with_status(partition_id, JobStatus.PENDING)

    async def find_oldest_with_status(self, partition_id: str, status: JobStatus) -> Optional[IngestJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IngestJobModel)
                .where(
                    IngestJobModel.partition_id == partition_id,
                    IngestJobModel.status == status.value,
                )
                .order_by(IngestJobModel.created_at.asc(), IngestJobModel.id.asc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return IngestJob.from_model(model) if model else None

    async def find_by_status(
        self,
        statuses: Iterable[JobStatus],
        partition_id: Optional[str] = None,
    ) -> List[IngestJob]:
        stmt = select(IngestJobModel).where(
            IngestJobModel.status.in_([s.value for s in statuses])
        )
        if partition_id is not None:
            stmt = stmt.where(IngestJobModel.partition_id == partition_id)
        stmt = stmt.order_by(IngestJobModel.created_at.asc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [IngestJob.from_model(m) for m in result.scalars().all()]

    async def list_recent(self, partition_id: Optional[str] = None, limit: int = 20) -> List[IngestJob]:
        """Most recent jobs first, optionally for one partition."""
        stmt = select(IngestJobModel)
        if partition_id is not None:
            stmt = stmt.where(IngestJobModel.partition_id == partition_id)
        stmt = stmt.order_by(desc(IngestJobModel.created_at)).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [IngestJob.from_model(m) for m in result.scalars().all()]

    async def partitions_with_status(self, statuses: Iterable[JobStatus]) -> List[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IngestJobModel.partition_id)
                .where(IngestJobModel.status.in_([s.value for s in statuses]))
                .distinct()
                .order_by(IngestJobModel.partition_id)
            )
            return list(result.scalars().all())

    async def partitions_missing_embeddings(self) -> Dict[str, int]:
        """Partition -> number of records still waiting for an embedding."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(DataRecordModel.partition_id, func.count(DataRecordModel.id))
                .where(DataRecordModel.embedding_state == EmbeddingState.PENDING.value)
                .group_by(DataRecordModel.partition_id)
                .order_by(DataRecordModel.partition_id)
            )
            return {partition: count for partition, count in result.all()}

    async def delete_with_records(self, job_id: str) -> Optional[int]:
        """
        Delete a job and every record it created.

        Returns:
            Number of records deleted, or None if the job does not exist
        """
        async with self._session_factory() as session:
            model = await session.get(IngestJobModel, job_id)
            if model is None:
                return None
            result = await session.execute(
                delete(DataRecordModel).where(DataRecordModel.ingest_job_id == job_id)
            )
            await session.delete(model)
            await session.commit()
            deleted = result.rowcount

        logger.info(f"Deleted ingest job {job_id} and {deleted} records")
        return deleted


# =============================================================================
# SINGLETON
# =============================================================================

_job_repository: Optional[JobRepository] = None


def get_job_repository() -> JobRepository:
    """Get or create JobRepository singleton."""
    global _job_repository
    if _job_repository is None:
        _job_repository = JobRepository()
    return _job_repository
