"""
Record Repository - durable Record Store for ingested data records.

Duplicate checks are point lookups on the (partition_id, record_type,
external_id) index; Phase 2 scans use the (partition_id, embedding_state, id)
index and page through records with a stable id order.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.data_record import DataRecord, DataRecordModel, EmbeddingState
from app.models.database import _utc_now
from app.models.ingestion_job import RecordType

logger = logging.getLogger(__name__)


class RecordRepository:
    """Repository for data_records rows."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from app.core.database import get_shared_session_factory
            session_factory = get_shared_session_factory()
        self._session_factory = session_factory

    async def create(self, record: DataRecord) -> DataRecord:
        async with self._session_factory() as session:
            model = record.to_model()
            session.add(model)
            await session.commit()
            return DataRecord.from_model(model)

    async def create_many(self, records: Sequence[DataRecord]) -> int:
        """
        Insert a batch of records in one transaction.

        Returns:
            Number of records inserted
        """
        if not records:
            return 0
        async with self._session_factory() as session:
            session.add_all([r.to_model() for r in records])
            await session.commit()
        logger.debug(f"Inserted {len(records)} records")
        return len(records)

    async def get(self, record_id: str) -> Optional[DataRecord]:
        async with self._session_factory() as session:
            model = await session.get(DataRecordModel, record_id)
            return DataRecord.from_model(model) if model else None

    async def exists_by_external_id(
        self,
        partition_id: str,
        record_type: RecordType,
        external_id: str,
    ) -> bool:
        """Point lookup: is there already a record with this identifier?"""
        async with self._session_factory() as session:
            result = await session.execute(
                select(DataRecordModel.id)
                .where(
                    DataRecordModel.partition_id == partition_id,
                    DataRecordModel.record_type == record_type.value,
                    DataRecordModel.external_id == external_id,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def find_existing_external_ids(
        self,
        partition_id: str,
        record_type: RecordType,
        external_ids: Iterable[str],
    ) -> Set[str]:
        """Return the subset of `external_ids` already stored for the partition."""
        ids = list({i for i in external_ids if i})
        if not ids:
            return set()
        async with self._session_factory() as session:
            result = await session.execute(
                select(DataRecordModel.external_id).where(
                    DataRecordModel.partition_id == partition_id,
                    DataRecordModel.record_type == record_type.value,
                    DataRecordModel.external_id.in_(ids),
                )
            )
            return {value for value in result.scalars().all() if value}

    async def fetch_missing_embeddings(
        self,
        partition_id: str,
        limit: int,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[DataRecord]:
        """
        Fetch up to `limit` records of the partition still waiting for an embedding.

        Records in `exclude_ids` (given up on during the current pass) are
        never returned, so the caller's loop always makes progress.
        """
        stmt = select(DataRecordModel).where(
            DataRecordModel.partition_id == partition_id,
            DataRecordModel.embedding_state == EmbeddingState.PENDING.value,
        )
        excluded = list(exclude_ids or ())
        if excluded:
            stmt = stmt.where(DataRecordModel.id.not_in(excluded))
        stmt = stmt.order_by(DataRecordModel.id.asc()).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [DataRecord.from_model(m) for m in result.scalars().all()]

    async def update_embedding(self, record_id: str, embedding: List[float]) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(DataRecordModel)
                .where(DataRecordModel.id == record_id)
                .values(
                    embedding=list(embedding),
                    embedding_state=EmbeddingState.DONE.value,
                    embedding_error=None,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def mark_embedding_failed(self, record_id: str, reason: str) -> bool:
        """Flag a record as permanently failed; it is excluded from future scans."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(DataRecordModel)
                .where(DataRecordModel.id == record_id)
                .values(
                    embedding_state=EmbeddingState.FAILED.value,
                    embedding_error=reason,
                )
            )
            await session.commit()
        logger.warning(f"Record {record_id} marked as embedding failure: {reason}")
        return result.rowcount > 0

    async def update_metadata(self, record_id: str, updates: Dict[str, Any]) -> Optional[DataRecord]:
        """Merge `updates` into a record's metadata; None if the record is gone."""
        async with self._session_factory() as session:
            model = await session.get(DataRecordModel, record_id)
            if model is None:
                return None
            model.row_metadata = {**(model.row_metadata or {}), **updates}
            model.updated_at = _utc_now()
            await session.commit()
            return DataRecord.from_model(model)

    async def count_by_embedding_state(self, partition_id: str) -> Dict[EmbeddingState, int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DataRecordModel.embedding_state, func.count(DataRecordModel.id))
                .where(DataRecordModel.partition_id == partition_id)
                .group_by(DataRecordModel.embedding_state)
            )
            counts = {state: 0 for state in EmbeddingState}
            for state, count in result.all():
                counts[EmbeddingState(state)] = count
            return counts

    async def list_by_partition(
        self,
        partition_id: str,
        record_type: Optional[RecordType] = None,
        limit: Optional[int] = None,
    ) -> List[DataRecord]:
        stmt = select(DataRecordModel).where(DataRecordModel.partition_id == partition_id)
        if record_type is not None:
            stmt = stmt.where(DataRecordModel.record_type == record_type.value)
        stmt = stmt.order_by(DataRecordModel.created_at.asc(), DataRecordModel.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [DataRecord.from_model(m) for m in result.scalars().all()]

    async def count_by_job(self, job_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(DataRecordModel.id)).where(DataRecordModel.ingest_job_id == job_id)
            )
            return result.scalar_one()


# =============================================================================
# SINGLETON
# =============================================================================

_record_repository: Optional[RecordRepository] = None


def get_record_repository() -> RecordRepository:
    """Get or create RecordRepository singleton."""
    global _record_repository
    if _record_repository is None:
        _record_repository = RecordRepository()
    return _record_repository
