"""
Chunk Loader - Phase 1 of an ingestion job.

Pipeline per batch: Cancel check -> Classify -> Keyword filter -> Duplicate
filter -> Insert -> Persist progress.

- Batches are committed one by one; a cancel stops before the next batch and
  keeps everything already committed.
- A row failing the keyword filter is counted once as "Keyword Mismatch",
  even if it is also a duplicate.
- skipped_details is merged additively into the job after every batch.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from app.core.config import settings
from app.engine.content_classifier import (
    classify_row,
    extract_external_id,
    extract_provenance,
    matches_keywords,
    row_metadata,
)
from app.models.data_record import DataRecord
from app.models.ingestion_job import IngestOptions
from app.repositories.job_repository import JobRepository
from app.repositories.record_repository import RecordRepository
from app.services.cancellation import JobCancellationToken
from app.services.duplicate_filter import DuplicateFilter

logger = logging.getLogger(__name__)

SKIP_KEYWORD_MISMATCH = "Keyword Mismatch"
SKIP_DUPLICATE_ID = "Duplicate ID"
SKIP_UNPROCESSABLE = "Unprocessable Row"


@dataclass
class LoadResult:
    """Phase 1 totals for one job."""
    saved_count: int = 0
    skipped_count: int = 0
    skipped_details: Dict[str, int] = field(default_factory=dict)
    batches_committed: int = 0
    cancelled: bool = False


def chunked(rows: Sequence[Any], size: int) -> List[Sequence[Any]]:
    """Split rows into consecutive batches of at most `size`."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [rows[i:i + size] for i in range(0, len(rows), size)]


class ChunkLoader:
    """
    Loads parsed rows into the Record Store in fixed-size batches.

    **Pattern:** one loader per Scheduler; state per call lives in locals
    and in a per-job DuplicateFilter.
    """

    def __init__(
        self,
        job_repository: JobRepository,
        record_repository: RecordRepository,
        chunk_size: Optional[int] = None,
        min_content_length: Optional[int] = None,
    ):
        self._jobs = job_repository
        self._records = record_repository
        self.chunk_size = chunk_size or settings.ingest_chunk_size
        self.min_content_length = min_content_length or settings.content_min_length

    def _build_record(self, job_id: str, row: Any, options: IngestOptions, content, category, external_id):
        provenance = extract_provenance(row)
        return DataRecord(
            partition_id=options.partition_id,
            record_type=options.record_type,
            content=content,
            ingest_job_id=job_id,
            category=category,
            source=options.source,
            external_id=external_id,
            metadata=row_metadata(row),
            created_by_id=provenance.created_by_id,
            created_by_name=provenance.created_by_name,
            created_by_email=provenance.created_by_email,
            created_at=provenance.created_at,
            updated_at=provenance.updated_at,
        )

    async def load(
        self,
        job_id: str,
        rows: Sequence[Any],
        options: IngestOptions,
        token: JobCancellationToken,
    ) -> LoadResult:
        """
        Run Phase 1 for a job.

        Args:
            job_id: Job being loaded (counters are persisted on it)
            rows: Parsed payload rows
            options: Partition, source tag, record type, keyword filter
            token: Checked before every batch

        Returns:
            LoadResult with cumulative totals (cancelled=True on early stop)
        """
        result = LoadResult()
        duplicates = DuplicateFilter(self._records, options.partition_id, options.record_type)
        batches = chunked(rows, self.chunk_size)

        logger.info(
            f"[Load] Job {job_id}: {len(rows)} rows in {len(batches)} batches "
            f"(partition={options.partition_id}, type={options.record_type.value})"
        )

        for number, batch in enumerate(batches, start=1):
            if await token.is_cancelled():
                logger.info(f"[Load] Job {job_id} cancelled before batch {number}/{len(batches)}")
                result.cancelled = True
                return result

            batch_skips: Counter = Counter()
            candidates = []

            for row in batch:
                try:
                    classified = classify_row(row, min_length=self.min_content_length)
                    if not matches_keywords(classified.content, options.filter_keywords):
                        batch_skips[SKIP_KEYWORD_MISMATCH] += 1
                        continue
                    candidates.append((row, classified, extract_external_id(row)))
                except Exception as e:
                    logger.warning(f"[Load] Job {job_id}: skipping unprocessable row: {e}")
                    batch_skips[SKIP_UNPROCESSABLE] += 1

            flags = await duplicates.check_batch([eid for _, _, eid in candidates])

            to_insert: List[DataRecord] = []
            for (row, classified, external_id), is_duplicate in zip(candidates, flags):
                if is_duplicate:
                    batch_skips[SKIP_DUPLICATE_ID] += 1
                    continue
                to_insert.append(
                    self._build_record(
                        job_id, row, options, classified.content, classified.category, external_id
                    )
                )

            saved = await self._records.create_many(to_insert)
            result.saved_count += saved
            result.skipped_count += sum(batch_skips.values())
            result.skipped_details = await self._jobs.record_load_progress(
                job_id,
                saved_count=result.saved_count,
                skipped_count=result.skipped_count,
                batch_skips=dict(batch_skips),
            )
            result.batches_committed += 1

            logger.info(
                f"[Load] Job {job_id} batch {number}/{len(batches)}: "
                f"saved {saved}, skipped {sum(batch_skips.values())}"
            )

        return result
