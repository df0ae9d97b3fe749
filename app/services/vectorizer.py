"""
Vectorizer - Phase 2 of an ingestion job.

Scans the whole partition for records still waiting for an embedding (from
this job or any earlier one) and embeds them in bounded batches.

Termination: a record whose in-memory attempt count reaches the retry limit
is marked FAILED in the Record Store and added to the exclusion set, so every
iteration either embeds, fails-permanently, or spends one retry of a record.
The loop cannot spin forever even if some records always fail.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from app.core.config import settings
from app.engine.embedding_provider import VectorGenerator
from app.models.data_record import DataRecord
from app.repositories.job_repository import JobRepository
from app.repositories.record_repository import RecordRepository
from app.services.cancellation import JobCancellationToken

logger = logging.getLogger(__name__)


def permanent_failure_reason(max_retries: int) -> str:
    return f"Failed to generate embedding after {max_retries} attempts"


@dataclass
class VectorizeResult:
    """Phase 2 totals for one run."""
    embedded_count: int = 0
    failed_count: int = 0
    batches: int = 0
    cancelled: bool = False


class Vectorizer:
    """
    Computes and persists embeddings for a partition.

    Retry counts live only for the duration of one `run()`; a record is
    marked permanently failed once it has been attempted `max_retries` times.
    """

    def __init__(
        self,
        job_repository: JobRepository,
        record_repository: RecordRepository,
        generator: VectorGenerator,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._jobs = job_repository
        self._records = record_repository
        self._generator = generator
        self.batch_size = batch_size or settings.vectorize_batch_size
        self.max_retries = max_retries or settings.max_embedding_retries
        self.backoff_seconds = (
            settings.vectorize_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self._sleep = sleep

    async def _embed(self, records: List[DataRecord]) -> List[List[float]]:
        texts = [r.content for r in records]
        try:
            vectors = await self._generator.embed(texts)
        except Exception as e:
            # generators should degrade on their own; treat a raise as a full batch failure
            logger.error(f"[Vectorize] Vector generator raised: {e}")
            return [[] for _ in texts]

        if len(vectors) != len(texts):
            logger.error(
                f"[Vectorize] Generator returned {len(vectors)} vectors for {len(texts)} inputs"
            )
            vectors = list(vectors[:len(texts)]) + [[] for _ in range(len(texts) - len(vectors))]
        return vectors

    async def run(self, job_id: str, partition_id: str, token: JobCancellationToken) -> VectorizeResult:
        """
        Embed every pending record of the partition.

        Args:
            job_id: Job whose embedded/failed counters are updated per batch
            partition_id: Scope of the scan
            token: Checked before each scan iteration

        Returns:
            VectorizeResult (cancelled=True if stopped by a cancel)
        """
        result = VectorizeResult()
        attempts: Dict[str, int] = {}
        excluded: Set[str] = set()
        reason = permanent_failure_reason(self.max_retries)

        logger.info(f"[Vectorize] Job {job_id}: scanning partition {partition_id}")

        while True:
            if await token.is_cancelled():
                logger.info(f"[Vectorize] Job {job_id} cancelled after {result.batches} batches")
                result.cancelled = True
                break

            batch = await self._records.fetch_missing_embeddings(
                partition_id, limit=self.batch_size, exclude_ids=excluded
            )
            if not batch:
                break
            result.batches += 1

            eligible = [r for r in batch if attempts.get(r.id, 0) < self.max_retries]
            exhausted = [r for r in batch if attempts.get(r.id, 0) >= self.max_retries]

            for record in exhausted:
                await self._records.mark_embedding_failed(record.id, reason)
                excluded.add(record.id)
                attempts.pop(record.id, None)
                result.failed_count += 1

            successes = 0
            if eligible:
                vectors = await self._embed(eligible)
                for record, vector in zip(eligible, vectors):
                    if vector:
                        await self._records.update_embedding(record.id, vector)
                        attempts.pop(record.id, None)
                        successes += 1
                    else:
                        attempts[record.id] = attempts.get(record.id, 0) + 1
                result.embedded_count += successes

                logger.info(
                    f"[Vectorize] Batch result: {successes}/{len(eligible)} successful "
                    f"({len(exhausted)} permanently failed)"
                )

            await self._jobs.update(
                job_id,
                embedded_count=result.embedded_count,
                embedding_failed_count=result.failed_count,
            )

            if eligible and successes == 0:
                logger.warning(
                    f"[Vectorize] Entire batch failed, backing off {self.backoff_seconds}s"
                )
                await self._sleep(self.backoff_seconds)

        logger.info(
            f"[Vectorize] Job {job_id} done: embedded {result.embedded_count}, "
            f"failed {result.failed_count}, batches {result.batches}"
        )
        return result
