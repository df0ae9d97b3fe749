"""
Ingestion Scheduler - per-partition lanes driving Phase 1 and Phase 2.

Lanes:
- Phase 1 lane (one per partition): a queue of wake-up signals consumed by a
  single worker task. The worker admits PENDING jobs oldest-first, one at a
  time, so at most one job per partition is ever PROCESSING.
- Phase 2 lane (one per partition): takes QUEUED_FOR_VEC jobs oldest-first,
  one at a time, and runs the Vectorizer over the whole partition.

Phase 2 of job N may overlap Phase 1 of job N+1 in the same partition;
partitions never wait on each other.

Admission loop (Phase 1 worker):
1. PROCESSING job without cached payload -> FAILED "Job interrupted by server
   restart", then continue; with payload -> stop (admission in flight)
2. Oldest PENDING job; none -> stop
3. Payload missing -> FAILED "Job payload lost", continue
4. PROCESSING -> parse -> Chunk Loader
5. QUEUED_FOR_VEC (embeddings requested) or COMPLETED; CANCELLED if the
   loader observed a cancel; FAILED with the exception message on error
6. Evict the payload, continue with the next PENDING job

**SINGLETON PATTERN**: one scheduler per process (the Payload Cache it owns
is process-local).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from uuid import uuid4

import httpx

from app.engine.embedding_provider import VectorGenerator, get_vector_generator
from app.engine.payload_parser import parse_payload
from app.models.ingestion_job import (
    ACTIVE_STATUSES,
    IngestionKind,
    IngestJob,
    IngestOptions,
    JobStatus,
)
from app.repositories.job_repository import JobRepository, get_job_repository
from app.repositories.record_repository import RecordRepository, get_record_repository
from app.services.cancellation import JobCancellationToken
from app.services.chunk_loader import ChunkLoader
from app.services.payload_cache import CachedPayload, PayloadCache
from app.services.vectorizer import Vectorizer

logger = logging.getLogger(__name__)

ERROR_RESTART_INTERRUPTED = "Job interrupted by server restart"
ERROR_PAYLOAD_LOST = "Job payload lost"
RETROACTIVE_SOURCE = "retroactive-vectorization"


class JobNotFoundError(LookupError):
    """Raised for status/cancel/delete of an unknown job id."""

    def __init__(self, job_id: str):
        super().__init__(f"Ingest job {job_id} not found")
        self.job_id = job_id


class _Lane:
    """
    Signal queue plus the single worker task consuming it.

    A lane only exists while it has work: its worker removes it once the
    queue is empty after a drain, and the next kick builds a fresh one.
    """

    def __init__(self, name: str):
        self.name = name
        self.signals: asyncio.Queue = asyncio.Queue()
        self.worker: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return not self.signals.empty() or (self.worker is not None and not self.worker.done())


class IngestionScheduler:
    """
    Owns the Payload Cache, the lanes and the outward job API.

    Usage:
        scheduler = IngestionScheduler(job_repo, record_repo, generator)
        await scheduler.start()
        job_id = await scheduler.enqueue("project-1", csv_text, options)
        job = await scheduler.get_status(job_id)
    """

    def __init__(
        self,
        job_repository: Optional[JobRepository] = None,
        record_repository: Optional[RecordRepository] = None,
        vector_generator: Optional[VectorGenerator] = None,
        payload_cache: Optional[PayloadCache] = None,
        chunk_loader: Optional[ChunkLoader] = None,
        vectorizer: Optional[Vectorizer] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._jobs = job_repository or get_job_repository()
        self._records = record_repository or get_record_repository()
        self._generator = vector_generator or get_vector_generator()
        self._cache = payload_cache or PayloadCache()
        self._loader = chunk_loader or ChunkLoader(self._jobs, self._records)
        self._vectorizer = vectorizer or Vectorizer(self._jobs, self._records, self._generator)
        self._http_client = http_client

        self._phase1_lanes: Dict[str, _Lane] = {}
        self._phase2_lanes: Dict[str, _Lane] = {}
        self._tokens: Dict[str, JobCancellationToken] = {}

        logger.info("IngestionScheduler initialized")

    @property
    def payload_cache(self) -> PayloadCache:
        return self._cache

    @property
    def job_repository(self) -> JobRepository:
        return self._jobs

    @property
    def record_repository(self) -> RecordRepository:
        return self._records

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """
        Startup recovery, then wake every partition with outstanding work.

        VECTORIZING jobs go back to QUEUED_FOR_VEC (the partition scan is
        safe to rerun). PENDING/PROCESSING jobs are handled by the normal
        admission loop, which fails them if their payload is gone.
        """
        for job in await self._jobs.find_by_status([JobStatus.VECTORIZING]):
            await self._jobs.transition(
                job.id, JobStatus.QUEUED_FOR_VEC, from_statuses=[JobStatus.VECTORIZING]
            )
            logger.warning(f"Requeued interrupted vectorization job {job.id}")

        for partition_id in await self._jobs.partitions_with_status(
            [JobStatus.PENDING, JobStatus.PROCESSING]
        ):
            self._kick_phase1(partition_id)
        for partition_id in await self._jobs.partitions_with_status([JobStatus.QUEUED_FOR_VEC]):
            self._kick_phase2(partition_id)

        logger.info(
            f"IngestionScheduler started ({len(self._phase1_lanes)} load lanes, "
            f"{len(self._phase2_lanes)} vectorize lanes)"
        )

    async def stop(self) -> None:
        """Cancel every lane worker and wait for them to exit."""
        lanes = list(self._phase1_lanes.values()) + list(self._phase2_lanes.values())
        tasks = [lane.worker for lane in lanes if lane.worker and not lane.worker.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._phase1_lanes.clear()
        self._phase2_lanes.clear()
        self._tokens.clear()

        close = getattr(self._generator, "close", None)
        if close is not None:
            await close()
        logger.info(f"IngestionScheduler stopped ({len(tasks)} workers cancelled)")

    def lane_stats(self) -> Dict[str, int]:
        """Running lane workers and cached payloads, for health reporting."""
        def running(lanes: Dict[str, _Lane]) -> int:
            return sum(1 for lane in lanes.values() if lane.worker and not lane.worker.done())

        return {
            "load_lanes": running(self._phase1_lanes),
            "vectorize_lanes": running(self._phase2_lanes),
            "cached_payloads": len(self._cache),
        }

    async def wait_idle(self, partition_id: Optional[str] = None) -> None:
        """Wait until the lanes (of one partition, or all) have no work left."""
        while True:
            # a Phase 2 lane may be created while a Phase 1 lane is joined
            busy = [lane for lane in self._lanes_for(partition_id) if lane.busy]
            if not busy:
                return
            for lane in busy:
                await lane.signals.join()
                if lane.worker is not None and not lane.worker.done():
                    await asyncio.wait([lane.worker])

    def _lanes_for(self, partition_id: Optional[str]) -> List[_Lane]:
        # Phase 1 first: it may signal Phase 2 while draining
        if partition_id is None:
            return list(self._phase1_lanes.values()) + list(self._phase2_lanes.values())
        lanes = [self._phase1_lanes.get(partition_id), self._phase2_lanes.get(partition_id)]
        return [lane for lane in lanes if lane is not None]

    # =========================================================================
    # LANES
    # =========================================================================

    def _kick(
        self,
        lanes: Dict[str, _Lane],
        partition_id: str,
        drain: Callable[[str], Awaitable[None]],
        prefix: str,
    ) -> None:
        lane = lanes.get(partition_id)
        if lane is None:
            lane = _Lane(f"{prefix}-{partition_id}")
            lanes[partition_id] = lane
        lane.signals.put_nowait(None)
        if lane.worker is None or lane.worker.done():
            lane.worker = asyncio.create_task(
                self._worker(lanes, lane, partition_id, drain), name=lane.name
            )

    def _kick_phase1(self, partition_id: str) -> None:
        self._kick(self._phase1_lanes, partition_id, self._drain_phase1, "ingest-load")

    def _kick_phase2(self, partition_id: str) -> None:
        self._kick(self._phase2_lanes, partition_id, self._drain_phase2, "ingest-vectorize")

    async def _worker(
        self,
        lanes: Dict[str, _Lane],
        lane: _Lane,
        partition_id: str,
        drain: Callable[[str], Awaitable[None]],
    ) -> None:
        while True:
            await lane.signals.get()
            # coalesce signals that arrived while idle
            extra = 0
            while not lane.signals.empty():
                lane.signals.get_nowait()
                extra += 1
            try:
                await drain(partition_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[{lane.name}] lane error: {e}")
            finally:
                for _ in range(extra + 1):
                    lane.signals.task_done()

            if lane.signals.empty():
                if lanes.get(partition_id) is lane:
                    del lanes[partition_id]
                logger.debug(f"[{lane.name}] idle, lane closed")
                return

    async def _drain_phase1(self, partition_id: str) -> None:
        while True:
            processing = await self._jobs.find_processing(partition_id)
            if processing is not None:
                if self._cache.contains(processing.id):
                    return
                logger.warning(f"Job {processing.id} was PROCESSING without payload, failing it")
                await self._jobs.transition(
                    processing.id,
                    JobStatus.FAILED,
                    from_statuses=[JobStatus.PROCESSING],
                    error=ERROR_RESTART_INTERRUPTED,
                )
                continue

            job = await self._jobs.find_oldest_pending(partition_id)
            if job is None:
                return

            entry = self._cache.get(job.id)
            if entry is None:
                logger.warning(f"Job {job.id} has no cached payload, failing it")
                await self._jobs.transition(
                    job.id,
                    JobStatus.FAILED,
                    from_statuses=[JobStatus.PENDING],
                    error=ERROR_PAYLOAD_LOST,
                )
                continue

            await self._run_phase1(job, entry)

    async def _run_phase1(self, job: IngestJob, entry: CachedPayload) -> None:
        token = self._tokens.setdefault(job.id, JobCancellationToken(job.id, self._jobs))
        try:
            admitted = await self._jobs.transition(
                job.id, JobStatus.PROCESSING, from_statuses=[JobStatus.PENDING]
            )
            if not admitted:
                return

            rows = await parse_payload(entry.kind, entry.payload, client=self._http_client)
            await self._jobs.update(job.id, total_records=len(rows))

            result = await self._loader.load(job.id, rows, entry.options, token)
            if result.cancelled:
                await self._jobs.transition(
                    job.id, JobStatus.CANCELLED, from_statuses=[JobStatus.PROCESSING]
                )
                return

            if entry.options.generate_embeddings:
                queued = await self._jobs.transition(
                    job.id, JobStatus.QUEUED_FOR_VEC, from_statuses=[JobStatus.PROCESSING]
                )
                if queued:
                    self._kick_phase2(job.partition_id)
            else:
                await self._jobs.transition(
                    job.id, JobStatus.COMPLETED, from_statuses=[JobStatus.PROCESSING]
                )
            logger.info(
                f"Job {job.id} loaded: saved {result.saved_count}, skipped {result.skipped_count}"
            )
        except Exception as e:
            logger.error(f"Job {job.id} failed during load: {e}")
            await self._jobs.transition(
                job.id,
                JobStatus.FAILED,
                from_statuses=[JobStatus.PENDING, JobStatus.PROCESSING],
                error=str(e) or e.__class__.__name__,
            )
        finally:
            self._cache.evict(job.id)
            self._tokens.pop(job.id, None)

    async def _drain_phase2(self, partition_id: str) -> None:
        while True:
            job = await self._jobs.find_oldest_with_status(partition_id, JobStatus.QUEUED_FOR_VEC)
            if job is None:
                return
            started = await self._jobs.transition(
                job.id, JobStatus.VECTORIZING, from_statuses=[JobStatus.QUEUED_FOR_VEC]
            )
            if not started:
                continue
            await self._run_phase2(job)

    async def _run_phase2(self, job: IngestJob) -> None:
        token = self._tokens.setdefault(job.id, JobCancellationToken(job.id, self._jobs))
        try:
            result = await self._vectorizer.run(job.id, job.partition_id, token)
            final = JobStatus.CANCELLED if result.cancelled else JobStatus.COMPLETED
            await self._jobs.transition(job.id, final, from_statuses=[JobStatus.VECTORIZING])
        except Exception as e:
            logger.error(f"Job {job.id} failed during vectorization: {e}")
            await self._jobs.transition(
                job.id,
                JobStatus.FAILED,
                from_statuses=[JobStatus.VECTORIZING],
                error=str(e) or e.__class__.__name__,
            )
        finally:
            self._tokens.pop(job.id, None)

    # =========================================================================
    # OUTWARD API
    # =========================================================================

    async def enqueue(
        self,
        partition_id: str,
        raw_payload: str,
        options: Union[IngestOptions, Dict[str, Any], None] = None,
        kind: IngestionKind = IngestionKind.CSV,
    ) -> str:
        """
        Create a PENDING job, cache its payload and wake the partition's lane.

        Args:
            partition_id: Target partition ("project")
            raw_payload: CSV text, JSON text or endpoint URL
            options: IngestOptions (partition_id is forced to `partition_id`)
            kind: CSV or API

        Returns:
            The new job id
        """
        if kind == IngestionKind.VECTORIZE:
            raise ValueError("Use enqueue_vectorization() for payload-less jobs")
        if isinstance(options, IngestOptions):
            options = options.model_copy(update={"partition_id": partition_id})
        else:
            options = IngestOptions(**{**(options or {}), "partition_id": partition_id})

        job_id = str(uuid4())
        # cached before the row exists so the lane never sees it without payload
        self._cache.put(job_id, CachedPayload(kind=kind, payload=raw_payload, options=options))
        try:
            await self._jobs.create(
                partition_id,
                record_type=options.record_type,
                ingestion_kind=kind,
                source=options.source,
                generate_embeddings=options.generate_embeddings,
                job_id=job_id,
            )
        except Exception:
            self._cache.evict(job_id)
            raise

        self._kick_phase1(partition_id)
        return job_id

    async def enqueue_vectorization(self, partition_id: Optional[str] = None) -> List[str]:
        """
        Queue payload-less vectorization jobs for partitions with missing embeddings.

        Partitions with any active job are skipped; their own Phase 2 (or the
        next one) will pick the records up.
        """
        missing = await self._jobs.partitions_missing_embeddings()
        if partition_id is not None:
            missing = {p: c for p, c in missing.items() if p == partition_id}

        busy = set(await self._jobs.partitions_with_status(ACTIVE_STATUSES))
        job_ids = []
        for pid, count in missing.items():
            if count <= 0:
                continue
            if pid in busy:
                logger.info(f"Skipping retroactive vectorization for {pid}: job in progress")
                continue
            job = await self._jobs.create(
                pid,
                ingestion_kind=IngestionKind.VECTORIZE,
                source=RETROACTIVE_SOURCE,
                generate_embeddings=True,
                status=JobStatus.QUEUED_FOR_VEC,
                total_records=count,
            )
            job_ids.append(job.id)
            self._kick_phase2(pid)

        logger.info(f"Queued {len(job_ids)} retroactive vectorization jobs")
        return job_ids

    async def get_status(self, job_id: str) -> IngestJob:
        job = await self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def cancel(self, job_id: str) -> IngestJob:
        """
        Request cooperative cancellation.

        Terminal jobs are returned unchanged. Running loops stop at their next
        checkpoint; committed work is kept.
        """
        job = await self.get_status(job_id)
        if job.status.is_terminal:
            return job

        await self._jobs.transition(job_id, JobStatus.CANCELLED, from_statuses=ACTIVE_STATUSES)
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        if job.status == JobStatus.PENDING:
            self._cache.evict(job_id)

        logger.info(f"Cancellation requested for job {job_id} (was {job.status.value})")
        return await self.get_status(job_id)

    async def list_recent(self, partition_id: Optional[str] = None, limit: int = 20) -> List[IngestJob]:
        return await self._jobs.list_recent(partition_id, limit=limit)

    async def delete_job(self, job_id: str) -> int:
        """
        Delete a job and the records it created.

        Returns:
            Number of records deleted
        """
        job = await self.get_status(job_id)
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        self._cache.evict(job_id)

        deleted = await self._jobs.delete_with_records(job_id)
        if deleted is None:
            raise JobNotFoundError(job_id)
        logger.info(f"Deleted job {job_id} ({job.status.value}) with {deleted} records")
        return deleted


# =============================================================================
# SINGLETON
# =============================================================================

_scheduler: Optional[IngestionScheduler] = None


def get_ingestion_scheduler() -> IngestionScheduler:
    """Get or create IngestionScheduler singleton."""
    global _scheduler
    if _scheduler is None:
        _scheduler = IngestionScheduler()
    return _scheduler


def reset_ingestion_scheduler() -> None:
    """Drop the singleton (tests, shutdown)."""
    global _scheduler
    _scheduler = None
