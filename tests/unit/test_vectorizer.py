"""
Unit tests for the Vectorizer (Phase 2).
"""
import pytest

from app.models.data_record import DataRecord, EmbeddingState
from app.models.ingestion_job import IngestionKind, JobStatus, RecordType
from app.services.cancellation import JobCancellationToken
from app.services.vectorizer import Vectorizer, permanent_failure_reason


class RaisingGenerator:
    def __init__(self):
        self.calls = 0

    async def embed(self, texts):
        self.calls += 1
        raise RuntimeError("provider exploded")


class ShortGenerator:
    """Returns fewer vectors than inputs."""

    async def embed(self, texts):
        return [[1.0, 0.0]]


class CancelAfterChecks:
    def __init__(self, allowed: int):
        self.allowed = allowed
        self.checks = 0

    async def is_cancelled(self) -> bool:
        self.checks += 1
        return self.checks > self.allowed


async def _seed_records(record_repo, partition_id, contents):
    records = [
        DataRecord(partition_id=partition_id, record_type=RecordType.TASK, content=c)
        for c in contents
    ]
    await record_repo.create_many(records)
    return records


async def _vectorize_job(job_repo, partition_id="p"):
    return await job_repo.create(
        partition_id,
        ingestion_kind=IngestionKind.VECTORIZE,
        status=JobStatus.VECTORIZING,
        generate_embeddings=True,
    )


def _vectorizer(job_repo, record_repo, generator, sleep, batch_size=4, max_retries=3):
    return Vectorizer(
        job_repo,
        record_repo,
        generator,
        batch_size=batch_size,
        max_retries=max_retries,
        backoff_seconds=0.5,
        sleep=sleep,
    )


class TestVectorizer:
    """**Feature: ingestion-pipeline, Phase 2 vectorization**"""

    @pytest.mark.asyncio
    async def test_embeds_every_pending_record(self, job_repo, record_repo, recording_sleep, generator_factory):
        generator = generator_factory()
        await _seed_records(record_repo, "p", [f"record {i}" for i in range(10)])
        job = await _vectorize_job(job_repo)

        result = await _vectorizer(job_repo, record_repo, generator, recording_sleep).run(
            job.id, "p", JobCancellationToken(job.id, job_repo)
        )

        assert result.embedded_count == 10
        assert result.failed_count == 0
        assert not result.cancelled
        assert all(len(call) <= 4 for call in generator.calls)
        assert recording_sleep.delays == []

        counts = await record_repo.count_by_embedding_state("p")
        assert counts[EmbeddingState.DONE] == 10
        stored = await job_repo.get(job.id)
        assert stored.embedded_count == 10

    @pytest.mark.asyncio
    async def test_terminates_with_always_failing_records(self, job_repo, record_repo, recording_sleep, generator_factory):
        generator = generator_factory(fail_markers=["poison"])
        good = [f"good record {i}" for i in range(5)]
        bad = [f"poison record {i}" for i in range(3)]
        await _seed_records(record_repo, "p", good + bad)
        job = await _vectorize_job(job_repo)

        result = await _vectorizer(job_repo, record_repo, generator, recording_sleep, max_retries=3).run(
            job.id, "p", JobCancellationToken(job.id, job_repo)
        )

        assert result.embedded_count == 5
        assert result.failed_count == 3
        for text in bad:
            assert generator.attempts_for(text) == 3
        for text in good:
            assert generator.attempts_for(text) == 1

        counts = await record_repo.count_by_embedding_state("p")
        assert counts == {EmbeddingState.PENDING: 0, EmbeddingState.DONE: 5, EmbeddingState.FAILED: 3}

        failed = [r for r in await record_repo.list_by_partition("p") if r.embedding_state == EmbeddingState.FAILED]
        assert {r.embedding_error for r in failed} == {permanent_failure_reason(3)}

        stored = await job_repo.get(job.id)
        assert stored.embedded_count == 5
        assert stored.embedding_failed_count == 3

    @pytest.mark.asyncio
    async def test_backs_off_when_whole_batch_fails(self, job_repo, record_repo, recording_sleep, generator_factory):
        generator = generator_factory(fail_all=True)
        await _seed_records(record_repo, "p", ["only record here"])
        job = await _vectorize_job(job_repo)

        result = await _vectorizer(job_repo, record_repo, generator, recording_sleep, max_retries=2).run(
            job.id, "p", JobCancellationToken(job.id, job_repo)
        )

        assert result.failed_count == 1
        assert result.embedded_count == 0
        assert recording_sleep.delays == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_generator_raising_counts_as_failed_attempt(self, job_repo, record_repo, recording_sleep, generator_factory):
        generator = RaisingGenerator()
        await _seed_records(record_repo, "p", ["a record", "another record"])
        job = await _vectorize_job(job_repo)

        result = await _vectorizer(job_repo, record_repo, generator, recording_sleep, max_retries=2).run(
            job.id, "p", JobCancellationToken(job.id, job_repo)
        )

        assert generator.calls == 2
        assert result.failed_count == 2

    @pytest.mark.asyncio
    async def test_short_generator_result_is_padded(self, job_repo, record_repo, recording_sleep, generator_factory):
        await _seed_records(record_repo, "p", ["first record", "second record"])
        job = await _vectorize_job(job_repo)

        result = await _vectorizer(job_repo, record_repo, ShortGenerator(), recording_sleep, max_retries=1).run(
            job.id, "p", JobCancellationToken(job.id, job_repo)
        )

        assert result.embedded_count == 1
        assert result.failed_count == 1

    @pytest.mark.asyncio
    async def test_scan_is_partition_wide_and_scoped(self, job_repo, record_repo, recording_sleep, generator_factory):
        generator = generator_factory()
        await _seed_records(record_repo, "p", ["from an older job"])
        await _seed_records(record_repo, "other", ["different partition"])
        job = await _vectorize_job(job_repo)

        result = await _vectorizer(job_repo, record_repo, generator, recording_sleep).run(
            job.id, "p", JobCancellationToken(job.id, job_repo)
        )

        assert result.embedded_count == 1
        other = await record_repo.count_by_embedding_state("other")
        assert other[EmbeddingState.PENDING] == 1

    @pytest.mark.asyncio
    async def test_failed_records_are_not_retried_by_later_runs(self, job_repo, record_repo, recording_sleep, generator_factory):
        generator = generator_factory(fail_markers=["poison"])
        await _seed_records(record_repo, "p", ["poison pill record"])
        first = await _vectorize_job(job_repo)
        await _vectorizer(job_repo, record_repo, generator, recording_sleep, max_retries=1).run(
            first.id, "p", JobCancellationToken(first.id, job_repo)
        )
        calls_after_first = len(generator.calls)

        second = await _vectorize_job(job_repo)
        result = await _vectorizer(job_repo, record_repo, generator, recording_sleep, max_retries=1).run(
            second.id, "p", JobCancellationToken(second.id, job_repo)
        )

        assert result.batches == 0
        assert len(generator.calls) == calls_after_first

    @pytest.mark.asyncio
    async def test_cancellation_stops_between_iterations(self, job_repo, record_repo, recording_sleep, generator_factory):
        generator = generator_factory()
        await _seed_records(record_repo, "p", [f"record {i}" for i in range(12)])
        job = await _vectorize_job(job_repo)

        result = await _vectorizer(job_repo, record_repo, generator, recording_sleep, batch_size=4).run(
            job.id, "p", CancelAfterChecks(1)
        )

        assert result.cancelled
        assert result.embedded_count == 4
        counts = await record_repo.count_by_embedding_state("p")
        assert counts[EmbeddingState.DONE] == 4
        assert counts[EmbeddingState.PENDING] == 8

    @pytest.mark.asyncio
    async def test_cancelled_job_in_store(self, job_repo, record_repo, recording_sleep, generator_factory):
        await _seed_records(record_repo, "p", ["record"])
        job = await _vectorize_job(job_repo)
        await job_repo.transition(job.id, JobStatus.CANCELLED)

        result = await _vectorizer(job_repo, record_repo, generator_factory(), recording_sleep).run(
            job.id, "p", JobCancellationToken(job.id, job_repo)
        )

        assert result.cancelled
        assert result.embedded_count == 0
