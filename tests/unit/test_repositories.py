"""
Unit tests for the Job Store and Record Store repositories (SQLite-backed).
"""
import warnings

import pytest
from sqlalchemy.exc import SAWarning

from app.models.data_record import DataRecord, EmbeddingState
from app.models.ingestion_job import IngestionKind, JobStatus, RecordType
from app.repositories.job_repository import merge_skip_details


def _record(partition_id: str, content: str, external_id=None, job_id=None, record_type=RecordType.TASK):
    return DataRecord(
        partition_id=partition_id,
        record_type=record_type,
        content=content,
        external_id=external_id,
        ingest_job_id=job_id,
        metadata={"task_id": external_id} if external_id else {},
    )


class TestMergeSkipDetails:
    """**Feature: ingestion-pipeline, additive skip details**"""

    def test_merge_adds_counts(self):
        merged = merge_skip_details({"Duplicate ID": 2}, {"Duplicate ID": 1, "Keyword Mismatch": 3})
        assert merged == {"Duplicate ID": 3, "Keyword Mismatch": 3}

    def test_merge_from_nothing(self):
        assert merge_skip_details(None, {"Duplicate ID": 1}) == {"Duplicate ID": 1}

    def test_merge_does_not_mutate_input(self):
        current = {"Duplicate ID": 1}
        merge_skip_details(current, {"Duplicate ID": 1})
        assert current == {"Duplicate ID": 1}


class TestJobRepository:
    """**Feature: ingestion-pipeline, Job Store**"""

    @pytest.mark.asyncio
    async def test_create_and_get(self, job_repo, sample_partition_id):
        job = await job_repo.create(sample_partition_id, source="csv", generate_embeddings=True)
        loaded = await job_repo.get(job.id)
        assert loaded.status == JobStatus.PENDING
        assert loaded.partition_id == sample_partition_id
        assert loaded.generate_embeddings is True
        assert loaded.skipped_details == {}
        assert await job_repo.get_status(job.id) == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_create_with_explicit_id(self, job_repo):
        job = await job_repo.create("p", job_id="fixed-id")
        assert job.id == "fixed-id"

    @pytest.mark.asyncio
    async def test_missing_job(self, job_repo):
        assert await job_repo.get("nope") is None
        assert await job_repo.get_status("nope") is None
        assert await job_repo.delete_with_records("nope") is None

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, job_repo):
        job = await job_repo.create("p")
        with pytest.raises(ValueError):
            await job_repo.update(job.id, partition_id="other")

    @pytest.mark.asyncio
    async def test_transition_is_conditional(self, job_repo):
        job = await job_repo.create("p")
        assert await job_repo.transition(job.id, JobStatus.PROCESSING, from_statuses=[JobStatus.PENDING])
        assert not await job_repo.transition(job.id, JobStatus.PROCESSING, from_statuses=[JobStatus.PENDING])
        assert await job_repo.transition(job.id, JobStatus.CANCELLED)
        # a finishing lane cannot resurrect a cancelled job
        assert not await job_repo.transition(
            job.id, JobStatus.QUEUED_FOR_VEC, from_statuses=[JobStatus.PROCESSING]
        )
        assert not await job_repo.transition(job.id, JobStatus.PENDING)
        assert await job_repo.get_status(job.id) == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_transition_sets_error(self, job_repo):
        job = await job_repo.create("p")
        await job_repo.transition(job.id, JobStatus.FAILED, error="boom")
        loaded = await job_repo.get(job.id)
        assert loaded.status == JobStatus.FAILED
        assert loaded.error == "boom"

    @pytest.mark.asyncio
    async def test_record_load_progress_merges(self, job_repo):
        job = await job_repo.create("p")
        await job_repo.record_load_progress(job.id, 5, 1, {"Duplicate ID": 1})
        merged = await job_repo.record_load_progress(job.id, 9, 3, {"Duplicate ID": 1, "Keyword Mismatch": 1})
        assert merged == {"Duplicate ID": 2, "Keyword Mismatch": 1}
        loaded = await job_repo.get(job.id)
        assert loaded.saved_count == 9
        assert loaded.skipped_count == 3
        assert loaded.skipped_details == merged

    @pytest.mark.asyncio
    async def test_oldest_pending_is_fifo(self, job_repo):
        first = await job_repo.create("p")
        await job_repo.create("p")
        await job_repo.create("other")
        oldest = await job_repo.find_oldest_pending("p")
        assert oldest.id == first.id
        assert await job_repo.find_processing("p") is None

    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, job_repo):
        ids = [(await job_repo.create("p")).id for _ in range(3)]
        recent = await job_repo.list_recent("p", limit=2)
        assert [j.id for j in recent] == [ids[2], ids[1]]

    @pytest.mark.asyncio
    async def test_partitions_with_status(self, job_repo):
        await job_repo.create("a")
        await job_repo.create("b", status=JobStatus.QUEUED_FOR_VEC)
        assert await job_repo.partitions_with_status([JobStatus.PENDING]) == ["a"]
        assert sorted(await job_repo.partitions_with_status([JobStatus.PENDING, JobStatus.QUEUED_FOR_VEC])) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_partitions_with_status_lists_each_partition_once(self, job_repo):
        for partition_id in ("b", "a", "b", "a"):
            await job_repo.create(partition_id)
        with warnings.catch_warnings():
            warnings.simplefilter("error", SAWarning)
            partitions = await job_repo.partitions_with_status([JobStatus.PENDING])
        assert partitions == ["a", "b"]

    @pytest.mark.asyncio
    async def test_partitions_missing_embeddings(self, job_repo, record_repo):
        await record_repo.create_many([_record("a", "one"), _record("a", "two"), _record("b", "three")])
        done = await record_repo.create(_record("b", "four"))
        await record_repo.update_embedding(done.id, [0.1, 0.2])
        assert await job_repo.partitions_missing_embeddings() == {"a": 2, "b": 1}

    @pytest.mark.asyncio
    async def test_delete_with_records(self, job_repo, record_repo):
        job = await job_repo.create("p", ingestion_kind=IngestionKind.API)
        await record_repo.create_many([_record("p", "x", job_id=job.id), _record("p", "y", job_id=job.id)])
        keep = await record_repo.create(_record("p", "z"))

        assert await job_repo.delete_with_records(job.id) == 2
        assert await job_repo.get(job.id) is None
        assert await record_repo.get(keep.id) is not None


class TestRecordRepository:
    """**Feature: ingestion-pipeline, Record Store**"""

    @pytest.mark.asyncio
    async def test_create_and_get_roundtrip_metadata(self, record_repo):
        record = _record("p", "content", external_id="t-1")
        await record_repo.create(record)
        loaded = await record_repo.get(record.id)
        assert loaded.metadata == {"task_id": "t-1"}
        assert loaded.embedding_state == EmbeddingState.PENDING
        assert loaded.embedding is None

    @pytest.mark.asyncio
    async def test_exists_by_external_id_is_scoped(self, record_repo):
        await record_repo.create(_record("p", "c", external_id="t-1"))
        assert await record_repo.exists_by_external_id("p", RecordType.TASK, "t-1")
        assert not await record_repo.exists_by_external_id("p", RecordType.FEEDBACK, "t-1")
        assert not await record_repo.exists_by_external_id("q", RecordType.TASK, "t-1")
        assert not await record_repo.exists_by_external_id("p", RecordType.TASK, "t-2")

    @pytest.mark.asyncio
    async def test_find_existing_external_ids(self, record_repo):
        await record_repo.create_many([_record("p", "c", external_id="a"), _record("p", "d", external_id="b")])
        found = await record_repo.find_existing_external_ids("p", RecordType.TASK, ["a", "c", None])
        assert found == {"a"}

    @pytest.mark.asyncio
    async def test_fetch_missing_embeddings_skips_done_failed_and_excluded(self, record_repo):
        records = [_record("p", f"content {i}") for i in range(5)]
        await record_repo.create_many(records)
        await record_repo.update_embedding(records[0].id, [1.0])
        await record_repo.mark_embedding_failed(records[1].id, "gave up")

        fetched = await record_repo.fetch_missing_embeddings("p", limit=10, exclude_ids={records[2].id})
        assert {r.id for r in fetched} == {records[3].id, records[4].id}

        limited = await record_repo.fetch_missing_embeddings("p", limit=1)
        assert len(limited) == 1

    @pytest.mark.asyncio
    async def test_embedding_state_counts(self, record_repo):
        records = [_record("p", f"content {i}") for i in range(3)]
        await record_repo.create_many(records)
        await record_repo.update_embedding(records[0].id, [1.0, 0.0])
        await record_repo.mark_embedding_failed(records[1].id, "gave up")

        counts = await record_repo.count_by_embedding_state("p")
        assert counts == {EmbeddingState.PENDING: 1, EmbeddingState.DONE: 1, EmbeddingState.FAILED: 1}

        failed = await record_repo.get(records[1].id)
        assert failed.embedding_error == "gave up"

    @pytest.mark.asyncio
    async def test_update_metadata_merges(self, record_repo):
        record = _record("p", "c", external_id="t-1")
        await record_repo.create(record)
        updated = await record_repo.update_metadata(record.id, {"reviewed": True})
        assert updated.metadata == {"task_id": "t-1", "reviewed": True}
        assert await record_repo.update_metadata("missing", {"x": 1}) is None

    @pytest.mark.asyncio
    async def test_list_by_partition_and_count_by_job(self, record_repo):
        await record_repo.create_many([
            _record("p", "a", job_id="j1"),
            _record("p", "b", job_id="j1", record_type=RecordType.FEEDBACK),
            _record("q", "c", job_id="j2"),
        ])
        assert len(await record_repo.list_by_partition("p")) == 2
        assert len(await record_repo.list_by_partition("p", record_type=RecordType.FEEDBACK)) == 1
        assert await record_repo.count_by_job("j1") == 2
