"""
Unit tests for the chunked upload client (httpx MockTransport).
"""
import json

import httpx
import pytest

from app.models.ingestion_job import RecordType
from app.services.chunked_upload_client import (
    ChunkedUploadClient,
    ChunkedUploadError,
    split_utf8,
)


class FakeIngestServer:
    """Records requests; `chunk_failures` maps chunk index -> list of status codes to return first."""

    def __init__(self, chunk_failures=None):
        self.requests = []
        self.chunks = {}
        self.chunk_failures = {k: list(v) for k, v in (chunk_failures or {}).items()}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/ingest/csv":
            return httpx.Response(202, json={"job_id": "direct-job", "status": "PENDING"})

        body = json.loads(request.content)
        action = body["action"]
        if action == "start":
            return httpx.Response(200, json={"success": True, "uploadId": body["uploadId"]})
        if action == "chunk":
            pending = self.chunk_failures.get(body["chunkIndex"])
            if pending:
                status = pending.pop(0)
                if status == 0:
                    raise httpx.ConnectError("connection reset", request=request)
                return httpx.Response(status, json={"detail": f"chunk error {status}"})
            self.chunks[body["chunkIndex"]] = body["content"]
            return httpx.Response(200, json={"success": True})
        if action == "complete":
            assembled = "".join(self.chunks[i] for i in sorted(self.chunks))
            return httpx.Response(
                202, json={"job_id": "chunked-job", "status": "PENDING", "size": len(assembled)}
            )
        return httpx.Response(400, json={"detail": "Invalid action"})

    def actions(self):
        return [
            json.loads(r.content)["action"] if r.url.path.endswith("chunked") else "direct"
            for r in self.requests
        ]


def _uploader(server, recording_sleep, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://testserver")
    options = dict(chunk_bytes=8, threshold_bytes=16, max_retries=3, retry_delay_seconds=1.0)
    options.update(kwargs)
    return http, ChunkedUploadClient(http, sleep=recording_sleep, **options)


class TestSplitUtf8:
    """**Feature: ingestion-pipeline, chunk splitting**"""

    def test_pieces_rejoin_to_original(self):
        text = "id,prompt\n1,héllo wörld ✓\n2,日本語のテキスト\n"
        pieces = split_utf8(text.encode("utf-8"), 5)
        assert "".join(pieces) == text
        assert all(len(p.encode("utf-8")) <= 5 for p in pieces)

    def test_rejects_tiny_chunks(self):
        with pytest.raises(ValueError):
            split_utf8(b"abc", 3)


class TestChunkedUploadClient:
    """**Feature: ingestion-pipeline, chunked upload client**"""

    @pytest.mark.asyncio
    async def test_small_file_uses_single_request(self, recording_sleep):
        server = FakeIngestServer()
        http, uploader = _uploader(server, recording_sleep)
        async with http:
            result = await uploader.upload(b"id\n1\n", "p", file_name="small.csv")

        assert result["job_id"] == "direct-job"
        assert server.actions() == ["direct"]
        assert b"small.csv" in server.requests[0].content

    @pytest.mark.asyncio
    async def test_large_file_is_chunked(self, recording_sleep):
        server = FakeIngestServer()
        http, uploader = _uploader(server, recording_sleep)
        data = "id,prompt\n1,first row\n2,second row\n"
        async with http:
            result = await uploader.upload(data, "p", record_type=RecordType.FEEDBACK)

        assert result["job_id"] == "chunked-job"
        actions = server.actions()
        assert actions[0] == "start"
        assert actions[-1] == "complete"
        assert actions.count("chunk") == len(split_utf8(data.encode("utf-8"), 8))

        start = json.loads(server.requests[0].content)
        assert start["record_type"] == "FEEDBACK"
        assert start["totalChunks"] == actions.count("chunk")
        assert "".join(server.chunks[i] for i in sorted(server.chunks)) == data
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_transient_chunk_failures_are_retried(self, recording_sleep):
        server = FakeIngestServer(chunk_failures={1: [503, 0]})
        http, uploader = _uploader(server, recording_sleep)
        data = "x" * 30
        async with http:
            result = await uploader.upload(data, "p")

        assert result["job_id"] == "chunked-job"
        assert recording_sleep.delays == [1.0, 2.0]
        assert "".join(server.chunks[i] for i in sorted(server.chunks)) == data

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, recording_sleep):
        server = FakeIngestServer(chunk_failures={0: [500, 500, 500]})
        http, uploader = _uploader(server, recording_sleep)
        async with http:
            with pytest.raises(ChunkedUploadError, match="after 3 attempts"):
                await uploader.upload("y" * 30, "p")

        assert "complete" not in server.actions()
        assert recording_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_client_error_aborts_immediately(self, recording_sleep):
        server = FakeIngestServer(chunk_failures={0: [410]})
        http, uploader = _uploader(server, recording_sleep)
        async with http:
            with pytest.raises(ChunkedUploadError) as exc:
                await uploader.upload("z" * 30, "p")

        assert exc.value.status_code == 410
        assert "chunk error 410" in str(exc.value)
        assert server.actions().count("chunk") == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_direct_upload_error(self, recording_sleep):
        def reject(request):
            return httpx.Response(400, json={"detail": "partition_id is required"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(reject), base_url="http://testserver")
        uploader = ChunkedUploadClient(http, threshold_bytes=1024, sleep=recording_sleep)
        async with http:
            with pytest.raises(ChunkedUploadError, match="partition_id is required"):
                await uploader.upload(b"id\n1\n", "")
