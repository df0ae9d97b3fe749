"""
Chunked Upload Client - send large CSV files to the ingest API in pieces.

Files up to `upload_chunk_threshold_bytes` go in one multipart request to
POST /ingest/csv. Larger files use the chunked protocol on
POST /ingest/csv/chunked:

    start    -> {uploadId, partition_id, record_type, fileName, totalChunks}
    chunk    -> {uploadId, chunkIndex, content}   (retried, linear backoff)
    complete -> {uploadId}                        (returns the job id)

A 4xx response is definitive and aborts immediately; 5xx and transport
errors are retried up to `upload_client_max_retries` times per chunk.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from uuid import uuid4

import httpx

from app.core.config import settings
from app.models.ingestion_job import RecordType

logger = logging.getLogger(__name__)


class ChunkedUploadError(Exception):
    """Upload aborted; `status_code` is set when the server answered."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def split_utf8(data: bytes, chunk_bytes: int) -> List[str]:
    """
    Split encoded text into pieces of at most `chunk_bytes` bytes.

    Boundaries are moved back so no multi-byte character is cut in half.
    """
    if chunk_bytes < 4:
        raise ValueError("chunk_bytes must be at least 4")
    pieces = []
    start = 0
    while start < len(data):
        end = min(start + chunk_bytes, len(data))
        # 0b10xxxxxx is a continuation byte
        while end < len(data) and (data[end] & 0xC0) == 0x80:
            end -= 1
        pieces.append(data[start:end].decode("utf-8"))
        start = end
    return pieces


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)


class ChunkedUploadClient:
    """
    Client for the ingest upload endpoints.

    Usage:
        async with httpx.AsyncClient(base_url="http://host/api/v1") as http:
            client = ChunkedUploadClient(http)
            result = await client.upload(data, "project-1", file_name="rows.csv")
            job_id = result["job_id"]
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        chunk_bytes: Optional[int] = None,
        threshold_bytes: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self.chunk_bytes = chunk_bytes or settings.upload_client_chunk_bytes
        self.threshold_bytes = threshold_bytes or settings.upload_chunk_threshold_bytes
        self.max_retries = max_retries or settings.upload_client_max_retries
        self.retry_delay_seconds = (
            settings.upload_client_retry_delay_seconds
            if retry_delay_seconds is None else retry_delay_seconds
        )
        self._sleep = sleep

    async def _post_json(self, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._client.post("/ingest/csv/chunked", json=body)
        if response.status_code >= 400:
            raise ChunkedUploadError(_error_message(response), response.status_code)
        return response.json()

    async def _send_chunk(self, upload_id: str, index: int, content: str) -> None:
        last_error = f"Failed to upload chunk {index + 1}"
        for attempt in range(self.max_retries):
            try:
                response = await self._client.post(
                    "/ingest/csv/chunked",
                    json={"action": "chunk", "uploadId": upload_id, "chunkIndex": index, "content": content},
                )
                if response.status_code < 400:
                    return
                last_error = _error_message(response)
                if response.status_code < 500:
                    # client error: retrying cannot help
                    raise ChunkedUploadError(last_error, response.status_code)
            except httpx.HTTPError as e:
                last_error = f"Network error on chunk {index + 1}: {e}"

            logger.warning(f"Chunk {index} attempt {attempt + 1}/{self.max_retries} failed: {last_error}")
            if attempt < self.max_retries - 1:
                await self._sleep(self.retry_delay_seconds * (attempt + 1))

        raise ChunkedUploadError(f"{last_error} (after {self.max_retries} attempts)")

    async def upload(
        self,
        data: Union[bytes, str],
        partition_id: str,
        record_type: RecordType = RecordType.TASK,
        file_name: str = "upload.csv",
        generate_embeddings: bool = True,
    ) -> Dict[str, Any]:
        """
        Upload a CSV file, chunked if it is above the threshold.

        Returns:
            The API response of the final call (contains job_id)
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        record_type = RecordType(record_type)

        if len(data) <= self.threshold_bytes:
            response = await self._client.post(
                "/ingest/csv",
                data={
                    "partition_id": partition_id,
                    "record_type": record_type.value,
                    "generate_embeddings": str(generate_embeddings).lower(),
                },
                files={"file": (file_name, data, "text/csv")},
            )
            if response.status_code >= 400:
                raise ChunkedUploadError(_error_message(response), response.status_code)
            return response.json()

        pieces = split_utf8(data, self.chunk_bytes)
        upload_id = uuid4().hex
        logger.info(f"Uploading {file_name} ({len(data)} bytes) in {len(pieces)} chunks as {upload_id}")

        await self._post_json({
            "action": "start",
            "uploadId": upload_id,
            "partition_id": partition_id,
            "record_type": record_type.value,
            "fileName": file_name,
            "totalChunks": len(pieces),
            "generateEmbeddings": generate_embeddings,
        })
        for index, content in enumerate(pieces):
            await self._send_chunk(upload_id, index, content)

        return await self._post_json({"action": "complete", "uploadId": upload_id})
