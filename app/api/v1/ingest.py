"""
Ingest API Endpoints.

Thin HTTP layer over the IngestionScheduler: accepts uploads, exposes job
status, cancel, deletion and retroactive vectorization. Authentication is
handled upstream.

Endpoints:
- POST   /ingest/csv                          multipart CSV upload
- POST   /ingest/api                          JSON document or endpoint URL
- POST   /ingest/csv/chunked                  start | chunk | complete
- GET    /ingest/jobs                         recent jobs
- GET    /ingest/status/{job_id}              poll one job
- POST   /ingest/cancel/{job_id}              cooperative cancel
- DELETE /ingest/jobs/{job_id}                delete job and its records
- POST   /ingest/retroactive-vectorization    embed records left without vectors
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile

from app.api.deps import Scheduler, UploadStore
from app.core.config import settings
from app.models.ingestion_job import IngestionKind, IngestJobResponse, IngestOptions, RecordType
from app.models.schemas import (
    ApiIngestRequest,
    ChunkedUploadRequest,
    ChunkedUploadResponse,
    DeleteJobResponse,
    EnqueueResponse,
    JobListResponse,
    RetroactiveVectorizationRequest,
    RetroactiveVectorizationResponse,
)
from app.services.ingestion_scheduler import JobNotFoundError
from app.services.upload_sessions import UploadSessionError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingest", tags=["Ingestion"])


def _parse_keywords(raw: Optional[str]) -> list[str]:
    """Comma-separated keyword list from a form field."""
    if not raw:
        return []
    return [k.strip() for k in raw.split(",") if k.strip()]


def _upload_error(e: UploadSessionError) -> HTTPException:
    detail = {"error": e.message, **e.details} if e.details else e.message
    return HTTPException(status_code=e.status_code, detail=detail)


@router.post("/csv", response_model=EnqueueResponse, status_code=202)
async def ingest_csv(
    scheduler: Scheduler,
    file: UploadFile = File(...),
    partition_id: str = Form(...),
    record_type: RecordType = Form(default=RecordType.TASK),
    filter_keywords: Optional[str] = Form(default=None),
    generate_embeddings: bool = Form(default=False),
) -> EnqueueResponse:
    """
    Queue a CSV file for ingestion.

    - **file**: CSV with a header row
    - **partition_id**: target partition
    - **filter_keywords**: comma-separated; rows whose content contains none are skipped
    """
    content = await file.read()
    if len(content) > settings.upload_max_total_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum size is {settings.upload_max_total_bytes // (1024 * 1024)}MB",
        )
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="CSV file must be UTF-8 encoded")

    options = IngestOptions(
        partition_id=partition_id,
        source=f"csv:{file.filename or 'upload.csv'}",
        record_type=record_type,
        filter_keywords=_parse_keywords(filter_keywords),
        generate_embeddings=generate_embeddings,
    )
    job_id = await scheduler.enqueue(partition_id, text, options, kind=IngestionKind.CSV)
    logger.info(f"CSV upload {file.filename} queued as job {job_id}")
    return EnqueueResponse(job_id=job_id)


@router.post("/api", response_model=EnqueueResponse, status_code=202)
async def ingest_api(request: ApiIngestRequest, scheduler: Scheduler) -> EnqueueResponse:
    """Queue rows from an inline JSON document or a JSON endpoint."""
    options = IngestOptions(
        partition_id=request.partition_id,
        source=request.source or "api",
        record_type=request.record_type,
        filter_keywords=request.filter_keywords,
        generate_embeddings=request.generate_embeddings,
    )
    job_id = await scheduler.enqueue(
        request.partition_id, request.payload, options, kind=IngestionKind.API
    )
    return EnqueueResponse(job_id=job_id)


@router.post("/csv/chunked", response_model=ChunkedUploadResponse)
async def ingest_csv_chunked(
    request: ChunkedUploadRequest,
    scheduler: Scheduler,
    store: UploadStore,
) -> ChunkedUploadResponse:
    """
    Chunked upload protocol for large CSV files.

    Session files are read and written in a worker thread so the lane
    workers keep running while a large upload is assembled.
    """
    try:
        if request.action == "start":
            if request.totalChunks is None:
                raise UploadSessionError("totalChunks is required", 400)
            await asyncio.to_thread(
                store.start,
                request.uploadId,
                partition_id=request.partition_id or "",
                record_type=request.record_type,
                file_name=request.fileName,
                total_chunks=request.totalChunks,
                generate_embeddings=request.generateEmbeddings,
            )
            return ChunkedUploadResponse(uploadId=request.uploadId)

        if request.action == "chunk":
            if request.chunkIndex is None or request.content is None:
                raise UploadSessionError("chunkIndex and content are required", 400)
            receipt = await asyncio.to_thread(
                store.put_chunk, request.uploadId, request.chunkIndex, request.content
            )
            return ChunkedUploadResponse(
                uploadId=request.uploadId,
                receivedChunk=receipt.received_chunk,
                totalReceived=receipt.total_received,
                totalExpected=receipt.total_expected,
            )

        payload, meta = await asyncio.to_thread(store.complete, request.uploadId)
    except UploadSessionError as e:
        logger.warning(f"Chunked upload {request.uploadId} {request.action} rejected: {e.message}")
        raise _upload_error(e)

    options = IngestOptions(
        partition_id=meta.partition_id,
        source=f"csv:{meta.file_name}",
        record_type=RecordType(meta.record_type),
        generate_embeddings=meta.generate_embeddings,
    )
    job_id = await scheduler.enqueue(meta.partition_id, payload, options, kind=IngestionKind.CSV)
    return ChunkedUploadResponse(uploadId=request.uploadId, job_id=job_id)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    scheduler: Scheduler,
    partition_id: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
) -> JobListResponse:
    jobs = await scheduler.list_recent(partition_id, limit=limit)
    return JobListResponse(
        jobs=[IngestJobResponse.model_validate(job) for job in jobs],
        total=len(jobs),
    )


@router.get("/status/{job_id}", response_model=IngestJobResponse)
async def get_job_status(job_id: str, scheduler: Scheduler) -> IngestJobResponse:
    try:
        job = await scheduler.get_status(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return IngestJobResponse.model_validate(job)


@router.post("/cancel/{job_id}", response_model=IngestJobResponse)
async def cancel_job(job_id: str, scheduler: Scheduler) -> IngestJobResponse:
    try:
        job = await scheduler.cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return IngestJobResponse.model_validate(job)


@router.delete("/jobs/{job_id}", response_model=DeleteJobResponse)
async def delete_job(job_id: str, scheduler: Scheduler) -> DeleteJobResponse:
    """Delete a job and every record it created."""
    try:
        deleted = await scheduler.delete_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return DeleteJobResponse(job_id=job_id, deleted_records=deleted)


@router.post("/retroactive-vectorization", response_model=RetroactiveVectorizationResponse)
async def retroactive_vectorization(
    scheduler: Scheduler,
    request: Optional[RetroactiveVectorizationRequest] = None,
) -> RetroactiveVectorizationResponse:
    partition_id = request.partition_id if request else None
    job_ids = await scheduler.enqueue_vectorization(partition_id)
    message = (
        f"Queued {len(job_ids)} vectorization jobs"
        if job_ids else "No partitions with missing embeddings"
    )
    return RetroactiveVectorizationResponse(job_ids=job_ids, message=message)
