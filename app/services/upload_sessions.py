"""
Chunked upload sessions (server side).

Large CSV files arrive as numbered chunks under a client-chosen upload id.
Each session is a directory under `upload_dir`:

    <upload_dir>/<upload id>/meta.json
    <upload_dir>/<upload id>/chunk_00000
    <upload_dir>/<upload id>/chunk_00001
    ...

Sessions expire `upload_session_ttl_seconds` after their last chunk; expired
sessions are purged opportunistically on every call. `complete()` verifies
that every index arrived, joins the chunks and removes the session.
"""

import json
import logging
import re
import shutil
import threading
import time
from dataclasses import asdict, dataclass
from functools import wraps
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from app.core.config import settings
from app.models.ingestion_job import RecordType

logger = logging.getLogger(__name__)

META_FILE = "meta.json"
CHUNK_PREFIX = "chunk_"
MAX_UPLOAD_ID_LENGTH = 100
MAX_FILE_NAME_LENGTH = 255
MISSING_REPORT_LIMIT = 10

_VALID_UPLOAD_ID = re.compile(r"[a-zA-Z0-9_-]+")


def _locked(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class UploadSessionError(Exception):
    """Upload session failure with an HTTP-like status code."""

    def __init__(self, message: str, status_code: int = 400, **details):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


@dataclass
class UploadMeta:
    """Contents of a session's meta.json."""
    partition_id: str
    record_type: str
    file_name: str
    total_chunks: int
    generate_embeddings: bool
    created_at: float
    expires_at: float


@dataclass(frozen=True)
class ChunkReceipt:
    received_chunk: int
    total_received: int
    total_expected: int


class UploadSessionStore:
    """
    File-backed store for in-progress chunked uploads.

    Usage:
        store = UploadSessionStore()
        store.start("u1", "project-1", RecordType.TASK, "data.csv", 3)
        store.put_chunk("u1", 0, "...")
        payload, meta = store.complete("u1")
    """

    def __init__(
        self,
        upload_dir: Optional[str] = None,
        max_chunks: Optional[int] = None,
        max_chunk_bytes: Optional[int] = None,
        max_total_bytes: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.upload_dir = Path(upload_dir or settings.upload_dir)
        self.max_chunks = max_chunks or settings.upload_max_chunks
        self.max_chunk_bytes = max_chunk_bytes or settings.upload_max_chunk_bytes
        self.max_total_bytes = max_total_bytes or settings.upload_max_total_bytes
        self.ttl_seconds = ttl_seconds or settings.upload_session_ttl_seconds
        self._clock = clock
        # operations run in worker threads; one at a time per store
        self._lock = threading.RLock()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _session_dir(self, upload_id: str) -> Path:
        if not upload_id or not isinstance(upload_id, str) or len(upload_id) > MAX_UPLOAD_ID_LENGTH:
            raise UploadSessionError("Invalid uploadId", 400)
        if not _VALID_UPLOAD_ID.fullmatch(upload_id):
            raise UploadSessionError(
                "Invalid uploadId: only letters, digits, \"_\" and \"-\" are allowed", 400
            )
        return self.upload_dir / upload_id

    @staticmethod
    def _chunk_name(index: int) -> str:
        return f"{CHUNK_PREFIX}{index:05d}"

    def _read_meta(self, session_dir: Path) -> UploadMeta:
        meta_path = session_dir / META_FILE
        if not meta_path.exists():
            raise UploadSessionError("Upload session not found", 404)
        with open(meta_path, "r", encoding="utf-8") as f:
            return UploadMeta(**json.load(f))

    def _write_meta(self, session_dir: Path, meta: UploadMeta) -> None:
        with open(session_dir / META_FILE, "w", encoding="utf-8") as f:
            json.dump(asdict(meta), f)

    def _chunk_indices(self, session_dir: Path) -> List[int]:
        indices = []
        for path in session_dir.glob(f"{CHUNK_PREFIX}*"):
            suffix = path.name[len(CHUNK_PREFIX):]
            if suffix.isdigit():
                indices.append(int(suffix))
        return sorted(indices)

    def _remove(self, session_dir: Path) -> None:
        shutil.rmtree(session_dir, ignore_errors=True)

    @_locked
    def cleanup_expired(self) -> int:
        """Remove expired (or unreadable) sessions. Returns the number removed."""
        if not self.upload_dir.exists():
            return 0
        now = self._clock()
        removed = 0
        for session_dir in self.upload_dir.iterdir():
            if not session_dir.is_dir():
                continue
            try:
                meta = self._read_meta(session_dir)
                expired = now > meta.expires_at
            except (UploadSessionError, ValueError, TypeError, OSError):
                expired = True
            if expired:
                self._remove(session_dir)
                removed += 1
        if removed:
            logger.info(f"Purged {removed} expired upload sessions")
        return removed

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    @_locked
    def start(
        self,
        upload_id: str,
        partition_id: str,
        record_type: RecordType,
        file_name: Optional[str],
        total_chunks: int,
        generate_embeddings: bool = True,
    ) -> UploadMeta:
        """Open a new session; 409 if the id is already in use."""
        self.cleanup_expired()

        session_dir = self._session_dir(upload_id)
        if not partition_id:
            raise UploadSessionError("partition_id is required", 400)
        if isinstance(total_chunks, bool) or not isinstance(total_chunks, int) \
                or not 1 <= total_chunks <= self.max_chunks:
            raise UploadSessionError(f"totalChunks must be between 1 and {self.max_chunks}", 400)
        if session_dir.exists():
            raise UploadSessionError("Upload session already exists", 409)

        now = self._clock()
        meta = UploadMeta(
            partition_id=partition_id,
            record_type=RecordType(record_type).value,
            file_name=(file_name or "upload.csv")[:MAX_FILE_NAME_LENGTH],
            total_chunks=total_chunks,
            generate_embeddings=generate_embeddings,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        session_dir.mkdir(parents=True)
        self._write_meta(session_dir, meta)

        logger.info(f"Upload session {upload_id} started ({total_chunks} chunks, {meta.file_name})")
        return meta

    @_locked
    def put_chunk(self, upload_id: str, index: int, content: str) -> ChunkReceipt:
        """Store one chunk (re-sending an index overwrites it) and refresh the TTL."""
        session_dir = self._session_dir(upload_id)
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise UploadSessionError("Invalid chunkIndex", 400)
        if not isinstance(content, str):
            raise UploadSessionError("Content must be a string", 400)
        if len(content.encode("utf-8")) > self.max_chunk_bytes:
            raise UploadSessionError(
                f"Chunk size exceeds maximum of {self.max_chunk_bytes // (1024 * 1024)}MB", 400
            )

        meta = self._read_meta(session_dir)
        if self._clock() > meta.expires_at:
            self._remove(session_dir)
            raise UploadSessionError("Upload session expired", 410)
        self.cleanup_expired()
        if index >= meta.total_chunks:
            raise UploadSessionError(
                f"chunkIndex {index} exceeds totalChunks {meta.total_chunks}", 400
            )

        with open(session_dir / self._chunk_name(index), "w", encoding="utf-8", newline="") as f:
            f.write(content)

        meta.expires_at = self._clock() + self.ttl_seconds
        self._write_meta(session_dir, meta)

        received = len(self._chunk_indices(session_dir))
        logger.debug(f"Upload {upload_id}: chunk {index} stored ({received}/{meta.total_chunks})")
        return ChunkReceipt(
            received_chunk=index,
            total_received=received,
            total_expected=meta.total_chunks,
        )

    @_locked
    def complete(self, upload_id: str) -> Tuple[str, UploadMeta]:
        """
        Assemble the payload and close the session.

        Raises:
            UploadSessionError: 404 unknown, 410 expired, 400 missing chunks or too large
        """
        session_dir = self._session_dir(upload_id)
        meta = self._read_meta(session_dir)
        if self._clock() > meta.expires_at:
            self._remove(session_dir)
            raise UploadSessionError("Upload session expired", 410)

        indices = self._chunk_indices(session_dir)
        present = set(indices)
        missing = [i for i in range(meta.total_chunks) if i not in present]
        if missing:
            shown = ", ".join(str(i) for i in missing[:MISSING_REPORT_LIMIT])
            more = "..." if len(missing) > MISSING_REPORT_LIMIT else ""
            raise UploadSessionError(
                f"Missing chunks: {shown}{more}",
                400,
                received=len(indices),
                expected=meta.total_chunks,
            )

        parts = []
        total = 0
        for index in range(meta.total_chunks):
            with open(session_dir / self._chunk_name(index), "r", encoding="utf-8", newline="") as f:
                content = f.read()
            total += len(content.encode("utf-8"))
            if total > self.max_total_bytes:
                self._remove(session_dir)
                raise UploadSessionError(
                    f"Total file size exceeds maximum of {self.max_total_bytes // (1024 * 1024)}MB", 400
                )
            parts.append(content)

        self._remove(session_dir)
        logger.info(f"Upload session {upload_id} assembled ({total} bytes)")
        return "".join(parts), meta
