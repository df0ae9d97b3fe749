"""
Payload Cache - transient job id -> raw payload association.

VOLATILE, RESTART-UNSAFE: entries live only in this process's memory. A
restart loses every cached payload; the Scheduler compensates by failing
PROCESSING jobs ("Job interrupted by server restart") and PENDING jobs
("Job payload lost") whose payload is missing. Nothing here is a substitute
for the Job Store.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from app.models.ingestion_job import IngestionKind, IngestOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedPayload:
    """Raw payload plus the options it was enqueued with."""
    kind: IngestionKind
    payload: str
    options: IngestOptions


class PayloadCache:
    """
    In-memory key-value store owned by the Scheduler.

    Injected rather than module-global so tests (and a future shared
    backend) can supply their own instance.
    """

    def __init__(self):
        self._entries: Dict[str, CachedPayload] = {}

    def put(self, job_id: str, entry: CachedPayload) -> None:
        self._entries[job_id] = entry
        logger.debug(f"Cached payload for job {job_id} ({len(entry.payload)} chars)")

    def get(self, job_id: str) -> Optional[CachedPayload]:
        return self._entries.get(job_id)

    def contains(self, job_id: str) -> bool:
        return job_id in self._entries

    def evict(self, job_id: str) -> bool:
        """Drop a payload; returns True if one was cached."""
        removed = self._entries.pop(job_id, None) is not None
        if removed:
            logger.debug(f"Evicted payload for job {job_id}")
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, job_id: str) -> bool:
        return self.contains(job_id)
