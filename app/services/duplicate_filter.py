"""
Duplicate Filter - suppress rows whose external identifier is already stored.

Each row's identifier is checked with a point lookup on the
(partition_id, record_type, external_id) index; the lookups of a batch run
concurrently. Identifiers accepted earlier in the same job are remembered,
so a payload repeating an id only stores the first occurrence.

Rows without an identifier are never duplicates.
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Set

from app.models.ingestion_job import RecordType
from app.repositories.record_repository import RecordRepository

logger = logging.getLogger(__name__)

DEFAULT_LOOKUP_CONCURRENCY = 10


class DuplicateFilter:
    """
    Per-job duplicate filter for one (partition, record type).

    Create one instance per job: the in-job identifier memory is not shared.
    """

    def __init__(
        self,
        record_repository: RecordRepository,
        partition_id: str,
        record_type: RecordType,
        concurrency: int = DEFAULT_LOOKUP_CONCURRENCY,
    ):
        self._records = record_repository
        self.partition_id = partition_id
        self.record_type = record_type
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._seen: Set[str] = set()

    async def _exists(self, external_id: str) -> bool:
        async with self._semaphore:
            return await self._records.exists_by_external_id(
                self.partition_id, self.record_type, external_id
            )

    async def is_duplicate(self, external_id: Optional[str]) -> bool:
        """Check a single identifier (and remember it if it is new)."""
        flags = await self.check_batch([external_id])
        return flags[0]

    async def check_batch(self, external_ids: Sequence[Optional[str]]) -> List[bool]:
        """
        Flag duplicates in a batch, preserving input order.

        Args:
            external_ids: One entry per row; None for rows without identifier

        Returns:
            One flag per row; True means skip as "Duplicate ID"
        """
        lookups = {eid for eid in external_ids if eid and eid not in self._seen}
        ordered = sorted(lookups)
        results = await asyncio.gather(*(self._exists(eid) for eid in ordered))
        stored = {eid for eid, exists in zip(ordered, results) if exists}

        flags: List[bool] = []
        for eid in external_ids:
            if not eid:
                flags.append(False)
            elif eid in self._seen or eid in stored:
                flags.append(True)
            else:
                self._seen.add(eid)
                flags.append(False)

        duplicates = sum(flags)
        if duplicates:
            logger.debug(
                f"[Duplicates] {duplicates}/{len(flags)} rows already present "
                f"in {self.partition_id}/{self.record_type.value}"
            )
        return flags
