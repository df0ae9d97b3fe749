"""
Cooperative cancellation for ingestion jobs.

A token combines a local flag (set when the cancel request comes through
this process's Scheduler) with a durable check against the Job Store, so a
CANCELLED status written by anyone is observed at the next checkpoint.
Loops check the token; nothing is interrupted preemptively and committed
work is never rolled back.
"""

import logging
from typing import TYPE_CHECKING

from app.models.ingestion_job import JobStatus

if TYPE_CHECKING:
    from app.repositories.job_repository import JobRepository

logger = logging.getLogger(__name__)


class JobCancellationToken:
    """
    Cancellation token bound to one job.

    Examples:
        token = JobCancellationToken(job_id, job_repo)
        if await token.is_cancelled():
            return  # stop at this checkpoint
    """

    def __init__(self, job_id: str, job_repository: "JobRepository"):
        self.job_id = job_id
        self._job_repository = job_repository
        self._cancelled = False

    def cancel(self) -> None:
        """Signal that cancellation has been requested."""
        self._cancelled = True

    async def is_cancelled(self) -> bool:
        """
        Checkpoint: True if the job was cancelled locally or in the store.

        A job that has disappeared (admin deletion) counts as cancelled.
        """
        if self._cancelled:
            return True
        status = await self._job_repository.get_status(self.job_id)
        if status is None or status == JobStatus.CANCELLED:
            logger.info(f"Job {self.job_id} cancellation observed ({status})")
            self._cancelled = True
        return self._cancelled
