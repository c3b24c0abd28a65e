"""Durable job queue with lease-based claiming for bioflow stages."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import BackoffConfig, BioflowConfig
from .constants import DEFAULT_JOB_MAX_ATTEMPTS, DEFAULT_LEASE_SECONDS
from .contracts import Job, JobStatus, Stage, utcnow
from .persistence import WorkflowRepository
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class JobDispatcher:
    """Service responsible for the job lifecycle.

    Jobs move ``pending -> running -> succeeded`` on the happy path. A failed
    attempt either schedules a retry (``failed`` with a future ``visible_at``)
    or dead-letters the job once attempts are exhausted. Every write is a
    conditional update so that only the current lease owner can finish a job.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        max_attempts: int = DEFAULT_JOB_MAX_ATTEMPTS,
        backoff: Optional[BackoffConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts
        self.backoff_config = backoff or BackoffConfig()
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        repository: WorkflowRepository,
        config: BioflowConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> "JobDispatcher":
        return cls(
            repository,
            lease_seconds=config.queue.lease_seconds,
            max_attempts=config.queue.max_attempts,
            backoff=config.queue.backoff,
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    def backoff(self, attempt_count: int) -> float:
        """Delay in seconds before retry number ``attempt_count``."""
        cfg = self.backoff_config
        return compute_backoff(attempt_count, base=cfg.base, jitter=cfg.jitter, cap=cfg.cap)

    def new_job(self, workflow_id: str, stage: Stage) -> Job:
        """Build a fresh pending job without persisting it."""
        now = self.now()
        return Job(
            workflow_id=workflow_id,
            stage=Stage(stage),
            max_attempts=self.max_attempts,
            visible_at=now,
            created_at=now,
            updated_at=now,
        )

    async def enqueue(self, workflow_id: str, stage: Stage) -> Job:
        """Insert a pending job for ``stage`` that is visible immediately."""
        job = self.new_job(workflow_id, stage)
        await self._repository.insert_job(job)
        logger.info(f"Enqueued job {job.id} for workflow={workflow_id} stage={job.stage.value}")
        return job

    async def claim(self, worker_id: str) -> Job | None:
        """Lease the next visible job for ``worker_id``."""
        now = self.now()
        job = await self._repository.claim_job(
            worker_id, now, now + timedelta(seconds=self.lease_seconds)
        )
        if job is not None:
            logger.debug(
                f"Worker {worker_id} claimed job {job.id} "
                f"(workflow={job.workflow_id}, stage={job.stage.value}, attempt={job.attempt_count + 1})"
            )
        return job

    async def renew(self, job: Job, worker_id: str) -> bool:
        """Extend the lease on a running job still owned by ``worker_id``."""
        now = self.now()
        renewed = job.model_copy(
            update={
                "lease_expires_at": now + timedelta(seconds=self.lease_seconds),
                "updated_at": now,
            }
        )
        ok = await self._repository.update_job(
            renewed, expected_status=JobStatus.RUNNING, expected_owner=worker_id
        )
        if ok:
            job.lease_expires_at = renewed.lease_expires_at
        return ok

    async def complete(self, job: Job, worker_id: str) -> bool:
        """Mark ``job`` succeeded. Returns ``False`` if the lease was lost."""
        now = self.now()
        done = job.model_copy(
            update={
                "status": JobStatus.SUCCEEDED,
                "attempt_count": job.attempt_count + 1,
                "lease_owner": None,
                "lease_expires_at": None,
                "last_error": None,
                "updated_at": now,
            }
        )
        ok = await self._repository.update_job(
            done, expected_status=JobStatus.RUNNING, expected_owner=worker_id
        )
        if not ok:
            logger.info(f"Job {job.id} lease lost before completion by {worker_id}")
        return ok

    async def fail(
        self,
        job: Job,
        worker_id: str,
        error: BaseException | str,
        retryable: bool = True,
    ) -> Job | None:
        """Record a failed attempt.

        Returns the updated job (status ``failed`` with a scheduled retry, or
        ``dead``) or ``None`` when the lease no longer belongs to ``worker_id``.
        """
        now = self.now()
        attempts = job.attempt_count + 1
        message = str(error) or type(error).__name__
        if retryable and attempts < job.max_attempts:
            delay = self.backoff(attempts)
            update = {
                "status": JobStatus.FAILED,
                "visible_at": now + timedelta(seconds=delay),
            }
            logger.warning(
                f"Job {job.id} ({job.stage.value}) attempt {attempts}/{job.max_attempts} failed: "
                f"{message}; retrying in {delay:.2f}s"
            )
        else:
            update = {"status": JobStatus.DEAD}
            logger.error(
                f"Job {job.id} ({job.stage.value}) dead-lettered after {attempts} attempt(s): {message}"
            )
        failed = job.model_copy(
            update={
                **update,
                "attempt_count": attempts,
                "lease_owner": None,
                "lease_expires_at": None,
                "last_error": message,
                "updated_at": now,
            }
        )
        ok = await self._repository.update_job(
            failed, expected_status=JobStatus.RUNNING, expected_owner=worker_id
        )
        return failed if ok else None

    async def discard(
        self,
        job: Job,
        worker_id: str,
        reason: str,
        status: JobStatus = JobStatus.SUCCEEDED,
    ) -> bool:
        """Retire a job whose work is no longer wanted (stale or cancelled)."""
        now = self.now()
        retired = job.model_copy(
            update={
                "status": status,
                "lease_owner": None,
                "lease_expires_at": None,
                "last_error": reason,
                "updated_at": now,
            }
        )
        ok = await self._repository.update_job(
            retired, expected_status=JobStatus.RUNNING, expected_owner=worker_id
        )
        if ok:
            logger.info(f"Discarded job {job.id} ({job.stage.value}): {reason}")
        return ok

    async def sweep_expired_leases(self) -> list[str]:
        """Return crashed workers' jobs to the queue."""
        released = await self._repository.release_expired_leases(self.now())
        for job_id in released:
            logger.warning(f"Lease expired for job {job_id}; returned to queue")
        return released

    async def get_job(self, job_id: str) -> Job | None:
        return await self._repository.get_job(job_id)

    async def list_jobs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> list[Job]:
        return await self._repository.list_jobs(workflow_id=workflow_id, status=status)
