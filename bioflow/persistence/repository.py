"""Repository abstraction for workflow and job persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import Job, JobStatus, WorkflowState


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Any store qualifies as long as it offers two atomic conditional updates:
    compare-and-swap on the workflow ``version`` and a claim on the job
    ``status``.
    """

    async def create_workflow(self, workflow: WorkflowState, first_job: Job) -> None:
        """Persist a new workflow together with its first job."""

    async def get_workflow(self, workflow_id: str) -> WorkflowState | None:
        """Retrieve the workflow by id."""

    async def list_workflows(
        self, conversation_id: Optional[str] = None
    ) -> list[WorkflowState]:
        """Return persisted workflows, optionally for one conversation."""

    async def commit_workflow(
        self,
        workflow: WorkflowState,
        expected_version: int,
        new_job: Job | None = None,
    ) -> bool:
        """Replace the stored workflow if its version equals ``expected_version``.

        ``new_job`` is inserted in the same atomic write. Returns ``False``
        without writing anything when the version check fails.
        """

    async def insert_job(self, job: Job) -> None:
        """Persist a new job."""

    async def get_job(self, job_id: str) -> Job | None:
        """Retrieve a job by id."""

    async def list_jobs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> list[Job]:
        """Return jobs ordered by creation time."""

    async def claim_job(
        self, worker_id: str, now: datetime, lease_expires_at: datetime
    ) -> Job | None:
        """Atomically lease one claimable job whose ``visible_at <= now``."""

    async def update_job(
        self,
        job: Job,
        expected_status: JobStatus,
        expected_owner: Optional[str] = None,
    ) -> bool:
        """Write ``job`` if the stored row still has the expected status and owner."""

    async def release_expired_leases(self, now: datetime) -> list[str]:
        """Reset running jobs with an expired lease to pending; return their ids."""
