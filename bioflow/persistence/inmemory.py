"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional

from ..contracts import CLAIMABLE_JOB_STATUSES, Job, JobStatus, WorkflowState
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow and job state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowState] = {}
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: WorkflowState, first_job: Job) -> None:
        async with self._lock:
            if workflow.id in self._workflows:
                raise ValueError(f"Workflow {workflow.id} already exists")
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
            self._jobs[first_job.id] = first_job.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowState | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self, conversation_id: Optional[str] = None
    ) -> list[WorkflowState]:
        workflows = [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if conversation_id is None or wf.conversation_id == conversation_id
        ]
        return sorted(workflows, key=lambda wf: wf.created_at)

    async def commit_workflow(
        self,
        workflow: WorkflowState,
        expected_version: int,
        new_job: Job | None = None,
    ) -> bool:
        async with self._lock:
            current = self._workflows.get(workflow.id)
            if current is None or current.version != expected_version:
                return False
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
            if new_job is not None:
                self._jobs[new_job.id] = new_job.model_copy(deep=True)
            return True

    # ------------------------------------------------------------------
    # Jobs
    async def insert_job(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> list[Job]:
        jobs = [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if (workflow_id is None or job.workflow_id == workflow_id)
            and (status is None or job.status == status)
        ]
        return sorted(jobs, key=lambda job: job.created_at)

    async def claim_job(
        self, worker_id: str, now: datetime, lease_expires_at: datetime
    ) -> Job | None:
        async with self._lock:
            candidates = [
                job
                for job in self._jobs.values()
                if job.status in CLAIMABLE_JOB_STATUSES and job.visible_at <= now
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (j.visible_at, j.created_at))
            job.status = JobStatus.RUNNING
            job.lease_owner = worker_id
            job.lease_expires_at = lease_expires_at
            job.updated_at = now
            return job.model_copy(deep=True)

    async def update_job(
        self,
        job: Job,
        expected_status: JobStatus,
        expected_owner: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            current = self._jobs.get(job.id)
            if current is None or current.status != expected_status:
                return False
            if expected_owner is not None and current.lease_owner != expected_owner:
                return False
            self._jobs[job.id] = job.model_copy(deep=True)
            return True

    async def release_expired_leases(self, now: datetime) -> list[str]:
        released: list[str] = []
        async with self._lock:
            for job in self._jobs.values():
                if (
                    job.status == JobStatus.RUNNING
                    and job.lease_expires_at is not None
                    and job.lease_expires_at <= now
                ):
                    job.status = JobStatus.PENDING
                    job.lease_owner = None
                    job.lease_expires_at = None
                    job.visible_at = now
                    job.updated_at = now
                    released.append(job.id)
        return released
