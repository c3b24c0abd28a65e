"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import CLAIMABLE_JOB_STATUSES, Job, JobStatus, WorkflowState
from .models import (
    JOB_COLUMNS,
    WORKFLOW_COLUMNS,
    job_from_row,
    job_params,
    workflow_from_row,
    workflow_params,
)
from .repository import WorkflowRepository

_CLAIMABLE = [status.value for status in CLAIMABLE_JOB_STATUSES]


def _as_datetime(value: Any) -> Any:
    # asyncpg encodes aware datetimes for TIMESTAMPTZ columns natively
    return value


def _numbered(columns: tuple, start: int = 1) -> str:
    return ", ".join(f"${i}" for i in range(start, start + len(columns)))


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL.

    Job claims use ``FOR UPDATE SKIP LOCKED`` so concurrent workers on any
    number of nodes never lease the same row.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                current_stage TEXT NOT NULL,
                input JSONB NOT NULL,
                payload JSONB NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                stage TEXT NOT NULL,
                status TEXT NOT NULL,
                attempt_count INTEGER NOT NULL,
                max_attempts INTEGER NOT NULL,
                lease_owner TEXT,
                lease_expires_at TIMESTAMPTZ,
                visible_at TIMESTAMPTZ NOT NULL,
                last_error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs (status, visible_at)"
        )

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: WorkflowState, first_job: Job) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"INSERT INTO workflows ({', '.join(WORKFLOW_COLUMNS)}) "
                    f"VALUES ({_numbered(WORKFLOW_COLUMNS)})",
                    *workflow_params(workflow, timestamps=_as_datetime),
                )
                await conn.execute(
                    f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) "
                    f"VALUES ({_numbered(JOB_COLUMNS)})",
                    *job_params(first_job, timestamps=_as_datetime),
                )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> WorkflowState | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM workflows WHERE id = $1", workflow_id)
        finally:
            await conn.close()
        return workflow_from_row(row) if row else None

    async def list_workflows(
        self, conversation_id: Optional[str] = None
    ) -> list[WorkflowState]:
        conn = await self._connect()
        try:
            if conversation_id is None:
                rows = await conn.fetch("SELECT * FROM workflows ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM workflows WHERE conversation_id = $1 ORDER BY created_at",
                    conversation_id,
                )
        finally:
            await conn.close()
        return [workflow_from_row(r) for r in rows]

    async def commit_workflow(
        self,
        workflow: WorkflowState,
        expected_version: int,
        new_job: Job | None = None,
    ) -> bool:
        columns = WORKFLOW_COLUMNS[1:]
        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start=1))
        id_pos = len(columns) + 1
        params = workflow_params(workflow, timestamps=_as_datetime)
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    f"UPDATE workflows SET {assignments} "
                    f"WHERE id = ${id_pos} AND version = ${id_pos + 1}",
                    *params[1:],
                    workflow.id,
                    expected_version,
                )
                if status != "UPDATE 1":
                    return False
                if new_job is not None:
                    await conn.execute(
                        f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) "
                        f"VALUES ({_numbered(JOB_COLUMNS)})",
                        *job_params(new_job, timestamps=_as_datetime),
                    )
                return True
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def insert_job(self, job: Job) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) "
                f"VALUES ({_numbered(JOB_COLUMNS)})",
                *job_params(job, timestamps=_as_datetime),
            )
        finally:
            await conn.close()

    async def get_job(self, job_id: str) -> Job | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
        finally:
            await conn.close()
        return job_from_row(row) if row else None

    async def list_jobs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(JobStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(f"SELECT * FROM jobs{where} ORDER BY created_at", *params)
        finally:
            await conn.close()
        return [job_from_row(r) for r in rows]

    async def claim_job(
        self, worker_id: str, now: datetime, lease_expires_at: datetime
    ) -> Job | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status = $1, lease_owner = $2, lease_expires_at = $3, updated_at = $4
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE status = ANY($5::text[]) AND visible_at <= $4
                    ORDER BY visible_at, created_at
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                )
                RETURNING *
                """,
                JobStatus.RUNNING.value,
                worker_id,
                lease_expires_at,
                now,
                _CLAIMABLE,
            )
        finally:
            await conn.close()
        return job_from_row(row) if row else None

    async def update_job(
        self,
        job: Job,
        expected_status: JobStatus,
        expected_owner: Optional[str] = None,
    ) -> bool:
        columns = JOB_COLUMNS[1:]
        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start=1))
        params: list[Any] = list(job_params(job, timestamps=_as_datetime)[1:])
        params += [job.id, JobStatus(expected_status).value]
        query = (
            f"UPDATE jobs SET {assignments} "
            f"WHERE id = ${len(columns) + 1} AND status = ${len(columns) + 2}"
        )
        if expected_owner is not None:
            params.append(expected_owner)
            query += f" AND lease_owner = ${len(params)}"
        conn = await self._connect()
        try:
            status = await conn.execute(query, *params)
        finally:
            await conn.close()
        return status == "UPDATE 1"

    async def release_expired_leases(self, now: datetime) -> list[str]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                UPDATE jobs
                SET status = $1, lease_owner = NULL, lease_expires_at = NULL,
                    visible_at = $2, updated_at = $2
                WHERE status = $3 AND lease_expires_at <= $2
                RETURNING id
                """,
                JobStatus.PENDING.value,
                now,
                JobStatus.RUNNING.value,
            )
        finally:
            await conn.close()
        return [r["id"] for r in rows]

