"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import CLAIMABLE_JOB_STATUSES, Job, JobStatus, WorkflowState
from .models import (
    JOB_COLUMNS,
    WORKFLOW_COLUMNS,
    job_from_row,
    job_params,
    to_timestamp,
    workflow_from_row,
    workflow_params,
)
from .repository import WorkflowRepository

_CLAIMABLE = tuple(status.value for status in CLAIMABLE_JOB_STATUSES)


def _placeholders(columns: tuple) -> str:
    return ", ".join("?" for _ in columns)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Statements run in a worker thread via ``asyncio.to_thread``; a thread lock
    serialises access to the shared connection. Conditional ``UPDATE``
    statements keep the version check and job claim correct even when several
    processes share the same database file.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    current_stage TEXT NOT NULL,
                    input TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempt_count INTEGER NOT NULL,
                    max_attempts INTEGER NOT NULL,
                    lease_owner TEXT,
                    lease_expires_at TEXT,
                    visible_at TEXT NOT NULL,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs (status, visible_at)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_workflows_conversation ON workflows (conversation_id)"
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_workflow(self, cur: sqlite3.Cursor, workflow: WorkflowState) -> None:
        cur.execute(
            f"INSERT INTO workflows ({', '.join(WORKFLOW_COLUMNS)}) "
            f"VALUES ({_placeholders(WORKFLOW_COLUMNS)})",
            workflow_params(workflow),
        )

    def _insert_job(self, cur: sqlite3.Cursor, job: Job) -> None:
        cur.execute(
            f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) "
            f"VALUES ({_placeholders(JOB_COLUMNS)})",
            job_params(job),
        )

    def _transaction(self, work) -> Any:
        """Run ``work(cursor)`` inside BEGIN IMMEDIATE / COMMIT."""
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                result = work(cur)
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")
            return result

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: WorkflowState, first_job: Job) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            self._insert_workflow(cur, workflow)
            self._insert_job(cur, first_job)

        await asyncio.to_thread(self._transaction, work)

    async def get_workflow(self, workflow_id: str) -> WorkflowState | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflows WHERE id = ?", workflow_id
        )
        return workflow_from_row(row) if row else None

    async def list_workflows(
        self, conversation_id: Optional[str] = None
    ) -> list[WorkflowState]:
        if conversation_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM workflows ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM workflows WHERE conversation_id = ? ORDER BY created_at",
                conversation_id,
            )
        return [workflow_from_row(r) for r in rows]

    async def commit_workflow(
        self,
        workflow: WorkflowState,
        expected_version: int,
        new_job: Job | None = None,
    ) -> bool:
        assignments = ", ".join(f"{col} = ?" for col in WORKFLOW_COLUMNS[1:])

        def work(cur: sqlite3.Cursor) -> bool:
            params = workflow_params(workflow)
            cur.execute(
                f"UPDATE workflows SET {assignments} WHERE id = ? AND version = ?",
                (*params[1:], workflow.id, expected_version),
            )
            if cur.rowcount != 1:
                return False
            if new_job is not None:
                self._insert_job(cur, new_job)
            return True

        return await asyncio.to_thread(self._transaction, work)

    # ------------------------------------------------------------------
    # Jobs
    async def insert_job(self, job: Job) -> None:
        await asyncio.to_thread(self._transaction, lambda cur: self._insert_job(cur, job))

    async def get_job(self, job_id: str) -> Job | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM jobs WHERE id = ?", job_id
        )
        return job_from_row(row) if row else None

    async def list_jobs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT * FROM jobs{where} ORDER BY created_at", *params
        )
        return [job_from_row(r) for r in rows]

    async def claim_job(
        self, worker_id: str, now: datetime, lease_expires_at: datetime
    ) -> Job | None:
        now_ts = to_timestamp(now)
        status_marks = ", ".join("?" for _ in _CLAIMABLE)

        def work(cur: sqlite3.Cursor) -> Job | None:
            cur.execute(
                f"""
                SELECT id FROM jobs
                WHERE status IN ({status_marks}) AND visible_at <= ?
                ORDER BY visible_at, created_at
                LIMIT 1
                """,
                (*_CLAIMABLE, now_ts),
            )
            row = cur.fetchone()
            if row is None:
                return None
            cur.execute(
                f"""
                UPDATE jobs
                SET status = ?, lease_owner = ?, lease_expires_at = ?, updated_at = ?
                WHERE id = ? AND status IN ({status_marks})
                """,
                (
                    JobStatus.RUNNING.value,
                    worker_id,
                    to_timestamp(lease_expires_at),
                    now_ts,
                    row["id"],
                    *_CLAIMABLE,
                ),
            )
            if cur.rowcount != 1:
                return None
            cur.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],))
            return job_from_row(cur.fetchone())

        return await asyncio.to_thread(self._transaction, work)

    async def update_job(
        self,
        job: Job,
        expected_status: JobStatus,
        expected_owner: Optional[str] = None,
    ) -> bool:
        assignments = ", ".join(f"{col} = ?" for col in JOB_COLUMNS[1:])
        query = f"UPDATE jobs SET {assignments} WHERE id = ? AND status = ?"
        params = list(job_params(job)[1:]) + [job.id, JobStatus(expected_status).value]
        if expected_owner is not None:
            query += " AND lease_owner = ?"
            params.append(expected_owner)

        def work(cur: sqlite3.Cursor) -> bool:
            cur.execute(query, params)
            return cur.rowcount == 1

        return await asyncio.to_thread(self._transaction, work)

    async def release_expired_leases(self, now: datetime) -> list[str]:
        now_ts = to_timestamp(now)

        def work(cur: sqlite3.Cursor) -> list[str]:
            cur.execute(
                "SELECT id FROM jobs WHERE status = ? AND lease_expires_at <= ?",
                (JobStatus.RUNNING.value, now_ts),
            )
            ids = [r["id"] for r in cur.fetchall()]
            released = []
            for job_id in ids:
                cur.execute(
                    """
                    UPDATE jobs
                    SET status = ?, lease_owner = NULL, lease_expires_at = NULL,
                        visible_at = ?, updated_at = ?
                    WHERE id = ? AND status = ? AND lease_expires_at <= ?
                    """,
                    (
                        JobStatus.PENDING.value,
                        now_ts,
                        now_ts,
                        job_id,
                        JobStatus.RUNNING.value,
                        now_ts,
                    ),
                )
                if cur.rowcount == 1:
                    released.append(job_id)
            return released

        return await asyncio.to_thread(self._transaction, work)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
