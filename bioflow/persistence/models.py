"""Row conversion helpers shared by the SQL repositories."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from ..contracts import Job, JobStatus, Stage, WorkflowState, WorkflowStatus

WORKFLOW_COLUMNS = (
    "id",
    "conversation_id",
    "current_stage",
    "input",
    "payload",
    "status",
    "version",
    "error",
    "created_at",
    "updated_at",
)

JOB_COLUMNS = (
    "id",
    "workflow_id",
    "stage",
    "status",
    "attempt_count",
    "max_attempts",
    "lease_owner",
    "lease_expires_at",
    "visible_at",
    "last_error",
    "created_at",
    "updated_at",
)


def to_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime as a sortable UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(value)


def _loads(value: Any) -> dict:
    if value is None:
        return {}
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def workflow_from_row(row: Mapping[str, Any]) -> WorkflowState:
    return WorkflowState(
        id=row["id"],
        conversation_id=row["conversation_id"],
        current_stage=Stage(row["current_stage"]),
        input=_loads(row["input"]),
        payload=_loads(row["payload"]),
        status=WorkflowStatus(row["status"]),
        version=row["version"],
        error=row["error"],
        created_at=from_timestamp(row["created_at"]),
        updated_at=from_timestamp(row["updated_at"]),
    )


def job_from_row(row: Mapping[str, Any]) -> Job:
    return Job(
        id=row["id"],
        workflow_id=row["workflow_id"],
        stage=Stage(row["stage"]),
        status=JobStatus(row["status"]),
        attempt_count=row["attempt_count"],
        max_attempts=row["max_attempts"],
        lease_owner=row["lease_owner"],
        lease_expires_at=from_timestamp(row["lease_expires_at"]),
        visible_at=from_timestamp(row["visible_at"]),
        last_error=row["last_error"],
        created_at=from_timestamp(row["created_at"]),
        updated_at=from_timestamp(row["updated_at"]),
    )


def workflow_params(workflow: WorkflowState, timestamps=to_timestamp) -> tuple:
    """Column values for ``workflow`` in ``WORKFLOW_COLUMNS`` order."""
    return (
        workflow.id,
        workflow.conversation_id,
        workflow.current_stage.value,
        json.dumps(workflow.input, default=str),
        json.dumps(workflow.payload, default=str),
        workflow.status.value,
        workflow.version,
        workflow.error,
        timestamps(workflow.created_at),
        timestamps(workflow.updated_at),
    )


def job_params(job: Job, timestamps=to_timestamp) -> tuple:
    """Column values for ``job`` in ``JOB_COLUMNS`` order."""
    return (
        job.id,
        job.workflow_id,
        job.stage.value,
        job.status.value,
        job.attempt_count,
        job.max_attempts,
        job.lease_owner,
        timestamps(job.lease_expires_at),
        timestamps(job.visible_at),
        job.last_error,
        timestamps(job.created_at),
        timestamps(job.updated_at),
    )
