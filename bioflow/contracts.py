"""Core contracts for the bioflow research pipeline."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Stage(str, Enum):
    """Pipeline stages in canonical order."""

    INGESTION = "ingestion"
    PLANNING = "planning"
    LITERATURE = "literature"
    FINDINGS = "findings"
    DRAFT = "draft"
    FORMATTING = "formatting"


STAGE_ORDER: Tuple[Stage, ...] = (
    Stage.INGESTION,
    Stage.PLANNING,
    Stage.LITERATURE,
    Stage.FINDINGS,
    Stage.DRAFT,
    Stage.FORMATTING,
)

FIRST_STAGE = STAGE_ORDER[0]


def next_stage(stage: Stage) -> Optional[Stage]:
    """Return the stage after ``stage`` or ``None`` when it is the last one."""
    index = STAGE_ORDER.index(Stage(stage))
    if index + 1 < len(STAGE_ORDER):
        return STAGE_ORDER[index + 1]
    return None


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    FAILED = "failed"
    CANCELLED = "cancelled"
    COMPLETE = "complete"

    @property
    def is_terminal(self) -> bool:
        return self is not WorkflowStatus.RUNNING


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD = "dead"


# Statuses a worker may claim once ``visible_at`` has passed.
CLAIMABLE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.FAILED)


class WorkflowState(BaseModel):
    """Persisted pipeline run. Only the workflow engine writes it."""

    id: str = Field(default_factory=new_id)
    conversation_id: str
    current_stage: Stage = FIRST_STAGE
    input: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.RUNNING
    version: int = 0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def completed_stages(self) -> list[Stage]:
        """Stages with a committed artifact, in canonical order."""
        return [stage for stage in STAGE_ORDER if stage.value in self.payload]

    def snapshot(self) -> "WorkflowSnapshot":
        return WorkflowSnapshot(
            workflow_id=self.id,
            conversation_id=self.conversation_id,
            stage=self.current_stage,
            version=self.version,
            input=dict(self.input),
            payload=dict(self.payload),
        )


class WorkflowSnapshot(BaseModel):
    """Read-only view of a workflow handed to stage handlers."""

    model_config = {"frozen": True}

    workflow_id: str
    conversation_id: str
    stage: Stage
    version: int
    input: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)

    def artifact(self, stage: Stage) -> Any:
        """Return the committed artifact for ``stage`` or ``None``."""
        return self.payload.get(Stage(stage).value)


class Job(BaseModel):
    """Unit of work executing one stage of one workflow."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    stage: Stage
    status: JobStatus = JobStatus.PENDING
    attempt_count: int = 0
    max_attempts: int = 3
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    visible_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AdvanceResult(BaseModel):
    """Outcome of ``WorkflowEngine.advance``."""

    workflow_id: str
    conflict: bool = False
    complete: bool = False
    next_stage: Optional[Stage] = None
    next_job_id: Optional[str] = None
    version: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def rejected(cls, workflow_id: str, reason: str) -> "AdvanceResult":
        return cls(workflow_id=workflow_id, conflict=True, reason=reason)


class WorkflowEvent(BaseModel):
    """Progress notification carried by the notification bus."""

    workflow_id: str
    conversation_id: str
    stage: Stage
    status: WorkflowStatus
    message: str = ""
    version: int = 0
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowEvent":
        return cls.model_validate_json(data)
