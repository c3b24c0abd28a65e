"""Persisted state machine driving a workflow through the stage order."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from .contracts import (
    CLAIMABLE_JOB_STATUSES,
    FIRST_STAGE,
    AdvanceResult,
    JobStatus,
    Stage,
    WorkflowEvent,
    WorkflowState,
    WorkflowStatus,
    next_stage,
    utcnow,
)
from .dispatch import JobDispatcher
from .errors import InvalidTransition, WorkflowNotFound
from .persistence import WorkflowRepository
from .transports import NotificationBus

logger = logging.getLogger(__name__)

# Bounded retries for engine writes that race with other engine writes.
_MAX_CAS_ROUNDS = 5


def _as_artifact(artifact: Any) -> Any:
    if isinstance(artifact, BaseModel):
        return artifact.model_dump(mode="json")
    return artifact


class WorkflowEngine:
    """Sole writer of ``WorkflowState``.

    Every transition is a compare-and-swap on ``version``. Transitions that
    create work (``start``, ``advance``, ``retrigger``) persist the next job in
    the same atomic write as the workflow record.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        dispatcher: JobDispatcher,
        bus: Optional[NotificationBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._bus = bus
        self._clock = clock

    async def start(
        self, conversation_id: str, initial_artifact: Optional[Dict[str, Any]] = None
    ) -> str:
        """Create a running workflow at the first stage and queue its job."""
        now = self._clock()
        workflow = WorkflowState(
            conversation_id=conversation_id,
            input=dict(initial_artifact or {}),
            created_at=now,
            updated_at=now,
        )
        job = self._dispatcher.new_job(workflow.id, FIRST_STAGE)
        await self._repository.create_workflow(workflow, job)
        logger.info(
            f"Started workflow {workflow.id} for conversation={conversation_id} "
            f"at stage={FIRST_STAGE.value}"
        )
        await self._notify(workflow, f"Workflow started at {FIRST_STAGE.value}")
        return workflow.id

    async def get(self, workflow_id: str) -> WorkflowState:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    async def list(self, conversation_id: Optional[str] = None) -> list[WorkflowState]:
        return await self._repository.list_workflows(conversation_id=conversation_id)

    async def advance(
        self,
        workflow_id: str,
        expected_version: int,
        stage: Stage,
        artifact: Any,
    ) -> AdvanceResult:
        """Commit ``artifact`` for ``stage`` and move to the next stage.

        Returns a conflict result, without writing, when the workflow is not
        running, its version differs from ``expected_version`` or it sits at a
        different stage. Duplicate and late deliveries land here.
        """
        stage = Stage(stage)
        workflow = await self.get(workflow_id)

        if workflow.status != WorkflowStatus.RUNNING:
            return self._conflict(workflow_id, f"workflow is {workflow.status.value}")
        if workflow.version != expected_version:
            return self._conflict(
                workflow_id,
                f"stale version {expected_version} (current {workflow.version})",
            )
        if workflow.current_stage != stage:
            return self._conflict(
                workflow_id,
                f"stage {stage.value} is not current ({workflow.current_stage.value})",
            )
        if stage.value in workflow.payload:
            return self._conflict(workflow_id, f"artifact for {stage.value} already committed")

        now = self._clock()
        updated = workflow.model_copy(deep=True)
        updated.payload[stage.value] = _as_artifact(artifact)
        updated.version = expected_version + 1
        updated.error = None
        updated.updated_at = now

        following = next_stage(stage)
        new_job = None
        if following is None:
            updated.status = WorkflowStatus.COMPLETE
        else:
            updated.current_stage = following
            new_job = self._dispatcher.new_job(workflow_id, following)

        if not await self._repository.commit_workflow(updated, expected_version, new_job):
            return self._conflict(workflow_id, "concurrent update won the version check")

        if following is None:
            logger.info(f"Workflow {workflow_id} complete at version {updated.version}")
            await self._notify(updated, f"Stage {stage.value} committed; workflow complete", stage)
        else:
            logger.info(
                f"Workflow {workflow_id} advanced {stage.value} -> {following.value} "
                f"(version {updated.version})"
            )
            await self._notify(updated, f"Stage {stage.value} committed", stage)

        return AdvanceResult(
            workflow_id=workflow_id,
            complete=following is None,
            next_stage=following,
            next_job_id=new_job.id if new_job else None,
            version=updated.version,
        )

    async def fail(
        self,
        workflow_id: str,
        stage: Stage,
        error: BaseException | str,
        exhausted: bool = False,
    ) -> bool:
        """Record ``error`` against the workflow.

        With ``exhausted`` the workflow becomes failed; otherwise it stays
        running and the dispatcher's retry policy owns the next attempt.
        Returns ``False`` when the call is stale and was ignored.
        """
        stage = Stage(stage)
        message = str(error) or type(error).__name__
        for _ in range(_MAX_CAS_ROUNDS):
            workflow = await self.get(workflow_id)
            if workflow.status != WorkflowStatus.RUNNING or workflow.current_stage != stage:
                logger.info(
                    f"Ignoring failure for workflow {workflow_id} stage={stage.value}: "
                    f"workflow is {workflow.status.value} at {workflow.current_stage.value}"
                )
                return False

            updated = workflow.model_copy(deep=True)
            updated.error = f"{stage.value}: {message}"
            updated.updated_at = self._clock()
            if exhausted:
                updated.status = WorkflowStatus.FAILED
                updated.version = workflow.version + 1

            if await self._repository.commit_workflow(updated, workflow.version):
                if exhausted:
                    logger.error(f"Workflow {workflow_id} failed at {stage.value}: {message}")
                    await self._notify(updated, f"Stage {stage.value} failed: {message}")
                else:
                    await self._notify(updated, f"Stage {stage.value} attempt failed: {message}")
                return True
        logger.warning(f"Gave up recording failure for workflow {workflow_id} after contention")
        return False

    async def cancel(self, workflow_id: str) -> bool:
        """Mark the workflow cancelled.

        In-flight jobs are not interrupted; their ``advance`` calls are
        rejected afterwards. Returns ``False`` if the workflow already reached
        another terminal status.
        """
        for _ in range(_MAX_CAS_ROUNDS):
            workflow = await self.get(workflow_id)
            if workflow.status == WorkflowStatus.CANCELLED:
                return True
            if workflow.status.is_terminal:
                return False

            updated = workflow.model_copy(deep=True)
            updated.status = WorkflowStatus.CANCELLED
            updated.version = workflow.version + 1
            updated.updated_at = self._clock()
            if await self._repository.commit_workflow(updated, workflow.version):
                logger.info(f"Workflow {workflow_id} cancelled at {workflow.current_stage.value}")
                await self._notify(updated, "Workflow cancelled")
                return True
        raise InvalidTransition(f"Could not cancel workflow {workflow_id}: concurrent updates")

    async def retrigger(self, workflow_id: str) -> AdvanceResult:
        """Resume a failed (or stalled) workflow at its current stage.

        A fresh job with ``attempt_count = 0`` is committed together with the
        status change.
        """
        workflow = await self.get(workflow_id)
        if workflow.status == WorkflowStatus.RUNNING:
            jobs = await self._repository.list_jobs(workflow_id=workflow_id)
            live = [
                job
                for job in jobs
                if job.stage == workflow.current_stage
                and (job.status in CLAIMABLE_JOB_STATUSES or job.status == JobStatus.RUNNING)
            ]
            if live:
                raise InvalidTransition(
                    f"Workflow {workflow_id} already has a live job for {workflow.current_stage.value}"
                )
        elif workflow.status != WorkflowStatus.FAILED:
            raise InvalidTransition(
                f"Cannot retrigger workflow {workflow_id} in status {workflow.status.value}"
            )

        updated = workflow.model_copy(deep=True)
        updated.status = WorkflowStatus.RUNNING
        updated.error = None
        updated.version = workflow.version + 1
        updated.updated_at = self._clock()
        job = self._dispatcher.new_job(workflow_id, workflow.current_stage)
        if not await self._repository.commit_workflow(updated, workflow.version, job):
            raise InvalidTransition(f"Workflow {workflow_id} changed while retriggering")

        logger.info(f"Retriggered workflow {workflow_id} at {workflow.current_stage.value}")
        await self._notify(updated, f"Stage {workflow.current_stage.value} retriggered")
        return AdvanceResult(
            workflow_id=workflow_id,
            next_stage=workflow.current_stage,
            next_job_id=job.id,
            version=updated.version,
        )

    def _conflict(self, workflow_id: str, reason: str) -> AdvanceResult:
        logger.info(f"Advance rejected for workflow {workflow_id}: {reason}")
        return AdvanceResult.rejected(workflow_id, reason)

    async def _notify(
        self, workflow: WorkflowState, message: str, stage: Optional[Stage] = None
    ) -> None:
        """Publish a progress event after a commit. Never raises."""
        if self._bus is None:
            return
        event = WorkflowEvent(
            workflow_id=workflow.id,
            conversation_id=workflow.conversation_id,
            stage=stage or workflow.current_stage,
            status=workflow.status,
            message=message,
            version=workflow.version,
            timestamp=workflow.updated_at,
        )
        try:
            await self._bus.publish(event)
        except Exception as e:
            logger.warning(f"Failed to publish event for workflow {workflow.id}: {e}")
