"""External interface of the research pipeline."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from .agents import AgentRegistry, build_agent_context, build_default_registry
from .config import BioflowConfig, load_config
from .constants import PAYLOAD_SUMMARY_CHARS
from .contracts import Stage, WorkflowEvent, WorkflowState
from .dispatch import JobDispatcher
from .engine import WorkflowEngine
from .execute import WorkerPool
from .persistence import WorkflowRepository, get_repository
from .transports import NotificationBus, get_notification_bus

logger = logging.getLogger(__name__)


def summarize_payload(workflow: WorkflowState, limit: int = PAYLOAD_SUMMARY_CHARS) -> Dict[str, str]:
    """One truncated line per committed stage, in stage order."""
    summary = {}
    for stage in workflow.completed_stages:
        text = json.dumps(workflow.payload[stage.value], default=str)
        summary[stage.value] = text if len(text) <= limit else text[: limit - 3] + "..."
    return summary


class ResearchService:
    """Start, inspect, cancel, retrigger and follow research workflows.

    Owns the lifecycle of the notification bus and, when a registry is
    supplied, of a worker pool running in the same process.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        bus: NotificationBus,
        dispatcher: JobDispatcher,
        registry: Optional[AgentRegistry] = None,
        concurrency: int = 0,
        poll_interval: float = 0.5,
        sweep_interval: float = 5.0,
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.dispatcher = dispatcher
        self.engine = WorkflowEngine(repository, dispatcher, bus)
        self.registry = registry
        self.pool: Optional[WorkerPool] = None
        if registry is not None and concurrency > 0:
            self.pool = WorkerPool(
                self.engine,
                dispatcher,
                registry,
                concurrency=concurrency,
                poll_interval=poll_interval,
                sweep_interval=sweep_interval,
            )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.bus.connect()
        if self.pool is not None:
            await self.pool.start()
        self._started = True
        logger.info("Research service started")

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Drain workers, then release subscribers."""
        if not self._started:
            return
        if self.pool is not None:
            await self.pool.stop(timeout=timeout)
        await self.bus.disconnect()
        self._started = False
        logger.info("Research service stopped")

    async def __aenter__(self) -> "ResearchService":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    async def start_workflow(
        self, conversation_id: str, initial_payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, str]:
        workflow_id = await self.engine.start(conversation_id, initial_payload)
        workflow = await self.engine.get(workflow_id)
        return {"workflow_id": workflow_id, "stage": workflow.current_stage.value}

    async def get_workflow(self, workflow_id: str) -> Dict[str, Any]:
        workflow = await self.engine.get(workflow_id)
        return {
            "workflow_id": workflow.id,
            "conversation_id": workflow.conversation_id,
            "stage": workflow.current_stage.value,
            "status": workflow.status.value,
            "payload_summary": summarize_payload(workflow),
            "error": workflow.error,
            "version": workflow.version,
            "created_at": workflow.created_at.isoformat(),
            "updated_at": workflow.updated_at.isoformat(),
        }

    async def list_workflows(self, conversation_id: Optional[str] = None) -> list[WorkflowState]:
        return await self.engine.list(conversation_id)

    async def cancel_workflow(self, workflow_id: str) -> bool:
        return await self.engine.cancel(workflow_id)

    async def retrigger_stage(self, workflow_id: str) -> Dict[str, str]:
        result = await self.engine.retrigger(workflow_id)
        stage: Stage = result.next_stage  # type: ignore[assignment]
        return {"workflow_id": workflow_id, "stage": stage.value, "job_id": result.next_job_id}

    def subscribe_workflow(
        self, conversation_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[WorkflowEvent]:
        return self.bus.subscribe(conversation_id, lifespan=lifespan)


def build_service(
    config: Optional[BioflowConfig] = None,
    registry: Optional[AgentRegistry] = None,
    concurrency: Optional[int] = None,
    repository: Optional[WorkflowRepository] = None,
    bus: Optional[NotificationBus] = None,
) -> ResearchService:
    """Assemble a service from configuration.

    With ``concurrency=0`` the service only submits and inspects workflows,
    leaving execution to separate ``bioflow worker run`` processes.
    """
    config = config or load_config()
    repository = repository or get_repository(config=config)
    bus = bus or get_notification_bus(config=config)
    dispatcher = JobDispatcher.from_config(repository, config)
    workers = config.queue.concurrency if concurrency is None else concurrency
    if workers > 0 and registry is None:
        registry = build_default_registry(build_agent_context(config))
    return ResearchService(
        repository,
        bus,
        dispatcher,
        registry=registry,
        concurrency=workers,
        poll_interval=config.queue.poll_interval,
        sweep_interval=config.queue.sweep_interval,
    )
