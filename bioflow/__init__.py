"""bioflow: durable workflow orchestration for an LLM research pipeline."""

from .agents import AgentRegistry, build_default_registry
from .contracts import Job, JobStatus, Stage, WorkflowState, WorkflowStatus, next_stage
from .dispatch import JobDispatcher
from .engine import WorkflowEngine
from .execute import Worker, WorkerPool
from .llm import LLMGateway, LLMRequest
from .persistence import get_repository
from .service import ResearchService, build_service
from .transports import get_notification_bus

__version__ = "0.1.0"
__all__ = [
    "AgentRegistry",
    "Job",
    "JobDispatcher",
    "JobStatus",
    "LLMGateway",
    "LLMRequest",
    "ResearchService",
    "Stage",
    "Worker",
    "WorkerPool",
    "WorkflowEngine",
    "WorkflowState",
    "WorkflowStatus",
    "build_default_registry",
    "build_service",
    "get_notification_bus",
    "get_repository",
    "next_stage",
]
