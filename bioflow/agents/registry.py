"""Stage to handler mapping."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from ..config import BioflowConfig
from ..contracts import STAGE_ORDER, Stage, WorkflowSnapshot
from ..db import CallLogDB
from ..llm import LLMGateway
from .base import AgentContext
from .collaborators import (
    DatasetValidator,
    DescriptiveAnalysisBackend,
    NullSearchBackend,
    SerpApiSearchBackend,
)
from .stages import DEFAULT_AGENTS

logger = logging.getLogger(__name__)


class StageHandler(Protocol):
    async def run(self, snapshot: WorkflowSnapshot) -> Any:
        """Return the artifact for the snapshot's current stage."""


class AgentRegistry:
    """Pure mapping ``stage -> handler``."""

    def __init__(self, handlers: Optional[Dict[Stage, StageHandler]] = None) -> None:
        self._handlers: Dict[Stage, StageHandler] = {}
        for stage, handler in (handlers or {}).items():
            self.register(stage, handler)

    def register(self, stage: Stage, handler: StageHandler) -> None:
        stage = Stage(stage)
        if stage in self._handlers:
            logger.info(f"Replacing handler for stage {stage.value}")
        self._handlers[stage] = handler

    def get(self, stage: Stage) -> StageHandler:
        try:
            return self._handlers[Stage(stage)]
        except KeyError:
            raise LookupError(f"No handler registered for stage {Stage(stage).value}") from None

    def __contains__(self, stage: object) -> bool:
        return stage in self._handlers

    @property
    def stages(self) -> list[Stage]:
        return [stage for stage in STAGE_ORDER if stage in self._handlers]

    def validate(self) -> None:
        """Raise ``ValueError`` unless every stage has a handler."""
        missing = [stage.value for stage in STAGE_ORDER if stage not in self._handlers]
        if missing:
            raise ValueError(f"No handler registered for stage(s): {', '.join(missing)}")


def build_default_registry(context: AgentContext) -> AgentRegistry:
    registry = AgentRegistry()
    for agent_cls in DEFAULT_AGENTS:
        registry.register(agent_cls.stage, agent_cls(context))
    registry.validate()
    return registry


def build_agent_context(
    config: BioflowConfig, gateway: Optional[LLMGateway] = None
) -> AgentContext:
    """Wire the default collaborators from configuration."""
    if config.search.serpapi_key and (config.search.scholar_enabled or config.search.light_enabled):
        search = SerpApiSearchBackend.from_config(config.search)
    else:
        logger.warning("SERPAPI_KEY not configured; literature search is disabled")
        search = NullSearchBackend()
    if gateway is None:
        recorder = CallLogDB(config.call_log_url) if config.call_log_url else None
        gateway = LLMGateway.from_config(config.llm, recorder=recorder)
    return AgentContext(
        gateway=gateway,
        provider_order=config.llm.provider_order,
        validator=DatasetValidator(),
        search=search,
        analysis=DescriptiveAnalysisBackend(),
        backend_attempts=config.llm.max_attempts,
        backend_backoff=config.llm.backoff,
    )
