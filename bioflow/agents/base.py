"""Stage agent contract and the context shared by all agents."""

from __future__ import annotations

import abc
import json
import logging
import re
from typing import Any, Dict, Optional, Sequence

from ..config import BackoffConfig
from ..contracts import Stage, WorkflowSnapshot
from ..errors import AgentError
from ..llm import LLMGateway, LLMRequest
from ..utils.retry import call_with_retry
from .collaborators import (
    AnalysisBackend,
    DatasetValidator,
    DescriptiveAnalysisBackend,
    NullSearchBackend,
    SearchBackend,
)

logger = logging.getLogger(__name__)

_FENCED = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


class AgentContext:
    """Collaborators handed to every stage agent."""

    def __init__(
        self,
        gateway: Optional[LLMGateway] = None,
        provider_order: Optional[Sequence[str]] = None,
        validator: Optional[DatasetValidator] = None,
        search: Optional[SearchBackend] = None,
        analysis: Optional[AnalysisBackend] = None,
        backend_attempts: int = 3,
        backend_backoff: Optional[BackoffConfig] = None,
    ) -> None:
        self.gateway = gateway
        self.provider_order = list(provider_order) if provider_order else None
        self.validator = validator or DatasetValidator()
        self.search = search or NullSearchBackend()
        self.analysis = analysis or DescriptiveAnalysisBackend()
        self.backend_attempts = backend_attempts
        self.backend_backoff = backend_backoff or BackoffConfig(base=2.0, cap=30.0, jitter=0.5)


class StageAgent(metaclass=abc.ABCMeta):
    """Produces the artifact for one stage.

    Agents read the workflow snapshot and may call the LLM gateway and
    collaborators. They never write workflow state and must be safe to run
    more than once for the same snapshot.
    """

    stage: Stage

    def __init__(self, context: AgentContext) -> None:
        self.context = context

    @abc.abstractmethod
    async def run(self, snapshot: WorkflowSnapshot) -> Dict[str, Any]:
        raise NotImplementedError

    async def complete(
        self,
        snapshot: WorkflowSnapshot,
        prompt: str,
        system: Optional[str] = None,
        label: str = "main",
        max_tokens: Optional[int] = None,
    ) -> str:
        """Ask the gateway for text.

        The idempotency key is derived from the snapshot so a re-run of the
        same stage attempt presents the same key to the provider.
        """
        if self.context.gateway is None:
            raise AgentError(f"{self.stage.value} needs an LLM gateway", retryable=False)
        request = LLMRequest.from_prompt(
            prompt,
            system_instruction=system,
            idempotency_key=f"{snapshot.workflow_id}:{self.stage.value}:{snapshot.version}:{label}",
            label=f"{self.stage.value}:{label}",
        )
        if max_tokens:
            request.max_tokens = max_tokens
        response = await self.context.gateway.invoke(request, self.context.provider_order)
        logger.debug(
            f"{self.stage.value} received {len(response.content)} chars from {response.provider_id}"
        )
        return response.content

    async def call_backend(self, operation, label: str) -> Any:
        backoff = self.context.backend_backoff
        return await call_with_retry(
            operation,
            max_attempts=self.context.backend_attempts,
            base=backoff.base,
            jitter=backoff.jitter,
            cap=backoff.cap,
            label=label,
        )


def extract_json(text: str) -> Any:
    """Parse the JSON value in an LLM reply, tolerating code fences and prose."""
    candidates = [m.strip() for m in _FENCED.findall(text)]
    candidates.append(text.strip())
    for start, end in (("{", "}"), ("[", "]")):
        first, last = text.find(start), text.rfind(end)
        if first != -1 and last > first:
            candidates.append(text[first : last + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise AgentError(f"Model reply did not contain valid JSON: {text[:120]!r}")


def dataset_overview(snapshot: WorkflowSnapshot) -> str:
    """Short textual description of the ingested datasets."""
    ingestion = snapshot.artifact(Stage.INGESTION) or {}
    lines = []
    for dataset in ingestion.get("datasets", []):
        columns = ", ".join(dataset.get("columns", [])) or "unknown columns"
        lines.append(f"- {dataset['filename']}: {dataset.get('row_count', 0)} rows ({columns})")
    for description in ingestion.get("descriptions", []):
        lines.append(f"- {description}")
    return "\n".join(lines) or "- no datasets supplied"
