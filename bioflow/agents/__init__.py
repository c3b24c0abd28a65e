"""Stage agents and the registry that binds them to pipeline stages."""

from .base import AgentContext, StageAgent, extract_json
from .collaborators import (
    DatasetValidator,
    DescriptiveAnalysisBackend,
    NullSearchBackend,
    Rows,
    SerpApiSearchBackend,
)
from .registry import (
    AgentRegistry,
    StageHandler,
    build_agent_context,
    build_default_registry,
)
from .stages import (
    DraftAgent,
    FindingsAgent,
    FormattingAgent,
    IngestionAgent,
    LiteratureAgent,
    PlanningAgent,
)

__all__ = [
    "AgentContext",
    "AgentRegistry",
    "DatasetValidator",
    "DescriptiveAnalysisBackend",
    "DraftAgent",
    "FindingsAgent",
    "FormattingAgent",
    "IngestionAgent",
    "LiteratureAgent",
    "NullSearchBackend",
    "PlanningAgent",
    "Rows",
    "SerpApiSearchBackend",
    "StageAgent",
    "StageHandler",
    "build_agent_context",
    "build_default_registry",
    "extract_json",
]
