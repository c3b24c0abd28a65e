"""Workflow and job stores shared by the engine, dispatcher and CLI."""

from __future__ import annotations

from typing import Optional

from ..config import BioflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None
_repository_url: str | None = None


def _open(database_url: Optional[str]) -> WorkflowRepository:
    if not database_url:
        return InMemoryWorkflowRepository()
    scheme, _, rest = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(rest or ":memory:")
    if scheme in ("postgres", "postgresql"):
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[BioflowConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow repository.

    ``database_url`` wins over ``config.database_url``, which ``load_config``
    has already overridden from ``BIOFLOW_DATABASE_URL`` / ``DATABASE_URL``.
    No URL means an in-memory store, private to this process. Provider call
    records are not kept here; they go to ``config.call_log_url``.

    The repository is cached and reused while the resolved URL stays the same,
    so the CLI and an embedded service share one SQLite connection.
    """

    global _repository_instance, _repository_url
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    url = database_url or (config or load_config()).database_url
    if _repository_instance is not None and url == _repository_url:
        return _repository_instance

    _repository_instance = _open(url)
    _repository_url = url
    return _repository_instance


def reset_repository() -> None:
    """Drop the cached repository instance."""
    global _repository_instance, _repository_url
    _repository_instance = None
    _repository_url = None


__all__ = [
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "reset_repository",
]
