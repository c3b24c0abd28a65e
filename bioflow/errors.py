"""Exception hierarchy for bioflow.

Errors fall into four families:

* transient - worth retrying (timeouts, rate limits, 5xx, flaky backends)
* permanent - caller or configuration problems, never retried
* conflict - stale workflow transitions, resolved by discarding the attempt
* exhausted - every attempt or provider failed
"""

from __future__ import annotations

from typing import Dict, Optional


class BioflowError(Exception):
    """Base class for all bioflow errors."""

    retryable: bool = False


class WorkflowNotFound(BioflowError):
    """Raised when a workflow id does not exist in the repository."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class InvalidTransition(BioflowError):
    """Raised when an operation is not allowed in the workflow's status."""


class ProviderError(BioflowError):
    """Failure reported by an LLM provider adapter."""

    def __init__(
        self,
        message: str,
        provider_id: str = "",
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeout, rate limit, connection or 5xx failure."""

    retryable = True


class ProviderTimeout(TransientProviderError):
    """The call exceeded its deadline."""


class PermanentProviderError(ProviderError):
    """Bad credentials, malformed request or other non-retryable failure."""


class CapabilityError(BioflowError):
    """No provider in the requested order can satisfy the request."""


class AggregateFailure(BioflowError):
    """Every provider in the order was exhausted.

    ``errors`` maps provider id to the last error raised by that provider.
    """

    def __init__(self, errors: Dict[str, BaseException]) -> None:
        summary = "; ".join(f"{pid}: {err}" for pid, err in errors.items())
        super().__init__(f"All providers failed ({summary})")
        self.errors = errors

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return any(getattr(err, "retryable", False) for err in self.errors.values())


class AgentError(BioflowError):
    """Raised by stage handlers."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class TransientBackendError(BioflowError):
    """A search or analysis backend failed in a way worth retrying."""

    retryable = True


class DatasetError(BioflowError):
    """Closed set of dataset validation failures."""

    UNSUPPORTED_FORMAT = "unsupported_format"
    MISSING_COLUMN = "missing_column"
    PARSE_ERROR = "parse_error"

    KINDS = (UNSUPPORTED_FORMAT, MISSING_COLUMN, PARSE_ERROR)

    def __init__(self, kind: str, message: str, filename: str = "") -> None:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown dataset error kind: {kind}")
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.filename = filename


def is_retryable(error: BaseException) -> bool:
    """Return ``True`` when ``error`` is worth another job attempt.

    Errors outside the bioflow hierarchy are treated as transient; the job's
    attempt budget bounds how often they are retried.
    """
    if isinstance(error, BioflowError):
        return bool(error.retryable)
    return True
