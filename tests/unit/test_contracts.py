import pytest

from bioflow.contracts import (
    STAGE_ORDER,
    Stage,
    WorkflowEvent,
    WorkflowState,
    WorkflowStatus,
    next_stage,
)
from bioflow.errors import AggregateFailure, DatasetError, PermanentProviderError, ProviderTimeout, is_retryable


def test_stage_order_is_linear():
    assert [s.value for s in STAGE_ORDER] == [
        "ingestion",
        "planning",
        "literature",
        "findings",
        "draft",
        "formatting",
    ]
    assert next_stage(Stage.INGESTION) == Stage.PLANNING
    assert next_stage(Stage.DRAFT) == Stage.FORMATTING
    assert next_stage(Stage.FORMATTING) is None
    assert next_stage("findings") == Stage.DRAFT


def test_only_running_is_not_terminal():
    assert not WorkflowStatus.RUNNING.is_terminal
    for status in (WorkflowStatus.FAILED, WorkflowStatus.CANCELLED, WorkflowStatus.COMPLETE):
        assert status.is_terminal


def test_snapshot_is_a_copy():
    wf = WorkflowState(conversation_id="c1", payload={"ingestion": {"rows": 1}})
    snap = wf.snapshot()
    assert snap.stage == Stage.INGESTION
    assert snap.artifact(Stage.INGESTION) == {"rows": 1}
    assert snap.artifact(Stage.PLANNING) is None
    wf.payload["planning"] = {}
    assert "planning" not in snap.payload
    assert wf.completed_stages == [Stage.INGESTION, Stage.PLANNING]


def test_event_json_round_trip():
    event = WorkflowEvent(
        workflow_id="w1",
        conversation_id="c1",
        stage=Stage.LITERATURE,
        status=WorkflowStatus.RUNNING,
        message="Stage planning committed",
        version=2,
    )
    assert WorkflowEvent.from_json(event.to_json()) == event


def test_error_families():
    assert is_retryable(ProviderTimeout("slow"))
    assert not is_retryable(PermanentProviderError("bad key"))
    assert is_retryable(RuntimeError("unexpected"))
    assert not AggregateFailure({"a": PermanentProviderError("x")}).retryable
    assert AggregateFailure(
        {"a": PermanentProviderError("x"), "b": ProviderTimeout("y")}
    ).retryable
    with pytest.raises(ValueError):
        DatasetError("bogus", "nope")
