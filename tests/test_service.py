import asyncio

import pytest

from bioflow.config import BioflowConfig
from bioflow.contracts import WorkflowStatus
from bioflow.dispatch import JobDispatcher
from bioflow.errors import InvalidTransition, WorkflowNotFound
from bioflow.persistence import InMemoryWorkflowRepository
from bioflow.service import ResearchService, build_service, summarize_payload
from bioflow.transports import InMemoryNotificationBus
from tests.fixtures.fakes import echo_registry


def _service(concurrency: int = 2) -> ResearchService:
    repo = InMemoryWorkflowRepository()
    return ResearchService(
        repo,
        InMemoryNotificationBus(),
        JobDispatcher(repo),
        registry=echo_registry(),
        concurrency=concurrency,
        poll_interval=0.01,
        sweep_interval=0.05,
    )


@pytest.mark.asyncio
async def test_service_runs_workflow_and_streams_progress():
    service = _service()
    events = []

    async with service:

        async def watch():
            async for event in service.subscribe_workflow("conv-1", lifespan=5):
                events.append(event)
                if event.status == WorkflowStatus.COMPLETE:
                    break

        watcher = asyncio.create_task(watch())
        while service.bus.subscriber_count == 0:
            await asyncio.sleep(0)

        started = await service.start_workflow("conv-1", {"question": "q"})
        assert started["stage"] == "ingestion"
        await asyncio.wait_for(watcher, timeout=5)

        info = await service.get_workflow(started["workflow_id"])

    assert info["status"] == "complete"
    assert info["version"] == 6
    assert info["conversation_id"] == "conv-1"
    assert list(info["payload_summary"]) == [
        "ingestion",
        "planning",
        "literature",
        "findings",
        "draft",
        "formatting",
    ]
    assert events[-1].status == WorkflowStatus.COMPLETE
    assert [e.version for e in events] == sorted(e.version for e in events)


@pytest.mark.asyncio
async def test_cancel_and_retrigger_without_workers():
    service = _service(concurrency=0)
    assert service.pool is None
    started = await service.start_workflow("conv-1")
    workflow_id = started["workflow_id"]

    with pytest.raises(InvalidTransition):
        await service.retrigger_stage(workflow_id)

    assert await service.cancel_workflow(workflow_id)
    assert (await service.get_workflow(workflow_id))["status"] == "cancelled"
    with pytest.raises(InvalidTransition):
        await service.retrigger_stage(workflow_id)
    with pytest.raises(WorkflowNotFound):
        await service.get_workflow("missing")

    listed = await service.list_workflows("conv-1")
    assert [wf.id for wf in listed] == [workflow_id]


@pytest.mark.asyncio
async def test_retrigger_after_failure():
    service = _service(concurrency=0)
    workflow_id = (await service.start_workflow("conv-1"))["workflow_id"]
    await service.engine.fail(workflow_id, "ingestion", "bad upload", exhausted=True)

    result = await service.retrigger_stage(workflow_id)
    assert result["stage"] == "ingestion"
    assert result["job_id"]
    info = await service.get_workflow(workflow_id)
    assert info["status"] == "running"
    assert info["error"] is None


def test_summarize_payload_truncates():
    from bioflow.contracts import WorkflowState

    wf = WorkflowState(
        conversation_id="c",
        payload={"planning": {"objective": "x" * 500}, "ingestion": {"rows": 3}},
    )
    summary = summarize_payload(wf, limit=50)
    assert list(summary) == ["ingestion", "planning"]
    assert summary["ingestion"] == '{"rows": 3}'
    assert len(summary["planning"]) == 50
    assert summary["planning"].endswith("...")


def test_build_service_without_workers():
    service = build_service(
        BioflowConfig(), concurrency=0, repository=InMemoryWorkflowRepository()
    )
    assert service.pool is None
    assert service.registry is None
    assert isinstance(service.bus, InMemoryNotificationBus)
