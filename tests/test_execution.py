import asyncio

import pytest

from bioflow.agents import AgentContext, AgentRegistry, IngestionAgent
from bioflow.contracts import STAGE_ORDER, JobStatus, Stage, WorkflowStatus
from bioflow.errors import AgentError, TransientBackendError
from bioflow.execute import Worker, WorkerPool
from tests.fixtures.fakes import (
    BlockingHandler,
    EchoHandler,
    FailingHandler,
    FakeClock,
    build_stack,
    echo_registry,
)


async def _drain(worker: Worker) -> int:
    processed = 0
    while await worker.run_once():
        processed += 1
    return processed


@pytest.mark.asyncio
async def test_worker_runs_workflow_to_completion():
    repo, dispatcher, engine = build_stack()
    registry = echo_registry()
    worker = Worker(engine, dispatcher, registry, worker_id="w-1")
    workflow_id = await engine.start("conv-1", {"question": "q"})

    assert await _drain(worker) == 6

    wf = await engine.get(workflow_id)
    assert wf.status == WorkflowStatus.COMPLETE
    assert wf.version == 6
    assert wf.payload["draft"] == {"stage": "draft", "version": 4}
    jobs = await repo.list_jobs(workflow_id=workflow_id)
    assert [j.status for j in jobs] == [JobStatus.SUCCEEDED] * 6
    assert all(j.attempt_count == 1 for j in jobs)
    # Each handler saw the artifacts of every earlier stage.
    snapshot = registry.get(Stage.FORMATTING).runs[0]
    assert list(snapshot.payload) == [s.value for s in STAGE_ORDER[:-1]]
    assert snapshot.input == {"question": "q"}


@pytest.mark.asyncio
async def test_transient_failure_is_retried_after_backoff():
    clock = FakeClock()
    repo, dispatcher, engine = build_stack(clock)
    flaky = FailingHandler(Stage.PLANNING, TransientBackendError("search busy"), failures=1)
    worker = Worker(engine, dispatcher, echo_registry(planning=flaky), worker_id="w-1")
    workflow_id = await engine.start("conv-1")

    assert await _drain(worker) == 2
    wf = await engine.get(workflow_id)
    assert wf.status == WorkflowStatus.RUNNING
    assert wf.error == "planning: search busy"

    clock.advance(2)
    assert await _drain(worker) == 5
    wf = await engine.get(workflow_id)
    assert wf.status == WorkflowStatus.COMPLETE
    assert wf.error is None
    planning = [j for j in await repo.list_jobs(workflow_id=workflow_id) if j.stage == Stage.PLANNING]
    assert len(planning) == 1
    assert planning[0].attempt_count == 2


@pytest.mark.asyncio
async def test_exhausted_job_fails_workflow_until_retriggered():
    clock = FakeClock()
    repo, dispatcher, engine = build_stack(clock, max_attempts=2)
    broken = FailingHandler(Stage.FINDINGS, RuntimeError("analysis crashed"), failures=2)
    worker = Worker(engine, dispatcher, echo_registry(findings=broken), worker_id="w-1")
    workflow_id = await engine.start("conv-1")

    await _drain(worker)
    clock.advance(60)
    await _drain(worker)

    wf = await engine.get(workflow_id)
    assert wf.status == WorkflowStatus.FAILED
    assert wf.current_stage == Stage.FINDINGS
    assert wf.error == "findings: analysis crashed"
    dead = await repo.list_jobs(workflow_id=workflow_id, status=JobStatus.DEAD)
    assert [j.stage for j in dead] == [Stage.FINDINGS]
    assert dead[0].attempt_count == 2
    assert dead[0].last_error == "analysis crashed"

    await engine.retrigger(workflow_id)
    await _drain(worker)
    wf = await engine.get(workflow_id)
    assert wf.status == WorkflowStatus.COMPLETE
    assert len(broken.runs) == 3


@pytest.mark.asyncio
async def test_non_retryable_error_fails_on_first_attempt():
    repo, dispatcher, engine = build_stack()
    rejecting = FailingHandler(Stage.INGESTION, AgentError("no dataset", retryable=False))
    worker = Worker(engine, dispatcher, echo_registry(ingestion=rejecting), worker_id="w-1")
    workflow_id = await engine.start("conv-1")

    assert await _drain(worker) == 1
    wf = await engine.get(workflow_id)
    assert wf.status == WorkflowStatus.FAILED
    job = (await repo.list_jobs(workflow_id=workflow_id))[0]
    assert job.status == JobStatus.DEAD
    assert job.attempt_count == 1


@pytest.mark.asyncio
async def test_malformed_dataset_input_is_not_retried():
    repo, dispatcher, engine = build_stack()
    ingestion = IngestionAgent(AgentContext())
    worker = Worker(engine, dispatcher, echo_registry(ingestion=ingestion), worker_id="w-1")
    workflow_id = await engine.start("conv-1", {"dataset": 120})

    assert await _drain(worker) == 1
    wf = await engine.get(workflow_id)
    assert wf.status == WorkflowStatus.FAILED
    assert "must be an object" in wf.error
    job = (await repo.list_jobs(workflow_id=workflow_id))[0]
    assert job.status == JobStatus.DEAD
    assert job.attempt_count == 1


@pytest.mark.asyncio
async def test_missing_handler_is_a_permanent_failure():
    repo, dispatcher, engine = build_stack()
    registry = AgentRegistry({Stage.INGESTION: EchoHandler(Stage.INGESTION)})
    worker = Worker(engine, dispatcher, registry, worker_id="w-1")
    workflow_id = await engine.start("conv-1")

    await _drain(worker)
    wf = await engine.get(workflow_id)
    assert wf.status == WorkflowStatus.FAILED
    assert "No handler registered" in wf.error


@pytest.mark.asyncio
async def test_jobs_of_cancelled_workflows_are_discarded():
    repo, dispatcher, engine = build_stack()
    registry = echo_registry()
    worker = Worker(engine, dispatcher, registry, worker_id="w-1")
    workflow_id = await engine.start("conv-1")
    await engine.cancel(workflow_id)

    assert await _drain(worker) == 1
    assert registry.get(Stage.INGESTION).runs == []
    job = (await repo.list_jobs(workflow_id=workflow_id))[0]
    assert job.status == JobStatus.DEAD
    assert job.last_error == "workflow is cancelled"


@pytest.mark.asyncio
async def test_duplicate_job_for_committed_stage_is_discarded():
    repo, dispatcher, engine = build_stack()
    registry = echo_registry()
    worker = Worker(engine, dispatcher, registry, worker_id="w-1")
    workflow_id = await engine.start("conv-1")
    await worker.run_once()

    duplicate = await dispatcher.enqueue(workflow_id, Stage.INGESTION)
    # Planning job runs first, then the duplicate.
    await worker.run_once()
    await worker.run_once()

    stored = await repo.get_job(duplicate.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert "already committed" in stored.last_error
    assert len(registry.get(Stage.INGESTION).runs) == 1
    assert (await engine.get(workflow_id)).version == 2


@pytest.mark.asyncio
async def test_crashed_worker_job_is_redelivered_and_committed_once():
    clock = FakeClock()
    repo, dispatcher, engine = build_stack(clock, lease_seconds=30)

    class HangsOnce(BlockingHandler):
        async def run(self, snapshot):
            if not self.runs:
                return await super().run(snapshot)
            self.runs.append(snapshot)
            return {"stage": self.stage.value, "by": "second"}

    planning = HangsOnce(Stage.PLANNING)
    registry = echo_registry(planning=planning)
    first = Worker(engine, dispatcher, registry, worker_id="w-1")
    second = Worker(engine, dispatcher, registry, worker_id="w-2")
    workflow_id = await engine.start("conv-1")
    await first.run_once()

    stuck = asyncio.create_task(first.run_once())
    await asyncio.wait_for(planning.started.wait(), timeout=1)

    clock.advance(31)
    released = await dispatcher.sweep_expired_leases()
    assert len(released) == 1
    assert await second.run_once()

    # The stuck worker wakes up late; its advance loses to the redelivery.
    planning.release.set()
    await asyncio.wait_for(stuck, timeout=1)

    wf = await engine.get(workflow_id)
    assert wf.version == 2
    assert wf.payload["planning"] == {"stage": "planning", "by": "second"}
    assert wf.current_stage == Stage.LITERATURE
    job = await repo.get_job(released[0])
    assert job.status == JobStatus.SUCCEEDED
    assert job.attempt_count == 1
    literature = [j for j in await repo.list_jobs(workflow_id=workflow_id) if j.stage == Stage.LITERATURE]
    assert len(literature) == 1


@pytest.mark.asyncio
async def test_redelivered_final_stage_after_commit_is_retired_as_succeeded():
    clock = FakeClock()
    repo, dispatcher, engine = build_stack(clock, lease_seconds=30)
    registry = echo_registry()
    first = Worker(engine, dispatcher, registry, worker_id="w-1")
    second = Worker(engine, dispatcher, registry, worker_id="w-2")
    workflow_id = await engine.start("conv-1")
    for _ in range(5):
        assert await first.run_once()

    # Crash between committing the last stage and completing its job.
    job = await dispatcher.claim("w-1")
    assert job.stage == Stage.FORMATTING
    wf = await engine.get(workflow_id)
    result = await engine.advance(workflow_id, wf.version, Stage.FORMATTING, {"done": True})
    assert not result.conflict
    assert (await engine.get(workflow_id)).status == WorkflowStatus.COMPLETE

    clock.advance(31)
    assert await dispatcher.sweep_expired_leases() == [job.id]
    assert await second.run_once()

    retired = await repo.get_job(job.id)
    assert retired.status == JobStatus.SUCCEEDED
    assert "already committed" in retired.last_error
    assert await repo.list_jobs(workflow_id=workflow_id, status=JobStatus.DEAD) == []
    assert len(registry.get(Stage.FORMATTING).runs) == 0


@pytest.mark.asyncio
async def test_pool_processes_many_workflows():
    _, dispatcher, engine = build_stack()
    pool = WorkerPool(
        engine,
        dispatcher,
        echo_registry(),
        concurrency=3,
        poll_interval=0.01,
        sweep_interval=0.05,
        worker_prefix="test",
    )
    assert [w.worker_id for w in pool.workers] == ["test-0", "test-1", "test-2"]

    ids = [await engine.start(f"conv-{n}") for n in range(5)]
    async with pool:
        assert pool.running
        for _ in range(200):
            states = [await engine.get(i) for i in ids]
            if all(wf.status == WorkflowStatus.COMPLETE for wf in states):
                break
            await asyncio.sleep(0.01)
    assert not pool.running
    assert all(wf.status == WorkflowStatus.COMPLETE and wf.version == 6 for wf in states)
    assert sum(w.processed for w in pool.workers) == 30


@pytest.mark.asyncio
async def test_pool_run_stops_after_lifespan():
    _, dispatcher, engine = build_stack()
    pool = WorkerPool(engine, dispatcher, echo_registry(), concurrency=1, poll_interval=0.01)
    await asyncio.wait_for(pool.run(lifespan=0.05), timeout=2)
    assert not pool.running


def test_pool_requires_a_handler_for_every_stage():
    _, dispatcher, engine = build_stack()
    registry = AgentRegistry({Stage.INGESTION: EchoHandler(Stage.INGESTION)})
    with pytest.raises(ValueError):
        WorkerPool(engine, dispatcher, registry, concurrency=1)
