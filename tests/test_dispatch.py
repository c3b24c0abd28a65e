import pytest

from bioflow.contracts import JobStatus, Stage
from tests.fixtures.fakes import FakeClock, build_stack


@pytest.mark.asyncio
async def test_claim_and_complete():
    clock = FakeClock()
    repo, dispatcher, engine = build_stack(clock)
    workflow_id = await engine.start("conv-1")

    job = await dispatcher.claim("worker-1")
    assert job is not None
    assert job.workflow_id == workflow_id
    assert job.stage == Stage.INGESTION
    assert job.lease_owner == "worker-1"
    assert (job.lease_expires_at - clock.now).total_seconds() == 30
    assert await dispatcher.claim("worker-2") is None

    assert await dispatcher.complete(job, "worker-1")
    stored = await dispatcher.get_job(job.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.attempt_count == 1
    assert stored.lease_owner is None


@pytest.mark.asyncio
async def test_failed_attempt_is_retried_after_backoff():
    clock = FakeClock()
    _, dispatcher, engine = build_stack(clock, max_attempts=3)
    await engine.start("conv-1")

    job = await dispatcher.claim("worker-1")
    failed = await dispatcher.fail(job, "worker-1", RuntimeError("timeout"))
    assert failed.status == JobStatus.FAILED
    assert failed.attempt_count == 1
    assert failed.last_error == "timeout"
    assert (failed.visible_at - clock.now).total_seconds() == 2.0

    assert await dispatcher.claim("worker-1") is None
    clock.advance(2)
    retry = await dispatcher.claim("worker-2")
    assert retry is not None and retry.id == job.id
    assert retry.attempt_count == 1

    failed = await dispatcher.fail(retry, "worker-2", RuntimeError("timeout"))
    assert (failed.visible_at - clock.now).total_seconds() == 4.0


@pytest.mark.asyncio
async def test_job_is_dead_after_max_attempts():
    clock = FakeClock()
    _, dispatcher, engine = build_stack(clock, max_attempts=2)
    workflow_id = await engine.start("conv-1")

    for _ in range(2):
        job = await dispatcher.claim("worker-1")
        assert job is not None
        failed = await dispatcher.fail(job, "worker-1", "boom")
        clock.advance(60)

    assert failed.status == JobStatus.DEAD
    assert failed.attempt_count == 2
    assert await dispatcher.claim("worker-1") is None
    assert [j.id for j in await dispatcher.list_jobs(workflow_id, JobStatus.DEAD)] == [job.id]


@pytest.mark.asyncio
async def test_non_retryable_failure_dead_letters_immediately():
    _, dispatcher, engine = build_stack()
    await engine.start("conv-1")
    job = await dispatcher.claim("worker-1")
    failed = await dispatcher.fail(job, "worker-1", "bad input", retryable=False)
    assert failed.status == JobStatus.DEAD
    assert failed.attempt_count == 1


@pytest.mark.asyncio
async def test_expired_lease_is_reclaimed_and_old_owner_is_fenced():
    clock = FakeClock()
    _, dispatcher, engine = build_stack(clock, lease_seconds=30)
    await engine.start("conv-1")

    job = await dispatcher.claim("worker-1")
    clock.advance(10)
    assert await dispatcher.sweep_expired_leases() == []

    clock.advance(25)
    assert await dispatcher.sweep_expired_leases() == [job.id]
    reclaimed = await dispatcher.claim("worker-2")
    assert reclaimed.id == job.id
    assert reclaimed.attempt_count == 0

    # The crashed worker no longer owns the job.
    assert not await dispatcher.complete(job, "worker-1")
    assert await dispatcher.fail(job, "worker-1", "late") is None
    assert not await dispatcher.renew(job, "worker-1")
    assert await dispatcher.complete(reclaimed, "worker-2")


@pytest.mark.asyncio
async def test_renew_extends_the_lease():
    clock = FakeClock()
    _, dispatcher, engine = build_stack(clock, lease_seconds=30)
    await engine.start("conv-1")
    job = await dispatcher.claim("worker-1")

    clock.advance(20)
    assert await dispatcher.renew(job, "worker-1")
    assert (job.lease_expires_at - clock.now).total_seconds() == 30

    clock.advance(20)
    assert await dispatcher.sweep_expired_leases() == []


@pytest.mark.asyncio
async def test_discard_and_enqueue():
    _, dispatcher, engine = build_stack()
    workflow_id = await engine.start("conv-1")
    job = await dispatcher.claim("worker-1")

    assert await dispatcher.discard(job, "worker-1", "workflow is cancelled", status=JobStatus.DEAD)
    stored = await dispatcher.get_job(job.id)
    assert stored.status == JobStatus.DEAD
    assert stored.last_error == "workflow is cancelled"

    extra = await dispatcher.enqueue(workflow_id, Stage.INGESTION)
    assert (await dispatcher.claim("worker-1")).id == extra.id
