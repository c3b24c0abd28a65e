"""Workers that execute stage jobs and drive workflow transitions."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from typing import Any, List, Optional

from .agents import AgentRegistry
from .constants import DEFAULT_POLL_INTERVAL, DEFAULT_SWEEP_INTERVAL, DEFAULT_WORKER_CONCURRENCY
from .contracts import Job, JobStatus, WorkflowStatus, new_id
from .dispatch import JobDispatcher
from .engine import WorkflowEngine
from .errors import WorkflowNotFound, is_retryable

logger = logging.getLogger(__name__)


def default_worker_prefix() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Worker:
    """Claims jobs one at a time and runs the stage handler for each.

    On success the worker calls ``WorkflowEngine.advance`` before marking the
    job succeeded; a crash in between leaves the lease to expire and the
    re-run is rejected by the engine's version check.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        dispatcher: JobDispatcher,
        registry: AgentRegistry,
        worker_id: Optional[str] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        heartbeat_interval: Optional[float] = None,
    ) -> None:
        self.engine = engine
        self.dispatcher = dispatcher
        self.registry = registry
        self.worker_id = worker_id or f"{default_worker_prefix()}-{new_id()[:8]}"
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval or max(dispatcher.lease_seconds / 3, 0.01)
        self.processed = 0

    async def run_once(self) -> bool:
        """Claim and process one job. Returns ``False`` when the queue is empty."""
        job = await self.dispatcher.claim(self.worker_id)
        if job is None:
            return False
        await self.process(job)
        self.processed += 1
        return True

    async def run(
        self, lifespan: Optional[float] = None, stop: Optional[asyncio.Event] = None
    ) -> None:
        """Poll for jobs until ``stop`` is set or ``lifespan`` seconds pass."""
        stop = stop or asyncio.Event()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        logger.info(f"Worker {self.worker_id} started")
        while not stop.is_set():
            if deadline is not None and loop.time() >= deadline:
                break
            try:
                busy = await self.run_once()
            except Exception:
                # The job's lease expires and the sweeper hands it out again.
                logger.exception(f"Worker {self.worker_id} failed while processing a job")
                busy = False
            if not busy:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info(f"Worker {self.worker_id} stopped after {self.processed} job(s)")

    async def process(self, job: Job) -> None:
        try:
            workflow = await self.engine.get(job.workflow_id)
        except WorkflowNotFound:
            await self.dispatcher.discard(
                job, self.worker_id, "workflow no longer exists", status=JobStatus.DEAD
            )
            return

        if job.stage.value in workflow.payload:
            await self.dispatcher.discard(
                job, self.worker_id, f"stage {job.stage.value} already committed"
            )
            return
        if workflow.status != WorkflowStatus.RUNNING:
            await self.dispatcher.discard(
                job, self.worker_id, f"workflow is {workflow.status.value}", status=JobStatus.DEAD
            )
            return
        if workflow.current_stage != job.stage:
            await self.dispatcher.discard(
                job, self.worker_id, f"stage {job.stage.value} already committed"
            )
            return

        try:
            handler = self.registry.get(job.stage)
        except LookupError as e:
            await self._fail(job, e, retryable=False)
            return

        logger.info(
            f"Worker {self.worker_id} running {job.stage.value} for workflow {workflow.id} "
            f"(attempt {job.attempt_count + 1}/{job.max_attempts})"
        )
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            artifact = await handler.run(workflow.snapshot())
        except Exception as e:
            await self._fail(job, e, retryable=is_retryable(e))
            return
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        result = await self.engine.advance(workflow.id, workflow.version, job.stage, artifact)
        if result.conflict:
            await self._discard_conflict(job, result.reason)
            return
        await self.dispatcher.complete(job, self.worker_id)

    async def _fail(self, job: Job, error: BaseException, retryable: bool) -> None:
        failed = await self.dispatcher.fail(job, self.worker_id, error, retryable=retryable)
        if failed is None:
            logger.info(f"Job {job.id} lease was lost; failure left to the current owner")
            return
        await self.engine.fail(
            job.workflow_id, job.stage, error, exhausted=failed.status == JobStatus.DEAD
        )

    async def _discard_conflict(self, job: Job, reason: Optional[str]) -> None:
        latest = await self.engine.get(job.workflow_id)
        # Another delivery committed this stage; otherwise the workflow left running.
        status = JobStatus.SUCCEEDED if job.stage.value in latest.payload else JobStatus.DEAD
        await self.dispatcher.discard(job, self.worker_id, f"conflict: {reason}", status=status)

    async def _heartbeat(self, job: Job) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not await self.dispatcher.renew(job, self.worker_id):
                logger.warning(f"Worker {self.worker_id} lost the lease on job {job.id}")
                return


class WorkerPool:
    """Fixed number of concurrent workers plus a lease sweeper."""

    def __init__(
        self,
        engine: WorkflowEngine,
        dispatcher: JobDispatcher,
        registry: AgentRegistry,
        concurrency: int = DEFAULT_WORKER_CONCURRENCY,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        worker_prefix: Optional[str] = None,
    ) -> None:
        registry.validate()
        prefix = worker_prefix or default_worker_prefix()
        self.dispatcher = dispatcher
        self.sweep_interval = sweep_interval
        self.workers = [
            Worker(
                engine,
                dispatcher,
                registry,
                worker_id=f"{prefix}-{n}",
                poll_interval=poll_interval,
            )
            for n in range(concurrency)
        ]
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._stop = asyncio.Event()
        self._tasks = [
            asyncio.create_task(worker.run(stop=self._stop), name=worker.worker_id)
            for worker in self.workers
        ]
        self._tasks.append(asyncio.create_task(self._sweep(), name="lease-sweeper"))
        logger.info(f"Worker pool started with {len(self.workers)} worker(s)")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Let in-flight jobs finish, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        self._stop.set()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Pool task {task.get_name()} crashed: {task.exception()}")
        self._tasks = []
        logger.info("Worker pool stopped")

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Run until ``lifespan`` elapses or the surrounding task is cancelled."""
        await self.start()
        try:
            if lifespan is None:
                await self._stop.wait()
            else:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=lifespan)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    async def _sweep(self) -> None:
        while not self._stop.is_set():
            try:
                await self.dispatcher.sweep_expired_leases()
            except Exception:
                logger.exception("Lease sweep failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                pass

    async def __aenter__(self) -> "WorkerPool":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
