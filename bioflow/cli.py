"""Command line interface for bioflow workers and workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer

from .config import load_config
from .contracts import JobStatus
from .errors import InvalidTransition, WorkflowNotFound
from .persistence import get_repository
from .service import ResearchService, build_service

app = typer.Typer(help="CLI for the bioflow research pipeline")

worker_app = typer.Typer(help="Commands for running workers")
workflow_app = typer.Typer(help="Commands for managing workflows")
job_app = typer.Typer(help="Commands for inspecting jobs")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(job_app, name="job")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """bioflow CLI entry point."""
    level = (log_level or load_config().log_level).upper()
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def _service(concurrency: int = 0) -> ResearchService:
    return build_service(
        load_config(), concurrency=concurrency, repository=get_repository()
    )


@worker_app.command("run")
def worker_run(
    concurrency: Optional[int] = typer.Option(None, help="Number of concurrent workers"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run a pool of workers that execute pipeline stages.

    Example:
        bioflow worker run --concurrency 8
        bioflow worker run --lifespan 300
    """
    config = load_config()
    workers = concurrency if concurrency is not None else config.queue.concurrency
    if workers < 1:
        typer.secho("Concurrency must be at least 1", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    service = build_service(config, concurrency=workers, repository=get_repository())

    async def _run() -> None:
        async with service:
            await service.pool.run(lifespan=lifespan)

    typer.echo(f"Starting {workers} worker(s)")
    asyncio.run(_run())


@workflow_app.command("start")
def workflow_start(
    conversation_id: str,
    payload: Optional[str] = typer.Option(None, help="Initial payload as a JSON object"),
) -> None:
    """
    Start a workflow for a conversation.

    Example:
        bioflow workflow start conv-1 --payload '{"question": "...", "dataset": "120 rows"}'
    """
    data = {}
    if payload:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        if not isinstance(data, dict):
            typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
            raise typer.Exit(code=1)

    result = asyncio.run(_service().start_workflow(conversation_id, data))
    typer.echo(f"Workflow {result['workflow_id']} started at {result['stage']}")


@workflow_app.command("list")
def workflow_list(
    conversation: Optional[str] = typer.Option(None, help="Only this conversation"),
) -> None:
    """List workflows with their stage and status."""
    workflows = asyncio.run(_service().list_workflows(conversation))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.conversation_id}\t{wf.current_stage.value}\t{wf.status.value}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show stage, status, error and a summary of each committed artifact."""
    try:
        info = asyncio.run(_service().get_workflow(workflow_id))
    except WorkflowNotFound:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)

    typer.echo(f"Workflow {info['workflow_id']}: {info['status']} at {info['stage']}")
    typer.echo(f"Conversation: {info['conversation_id']}")
    typer.echo(f"Version: {info['version']}")
    typer.echo(f"Created: {info['created_at']}  Updated: {info['updated_at']}")
    if info["error"]:
        typer.echo(f"Error: {info['error']}")
    for stage, summary in info["payload_summary"].items():
        typer.echo(f"- {stage}: {summary}")


@workflow_app.command("cancel")
def workflow_cancel(workflow_id: str) -> None:
    """Cancel a running workflow."""
    try:
        cancelled = asyncio.run(_service().cancel_workflow(workflow_id))
    except WorkflowNotFound:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    if not cancelled:
        typer.secho("Workflow already finished", fg=typer.colors.YELLOW)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} cancelled")


@workflow_app.command("retrigger")
def workflow_retrigger(workflow_id: str) -> None:
    """Re-enqueue the current stage of a failed workflow."""
    try:
        result = asyncio.run(_service().retrigger_stage(workflow_id))
    except WorkflowNotFound:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    except InvalidTransition as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} retriggered at {result['stage']}")


@workflow_app.command("watch")
def workflow_watch(
    conversation_id: str,
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Print progress events for a conversation.

    Cross-process events need the redis notification backend.
    """
    service = _service()

    async def _watch() -> None:
        async with service:
            async for event in service.subscribe_workflow(conversation_id, lifespan=lifespan):
                typer.echo(
                    f"{event.timestamp.isoformat()}\t{event.workflow_id}\t"
                    f"{event.stage.value}\t{event.status.value}\t{event.message}"
                )

    asyncio.run(_watch())


@job_app.command("list")
def job_list(
    workflow: Optional[str] = typer.Option(None, help="Only jobs of this workflow"),
    status: Optional[JobStatus] = typer.Option(None, help="Only jobs in this status"),
) -> None:
    """List jobs with their attempts and last error."""
    jobs = asyncio.run(get_repository().list_jobs(workflow_id=workflow, status=status))
    if not jobs:
        typer.echo("No jobs found")
        return
    for job in jobs:
        line = (
            f"{job.id}\t{job.workflow_id}\t{job.stage.value}\t{job.status.value}\t"
            f"{job.attempt_count}/{job.max_attempts}"
        )
        if job.last_error:
            line += f"\t{job.last_error}"
        typer.echo(line)


if __name__ == "__main__":
    app()
