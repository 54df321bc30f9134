"""Command line interface for running stepwise workers and managing executions."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import typer
from pydantic import ValidationError

from stepwise import (
    ExecutionDispatcher,
    StepwiseConfig,
    WorkflowExecutor,
    WorkflowQueue,
    get_repository,
    get_transport,
    load_config,
    load_workflow_file,
)
from stepwise.contracts import ExecutionStatus
from stepwise.exceptions import StepwiseError
from stepwise.health import health_report
from stepwise.persistence import ExecutionRepository

T = TypeVar("T")

app = typer.Typer(help="CLI for stepwise workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for managing executions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


@app.callback()
def main() -> None:
    """Stepwise CLI entry point."""
    pass


def _runtime(
    config: StepwiseConfig,
) -> Tuple[ExecutionRepository, WorkflowQueue]:
    return get_repository(config=config), WorkflowQueue(get_transport(config=config))


def _run(
    config_path: Optional[Path],
    action: Callable[[ExecutionRepository, WorkflowQueue, StepwiseConfig], Awaitable[T]],
) -> T:
    """Run ``action`` against a freshly built repository and queue, then close both."""
    config = load_config(str(config_path) if config_path else None)
    repository, queue = _runtime(config)

    async def runner() -> T:
        await queue.connect()
        try:
            return await action(repository, queue, config)
        finally:
            await queue.close()
            await repository.close()

    try:
        return asyncio.run(runner())
    except StepwiseError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


@app.command("worker")
def worker(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until interrupted)"
    ),
    log_level: str = typer.Option("INFO", help="Logging level"),
    config: Optional[Path] = typer.Option(None, help="Path to a stepwise.yaml file"),
) -> None:
    """
    Run the workflow executor.

    Starts one worker per logical queue (workflow start, step execution and
    step retry) against the configured transport and repository.

    Example:
        stepwise worker
        stepwise worker --lifespan 300 --log-level DEBUG
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    async def action(repository, queue, conf) -> None:
        executor = WorkflowExecutor(repository, queue, config=conf)
        await executor.start(lifespan=lifespan)
        try:
            await executor.wait()
        finally:
            await executor.stop()

    typer.echo("Starting stepwise worker")
    try:
        _run(config, action)
    except KeyboardInterrupt:
        typer.echo("Worker stopped")


@app.command("health")
def health(
    config: Optional[Path] = typer.Option(None, help="Path to a stepwise.yaml file"),
) -> None:
    """Report repository and queue connectivity plus queue depths."""
    report = _run(config, lambda repository, queue, _: health_report(repository, queue))
    typer.echo(_dump(report))
    if report["status"] != "ok":
        raise typer.Exit(code=1)


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Validate a workflow definition file.

    Checks that step ids are unique, every dependency exists and the
    dependency graph is acyclic.

    Example:
        stepwise workflow validate ./order_flow.yaml
    """
    try:
        workflow = load_workflow_file(path)
    except (OSError, ValidationError, StepwiseError) as exc:
        typer.secho(f"Invalid workflow: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow.id} is valid ({len(workflow.steps)} steps)")


@workflow_app.command("register")
def workflow_register(
    path: Path,
    tenant: str = typer.Option(..., help="Tenant owning the workflow"),
    config: Optional[Path] = typer.Option(None, help="Path to a stepwise.yaml file"),
) -> None:
    """Validate a workflow definition file and store it in the repository."""
    try:
        workflow = load_workflow_file(path, tenant_id=tenant)
    except (OSError, ValidationError, StepwiseError) as exc:
        typer.secho(f"Invalid workflow: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    _run(
        config,
        lambda repository, queue, _: ExecutionDispatcher(
            repository, queue
        ).register_workflow(workflow),
    )
    typer.echo(f"Registered workflow {workflow.id} for tenant {tenant}")


@execution_app.command("trigger")
def execution_trigger(
    workflow_id: str,
    tenant: str = typer.Option(..., help="Tenant owning the workflow"),
    input: Optional[str] = typer.Option(None, help="JSON object of initial variables"),
    config: Optional[Path] = typer.Option(None, help="Path to a stepwise.yaml file"),
) -> None:
    """
    Create a pending execution and enqueue it for the workers.

    Example:
        stepwise execution trigger order_flow --tenant acme --input '{"order_id": 7}'
    """
    try:
        variables = json.loads(input) if input else {}
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid --input JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(variables, dict):
        typer.secho("--input must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    execution = _run(
        config,
        lambda repository, queue, _: ExecutionDispatcher(repository, queue).dispatch(
            workflow_id, tenant, variables
        ),
    )
    typer.echo(f"Execution ID: {execution.id}")


@execution_app.command("list")
def execution_list(
    tenant: str = typer.Option(..., help="Tenant to list executions for"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
    config: Optional[Path] = typer.Option(None, help="Path to a stepwise.yaml file"),
) -> None:
    """List executions of a tenant with their current status."""
    executions = _run(
        config, lambda repository, queue, _: repository.list_executions(tenant, status)
    )
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(f"{execution.id}\t{execution.workflow_id}\t{execution.status.value}")


@execution_app.command("show")
def execution_show(
    execution_id: str,
    tenant: str = typer.Option(..., help="Tenant owning the execution"),
    config: Optional[Path] = typer.Option(None, help="Path to a stepwise.yaml file"),
) -> None:
    """
    Show an execution with its variables and per-step history.

    Example:
        stepwise execution show 5f0c... --tenant acme
        # Output: Execution 5f0c...: running
        #         - fetch: completed (retries: 0)
        #         - notify: running (retries: 1)
    """

    async def action(repository, queue, _):
        execution = await repository.get_execution(execution_id, tenant)
        if execution is None:
            return None, []
        return execution, await repository.list_step_executions(execution_id, tenant)

    execution, records = _run(config, action)
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(f"Workflow: {execution.workflow_id}")
    if execution.variables:
        typer.echo(f"Variables: {_dump(execution.variables)}")
    if execution.error:
        typer.echo(f"Error: {execution.error.message}")
    for record in records:
        typer.echo(
            f"- {record.step_id}: {record.status.value} (retries: {record.retry_count})"
            + (
                f" ({record.started_at} -> {record.completed_at})"
                if record.started_at or record.completed_at
                else ""
            )
        )


def _control(
    execution_id: str,
    tenant: str,
    config: Optional[Path],
    operation: str,
) -> None:
    async def action(repository, queue, conf):
        executor = WorkflowExecutor(repository, queue, config=conf)
        return await getattr(executor, f"{operation}_execution")(execution_id, tenant)

    execution = _run(config, action)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@execution_app.command("pause")
def execution_pause(
    execution_id: str,
    tenant: str = typer.Option(..., help="Tenant owning the execution"),
    config: Optional[Path] = typer.Option(None, help="Path to a stepwise.yaml file"),
) -> None:
    """Pause an execution; steps already running are not interrupted."""
    _control(execution_id, tenant, config, "pause")


@execution_app.command("resume")
def execution_resume(
    execution_id: str,
    tenant: str = typer.Option(..., help="Tenant owning the execution"),
    config: Optional[Path] = typer.Option(None, help="Path to a stepwise.yaml file"),
) -> None:
    """Resume a paused execution and re-enqueue its ready steps."""
    _control(execution_id, tenant, config, "resume")


@execution_app.command("cancel")
def execution_cancel(
    execution_id: str,
    tenant: str = typer.Option(..., help="Tenant owning the execution"),
    config: Optional[Path] = typer.Option(None, help="Path to a stepwise.yaml file"),
) -> None:
    """Cancel an execution and drop its pending jobs."""
    _control(execution_id, tenant, config, "cancel")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
