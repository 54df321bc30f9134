"""Dependency graph validation and ready-set computation."""

from __future__ import annotations

from typing import Collection, List, Mapping

import networkx as nx

from .contracts import Step, StepExecution, StepOutcome, StepStatus, Workflow
from .exceptions import WorkflowValidationError


def validate_workflow(workflow: Workflow) -> List[str]:
    """Validate ``workflow`` and return its step ids in topological order.

    Rejects empty workflows, duplicate step ids, self-dependencies,
    references to unknown steps and cycles. With those excluded every step
    is reachable from a root, so no execution can stall on an island.
    """
    if not workflow.steps:
        raise WorkflowValidationError(f"Workflow {workflow.id} has no steps")

    seen: set[str] = set()
    for step in workflow.steps:
        if step.id in seen:
            raise WorkflowValidationError(f"Duplicate step id: {step.id}")
        seen.add(step.id)

    for step in workflow.steps:
        if step.id in step.depends_on:
            raise WorkflowValidationError(f"Step {step.id} depends on itself")
        unknown = [dep for dep in step.depends_on if dep not in seen]
        if unknown:
            raise WorkflowValidationError(
                f"Step {step.id} depends on unknown step(s): {', '.join(unknown)}"
            )

    dag = to_dag(workflow)
    if not nx.is_directed_acyclic_graph(dag):
        cycle = sorted({edge[0] for edge in nx.find_cycle(dag)})
        raise WorkflowValidationError(
            f"Workflow {workflow.id} contains a dependency cycle involving: {', '.join(cycle)}"
        )
    return list(nx.topological_sort(dag))


def to_dag(workflow: Workflow) -> nx.DiGraph:
    """Dependency graph with an edge from each dependency to its dependent."""
    dag = nx.DiGraph()
    for step in workflow.steps:
        dag.add_node(step.id)
    for step in workflow.steps:
        for dep in step.depends_on:
            dag.add_edge(dep, step.id)
    return dag


def root_steps(workflow: Workflow) -> List[Step]:
    """Steps with no dependencies."""
    return [step for step in workflow.steps if not step.depends_on]


def dependencies_satisfied(step: Step, completed: Collection[str]) -> bool:
    return all(dep in completed for dep in step.depends_on)


def completed_step_ids(step_results: Mapping[str, StepOutcome]) -> set[str]:
    """Steps whose outcome has been merged into the execution as completed.

    Readiness is read from the merged results, not from step records: a
    record flips to completed before its variables reach the execution.
    """
    return {
        step_id
        for step_id, outcome in step_results.items()
        if outcome.status == StepStatus.COMPLETED
    }


def newly_ready_steps(
    workflow: Workflow, completed: Collection[str], dispatched: Collection[str]
) -> List[Step]:
    """Dependent steps whose dependencies are all completed and that have
    not been dispatched yet."""
    return [
        step
        for step in workflow.steps
        if step.depends_on
        and step.id not in dispatched
        and dependencies_satisfied(step, completed)
    ]


def resumable_steps(
    workflow: Workflow,
    records: Mapping[str, StepExecution],
    completed: Collection[str],
) -> List[Step]:
    """Steps to re-enqueue on resume: never started or waiting, with all
    dependencies completed."""
    ready: List[Step] = []
    for step in workflow.steps:
        record = records.get(step.id)
        if record is not None and record.status != StepStatus.PENDING:
            continue
        if dependencies_satisfied(step, completed):
            ready.append(step)
    return ready


def all_completed(workflow: Workflow, completed: Collection[str]) -> bool:
    return all(step.id in completed for step in workflow.steps)
