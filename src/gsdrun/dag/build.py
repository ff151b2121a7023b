"""Build graph structures from a workflow."""

from __future__ import annotations

from collections import defaultdict

from gsdrun.config.schema import WorkflowSpec


def build_adjacency(workflow: WorkflowSpec) -> tuple[dict[str, list[str]], dict[str, int]]:
    """Return dependents adjacency and in-degree by step id."""
    dependents: dict[str, list[str]] = defaultdict(list)
    in_degree: dict[str, int] = {}

    for step in workflow.steps:
        in_degree[step.id] = len(step.depends_on)
        dependents.setdefault(step.id, [])
        for dep in step.depends_on:
            dependents[dep].append(step.id)

    return dict(dependents), in_degree
