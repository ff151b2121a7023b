"""DAG validation helpers."""

from __future__ import annotations

from collections import deque

from gsdrun.util.errors import CycleError, WorkflowError

_UNVISITED = 0
_ON_STACK = 1
_FINISHED = 2


def find_cycle(step_ids: list[str], depends_on: dict[str, list[str]]) -> list[str] | None:
    """Return one dependency cycle as a closed path, or None if acyclic.

    Depth-first traversal over dependency edges with an explicit stack so
    long chains do not hit the recursion limit. A node marked ``_ON_STACK``
    that is reached again closes a cycle.
    """
    marks = {step_id: _UNVISITED for step_id in step_ids}

    for root in step_ids:
        if marks[root] != _UNVISITED:
            continue
        path: list[str] = [root]
        marks[root] = _ON_STACK
        iters = [iter(depends_on.get(root, []))]
        while iters:
            nxt = next(iters[-1], None)
            if nxt is None:
                marks[path.pop()] = _FINISHED
                iters.pop()
                continue
            mark = marks.get(nxt, _FINISHED)
            if mark == _ON_STACK:
                start = path.index(nxt)
                return [*path[start:], nxt]
            if mark == _UNVISITED:
                marks[nxt] = _ON_STACK
                path.append(nxt)
                iters.append(iter(depends_on.get(nxt, [])))
    return None


def assert_acyclic(step_ids: list[str], depends_on: dict[str, list[str]]) -> None:
    cycle = find_cycle(step_ids, depends_on)
    if cycle is not None:
        raise CycleError(cycle[0], cycle)


def topological_order(
    step_ids: list[str], dependents: dict[str, list[str]], in_degree: dict[str, int]
) -> list[str]:
    """Return a dependency-respecting order using Kahn's algorithm."""
    degrees = dict(in_degree)
    q = deque([step_id for step_id in step_ids if degrees.get(step_id, 0) == 0])
    order: list[str] = []

    while q:
        current = q.popleft()
        order.append(current)
        for nxt in dependents.get(current, []):
            degrees[nxt] = degrees[nxt] - 1
            if degrees[nxt] == 0:
                q.append(nxt)

    if len(order) != len(step_ids):
        raise WorkflowError("workflow has cyclic dependencies")
    return order
