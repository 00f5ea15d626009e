# -----------------------------------------------------------------------------
# THE RESOLVER - STACK GRAPH
# -----------------------------------------------------------------------------
# Responsibility: Turn a set of StackDefinitions into a DeploymentPlan.
#
# Edges come from `depends_on` and from every OutputRef parameter, so a
# stack that consumes another stack's output is always planned after it.
# Ordering is Kahn's algorithm with declaration order breaking ties, which
# makes the plan identical across runs over unchanged input.
# -----------------------------------------------------------------------------

import heapq
from collections import defaultdict
from typing import Iterable

from rich.console import Console

from convoy.domain.models import DeploymentPlan, StackDefinition
from convoy.errors import CycleError, GraphError, UnknownDependencyError

console = Console()


def _find_cycle(remaining: set[str], dependencies: dict[str, list[str]]) -> list[str]:
    """
    Walk dependency edges among unplaced stacks until a stack repeats.

    Every unplaced stack has at least one unplaced dependency, so the walk
    always closes a loop.
    """
    start = min(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = next(dep for dep in dependencies[node] if dep in remaining)
    return path[seen[node]:] + [node]


def resolve(definitions: Iterable[StackDefinition]) -> DeploymentPlan:
    """
    Compute the deployment order for a set of stacks.

    Args:
        definitions: Stack definitions in declaration order.

    Returns:
        DeploymentPlan where every dependency precedes its dependents.

    Raises:
        GraphError: Duplicate stack names.
        UnknownDependencyError: A dependency has no matching definition.
        CycleError: The graph is not a DAG.
    """
    stacks = list(definitions)
    order_index: dict[str, int] = {}
    for index, stack in enumerate(stacks):
        if stack.name in order_index:
            raise GraphError(f"Duplicate stack name '{stack.name}'", stack=stack.name)
        order_index[stack.name] = index

    dependencies = {stack.name: stack.dependencies() for stack in stacks}
    dependents: dict[str, list[str]] = defaultdict(list)

    for stack in stacks:
        for dependency in dependencies[stack.name]:
            if dependency not in order_index:
                raise UnknownDependencyError(stack.name, dependency)
            if dependency == stack.name:
                raise CycleError([stack.name, stack.name])
            dependents[dependency].append(stack.name)

    indegree = {name: len(deps) for name, deps in dependencies.items()}
    ready = [order_index[name] for name in order_index if indegree[name] == 0]
    heapq.heapify(ready)

    ordered: list[StackDefinition] = []
    while ready:
        stack = stacks[heapq.heappop(ready)]
        ordered.append(stack)
        for child in dependents[stack.name]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, order_index[child])

    if len(ordered) < len(stacks):
        placed = {stack.name for stack in ordered}
        remaining = {name for name in order_index if name not in placed}
        cycle = _find_cycle(remaining, dependencies)
        console.print(f"[red][RESOLVER] Cycle: {' -> '.join(cycle)}[/red]")
        raise CycleError(cycle)

    plan = DeploymentPlan(stacks=tuple(ordered))
    console.print(f"[green][RESOLVER] Plan: {' -> '.join(plan.names)}[/green]")
    return plan
