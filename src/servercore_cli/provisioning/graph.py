"""Dependency ordering shared by step plans and service topologies."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from ..errors import CyclicDependencyError, StepDefinitionError


def topological_order(nodes: Iterable[str], edges: Mapping[str, Iterable[str]]) -> list[str]:
    """Order nodes so that every node comes after its dependencies.

    Kahn's algorithm; among nodes that are ready at the same time the one
    listed first in ``nodes`` wins, so the result is deterministic.

    Args:
        nodes: Node ids in declaration order.
        edges: Node id -> ids it depends on. Dependencies must be in nodes.

    Returns:
        Ordered list of node ids.

    Raises:
        StepDefinitionError: A dependency is not one of the nodes.
        CyclicDependencyError: The graph has a cycle.

    >>> topological_order(["c", "b", "a"], {"c": ["a"], "b": ["c"]})
    ['a', 'c', 'b']
    """
    order = list(nodes)
    position = {node: i for i, node in enumerate(order)}
    remaining = {node: set(edges.get(node, ())) for node in order}

    for node, deps in remaining.items():
        unknown = sorted(dep for dep in deps if dep not in position)
        if unknown:
            raise StepDefinitionError(
                message=f"{node!r} depends on unknown {', '.join(repr(u) for u in unknown)}",
                step_id=node,
            )

    dependents: dict[str, list[str]] = {node: [] for node in order}
    for node, deps in remaining.items():
        for dep in deps:
            dependents[dep].append(node)

    ready = sorted((n for n, deps in remaining.items() if not deps), key=position.__getitem__)
    result: list[str] = []
    while ready:
        node = ready.pop(0)
        result.append(node)
        for dependent in dependents[node]:
            remaining[dependent].discard(node)
            if not remaining[dependent]:
                ready.append(dependent)
        ready.sort(key=position.__getitem__)

    if len(result) != len(order):
        cycle = find_cycle({n: deps for n, deps in remaining.items() if deps})
        raise CyclicDependencyError(
            message=f"Dependency cycle: {' -> '.join(cycle)}",
            cycle=tuple(cycle),
        )
    return result


def find_cycle(edges: Mapping[str, Iterable[str]]) -> list[str]:
    """Return one cycle as a closed path, e.g. ['a', 'b', 'a'].

    Only called on graphs known to contain a cycle.
    """
    visiting: list[str] = []
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in visiting:
            return visiting[visiting.index(node) :] + [node]
        if node in done:
            return None
        visiting.append(node)
        for dep in sorted(edges.get(node, ())):
            found = visit(dep)
            if found:
                return found
        visiting.pop()
        done.add(node)
        return None

    for start in sorted(edges):
        found = visit(start)
        if found:
            return found
    return []
