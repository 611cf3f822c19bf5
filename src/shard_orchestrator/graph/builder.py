"""Dependency graph construction and readiness queries over shards.

The builder never raises: missing artifact lists are treated as empty and
blocking cycles degrade to an approximate depth and a lossy (but total)
execution order. Callers that need to surface cycles use ``find_cycles``.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable

from shard_orchestrator.graph.models import DependencyGraph, DependencyNode, Shard


def build_graph(shards: Iterable[Shard]) -> DependencyGraph:
    """Build blocking edges, execution order and parallel groups for ``shards``."""

    nodes: dict[str, DependencyNode] = {}
    for shard in shards:
        nodes[shard.id] = DependencyNode(
            shard_id=shard.id,
            creates=set(shard.creates or ()),
            depends_on=set(shard.depends_on or ()),
            modifies=set(shard.modifies or ()),
        )

    for shard_id, node in nodes.items():
        for other_id, other in nodes.items():
            if shard_id == other_id:
                continue
            if node.depends_on & other.creates:
                node.blocked_by.add(other_id)
            # Shared modification: the shard with more dependencies goes second.
            if node.modifies & other.modifies and len(node.depends_on) >= len(
                other.depends_on,
            ):
                node.blocked_by.add(other_id)

    parallel_groups = _compute_parallel_groups(nodes)
    execution_order = _topological_order(nodes)

    for group in parallel_groups:
        for shard_id in group:
            nodes[shard_id].can_run_parallel_with.update(
                other_id for other_id in group if other_id != shard_id
            )

    return DependencyGraph(
        nodes=nodes,
        execution_order=execution_order,
        parallel_groups=parallel_groups,
    )


def ready_to_run(
    graph: DependencyGraph,
    completed: Collection[str],
    in_progress: Collection[str],
) -> list[str]:
    """Return shards not yet started whose every blocker is completed."""

    ready: list[str] = []
    for shard_id, node in graph.nodes.items():
        if shard_id in completed or shard_id in in_progress:
            continue
        if all(blocker in completed for blocker in node.blocked_by):
            ready.append(shard_id)
    return ready


def can_run_in_parallel(shard_a: str, shard_b: str, graph: DependencyGraph) -> bool:
    """Check that neither shard blocks the other and they share no modified artifact."""

    node_a = graph.nodes.get(shard_a)
    node_b = graph.nodes.get(shard_b)
    if node_a is None or node_b is None:
        return False
    if shard_b in node_a.blocked_by or shard_a in node_b.blocked_by:
        return False
    return not node_a.modifies & node_b.modifies


def find_cycles(graph: DependencyGraph) -> list[list[str]]:
    """Return groups of shard ids that block each other in a cycle."""

    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    cycles: list[list[str]] = []

    def strongconnect(shard_id: str) -> None:
        index_of[shard_id] = lowlink[shard_id] = len(index_of)
        stack.append(shard_id)
        on_stack.add(shard_id)
        for blocker in sorted(graph.nodes[shard_id].blocked_by):
            if blocker not in graph.nodes:
                continue
            if blocker not in index_of:
                strongconnect(blocker)
                lowlink[shard_id] = min(lowlink[shard_id], lowlink[blocker])
            elif blocker in on_stack:
                lowlink[shard_id] = min(lowlink[shard_id], index_of[blocker])
        if lowlink[shard_id] != index_of[shard_id]:
            return
        component: list[str] = []
        while True:
            member = stack.pop()
            on_stack.discard(member)
            component.append(member)
            if member == shard_id:
                break
        if len(component) > 1:
            order = {node_id: position for position, node_id in enumerate(graph.nodes)}
            cycles.append(sorted(component, key=order.__getitem__))

    for shard_id in graph.nodes:
        if shard_id not in index_of:
            strongconnect(shard_id)
    return cycles


def render_graph(graph: DependencyGraph) -> str:
    """Render parallel groups and execution order as plain text."""

    lines = ["Dependency Graph:", ""]
    for position, group in enumerate(graph.parallel_groups):
        if position:
            lines.append("       ↓")
        lines.append(f"  [{' | '.join(group)}]")
    lines.append("")
    lines.append("Execution Order:")
    lines.append(f"  {' → '.join(graph.execution_order)}")
    return "\n".join(lines)


def _compute_parallel_groups(nodes: dict[str, DependencyNode]) -> list[list[str]]:
    exact_depths: dict[str, int] = {}
    depths = {
        shard_id: _compute_depth(shard_id, nodes, set(), exact_depths)[0] for shard_id in nodes
    }
    buckets: dict[int, list[str]] = {}
    for shard_id, depth in depths.items():
        buckets.setdefault(depth, []).append(shard_id)
    return [buckets[depth] for depth in sorted(buckets)]


def _compute_depth(
    shard_id: str,
    nodes: dict[str, DependencyNode],
    path: set[str],
    exact_depths: dict[str, int],
) -> tuple[int, bool]:
    """Return ``(depth, exact)``; a blocker already on ``path`` contributes 0.

    Depths reached without cutting a cycle do not depend on the path and are
    memoized in ``exact_depths``.
    """

    if shard_id in path:
        return 0, False
    if shard_id in exact_depths:
        return exact_depths[shard_id], True
    node = nodes.get(shard_id)
    if node is None or not node.blocked_by:
        return 0, True

    path.add(shard_id)
    max_blocker_depth = 0
    exact = True
    for blocker in node.blocked_by:
        blocker_depth, blocker_exact = _compute_depth(blocker, nodes, path, exact_depths)
        max_blocker_depth = max(max_blocker_depth, blocker_depth)
        exact = exact and blocker_exact
    path.discard(shard_id)

    depth = max_blocker_depth + 1
    if exact:
        exact_depths[shard_id] = depth
    return depth, exact


def _topological_order(nodes: dict[str, DependencyNode]) -> list[str]:
    order: list[str] = []
    visited: set[str] = set()
    active: set[str] = set()

    def visit(shard_id: str) -> None:
        if shard_id in visited or shard_id in active:
            return
        active.add(shard_id)
        node = nodes.get(shard_id)
        if node is not None:
            for blocker in sorted(node.blocked_by):
                visit(blocker)
        active.discard(shard_id)
        visited.add(shard_id)
        order.append(shard_id)

    for shard_id in nodes:
        visit(shard_id)
    return order
