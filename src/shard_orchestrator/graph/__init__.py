"""Shard dependency graph: models, builder and shard file provider."""

from shard_orchestrator.graph.builder import (
    build_graph,
    can_run_in_parallel,
    find_cycles,
    ready_to_run,
    render_graph,
)
from shard_orchestrator.graph.models import (
    DependencyGraph,
    DependencyNode,
    Shard,
    ShardStatus,
    ShardType,
)
from shard_orchestrator.graph.shard_files import parse_shard, read_shard, scan_sprint

__all__ = [
    "DependencyGraph",
    "DependencyNode",
    "Shard",
    "ShardStatus",
    "ShardType",
    "build_graph",
    "can_run_in_parallel",
    "find_cycles",
    "parse_shard",
    "read_shard",
    "ready_to_run",
    "render_graph",
    "scan_sprint",
]
