"""Domain models for shards and their dependency graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ShardType(str, Enum):
    """Kind of work a shard carries, used to pick an agent persona."""

    BACKEND = "backend"
    FRONTEND = "frontend"
    FULLSTACK = "fullstack"
    DOCS = "docs"


class ShardStatus(str, Enum):
    """Board column owned by external sprint state; never mutated by the core."""

    READY_TO_BUILD = "Ready to Build"
    IN_PROGRESS = "In Progress"
    READY_FOR_REVIEW = "Ready for Review"
    IN_REVIEW = "In Review"
    READY_FOR_UAT = "Ready for UAT"
    UAT_IN_PROGRESS = "UAT in Progress"
    USER_ACCEPTANCE = "User Acceptance"
    DONE = "Done"


@dataclass(slots=True)
class Shard:
    """Atomic unit of work with declared artifact relationships."""

    id: str
    creates: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    modifies: tuple[str, ...] = ()
    status: ShardStatus = ShardStatus.READY_TO_BUILD
    title: str = ""
    file: str = ""
    type: ShardType = ShardType.FULLSTACK
    context: str = ""
    task: str = ""
    new_in_shard: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    required_reading: tuple[str, ...] = ()
    issue_number: int | None = None
    model: str | None = None


@dataclass(slots=True)
class DependencyNode:
    """One shard in the graph with its derived blocking relations."""

    shard_id: str
    creates: set[str] = field(default_factory=set)
    depends_on: set[str] = field(default_factory=set)
    modifies: set[str] = field(default_factory=set)
    blocked_by: set[str] = field(default_factory=set)
    can_run_parallel_with: set[str] = field(default_factory=set)


@dataclass(slots=True)
class DependencyGraph:
    """Blocking edges plus a total execution order and depth-based waves."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)
    execution_order: list[str] = field(default_factory=list)
    parallel_groups: list[list[str]] = field(default_factory=list)

    def depth_of(self, shard_id: str) -> int | None:
        """Return the index of the parallel group holding ``shard_id``."""

        for depth, group in enumerate(self.parallel_groups):
            if shard_id in group:
                return depth
        return None
