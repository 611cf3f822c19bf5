"""Shard orchestration: session registry, scheduling policy and CLI controllers."""

from shard_orchestrator.orchestration.models import (
    FailureClass,
    OrchestrationSummary,
    RunningSession,
    SessionStatus,
)
from shard_orchestrator.orchestration.policy import (
    ShardOrchestrator,
    ShardPromptBuilder,
    run_shard_session,
)
from shard_orchestrator.orchestration.registry import SessionRegistry

__all__ = [
    "FailureClass",
    "OrchestrationSummary",
    "RunningSession",
    "SessionRegistry",
    "SessionStatus",
    "ShardOrchestrator",
    "ShardPromptBuilder",
    "run_shard_session",
]
