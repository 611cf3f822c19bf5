"""Domain models for shard session tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SessionStatus(str, Enum):
    """Lifecycle of a launched shard session; terminal states never change."""

    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes attached to failed shard sessions."""

    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    CONFIGURATION = "configuration"
    AGENT_REPORTED = "agent_reported"


@dataclass(slots=True)
class RunningSession:
    """Registry entry for one shard's agent session."""

    shard_id: str
    started_at: datetime
    status: SessionStatus = SessionStatus.RUNNING
    output: list[str] = field(default_factory=list)
    completed_at: datetime | None = None
    exit_code: int | None = None
    agent: str | None = None
    session_id: str | None = None
    failure_class: FailureClass | None = None
    failure_details: dict[str, object] | None = None

    @property
    def text(self) -> str:
        return "".join(self.output)

    def is_running(self) -> bool:
        return self.status is SessionStatus.RUNNING


@dataclass(slots=True)
class OrchestrationSummary:
    """Outcome of one orchestration run."""

    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.blocked
