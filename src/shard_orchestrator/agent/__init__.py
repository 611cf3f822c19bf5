"""Agent session runtimes: protocol adapter, streaming session and one-shot runs."""

from shard_orchestrator.agent.adapter import (
    AgentLaunchOptions,
    PermissionHandler,
    SessionAdapter,
    SessionInfo,
    SessionState,
    approve_once,
)
from shard_orchestrator.agent.catalog import (
    BUILTIN_MODELS,
    ModelInfo,
    all_models,
    find_model,
    match_available_model,
)
from shard_orchestrator.agent.errors import AgentSessionError
from shard_orchestrator.agent.oneshot import OneShotInvocation, OneShotResult, run_agent_once
from shard_orchestrator.agent.protocol import PermissionDecision, PermissionRequest
from shard_orchestrator.agent.streaming import (
    StreamDecoder,
    StreamingSession,
    StreamingSessionOptions,
)

__all__ = [
    "BUILTIN_MODELS",
    "AgentLaunchOptions",
    "AgentSessionError",
    "ModelInfo",
    "OneShotInvocation",
    "OneShotResult",
    "PermissionDecision",
    "PermissionHandler",
    "PermissionRequest",
    "SessionAdapter",
    "SessionInfo",
    "SessionState",
    "StreamDecoder",
    "StreamingSession",
    "StreamingSessionOptions",
    "all_models",
    "approve_once",
    "find_model",
    "match_available_model",
    "run_agent_once",
]
