"""Typed events emitted by agent sessions.

``AdapterEvent`` covers the request/response protocol adapter and
``StreamEvent`` covers the streaming runtime. Subscribers dispatch on the
concrete dataclass type.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(slots=True, frozen=True)
class ToolUse:
    """A single tool invocation extracted from message content."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class AgentMessage:
    """Message created by the agent conversation."""

    role: str
    text: str | None = None
    tool_use: ToolUse | None = None


# Adapter events


@dataclass(slots=True, frozen=True)
class StateChanged:
    state: str


@dataclass(slots=True, frozen=True)
class MessageReceived:
    message: AgentMessage


@dataclass(slots=True, frozen=True)
class ToolResultReceived:
    tool_use_id: str
    content: str


@dataclass(slots=True, frozen=True)
class AgentError:
    message: str


@dataclass(slots=True, frozen=True)
class TurnCompleted:
    pass


@dataclass(slots=True, frozen=True)
class PermissionRequested:
    request_id: str
    tool_use_id: str
    tool_name: str
    command: str


@dataclass(slots=True, frozen=True)
class PermissionResolved:
    request_id: str
    decision: str
    error: str | None = None


@dataclass(slots=True, frozen=True)
class RawFrame:
    frame: dict[str, Any]


@dataclass(slots=True, frozen=True)
class StderrLine:
    line: str


@dataclass(slots=True, frozen=True)
class ParseErrorEvent:
    line: str
    error: str


@dataclass(slots=True, frozen=True)
class ProcessExited:
    exit_code: int | None


AdapterEvent = Union[
    StateChanged,
    MessageReceived,
    ToolResultReceived,
    AgentError,
    TurnCompleted,
    PermissionRequested,
    PermissionResolved,
    RawFrame,
    StderrLine,
    ParseErrorEvent,
    ProcessExited,
]
AdapterListener = Callable[[AdapterEvent], None]


# Streaming runtime events


@dataclass(slots=True, frozen=True)
class MessageStarted:
    payload: dict[str, Any]


@dataclass(slots=True, frozen=True)
class MessageStopped:
    pass


@dataclass(slots=True, frozen=True)
class BlockStopped:
    pass


@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ThinkingStarted:
    pass


@dataclass(slots=True, frozen=True)
class ThinkingDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ToolStarted:
    tool_name: str
    tool_id: str


@dataclass(slots=True, frozen=True)
class ToolInputDelta:
    partial_json: str


@dataclass(slots=True, frozen=True)
class ToolUsed:
    tool_name: str
    tool_id: str
    input: Any = None


@dataclass(slots=True, frozen=True)
class ToolResult:
    result: Any


@dataclass(slots=True, frozen=True)
class UsageReported:
    usage: dict[str, Any]


@dataclass(slots=True, frozen=True)
class SessionAnnounced:
    session_id: str


@dataclass(slots=True, frozen=True)
class StreamError:
    message: str


@dataclass(slots=True, frozen=True)
class RawStreamFrame:
    frame: dict[str, Any]


@dataclass(slots=True, frozen=True)
class StreamStderr:
    text: str


@dataclass(slots=True, frozen=True)
class StreamClosed:
    exit_code: int | None


StreamEvent = Union[
    MessageStarted,
    MessageStopped,
    BlockStopped,
    TextDelta,
    ThinkingStarted,
    ThinkingDelta,
    ToolStarted,
    ToolInputDelta,
    ToolUsed,
    ToolResult,
    UsageReported,
    SessionAnnounced,
    StreamError,
    RawStreamFrame,
    StreamStderr,
    StreamClosed,
]
StreamListener = Callable[[StreamEvent], None]
