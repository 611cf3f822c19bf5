"""Wire format of the line-delimited JSON-RPC agent protocol."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from shard_orchestrator.agent.errors import ProtocolParseError
from shard_orchestrator.agent.events import AgentMessage, ToolUse

PROTOCOL_VERSION = "2.0"
API_VERSION = "1.0.0"
STREAM_FORMAT = "stream-jsonrpc"

METHOD_INITIALIZE_SESSION = "droid.initialize_session"
METHOD_ADD_USER_MESSAGE = "droid.add_user_message"
METHOD_UPDATE_SESSION_SETTINGS = "droid.update_session_settings"
METHOD_REQUEST_PERMISSION = "droid.request_permission"

NOTIFICATION_WORKING_STATE = "droid_working_state_changed"
NOTIFICATION_CREATE_MESSAGE = "create_message"
NOTIFICATION_TOOL_RESULT = "tool_result"
NOTIFICATION_ERROR = "error"

STATE_IDLE = "idle"
STATE_STREAMING = "streaming_assistant_message"


class FrameType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"


class PermissionDecision(str, Enum):
    """Answer to a permission request from the agent."""

    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    CANCEL = "cancel"


@dataclass(slots=True, frozen=True)
class PermissionRequest:
    """Tool invocation the agent asks to be allowed to run."""

    request_id: str
    tool_use_id: str
    tool_name: str
    command: str
    tool_input: dict[str, Any]


def build_request(request_id: str, method: str, params: dict[str, Any]) -> dict[str, Any]:
    return {
        "jsonrpc": PROTOCOL_VERSION,
        "factoryApiVersion": API_VERSION,
        "type": FrameType.REQUEST.value,
        "method": method,
        "params": params,
        "id": request_id,
    }


def build_response(request_id: str, result: dict[str, Any]) -> dict[str, Any]:
    return {
        "jsonrpc": PROTOCOL_VERSION,
        "factoryApiVersion": API_VERSION,
        "type": FrameType.RESPONSE.value,
        "id": request_id,
        "result": result,
    }


def build_notification(notification: dict[str, Any]) -> dict[str, Any]:
    return {
        "jsonrpc": PROTOCOL_VERSION,
        "factoryApiVersion": API_VERSION,
        "type": FrameType.NOTIFICATION.value,
        "params": {"notification": notification},
    }


def encode_frame(frame: dict[str, Any]) -> bytes:
    """Serialize one frame as a newline-terminated UTF-8 line."""

    return (json.dumps(frame, ensure_ascii=False) + "\n").encode("utf-8")


def decode_frame(line: str) -> dict[str, Any]:
    """Parse one protocol line; raise ``ProtocolParseError`` for non-object JSON."""

    try:
        frame = json.loads(line)
    except json.JSONDecodeError as error:
        raise ProtocolParseError(f"Invalid JSON frame: {error}", line=line) from error
    if not isinstance(frame, dict):
        raise ProtocolParseError("Frame is not a JSON object", line=line)
    return frame


def error_message(frame: dict[str, Any]) -> str | None:
    """Return ``error.message`` of a response frame, if any."""

    error = frame.get("error")
    if error is None:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or "Unknown error")
    return str(error)


def parse_message(message: dict[str, Any]) -> AgentMessage:
    """Extract role, first text block and first tool-use block from a message."""

    content = message.get("content")
    blocks = content if isinstance(content, list) else []
    text_block = _first_block(blocks, "text")
    tool_block = _first_block(blocks, "tool_use")
    tool_use = None
    if tool_block is not None:
        tool_input = tool_block.get("input")
        tool_use = ToolUse(
            id=str(tool_block.get("id", "")),
            name=str(tool_block.get("name", "")),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    text = text_block.get("text") if text_block is not None else None
    return AgentMessage(
        role=str(message.get("role", "")),
        text=text if isinstance(text, str) else None,
        tool_use=tool_use,
    )


def parse_permission_request(request_id: str, params: dict[str, Any]) -> PermissionRequest | None:
    """Return the first tool use of a permission request, or ``None`` if absent."""

    tool_uses = params.get("toolUses")
    if not isinstance(tool_uses, list) or not tool_uses:
        return None
    first = tool_uses[0]
    tool_use = first.get("toolUse") if isinstance(first, dict) else None
    if not isinstance(tool_use, dict):
        return None
    tool_input = tool_use.get("input")
    if not isinstance(tool_input, dict):
        tool_input = {}
    command = tool_input.get("command")
    if not isinstance(command, str):
        command = json.dumps(tool_input, ensure_ascii=False)
    return PermissionRequest(
        request_id=request_id,
        tool_use_id=str(tool_use.get("id", "")),
        tool_name=str(tool_use.get("name", "")),
        command=command,
        tool_input=tool_input,
    )


def _first_block(blocks: list[Any], block_type: str) -> dict[str, Any] | None:
    for block in blocks:
        if isinstance(block, dict) and block.get("type") == block_type:
            return block
    return None
