"""Local deterministic agent for session integration tests and demos.

Speaks the same ``exec`` command line as the real agent in three modes:
``stream-jsonrpc`` (session adapter), ``stream-json`` (streaming session) and
plain ``text`` (one-shot). Behaviour of a turn is selected with the
``SHARD_ORCHESTRATOR_ECHO_SCENARIO`` environment variable.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from collections import deque
from typing import Any

from shard_orchestrator.agent.catalog import BUILTIN_MODELS
from shard_orchestrator.agent.protocol import (
    METHOD_ADD_USER_MESSAGE,
    METHOD_INITIALIZE_SESSION,
    METHOD_REQUEST_PERMISSION,
    METHOD_UPDATE_SESSION_SETTINGS,
    NOTIFICATION_CREATE_MESSAGE,
    NOTIFICATION_ERROR,
    NOTIFICATION_TOOL_RESULT,
    NOTIFICATION_WORKING_STATE,
    STATE_IDLE,
    STATE_STREAMING,
    FrameType,
    build_notification,
    build_request,
    build_response,
)

SCENARIO_ENV = "SHARD_ORCHESTRATOR_ECHO_SCENARIO"
INITIAL_MODEL_ENV = "SHARD_ORCHESTRATOR_ECHO_INITIAL_MODEL"
ECHO_SESSION_ID = "echo-session"
_PERMISSION_REQUEST_ID = "perm-1"


def main(argv: list[str] | None = None) -> int:
    """Run the echo agent; returns the process exit code."""

    parser = argparse.ArgumentParser(prog="echo-agent")
    parser.add_argument("mode", choices=["exec"])
    parser.add_argument("--input-format", default="text")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--cwd")
    parser.add_argument("--auto", default="medium")
    parser.add_argument("--model", default="")
    parser.add_argument("--session-id")
    args = parser.parse_args(argv)

    scenario = os.getenv(SCENARIO_ENV, "ok")
    _write_stderr(f"echo agent ready (format={args.output_format}, scenario={scenario})")

    if args.output_format == "stream-jsonrpc":
        return _JsonRpcEcho(scenario=scenario).serve()
    if args.output_format == "stream-json":
        return _serve_stream_json(session_id=args.session_id or ECHO_SESSION_ID)
    return _serve_text(model=args.model, scenario=scenario)


class _JsonRpcEcho:
    def __init__(self, *, scenario: str) -> None:
        self.scenario = scenario
        self.model_id = os.getenv(INITIAL_MODEL_ENV, "claude-opus-4-20250514")
        self.backlog: deque[dict[str, Any]] = deque()

    def serve(self) -> int:
        while True:
            frame = self._next_frame()
            if frame is None:
                return 0
            if frame.get("type") != FrameType.REQUEST.value:
                continue
            exit_code = self._handle_request(frame)
            if exit_code is not None:
                return exit_code

    def _handle_request(self, frame: dict[str, Any]) -> int | None:
        request_id = str(frame.get("id"))
        method = frame.get("method")
        params = frame.get("params") or {}

        if method == METHOD_INITIALIZE_SESSION:
            _write_frame(
                build_response(
                    request_id,
                    {
                        "sessionId": ECHO_SESSION_ID,
                        "settings": {"modelId": self.model_id},
                        "availableModels": [
                            {"id": model.id, "displayName": model.display_name}
                            for model in BUILTIN_MODELS
                        ],
                    },
                ),
            )
        elif method == METHOD_UPDATE_SESSION_SETTINGS:
            settings = params.get("settings") or {}
            self.model_id = settings.get("modelId", self.model_id)
            if self.scenario == "settings_error":
                _write_frame(_error_response(request_id, "settings rejected"))
            else:
                _write_frame(build_response(request_id, {}))
        elif method == METHOD_ADD_USER_MESSAGE:
            return self._run_turn(request_id, str(params.get("text", "")))
        else:
            _write_frame(_error_response(request_id, f"unknown method {method}"))
        return None

    def _run_turn(self, request_id: str, text: str) -> int | None:  # noqa: PLR0911
        if self.scenario == "exit":
            return 3
        if self.scenario == "error":
            _write_frame(_error_response(request_id, "prompt rejected"))
            return None
        if self.scenario == "no_response":
            return None

        _write_frame(build_response(request_id, {}))
        if self.scenario == "silent":
            return None

        _write_notification({"type": NOTIFICATION_WORKING_STATE, "newState": STATE_STREAMING})
        if self.scenario == "turn_error":
            _write_notification({"type": NOTIFICATION_ERROR, "message": "model overloaded"})
            return None

        if self.scenario == "permission":
            decision = self._ask_permission()
            _write_notification(
                {
                    "type": NOTIFICATION_TOOL_RESULT,
                    "toolUseId": "tool-1",
                    "content": f"decision: {decision}",
                },
            )

        if self.scenario == "idle_first":
            _write_notification({"type": NOTIFICATION_WORKING_STATE, "newState": STATE_IDLE})
            _write_notification(_assistant_message(f"Echo: {text}"))
            return None

        _write_notification(_assistant_message(f"Echo: {text}"))
        _write_notification({"type": NOTIFICATION_WORKING_STATE, "newState": STATE_IDLE})
        return None

    def _ask_permission(self) -> str:
        _write_frame(
            build_request(
                _PERMISSION_REQUEST_ID,
                METHOD_REQUEST_PERMISSION,
                {
                    "toolUses": [
                        {
                            "toolUse": {
                                "id": "tool-1",
                                "name": "Execute",
                                "input": {"command": "echo hello"},
                            },
                        },
                    ],
                },
            ),
        )
        while True:
            line = sys.stdin.readline()
            if not line:
                return "closed"
            frame = _parse(line)
            if frame is None:
                continue
            if (
                frame.get("type") == FrameType.RESPONSE.value
                and str(frame.get("id")) == _PERMISSION_REQUEST_ID
            ):
                result = frame.get("result") or {}
                return str(result.get("selectedOption", "missing"))
            self.backlog.append(frame)

    def _next_frame(self) -> dict[str, Any] | None:
        if self.backlog:
            return self.backlog.popleft()
        while True:
            line = sys.stdin.readline()
            if not line:
                return None
            frame = _parse(line)
            if frame is not None:
                return frame


def _serve_stream_json(*, session_id: str) -> int:
    _write_frame({"type": "system", "session_id": session_id})
    for line in sys.stdin:
        frame = _parse(line)
        if frame is None:
            continue
        text = f"Echo: {frame.get('content', '')}"
        _write_frame({"type": "message_start", "message": {"role": "assistant"}})
        _write_frame({"type": "content_block_start", "content_block": {"type": "text"}})
        _write_frame(
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}},
        )
        _write_frame({"type": "content_block_stop"})
        _write_frame({"type": "message_delta", "usage": {"output_tokens": len(text.split())}})
        _write_frame({"type": "message_stop"})
    return 0


def _serve_text(*, model: str, scenario: str) -> int:
    prompt = sys.stdin.read()
    if scenario == "hang":
        time.sleep(60)
        return 0
    if scenario == "fail":
        _write_stderr("rate limit exceeded, please retry")
        return 2
    sys.stdout.write(f"model: {model}\n")
    sys.stdout.write(f"Echo: {prompt.strip()}\n")
    sys.stdout.flush()
    return 0


def _assistant_message(text: str) -> dict[str, Any]:
    return {
        "type": NOTIFICATION_CREATE_MESSAGE,
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }


def _error_response(request_id: str, message: str) -> dict[str, Any]:
    frame = build_response(request_id, {})
    del frame["result"]
    frame["error"] = {"message": message}
    return frame


def _write_notification(notification: dict[str, Any]) -> None:
    _write_frame(build_notification(notification))


def _write_frame(frame: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(frame) + "\n")
    sys.stdout.flush()


def _write_stderr(text: str) -> None:
    sys.stderr.write(text + "\n")
    sys.stderr.flush()


def _parse(line: str) -> dict[str, Any] | None:
    try:
        frame = json.loads(line)
    except json.JSONDecodeError:
        return None
    return frame if isinstance(frame, dict) else None


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
