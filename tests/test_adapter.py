from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import allure
import pytest

from shard_orchestrator.agent.adapter import (
    AgentLaunchOptions,
    SessionAdapter,
    SessionInfo,
    SessionState,
)
from shard_orchestrator.agent.errors import (
    AgentReportedError,
    ConfigurationError,
    ProcessError,
    RequestTimeoutError,
    SessionNotStartedError,
    SessionStoppedError,
)
from shard_orchestrator.agent.events import (
    AgentError,
    MessageReceived,
    ParseErrorEvent,
    PermissionRequested,
    PermissionResolved,
    ProcessExited,
    StateChanged,
    ToolResultReceived,
    TurnCompleted,
)
from shard_orchestrator.agent.protocol import (
    PermissionDecision,
    PermissionRequest,
    build_notification,
    build_request,
    build_response,
)

pytestmark = [
    allure.epic("Agent Sessions"),
    allure.feature("Session Protocol Adapter"),
]


class _FakeStdin:
    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.frames.append(json.loads(data.decode("utf-8")))

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True


class _FakeProcess:
    def __init__(self) -> None:
        self.stdin = _FakeStdin()
        self.returncode: int | None = None

    def terminate(self) -> None:
        self.returncode = -15

    def kill(self) -> None:
        self.returncode = -9

    async def wait(self) -> int | None:
        return self.returncode


def _active_adapter(**options: Any) -> tuple[SessionAdapter, _FakeStdin]:
    adapter = SessionAdapter(AgentLaunchOptions(cwd=Path("."), model="test-model", **options))
    process = _FakeProcess()
    adapter._process = process  # type: ignore[assignment]
    adapter._state = SessionState.ACTIVE
    adapter._session = SessionInfo(session_id="session-1", model_id="test-model")
    return adapter, process.stdin


def _respond(
    adapter: SessionAdapter,
    request_id: str,
    result: dict[str, Any] | None = None,
) -> None:
    adapter.handle_line(json.dumps(build_response(request_id, result or {})))


def _respond_error(adapter: SessionAdapter, request_id: str, message: str) -> None:
    frame = build_response(request_id, {})
    del frame["result"]
    frame["error"] = {"message": message}
    adapter.handle_line(json.dumps(frame))


def _notify(adapter: SessionAdapter, notification: dict[str, Any]) -> None:
    adapter.handle_line(json.dumps(build_notification(notification)))


def _working_state(adapter: SessionAdapter, state: str) -> None:
    _notify(adapter, {"type": "droid_working_state_changed", "newState": state})


def _assistant(adapter: SessionAdapter, text: str) -> None:
    _notify(
        adapter,
        {
            "type": "create_message",
            "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        },
    )


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_prompt_completes_once_after_idle_following_assistant_message() -> None:
    async def scenario() -> list[object]:
        adapter, stdin = _active_adapter()
        events: list[object] = []
        adapter.subscribe(events.append)

        prompt = asyncio.create_task(adapter.send_prompt("hello"))
        await asyncio.sleep(0)
        request = stdin.frames[-1]
        assert request["method"] == "droid.add_user_message"
        assert request["params"] == {"sessionId": "session-1", "text": "hello"}

        _respond(adapter, request["id"])
        _working_state(adapter, "streaming_assistant_message")
        _assistant(adapter, "done")
        assert not any(isinstance(event, TurnCompleted) for event in events)
        _working_state(adapter, "idle")
        await asyncio.wait_for(prompt, timeout=1)
        return events

    events = asyncio.run(scenario())

    completions = [index for index, event in enumerate(events) if isinstance(event, TurnCompleted)]
    idle = [
        index
        for index, event in enumerate(events)
        if isinstance(event, StateChanged) and event.state == "idle"
    ]
    assert len(completions) == 1
    assert completions[0] > idle[0]


def test_idle_during_stream_defers_completion_until_assistant_message() -> None:
    async def scenario() -> list[object]:
        adapter, stdin = _active_adapter()
        events: list[object] = []
        adapter.subscribe(events.append)

        prompt = asyncio.create_task(adapter.send_prompt("hello"))
        await asyncio.sleep(0)
        _respond(adapter, stdin.frames[-1]["id"])
        _working_state(adapter, "streaming_assistant_message")
        _working_state(adapter, "idle")
        await asyncio.sleep(0)
        assert not prompt.done()
        assert not any(isinstance(event, TurnCompleted) for event in events)

        _assistant(adapter, "late content")
        await asyncio.wait_for(prompt, timeout=1)
        return events

    events = asyncio.run(scenario())

    last_message = max(
        index for index, event in enumerate(events) if isinstance(event, MessageReceived)
    )
    completion = next(
        index for index, event in enumerate(events) if isinstance(event, TurnCompleted)
    )
    assert completion > last_message


def test_concurrent_requests_resolve_independently_and_unknown_ids_are_dropped() -> None:
    async def scenario() -> tuple[Any, Any, tuple[str, ...]]:
        adapter, stdin = _active_adapter()
        first = adapter.update_settings(model_id="model-a")
        second = adapter.update_settings(autonomy_level="high")
        assert [frame["id"] for frame in stdin.frames] == ["1", "2"]
        assert stdin.frames[1]["params"]["settings"] == {"autonomyLevel": "high"}

        _respond(adapter, "2", {"n": 2})
        _respond(adapter, "99", {"n": 99})
        _respond(adapter, "1", {"n": 1})
        _respond(adapter, "1", {"n": "late"})
        return await first, await second, adapter.pending_request_ids

    first, second, pending = asyncio.run(scenario())

    assert first == {"n": 1}
    assert second == {"n": 2}
    assert pending == ()


def test_unanswered_request_times_out_and_is_removed() -> None:
    async def scenario() -> tuple[str, ...]:
        adapter, _ = _active_adapter(request_timeout_seconds=0.05)
        future = adapter.update_settings(model_id="model-a")
        with pytest.raises(RequestTimeoutError, match="droid.update_session_settings"):
            await future
        return adapter.pending_request_ids

    assert asyncio.run(scenario()) == ()


def test_prompt_times_out_without_completion_signal() -> None:
    async def scenario() -> None:
        adapter, stdin = _active_adapter(prompt_timeout_seconds=0.05)
        prompt = asyncio.create_task(adapter.send_prompt("hello"))
        await asyncio.sleep(0)
        _respond(adapter, stdin.frames[-1]["id"])
        _working_state(adapter, "streaming_assistant_message")
        with pytest.raises(RequestTimeoutError, match="Prompt timeout"):
            await prompt

    asyncio.run(scenario())


def test_error_response_rejects_only_the_prompt() -> None:
    async def scenario() -> SessionState:
        adapter, stdin = _active_adapter()
        prompt = asyncio.create_task(adapter.send_prompt("hello"))
        await asyncio.sleep(0)
        _respond_error(adapter, stdin.frames[-1]["id"], "prompt rejected")
        with pytest.raises(AgentReportedError, match="prompt rejected"):
            await prompt
        return adapter.state

    assert asyncio.run(scenario()) is SessionState.ACTIVE


def test_error_notification_fails_turn_and_is_reported() -> None:
    async def scenario() -> list[object]:
        adapter, stdin = _active_adapter()
        events: list[object] = []
        adapter.subscribe(events.append)
        prompt = asyncio.create_task(adapter.send_prompt("hello"))
        await asyncio.sleep(0)
        _respond(adapter, stdin.frames[-1]["id"])
        _notify(adapter, {"type": "error", "message": "model overloaded"})
        with pytest.raises(AgentReportedError, match="model overloaded"):
            await prompt
        return events

    events = asyncio.run(scenario())

    assert AgentError(message="model overloaded") in events


def test_throwing_permission_handler_answers_cancel() -> None:
    def handler(request: PermissionRequest) -> PermissionDecision:
        raise RuntimeError("handler exploded")

    async def scenario() -> tuple[list[dict[str, Any]], list[object]]:
        adapter, stdin = _active_adapter()
        adapter.set_permission_handler(handler)
        events: list[object] = []
        adapter.subscribe(events.append)
        adapter.handle_line(
            json.dumps(
                build_request(
                    "perm-7",
                    "droid.request_permission",
                    {
                        "toolUses": [
                            {
                                "toolUse": {
                                    "id": "tool-1",
                                    "name": "Execute",
                                    "input": {"command": "rm -rf build"},
                                },
                            },
                        ],
                    },
                ),
            ),
        )
        await _settle()
        return stdin.frames, events

    frames, events = asyncio.run(scenario())

    assert frames == [build_response("perm-7", {"selectedOption": "cancel"})]
    requested = next(event for event in events if isinstance(event, PermissionRequested))
    assert requested.command == "rm -rf build"
    resolved = next(event for event in events if isinstance(event, PermissionResolved))
    assert resolved.decision == "cancel"
    assert "handler exploded" in (resolved.error or "")


def test_async_permission_handler_decision_is_sent() -> None:
    seen: list[PermissionRequest] = []

    async def handler(request: PermissionRequest) -> str:
        seen.append(request)
        return "proceed_always"

    async def scenario() -> list[dict[str, Any]]:
        adapter, stdin = _active_adapter()
        adapter.set_permission_handler(handler)
        adapter.handle_line(
            json.dumps(
                build_request(
                    "perm-1",
                    "droid.request_permission",
                    {"toolUses": [{"toolUse": {"id": "t", "name": "Edit", "input": {"a": 1}}}]},
                ),
            ),
        )
        await _settle()
        return stdin.frames

    frames = asyncio.run(scenario())

    assert frames[-1]["result"] == {"selectedOption": "proceed_always"}
    assert seen[0].tool_name == "Edit"
    assert seen[0].command == '{"a": 1}'


def test_malformed_line_is_reported_and_channel_survives() -> None:
    async def scenario() -> list[object]:
        adapter, _ = _active_adapter()
        events: list[object] = []
        adapter.subscribe(events.append)
        adapter.handle_line("{not json")
        adapter.handle_line("[1, 2]")
        _notify(adapter, {"type": "tool_result", "toolUseId": "t-1", "content": "ok"})
        return events

    events = asyncio.run(scenario())

    assert sum(isinstance(event, ParseErrorEvent) for event in events) == 2
    assert ToolResultReceived(tool_use_id="t-1", content="ok") in events


def test_message_with_tool_use_is_parsed() -> None:
    async def scenario() -> list[object]:
        adapter, _ = _active_adapter()
        events: list[object] = []
        adapter.subscribe(events.append)
        _notify(
            adapter,
            {
                "type": "create_message",
                "message": {
                    "role": "assistant",
                    "content": [
                        {"type": "text", "text": "Running tests"},
                        {
                            "type": "tool_use",
                            "id": "tu-1",
                            "name": "Execute",
                            "input": {"command": "pytest"},
                        },
                        {"type": "text", "text": "ignored second block"},
                    ],
                },
            },
        )
        return events

    events = asyncio.run(scenario())

    message = next(event for event in events if isinstance(event, MessageReceived)).message
    assert message.role == "assistant"
    assert message.text == "Running tests"
    assert message.tool_use is not None
    assert message.tool_use.name == "Execute"
    assert message.tool_use.input == {"command": "pytest"}


def test_failing_listener_does_not_break_dispatch() -> None:
    def broken(event: object) -> None:
        raise RuntimeError("listener bug")

    async def scenario() -> list[object]:
        adapter, _ = _active_adapter()
        events: list[object] = []
        adapter.subscribe(broken)
        adapter.subscribe(events.append)
        _working_state(adapter, "streaming_assistant_message")
        return events

    events = asyncio.run(scenario())

    assert events[-1] == StateChanged(state="streaming_assistant_message")


def test_unsubscribe_stops_delivery() -> None:
    async def scenario() -> list[object]:
        adapter, _ = _active_adapter()
        events: list[object] = []
        unsubscribe = adapter.subscribe(events.append)
        unsubscribe()
        unsubscribe()
        _working_state(adapter, "idle")
        return events

    assert asyncio.run(scenario()) == []


def test_stop_rejects_outstanding_prompt_and_is_idempotent() -> None:
    async def scenario() -> tuple[SessionAdapter, list[object]]:
        adapter, stdin = _active_adapter()
        events: list[object] = []
        adapter.subscribe(events.append)
        prompt = asyncio.create_task(adapter.send_prompt("hello"))
        await asyncio.sleep(0)

        await adapter.stop()
        await adapter.stop()
        with pytest.raises(SessionStoppedError):
            await prompt
        with pytest.raises(SessionStoppedError):
            await adapter.send_prompt("again")
        assert stdin.closed
        return adapter, events

    adapter, events = asyncio.run(scenario())

    assert adapter.state is SessionState.STOPPED
    assert adapter.pending_request_ids == ()
    assert [event for event in events if isinstance(event, ProcessExited)] == [
        ProcessExited(exit_code=-15),
    ]


def test_prompt_before_start_is_rejected() -> None:
    adapter = SessionAdapter(AgentLaunchOptions(cwd=Path("."), model="test-model"))

    with pytest.raises(SessionNotStartedError):
        asyncio.run(adapter.send_prompt("hello"))


def test_start_without_model_fails_before_spawning() -> None:
    adapter = SessionAdapter(AgentLaunchOptions(cwd=Path("."), model=None))

    with pytest.raises(ConfigurationError):
        asyncio.run(adapter.start())
    assert adapter.state is SessionState.NOT_STARTED


def test_start_reports_spawn_failure(tmp_path: Path) -> None:
    adapter = SessionAdapter(
        AgentLaunchOptions(
            cwd=tmp_path,
            model="test-model",
            command=(str(tmp_path / "missing-agent"),),
        ),
    )

    with pytest.raises(ProcessError, match="failed to start"):
        asyncio.run(adapter.start())
    assert adapter.state is SessionState.STOPPED


def _echo_options(
    tmp_path: Path,
    command: tuple[str, ...],
    env: dict[str, str],
) -> AgentLaunchOptions:
    return AgentLaunchOptions(
        cwd=tmp_path,
        model="claude-sonnet-4-5",
        command=command,
        env=env,
        prompt_timeout_seconds=20,
        request_timeout_seconds=20,
        stop_grace_seconds=5,
    )


def test_echo_agent_session_forces_model_and_completes_turn(
    tmp_path: Path,
    echo_command,
    echo_env,
) -> None:
    async def scenario() -> tuple[SessionInfo, list[object]]:
        adapter = SessionAdapter(
            _echo_options(
                tmp_path,
                echo_command,
                echo_env("ok", initial_model="claude-opus-4-20250514"),
            ),
        )
        events: list[object] = []
        adapter.subscribe(events.append)
        session = await adapter.start()
        try:
            await adapter.send_prompt("hello")
        finally:
            await adapter.stop()
        return session, events

    session, events = asyncio.run(scenario())

    assert session.session_id == "echo-session"
    assert session.model_id == "claude-sonnet-4-5-20250929"
    assert len(session.available_models) == 3
    texts = [event.message.text for event in events if isinstance(event, MessageReceived)]
    assert texts == ["Echo: hello"]
    assert sum(isinstance(event, TurnCompleted) for event in events) == 1
    assert sum(isinstance(event, ProcessExited) for event in events) == 1


def test_echo_agent_permission_round_trip(tmp_path: Path, echo_command, echo_env) -> None:
    requests: list[PermissionRequest] = []

    def handler(request: PermissionRequest) -> PermissionDecision:
        requests.append(request)
        return PermissionDecision.PROCEED_ALWAYS

    async def scenario() -> list[object]:
        adapter = SessionAdapter(
            _echo_options(tmp_path, echo_command, echo_env("permission")),
            permission_handler=handler,
        )
        events: list[object] = []
        adapter.subscribe(events.append)
        await adapter.start()
        try:
            await adapter.send_prompt("run it")
        finally:
            await adapter.stop()
        return events

    events = asyncio.run(scenario())

    assert requests[0].command == "echo hello"
    assert ToolResultReceived(tool_use_id="tool-1", content="decision: proceed_always") in events


def test_echo_agent_idle_before_message_still_completes(
    tmp_path: Path,
    echo_command,
    echo_env,
) -> None:
    async def scenario() -> list[object]:
        adapter = SessionAdapter(_echo_options(tmp_path, echo_command, echo_env("idle_first")))
        events: list[object] = []
        adapter.subscribe(events.append)
        await adapter.start()
        try:
            await adapter.send_prompt("hello")
        finally:
            await adapter.stop()
        return events

    events = asyncio.run(scenario())

    kinds = [type(event) for event in events]
    assert kinds.index(TurnCompleted) > kinds.index(MessageReceived)


def test_echo_agent_exit_fails_prompt_with_process_error(
    tmp_path: Path,
    echo_command,
    echo_env,
) -> None:
    async def scenario() -> tuple[ProcessError, SessionState]:
        adapter = SessionAdapter(_echo_options(tmp_path, echo_command, echo_env("exit")))
        await adapter.start()
        try:
            with pytest.raises(ProcessError) as raised:
                await adapter.send_prompt("hello")
        finally:
            await adapter.stop()
        return raised.value, adapter.state

    error, state = asyncio.run(scenario())

    assert error.exit_code == 3
    assert state is SessionState.STOPPED
