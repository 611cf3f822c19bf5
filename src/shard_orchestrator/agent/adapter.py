"""Session protocol adapter for a coding agent driven over stream-jsonrpc.

One ``SessionAdapter`` owns one agent subprocess. Requests are correlated
with responses by string id, notifications drive a completion state machine,
and permission requests from the agent are answered through an injectable
handler.

Usage::

    adapter = SessionAdapter(AgentLaunchOptions(cwd=Path("."), model="claude-sonnet-4-5"))
    adapter.subscribe(print)
    session = await adapter.start()
    await adapter.send_prompt("Fix the failing test in app.py")
    await adapter.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from shard_orchestrator.agent.catalog import ModelInfo, match_available_model
from shard_orchestrator.agent.errors import (
    AgentReportedError,
    AgentSessionError,
    ConfigurationError,
    PermissionHandlerError,
    ProcessError,
    ProtocolParseError,
    RequestTimeoutError,
    SessionAlreadyRunningError,
    SessionNotStartedError,
    SessionStoppedError,
)
from shard_orchestrator.agent.events import (
    AdapterEvent,
    AdapterListener,
    AgentError,
    MessageReceived,
    ParseErrorEvent,
    PermissionRequested,
    PermissionResolved,
    ProcessExited,
    RawFrame,
    StateChanged,
    StderrLine,
    ToolResultReceived,
    TurnCompleted,
)
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
    STREAM_FORMAT,
    FrameType,
    PermissionDecision,
    PermissionRequest,
    build_request,
    build_response,
    decode_frame,
    encode_frame,
    error_message,
    parse_message,
    parse_permission_request,
)
from shard_orchestrator.config import AgentSettings

logger = logging.getLogger(__name__)

PermissionHandler = Callable[
    [PermissionRequest],
    PermissionDecision | str | Awaitable[PermissionDecision | str],
]


def approve_once(request: PermissionRequest) -> PermissionDecision:
    """Default permission handler: allow each tool use once."""

    return PermissionDecision.PROCEED_ONCE


class SessionState(str, Enum):
    """Adapter lifecycle; ``STOPPED`` is terminal."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(slots=True)
class AgentLaunchOptions:
    """Process-spawn parameters for one agent session."""

    cwd: Path
    model: str | None
    auto_level: str = "medium"
    prompt_timeout_seconds: float = 300.0
    request_timeout_seconds: float = 30.0
    stop_grace_seconds: float = 1.0
    command: tuple[str, ...] = ("droid",)
    stream_limit_bytes: int = 16 * 1024 * 1024
    env: dict[str, str] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: AgentSettings,
        *,
        cwd: Path,
        model: str | None = None,
        auto_level: str | None = None,
    ) -> AgentLaunchOptions:
        """Build options from agent settings with per-session overrides."""

        return cls(
            cwd=cwd,
            model=model or settings.model,
            auto_level=auto_level or settings.auto_level,
            prompt_timeout_seconds=settings.prompt_timeout_seconds,
            request_timeout_seconds=settings.request_timeout_seconds,
            stop_grace_seconds=settings.stop_grace_seconds,
            command=settings.command,
            stream_limit_bytes=settings.stream_limit_bytes,
        )


@dataclass(slots=True, frozen=True)
class SessionInfo:
    """Live conversation negotiated with the agent."""

    session_id: str
    model_id: str
    available_models: tuple[ModelInfo, ...] = ()


@dataclass(slots=True)
class _PendingRequest:
    method: str
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle | None = None
    on_result: Callable[[], None] | None = None


@dataclass(slots=True)
class _TurnState:
    """Completion machine for the prompt in flight."""

    waiter: asyncio.Future[None] | None = None
    armed: bool = False
    streaming: bool = False
    pending_idle: bool = False


class SessionAdapter:
    """Owns one agent subprocess speaking line-delimited JSON-RPC."""

    def __init__(
        self,
        options: AgentLaunchOptions,
        *,
        permission_handler: PermissionHandler | None = None,
    ) -> None:
        self.options = options
        self._permission_handler: PermissionHandler = permission_handler or approve_once
        self._state = SessionState.NOT_STARTED
        self._session: SessionInfo | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._reader_tasks: list[asyncio.Task[None]] = []
        self._permission_tasks: set[asyncio.Task[None]] = set()
        self._pending: dict[str, _PendingRequest] = {}
        self._next_request_id = 0
        self._turn = _TurnState()
        self._listeners: list[AdapterListener] = []
        self._exit_reported = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> SessionInfo | None:
        return self._session

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    @property
    def pending_request_ids(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def is_running(self) -> bool:
        return self._state in (SessionState.STARTING, SessionState.ACTIVE)

    def subscribe(self, listener: AdapterListener) -> Callable[[], None]:
        """Register an event listener; returns a callable that unsubscribes it."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def set_permission_handler(self, handler: PermissionHandler) -> None:
        self._permission_handler = handler

    async def start(self) -> SessionInfo:
        """Spawn the agent, initialize a session and force the requested model."""

        model = self.options.model
        if not model:
            raise ConfigurationError("Agent session requires a model to be specified.")
        if self._state is not SessionState.NOT_STARTED:
            raise SessionAlreadyRunningError(
                f"Session adapter cannot start from state {self._state.value!r}.",
            )

        self._state = SessionState.STARTING
        args = [
            *self.options.command,
            "exec",
            "--input-format",
            STREAM_FORMAT,
            "--output-format",
            STREAM_FORMAT,
            "--cwd",
            str(self.options.cwd),
            "--auto",
            self.options.auto_level,
            "--model",
            model,
        ]
        logger.debug("Spawning agent: %s", " ".join(args))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.options.env if self.options.env is not None else os.environ.copy(),
                limit=self.options.stream_limit_bytes,
            )
        except OSError as error:
            self._state = SessionState.STOPPED
            raise ProcessError(f"Agent failed to start: {error}") from error

        self._reader_tasks = [
            asyncio.create_task(self._read_frames()),
            asyncio.create_task(self._read_stderr()),
        ]

        try:
            result = await self._request(
                METHOD_INITIALIZE_SESSION,
                {"machineId": str(uuid4()), "cwd": str(self.options.cwd)},
            )
            session = _session_from_result(result)
            if session.model_id != model:
                matched = match_available_model(
                    model,
                    (available.id for available in session.available_models),
                )
                if matched is not None:
                    await self._request(
                        METHOD_UPDATE_SESSION_SETTINGS,
                        {"sessionId": session.session_id, "settings": {"modelId": matched}},
                    )
                    session = replace(session, model_id=matched)
        except AgentSessionError:
            await self.stop()
            raise

        if self._state is not SessionState.STARTING:
            raise SessionStoppedError("Session stopped during start.")
        self._session = session
        self._state = SessionState.ACTIVE
        logger.info(
            "Agent session %s started with model %s",
            session.session_id,
            session.model_id,
        )
        return session

    async def send_prompt(self, text: str) -> None:
        """Send a user message and wait until the agent finishes the turn."""

        session = self._require_active()
        if self._turn.waiter is not None:
            raise AgentSessionError("A prompt is already in flight for this session.")

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._turn.waiter = waiter
        self._turn.armed = False

        def arm() -> None:
            self._turn.armed = True

        try:
            await self._request(
                METHOD_ADD_USER_MESSAGE,
                {"sessionId": session.session_id, "text": text},
                on_result=arm,
            )
            try:
                await asyncio.wait_for(waiter, timeout=self.options.prompt_timeout_seconds)
            except asyncio.TimeoutError as error:
                raise RequestTimeoutError(
                    f"Prompt timeout after {self.options.prompt_timeout_seconds:g}s",
                ) from error
        finally:
            if self._turn.waiter is waiter:
                self._turn.waiter = None
                self._turn.armed = False
            if not waiter.done():
                waiter.cancel()
            elif not waiter.cancelled():
                waiter.exception()

    def update_settings(
        self,
        *,
        model_id: str | None = None,
        autonomy_level: str | None = None,
    ) -> asyncio.Future[Any]:
        """Send a settings change without waiting; the returned future may be ignored."""

        session = self._require_active()
        settings: dict[str, str] = {}
        if model_id is not None:
            settings["modelId"] = model_id
        if autonomy_level is not None:
            settings["autonomyLevel"] = autonomy_level
        future = self._send_request(
            METHOD_UPDATE_SESSION_SETTINGS,
            {"sessionId": session.session_id, "settings": settings},
        )
        future.add_done_callback(_log_unobserved_failure)
        return future

    async def stop(self) -> None:
        """Close stdin, terminate the agent and release readers; safe to call twice."""

        if self._state in (SessionState.STOPPING, SessionState.STOPPED):
            return
        if self._state is SessionState.NOT_STARTED:
            self._state = SessionState.STOPPED
            return

        self._state = SessionState.STOPPING
        process = self._process
        if process is not None:
            if process.stdin is not None:
                process.stdin.close()
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()

        current = asyncio.current_task()
        tasks = [
            task
            for task in [*self._reader_tasks, *self._permission_tasks]
            if task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if process is not None:
            exit_code = await _wait_or_kill(process, self.options.stop_grace_seconds)
            self._report_exit(exit_code)

        self._fail_outstanding(SessionStoppedError("Session stopped."))
        self._reader_tasks = []
        self._permission_tasks.clear()
        self._session = None
        self._state = SessionState.STOPPED

    def handle_line(self, line: str) -> None:
        """Dispatch one inbound protocol line, in arrival order."""

        if not line.strip():
            return
        try:
            frame = decode_frame(line)
        except ProtocolParseError as error:
            logger.debug("Unparseable agent frame: %s", error)
            self._emit(ParseErrorEvent(line=line, error=str(error)))
            return

        self._emit(RawFrame(frame=frame))
        frame_type = frame.get("type")
        if frame_type == FrameType.RESPONSE.value:
            self._handle_response(frame)
        elif frame_type == FrameType.NOTIFICATION.value:
            params = frame.get("params")
            notification = params.get("notification") if isinstance(params, dict) else None
            if isinstance(notification, dict):
                self._handle_notification(notification)
        elif frame_type == FrameType.REQUEST.value:
            self._handle_inbound_request(frame)

    def _require_active(self) -> SessionInfo:
        if self._state in (SessionState.STOPPING, SessionState.STOPPED):
            raise SessionStoppedError("Session has been stopped.")
        if self._state is not SessionState.ACTIVE or self._session is None:
            raise SessionNotStartedError("Session not initialized. Call start() first.")
        return self._session

    async def _request(
        self,
        method: str,
        params: dict[str, Any],
        *,
        on_result: Callable[[], None] | None = None,
    ) -> Any:
        future = self._send_request(method, params, on_result=on_result)
        await self._drain()
        return await future

    def _send_request(
        self,
        method: str,
        params: dict[str, Any],
        *,
        on_result: Callable[[], None] | None = None,
    ) -> asyncio.Future[Any]:
        loop = asyncio.get_running_loop()
        self._next_request_id += 1
        request_id = str(self._next_request_id)
        future: asyncio.Future[Any] = loop.create_future()
        self._write_frame(build_request(request_id, method, params))
        pending = _PendingRequest(method=method, future=future, on_result=on_result)
        pending.timer = loop.call_later(
            self.options.request_timeout_seconds,
            self._expire_request,
            request_id,
        )
        self._pending[request_id] = pending
        return future

    def _expire_request(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        logger.warning("Agent request %s (%s) timed out", request_id, pending.method)
        pending.future.set_exception(RequestTimeoutError(f"Request timeout: {pending.method}"))

    def _write_frame(self, frame: dict[str, Any]) -> None:
        process = self._process
        stdin = process.stdin if process is not None else None
        if stdin is None or stdin.is_closing():
            raise ProcessError("Agent process is not writable.")
        stdin.write(encode_frame(frame))

    async def _drain(self) -> None:
        process = self._process
        if process is None or process.stdin is None:
            return
        try:
            await process.stdin.drain()
        except (ConnectionError, OSError) as error:
            logger.debug("Agent stdin drain failed: %s", error)

    def _handle_response(self, frame: dict[str, Any]) -> None:
        request_id = frame.get("id")
        pending = self._pending.pop(str(request_id), None) if request_id is not None else None
        if pending is None:
            logger.debug("Dropping response for unknown request id %r", request_id)
            return
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return
        message = error_message(frame)
        if message is not None:
            pending.future.set_exception(AgentReportedError(message))
            return
        if pending.on_result is not None:
            pending.on_result()
        pending.future.set_result(frame.get("result"))

    def _handle_notification(self, notification: dict[str, Any]) -> None:
        kind = notification.get("type")
        if kind == NOTIFICATION_WORKING_STATE:
            state = str(notification.get("newState", ""))
            self._emit(StateChanged(state=state))
            if state == STATE_STREAMING:
                self._turn.streaming = True
                self._turn.pending_idle = False
            elif state == STATE_IDLE:
                if self._turn.streaming:
                    self._turn.pending_idle = True
                else:
                    self._complete_turn()
        elif kind == NOTIFICATION_CREATE_MESSAGE:
            message = notification.get("message")
            if not isinstance(message, dict):
                return
            parsed = parse_message(message)
            self._emit(MessageReceived(message=parsed))
            if parsed.role == "assistant":
                self._turn.streaming = False
                if self._turn.pending_idle:
                    self._turn.pending_idle = False
                    self._complete_turn()
        elif kind == NOTIFICATION_TOOL_RESULT:
            content = notification.get("content")
            self._emit(
                ToolResultReceived(
                    tool_use_id=str(notification.get("toolUseId", "")),
                    content=content if isinstance(content, str) else _to_text(content),
                ),
            )
        elif kind == NOTIFICATION_ERROR:
            message = str(notification.get("message") or "Unknown agent error")
            self._emit(AgentError(message=message))
            waiter = self._turn.waiter
            if waiter is not None and self._turn.armed and not waiter.done():
                waiter.set_exception(AgentReportedError(message))

    def _complete_turn(self) -> None:
        self._emit(TurnCompleted())
        waiter = self._turn.waiter
        if waiter is not None and self._turn.armed and not waiter.done():
            waiter.set_result(None)

    def _handle_inbound_request(self, frame: dict[str, Any]) -> None:
        if frame.get("method") != METHOD_REQUEST_PERMISSION:
            logger.debug("Ignoring agent request %r", frame.get("method"))
            return
        params = frame.get("params")
        task = asyncio.create_task(
            self._answer_permission(
                str(frame.get("id", "")),
                params if isinstance(params, dict) else {},
            ),
        )
        self._permission_tasks.add(task)
        task.add_done_callback(self._permission_tasks.discard)

    async def _answer_permission(self, request_id: str, params: dict[str, Any]) -> None:
        request = parse_permission_request(request_id, params)
        if request is None:
            self._send_decision(request_id, PermissionDecision.PROCEED_ONCE, error=None)
            return

        self._emit(
            PermissionRequested(
                request_id=request_id,
                tool_use_id=request.tool_use_id,
                tool_name=request.tool_name,
                command=request.command,
            ),
        )
        error_text: str | None = None
        try:
            decision = self._permission_handler(request)
            if inspect.isawaitable(decision):
                decision = await decision
            decision = PermissionDecision(decision)
        except Exception as error:  # noqa: BLE001
            handler_error = PermissionHandlerError(
                f"Permission handler failed for {request.tool_name}: {error}",
            )
            logger.warning("%s; answering cancel", handler_error)
            error_text = str(handler_error)
            decision = PermissionDecision.CANCEL
        self._send_decision(request_id, decision, error=error_text)

    def _send_decision(
        self,
        request_id: str,
        decision: PermissionDecision,
        *,
        error: str | None,
    ) -> None:
        try:
            self._write_frame(build_response(request_id, {"selectedOption": decision.value}))
        except ProcessError:
            logger.debug("Permission answer for %s dropped: process not writable", request_id)
            return
        self._emit(PermissionResolved(request_id=request_id, decision=decision.value, error=error))

    async def _read_frames(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError as error:
                self._emit(ParseErrorEvent(line="", error=f"Frame exceeds stream limit: {error}"))
                continue
            if not raw:
                break
            self.handle_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        exit_code = await process.wait()
        self._on_process_exit(exit_code)

    async def _read_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            logger.debug("agent stderr: %s", line)
            self._emit(StderrLine(line=line))

    def _on_process_exit(self, exit_code: int | None) -> None:
        self._report_exit(exit_code)
        if self._state in (SessionState.STOPPING, SessionState.STOPPED):
            return
        logger.info("Agent process exited with code %s", exit_code)
        self._fail_outstanding(
            ProcessError(f"Agent process exited with code {exit_code}", exit_code=exit_code),
        )
        self._session = None
        self._state = SessionState.STOPPED

    def _report_exit(self, exit_code: int | None) -> None:
        if self._exit_reported:
            return
        self._exit_reported = True
        self._emit(ProcessExited(exit_code=exit_code))

    def _fail_outstanding(self, error: AgentSessionError) -> None:
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(error)
        waiter = self._turn.waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(error)

    def _emit(self, event: AdapterEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Adapter event listener failed on %s", type(event).__name__)


def _session_from_result(result: Any) -> SessionInfo:
    payload = result if isinstance(result, dict) else {}
    settings = payload.get("settings")
    model_id = settings.get("modelId") if isinstance(settings, dict) else None
    available: list[ModelInfo] = []
    raw_models = payload.get("availableModels")
    if isinstance(raw_models, list):
        for raw in raw_models:
            if isinstance(raw, dict) and raw.get("id"):
                model = str(raw["id"])
                available.append(
                    ModelInfo(
                        id=model,
                        display_name=str(raw.get("displayName") or model),
                        model=model,
                    ),
                )
    return SessionInfo(
        session_id=str(payload.get("sessionId", "")),
        model_id=str(model_id) if model_id else "unknown",
        available_models=tuple(available),
    )


async def _wait_or_kill(process: asyncio.subprocess.Process, grace_seconds: float) -> int | None:
    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        return await process.wait()


def _log_unobserved_failure(future: asyncio.Future[Any]) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.warning("Agent settings update failed: %s", error)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        parts = [
            str(item.get("text", "")) if isinstance(item, dict) else str(item) for item in value
        ]
        return "\n".join(part for part in parts if part)
    return str(value)
