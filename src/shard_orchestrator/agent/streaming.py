"""Streaming session runtime for interactive multi-turn agent use.

Unlike ``SessionAdapter`` there is no handshake and no reply correlation:
user messages are written as they come and the agent's stream-json output is
decoded best-effort into granular events.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from shard_orchestrator.agent.errors import (
    ProcessError,
    SessionAlreadyRunningError,
    SessionNotStartedError,
)
from shard_orchestrator.agent.events import (
    BlockStopped,
    MessageStarted,
    MessageStopped,
    RawStreamFrame,
    SessionAnnounced,
    StreamClosed,
    StreamError,
    StreamEvent,
    StreamListener,
    StreamStderr,
    TextDelta,
    ThinkingDelta,
    ThinkingStarted,
    ToolInputDelta,
    ToolResult,
    ToolStarted,
    ToolUsed,
    UsageReported,
)
from shard_orchestrator.config import AgentSettings

logger = logging.getLogger(__name__)

STREAM_JSON_FORMAT = "stream-json"
_READ_CHUNK_BYTES = 64 * 1024


class StreamDecoder:
    """Incremental line-buffered decoder of stream-json output."""

    def __init__(self) -> None:
        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.session_id: str | None = None

    @property
    def pending(self) -> str:
        """Trailing partial line held for the next chunk."""

        return self._buffer

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Decode complete lines from ``chunk``, holding any trailing partial line."""

        text = self._text_decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._decode_line(line))
        return events

    def flush(self) -> list[StreamEvent]:
        """Decode whatever is left once the stream has ended."""

        self._buffer += self._text_decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._decode_line(remainder)

    def _decode_line(self, line: str) -> list[StreamEvent]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            frame = json.loads(stripped)
        except json.JSONDecodeError:
            return [TextDelta(text=line.rstrip("\r"))]
        if not isinstance(frame, dict):
            return [TextDelta(text=line.rstrip("\r"))]
        events = decode_stream_frame(frame)
        for event in events:
            if isinstance(event, SessionAnnounced):
                self.session_id = event.session_id
        return events


def decode_stream_frame(frame: dict[str, Any]) -> list[StreamEvent]:  # noqa: PLR0911, PLR0912
    """Map one stream-json object to zero or more events."""

    frame_type = frame.get("type")
    if frame_type == "message_start":
        return [MessageStarted(payload=frame)]
    if frame_type == "content_block_start":
        block = frame.get("content_block")
        block = block if isinstance(block, dict) else {}
        if block.get("type") == "tool_use":
            return [
                ToolStarted(
                    tool_name=str(block.get("name", "")),
                    tool_id=str(block.get("id", "")),
                ),
            ]
        if block.get("type") == "thinking":
            return [ThinkingStarted()]
        return []
    if frame_type == "content_block_delta":
        delta = frame.get("delta")
        delta = delta if isinstance(delta, dict) else {}
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return [TextDelta(text=str(delta.get("text", "")))]
        if delta_type == "input_json_delta":
            return [ToolInputDelta(partial_json=str(delta.get("partial_json", "")))]
        if delta_type == "thinking_delta":
            return [ThinkingDelta(text=str(delta.get("thinking", "")))]
        return []
    if frame_type == "content_block_stop":
        return [BlockStopped()]
    if frame_type == "message_stop":
        return [MessageStopped()]
    if frame_type == "message_delta":
        usage = frame.get("usage")
        return [UsageReported(usage=usage)] if isinstance(usage, dict) else []
    if frame_type == "error":
        error = frame.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        return [StreamError(message=str(message or "Unknown error"))]
    if frame.get("session_id"):
        return [SessionAnnounced(session_id=str(frame["session_id"]))]
    if frame.get("content"):
        return [TextDelta(text=_content_text(frame["content"]))]
    if frame.get("tool_calls") or frame.get("tool_use"):
        tools = frame.get("tool_calls") or [frame.get("tool_use")]
        return [
            ToolUsed(
                tool_name=str(tool.get("name", "")),
                tool_id=str(tool.get("id", "")),
                input=tool.get("input"),
            )
            for tool in tools
            if isinstance(tool, dict)
        ]
    if "result" in frame:
        return [ToolResult(result=frame["result"])]
    return [RawStreamFrame(frame=frame)]


@dataclass(slots=True)
class StreamingSessionOptions:
    """Process-spawn parameters for a streaming session."""

    cwd: Path
    model: str
    auto_level: str = "medium"
    command: tuple[str, ...] = ("droid",)
    session_id: str | None = None
    stop_grace_seconds: float = 1.0
    env: dict[str, str] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: AgentSettings,
        *,
        cwd: Path,
        model: str | None = None,
        auto_level: str | None = None,
        session_id: str | None = None,
    ) -> StreamingSessionOptions:
        return cls(
            cwd=cwd,
            model=model or settings.model,
            auto_level=auto_level or settings.auto_level,
            command=settings.command,
            session_id=session_id,
            stop_grace_seconds=settings.stop_grace_seconds,
        )


class StreamingSession:
    """Interactive agent conversation over stream-json."""

    def __init__(self, options: StreamingSessionOptions) -> None:
        self.options = options
        self._process: asyncio.subprocess.Process | None = None
        self._decoder = StreamDecoder()
        self._listeners: list[StreamListener] = []
        self._pumps: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def session_id(self) -> str | None:
        return self._decoder.session_id or self.options.session_id

    def is_active(self) -> bool:
        return self._running

    def subscribe(self, listener: StreamListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    async def start(self) -> None:
        if self._running:
            raise SessionAlreadyRunningError("Session already running.")

        args = [
            *self.options.command,
            "exec",
            "--auto",
            self.options.auto_level,
            "--model",
            self.options.model,
            "--input-format",
            STREAM_JSON_FORMAT,
            "--output-format",
            STREAM_JSON_FORMAT,
            "--cwd",
            str(self.options.cwd),
        ]
        if self.options.session_id:
            args.extend(["--session-id", self.options.session_id])

        logger.debug("Spawning streaming agent: %s", " ".join(args))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(self.options.cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.options.env if self.options.env is not None else os.environ.copy(),
            )
        except OSError as error:
            raise ProcessError(f"Streaming agent failed to start: {error}") from error

        self._decoder = StreamDecoder()
        self._running = True
        self._pumps = [
            asyncio.create_task(self._pump_stdout()),
            asyncio.create_task(self._pump_stderr()),
        ]

    async def send_message(self, content: str) -> None:
        """Write a user message; replies arrive as events."""

        process = self._process
        if not self._running or process is None or process.stdin is None:
            raise SessionNotStartedError("Session not running.")
        line = json.dumps({"role": "user", "content": content}, ensure_ascii=False) + "\n"
        process.stdin.write(line.encode("utf-8"))
        try:
            await process.stdin.drain()
        except (ConnectionError, OSError) as error:
            raise ProcessError(f"Streaming agent stdin closed: {error}") from error

    async def stop(self) -> int | None:
        """Close stdin, wait for a graceful exit, then escalate to termination."""

        process = self._process
        if process is None:
            return None
        if self._running:
            if process.stdin is not None:
                process.stdin.close()
            grace = self.options.stop_grace_seconds
            if not await self._wait_exit(grace):
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
                if not await self._wait_exit(grace):
                    self.kill()
        return await self.wait_closed()

    def kill(self) -> None:
        """Force immediate termination."""

        process = self._process
        if process is None:
            return
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        self._running = False

    async def wait_closed(self) -> int | None:
        """Wait for the output pumps to finish; returns the exit code."""

        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        return self._process.returncode if self._process is not None else None

    async def _wait_exit(self, timeout: float) -> bool:
        process = self._process
        if process is None:
            return True
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _pump_stdout(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        while True:
            chunk = await process.stdout.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            for event in self._decoder.feed(chunk):
                self._emit(event)
        for event in self._decoder.flush():
            self._emit(event)
        exit_code = await process.wait()
        self._running = False
        logger.debug("Streaming agent exited with code %s", exit_code)
        self._emit(StreamClosed(exit_code=exit_code))

    async def _pump_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            chunk = await process.stderr.read(_READ_CHUNK_BYTES)
            if not chunk:
                return
            self._emit(StreamStderr(text=chunk.decode("utf-8", errors="replace")))

    def _emit(self, event: StreamEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Stream event listener failed on %s", type(event).__name__)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            str(block.get("text", "")) for block in content if isinstance(block, dict)
        )
    return str(content)
