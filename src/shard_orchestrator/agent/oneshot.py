"""One-shot (non-interactive) agent invocation with a deadline."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from shard_orchestrator.config import AgentSettings

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_READ_CHUNK_BYTES = 64 * 1024

OutputCallback = Callable[[str], None]


@dataclass(slots=True)
class OneShotInvocation:
    """Single prompt handed to the agent in text mode."""

    prompt: str
    model: str | None = None
    auto_level: str | None = None
    cwd: Path | None = None
    timeout_seconds: float | None = None
    env: dict[str, str] | None = None


@dataclass(slots=True)
class OneShotResult:
    success: bool
    output: str
    exit_code: int | None
    timed_out: bool = False


def build_oneshot_args(invocation: OneShotInvocation, settings: AgentSettings) -> list[str]:
    args = [
        *settings.command,
        "exec",
        "--auto",
        invocation.auto_level or settings.auto_level,
        "--model",
        invocation.model or settings.model,
        "--output-format",
        "text",
    ]
    if invocation.cwd is not None:
        args.extend(["--cwd", str(invocation.cwd)])
    return args


async def run_agent_once(
    invocation: OneShotInvocation,
    settings: AgentSettings,
    on_output: OutputCallback | None = None,
) -> OneShotResult:
    """Run the agent once and collect its combined output.

    The prompt is written to stdin. Output chunks are forwarded to
    ``on_output`` as they arrive. When the deadline passes the process is
    terminated, then killed if it ignores the grace period. Spawn failures are
    reported as a failed result.
    """

    args = build_oneshot_args(invocation, settings)
    timeout_seconds = invocation.timeout_seconds or settings.oneshot_timeout_seconds
    chunks: list[str] = []

    def emit(text: str) -> None:
        chunks.append(text)
        if on_output is not None:
            on_output(text)

    logger.debug("Spawning one-shot agent: %s", " ".join(args))
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(invocation.cwd) if invocation.cwd is not None else None,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=invocation.env if invocation.env is not None else os.environ.copy(),
        )
    except FileNotFoundError:
        message = f"Agent command not found: {args[0]}"
        logger.warning(message)
        return OneShotResult(success=False, output=message, exit_code=None)
    except OSError as error:
        message = f"Agent failed to start: {error}"
        logger.warning(message)
        return OneShotResult(success=False, output=message, exit_code=None)

    reader = asyncio.create_task(_collect_output(process, emit))
    await _write_prompt(process, invocation.prompt)

    try:
        exit_code = await asyncio.wait_for(process.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning("One-shot agent timed out after %ss", timeout_seconds)
        await _terminate_process(process, grace_seconds=settings.stop_grace_seconds)
        await reader
        emit(f"\n[timeout] agent did not finish within {timeout_seconds}s\n")
        return OneShotResult(
            success=False,
            output="".join(chunks),
            exit_code=TIMEOUT_EXIT_CODE,
            timed_out=True,
        )

    await reader
    return OneShotResult(success=exit_code == 0, output="".join(chunks), exit_code=exit_code)


async def _write_prompt(process: asyncio.subprocess.Process, prompt: str) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.write(prompt.encode("utf-8"))
        await process.stdin.drain()
    except (ConnectionError, OSError) as error:
        logger.debug("Agent stdin closed before prompt was written: %s", error)
    finally:
        process.stdin.close()


async def _collect_output(process: asyncio.subprocess.Process, emit: OutputCallback) -> None:
    if process.stdout is None:
        return
    while True:
        chunk = await process.stdout.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        emit(chunk.decode("utf-8", errors="replace"))


async def _terminate_process(process: asyncio.subprocess.Process, *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
