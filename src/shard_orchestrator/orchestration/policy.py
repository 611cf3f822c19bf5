"""Orchestration policy: launch ready, non-conflicting shards and track them.

Each pass rebuilds the dependency graph, asks for the ready set against the
registry and starts sessions for shards that may run alongside everything
already running, up to ``max_parallel``. When any session finishes the pass
is repeated, until nothing runs and nothing more can be launched.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Protocol

from shard_orchestrator.agent.adapter import SessionInfo
from shard_orchestrator.agent.errors import AgentSessionError
from shard_orchestrator.agent.events import (
    AdapterEvent,
    AdapterListener,
    AgentError,
    MessageReceived,
    PermissionResolved,
    StderrLine,
    ToolResultReceived,
)
from shard_orchestrator.agent.personas import (
    assign_persona,
    build_persona_prompt,
    load_persona_prompt,
)
from shard_orchestrator.graph.builder import (
    build_graph,
    can_run_in_parallel,
    find_cycles,
    ready_to_run,
)
from shard_orchestrator.graph.models import DependencyGraph, Shard
from shard_orchestrator.orchestration.failure_classifier import classify_session_failure
from shard_orchestrator.orchestration.models import OrchestrationSummary, SessionStatus
from shard_orchestrator.orchestration.registry import SessionRegistry

logger = logging.getLogger(__name__)


class ShardSession(Protocol):
    """The part of ``SessionAdapter`` the orchestrator drives."""

    @property
    def returncode(self) -> int | None: ...

    def subscribe(self, listener: AdapterListener) -> Callable[[], None]: ...

    async def start(self) -> SessionInfo: ...

    async def send_prompt(self, text: str) -> None: ...

    async def stop(self) -> None: ...


SessionFactory = Callable[[Shard], ShardSession]


class ShardPromptBuilder:
    """Render the prompt handed to the agent for one shard."""

    def __init__(self, personas_dir: Path | None = None) -> None:
        self.personas_dir = personas_dir

    def build(self, shard: Shard) -> str:
        sections = [f"# {shard.title or shard.id}"]
        if shard.context:
            sections.append(f"## Context\n{shard.context}")
        if shard.task:
            sections.append(f"## Task\n{shard.task}")
        if shard.new_in_shard:
            new_items = "\n".join(f"- {item}" for item in shard.new_in_shard)
            sections.append(f"## New in This Shard\n{new_items}")
        if shard.acceptance_criteria:
            criteria = "\n".join(f"- [ ] {item}" for item in shard.acceptance_criteria)
            sections.append(f"## Acceptance Criteria\n{criteria}")
        if shard.required_reading:
            reading = "\n".join(f"- {path}" for path in shard.required_reading)
            sections.append(f"## Required Reading\n{reading}")
        if shard.creates:
            sections.append("## Creates\n" + "\n".join(f"- {item}" for item in shard.creates))
        if shard.modifies:
            sections.append("## Modifies\n" + "\n".join(f"- {item}" for item in shard.modifies))
        task = "\n\n".join(sections)

        persona = assign_persona(shard.type)
        persona_text = (
            load_persona_prompt(self.personas_dir, persona) if self.personas_dir else None
        )
        return build_persona_prompt(persona, persona_text, task)


class _OutputRecorder:
    """Turns adapter events into lines of a shard's output buffer."""

    def __init__(self, shard_id: str, registry: SessionRegistry) -> None:
        self.shard_id = shard_id
        self.registry = registry
        self.stderr: list[str] = []

    def __call__(self, event: AdapterEvent) -> None:
        if isinstance(event, MessageReceived):
            message = event.message
            if message.role != "assistant":
                return
            if message.text:
                self._append(message.text)
            if message.tool_use is not None:
                tool_input = message.tool_use.input
                detail = tool_input.get("command") or json.dumps(tool_input, ensure_ascii=False)
                self._append(f"[tool] {message.tool_use.name}: {detail}")
        elif isinstance(event, ToolResultReceived):
            self._append(f"[tool result] {event.content}")
        elif isinstance(event, AgentError):
            self._append(f"[agent error] {event.message}")
        elif isinstance(event, PermissionResolved) and event.error:
            self._append(f"[permission] {event.error}")
        elif isinstance(event, StderrLine):
            self.stderr.append(event.line)

    def _append(self, text: str) -> None:
        self.registry.append_output(self.shard_id, text if text.endswith("\n") else f"{text}\n")


async def run_shard_session(
    shard: Shard,
    session: ShardSession,
    registry: SessionRegistry,
    *,
    prompt: str,
) -> SessionStatus:
    """Drive one agent session for ``shard`` and record the outcome.

    The registry entry must already exist. Agent failures end the shard as
    failed with an ``[error]`` line appended to its output.
    """

    recorder = _OutputRecorder(shard.id, registry)
    unsubscribe = session.subscribe(recorder)
    failure: AgentSessionError | None = None
    try:
        info = await session.start()
        registry.set_session_id(shard.id, info.session_id)
        await session.send_prompt(prompt)
    except AgentSessionError as error:
        failure = error
    finally:
        await session.stop()
        unsubscribe()

    if failure is not None:
        classification = classify_session_failure(failure, stderr="\n".join(recorder.stderr))
        registry.append_output(shard.id, f"[error] {failure}\n")
        registry.set_status(
            shard.id,
            SessionStatus.FAILED,
            exit_code=session.returncode,
            failure_class=classification.failure_class,
            failure_details=classification.to_details(),
        )
        logger.warning(
            "Shard %s failed (%s): %s",
            shard.id,
            classification.failure_class.value,
            failure,
        )
        return SessionStatus.FAILED

    registry.set_status(shard.id, SessionStatus.COMPLETE, exit_code=session.returncode)
    logger.info("Shard %s complete", shard.id)
    return SessionStatus.COMPLETE


class ShardOrchestrator:
    """Schedules shard sessions by dependency graph and parallelism ceiling."""

    def __init__(  # noqa: PLR0913
        self,
        shards: Iterable[Shard],
        session_factory: SessionFactory,
        registry: SessionRegistry | None = None,
        *,
        max_parallel: int = 3,
        completed: Iterable[str] = (),
        prompt_builder: ShardPromptBuilder | None = None,
    ) -> None:
        if max_parallel <= 0:
            raise ValueError("max_parallel must be a positive integer.")
        self.shards = {shard.id: shard for shard in shards}
        self.session_factory = session_factory
        self.registry = registry or SessionRegistry()
        self.max_parallel = max_parallel
        self.completed = set(completed)
        self.prompt_builder = prompt_builder or ShardPromptBuilder()
        self._tasks: dict[asyncio.Task[SessionStatus], str] = {}

    async def run(self) -> OrchestrationSummary:
        graph = build_graph(self.shards.values())
        cycles = find_cycles(graph)
        for cycle in cycles:
            logger.warning("Dependency cycle, shards will not run: %s", " → ".join(cycle))

        try:
            while True:
                graph = build_graph(self.shards.values())
                self._launch_ready(graph)
                if not self._tasks:
                    break
                done, _ = await asyncio.wait(
                    list(self._tasks),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    self._collect(task)
        finally:
            await self._cancel_outstanding()

        return self._summary(graph, cycles)

    def select_launchable(self, graph: DependencyGraph) -> list[str]:
        """Pick ready shards, in execution order, that may run with everything running."""

        running = self.registry.running_ids() & set(self.shards)
        completed = self.completed | self.registry.completed_ids()
        blocked_out = running | self.registry.failed_ids()
        ready = set(ready_to_run(graph, completed, blocked_out))

        chosen: list[str] = []
        for shard_id in graph.execution_order:
            if len(running) + len(chosen) >= self.max_parallel:
                break
            if shard_id not in ready:
                continue
            peers = [*running, *chosen]
            if all(can_run_in_parallel(shard_id, other, graph) for other in peers):
                chosen.append(shard_id)
        return chosen

    def _launch_ready(self, graph: DependencyGraph) -> None:
        for shard_id in self.select_launchable(graph):
            shard = self.shards[shard_id]
            persona = assign_persona(shard.type)
            self.registry.launch(shard_id, agent=persona)
            logger.info("Launching shard %s (%s)", shard_id, persona)
            task = asyncio.create_task(self._run_one(shard))
            self._tasks[task] = shard_id

    async def _run_one(self, shard: Shard) -> SessionStatus:
        session = self.session_factory(shard)
        return await run_shard_session(
            shard,
            session,
            self.registry,
            prompt=self.prompt_builder.build(shard),
        )

    def _collect(self, task: asyncio.Task[SessionStatus]) -> None:
        shard_id = self._tasks.pop(task)
        error = task.exception()
        if error is None:
            return
        logger.error("Shard %s crashed: %s", shard_id, error, exc_info=error)
        classification = classify_session_failure(error)
        self.registry.append_output(shard_id, f"[error] {error}\n")
        self.registry.set_status(
            shard_id,
            SessionStatus.FAILED,
            failure_class=classification.failure_class,
            failure_details=classification.to_details(),
        )

    async def _cancel_outstanding(self) -> None:
        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _summary(self, graph: DependencyGraph, cycles: list[list[str]]) -> OrchestrationSummary:
        completed_now = self.registry.completed_ids()
        failed_now = self.registry.failed_ids()
        summary = OrchestrationSummary(cycles=cycles)
        for shard_id in graph.execution_order:
            if shard_id in self.completed:
                continue
            if shard_id in completed_now:
                summary.completed.append(shard_id)
            elif shard_id in failed_now:
                summary.failed.append(shard_id)
            else:
                summary.blocked.append(shard_id)
        return summary

