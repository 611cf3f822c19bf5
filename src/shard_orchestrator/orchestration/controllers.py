"""Controllers for shard orchestration CLI commands."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from shard_orchestrator.agent.adapter import AgentLaunchOptions, SessionAdapter
from shard_orchestrator.agent.catalog import all_models, is_custom_model
from shard_orchestrator.agent.oneshot import OneShotInvocation, run_agent_once
from shard_orchestrator.config import Settings
from shard_orchestrator.graph.builder import build_graph, find_cycles, ready_to_run, render_graph
from shard_orchestrator.graph.models import Shard
from shard_orchestrator.graph.shard_files import scan_sprint
from shard_orchestrator.orchestration.models import OrchestrationSummary, SessionStatus
from shard_orchestrator.orchestration.policy import ShardOrchestrator, ShardPromptBuilder
from shard_orchestrator.orchestration.registry import SessionRegistry


@dataclass(slots=True)
class GraphCommand:
    """CLI inputs for dependency graph rendering."""

    sprint_dir: Path


@dataclass(slots=True)
class ReadyCommand:
    """CLI inputs for ready-set query."""

    sprint_dir: Path
    completed: tuple[str, ...] = ()
    in_progress: tuple[str, ...] = ()


@dataclass(slots=True)
class RunCommand:
    """CLI inputs for orchestrating a sprint."""

    sprint_dir: Path
    cwd: Path
    max_parallel: int | None = None
    model: str | None = None
    auto_level: str | None = None
    completed: tuple[str, ...] = ()


@dataclass(slots=True)
class AskCommand:
    """CLI inputs for a one-shot agent prompt."""

    prompt: str
    cwd: Path | None = None
    model: str | None = None
    auto_level: str | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class CommandResult:
    """Report to render in CLI plus overall outcome."""

    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Coordinates graph inspection, model listing and sprint execution."""

    def graph(self, command: GraphCommand) -> list[str]:
        shards = scan_sprint(command.sprint_dir)
        if not shards:
            return [f"No shards found in {command.sprint_dir}"]
        graph = build_graph(shards)
        lines = render_graph(graph).splitlines()
        for cycle in find_cycles(graph):
            lines.append(f"Warning: dependency cycle {' → '.join(cycle)}")
        return lines

    def ready(self, command: ReadyCommand) -> list[str]:
        shards = scan_sprint(command.sprint_dir)
        graph = build_graph(shards)
        ready = ready_to_run(graph, set(command.completed), set(command.in_progress))
        if not ready:
            return ["No shards ready to run."]
        by_id = {shard.id: shard for shard in shards}
        lines = [f"Ready to run ({len(ready)}):"]
        for shard_id in ready:
            title = by_id[shard_id].title
            lines.append(f"  {shard_id}" + (f"  {title}" if title else ""))
        return lines

    def models(self) -> list[str]:
        settings = Settings.from_env()
        lines = ["Available models:"]
        for model in all_models(settings.factory.settings_path):
            marker = " (custom)" if is_custom_model(model.id) else ""
            default = " [default]" if model.id == settings.agent.model else ""
            lines.append(f"  {model.id}  {model.display_name}{marker}{default}")
        return lines

    def run(self, command: RunCommand) -> CommandResult:
        settings = Settings.from_env()
        if command.max_parallel is not None:
            settings.orchestration.max_parallel = command.max_parallel
        if command.model:
            settings.agent.model = command.model
        if command.auto_level:
            settings.agent.auto_level = command.auto_level.lower()
        try:
            settings.validate()
        except ValueError as error:
            return CommandResult(lines=[str(error)], success=False)

        shards = scan_sprint(command.sprint_dir)
        if not shards:
            return CommandResult(lines=[f"No shards found in {command.sprint_dir}"], success=False)

        def session_factory(shard: Shard) -> SessionAdapter:
            return SessionAdapter(
                AgentLaunchOptions.from_settings(
                    settings.agent,
                    cwd=command.cwd,
                    model=command.model or shard.model,
                ),
            )

        registry = SessionRegistry()
        orchestrator = ShardOrchestrator(
            shards,
            session_factory,
            registry,
            max_parallel=settings.orchestration.max_parallel,
            completed=command.completed,
            prompt_builder=ShardPromptBuilder(settings.factory.personas_dir),
        )
        summary = asyncio.run(orchestrator.run())
        return CommandResult(
            lines=_summary_lines(summary, registry),
            success=summary.succeeded,
        )

    def ask(self, command: AskCommand) -> CommandResult:
        settings = Settings.from_env()
        result = asyncio.run(
            run_agent_once(
                OneShotInvocation(
                    prompt=command.prompt,
                    model=command.model,
                    auto_level=command.auto_level,
                    cwd=command.cwd,
                    timeout_seconds=command.timeout_seconds,
                ),
                settings.agent,
            ),
        )
        lines = result.output.rstrip("\n").splitlines()
        if result.timed_out:
            lines.append("Agent timed out.")
        elif not result.success:
            lines.append(f"Agent failed with exit code {result.exit_code}.")
        return CommandResult(lines=lines, success=result.success)


def _summary_lines(summary: OrchestrationSummary, registry: SessionRegistry) -> list[str]:
    lines = [
        "Orchestration finished: "
        f"completed={len(summary.completed)} "
        f"failed={len(summary.failed)} "
        f"blocked={len(summary.blocked)}",
    ]
    for entry in registry.entries():
        duration = ""
        if entry.completed_at is not None:
            duration = f" {(entry.completed_at - entry.started_at).total_seconds():.1f}s"
        failure = f" ({entry.failure_class.value})" if entry.failure_class else ""
        lines.append(f"  {entry.shard_id}: {entry.status.value}{failure}{duration}")
        if entry.status is SessionStatus.FAILED:
            lines.extend(f"    {line}" for line in entry.text.splitlines()[-5:])
    if summary.blocked:
        lines.append(f"Blocked: {', '.join(summary.blocked)}")
    for cycle in summary.cycles:
        lines.append(f"Dependency cycle: {' → '.join(cycle)}")
    return lines
