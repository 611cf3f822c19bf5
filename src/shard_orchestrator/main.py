"""CLI entrypoint for shard-orchestrator."""

import logging
from pathlib import Path

import rich_click as click

from shard_orchestrator import __version__
from shard_orchestrator.config import SUPPORTED_AUTO_LEVELS
from shard_orchestrator.orchestration.controllers import (
    AskCommand,
    GraphCommand,
    OrchestratorCliController,
    ReadyCommand,
    RunCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_SPRINT_DIR = click.argument(
    "sprint_dir",
    type=click.Path(path_type=Path, file_okay=False),
)
_LOG_LEVEL = click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for agent and orchestration diagnostics.",
)


@click.group()
@click.version_option(version=__version__, prog_name="shard-orchestrator")
def shard_orchestrator() -> None:
    """Run coding-agent sessions over dependency-linked work shards.

    Shards are markdown files named `shard-*.md` inside a sprint directory.
    """


@shard_orchestrator.command("graph")
@_SPRINT_DIR
def graph(sprint_dir: Path) -> None:
    """Show parallel groups and execution order of a sprint."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.graph(GraphCommand(sprint_dir=sprint_dir)))


@shard_orchestrator.command("ready")
@_SPRINT_DIR
@click.option("--completed", multiple=True, help="Shard id already done. Can be repeated.")
@click.option(
    "--in-progress",
    "in_progress",
    multiple=True,
    help="Shard id currently running. Can be repeated.",
)
def ready(sprint_dir: Path, completed: tuple[str, ...], in_progress: tuple[str, ...]) -> None:
    """List shards whose blockers are all completed."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.ready(
            ReadyCommand(sprint_dir=sprint_dir, completed=completed, in_progress=in_progress),
        ),
    )


@shard_orchestrator.command("models")
def models() -> None:
    """List built-in and custom models."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.models())


@shard_orchestrator.command("run")
@_SPRINT_DIR
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum concurrent agent sessions. Defaults to SHARD_ORCHESTRATOR_MAX_PARALLEL.",
)
@click.option("--model", default=None, help="Model id forced for every shard.")
@click.option(
    "--auto",
    "auto_level",
    type=click.Choice(SUPPORTED_AUTO_LEVELS, case_sensitive=False),
    default=None,
    help="Agent autonomy level.",
)
@click.option("--completed", multiple=True, help="Shard id already done. Can be repeated.")
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Working directory handed to the agent.",
)
@_LOG_LEVEL
def run(  # noqa: PLR0913
    sprint_dir: Path,
    max_parallel: int | None,
    model: str | None,
    auto_level: str | None,
    completed: tuple[str, ...],
    cwd: Path,
    log_level: str,
) -> None:
    """Run every ready shard through an agent session until the sprint settles."""

    _configure_logging(log_level)
    result = ORCHESTRATOR_CONTROLLER.run(
        RunCommand(
            sprint_dir=sprint_dir,
            cwd=cwd,
            max_parallel=max_parallel,
            model=model,
            auto_level=auto_level,
            completed=completed,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Sprint did not complete.")


@shard_orchestrator.command("ask")
@click.argument("prompt")
@click.option("--model", default=None, help="Model id.")
@click.option(
    "--auto",
    "auto_level",
    type=click.Choice(SUPPORTED_AUTO_LEVELS, case_sensitive=False),
    default=None,
    help="Agent autonomy level.",
)
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory handed to the agent.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Deadline for the agent run. Defaults to SHARD_ORCHESTRATOR_ONESHOT_TIMEOUT_SECONDS.",
)
@_LOG_LEVEL
def ask(  # noqa: PLR0913
    prompt: str,
    model: str | None,
    auto_level: str | None,
    cwd: Path | None,
    timeout_seconds: float | None,
    log_level: str,
) -> None:
    """Send one prompt to the agent in non-interactive mode."""

    _configure_logging(log_level)
    result = ORCHESTRATOR_CONTROLLER.ask(
        AskCommand(
            prompt=prompt,
            cwd=cwd,
            model=model,
            auto_level=auto_level,
            timeout_seconds=timeout_seconds,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent run failed.")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    shard_orchestrator()
