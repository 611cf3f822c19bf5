"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from shard_orchestrator.agent.echo_agent import INITIAL_MODEL_ENV, SCENARIO_ENV

ECHO_AGENT_COMMAND: tuple[str, ...] = (sys.executable, "-m", "shard_orchestrator.agent.echo_agent")

SHARD_TEMPLATE = """\
# {title}

## Context
Context for {title}.

## Task
Implement {title}.

## Acceptance Criteria
- [ ] {title} works

## Dependencies
- Creates: {creates}
- Depends on: {depends_on}
- Modifies: {modifies}
"""


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep developer environment variables out of settings-driven tests."""

    for name in list(os.environ):
        if name.startswith("SHARD_ORCHESTRATOR_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def echo_command() -> tuple[str, ...]:
    """Command line that runs the in-package echo agent."""

    return ECHO_AGENT_COMMAND


@pytest.fixture()
def echo_env() -> Callable[..., dict[str, str]]:
    """Build a subprocess environment selecting an echo agent scenario."""

    def _build(scenario: str = "ok", *, initial_model: str | None = None) -> dict[str, str]:
        env = os.environ.copy()
        env[SCENARIO_ENV] = scenario
        if initial_model is not None:
            env[INITIAL_MODEL_ENV] = initial_model
        return env

    return _build


@pytest.fixture()
def echo_agent(monkeypatch):
    """Route settings-driven agent launches to the echo agent."""

    monkeypatch.setenv("SHARD_ORCHESTRATOR_AGENT_COMMAND", shlex.join(ECHO_AGENT_COMMAND))
    monkeypatch.setenv("SHARD_ORCHESTRATOR_STOP_GRACE_SECONDS", "2")


def _write_shard(  # noqa: PLR0913
    sprint_dir: Path,
    shard_id: str,
    *,
    title: str | None = None,
    creates: tuple[str, ...] = (),
    depends_on: tuple[str, ...] = (),
    modifies: tuple[str, ...] = (),
) -> Path:
    path = sprint_dir / f"{shard_id}.md"
    path.write_text(
        SHARD_TEMPLATE.format(
            title=title or shard_id,
            creates=", ".join(creates),
            depends_on=", ".join(depends_on),
            modifies=", ".join(modifies),
        ),
        "utf-8",
    )
    return path


@pytest.fixture()
def write_shard() -> Callable[..., Path]:
    """Write a shard markdown file into a sprint directory."""

    return _write_shard


@pytest.fixture()
def sprint_dir(tmp_path: Path) -> Path:
    """Sprint with a schema shard feeding an api shard and an independent docs shard."""

    directory = tmp_path / "sprint-1"
    directory.mkdir()
    _write_shard(directory, "shard-01-schema", title="Schema", creates=("convex/schema.ts",))
    _write_shard(
        directory,
        "shard-02-api",
        title="API",
        creates=("convex/api.ts",),
        depends_on=("convex/schema.ts",),
    )
    _write_shard(directory, "shard-03-docs", title="Docs", creates=("docs/readme.md",))
    return directory
