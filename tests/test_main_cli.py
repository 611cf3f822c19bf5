from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from shard_orchestrator.agent.echo_agent import SCENARIO_ENV
from shard_orchestrator.main import shard_orchestrator

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Shard Orchestrator Commands"),
]


@pytest.fixture()
def factory_home(monkeypatch, tmp_path: Path) -> Path:
    home = tmp_path / "factory"
    home.mkdir()
    monkeypatch.setenv("SHARD_ORCHESTRATOR_FACTORY_HOME", str(home))
    return home


def test_graph_renders_parallel_groups(sprint_dir: Path) -> None:
    result = CliRunner().invoke(shard_orchestrator, ["graph", str(sprint_dir)])

    assert result.exit_code == 0, result.output
    assert "Dependency Graph:" in result.output
    assert "[shard-01-schema | shard-03-docs]" in result.output
    assert "[shard-02-api]" in result.output
    assert "Warning" not in result.output


def test_graph_reports_empty_sprint(tmp_path: Path) -> None:
    result = CliRunner().invoke(shard_orchestrator, ["graph", str(tmp_path)])

    assert result.exit_code == 0
    assert f"No shards found in {tmp_path}" in result.output


def test_ready_excludes_blocked_and_in_progress(sprint_dir: Path) -> None:
    runner = CliRunner()

    initial = runner.invoke(
        shard_orchestrator,
        ["ready", str(sprint_dir), "--in-progress", "shard-03-docs"],
    )
    after_schema = runner.invoke(
        shard_orchestrator,
        [
            "ready",
            str(sprint_dir),
            "--completed",
            "shard-01-schema",
            "--completed",
            "shard-03-docs",
        ],
    )

    assert initial.exit_code == 0
    assert "Ready to run (1):" in initial.output
    assert "shard-01-schema  Schema" in initial.output
    assert "shard-02-api" not in initial.output
    assert after_schema.exit_code == 0
    assert "Ready to run (1):" in after_schema.output
    assert "shard-02-api  API" in after_schema.output


def test_models_lists_builtin_and_custom(factory_home: Path) -> None:
    (factory_home / "settings.json").write_text(
        json.dumps(
            {"customModels": [{"id": "custom:local", "model": "llama", "displayName": "Local"}]},
        ),
        "utf-8",
    )

    result = CliRunner().invoke(shard_orchestrator, ["models"])

    assert result.exit_code == 0
    assert "Available models:" in result.output
    assert "claude-sonnet-4-5-20250929  Claude Sonnet 4.5 [default]" in result.output
    assert "custom:local  Local (custom)" in result.output


def test_run_completes_sprint_with_echo_agent(
    sprint_dir: Path,
    tmp_path: Path,
    factory_home: Path,
    echo_agent,
) -> None:
    result = CliRunner().invoke(
        shard_orchestrator,
        ["run", str(sprint_dir), "--cwd", str(tmp_path), "--max-parallel", "2"],
    )

    assert result.exit_code == 0, result.output
    assert "Orchestration finished: completed=3 failed=0 blocked=0" in result.output
    assert "shard-02-api: complete" in result.output


def test_run_fails_when_agent_rejects_prompts(
    sprint_dir: Path,
    tmp_path: Path,
    factory_home: Path,
    echo_agent,
    monkeypatch,
) -> None:
    monkeypatch.setenv(SCENARIO_ENV, "error")

    result = CliRunner().invoke(
        shard_orchestrator,
        ["run", str(sprint_dir), "--cwd", str(tmp_path)],
    )

    assert result.exit_code == 1
    assert "Orchestration finished: completed=0 failed=2 blocked=1" in result.output
    assert "shard-01-schema: failed (agent_reported)" in result.output
    assert "Blocked: shard-02-api" in result.output


def test_run_rejects_invalid_settings(sprint_dir: Path, monkeypatch) -> None:
    monkeypatch.setenv("SHARD_ORCHESTRATOR_PROMPT_TIMEOUT_SECONDS", "0")

    result = CliRunner().invoke(shard_orchestrator, ["run", str(sprint_dir)])

    assert result.exit_code == 1
    assert "SHARD_ORCHESTRATOR_PROMPT_TIMEOUT_SECONDS must be > 0." in result.output


def test_ask_prints_agent_output(tmp_path: Path, echo_agent) -> None:
    result = CliRunner().invoke(
        shard_orchestrator,
        ["ask", "hello there", "--cwd", str(tmp_path), "--model", "claude-opus-4-20250514"],
    )

    assert result.exit_code == 0, result.output
    assert "model: claude-opus-4-20250514" in result.output
    assert "Echo: hello there" in result.output


def test_ask_reports_agent_failure(tmp_path: Path, echo_agent, monkeypatch) -> None:
    monkeypatch.setenv(SCENARIO_ENV, "fail")

    result = CliRunner().invoke(shard_orchestrator, ["ask", "hello", "--cwd", str(tmp_path)])

    assert result.exit_code == 1
    assert "rate limit exceeded" in result.output
    assert "Agent failed with exit code 2." in result.output
