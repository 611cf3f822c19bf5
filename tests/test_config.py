from __future__ import annotations

from pathlib import Path

import allure
import pytest

from shard_orchestrator.agent.adapter import AgentLaunchOptions
from shard_orchestrator.config import (
    DEFAULT_MODEL,
    AgentSettings,
    OrchestrationSettings,
    Settings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults(monkeypatch) -> None:
    monkeypatch.setenv("HOME", "/home/dev")

    settings = Settings.from_env()

    assert settings.agent.command == ("droid",)
    assert settings.agent.model == DEFAULT_MODEL
    assert settings.agent.auto_level == "medium"
    assert settings.agent.prompt_timeout_seconds == 300
    assert settings.agent.request_timeout_seconds == 30
    assert settings.orchestration.max_parallel == 3
    assert settings.factory.home == Path("/home/dev/.factory")
    assert settings.factory.settings_path == Path("/home/dev/.factory/settings.json")
    assert settings.factory.personas_dir == Path("/home/dev/.factory/droids")
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SHARD_ORCHESTRATOR_AGENT_COMMAND", "npx droid --verbose")
    monkeypatch.setenv("SHARD_ORCHESTRATOR_MODEL", " claude-opus-4-20250514 ")
    monkeypatch.setenv("SHARD_ORCHESTRATOR_AUTO_LEVEL", "HIGH")
    monkeypatch.setenv("SHARD_ORCHESTRATOR_PROMPT_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("SHARD_ORCHESTRATOR_MAX_PARALLEL", "5")
    monkeypatch.setenv("SHARD_ORCHESTRATOR_FACTORY_HOME", str(tmp_path))

    settings = Settings.from_env()

    assert settings.agent.command == ("npx", "droid", "--verbose")
    assert settings.agent.model == "claude-opus-4-20250514"
    assert settings.agent.auto_level == "high"
    assert settings.agent.prompt_timeout_seconds == 12.5
    assert settings.orchestration.max_parallel == 5
    assert settings.factory.settings_path == tmp_path / "settings.json"


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(agent=AgentSettings(command=())), "AGENT_COMMAND"),
        (Settings(agent=AgentSettings(model="")), "SHARD_ORCHESTRATOR_MODEL"),
        (Settings(agent=AgentSettings(auto_level="yolo")), "must be one of low, medium, high"),
        (Settings(agent=AgentSettings(prompt_timeout_seconds=0)), "PROMPT_TIMEOUT_SECONDS"),
        (Settings(agent=AgentSettings(request_timeout_seconds=-1)), "REQUEST_TIMEOUT_SECONDS"),
        (Settings(agent=AgentSettings(stop_grace_seconds=-1)), "STOP_GRACE_SECONDS"),
        (
            Settings(orchestration=OrchestrationSettings(max_parallel=0)),
            "MAX_PARALLEL must be a positive integer",
        ),
    ],
)
def test_validate_rejects_invalid_settings(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_launch_options_take_agent_settings_with_overrides(tmp_path: Path) -> None:
    agent = AgentSettings(
        command=("agent",),
        model="claude-opus-4-20250514",
        prompt_timeout_seconds=42,
        stream_limit_bytes=1024,
    )

    options = AgentLaunchOptions.from_settings(agent, cwd=tmp_path, auto_level="low")
    forced = AgentLaunchOptions.from_settings(agent, cwd=tmp_path, model="claude-3-5-haiku")

    assert options.model == "claude-opus-4-20250514"
    assert options.auto_level == "low"
    assert options.prompt_timeout_seconds == 42
    assert options.stream_limit_bytes == 1024
    assert options.command == ("agent",)
    assert forced.model == "claude-3-5-haiku"
    assert forced.auto_level == "medium"
