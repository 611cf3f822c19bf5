"""Runtime configuration for agent sessions and shard orchestration."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_AUTO_LEVELS = ("low", "medium", "high")
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


@dataclass(slots=True)
class AgentSettings:
    """How the external coding agent is launched and supervised."""

    command: tuple[str, ...] = ("droid",)
    model: str = DEFAULT_MODEL
    auto_level: str = "medium"
    prompt_timeout_seconds: float = 300.0
    request_timeout_seconds: float = 30.0
    oneshot_timeout_seconds: float = 600.0
    stop_grace_seconds: float = 1.0
    stream_limit_bytes: int = 16 * 1024 * 1024


@dataclass(slots=True)
class OrchestrationSettings:
    """Scheduling settings for the orchestration loop."""

    max_parallel: int = 3


@dataclass(slots=True)
class FactorySettings:
    """Locations of agent-side configuration files."""

    home: Path = Path(".factory")

    @property
    def settings_path(self) -> Path:
        return self.home / "settings.json"

    @property
    def personas_dir(self) -> Path:
        return self.home / "droids"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    agent: AgentSettings = field(default_factory=AgentSettings)
    orchestration: OrchestrationSettings = field(default_factory=OrchestrationSettings)
    factory: FactorySettings = field(default_factory=FactorySettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local development."""

        factory_home = os.getenv("SHARD_ORCHESTRATOR_FACTORY_HOME", "").strip()
        return cls(
            agent=AgentSettings(
                command=_env_command("SHARD_ORCHESTRATOR_AGENT_COMMAND", default=("droid",)),
                model=os.getenv("SHARD_ORCHESTRATOR_MODEL", DEFAULT_MODEL).strip(),
                auto_level=os.getenv("SHARD_ORCHESTRATOR_AUTO_LEVEL", "medium").strip().lower(),
                prompt_timeout_seconds=float(
                    os.getenv("SHARD_ORCHESTRATOR_PROMPT_TIMEOUT_SECONDS", "300"),
                ),
                request_timeout_seconds=float(
                    os.getenv("SHARD_ORCHESTRATOR_REQUEST_TIMEOUT_SECONDS", "30"),
                ),
                oneshot_timeout_seconds=float(
                    os.getenv("SHARD_ORCHESTRATOR_ONESHOT_TIMEOUT_SECONDS", "600"),
                ),
                stop_grace_seconds=float(
                    os.getenv("SHARD_ORCHESTRATOR_STOP_GRACE_SECONDS", "1.0"),
                ),
            ),
            orchestration=OrchestrationSettings(
                max_parallel=int(os.getenv("SHARD_ORCHESTRATOR_MAX_PARALLEL", "3")),
            ),
            factory=FactorySettings(
                home=Path(factory_home) if factory_home else Path.home() / ".factory",
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if not self.agent.command:
            raise ValueError("SHARD_ORCHESTRATOR_AGENT_COMMAND must not be empty.")
        if not self.agent.model:
            raise ValueError("SHARD_ORCHESTRATOR_MODEL must not be empty.")
        if self.agent.auto_level not in SUPPORTED_AUTO_LEVELS:
            raise ValueError(
                "SHARD_ORCHESTRATOR_AUTO_LEVEL must be one of "
                f"{', '.join(SUPPORTED_AUTO_LEVELS)}: {self.agent.auto_level!r}",
            )
        if self.agent.prompt_timeout_seconds <= 0:
            raise ValueError("SHARD_ORCHESTRATOR_PROMPT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.request_timeout_seconds <= 0:
            raise ValueError("SHARD_ORCHESTRATOR_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.agent.oneshot_timeout_seconds <= 0:
            raise ValueError("SHARD_ORCHESTRATOR_ONESHOT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.stop_grace_seconds < 0:
            raise ValueError("SHARD_ORCHESTRATOR_STOP_GRACE_SECONDS must be >= 0.")
        if self.orchestration.max_parallel <= 0:
            raise ValueError("SHARD_ORCHESTRATOR_MAX_PARALLEL must be a positive integer.")


def _env_command(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(shlex.split(raw))
