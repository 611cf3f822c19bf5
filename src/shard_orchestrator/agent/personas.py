"""Agent personas: which specialist handles a shard and its instructions."""

from __future__ import annotations

import logging
from pathlib import Path

from shard_orchestrator.graph.models import ShardType

logger = logging.getLogger(__name__)

DEFAULT_PERSONA = "fullstack-developer"

_PERSONA_BY_TYPE: dict[ShardType, str] = {
    ShardType.BACKEND: "senior-backend-engineer",
    ShardType.FRONTEND: "frontend-developer",
    ShardType.FULLSTACK: "fullstack-developer",
    ShardType.DOCS: "documentation-specialist",
}


def assign_persona(shard_type: ShardType | str) -> str:
    """Map a shard type to the persona that should implement it."""

    try:
        return _PERSONA_BY_TYPE[ShardType(shard_type)]
    except ValueError:
        return DEFAULT_PERSONA


def list_personas(personas_dir: Path) -> list[str]:
    if not personas_dir.is_dir():
        return []
    return sorted(path.stem for path in personas_dir.glob("*.md"))


def load_persona_prompt(personas_dir: Path, name: str) -> str | None:
    """Return persona instructions with YAML front matter stripped."""

    path = personas_dir / f"{name}.md"
    try:
        content = path.read_text("utf-8")
    except FileNotFoundError:
        return None
    except OSError as error:
        logger.warning("Cannot read persona %s: %s", path, error)
        return None

    parts = content.split("---")
    if len(parts) >= 3:
        return "---".join(parts[2:]).strip()
    return content


def build_persona_prompt(persona: str, persona_text: str | None, task: str) -> str:
    """Wrap ``task`` with persona instructions when they are available."""

    if not persona_text:
        return task
    return (
        f"You are acting as the {persona} droid. Follow these instructions:\n\n"
        f"{persona_text}\n\n---\n\nTask:\n{task}"
    )
