"""Shard record provider backed by markdown shard files."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from shard_orchestrator.graph.models import Shard, ShardStatus, ShardType

logger = logging.getLogger(__name__)

SHARD_FILE_GLOB = "shard-*.md"

_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_ISSUE_RE = re.compile(r"#(\d+)")

_BACKEND_FILE_MARKERS = ("api", "server", "convex", "schema")
_BACKEND_TEXT_MARKERS = ("mutation", "query", "database")
_FRONTEND_FILE_MARKERS = ("component", ".tsx", "src/app", "src/components")
_FRONTEND_TEXT_MARKERS = ("react", "ui")
_DOCS_FILE_MARKERS = ("docs/", ".md")
_DOCS_TEXT_MARKERS = ("documentation",)
_EMPTY_LIST_PLACEHOLDERS = frozenset({"none", "n/a", "tbd"})


def parse_shard(content: str, *, shard_id: str, file: str = "") -> Shard:
    """Parse shard markdown into a ``Shard`` record."""

    title = ""
    section = ""
    context_lines: list[str] = []
    task_lines: list[str] = []
    required_reading: list[str] = []
    new_in_shard: list[str] = []
    acceptance: list[str] = []
    creates: list[str] = []
    depends_on: list[str] = []
    modifies: list[str] = []
    issue_number: int | None = None
    model: str | None = None

    for line in content.splitlines():
        if line.startswith("# "):
            title = line[2:].strip()
            continue
        if line.startswith("## "):
            section = line[3:].strip().lower()
            continue

        if section == "required reading":
            if line.startswith("- ["):
                match = _LINK_RE.search(line)
                if match:
                    required_reading.append(match.group(2))
        elif section == "context":
            if line.strip():
                context_lines.append(line)
        elif section == "task":
            if line.strip():
                task_lines.append(line)
        elif section == "new in this shard":
            if line.startswith("- ") and not _is_placeholder(line[2:]):
                new_in_shard.append(line[2:].strip())
        elif section == "acceptance criteria":
            if line.startswith(("- [ ]", "- [x]")):
                acceptance.append(line[6:].strip())
        elif section == "dependencies":
            if line.startswith("- Creates:"):
                creates.extend(_parse_list(line[len("- Creates:") :]))
            elif line.startswith("- Depends on:"):
                depends_on.extend(_parse_list(line[len("- Depends on:") :]))
            elif line.startswith("- Modifies:"):
                modifies.extend(_parse_list(line[len("- Modifies:") :]))
        elif section == "linked issue":
            match = _ISSUE_RE.search(line)
            if match:
                issue_number = int(match.group(1))
        elif section == "model override":
            if line.strip() and not line.startswith("<!--"):
                model = line.strip()

    return Shard(
        id=shard_id,
        creates=tuple(creates),
        depends_on=tuple(depends_on),
        modifies=tuple(modifies),
        status=ShardStatus.READY_TO_BUILD,
        title=title or shard_id,
        file=file,
        type=infer_shard_type(content, creates, modifies),
        context="\n".join(context_lines).strip(),
        task="\n".join(task_lines).strip(),
        new_in_shard=tuple(new_in_shard),
        acceptance_criteria=tuple(acceptance),
        required_reading=tuple(required_reading),
        issue_number=issue_number,
        model=model,
    )


def read_shard(path: Path) -> Shard | None:
    """Read one shard file; unreadable files yield ``None``."""

    try:
        content = path.read_text("utf-8")
    except OSError as error:
        logger.warning("Cannot read shard file %s: %s", path, error)
        return None
    return parse_shard(content, shard_id=path.stem, file=str(path))


def scan_sprint(sprint_dir: Path) -> list[Shard]:
    """Return every shard of a sprint directory ordered by file name."""

    if not sprint_dir.is_dir():
        return []
    shards: list[Shard] = []
    for path in sorted(sprint_dir.glob(SHARD_FILE_GLOB)):
        if not path.is_file():
            continue
        shard = read_shard(path)
        if shard is not None:
            shards.append(shard)
    return shards


def infer_shard_type(
    content: str,
    creates: list[str] | tuple[str, ...],
    modifies: list[str] | tuple[str, ...],
) -> ShardType:
    """Guess the shard type from touched files and content keywords."""

    all_files = " ".join([*creates, *modifies]).lower()
    text = content.lower()

    has_backend = _contains_any(all_files, _BACKEND_FILE_MARKERS) or _contains_any(
        text,
        _BACKEND_TEXT_MARKERS,
    )
    has_frontend = _contains_any(all_files, _FRONTEND_FILE_MARKERS) or _contains_any(
        text,
        _FRONTEND_TEXT_MARKERS,
    )
    has_docs = _contains_any(all_files, _DOCS_FILE_MARKERS) or _contains_any(
        text,
        _DOCS_TEXT_MARKERS,
    )

    if has_docs and not has_backend and not has_frontend:
        return ShardType.DOCS
    if has_backend and has_frontend:
        return ShardType.FULLSTACK
    if has_backend:
        return ShardType.BACKEND
    if has_frontend:
        return ShardType.FRONTEND
    return ShardType.FULLSTACK


def _parse_list(raw: str) -> list[str]:
    """Split a comma separated artifact list; placeholders such as "None" mean empty."""

    items = [part.strip() for part in raw.split(",")]
    return [item for item in items if item and not _is_placeholder(item)]


def _is_placeholder(item: str) -> bool:
    return item.strip().lower() in _EMPTY_LIST_PLACEHOLDERS


def _contains_any(haystack: str, needles: tuple[str, ...]) -> bool:
    return any(needle in haystack for needle in needles)
