"""In-memory registry of launched shard sessions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from shard_orchestrator.orchestration.models import FailureClass, RunningSession, SessionStatus

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class SessionRegistry:
    """Tracks running and finished sessions keyed by shard id.

    Entries are only removed by an explicit ``cleanup`` call. Status moves
    from running to complete or failed exactly once; the completion timestamp
    is assigned on that transition.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._entries: dict[str, RunningSession] = {}

    def launch(self, shard_id: str, *, agent: str | None = None) -> RunningSession:
        existing = self._entries.get(shard_id)
        if existing is not None and existing.is_running():
            raise ValueError(f"Shard {shard_id} already has a running session.")
        entry = RunningSession(shard_id=shard_id, started_at=self._clock(), agent=agent)
        self._entries[shard_id] = entry
        logger.debug("Registered session for shard %s", shard_id)
        return entry

    def append_output(self, shard_id: str, text: str) -> None:
        entry = self._entries.get(shard_id)
        if entry is None:
            logger.debug("Dropping output for unknown shard %s", shard_id)
            return
        entry.output.append(text)

    def set_session_id(self, shard_id: str, session_id: str) -> None:
        entry = self._entries.get(shard_id)
        if entry is not None:
            entry.session_id = session_id

    def set_status(  # noqa: PLR0913
        self,
        shard_id: str,
        status: SessionStatus,
        *,
        exit_code: int | None = None,
        failure_class: FailureClass | None = None,
        failure_details: dict[str, object] | None = None,
    ) -> bool:
        """Apply a status transition; returns ``False`` when it was ignored."""

        entry = self._entries.get(shard_id)
        if entry is None:
            logger.debug("Status %s for unknown shard %s ignored", status.value, shard_id)
            return False
        if not entry.is_running():
            logger.debug(
                "Shard %s already %s; ignoring %s",
                shard_id,
                entry.status.value,
                status.value,
            )
            return False
        if status is SessionStatus.RUNNING:
            return False

        entry.status = status
        entry.completed_at = self._clock()
        entry.exit_code = exit_code
        entry.failure_class = failure_class
        entry.failure_details = failure_details
        return True

    def cleanup(self) -> list[str]:
        """Remove every non-running entry; returns the removed shard ids."""

        removed = [shard_id for shard_id, entry in self._entries.items() if not entry.is_running()]
        for shard_id in removed:
            del self._entries[shard_id]
        return removed

    def get(self, shard_id: str) -> RunningSession | None:
        return self._entries.get(shard_id)

    def entries(self) -> list[RunningSession]:
        return list(self._entries.values())

    def running_ids(self) -> set[str]:
        return self._ids_with(SessionStatus.RUNNING)

    def completed_ids(self) -> set[str]:
        return self._ids_with(SessionStatus.COMPLETE)

    def failed_ids(self) -> set[str]:
        return self._ids_with(SessionStatus.FAILED)

    def _ids_with(self, status: SessionStatus) -> set[str]:
        return {shard_id for shard_id, entry in self._entries.items() if entry.status is status}
