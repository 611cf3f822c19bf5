"""Error taxonomy for agent sessions."""

from __future__ import annotations


class AgentSessionError(RuntimeError):
    """Base class for agent session failures."""


class ConfigurationError(AgentSessionError):
    """Session options are incomplete; raised before any process is spawned."""


class ProtocolParseError(AgentSessionError):
    """A line from the agent could not be decoded as a protocol frame."""

    def __init__(self, message: str, *, line: str) -> None:
        super().__init__(message)
        self.line = line


class RequestTimeoutError(AgentSessionError):
    """A request or prompt did not finish before its deadline."""


class SessionNotStartedError(AgentSessionError):
    """Operation requires a started session."""


class SessionAlreadyRunningError(AgentSessionError):
    """``start`` was called on a session that is already running."""


class SessionStoppedError(AgentSessionError):
    """The session was stopped while the operation was outstanding."""


class ProcessError(AgentSessionError):
    """The agent process could not be spawned or exited unexpectedly."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class PermissionHandlerError(AgentSessionError):
    """The permission handler raised; the request is answered with ``cancel``."""


class AgentReportedError(AgentSessionError):
    """The agent reported an error for the current request or turn."""
