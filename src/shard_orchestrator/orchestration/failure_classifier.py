"""Deterministic classification of failed shard sessions."""

from __future__ import annotations

from dataclasses import dataclass

from shard_orchestrator.agent.errors import (
    AgentReportedError,
    AgentSessionError,
    ConfigurationError,
    ProcessError,
    RequestTimeoutError,
)
from shard_orchestrator.orchestration.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1
TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "please retry",
    "try again later",
    "temporarily unavailable",
    "connection reset",
    "network error",
)

_PATTERN_RULES: tuple[tuple[str, FailureClass, tuple[str, ...]], ...] = (
    ("billing_or_quota", FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
    ("access_or_auth", FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
    ("model_not_available", FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
    ("transient", FailureClass.BACKEND_TRANSIENT, _TRANSIENT_PATTERNS),
)


@dataclass(slots=True)
class SessionFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None = None

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_session_failure(
    error: BaseException,
    *,
    stderr: str = "",
) -> SessionFailureClassification:
    """Classify a session failure from the raised error and captured stderr."""

    if isinstance(error, RequestTimeoutError):
        return SessionFailureClassification(FailureClass.TIMEOUT, matched_rule="timeout")
    if isinstance(error, ConfigurationError):
        return SessionFailureClassification(
            FailureClass.CONFIGURATION,
            matched_rule="configuration",
        )

    haystack = f"{stderr}\n{error}".lower()
    for rule, failure_class, patterns in _PATTERN_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return SessionFailureClassification(
                failure_class,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if isinstance(error, ProcessError) and error.exit_code in TRANSIENT_EXIT_CODES:
        return SessionFailureClassification(
            FailureClass.BACKEND_TRANSIENT,
            matched_rule="transient_exit_code",
        )
    if isinstance(error, AgentReportedError):
        return SessionFailureClassification(
            FailureClass.AGENT_REPORTED,
            matched_rule="agent_reported",
        )
    if not isinstance(error, AgentSessionError):
        return SessionFailureClassification(
            FailureClass.BACKEND_NON_RETRYABLE,
            matched_rule="unexpected_exception",
        )
    return SessionFailureClassification(
        FailureClass.BACKEND_NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
