"""Deterministic diagnosis of non-zero agent exits."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

SUBTASK_FAILURE_CLASSIFIER_VERSION = 1


class FailureDiagnosis(str, Enum):
    """Coarse cause of an agent process failure, for operators."""

    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    AGENT_CRASH = "agent_crash"
    UNKNOWN = "unknown"


_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
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
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
)
_CRASH_PATTERNS: tuple[str, ...] = (
    "traceback (most recent call last)",
    "panicked at",
    "segmentation fault",
    "fatal error",
)


@dataclass(slots=True)
class SubtaskFailureClassification:
    """Normalized failure classification result."""

    diagnosis: FailureDiagnosis
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self, *, exit_code: int) -> dict[str, object]:
        """Serialize classifier diagnostics for subtask events."""

        return {
            "classifier_version": SUBTASK_FAILURE_CLASSIFIER_VERSION,
            "exit_code": exit_code,
            "diagnosis": self.diagnosis.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


_RULES: tuple[tuple[FailureDiagnosis, tuple[str, ...]], ...] = (
    (FailureDiagnosis.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
    (FailureDiagnosis.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
    (FailureDiagnosis.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
    (FailureDiagnosis.TRANSIENT, _TRANSIENT_PATTERNS),
    (FailureDiagnosis.AGENT_CRASH, _CRASH_PATTERNS),
)


def classify_exit_failure(*, stdout: str, stderr: str) -> SubtaskFailureClassification:
    """Classify a non-zero exit by scanning the tail of the agent's output."""

    haystack = f"{stderr}\n{stdout}".lower()
    for diagnosis, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return SubtaskFailureClassification(
                diagnosis=diagnosis,
                matched_rule=diagnosis.value,
                matched_pattern=pattern,
            )
    return SubtaskFailureClassification(
        diagnosis=FailureDiagnosis.UNKNOWN,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
