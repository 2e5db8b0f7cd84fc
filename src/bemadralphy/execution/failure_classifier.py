"""Deterministic failure classification for task retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from bemadralphy.errors import BudgetExceededError, CommandError, ConfigurationError


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


_FATAL_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "authentication",
    "invalid api key",
    "not found",
)
_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "network",
    "temporarily unavailable",
    "quota",
)


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.RETRYABLE

    def to_details(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(error: BaseException) -> FailureClassification:
    """Classify an attempt error; unmatched errors are fatal."""

    if isinstance(error, BudgetExceededError | ConfigurationError):
        return FailureClassification(kind=ErrorKind.FATAL, matched_rule="policy_error")

    haystack = _normalize_text(error)

    pattern = _first_match(haystack, _FATAL_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.FATAL,
            matched_rule="fatal_pattern",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RETRYABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.RETRYABLE,
            matched_rule="retryable_pattern",
            matched_pattern=pattern,
        )

    if isinstance(error, TimeoutError | ConnectionError):
        return FailureClassification(kind=ErrorKind.RETRYABLE, matched_rule="transient_type")

    if isinstance(error, CommandError) and error.transient:
        return FailureClassification(kind=ErrorKind.RETRYABLE, matched_rule="transient_command")

    return FailureClassification(kind=ErrorKind.FATAL, matched_rule="fallback_fatal")


def is_retryable(error: BaseException) -> bool:
    return classify_error(error).retryable


def _normalize_text(error: BaseException) -> str:
    parts = [str(error)]
    stderr = getattr(error, "stderr", "")
    if stderr:
        parts.append(str(stderr))
    return "\n".join(parts).lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
