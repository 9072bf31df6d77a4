"""Deterministic classification of agent attempts for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Collection, Optional

from .constants import NON_RECOVERABLE_EXIT_CODES, TIMEOUT_EXIT_CODE
from .models import AttemptOutcome, TaskStatus
from .rate_limit import RateLimitController

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "unauthorized",
    "authentication_error",
    "authentication failed",
    "please run /login",
    "permission denied (publickey)",
    "oauth token has expired",
)
_BILLING_PATTERNS: tuple[str, ...] = (
    "credit balance is too low",
    "insufficient credits",
    "billing",
    "payment required",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "not_found_error",
)
_MISSING_BINARY_PATTERNS: tuple[str, ...] = (
    "command not found",
    "no such file or directory",
)


@dataclass(frozen=True)
class FailureClassification:
    """Normalized failure classification result."""

    recoverable: bool
    rule: str
    matched_pattern: Optional[str] = None


@dataclass(frozen=True)
class AttemptClassification:
    outcome: AttemptOutcome
    rule: str = ""
    detail: str = ""


def classify_failure(exit_code: Optional[int], output: str, timed_out: bool = False) -> FailureClassification:
    """Classify a failed attempt as retryable or not."""
    if timed_out or exit_code == TIMEOUT_EXIT_CODE:
        return FailureClassification(recoverable=True, rule="timeout")

    haystack = (output or "").lower()
    if exit_code in NON_RECOVERABLE_EXIT_CODES:
        pattern = _first_match(haystack, _MISSING_BINARY_PATTERNS)
        return FailureClassification(recoverable=False, rule="missing-binary", matched_pattern=pattern)

    for rule, patterns in (
        ("auth", _ACCESS_OR_AUTH_PATTERNS),
        ("billing", _BILLING_PATTERNS),
        ("model-not-found", _MODEL_NOT_AVAILABLE_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(recoverable=False, rule=rule, matched_pattern=pattern)

    return FailureClassification(recoverable=True, rule="retryable")


def classify_attempt(
    *,
    task_status: Optional[TaskStatus],
    completion_statuses: Collection[TaskStatus],
    exit_code: Optional[int],
    output: str,
    timed_out: bool,
    rate_limits: RateLimitController,
) -> AttemptClassification:
    """Combine the completion check, rate-limit detection and failure classification.

    The task bucket decides success: an agent that exits non-zero after moving
    its task into a completion bucket has still done its job. `output` is the
    agent's diagnostic text (see `AgentResult.diagnostics`), never raw stdout.
    """
    if task_status is not None and task_status in completion_statuses:
        return AttemptClassification(AttemptOutcome.SUCCESS, rule="completed", detail=task_status.value)

    limit_line = rate_limits.detect(output)
    if limit_line:
        return AttemptClassification(AttemptOutcome.RATE_LIMITED, rule="rate-limit", detail=limit_line)

    failure = classify_failure(exit_code, output, timed_out)
    if not failure.recoverable:
        return AttemptClassification(
            AttemptOutcome.NON_RECOVERABLE,
            rule=failure.rule,
            detail=failure.matched_pattern or f"exit code {exit_code}",
        )
    detail = "timed out" if timed_out else f"exit code {exit_code}; task not completed"
    return AttemptClassification(AttemptOutcome.RETRYABLE_FAILURE, rule=failure.rule, detail=detail)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> Optional[str]:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
