"""
Retry and catch policy configuration for Task and Parallel states.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates retry behavior, allowing different retry strategies
per error kind without modifying the state execution code.

Safe default: a state without retry policies is never retried.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pyfuncflow.core.errors import ValidationIssue

_RETRY_FIELDS = frozenset({"error_equals", "interval_seconds", "max_attempts", "backoff_rate"})
_CATCH_FIELDS = frozenset({"error_equals", "next", "result_path"})


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry behavior for one family of error kinds.

    Policies are scanned in declaration order; the first one whose
    ``error_equals`` matches the failure is used.

    Examples:
        # Retry any task failure three times: 1s, 2s, 4s
        policy = RetryPolicy(error_equals=("States.TaskFailed",))

        # Custom policy: full control
        policy = RetryPolicy(
            error_equals=("States.Timeout", "NetworkError"),
            interval_seconds=0.5,
            max_attempts=5,
            backoff_rate=1.5,
        )
    """

    error_equals: tuple[str, ...]
    """Error kinds this policy applies to. ``States.ALL`` matches everything."""

    interval_seconds: float = 1.0
    """Delay before the first retry in seconds.

    Default: 1.0
    """

    max_attempts: int = 3
    """Maximum number of retries (the first attempt is not counted).

    For example, max_attempts = 3 means:
    - Attempt 1: immediate (first try)
    - Retry 1: after interval_seconds
    - Retry 2: after interval_seconds * backoff_rate
    - Retry 3: after interval_seconds * backoff_rate^2
    - A fourth failure is routed to catch (or is fatal)

    Default: 3
    """

    backoff_rate: float = 2.0
    """Multiplier for exponential backoff.

    Each retry delay is calculated as:
    interval_seconds * backoff_rate^retry_count (retry_count is 0-indexed)

    Default: 2.0 (doubles each time)
    """

    def delay_for_retry(self, retry_count: int) -> float | None:
        """
        Calculate the delay before the next retry.

        Args:
            retry_count: Retries already performed for this state attempt

        Returns:
            Delay in seconds before the next retry, or None if exhausted.

        Example:
            policy = RetryPolicy(("States.ALL",), interval_seconds=1, backoff_rate=2)
            policy.delay_for_retry(0)  # 1.0
            policy.delay_for_retry(1)  # 2.0
            policy.delay_for_retry(2)  # 4.0
            policy.delay_for_retry(3)  # None (max attempts reached)
        """
        if retry_count >= self.max_attempts:
            return None
        return self.interval_seconds * self.backoff_rate**retry_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_equals": list(self.error_equals),
            "interval_seconds": self.interval_seconds,
            "max_attempts": self.max_attempts,
            "backoff_rate": self.backoff_rate,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], issues: list[ValidationIssue] | None = None, path: str = "retry"
    ) -> RetryPolicy:
        """Build a policy, appending wire-format problems to ``issues`` when given."""
        if issues is not None:
            _check_fields(data, _RETRY_FIELDS, issues, path)
        return cls(
            error_equals=_error_kinds(data, issues, path),
            interval_seconds=data.get("interval_seconds", 1.0),
            max_attempts=data.get("max_attempts", 3),
            backoff_rate=data.get("backoff_rate", 2.0),
        )

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"RetryPolicy(error_equals={list(self.error_equals)}, "
            f"interval_seconds={self.interval_seconds}, "
            f"max_attempts={self.max_attempts}, "
            f"backoff_rate={self.backoff_rate})"
        )


@dataclass(frozen=True)
class CatchConfig:
    """
    Fallback transition taken when retries are exhausted or do not apply.

    Attributes:
        error_equals: Error kinds this catcher handles
        next: State to continue with
        result_path: Where the error payload is merged into the state input.
            Absent means the state input is passed on unchanged.
    """

    error_equals: tuple[str, ...]
    next: str
    result_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"error_equals": list(self.error_equals), "next": self.next}
        if self.result_path is not None:
            data["result_path"] = self.result_path
        return data

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], issues: list[ValidationIssue] | None = None, path: str = "catch"
    ) -> CatchConfig:
        """Build a catcher, appending wire-format problems to ``issues`` when given."""
        result_path = data.get("result_path")
        if issues is not None:
            _check_fields(data, _CATCH_FIELDS, issues, path)
            if result_path is not None and not isinstance(result_path, str):
                issues.append(ValidationIssue(f"{path}.result_path", "expects a string"))
                result_path = None
        return cls(
            error_equals=_error_kinds(data, issues, path),
            next=data.get("next", ""),
            result_path=result_path,
        )


def _check_fields(
    data: dict[str, Any], allowed: frozenset[str], issues: list[ValidationIssue], path: str
) -> None:
    for key in data:
        if key not in allowed:
            issues.append(ValidationIssue(f"{path}.{key}", f"unknown field {key!r}"))


def _error_kinds(
    data: dict[str, Any], issues: list[ValidationIssue] | None, path: str
) -> tuple[str, ...]:
    value = data.get("error_equals")
    if value is None:
        return ()
    if not isinstance(value, list | tuple):
        if issues is not None:
            issues.append(ValidationIssue(f"{path}.error_equals", "expects a list of error kinds"))
        return ()
    return tuple(value)
