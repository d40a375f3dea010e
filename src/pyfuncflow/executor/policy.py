"""
Retry/Catch Policy Engine.

Given a failed state attempt, decide what happens next:

1. The first retry policy whose error_equals matches is selected. If
   retry_count < max_attempts, the same state is re-attempted with the
   same input after interval_seconds * backoff_rate^retry_count.
2. Otherwise (no retry policy matches, or it is exhausted) the first
   matching catcher routes to its ``next`` state.
3. Otherwise the error propagates to the owning scope.

Errors that are not routable (cancellation, execution timeout, missing
states) always propagate. Errors that are routable but not retry
eligible (no-match, data path errors) skip straight to step 2.

The engine is pure: it returns a decision and never sleeps or records.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from pyfuncflow.core.errors import WorkflowError
from pyfuncflow.models.retry import CatchConfig, RetryPolicy


@dataclass(frozen=True)
class Retry:
    """Re-attempt the same state after ``delay`` seconds."""

    delay: float
    policy: RetryPolicy


@dataclass(frozen=True)
class Catch:
    """Route to ``catcher.next`` with the error payload merged into the input."""

    catcher: CatchConfig


@dataclass(frozen=True)
class Propagate:
    """No policy applies; the error is fatal for this scope."""


Decision = Retry | Catch | Propagate


def decide(
    retry: Sequence[RetryPolicy],
    catch: Sequence[CatchConfig],
    error: WorkflowError,
    retry_count: int,
) -> Decision:
    """Decide how to handle ``error`` for a state attempt.

    Args:
        retry: The state's retry policies, in declared order
        catch: The state's catchers, in declared order
        error: The failure
        retry_count: Retries already performed for this state attempt

    Example:
        policy = RetryPolicy(("States.TaskFailed",), interval_seconds=1, backoff_rate=2)
        decide([policy], [], error, 0)  # Retry(delay=1.0, ...)
        decide([policy], [], error, 2)  # Retry(delay=4.0, ...)
        decide([policy], [], error, 3)  # Propagate()
    """
    if error.retry_eligible:
        policy = select_retry(retry, error)
        if policy is not None:
            delay = policy.delay_for_retry(retry_count)
            if delay is not None:
                return Retry(delay=delay, policy=policy)

    catcher = select_catch(catch, error)
    if catcher is not None:
        return Catch(catcher=catcher)
    return Propagate()


def select_retry(retry: Sequence[RetryPolicy], error: WorkflowError) -> RetryPolicy | None:
    """First retry policy whose error_equals matches."""
    for policy in retry:
        if error.matches(policy.error_equals):
            return policy
    return None


def select_catch(catch: Sequence[CatchConfig], error: WorkflowError) -> CatchConfig | None:
    """First catcher whose error_equals matches."""
    for catcher in catch:
        if error.matches(catcher.error_equals):
            return catcher
    return None


__all__ = ["Retry", "Catch", "Propagate", "Decision", "decide", "select_retry", "select_catch"]
