"""Tests for retry delay calculation and the retry/catch decision."""

import pytest

from pyfuncflow.core import (
    BranchFailedError,
    CancellationError,
    ChoiceNoMatchError,
    DataPathError,
    ExecutionTimeoutError,
    FailStateError,
    InvocationError,
    StateNotFoundError,
    StateTimeoutError,
)
from pyfuncflow.executor import Catch, Propagate, Retry, decide
from pyfuncflow.models import CatchConfig, RetryPolicy


def test_default_policy_delays():
    """Test defaults: 1s, 2s, 4s and then exhausted."""
    policy = RetryPolicy(error_equals=("States.TaskFailed",))
    assert [policy.delay_for_retry(n) for n in range(4)] == [1.0, 2.0, 4.0, None]


def test_custom_backoff():
    policy = RetryPolicy(("X",), interval_seconds=0.5, max_attempts=2, backoff_rate=3)
    assert policy.delay_for_retry(0) == 0.5
    assert policy.delay_for_retry(1) == 1.5
    assert policy.delay_for_retry(2) is None


def test_decide_retries_then_propagates():
    policy = RetryPolicy(("States.Timeout",))
    error = StateTimeoutError("Charge", 1.0)

    delays = []
    for retry_count in range(3):
        decision = decide([policy], [], error, retry_count)
        assert isinstance(decision, Retry)
        delays.append(decision.delay)
    assert delays == [1.0, 2.0, 4.0]
    assert decide([policy], [], error, 3) == Propagate()


def test_first_matching_retry_policy_is_used():
    specific = RetryPolicy(("PaymentError",), interval_seconds=5)
    general = RetryPolicy(("States.ALL",), interval_seconds=1)
    error = InvocationError("declined", error_kind="PaymentError")

    decision = decide([specific, general], [], error, 0)
    assert decision == Retry(delay=5, policy=specific)

    other = InvocationError("boom", error_kind="KeyError")
    assert decide([specific, general], [], other, 0) == Retry(delay=1, policy=general)


def test_invocation_errors_answer_to_task_failed():
    error = InvocationError("boom", error_kind="ValueError")
    assert error.matches(["States.TaskFailed"])
    assert error.matches(["ValueError"])
    assert not error.matches(["States.Timeout"])


def test_exhausted_retry_falls_through_to_catch():
    policy = RetryPolicy(("States.ALL",), max_attempts=1)
    catcher = CatchConfig(("States.ALL",), next="Recover", result_path="$.error")
    error = InvocationError("boom")

    assert isinstance(decide([policy], [catcher], error, 0), Retry)
    assert decide([policy], [catcher], error, 1) == Catch(catcher=catcher)


def test_first_matching_catcher_is_used():
    timeouts = CatchConfig(("States.Timeout",), next="Slow")
    everything = CatchConfig(("States.ALL",), next="Broken")

    assert decide([], [timeouts, everything], StateTimeoutError("T", 1), 0).catcher is timeouts
    assert decide([], [timeouts, everything], InvocationError("x"), 0).catcher is everything


@pytest.mark.parametrize(
    "error",
    [CancellationError("stopped"), ExecutionTimeoutError("exec-1")],
)
def test_interruptions_are_never_routed(error):
    policy = RetryPolicy(("States.ALL",))
    catcher = CatchConfig(("States.ALL",), next="Recover")
    assert decide([policy], [catcher], error, 0) == Propagate()


def test_execution_timeout_is_not_a_state_timeout():
    catcher = CatchConfig(("States.Timeout",), next="Recover")
    assert decide([], [catcher], ExecutionTimeoutError("exec-1"), 0) == Propagate()
    assert decide([], [catcher], StateTimeoutError("T", 1), 0) == Catch(catcher=catcher)


@pytest.mark.parametrize("error", [ChoiceNoMatchError("C"), DataPathError("bad path")])
def test_non_retryable_errors_skip_to_catch(error):
    policy = RetryPolicy(("States.ALL",))
    catcher = CatchConfig(("States.ALL",), next="Recover")
    assert decide([policy], [catcher], error, 0) == Catch(catcher=catcher)


def test_branch_failure_matches_underlying_kind():
    inner = InvocationError("declined", error_kind="PaymentError")
    error = BranchFailedError("Fan", 1, inner)
    assert error.error_kind == "PaymentError"
    assert error.matches(["PaymentError"])
    assert error.matches(["States.BranchFailed"])
    assert error.matches(["States.TaskFailed"])


def test_branch_missing_state_stays_fatal():
    error = BranchFailedError("Fan", 0, StateNotFoundError("Ghost"))
    policy = RetryPolicy(("States.ALL",))
    catcher = CatchConfig(("States.ALL",), next="Recover")

    assert error.error_kind == "States.StateNotFound"
    assert not error.matches(["States.BranchFailed"])
    assert decide([policy], [catcher], error, 0) == Propagate()


def test_fail_state_error_kind():
    error = FailStateError("OrderRejected", "out of stock")
    assert error.error_kind == "OrderRejected"
    assert error.to_payload() == {"error": "OrderRejected", "cause": "out of stock"}
    assert FailStateError(None, None).error_kind == "States.Fail"
