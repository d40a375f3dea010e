"""Error taxonomy for workflow definition and execution.

Every engine error carries an ``error_kind`` string. Retry and catch
policies match their ``error_equals`` lists against it, so the kind is the
only part of an error that routing ever looks at.

Design: Errors are values
    Each class carries the structured context a caller needs (issues,
    branch index, state name) instead of encoding it in the message only.
"""

from __future__ import annotations

from dataclasses import dataclass

CATCH_ALL = "States.ALL"
"""Sentinel matching every routable error kind."""


class WorkflowError(Exception):
    """Base class for all pyfuncflow errors.

    Attributes:
        error_kind: Matchable kind string
        cause: Human-readable description of what went wrong
    """

    error_kind: str = "States.Error"

    routable: bool = False
    """Whether retry/catch policies may see this error at all."""

    retry_eligible: bool = False
    """Whether retry policies may re-attempt the state after this error."""

    def __init__(self, cause: str = "", *, error_kind: str | None = None):
        super().__init__(cause)
        self.cause = cause
        if error_kind is not None:
            self.error_kind = error_kind

    @property
    def aliases(self) -> tuple[str, ...]:
        """Additional kinds this error answers to when matching."""
        return ()

    def matches(self, error_equals: list[str] | tuple[str, ...]) -> bool:
        """Check whether a policy's ``error_equals`` list selects this error."""
        if not self.routable:
            return False
        if CATCH_ALL in error_equals:
            return True
        if self.error_kind in error_equals:
            return True
        return any(alias in error_equals for alias in self.aliases)

    def to_payload(self) -> dict[str, str]:
        """JSON payload merged into the data context by a catch."""
        return {"error": self.error_kind, "cause": self.cause}

    def summary(self) -> str:
        """One-line summary stored on failed executions and records."""
        if self.cause:
            return f"{self.error_kind}: {self.cause}"
        return self.error_kind


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found in a workflow definition.

    Attributes:
        path: Location inside the definition (e.g. ``states.Check.default``)
        message: What is wrong
    """

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class ValidationError(WorkflowError):
    """A definition is structurally invalid.

    Raised before any execution exists. Lists every violation found,
    not just the first one.
    """

    error_kind = "States.ValidationError"

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = list(issues)
        lines = "; ".join(str(issue) for issue in self.issues)
        super().__init__(f"invalid workflow definition: {lines}")


class StateNotFoundError(WorkflowError):
    """A transition targets a state that does not exist in its scope."""

    error_kind = "States.StateNotFound"

    def __init__(self, state_name: str):
        self.state_name = state_name
        super().__init__(f"state {state_name!r} does not exist")


class ChoiceNoMatchError(WorkflowError):
    """No Choice rule matched and the state declares no default."""

    error_kind = "States.NoChoiceMatched"
    routable = True

    def __init__(self, state_name: str):
        self.state_name = state_name
        super().__init__(f"no choice rule matched in state {state_name!r} and no default is set")


class InvocationError(WorkflowError):
    """The Function Invocation Service reported a failure.

    Example:
        raise InvocationError("card declined", error_kind="PaymentError")
    """

    error_kind = "States.TaskFailed"
    routable = True
    retry_eligible = True

    def __init__(
        self,
        cause: str = "",
        *,
        error_kind: str | None = None,
        invocation_id: str | None = None,
    ):
        super().__init__(cause, error_kind=error_kind)
        self.invocation_id = invocation_id

    @property
    def aliases(self) -> tuple[str, ...]:
        return ("States.TaskFailed",)

    @classmethod
    def from_exception(cls, exc: BaseException) -> InvocationError:
        """Wrap an arbitrary exception escaping an invoker."""
        return cls(str(exc), error_kind=type(exc).__name__)


class StateTimeoutError(WorkflowError):
    """A single state attempt exceeded its deadline."""

    error_kind = "States.Timeout"
    routable = True
    retry_eligible = True

    def __init__(self, state_name: str, timeout_sec: float):
        self.state_name = state_name
        self.timeout_sec = timeout_sec
        super().__init__(f"state {state_name!r} timed out after {timeout_sec:g}s")


class ExecutionTimeoutError(WorkflowError):
    """The whole-execution deadline passed. Always terminal as TIMEOUT."""

    error_kind = "States.Timeout"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"execution {execution_id} exceeded its deadline")


class CancellationError(WorkflowError):
    """The scope was cancelled (explicit stop or a sibling branch failed).

    Bypasses retry and catch entirely.
    """

    error_kind = "States.Cancelled"

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)


class BranchFailedError(WorkflowError):
    """A Parallel branch failed.

    Takes the kind of the branch's own error so ``error_equals`` lists can
    target the underlying failure, and also answers to
    ``States.BranchFailed``. A branch that failed with a non-routable
    error (a missing state) stays fatal for the Parallel state too.
    """

    routable = True
    retry_eligible = True

    def __init__(self, state_name: str, branch_index: int, error: WorkflowError):
        self.state_name = state_name
        self.branch_index = branch_index
        self.error = error
        super().__init__(error.cause, error_kind=error.error_kind)
        if not error.routable:
            self.routable = False
            self.retry_eligible = False

    @property
    def aliases(self) -> tuple[str, ...]:
        return ("States.BranchFailed", *self.error.aliases)


class FailStateError(WorkflowError):
    """A Fail state was reached. Ends its scope unsuccessfully."""

    error_kind = "States.Fail"
    routable = True
    retry_eligible = True

    def __init__(self, error: str | None, cause: str | None):
        super().__init__(cause or "", error_kind=error or None)


class DataPathError(WorkflowError):
    """A reference path could not be applied to the data context."""

    error_kind = "States.Runtime"
    routable = True


class InvalidStateError(WorkflowError):
    """A control operation is not allowed in the execution's current status."""

    error_kind = "States.InvalidState"


class WorkflowNotFoundError(WorkflowError):
    """No stored workflow has the given id."""

    error_kind = "States.WorkflowNotFound"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"workflow {workflow_id} not found")


class ExecutionNotFoundError(WorkflowError):
    """No execution has the given id."""

    error_kind = "States.ExecutionNotFound"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"execution {execution_id} not found")


__all__ = [
    "CATCH_ALL",
    "WorkflowError",
    "ValidationIssue",
    "ValidationError",
    "StateNotFoundError",
    "ChoiceNoMatchError",
    "InvocationError",
    "StateTimeoutError",
    "ExecutionTimeoutError",
    "CancellationError",
    "BranchFailedError",
    "FailStateError",
    "DataPathError",
    "InvalidStateError",
    "WorkflowNotFoundError",
    "ExecutionNotFoundError",
]
