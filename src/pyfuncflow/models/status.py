"""Status enumerations for workflow execution tracking.

Defines lifecycle states for stored workflows, whole executions and
individual state attempts.
"""

from enum import Enum


class WorkflowStatus(Enum):
    """Status of a stored workflow definition.

    Only ACTIVE workflows accept new executions. Deactivating a workflow
    never affects executions that are already running.
    """

    ACTIVE = "active"
    INACTIVE = "inactive"

    def __str__(self) -> str:
        return self.value


class ExecutionStatus(Enum):
    """Status of one workflow execution.

    Lifecycle:
        PENDING → RUNNING → SUCCEEDED/FAILED/TIMEOUT/CANCELLED

    RUNNING ⇄ PAUSED is a side loop driven by breakpoints. PAUSED is
    never terminal: a paused execution holds a suspended continuation
    and is waiting for resume() or stop().
    """

    PENDING = "pending"
    """Created, the controller has not yet evaluated start_at."""

    RUNNING = "running"
    """The controller is stepping through states."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    PAUSED = "paused"
    """Suspended before entering a state that carries a breakpoint."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (the execution is immutable)."""
        return self in _TERMINAL_EXECUTION_STATUSES

    @property
    def is_active(self) -> bool:
        """Check if the execution may still make progress."""
        return not self.is_terminal

    def __str__(self) -> str:
        return self.value


_TERMINAL_EXECUTION_STATUSES = frozenset(
    {
        ExecutionStatus.SUCCEEDED,
        ExecutionStatus.FAILED,
        ExecutionStatus.TIMEOUT,
        ExecutionStatus.CANCELLED,
    }
)


class StateExecutionStatus(Enum):
    """Status of a single state attempt.

    Lifecycle:
        RUNNING → SUCCEEDED/FAILED

    Design: No RETRYING Status
        A retried attempt stays RUNNING; its retry_count grows instead of
        new records being appended.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_concluded(self) -> bool:
        """Check if the attempt has concluded (record is now immutable)."""
        return self in (
            StateExecutionStatus.SUCCEEDED,
            StateExecutionStatus.FAILED,
            StateExecutionStatus.SKIPPED,
        )

    def __str__(self) -> str:
        return self.value
