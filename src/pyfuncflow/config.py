"""
Engine configuration.

EngineConfig is immutable; WorkflowService exposes ``with_*`` builder
methods that swap in an updated copy, so the common case needs no
configuration at all:

    service = WorkflowService(store, invoker)

    service = (
        WorkflowService(store, invoker)
        .with_task_timeout(10)
        .with_max_concurrent_executions(100)
    )
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    """Tunable policy points of the execution engine."""

    default_task_timeout_sec: float = 30.0
    """Task deadline used when a Task state sets no ``timeout_sec``."""

    default_execution_timeout_sec: float = 3600.0
    """Whole-execution deadline used when a workflow sets none."""

    cancellation_grace_sec: float = 5.0
    """How long in-flight branches and invocations get to honour
    cancellation before they are force-cancelled."""

    backoff_counts_toward_timeout: bool = True
    """Whether retry backoff delays consume the whole-execution deadline.

    When False, the deadline is pushed back by each backoff delay.
    """

    max_concurrent_executions: int | None = None
    """Upper bound on concurrently running executions (None = unbounded)."""

    def __post_init__(self):
        if self.default_task_timeout_sec <= 0:
            raise ValueError("default_task_timeout_sec must be positive")
        if self.default_execution_timeout_sec <= 0:
            raise ValueError("default_execution_timeout_sec must be positive")
        if self.cancellation_grace_sec < 0:
            raise ValueError("cancellation_grace_sec must not be negative")
        if self.max_concurrent_executions is not None and self.max_concurrent_executions < 1:
            raise ValueError("max_concurrent_executions must be at least 1")


__all__ = ["EngineConfig"]
