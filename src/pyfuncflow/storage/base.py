"""
WorkflowStore protocol - Abstract interface for storage backends.

Design Pattern: Adapter Pattern
WorkflowStore defines the target interface that all storage adapters implement.
Different storage backends (SQLite, Redis, Memory) adapt to this common interface.

Design Principle: Dependency Inversion (SOLID)
The execution controller and WorkflowService depend on this abstraction,
not on concrete storage implementations. Tests substitute
InMemoryWorkflowStore without changing client code.

The store plays three roles:
- Definition store: named, versioned workflows
- History Recorder: executions plus their append-only StateExecution records
- Breakpoint registry: per-execution breakpoints

Every method returns fresh copies; mutating a returned object never
changes stored state until it is written back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

from pyfuncflow.models import (
    Breakpoint,
    ExecutionStatus,
    StateExecution,
    Workflow,
    WorkflowExecution,
)


class StorageError(Exception):
    """
    Storage operation failed.

    Adapters raise this and never log-and-raise; the caller decides how
    the failure is reported.
    """

    pass


class WorkflowStore(ABC):
    """
    Abstract storage interface for workflows, executions and history.

    Concurrency contract:
    - Many executions write concurrently; writes are keyed by execution id
    - update_execution() with ``expected`` is a compare-and-set on status,
      the only synchronization external control operations rely on
    - Terminal executions and concluded StateExecution records are immutable
    """

    # ========================================================================
    # Workflow Operations - Named, versioned definitions
    # ========================================================================

    @abstractmethod
    async def create_workflow(self, workflow: Workflow) -> None:
        """
        Persist a new workflow.

        Raises:
            StorageError: If a workflow with the same id or name exists
        """
        pass

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id, or None when it does not exist."""
        pass

    @abstractmethod
    async def get_workflow_by_name(self, name: str) -> Workflow | None:
        pass

    @abstractmethod
    async def list_workflows(self, offset: int = 0, limit: int = 50) -> tuple[list[Workflow], int]:
        """
        Page through workflows, newest first.

        Returns:
            (page of workflows, total number of workflows)
        """
        pass

    @abstractmethod
    async def update_workflow(self, workflow: Workflow) -> None:
        """
        Overwrite a stored workflow.

        Raises:
            StorageError: If the workflow does not exist or the new name
                is taken by another workflow
        """
        pass

    @abstractmethod
    async def delete_workflow(self, workflow_id: str) -> bool:
        """
        Delete a workflow together with its executions, their history and
        breakpoints.

        Returns:
            True if a workflow was deleted, False if it did not exist
        """
        pass

    # ========================================================================
    # Execution Operations
    # ========================================================================

    @abstractmethod
    async def create_execution(self, execution: WorkflowExecution) -> None:
        """
        Persist a new execution.

        Raises:
            StorageError: If an execution with the same id exists
        """
        pass

    @abstractmethod
    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        pass

    @abstractmethod
    async def update_execution(
        self,
        execution: WorkflowExecution,
        expected: Iterable[ExecutionStatus] | None = None,
    ) -> bool:
        """
        Write back an execution.

        Args:
            execution: New execution value (matched by id)
            expected: When given, the write only happens if the stored
                status is one of these (compare-and-set)

        Returns:
            True if written. False if the stored execution is terminal
            (immutable) or its status is not in ``expected``.

        Raises:
            StorageError: If the execution does not exist
        """
        pass

    @abstractmethod
    async def list_executions(
        self, workflow_id: str | None = None, offset: int = 0, limit: int = 50
    ) -> tuple[list[WorkflowExecution], int]:
        """
        Page through executions, newest first.

        Args:
            workflow_id: Restrict to one workflow's executions

        Returns:
            (page of executions, total matching)
        """
        pass

    @abstractmethod
    async def list_incomplete_executions(self) -> list[WorkflowExecution]:
        """
        Executions left PENDING or RUNNING, oldest first.

        Used for recovery after a process restart. PAUSED executions are
        not included: they wait for an explicit resume.
        """
        pass

    @abstractmethod
    async def count_active_executions(self, workflow_id: str) -> int:
        """Number of non-terminal executions (PAUSED included) of a workflow."""
        pass

    # ========================================================================
    # History Operations - Append-only StateExecution records
    # ========================================================================

    @abstractmethod
    async def append_state_execution(self, record: StateExecution) -> None:
        """
        Append a state attempt to its execution's history.

        Raises:
            StorageError: If a record with the same id exists
        """
        pass

    @abstractmethod
    async def update_state_execution(self, record: StateExecution) -> None:
        """
        Update a state attempt that has not concluded yet.

        Used for retry_count increments and the final status write.

        Raises:
            StorageError: If the record does not exist or has already
                concluded (SUCCEEDED/FAILED/SKIPPED records are immutable)
        """
        pass

    @abstractmethod
    async def list_state_executions(self, execution_id: str) -> list[StateExecution]:
        """History of one execution, in append order."""
        pass

    # ========================================================================
    # Breakpoint Operations
    # ========================================================================

    @abstractmethod
    async def set_breakpoint(self, breakpoint: Breakpoint) -> Breakpoint:
        """
        Create or re-enable the breakpoint for (execution_id, before_state).

        Returns:
            The stored breakpoint. When one already existed for the pair,
            its id and created_at are kept.
        """
        pass

    @abstractmethod
    async def list_breakpoints(self, execution_id: str) -> list[Breakpoint]:
        """Breakpoints of one execution, in creation order."""
        pass

    @abstractmethod
    async def delete_breakpoint(self, execution_id: str, before_state: str) -> bool:
        """
        Returns:
            True if a breakpoint was deleted, False if none existed
        """
        pass

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @abstractmethod
    async def reset(self) -> None:
        """Remove all stored data. Intended for tests."""
        pass

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""
        return None


__all__ = ["WorkflowStore", "StorageError"]
