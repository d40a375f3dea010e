"""In-memory storage implementation for pyfuncflow.

Design Pattern: Adapter Pattern
InMemoryWorkflowStore adapts in-memory dictionaries to the WorkflowStore
interface.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Iterable

from pyfuncflow.models import (
    Breakpoint,
    ExecutionStatus,
    StateExecution,
    Workflow,
    WorkflowExecution,
)
from pyfuncflow.storage.base import StorageError, WorkflowStore


class InMemoryWorkflowStore(WorkflowStore):
    """In-memory storage for testing.

    Can be substituted for SqliteWorkflowStore without changing client code.

    Usage:
        store = InMemoryWorkflowStore()
        await store.create_workflow(workflow)
    """

    def __init__(self):
        # Storage: {workflow_id: Workflow}
        self._workflows: dict[str, Workflow] = {}

        # Storage: {execution_id: WorkflowExecution}
        self._executions: dict[str, WorkflowExecution] = {}

        # History: {execution_id: [record_id, ...]} in append order
        self._history: dict[str, list[str]] = {}
        self._records: dict[str, StateExecution] = {}

        # Storage: {execution_id: {before_state: Breakpoint}}
        self._breakpoints: dict[str, dict[str, Breakpoint]] = {}

        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        return "InMemoryWorkflowStore"

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def create_workflow(self, workflow: Workflow) -> None:
        async with self._lock:
            if workflow.id in self._workflows:
                raise StorageError(f"workflow {workflow.id} already exists")
            if self._find_by_name(workflow.name) is not None:
                raise StorageError(f"workflow name {workflow.name!r} is already taken")
            self._workflows[workflow.id] = copy.deepcopy(workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        async with self._lock:
            workflow = self._workflows.get(workflow_id)
            return copy.deepcopy(workflow) if workflow is not None else None

    async def get_workflow_by_name(self, name: str) -> Workflow | None:
        async with self._lock:
            workflow = self._find_by_name(name)
            return copy.deepcopy(workflow) if workflow is not None else None

    async def list_workflows(self, offset: int = 0, limit: int = 50) -> tuple[list[Workflow], int]:
        async with self._lock:
            ordered = sorted(
                self._workflows.values(), key=lambda w: (w.created_at, w.id), reverse=True
            )
            page = ordered[offset : offset + limit]
            return [copy.deepcopy(w) for w in page], len(ordered)

    async def update_workflow(self, workflow: Workflow) -> None:
        async with self._lock:
            if workflow.id not in self._workflows:
                raise StorageError(f"workflow {workflow.id} not found")
            holder = self._find_by_name(workflow.name)
            if holder is not None and holder.id != workflow.id:
                raise StorageError(f"workflow name {workflow.name!r} is already taken")
            self._workflows[workflow.id] = copy.deepcopy(workflow)

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self._lock:
            if self._workflows.pop(workflow_id, None) is None:
                return False
            doomed = [e.id for e in self._executions.values() if e.workflow_id == workflow_id]
            for execution_id in doomed:
                del self._executions[execution_id]
                for record_id in self._history.pop(execution_id, []):
                    self._records.pop(record_id, None)
                self._breakpoints.pop(execution_id, None)
            return True

    def _find_by_name(self, name: str) -> Workflow | None:
        for workflow in self._workflows.values():
            if workflow.name == name:
                return workflow
        return None

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def create_execution(self, execution: WorkflowExecution) -> None:
        async with self._lock:
            if execution.id in self._executions:
                raise StorageError(f"execution {execution.id} already exists")
            self._executions[execution.id] = copy.deepcopy(execution)
            self._history.setdefault(execution.id, [])

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            return copy.deepcopy(execution) if execution is not None else None

    async def update_execution(
        self,
        execution: WorkflowExecution,
        expected: Iterable[ExecutionStatus] | None = None,
    ) -> bool:
        async with self._lock:
            stored = self._executions.get(execution.id)
            if stored is None:
                raise StorageError(f"execution {execution.id} not found")
            if stored.status.is_terminal:
                return False
            if expected is not None and stored.status not in set(expected):
                return False
            self._executions[execution.id] = copy.deepcopy(execution)
            return True

    async def list_executions(
        self, workflow_id: str | None = None, offset: int = 0, limit: int = 50
    ) -> tuple[list[WorkflowExecution], int]:
        async with self._lock:
            matching = [
                e
                for e in self._executions.values()
                if workflow_id is None or e.workflow_id == workflow_id
            ]
            matching.sort(key=lambda e: (e.created_at, e.id), reverse=True)
            page = matching[offset : offset + limit]
            return [copy.deepcopy(e) for e in page], len(matching)

    async def list_incomplete_executions(self) -> list[WorkflowExecution]:
        async with self._lock:
            incomplete = [
                e
                for e in self._executions.values()
                if e.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
            ]
            incomplete.sort(key=lambda e: (e.created_at, e.id))
            return [copy.deepcopy(e) for e in incomplete]

    async def count_active_executions(self, workflow_id: str) -> int:
        async with self._lock:
            return sum(
                1
                for e in self._executions.values()
                if e.workflow_id == workflow_id and not e.status.is_terminal
            )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def append_state_execution(self, record: StateExecution) -> None:
        async with self._lock:
            if record.id in self._records:
                raise StorageError(f"state execution {record.id} already exists")
            self._records[record.id] = copy.deepcopy(record)
            self._history.setdefault(record.execution_id, []).append(record.id)

    async def update_state_execution(self, record: StateExecution) -> None:
        async with self._lock:
            stored = self._records.get(record.id)
            if stored is None:
                raise StorageError(f"state execution {record.id} not found")
            if stored.status.is_concluded:
                raise StorageError(
                    f"state execution {record.id} already concluded as {stored.status}"
                )
            self._records[record.id] = copy.deepcopy(record)

    async def list_state_executions(self, execution_id: str) -> list[StateExecution]:
        async with self._lock:
            return [
                copy.deepcopy(self._records[record_id])
                for record_id in self._history.get(execution_id, [])
            ]

    # ------------------------------------------------------------------
    # Breakpoints
    # ------------------------------------------------------------------

    async def set_breakpoint(self, breakpoint: Breakpoint) -> Breakpoint:
        async with self._lock:
            by_state = self._breakpoints.setdefault(breakpoint.execution_id, {})
            existing = by_state.get(breakpoint.before_state)
            if existing is not None:
                existing.enabled = breakpoint.enabled
                return copy.deepcopy(existing)
            by_state[breakpoint.before_state] = copy.deepcopy(breakpoint)
            return copy.deepcopy(breakpoint)

    async def list_breakpoints(self, execution_id: str) -> list[Breakpoint]:
        async with self._lock:
            found = list(self._breakpoints.get(execution_id, {}).values())
            found.sort(key=lambda b: (b.created_at, b.id))
            return [copy.deepcopy(b) for b in found]

    async def delete_breakpoint(self, execution_id: str, before_state: str) -> bool:
        async with self._lock:
            by_state = self._breakpoints.get(execution_id, {})
            return by_state.pop(before_state, None) is not None

    async def reset(self) -> None:
        async with self._lock:
            self._workflows.clear()
            self._executions.clear()
            self._history.clear()
            self._records.clear()
            self._breakpoints.clear()
