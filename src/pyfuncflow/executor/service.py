"""WorkflowService: the transport-agnostic control surface.

Owns the background tasks that drive executions and exposes every
control operation as an async method:

- workflows: create / get / list / update / delete
- executions: start / stop / get (+ history) / list / wait
- breakpoints: set / list / delete / is_paused / resume
- lifecycle: recover / shutdown

Features:
- Non-blocking execution: start_execution() returns the PENDING record
  immediately; a background task drives it
- Backpressure: optional semaphore around each execution run
- Graceful shutdown: runs are interrupted without being finalized, so
  recover() can pick them up again from their checkpoint
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any

from pyfuncflow.config import EngineConfig
from pyfuncflow.core.cancel import CancelScope
from pyfuncflow.core.errors import (
    ExecutionNotFoundError,
    InvalidStateError,
    ValidationError,
    ValidationIssue,
    WorkflowNotFoundError,
)
from pyfuncflow.executor.breakpoints import BreakpointController
from pyfuncflow.executor.controller import ExecutionController
from pyfuncflow.executor.invoker import FunctionInvoker
from pyfuncflow.executor.validator import parse_definition
from pyfuncflow.models import (
    UNSET,
    Breakpoint,
    ExecutionStatus,
    StateExecution,
    Workflow,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStatus,
    definition_fingerprint,
    new_id,
    utcnow,
)
from pyfuncflow.storage.base import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass
class ExecutionDetail:
    """An execution together with its ordered StateExecution history."""

    execution: WorkflowExecution
    history: list[StateExecution]

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution": self.execution.to_dict(),
            "history": [record.to_dict() for record in self.history],
        }


@dataclass
class _Run:
    task: asyncio.Task
    cancel: CancelScope


class WorkflowService:
    """Control surface over a store and a Function Invocation Service.

    Design Patterns:
    - Facade: one object for every control operation
    - Builder: with_task_timeout(), with_max_concurrent_executions() ...

    Usage:
        store = SqliteWorkflowStore("workflows.db")
        await store.connect()

        invoker = LocalFunctionInvoker()
        invoker.register("fn-double", lambda n: n * 2)

        service = WorkflowService(store, invoker).with_max_concurrent_executions(50)

        workflow = await service.create_workflow("double", definition)
        execution = await service.start_execution(workflow.id, 21)
        final = await service.wait_for_execution(execution.id)

        await service.shutdown()
    """

    def __init__(
        self,
        store: WorkflowStore,
        invoker: FunctionInvoker,
        config: EngineConfig | None = None,
    ):
        """All dependencies passed explicitly, no globals.

        Args:
            store: Storage backend for workflows, executions and history
            invoker: Function Invocation Service used by Task states
            config: Engine policy (defaults to EngineConfig())
        """
        self._store = store
        self._invoker = invoker
        self._config = config or EngineConfig()
        self._breakpoints = BreakpointController(store)

        # Live runs by execution id
        self._runs: dict[str, _Run] = {}

        # Track background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

        self._max_concurrent: asyncio.Semaphore | None = None
        if self._config.max_concurrent_executions is not None:
            self._max_concurrent = asyncio.Semaphore(self._config.max_concurrent_executions)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> WorkflowStore:
        return self._store

    # ------------------------------------------------------------------
    # Builder
    # ------------------------------------------------------------------

    def with_task_timeout(self, seconds: float) -> WorkflowService:
        """Default Task deadline for states without ``timeout_sec``."""
        self._config = replace(self._config, default_task_timeout_sec=seconds)
        return self

    def with_execution_timeout(self, seconds: float) -> WorkflowService:
        """Default whole-execution deadline for workflows created from now on."""
        self._config = replace(self._config, default_execution_timeout_sec=seconds)
        return self

    def with_cancellation_grace(self, seconds: float) -> WorkflowService:
        self._config = replace(self._config, cancellation_grace_sec=seconds)
        return self

    def with_backoff_counting_toward_timeout(self, enabled: bool) -> WorkflowService:
        self._config = replace(self._config, backoff_counts_toward_timeout=enabled)
        return self

    def with_max_concurrent_executions(self, max_concurrent: int) -> WorkflowService:
        """Enable backpressure: at most ``max_concurrent`` executions run at once.

        Executions over the limit stay PENDING until a slot frees up.
        """
        self._config = replace(self._config, max_concurrent_executions=max_concurrent)
        self._max_concurrent = asyncio.Semaphore(max_concurrent)
        return self

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def create_workflow(
        self,
        name: str,
        definition: dict[str, Any] | WorkflowDefinition,
        description: str = "",
        timeout_sec: int | None = None,
    ) -> Workflow:
        """Validate and store a new workflow.

        Raises:
            ValidationError: Invalid definition, name or timeout
            InvalidStateError: The name is already taken
        """
        _check_name(name)
        _check_timeout(timeout_sec)
        parsed = parse_definition(definition)
        if await self._store.get_workflow_by_name(name) is not None:
            raise InvalidStateError(f"workflow name {name!r} is already taken")

        workflow = Workflow(
            id=new_id(),
            name=name,
            definition=parsed,
            description=description,
            timeout_sec=timeout_sec or int(self._config.default_execution_timeout_sec),
        )
        await self._store.create_workflow(workflow)
        logger.info(f"Workflow created: {name} ({workflow.id})")
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self._store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list_workflows(self, offset: int = 0, limit: int = 50) -> tuple[list[Workflow], int]:
        return await self._store.list_workflows(offset=offset, limit=limit)

    async def update_workflow(
        self,
        workflow_id: str,
        definition: dict[str, Any] | WorkflowDefinition | None = None,
        description: str | None = None,
        timeout_sec: int | None = None,
        status: WorkflowStatus | str | None = None,
    ) -> Workflow:
        """Update a workflow; the version is bumped only when the definition changes.

        Running executions keep the definition snapshot they started with.
        """
        workflow = await self.get_workflow(workflow_id)
        changes: dict[str, Any] = {}

        if definition is not None:
            parsed = parse_definition(definition)
            if definition_fingerprint(parsed) != workflow.fingerprint:
                changes["definition"] = parsed
                changes["version"] = workflow.version + 1
        if description is not None:
            changes["description"] = description
        if timeout_sec is not None:
            _check_timeout(timeout_sec)
            changes["timeout_sec"] = timeout_sec
        if status is not None:
            changes["status"] = WorkflowStatus(status)

        if not changes:
            return workflow
        updated = replace(workflow, updated_at=utcnow(), **changes)
        await self._store.update_workflow(updated)
        logger.info(f"Workflow updated: {updated.name} (version {updated.version})")
        return updated

    async def delete_workflow(self, workflow_id: str) -> None:
        """Delete a workflow with its executions, history and breakpoints.

        Raises:
            WorkflowNotFoundError: Unknown workflow
            InvalidStateError: The workflow still has non-terminal executions
        """
        await self.get_workflow(workflow_id)
        active = await self._store.count_active_executions(workflow_id)
        if active:
            raise InvalidStateError(
                f"workflow {workflow_id} has {active} active execution(s); stop them first"
            )
        await self._store.delete_workflow(workflow_id)
        logger.info(f"Workflow deleted: {workflow_id}")

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def start_execution(self, workflow_id: str, input: Any = None) -> WorkflowExecution:
        """Create an execution and start driving it in the background.

        Returns:
            The PENDING execution as created

        Raises:
            WorkflowNotFoundError: Unknown workflow
            InvalidStateError: The workflow is inactive
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow.status is not WorkflowStatus.ACTIVE:
            raise InvalidStateError(f"workflow {workflow.name!r} is inactive")

        now = utcnow()
        execution = WorkflowExecution(
            id=new_id(),
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            workflow_version=workflow.version,
            workflow_definition=workflow.definition,
            status=ExecutionStatus.PENDING,
            input=input,
            timeout_at=now + timedelta(seconds=workflow.timeout_sec),
            created_at=now,
            updated_at=now,
        )
        await self._store.create_execution(execution)
        self._spawn(execution)
        return execution

    async def stop_execution(self, execution_id: str) -> WorkflowExecution:
        """Stop an execution.

        PENDING and PAUSED executions become CANCELLED immediately. A
        RUNNING execution is cancelled cooperatively: its controller
        observes the signal at its next suspension point.

        Raises:
            ExecutionNotFoundError: Unknown execution
            InvalidStateError: The execution is already terminal
        """
        execution = await self._require_execution(execution_id)
        if execution.status.is_terminal:
            raise InvalidStateError(f"execution {execution_id} is already {execution.status}")

        if execution.status in (ExecutionStatus.PENDING, ExecutionStatus.PAUSED):
            if await self._cancel_now(execution, [ExecutionStatus.PENDING, ExecutionStatus.PAUSED]):
                return await self._require_execution(execution_id)
            # Raced into RUNNING
            execution = await self._require_execution(execution_id)
            if execution.status.is_terminal:
                return execution

        run = self._runs.get(execution_id)
        if run is None:
            # Nothing in this process is driving it
            await self._cancel_now(execution, [ExecutionStatus.RUNNING])
            return await self._require_execution(execution_id)

        logger.info(f"Execution {execution_id}: stop requested")
        run.cancel.cancel("stopped by user")
        await asyncio.wait({run.task}, timeout=self._config.cancellation_grace_sec)
        return await self._require_execution(execution_id)

    async def _cancel_now(
        self, execution: WorkflowExecution, expected: list[ExecutionStatus]
    ) -> bool:
        now = utcnow()
        cancelled = replace(
            execution,
            status=ExecutionStatus.CANCELLED,
            error="States.Cancelled: stopped by user",
            error_code="States.Cancelled",
            completed_at=now,
            updated_at=now,
        )
        done = await self._store.update_execution(cancelled, expected=expected)
        if done:
            logger.info(f"Execution {execution.id} cancelled while {execution.status}")
        return done

    async def get_execution(self, execution_id: str) -> ExecutionDetail:
        execution = await self._require_execution(execution_id)
        history = await self._store.list_state_executions(execution_id)
        return ExecutionDetail(execution=execution, history=history)

    async def list_executions(
        self, workflow_id: str | None = None, offset: int = 0, limit: int = 50
    ) -> tuple[list[WorkflowExecution], int]:
        return await self._store.list_executions(workflow_id, offset=offset, limit=limit)

    async def wait_for_execution(
        self, execution_id: str, timeout: float | None = None
    ) -> WorkflowExecution:
        """Wait until the background run of an execution ends.

        Returns when the execution is terminal or PAUSED (a paused run
        releases its task).

        Raises:
            ExecutionNotFoundError: Unknown execution
            TimeoutError: ``timeout`` elapsed first
        """
        run = self._runs.get(execution_id)
        if run is not None:
            await asyncio.wait_for(asyncio.shield(run.task), timeout=timeout)
        return await self._require_execution(execution_id)

    # ------------------------------------------------------------------
    # Breakpoints
    # ------------------------------------------------------------------

    async def set_breakpoint(self, execution_id: str, before_state: str) -> Breakpoint:
        return await self._breakpoints.set_breakpoint(execution_id, before_state)

    async def list_breakpoints(self, execution_id: str) -> list[Breakpoint]:
        return await self._breakpoints.list_breakpoints(execution_id)

    async def delete_breakpoint(self, execution_id: str, before_state: str) -> bool:
        return await self._breakpoints.delete_breakpoint(execution_id, before_state)

    async def is_paused(self, execution_id: str) -> bool:
        return await self._breakpoints.is_paused(execution_id)

    async def resume_execution(self, execution_id: str, input: Any = UNSET) -> WorkflowExecution:
        """Resume a PAUSED execution, optionally replacing the paused state's input.

        Raises:
            ExecutionNotFoundError: Unknown execution
            InvalidStateError: The execution is not PAUSED
        """
        point = await self._breakpoints.resume(execution_id, input)
        self._spawn(point.execution, skip_breakpoint_at=point.state_name)
        return point.execution

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def recover(self) -> list[str]:
        """Re-drive executions a previous process left PENDING or RUNNING.

        Returns:
            Ids of the executions picked up
        """
        recovered = []
        for execution in await self._store.list_incomplete_executions():
            if execution.id in self._runs:
                continue
            self._spawn(execution)
            recovered.append(execution.id)
        if recovered:
            logger.info(f"Recovered {len(recovered)} execution(s)")
        return recovered

    async def shutdown(self) -> None:
        """Interrupt every background run without finalizing it."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"WorkflowService stopped ({len(tasks)} run(s) interrupted)")

    def _spawn(self, execution: WorkflowExecution, skip_breakpoint_at: str | None = None) -> None:
        cancel = CancelScope()
        controller = ExecutionController(
            execution,
            self._store,
            self._invoker,
            self._config,
            self._breakpoints,
            cancel=cancel,
            skip_breakpoint_at=skip_breakpoint_at,
        )
        task = asyncio.create_task(self._drive(controller))
        self._runs[execution.id] = _Run(task=task, cancel=cancel)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(lambda t, eid=execution.id: self._forget(eid, t))

    async def _drive(self, controller: ExecutionController) -> WorkflowExecution | None:
        try:
            if self._max_concurrent is None:
                return await controller.execute()
            async with self._max_concurrent:
                return await controller.execute()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Execution {controller.execution.id}: background run failed: {e}")
            return None

    def _forget(self, execution_id: str, task: asyncio.Task) -> None:
        run = self._runs.get(execution_id)
        if run is not None and run.task is task:
            del self._runs[execution_id]

    async def _require_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self._store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution


def _check_name(name: str) -> None:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError([ValidationIssue("name", "workflow name must not be empty")])


def _check_timeout(timeout_sec: int | None) -> None:
    if timeout_sec is not None and timeout_sec <= 0:
        raise ValidationError([ValidationIssue("timeout_sec", "timeout_sec must be positive")])


__all__ = ["WorkflowService", "ExecutionDetail"]
