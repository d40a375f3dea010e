"""
Runnable scope: the transition loop shared by a top-level execution and
each Parallel branch.

Design Pattern: Template Method
Scope.run() fixes the per-state algorithm:

    1. check cancellation and the execution deadline (lazy check)
    2. _before_enter() hook (breakpoints at top level)
    3. look the state up (StateNotFoundError is fatal)
    4. append a RUNNING StateExecution record
    5. dispatch by state type, applying retry/catch for Task and Parallel
    6. conclude the record, then _after_transition() hook (checkpoint)

Subclasses only override the hooks. A Parallel state creates one
BranchScope per branch (see pyfuncflow.executor.parallel), which is the
same loop recursing into itself.

Non-routable interruptions (CancellationError, ExecutionTimeoutError)
leave run() as exceptions; everything else becomes a ScopeOutcome.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC
from dataclasses import dataclass
from typing import Any

from pyfuncflow.config import EngineConfig
from pyfuncflow.core.cancel import CancelScope, Deadline, race, wait_or_cancel
from pyfuncflow.core.errors import (
    CancellationError,
    ExecutionTimeoutError,
    FailStateError,
    InvocationError,
    StateNotFoundError,
    StateTimeoutError,
    WorkflowError,
)
from pyfuncflow.core.paths import apply_template, merge_result, select_input, select_output
from pyfuncflow.executor import choice
from pyfuncflow.executor.invoker import FunctionInvoker
from pyfuncflow.executor.outcome import Completed, Failed, Paused, ScopeOutcome
from pyfuncflow.executor.policy import Catch, Propagate, Retry, decide
from pyfuncflow.executor.timer import resolve_wait_seconds
from pyfuncflow.models import (
    UNSET,
    Branch,
    ChoiceState,
    FailState,
    ParallelState,
    PassState,
    State,
    StateExecution,
    StateExecutionStatus,
    SucceedState,
    TaskState,
    WaitState,
    new_id,
    utcnow,
)
from pyfuncflow.storage.base import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Collaborators shared by every scope of one execution."""

    execution_id: str
    store: WorkflowStore
    invoker: FunctionInvoker
    config: EngineConfig
    deadline: Deadline


@dataclass(frozen=True)
class _Next:
    state_name: str
    data: Any


@dataclass(frozen=True)
class _End:
    output: Any


@dataclass(frozen=True)
class _Stop:
    error: WorkflowError


_Step = _Next | _End | _Stop


class Scope(ABC):
    """Drives one graph (top-level definition or a branch) to an outcome.

    Attributes:
        ctx: Shared per-execution collaborators
        graph: The states this scope can enter
        cancel: Cancellation signal observed by this scope
        parent_state: Owning Parallel state (branch scopes only)
        branch_index: Position of the branch (branch scopes only)
    """

    def __init__(
        self,
        ctx: RunContext,
        graph: Branch,
        cancel: CancelScope,
        *,
        parent_state: str | None = None,
        branch_index: int | None = None,
    ):
        self.ctx = ctx
        self.graph = graph
        self.cancel = cancel
        self.parent_state = parent_state
        self.branch_index = branch_index

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def _before_enter(self, state_name: str, data: Any) -> Paused | None:
        """Called before a state is entered. Returning Paused stops the loop."""
        return None

    async def _after_transition(self, state_name: str, data: Any) -> None:
        """Called after a transition to ``state_name`` has been decided."""
        return None

    # ------------------------------------------------------------------
    # Transition loop
    # ------------------------------------------------------------------

    async def run(self, state_name: str, data: Any) -> ScopeOutcome:
        """Step through states starting at ``state_name`` with input ``data``.

        Raises:
            CancellationError: The scope was cancelled
            ExecutionTimeoutError: The whole-execution deadline passed
        """
        current, raw = state_name, data
        while True:
            self.cancel.raise_if_cancelled()
            self.ctx.deadline.raise_if_expired()

            paused = await self._before_enter(current, raw)
            if paused is not None:
                return paused

            state = self.graph.states.get(current)
            if state is None:
                return Failed(StateNotFoundError(current))

            logger.debug(f"Execution {self.ctx.execution_id}: entering {current} ({state.state_type})")
            record = await self._open_record(current, state, raw)
            try:
                step = await self._dispatch(current, state, raw, record)
            except (CancellationError, ExecutionTimeoutError) as e:
                await self._conclude(record, StateExecutionStatus.FAILED, error=e)
                raise
            except asyncio.CancelledError:
                await self._conclude(
                    record, StateExecutionStatus.FAILED, error=CancellationError("interrupted")
                )
                raise
            except Exception as e:
                await self._abandon(record, e)
                raise

            match step:
                case _Next(state_name=target, data=next_data):
                    current, raw = target, next_data
                    await self._after_transition(current, raw)
                case _End(output=output):
                    return Completed(output)
                case _Stop(error=error):
                    return Failed(error)

    async def _dispatch(self, name: str, state: State, raw: Any, record: StateExecution) -> _Step:
        """Run one state and conclude its record."""
        match state:
            case TaskState() | ParallelState():
                return await self._run_with_policies(name, state, raw, record)

            case FailState():
                error = FailStateError(state.error, state.cause)
                await self._conclude(record, StateExecutionStatus.FAILED, error=error)
                return _Stop(error)

        try:
            step = await self._run_simple(name, state, raw)
        except (CancellationError, ExecutionTimeoutError):
            raise
        except WorkflowError as error:
            await self._conclude(record, StateExecutionStatus.FAILED, error=error)
            return _Stop(error)

        output = step.data if isinstance(step, _Next) else step.output
        await self._conclude(record, StateExecutionStatus.SUCCEEDED, output=output)
        return step

    async def _run_simple(self, name: str, state: State, raw: Any) -> _Step:
        """Choice, Wait, Pass and Succeed: no retry or catch."""
        effective = select_input(raw, state.input_path)

        match state:
            case ChoiceState():
                target, index = choice.evaluate(state.choices, state.default, effective, name)
                logger.debug(
                    f"Execution {self.ctx.execution_id}: choice {name} -> {target} "
                    f"(rule {index if index is not None else 'default'})"
                )
                return _Next(target, select_output(effective, state.output_path))

            case WaitState():
                delay = resolve_wait_seconds(state, effective)
                logger.debug(f"Execution {self.ctx.execution_id}: waiting {delay:g}s in {name}")
                await wait_or_cancel(delay, self.cancel, self.ctx.deadline)
                return self._follow(state, select_output(effective, state.output_path))

            case PassState():
                if state.parameters is not None:
                    effective = apply_template(state.parameters, effective)
                result = state.result if state.result is not UNSET else effective
                merged = merge_result(raw, result, state.result_path)
                return self._follow(state, select_output(merged, state.output_path))

            case SucceedState():
                return _End(select_output(effective, state.output_path))

        raise TypeError(f"unsupported state type: {state.state_type}")

    async def _run_with_policies(
        self, name: str, state: TaskState | ParallelState, raw: Any, record: StateExecution
    ) -> _Step:
        """Task and Parallel: attempt, then retry, catch or propagate."""
        while True:
            try:
                result = await self._attempt(name, state, raw, record)
                merged = merge_result(raw, result, state.result_path)
                output = select_output(merged, state.output_path)
            except (CancellationError, ExecutionTimeoutError):
                raise
            except WorkflowError as e:
                failure = e
                decision = decide(state.retry, state.catch, failure, record.retry_count)
            else:
                await self._conclude(record, StateExecutionStatus.SUCCEEDED, output=output)
                return self._follow(state, output)

            match decision:
                case Retry(delay=delay):
                    logger.info(
                        f"Execution {self.ctx.execution_id}: retrying {name} in {delay:g}s "
                        f"(retry {record.retry_count + 1}) after {failure.summary()}"
                    )
                    record.retry_count += 1
                    record.error = failure.summary()
                    record.error_code = failure.error_kind
                    await self.ctx.store.update_state_execution(record)
                    if not self.ctx.config.backoff_counts_toward_timeout:
                        self.ctx.deadline.extend(delay)
                    await wait_or_cancel(delay, self.cancel, self.ctx.deadline)

                case Catch(catcher=catcher):
                    logger.info(
                        f"Execution {self.ctx.execution_id}: {name} failed with "
                        f"{failure.error_kind}, routing to {catcher.next}"
                    )
                    await self._conclude(record, StateExecutionStatus.FAILED, error=failure)
                    data = raw
                    if catcher.result_path is not None:
                        data = merge_result(raw, failure.to_payload(), catcher.result_path)
                    return _Next(catcher.next, data)

                case Propagate():
                    await self._conclude(record, StateExecutionStatus.FAILED, error=failure)
                    return _Stop(failure)

    async def _attempt(
        self, name: str, state: TaskState | ParallelState, raw: Any, record: StateExecution
    ) -> Any:
        """One attempt of a Task or Parallel state, returning its shaped result."""
        effective = select_input(raw, state.input_path)
        if state.parameters is not None:
            effective = apply_template(state.parameters, effective)

        if isinstance(state, TaskState):
            result = await self._invoke(name, state, effective, record)
        else:
            # parallel imports this module
            from pyfuncflow.executor.parallel import BranchCoordinator

            coordinator = BranchCoordinator(self.ctx, self.cancel, parent_state=name)
            result = await coordinator.run(state, effective)

        if state.result_selector is not None:
            result = apply_template(state.result_selector, result)
        return result

    async def _invoke(
        self, name: str, state: TaskState, payload: Any, record: StateExecution
    ) -> Any:
        timeout = state.timeout_sec or self.ctx.config.default_task_timeout_sec
        if state.heartbeat_sec is not None:
            timeout = min(timeout, state.heartbeat_sec)

        try:
            result = await race(
                self.ctx.invoker.invoke(state.function_id, payload, timeout),
                self.cancel,
                timeout=timeout,
                deadline=self.ctx.deadline,
                grace=self.ctx.config.cancellation_grace_sec,
            )
        except TimeoutError as e:
            raise StateTimeoutError(name, timeout) from e
        except WorkflowError as e:
            if isinstance(e, InvocationError) and e.invocation_id:
                record.invocation_id = e.invocation_id
            raise
        except Exception as e:
            raise InvocationError.from_exception(e) from e

        record.invocation_id = result.invocation_id
        return result.output

    @staticmethod
    def _follow(state: State, output: Any) -> _Step:
        if state.end or not state.next:
            return _End(output)
        return _Next(state.next, output)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def _open_record(self, name: str, state: State, raw: Any) -> StateExecution:
        record = StateExecution(
            id=new_id(),
            execution_id=self.ctx.execution_id,
            state_name=name,
            state_type=state.state_type,
            status=StateExecutionStatus.RUNNING,
            input=raw,
            parent_state=self.parent_state,
            branch_index=self.branch_index,
            started_at=utcnow(),
        )
        await self.ctx.store.append_state_execution(record)
        return record

    async def _conclude(
        self,
        record: StateExecution,
        status: StateExecutionStatus,
        *,
        output: Any = None,
        error: WorkflowError | None = None,
    ) -> None:
        record.status = status
        record.output = output
        record.completed_at = utcnow()
        if error is not None:
            record.error = error.summary()
            record.error_code = error.error_kind
        elif status is StateExecutionStatus.SUCCEEDED:
            record.error = None
            record.error_code = None
        await self.ctx.store.update_state_execution(record)

    async def _abandon(self, record: StateExecution, exc: Exception) -> None:
        """Mark the record FAILED after an unexpected exception; the caller re-raises."""
        error = WorkflowError(str(exc), error_kind=type(exc).__name__)
        try:
            await self._conclude(record, StateExecutionStatus.FAILED, error=error)
        except Exception as store_error:
            logger.error(
                f"Execution {self.ctx.execution_id}: could not conclude {record.state_name} "
                f"after {type(exc).__name__}: {store_error}"
            )


class BranchScope(Scope):
    """A Parallel branch: the plain transition loop with no hooks."""


__all__ = ["RunContext", "Scope", "BranchScope"]
