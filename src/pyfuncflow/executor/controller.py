"""
Execution Controller: the top-level state machine of one execution.

Lifecycle owned here:

    PENDING -> RUNNING -> SUCCEEDED | FAILED | TIMEOUT | CANCELLED
                 ^  |
          resume |  | breakpoint
                 |  v
                PAUSED

The controller is the only writer of its execution's status while it
runs. Every status write is a compare-and-set against RUNNING (or
PENDING for the first one), so an external stop that already finalized
the execution is never overwritten.

Durability: after every transition the controller checkpoints
current_state and the input about to be delivered to it. A run that
was interrupted (process exit, shutdown) is restarted from that
checkpoint by WorkflowService.recover().
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from pyfuncflow.config import EngineConfig
from pyfuncflow.core.cancel import CancelScope, Deadline
from pyfuncflow.core.errors import CancellationError, ExecutionTimeoutError
from pyfuncflow.executor.breakpoints import BreakpointController, Mailbox
from pyfuncflow.executor.invoker import FunctionInvoker
from pyfuncflow.executor.outcome import Completed, Failed, Paused, ScopeOutcome
from pyfuncflow.executor.scope import RunContext, Scope
from pyfuncflow.models import ExecutionStatus, WorkflowExecution, utcnow
from pyfuncflow.storage.base import StorageError, WorkflowStore

logger = logging.getLogger(__name__)


class ExecutionController(Scope):
    """Drives one WorkflowExecution from its checkpoint to an outcome.

    Usage:
        controller = ExecutionController(
            execution, store, invoker, EngineConfig(), breakpoints
        )
        final = await controller.execute()
    """

    def __init__(
        self,
        execution: WorkflowExecution,
        store: WorkflowStore,
        invoker: FunctionInvoker,
        config: EngineConfig,
        breakpoints: BreakpointController,
        *,
        cancel: CancelScope | None = None,
        skip_breakpoint_at: str | None = None,
    ):
        if execution.workflow_definition is None:
            raise StorageError(f"execution {execution.id} has no definition snapshot")

        ctx = RunContext(
            execution_id=execution.id,
            store=store,
            invoker=invoker,
            config=config,
            deadline=Deadline(execution.id, execution.timeout_at),
        )
        super().__init__(ctx, execution.workflow_definition, cancel or CancelScope())
        self.execution = execution
        self._breakpoints = breakpoints
        self._mailbox: Mailbox | None = None
        self._skip_breakpoint_at = skip_breakpoint_at

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def _before_enter(self, state_name: str, data: Any) -> Paused | None:
        """Drain breakpoint commands, then pause if ``state_name`` is marked."""
        if self._mailbox is None:
            return None
        applied = self._mailbox.drain()
        if applied:
            logger.debug(f"Execution {self.execution.id}: applied {applied} breakpoint command(s)")

        if state_name == self._skip_breakpoint_at:
            # The breakpoint that caused the pause is passed once after resume
            self._skip_breakpoint_at = None
            return None
        if state_name in self._mailbox.breakpoints:
            return Paused(state_name=state_name, input=data)
        return None

    async def _after_transition(self, state_name: str, data: Any) -> None:
        """Checkpoint the next state and its input."""
        checkpoint = replace(
            self.execution,
            current_state=state_name,
            checkpoint_input=data,
            timeout_at=self.ctx.deadline.expires_at,
            updated_at=utcnow(),
        )
        if not await self._write(checkpoint):
            raise CancellationError("execution was finalized by another actor")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self) -> WorkflowExecution:
        """Run until the execution is terminal or paused.

        Returns:
            The execution as last written by this controller (or as found
            in the store, when an external actor finalized it first)
        """
        if not await self._start():
            return await self._reload()

        self._mailbox = await self._breakpoints.attach(self.execution.id)
        try:
            state_name = self.execution.current_state or self.graph.start_at
            outcome = await self.run(state_name, self.execution.checkpoint_input)
        except CancellationError as e:
            return await self._finish(ExecutionStatus.CANCELLED, error=e.summary(), code=e.error_kind)
        except ExecutionTimeoutError as e:
            return await self._finish(ExecutionStatus.TIMEOUT, error=e.summary(), code=e.error_kind)
        except Exception as e:
            logger.error(f"Execution {self.execution.id} crashed: {e}", exc_info=True)
            return await self._finish(
                ExecutionStatus.FAILED, error=f"{type(e).__name__}: {e}", code=type(e).__name__
            )
        finally:
            self._breakpoints.detach(self.execution.id, self._mailbox)

        return await self._settle(outcome)

    async def _start(self) -> bool:
        """PENDING -> RUNNING (first run) or continue a RUNNING checkpoint."""
        now = utcnow()
        if self.execution.status is ExecutionStatus.PENDING:
            started = replace(
                self.execution,
                status=ExecutionStatus.RUNNING,
                started_at=now,
                current_state=self.graph.start_at,
                checkpoint_input=self.execution.input,
                updated_at=now,
            )
            if not await self.ctx.store.update_execution(started, expected=[ExecutionStatus.PENDING]):
                logger.debug(f"Execution {self.execution.id} was finalized before it started")
                return False
            self.execution = started
            logger.info(f"Execution {self.execution.id} started at {self.graph.start_at}")
            return True

        if self.execution.status is ExecutionStatus.RUNNING:
            logger.info(
                f"Execution {self.execution.id} continuing at {self.execution.current_state}"
            )
            return True

        logger.debug(f"Execution {self.execution.id} is {self.execution.status}, not running it")
        return False

    async def _settle(self, outcome: ScopeOutcome) -> WorkflowExecution:
        match outcome:
            case Completed(output=output):
                return await self._finish(ExecutionStatus.SUCCEEDED, output=output)
            case Failed(error=error):
                return await self._finish(
                    ExecutionStatus.FAILED, error=error.summary(), code=error.error_kind
                )
            case Paused(state_name=state_name, input=data):
                now = utcnow()
                paused = replace(
                    self.execution,
                    status=ExecutionStatus.PAUSED,
                    current_state=state_name,
                    checkpoint_input=data,
                    paused_at_state=state_name,
                    paused_input=data,
                    paused_at=now,
                    timeout_at=self.ctx.deadline.expires_at,
                    updated_at=now,
                )
                if await self._write(paused):
                    logger.info(f"Execution {self.execution.id} paused before {state_name}")
                return self.execution
        raise TypeError(f"unexpected scope outcome: {outcome!r}")

    async def _finish(
        self,
        status: ExecutionStatus,
        *,
        output: Any = None,
        error: str | None = None,
        code: str | None = None,
    ) -> WorkflowExecution:
        now = utcnow()
        final = replace(
            self.execution,
            status=status,
            output=output,
            error=error,
            error_code=code,
            completed_at=now,
            updated_at=now,
            timeout_at=self.ctx.deadline.expires_at,
        )
        if await self._write(final):
            logger.info(f"Execution {self.execution.id} finished: {status}")
            return self.execution
        return await self._reload()

    async def _write(self, execution: WorkflowExecution) -> bool:
        written = await self.ctx.store.update_execution(execution, expected=[ExecutionStatus.RUNNING])
        if written:
            self.execution = execution
        else:
            logger.debug(f"Execution {execution.id}: status changed externally, write skipped")
        return written

    async def _reload(self) -> WorkflowExecution:
        stored = await self.ctx.store.get_execution(self.execution.id)
        return stored if stored is not None else self.execution


__all__ = ["ExecutionController"]
