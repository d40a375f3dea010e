"""
Breakpoint Controller.

Breakpoints are an external control channel into an otherwise autonomous
execution. Edits never flip shared flags inside a running controller:
they are persisted, then delivered as commands to the execution's
mailbox, which the controller drains just before it enters each state.
"About to enter B" and "a breakpoint on B was just added" therefore
cannot race; whichever the controller observes first at the boundary
wins.

Pause/resume handshake:
- the controller returns Paused and records status PAUSED together with
  paused_at_state / paused_input; its task then ends (no busy wait)
- resume() is a compare-and-set PAUSED -> RUNNING; a second resume fails
  with InvalidStateError
- the caller restarts a controller at paused_at_state with either the
  replacement input or paused_input, skipping the breakpoint once
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any

from pyfuncflow.core.errors import ExecutionNotFoundError, InvalidStateError, StateNotFoundError
from pyfuncflow.models import (
    UNSET,
    Breakpoint,
    ExecutionStatus,
    WorkflowExecution,
    new_id,
    utcnow,
)
from pyfuncflow.storage.base import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetBreakpoint:
    before_state: str


@dataclass(frozen=True)
class ClearBreakpoint:
    before_state: str


Command = SetBreakpoint | ClearBreakpoint


@dataclass(frozen=True)
class ResumePoint:
    """Everything needed to restart a paused execution.

    Attributes:
        execution: The execution, already RUNNING in the store
        state_name: State to enter first (its breakpoint is skipped once)
        input: Input delivered to that state
    """

    execution: WorkflowExecution
    state_name: str
    input: Any


class Mailbox:
    """Command queue of one running execution, plus its breakpoint set."""

    def __init__(self, breakpoints: set[str] | None = None):
        self._queue: asyncio.Queue[Command] = asyncio.Queue()
        self.breakpoints: set[str] = set(breakpoints or ())

    def post(self, command: Command) -> None:
        self._queue.put_nowait(command)

    def drain(self) -> int:
        """Apply every queued command. Returns how many were applied."""
        applied = 0
        while True:
            try:
                command = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return applied
            match command:
                case SetBreakpoint(before_state=name):
                    self.breakpoints.add(name)
                case ClearBreakpoint(before_state=name):
                    self.breakpoints.discard(name)
            applied += 1


class BreakpointController:
    """Per-execution breakpoints and the pause/resume handshake.

    Usage:
        controller = BreakpointController(store)
        await controller.set_breakpoint(execution_id, "Review")
        ...
        point = await controller.resume(execution_id, {"amount": 10})
    """

    def __init__(self, store: WorkflowStore):
        self._store = store
        self._mailboxes: dict[str, Mailbox] = {}

    async def attach(self, execution_id: str) -> Mailbox:
        """Open the mailbox of an execution that is about to run.

        The mailbox is registered before the stored breakpoints are read,
        so an edit made in between is delivered as a command rather than
        lost.
        """
        mailbox = Mailbox()
        self._mailboxes[execution_id] = mailbox
        stored = await self._store.list_breakpoints(execution_id)
        mailbox.breakpoints.update(bp.before_state for bp in stored if bp.enabled)
        return mailbox

    def detach(self, execution_id: str, mailbox: Mailbox) -> None:
        if self._mailboxes.get(execution_id) is mailbox:
            del self._mailboxes[execution_id]

    def _post(self, execution_id: str, command: Command) -> None:
        mailbox = self._mailboxes.get(execution_id)
        if mailbox is not None:
            mailbox.post(command)

    async def set_breakpoint(self, execution_id: str, before_state: str) -> Breakpoint:
        """Pause ``execution_id`` the next time it is about to enter ``before_state``.

        Raises:
            ExecutionNotFoundError: Unknown execution
            StateNotFoundError: ``before_state`` is not a state of the
                execution's top-level graph
        """
        execution = await self._require(execution_id)
        definition = execution.workflow_definition
        if definition is not None and before_state not in definition.states:
            raise StateNotFoundError(before_state)

        stored = await self._store.set_breakpoint(
            Breakpoint(id=new_id(), execution_id=execution_id, before_state=before_state)
        )
        self._post(execution_id, SetBreakpoint(before_state))
        logger.debug(f"Breakpoint set: execution={execution_id} before={before_state}")
        return stored

    async def list_breakpoints(self, execution_id: str) -> list[Breakpoint]:
        await self._require(execution_id)
        return await self._store.list_breakpoints(execution_id)

    async def delete_breakpoint(self, execution_id: str, before_state: str) -> bool:
        await self._require(execution_id)
        deleted = await self._store.delete_breakpoint(execution_id, before_state)
        self._post(execution_id, ClearBreakpoint(before_state))
        return deleted

    async def is_paused(self, execution_id: str) -> bool:
        execution = await self._require(execution_id)
        return execution.status is ExecutionStatus.PAUSED

    async def resume(self, execution_id: str, replacement_input: Any = UNSET) -> ResumePoint:
        """Flip a PAUSED execution back to RUNNING.

        Time spent paused does not count toward the execution deadline:
        timeout_at moves forward by the paused duration.

        Args:
            replacement_input: Overrides (does not merge with) the input
                the paused state would have received

        Raises:
            ExecutionNotFoundError: Unknown execution
            InvalidStateError: The execution is not PAUSED (including a
                concurrent resume that won the race)
        """
        execution = await self._require(execution_id)
        if execution.status is not ExecutionStatus.PAUSED or execution.paused_at_state is None:
            raise InvalidStateError(
                f"execution {execution_id} is {execution.status}, only paused executions can resume"
            )

        now = utcnow()
        timeout_at = execution.timeout_at
        if timeout_at is not None and execution.paused_at is not None:
            timeout_at = timeout_at + (now - execution.paused_at)

        data = execution.paused_input if replacement_input is UNSET else replacement_input
        resumed = replace(
            execution,
            status=ExecutionStatus.RUNNING,
            current_state=execution.paused_at_state,
            checkpoint_input=data,
            timeout_at=timeout_at,
            paused_at_state=None,
            paused_input=None,
            paused_at=None,
            updated_at=now,
        )
        if not await self._store.update_execution(resumed, expected=[ExecutionStatus.PAUSED]):
            raise InvalidStateError(f"execution {execution_id} is no longer paused")

        logger.info(f"Execution {execution_id} resumed at {execution.paused_at_state}")
        return ResumePoint(execution=resumed, state_name=execution.paused_at_state, input=data)

    async def _require(self, execution_id: str) -> WorkflowExecution:
        execution = await self._store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution


__all__ = [
    "BreakpointController",
    "Mailbox",
    "ResumePoint",
    "SetBreakpoint",
    "ClearBreakpoint",
]
