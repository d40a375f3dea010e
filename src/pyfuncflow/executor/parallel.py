"""
Branch Coordinator.

Forks a Parallel state into one BranchScope per branch, runs them
concurrently and joins their outcomes.

Join policy:
- every branch completes: outputs in branch declaration order
- any branch fails: the remaining branches are cancelled (cooperatively,
  then forcibly after the grace period) and the failure of the first
  failing branch *by declaration order* is raised as BranchFailedError
- the enclosing scope was cancelled or the execution deadline passed:
  that interruption is re-raised unchanged
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

from pyfuncflow.core.cancel import CancelScope
from pyfuncflow.core.errors import (
    BranchFailedError,
    CancellationError,
    ExecutionTimeoutError,
    WorkflowError,
)
from pyfuncflow.executor.outcome import Completed, Failed
from pyfuncflow.executor.scope import BranchScope, RunContext
from pyfuncflow.models import ParallelState

logger = logging.getLogger(__name__)


class BranchCoordinator:
    """Runs the branches of one Parallel state attempt.

    Usage:
        coordinator = BranchCoordinator(ctx, scope.cancel, parent_state="Fan")
        outputs = await coordinator.run(state, data)
    """

    def __init__(self, ctx: RunContext, cancel: CancelScope, parent_state: str):
        self.ctx = ctx
        self.cancel = cancel
        self.parent_state = parent_state

    async def run(self, state: ParallelState, data: Any) -> list[Any]:
        """Run every branch with a copy of ``data`` as its input.

        Raises:
            BranchFailedError: A branch failed (first by declaration order)
            CancellationError: The enclosing scope was cancelled
            ExecutionTimeoutError: The whole-execution deadline passed
        """
        scopes = [
            BranchScope(
                self.ctx,
                branch,
                self.cancel.child(),
                parent_state=self.parent_state,
                branch_index=index,
            )
            for index, branch in enumerate(state.branches)
        ]
        tasks = [
            asyncio.create_task(scope.run(scope.graph.start_at, copy.deepcopy(data)))
            for scope in scopes
        ]
        logger.debug(
            f"Execution {self.ctx.execution_id}: {self.parent_state} forked {len(tasks)} branches"
        )

        try:
            await self._join(scopes, tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return self._collect(tasks)

    async def _join(self, scopes: list[BranchScope], tasks: list[asyncio.Task]) -> None:
        """Wait until every branch finished, cancelling siblings on the first failure."""
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            if any(_failed(task) for task in done):
                break

        if not pending:
            return

        for scope in scopes:
            scope.cancel.cancel(f"sibling branch of {self.parent_state} failed")

        grace = self.ctx.config.cancellation_grace_sec
        _, stragglers = await asyncio.wait(pending, timeout=grace)
        if stragglers:
            logger.warning(
                f"Execution {self.ctx.execution_id}: force-cancelling {len(stragglers)} "
                f"branch(es) of {self.parent_state} after {grace:g}s grace"
            )
            for task in stragglers:
                task.cancel()
            await asyncio.wait(stragglers, timeout=grace)

    def _collect(self, tasks: list[asyncio.Task]) -> list[Any]:
        if self.cancel.cancelled:
            raise CancellationError(self.cancel.reason or "cancelled")

        for task in tasks:
            if _finished(task) and isinstance(task.exception(), ExecutionTimeoutError):
                raise task.exception()

        outputs = []
        for index, task in enumerate(tasks):
            if not _finished(task):
                continue
            error = task.exception()
            if error is None:
                outcome = task.result()
                if isinstance(outcome, Failed):
                    raise BranchFailedError(self.parent_state, index, outcome.error)
                if isinstance(outcome, Completed):
                    outputs.append(outcome.output)
                    continue
                raise RuntimeError(f"branch {index} of {self.parent_state} returned {outcome!r}")
            if isinstance(error, CancellationError):
                continue
            if isinstance(error, WorkflowError):
                raise BranchFailedError(self.parent_state, index, error)
            raise error

        if len(outputs) != len(tasks):
            raise CancellationError(f"branches of {self.parent_state} were cancelled")
        return outputs


def _finished(task: asyncio.Task) -> bool:
    return task.done() and not task.cancelled()


def _failed(task: asyncio.Task) -> bool:
    """A branch ended in anything but a Completed outcome."""
    if task.cancelled():
        return True
    if task.exception() is not None:
        return True
    return not isinstance(task.result(), Completed)


__all__ = ["BranchCoordinator"]
