"""Cooperative cancellation and deadline primitives.

A CancelScope is the cancellation signal one execution scope observes.
Scopes form a tree: cancelling a parent cancels every child, while a
child (one Parallel branch) can be cancelled alone when a sibling fails.

A Deadline is the whole-execution wall-clock limit shared by the
top-level controller and all of its branches.

Neither primitive ever interrupts running code. Waiting code calls
``wait_or_cancel`` / ``race`` at its suspension points and reacts to the
signal there.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from pyfuncflow.core.errors import CancellationError, ExecutionTimeoutError

T = TypeVar("T")


class CancelScope:
    """Cancellation signal for one execution scope.

    Usage:
        scope = CancelScope()
        child = scope.child()

        scope.cancel("stopped by user")   # child.cancelled is now True too
    """

    def __init__(self, parent: CancelScope | None = None):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._children: list[CancelScope] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")

    def child(self) -> CancelScope:
        """Create a scope that is cancelled whenever this one is."""
        return CancelScope(parent=self)

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation to this scope and all of its children.

        Idempotent: the first reason wins.
        """
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_cancelled(self) -> None:
        """Guard clause used at every transition boundary."""
        if self._event.is_set():
            raise CancellationError(self._reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancelScope(cancelled={self.cancelled}, reason={self._reason!r})"


class Deadline:
    """Whole-execution wall-clock deadline.

    ``expires_at`` of None means unbounded. The deadline can be pushed
    back (pauses, and backoff delays when they do not count toward it).
    """

    def __init__(self, execution_id: str, expires_at: datetime | None):
        self.execution_id = execution_id
        self.expires_at = expires_at

    def remaining(self) -> float | None:
        """Seconds left, never negative. None when unbounded."""
        if self.expires_at is None:
            return None
        return max(0.0, (self.expires_at - datetime.now(UTC)).total_seconds())

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and datetime.now(UTC) >= self.expires_at

    def extend(self, seconds: float) -> None:
        if self.expires_at is not None and seconds > 0:
            self.expires_at = self.expires_at + timedelta(seconds=seconds)

    def raise_if_expired(self) -> None:
        """Lazy check performed at every transition boundary."""
        if self.expired:
            raise ExecutionTimeoutError(self.execution_id)

    def __repr__(self) -> str:
        return f"Deadline(expires_at={self.expires_at!r})"


def _bounded(timeout: float | None, deadline: Deadline | None) -> tuple[float | None, bool]:
    """Combine a local timeout with the execution deadline.

    Returns:
        (effective timeout, whether the execution deadline is the binding one)
    """
    remaining = deadline.remaining() if deadline is not None else None
    if remaining is None:
        return timeout, False
    if timeout is None or remaining < timeout:
        return remaining, True
    return timeout, False


async def wait_or_cancel(
    delay: float, scope: CancelScope, deadline: Deadline | None = None
) -> None:
    """Sleep for ``delay`` seconds unless the scope is cancelled first.

    Raises:
        CancellationError: If the scope is cancelled during the wait
        ExecutionTimeoutError: If the execution deadline passes first
    """
    scope.raise_if_cancelled()
    timeout, deadline_bound = _bounded(max(0.0, delay), deadline)
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(scope.wait(), timeout=timeout)
    scope.raise_if_cancelled()
    if deadline_bound and deadline is not None:
        raise ExecutionTimeoutError(deadline.execution_id)


async def race(
    awaitable: Awaitable[T],
    scope: CancelScope,
    *,
    timeout: float | None = None,
    deadline: Deadline | None = None,
    grace: float = 5.0,
) -> T:
    """Await ``awaitable`` while watching for cancellation and deadlines.

    The awaitable runs as its own task. If the scope is cancelled, the
    local ``timeout`` elapses or the execution deadline passes first, the
    task is cancelled and given ``grace`` seconds to finish unwinding.

    Raises:
        CancellationError: The scope was cancelled first
        TimeoutError: The local timeout elapsed first
        ExecutionTimeoutError: The execution deadline passed first
    """
    scope.raise_if_cancelled()
    task = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(scope.wait())
    effective, deadline_bound = _bounded(timeout, deadline)
    try:
        done, _ = await asyncio.wait(
            {task, watcher}, timeout=effective, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        watcher.cancel()

    if task in done:
        return task.result()

    await _abandon(task, grace)
    if scope.cancelled:
        raise CancellationError(scope.reason or "cancelled")
    if deadline_bound and deadline is not None:
        raise ExecutionTimeoutError(deadline.execution_id)
    raise TimeoutError()


async def _abandon(task: asyncio.Future, grace: float) -> None:
    """Cancel a task and wait a bounded time for it to unwind."""
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await asyncio.wait_for(asyncio.shield(task), timeout=grace)


__all__ = [
    "CancelScope",
    "Deadline",
    "wait_or_cancel",
    "race",
]
