"""
Scope outcomes.

Running a scope (the top-level execution or one Parallel branch) ends in
exactly one of these values. Pausing is an outcome, not an exception:
a paused scope returns and releases its task; resuming starts a new run
from the recorded snapshot.

Example:
    outcome = await scope.run(state_name, data)

    match outcome:
        case Completed(output):
            print(f"Scope completed: {output}")
        case Failed(error):
            print(f"Scope failed: {error.summary()}")
        case Paused(state_name, data):
            print(f"Paused before {state_name}")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pyfuncflow.core.errors import WorkflowError


@dataclass(frozen=True)
class Completed:
    """The scope reached ``end: true`` or a Succeed state."""

    output: Any


@dataclass(frozen=True)
class Failed:
    """An error propagated out of the scope (Fail state or uncaught error)."""

    error: WorkflowError


@dataclass(frozen=True)
class Paused:
    """The scope stopped just before entering ``state_name``.

    Attributes:
        state_name: The state that carries the breakpoint
        input: The input that would have been delivered to it
    """

    state_name: str
    input: Any


ScopeOutcome = Completed | Failed | Paused


__all__ = ["Completed", "Failed", "Paused", "ScopeOutcome"]
