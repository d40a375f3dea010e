"""
Executor module - Runtime engine for declarative workflows.

This module contains the execution components:
- validator: Structural and graph validation of definitions
- choice: Choice rule evaluation
- policy: Retry/catch decisions
- timer: Wait state duration resolution
- invoker: Function invocation boundary
- scope: The per-state transition loop (Template Method)
- parallel: Branch fork/join for Parallel states
- breakpoints: Breakpoint mailboxes and the pause/resume handshake
- controller: Top-level execution state machine
- service: Control surface (workflows, executions, breakpoints)
"""

from pyfuncflow.executor.outcome import Completed, Failed, Paused, ScopeOutcome
from pyfuncflow.executor.timer import parse_timestamp, resolve_wait_seconds
from pyfuncflow.executor.choice import evaluate, matches
from pyfuncflow.executor.policy import Catch, Propagate, Retry, decide
from pyfuncflow.executor.invoker import FunctionInvoker, InvocationResult, LocalFunctionInvoker
from pyfuncflow.executor.validator import ValidationReport, parse_definition, validate
from pyfuncflow.executor.scope import BranchScope, RunContext, Scope
from pyfuncflow.executor.parallel import BranchCoordinator
from pyfuncflow.executor.breakpoints import BreakpointController, ResumePoint
from pyfuncflow.executor.controller import ExecutionController
from pyfuncflow.executor.service import ExecutionDetail, WorkflowService

__all__ = [
    # Scope outcomes
    "Completed",
    "Failed",
    "Paused",
    "ScopeOutcome",
    # Validation
    "ValidationReport",
    "validate",
    "parse_definition",
    # Evaluation
    "evaluate",
    "matches",
    "decide",
    "Retry",
    "Catch",
    "Propagate",
    "parse_timestamp",
    "resolve_wait_seconds",
    # Invocation
    "FunctionInvoker",
    "LocalFunctionInvoker",
    "InvocationResult",
    # Execution
    "RunContext",
    "Scope",
    "BranchScope",
    "BranchCoordinator",
    "BreakpointController",
    "ResumePoint",
    "ExecutionController",
    # Control surface
    "WorkflowService",
    "ExecutionDetail",
]
