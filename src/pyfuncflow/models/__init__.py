"""
Core data models for pyfuncflow.

This module provides:
- Status enums (ExecutionStatus, StateExecutionStatus, WorkflowStatus)
- Retry and catch policies
- Choice rule predicate tree
- Workflow definition (state variants, branches)
- Runtime records (Workflow, WorkflowExecution, StateExecution, Breakpoint)
"""

from pyfuncflow.models.choice import (
    And,
    ChoiceRule,
    Comparison,
    Not,
    Or,
    Predicate,
    TypeTest,
)
from pyfuncflow.models.definition import (
    UNSET,
    Branch,
    ChoiceState,
    FailState,
    ParallelState,
    PassState,
    State,
    StateType,
    SucceedState,
    TaskState,
    WaitState,
    WorkflowDefinition,
)
from pyfuncflow.models.execution import (
    Breakpoint,
    StateExecution,
    Workflow,
    WorkflowExecution,
    definition_fingerprint,
    new_id,
    utcnow,
)
from pyfuncflow.models.retry import CatchConfig, RetryPolicy
from pyfuncflow.models.status import ExecutionStatus, StateExecutionStatus, WorkflowStatus

__all__ = [
    # Status
    "ExecutionStatus",
    "StateExecutionStatus",
    "WorkflowStatus",
    # Policies
    "RetryPolicy",
    "CatchConfig",
    # Choice rules
    "ChoiceRule",
    "Predicate",
    "Comparison",
    "TypeTest",
    "And",
    "Or",
    "Not",
    # Definition
    "UNSET",
    "StateType",
    "State",
    "TaskState",
    "ChoiceState",
    "WaitState",
    "ParallelState",
    "PassState",
    "FailState",
    "SucceedState",
    "Branch",
    "WorkflowDefinition",
    # Records
    "Workflow",
    "WorkflowExecution",
    "StateExecution",
    "Breakpoint",
    "definition_fingerprint",
    "new_id",
    "utcnow",
]
