"""
Core primitives shared by the executor and storage layers.

This module provides:
- The error taxonomy with matchable error kinds
- Reference-path addressing into JSON data contexts
- Cooperative cancellation scopes and execution deadlines
"""

from pyfuncflow.core.cancel import CancelScope, Deadline, race, wait_or_cancel
from pyfuncflow.core.errors import (
    CATCH_ALL,
    BranchFailedError,
    CancellationError,
    ChoiceNoMatchError,
    DataPathError,
    ExecutionNotFoundError,
    ExecutionTimeoutError,
    FailStateError,
    InvalidStateError,
    InvocationError,
    StateNotFoundError,
    StateTimeoutError,
    ValidationError,
    ValidationIssue,
    WorkflowError,
    WorkflowNotFoundError,
)
from pyfuncflow.core.paths import (
    apply_template,
    get_path,
    is_valid_path,
    lookup,
    merge_result,
    parse_path,
    select_input,
    select_output,
    set_path,
)

__all__ = [
    # Errors
    "CATCH_ALL",
    "WorkflowError",
    "ValidationIssue",
    "ValidationError",
    "StateNotFoundError",
    "ChoiceNoMatchError",
    "InvocationError",
    "StateTimeoutError",
    "ExecutionTimeoutError",
    "CancellationError",
    "BranchFailedError",
    "FailStateError",
    "DataPathError",
    "InvalidStateError",
    "WorkflowNotFoundError",
    "ExecutionNotFoundError",
    # Paths
    "parse_path",
    "is_valid_path",
    "lookup",
    "get_path",
    "set_path",
    "apply_template",
    "select_input",
    "merge_result",
    "select_output",
    # Cancellation
    "CancelScope",
    "Deadline",
    "race",
    "wait_or_cancel",
]
