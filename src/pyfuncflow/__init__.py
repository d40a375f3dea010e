"""
pyfuncflow: declarative workflow orchestration for Python.

A workflow is a JSON-shaped graph of named states (Task, Choice, Wait,
Parallel, Pass, Fail, Succeed). Executions walk that graph, invoke
registered functions for Task states, record every state attempt, and
can be paused at breakpoints, resumed, stopped and recovered.

Design Pattern: Façade Pattern
This module re-exports the pieces most callers need, hiding the split
between models, storage and the execution engine.

Example:
    ```python
    import asyncio
    from pyfuncflow import LocalFunctionInvoker, SqliteWorkflowStore, WorkflowService

    invoker = LocalFunctionInvoker()

    @invoker.function("double")
    async def double(payload):
        return {"value": payload["value"] * 2}

    async def main():
        store = SqliteWorkflowStore("workflows.db")
        await store.connect()

        service = WorkflowService(store, invoker).with_task_timeout(10)
        workflow = await service.create_workflow(
            "doubler",
            {
                "start_at": "Double",
                "states": {"Double": {"type": "Task", "function_id": "double", "end": True}},
            },
        )
        execution = await service.start_execution(workflow.id, {"value": 21})
        final = await service.wait_for_execution(execution.id)
        print(final.status, final.output)

        await service.shutdown()
        await store.close()

    asyncio.run(main())
    ```
"""

# Configuration
from pyfuncflow.config import EngineConfig

# Errors, paths, cancellation
from pyfuncflow.core import (
    CATCH_ALL,
    BranchFailedError,
    CancellationError,
    CancelScope,
    ChoiceNoMatchError,
    DataPathError,
    Deadline,
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

# Models
from pyfuncflow.models import (
    Breakpoint,
    CatchConfig,
    ExecutionStatus,
    RetryPolicy,
    StateExecution,
    StateExecutionStatus,
    StateType,
    Workflow,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStatus,
)

# Storage (Adapter pattern)
from pyfuncflow.storage import (
    InMemoryWorkflowStore,
    RedisWorkflowStore,
    SqliteWorkflowStore,
    StorageError,
    WorkflowStore,
)

# Execution engine
from pyfuncflow.executor import (
    BreakpointController,
    ExecutionController,
    ExecutionDetail,
    FunctionInvoker,
    InvocationResult,
    LocalFunctionInvoker,
    ValidationReport,
    WorkflowService,
    parse_definition,
    validate,
)

# Version
__version__ = "0.1.0"

__all__ = [
    # Configuration
    "EngineConfig",

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
    "StorageError",

    # Cancellation
    "CancelScope",
    "Deadline",

    # Models
    "WorkflowStatus",
    "ExecutionStatus",
    "StateExecutionStatus",
    "StateType",
    "RetryPolicy",
    "CatchConfig",
    "WorkflowDefinition",
    "Workflow",
    "WorkflowExecution",
    "StateExecution",
    "Breakpoint",

    # Storage
    "WorkflowStore",
    "SqliteWorkflowStore",
    "RedisWorkflowStore",
    "InMemoryWorkflowStore",

    # Validation
    "ValidationReport",
    "validate",
    "parse_definition",

    # Execution
    "FunctionInvoker",
    "LocalFunctionInvoker",
    "InvocationResult",
    "ExecutionController",
    "BreakpointController",
    "WorkflowService",
    "ExecutionDetail",

    # Metadata
    "__version__",
]
