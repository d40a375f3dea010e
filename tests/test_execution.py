"""
End-to-end execution tests: state semantics, data flow, retry/catch,
timeouts, Wait and Parallel states.
"""

import asyncio
from datetime import timedelta

import pytest
from conftest import CHECK_DEFINITION, LINEAR_DEFINITION, run_to_end, seed_execution

from pyfuncflow.config import EngineConfig
from pyfuncflow.core import InvocationError
from pyfuncflow.executor import BreakpointController, ExecutionController
from pyfuncflow.models import ExecutionStatus, StateExecutionStatus, utcnow
from pyfuncflow.storage import InMemoryWorkflowStore, StorageError


async def create(service, definition, name=None, **kwargs):
    return await service.create_workflow(name or f"wf-{id(definition)}", definition, **kwargs)


def task(function_id, **fields):
    return {"type": "Task", "function_id": function_id, **fields}


def flaky(failures: int, kind: str | None = None):
    """Function failing ``failures`` times before returning its payload."""
    calls = {"count": 0}

    async def func(payload):
        calls["count"] += 1
        if calls["count"] <= failures:
            if kind is not None:
                raise InvocationError(f"attempt {calls['count']} failed", error_kind=kind)
            raise ValueError(f"attempt {calls['count']} failed")
        return {"ok": True, "attempts": calls["count"]}

    func.calls = calls
    return func


# ==============================================================================
# Basic flow
# ==============================================================================


@pytest.mark.asyncio
async def test_linear_workflow_succeeds(service):
    workflow = await create(service, LINEAR_DEFINITION)
    final = await run_to_end(service, workflow.id, {"value": 21})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output == {"value": 42}
    assert final.started_at is not None and final.completed_at is not None

    detail = await service.get_execution(final.id)
    assert [r.state_name for r in detail.history] == ["Double", "Done"]
    assert all(r.status is StateExecutionStatus.SUCCEEDED for r in detail.history)
    assert detail.history[0].invocation_id is not None
    assert detail.history[1].input == {"value": 42}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "n,target,sign",
    [(5, "Pos", "positive"), (-1, "Neg", "negative"), (0, "Neg", "negative")],
)
async def test_choice_routes_by_first_matching_rule(service, n, target, sign):
    workflow = await create(service, CHECK_DEFINITION, name=f"check-{n}")
    final = await run_to_end(service, workflow.id, {"n": n})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output == {"n": n, "sign": sign}
    detail = await service.get_execution(final.id)
    assert [r.state_name for r in detail.history] == ["Check", target]


@pytest.mark.asyncio
@pytest.mark.parametrize("n,visited", [(5, ["Check", "Pos"]), (-1, ["Check", "Neg"])])
async def test_choice_into_succeed_states(service, n, visited):
    definition = {
        "start_at": "Check",
        "states": {
            "Check": {
                "type": "Choice",
                "choices": [{"variable": "$.n", "numeric_greater_than": 0, "next": "Pos"}],
                "default": "Neg",
            },
            "Pos": {"type": "Succeed"},
            "Neg": {"type": "Succeed"},
        },
    }
    workflow = await create(service, definition, name=f"succeed-{n}")
    final = await run_to_end(service, workflow.id, {"n": n})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output == {"n": n}
    detail = await service.get_execution(final.id)
    assert [r.state_name for r in detail.history] == visited


@pytest.mark.asyncio
async def test_choice_without_match_fails(service):
    definition = {
        "start_at": "Check",
        "states": {
            "Check": {
                "type": "Choice",
                "choices": [{"variable": "$.n", "numeric_equals": 1, "next": "Done"}],
            },
            "Done": {"type": "Succeed"},
        },
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {"n": 2})

    assert final.status is ExecutionStatus.FAILED
    assert final.error_code == "States.NoChoiceMatched"


@pytest.mark.asyncio
async def test_task_data_flow(service, invoker):
    invoker.register("fn-quote", lambda payload: {"price": payload["qty"] * 3, "currency": "EUR"})
    definition = {
        "start_at": "Quote",
        "states": {
            "Quote": task(
                "fn-quote",
                input_path="$.order",
                parameters={"qty.$": "$.quantity"},
                result_selector={"total.$": "$.price"},
                result_path="$.quote",
                output_path="$.quote",
                end=True,
            )
        },
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {"order": {"quantity": 4}, "customer": "ada"})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output == {"total": 12}


@pytest.mark.asyncio
async def test_pass_state_shapes_data(service):
    definition = {
        "start_at": "Shape",
        "states": {
            "Shape": {
                "type": "Pass",
                "parameters": {"who.$": "$.name", "greeting": "hello"},
                "result_path": "$.shaped",
                "next": "Done",
            },
            "Done": {"type": "Succeed", "output_path": "$.shaped"},
        },
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {"name": "ada"})
    assert final.output == {"who": "ada", "greeting": "hello"}


@pytest.mark.asyncio
async def test_fail_state_sets_error(service):
    definition = {
        "start_at": "Reject",
        "states": {"Reject": {"type": "Fail", "error": "OrderRejected", "cause": "out of stock"}},
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {})

    assert final.status is ExecutionStatus.FAILED
    assert final.error_code == "OrderRejected"
    assert "out of stock" in final.error


@pytest.mark.asyncio
async def test_unregistered_function_fails(service):
    definition = {"start_at": "T", "states": {"T": task("fn-missing", end=True)}}
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {})

    assert final.status is ExecutionStatus.FAILED
    assert final.error_code == "States.FunctionNotFound"


# ==============================================================================
# Retry and catch
# ==============================================================================


@pytest.mark.asyncio
async def test_retry_until_success(service, invoker):
    func = flaky(failures=2)
    invoker.register("fn-flaky", func)
    definition = {
        "start_at": "T",
        "states": {
            "T": task(
                "fn-flaky",
                retry=[
                    {"error_equals": ["States.TaskFailed"], "interval_seconds": 0.01, "max_attempts": 3}
                ],
                end=True,
            )
        },
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output == {"ok": True, "attempts": 3}

    detail = await service.get_execution(final.id)
    (record,) = detail.history
    assert record.retry_count == 2
    assert record.status is StateExecutionStatus.SUCCEEDED
    assert record.error is None


@pytest.mark.asyncio
async def test_retries_exhausted_then_caught(service, invoker):
    func = flaky(failures=10, kind="PaymentError")
    invoker.register("fn-pay", func)
    definition = {
        "start_at": "Pay",
        "states": {
            "Pay": task(
                "fn-pay",
                retry=[{"error_equals": ["PaymentError"], "interval_seconds": 0.01, "max_attempts": 2}],
                catch=[{"error_equals": ["PaymentError"], "next": "Recover", "result_path": "$.failure"}],
                end=True,
            ),
            "Recover": {"type": "Pass", "end": True},
        },
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {"order": 1})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output == {
        "order": 1,
        "failure": {"error": "PaymentError", "cause": "attempt 3 failed"},
    }
    assert func.calls["count"] == 3

    detail = await service.get_execution(final.id)
    pay, recover = detail.history
    assert pay.status is StateExecutionStatus.FAILED
    assert pay.error_code == "PaymentError"
    assert pay.retry_count == 2
    assert recover.state_name == "Recover"


@pytest.mark.asyncio
async def test_catch_without_result_path_passes_input(service, invoker):
    invoker.register("fn-broken", flaky(failures=10))
    definition = {
        "start_at": "T",
        "states": {
            "T": task("fn-broken", catch=[{"error_equals": ["States.ALL"], "next": "Recover"}], end=True),
            "Recover": {"type": "Pass", "end": True},
        },
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {"keep": "me"})
    assert final.output == {"keep": "me"}


@pytest.mark.asyncio
async def test_uncaught_failure_fails_execution(service, invoker):
    invoker.register("fn-broken", flaky(failures=10))
    definition = {"start_at": "T", "states": {"T": task("fn-broken", end=True)}}
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {})

    assert final.status is ExecutionStatus.FAILED
    assert final.error_code == "ValueError"
    assert "attempt 1 failed" in final.error


# ==============================================================================
# Timeouts
# ==============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize("limits", [{"timeout_sec": 0.05}, {"timeout_sec": 5, "heartbeat_sec": 0.05}])
async def test_task_timeout_is_catchable(service, limits):
    definition = {
        "start_at": "Slow",
        "states": {
            "Slow": task(
                "fn-sleep",
                **limits,
                catch=[{"error_equals": ["States.Timeout"], "next": "Late", "result_path": "$.error"}],
                end=True,
            ),
            "Late": {"type": "Pass", "end": True},
        },
    }
    workflow = await create(service, definition, name=f"slow-{len(limits)}")
    final = await run_to_end(service, workflow.id, {"seconds": 10})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output["error"]["error"] == "States.Timeout"


@pytest.mark.asyncio
async def test_default_task_timeout_applies(in_memory_store, invoker):
    from pyfuncflow.executor import WorkflowService

    service = WorkflowService(in_memory_store, invoker).with_task_timeout(0.05)
    try:
        definition = {"start_at": "Slow", "states": {"Slow": task("fn-sleep", end=True)}}
        workflow = await service.create_workflow("slow", definition)
        final = await run_to_end(service, workflow.id, {"seconds": 10})
        assert final.status is ExecutionStatus.FAILED
        assert final.error_code == "States.Timeout"
    finally:
        await service.shutdown()


async def drive(store, invoker, execution, config=None):
    controller = ExecutionController(
        execution,
        store,
        invoker,
        config or EngineConfig(cancellation_grace_sec=0.5),
        BreakpointController(store),
    )
    return await controller.execute()


@pytest.mark.asyncio
async def test_execution_deadline_times_out(in_memory_store, invoker):
    definition = {
        "start_at": "Hold",
        "states": {"Hold": {"type": "Wait", "seconds": 5, "end": True}},
    }
    execution = await seed_execution(in_memory_store, definition, timeout_sec=0.1)

    final = await drive(in_memory_store, invoker, execution)

    assert final.status is ExecutionStatus.TIMEOUT
    assert final.error_code == "States.Timeout"
    (record,) = await in_memory_store.list_state_executions(execution.id)
    assert record.status is StateExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_execution_deadline_ignores_state_catchers(in_memory_store, invoker):
    definition = {
        "start_at": "Slow",
        "states": {
            "Slow": task(
                "fn-sleep",
                timeout_sec=5,
                catch=[{"error_equals": ["States.ALL"], "next": "Recover"}],
                end=True,
            ),
            "Recover": {"type": "Pass", "end": True},
        },
    }
    execution = await seed_execution(
        in_memory_store, definition, input={"seconds": 10}, timeout_sec=0.1
    )

    final = await drive(in_memory_store, invoker, execution)

    assert final.status is ExecutionStatus.TIMEOUT
    history = await in_memory_store.list_state_executions(execution.id)
    assert [r.state_name for r in history] == ["Slow"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "counts,expected",
    [(True, ExecutionStatus.TIMEOUT), (False, ExecutionStatus.SUCCEEDED)],
)
async def test_backoff_counting_toward_deadline(in_memory_store, invoker, counts, expected):
    invoker.register("fn-flaky", flaky(failures=2))
    definition = {
        "start_at": "T",
        "states": {
            "T": task(
                "fn-flaky",
                retry=[{"error_equals": ["States.ALL"], "interval_seconds": 0.2, "max_attempts": 2}],
                end=True,
            )
        },
    }
    execution = await seed_execution(in_memory_store, definition, timeout_sec=0.3)
    config = EngineConfig(cancellation_grace_sec=0.5, backoff_counts_toward_timeout=counts)

    final = await drive(in_memory_store, invoker, execution, config)
    assert final.status is expected


@pytest.mark.asyncio
async def test_missing_state_at_runtime_fails(in_memory_store, invoker):
    # Stored without graph validation
    definition = {
        "start_at": "A",
        "states": {"A": {"type": "Pass", "next": "Ghost"}},
    }
    execution = await seed_execution(in_memory_store, definition)

    final = await drive(in_memory_store, invoker, execution)

    assert final.status is ExecutionStatus.FAILED
    assert final.error_code == "States.StateNotFound"


class RetryWriteFailingStore(InMemoryWorkflowStore):
    """Store whose first write of a retried record fails."""

    def __init__(self):
        super().__init__()
        self.failed_once = False

    async def update_state_execution(self, record):
        if record.retry_count == 1 and not self.failed_once:
            self.failed_once = True
            raise StorageError("disk full")
        await super().update_state_execution(record)


@pytest.mark.asyncio
async def test_storage_failure_concludes_running_record(invoker):
    store = RetryWriteFailingStore()
    invoker.register("fn-flaky", flaky(failures=5))
    definition = {
        "start_at": "T",
        "states": {
            "T": task(
                "fn-flaky",
                retry=[{"error_equals": ["States.ALL"], "interval_seconds": 0.01, "max_attempts": 3}],
                end=True,
            )
        },
    }
    execution = await seed_execution(store, definition)

    final = await drive(store, invoker, execution)

    assert final.status is ExecutionStatus.FAILED
    assert final.error_code == "StorageError"
    (record,) = await store.list_state_executions(execution.id)
    assert record.status is StateExecutionStatus.FAILED
    assert record.error_code == "StorageError"
    assert record.completed_at is not None


# ==============================================================================
# Wait
# ==============================================================================


@pytest.mark.asyncio
async def test_wait_passes_data_through(service):
    definition = {
        "start_at": "Pause",
        "states": {
            "Pause": {"type": "Wait", "seconds_path": "$.delay", "next": "Past"},
            "Past": {"type": "Wait", "timestamp": "2000-01-01T00:00:00Z", "end": True},
        },
    }
    workflow = await create(service, definition)

    loop = asyncio.get_running_loop()
    started = loop.time()
    final = await run_to_end(service, workflow.id, {"delay": 0.05, "x": 1})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output == {"delay": 0.05, "x": 1}
    assert loop.time() - started >= 0.05


@pytest.mark.asyncio
async def test_wait_until_timestamp_path(service):
    definition = {
        "start_at": "Until",
        "states": {"Until": {"type": "Wait", "timestamp_path": "$.at", "end": True}},
    }
    workflow = await create(service, definition)
    at = (utcnow() + timedelta(seconds=0.05)).isoformat()
    final = await run_to_end(service, workflow.id, {"at": at})
    assert final.status is ExecutionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_wait_with_bad_path_fails(service):
    definition = {
        "start_at": "Pause",
        "states": {"Pause": {"type": "Wait", "seconds_path": "$.delay", "end": True}},
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {"delay": "soon"})

    assert final.status is ExecutionStatus.FAILED
    assert final.error_code == "States.Runtime"


# ==============================================================================
# Parallel
# ==============================================================================


def branch(*states):
    """Linear branch of (name, state) pairs."""
    names = [name for name, _ in states]
    built = {}
    for index, (name, state) in enumerate(states):
        if index + 1 < len(states):
            built[name] = {**state, "next": names[index + 1]}
        else:
            built[name] = {**state, "end": True}
    return {"start_at": names[0], "states": built}


@pytest.mark.asyncio
async def test_parallel_outputs_in_branch_order(service):
    definition = {
        "start_at": "Fan",
        "states": {
            "Fan": {
                "type": "Parallel",
                "branches": [
                    branch(("Slow", {"type": "Wait", "seconds": 0.05}), ("A", task("fn-double"))),
                    branch(("B", task("fn-echo"))),
                ],
                "result_path": "$.results",
                "end": True,
            }
        },
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {"value": 3})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output == {"value": 3, "results": [{"value": 6}, {"value": 3}]}

    detail = await service.get_execution(final.id)
    by_name = {r.state_name: r for r in detail.history}
    assert by_name["Fan"].parent_state is None
    assert by_name["A"].parent_state == "Fan" and by_name["A"].branch_index == 0
    assert by_name["B"].parent_state == "Fan" and by_name["B"].branch_index == 1


@pytest.mark.asyncio
async def test_parallel_failure_cancels_siblings(service, invoker):
    async def declined(payload):
        await asyncio.sleep(0.05)
        raise InvocationError("card declined", error_kind="PaymentError")

    invoker.register("fn-declined", declined)
    definition = {
        "start_at": "Fan",
        "states": {
            "Fan": {
                "type": "Parallel",
                "branches": [
                    branch(("One", task("fn-sleep"))),
                    branch(("Two", task("fn-declined"))),
                    branch(("Three", task("fn-sleep"))),
                ],
                "end": True,
            }
        },
    }
    workflow = await create(service, definition)

    loop = asyncio.get_running_loop()
    started = loop.time()
    final = await run_to_end(service, workflow.id, {"seconds": 10})
    assert loop.time() - started < 5

    assert final.status is ExecutionStatus.FAILED
    assert final.error_code == "PaymentError"

    detail = await service.get_execution(final.id)
    by_name = {r.state_name: r for r in detail.history}
    assert by_name["Two"].status is StateExecutionStatus.FAILED
    assert by_name["Two"].error_code == "PaymentError"
    for sibling in ("One", "Three"):
        assert by_name[sibling].status is StateExecutionStatus.FAILED
        assert by_name[sibling].error_code == "States.Cancelled"
    assert by_name["Fan"].status is StateExecutionStatus.FAILED
    assert by_name["Fan"].error_code == "PaymentError"


@pytest.mark.asyncio
async def test_parallel_failure_is_catchable(service, invoker):
    invoker.register("fn-broken", flaky(failures=10, kind="InventoryError"))
    definition = {
        "start_at": "Fan",
        "states": {
            "Fan": {
                "type": "Parallel",
                "branches": [branch(("Ok", {"type": "Pass"})), branch(("Bad", task("fn-broken")))],
                "catch": [
                    {"error_equals": ["States.BranchFailed"], "next": "Recover", "result_path": "$.error"}
                ],
                "end": True,
            },
            "Recover": {"type": "Pass", "end": True},
        },
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output["error"]["error"] == "InventoryError"


@pytest.mark.asyncio
async def test_nested_parallel(service):
    inner = {
        "type": "Parallel",
        "branches": [branch(("X", {"type": "Pass", "result": "x"})), branch(("Y", {"type": "Pass", "result": "y"}))],
    }
    definition = {
        "start_at": "Outer",
        "states": {
            "Outer": {
                "type": "Parallel",
                "branches": [branch(("Inner", inner)), branch(("Z", {"type": "Pass", "result": "z"}))],
                "end": True,
            }
        },
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output == [["x", "y"], "z"]


@pytest.mark.asyncio
async def test_parallel_retry_reruns_branches(service, invoker):
    invoker.register("fn-flaky", flaky(failures=1))
    definition = {
        "start_at": "Fan",
        "states": {
            "Fan": {
                "type": "Parallel",
                "branches": [branch(("Work", task("fn-flaky")))],
                "retry": [{"error_equals": ["States.ALL"], "interval_seconds": 0, "max_attempts": 2}],
                "end": True,
            }
        },
    }
    workflow = await create(service, definition)
    final = await run_to_end(service, workflow.id, {})

    assert final.status is ExecutionStatus.SUCCEEDED
    assert final.output == [{"ok": True, "attempts": 2}]
    detail = await service.get_execution(final.id)
    fan = next(r for r in detail.history if r.state_name == "Fan")
    assert fan.retry_count == 1
    assert fan.status is StateExecutionStatus.SUCCEEDED
    assert all(r.status is not StateExecutionStatus.RUNNING for r in detail.history)
