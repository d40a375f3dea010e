"""Tests shared by every storage backend (in-memory, SQLite, Redis via fakeredis)."""

from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import LINEAR_DEFINITION, seed_execution

from pyfuncflow.models import (
    Breakpoint,
    ExecutionStatus,
    StateExecution,
    StateExecutionStatus,
    StateType,
    Workflow,
    WorkflowDefinition,
    new_id,
    utcnow,
)
from pyfuncflow.storage import StorageError


def make_workflow(name: str, created_offset: int = 0) -> Workflow:
    created = utcnow() + timedelta(seconds=created_offset)
    return Workflow(
        id=new_id(),
        name=name,
        definition=WorkflowDefinition.from_dict(LINEAR_DEFINITION),
        created_at=created,
        updated_at=created,
    )


def make_record(execution_id: str, state_name: str) -> StateExecution:
    return StateExecution(
        id=new_id(),
        execution_id=execution_id,
        state_name=state_name,
        state_type=StateType.TASK,
        status=StateExecutionStatus.RUNNING,
        input={"value": 1},
        started_at=utcnow(),
    )


# ==============================================================================
# Workflows
# ==============================================================================


@pytest.mark.asyncio
async def test_workflow_create_and_get(store):
    workflow = make_workflow("orders")
    await store.create_workflow(workflow)

    loaded = await store.get_workflow(workflow.id)
    assert loaded.name == "orders"
    assert loaded.definition == workflow.definition
    assert (await store.get_workflow_by_name("orders")).id == workflow.id
    assert await store.get_workflow(new_id()) is None
    assert await store.get_workflow_by_name("missing") is None


@pytest.mark.asyncio
async def test_workflow_name_is_unique(store):
    await store.create_workflow(make_workflow("orders"))
    with pytest.raises(StorageError):
        await store.create_workflow(make_workflow("orders"))


@pytest.mark.asyncio
async def test_list_workflows_newest_first(store):
    for offset, name in enumerate(["first", "second", "third"]):
        await store.create_workflow(make_workflow(name, created_offset=offset))

    page, total = await store.list_workflows(offset=0, limit=2)
    assert total == 3
    assert [w.name for w in page] == ["third", "second"]

    page, _ = await store.list_workflows(offset=2, limit=2)
    assert [w.name for w in page] == ["first"]


@pytest.mark.asyncio
async def test_update_workflow(store):
    workflow = make_workflow("orders")
    await store.create_workflow(workflow)

    await store.update_workflow(replace(workflow, description="v2", version=2))
    loaded = await store.get_workflow(workflow.id)
    assert loaded.description == "v2"
    assert loaded.version == 2

    with pytest.raises(StorageError):
        await store.update_workflow(make_workflow("ghost"))


@pytest.mark.asyncio
async def test_delete_workflow_cascades(store):
    execution = await seed_execution(store, LINEAR_DEFINITION)
    record = make_record(execution.id, "Double")
    await store.append_state_execution(record)
    await store.set_breakpoint(
        Breakpoint(id=new_id(), execution_id=execution.id, before_state="Done")
    )

    assert await store.delete_workflow(execution.workflow_id) is True
    assert await store.get_workflow(execution.workflow_id) is None
    assert await store.get_execution(execution.id) is None
    assert await store.list_state_executions(execution.id) == []
    assert await store.list_breakpoints(execution.id) == []
    assert await store.delete_workflow(execution.workflow_id) is False


# ==============================================================================
# Executions
# ==============================================================================


@pytest.mark.asyncio
async def test_execution_round_trip(store):
    execution = await seed_execution(store, LINEAR_DEFINITION, input={"value": 21})
    loaded = await store.get_execution(execution.id)
    assert loaded.input == {"value": 21}
    assert loaded.status is ExecutionStatus.PENDING
    assert loaded.workflow_definition == execution.workflow_definition
    assert loaded.timeout_at == execution.timeout_at


@pytest.mark.asyncio
async def test_update_execution_compare_and_set(store):
    execution = await seed_execution(store, LINEAR_DEFINITION)
    running = replace(execution, status=ExecutionStatus.RUNNING, current_state="Double")

    assert await store.update_execution(running, expected=[ExecutionStatus.RUNNING]) is False
    assert await store.update_execution(running, expected=[ExecutionStatus.PENDING]) is True
    loaded = await store.get_execution(execution.id)
    assert loaded.status is ExecutionStatus.RUNNING
    assert loaded.current_state == "Double"


@pytest.mark.asyncio
async def test_terminal_execution_is_immutable(store):
    execution = await seed_execution(store, LINEAR_DEFINITION)
    done = replace(execution, status=ExecutionStatus.SUCCEEDED, output={"value": 2})
    assert await store.update_execution(done) is True

    # No expected-status list can reopen it
    reopened = replace(execution, status=ExecutionStatus.RUNNING)
    assert await store.update_execution(reopened) is False
    assert await store.update_execution(reopened, expected=[ExecutionStatus.SUCCEEDED]) is False
    assert (await store.get_execution(execution.id)).status is ExecutionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_update_missing_execution_raises(store):
    execution = await seed_execution(store, LINEAR_DEFINITION)
    with pytest.raises(StorageError):
        await store.update_execution(replace(execution, id=new_id()))


@pytest.mark.asyncio
async def test_incomplete_and_active_counts(store):
    pending = await seed_execution(store, LINEAR_DEFINITION)
    paused = await seed_execution(store, LINEAR_DEFINITION, status=ExecutionStatus.PAUSED)
    done = await seed_execution(store, LINEAR_DEFINITION, status=ExecutionStatus.SUCCEEDED)

    incomplete = await store.list_incomplete_executions()
    assert [e.id for e in incomplete] == [pending.id]

    assert await store.count_active_executions(pending.workflow_id) == 1
    assert await store.count_active_executions(paused.workflow_id) == 1
    assert await store.count_active_executions(done.workflow_id) == 0


@pytest.mark.asyncio
async def test_list_executions_filters_by_workflow(store):
    first = await seed_execution(store, LINEAR_DEFINITION)
    await seed_execution(store, LINEAR_DEFINITION)

    page, total = await store.list_executions(first.workflow_id)
    assert total == 1
    assert page[0].id == first.id

    _, everything = await store.list_executions()
    assert everything == 2


@pytest.mark.asyncio
async def test_returned_records_are_copies(store):
    execution = await seed_execution(store, LINEAR_DEFINITION, input={"value": 1})
    loaded = await store.get_execution(execution.id)
    loaded.input["value"] = 999
    assert (await store.get_execution(execution.id)).input == {"value": 1}


# ==============================================================================
# History
# ==============================================================================


@pytest.mark.asyncio
async def test_history_keeps_append_order(store):
    execution = await seed_execution(store, LINEAR_DEFINITION)
    names = ["A", "B", "C", "D"]
    for name in names:
        await store.append_state_execution(make_record(execution.id, name))

    history = await store.list_state_executions(execution.id)
    assert [r.state_name for r in history] == names


@pytest.mark.asyncio
async def test_concluded_record_is_immutable(store):
    execution = await seed_execution(store, LINEAR_DEFINITION)
    record = make_record(execution.id, "Double")
    await store.append_state_execution(record)

    record.retry_count = 1
    await store.update_state_execution(record)

    record.status = StateExecutionStatus.SUCCEEDED
    record.output = {"value": 2}
    await store.update_state_execution(record)

    record.output = {"value": 3}
    with pytest.raises(StorageError):
        await store.update_state_execution(record)

    (stored,) = await store.list_state_executions(execution.id)
    assert stored.retry_count == 1
    assert stored.output == {"value": 2}


@pytest.mark.asyncio
async def test_update_missing_record_raises(store):
    execution = await seed_execution(store, LINEAR_DEFINITION)
    with pytest.raises(StorageError):
        await store.update_state_execution(make_record(execution.id, "Nope"))


# ==============================================================================
# Breakpoints
# ==============================================================================


@pytest.mark.asyncio
async def test_breakpoint_upsert_keeps_identity(store):
    execution = await seed_execution(store, LINEAR_DEFINITION)
    first = await store.set_breakpoint(
        Breakpoint(id=new_id(), execution_id=execution.id, before_state="Done")
    )
    again = await store.set_breakpoint(
        Breakpoint(id=new_id(), execution_id=execution.id, before_state="Done", enabled=False)
    )
    assert again.id == first.id
    assert again.enabled is False

    stored = await store.list_breakpoints(execution.id)
    assert len(stored) == 1
    assert stored[0].enabled is False


@pytest.mark.asyncio
async def test_breakpoint_delete(store):
    execution = await seed_execution(store, LINEAR_DEFINITION)
    await store.set_breakpoint(
        Breakpoint(id=new_id(), execution_id=execution.id, before_state="Double")
    )
    assert await store.delete_breakpoint(execution.id, "Double") is True
    assert await store.delete_breakpoint(execution.id, "Double") is False
    assert await store.list_breakpoints(execution.id) == []


# ==============================================================================
# Backend specifics
# ==============================================================================


@pytest.mark.asyncio
async def test_sqlite_file_store_survives_reconnect(tmp_path):
    from pyfuncflow.storage import SqliteWorkflowStore

    db_path = str(tmp_path / "nested" / "flows.db")
    store = SqliteWorkflowStore(db_path)
    await store.connect()
    execution = await seed_execution(store, LINEAR_DEFINITION, input={"value": 5})
    await store.close()

    reopened = SqliteWorkflowStore(db_path)
    await reopened.connect()
    try:
        loaded = await reopened.get_execution(execution.id)
        assert loaded.input == {"value": 5}
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_sqlite_requires_connect():
    from pyfuncflow.storage import SqliteWorkflowStore

    store = SqliteWorkflowStore(":memory:")
    with pytest.raises(StorageError):
        await store.get_workflow(new_id())


@pytest.mark.asyncio
async def test_redis_reset_only_touches_own_keys(redis_store):
    client = redis_store._redis
    await client.set("unrelated", "keep")
    await redis_store.create_workflow(make_workflow("orders"))

    await redis_store.reset()
    assert await client.get("unrelated") == "keep"
    assert await redis_store.get_workflow_by_name("orders") is None
