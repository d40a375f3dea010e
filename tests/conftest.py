"""
Pytest configuration and fixtures for pyfuncflow tests.

Provides reusable fixtures for storage backends, invokers, services and
sample workflow definitions.
"""

import asyncio
from collections.abc import AsyncGenerator
from datetime import timedelta

import fakeredis
import pytest
from hypothesis import strategies as st

from pyfuncflow.executor import LocalFunctionInvoker, WorkflowService
from pyfuncflow.models import (
    ExecutionStatus,
    Workflow,
    WorkflowDefinition,
    WorkflowExecution,
    new_id,
    utcnow,
)
from pyfuncflow.storage import InMemoryWorkflowStore, RedisWorkflowStore, SqliteWorkflowStore


@pytest.fixture
async def in_memory_store() -> AsyncGenerator[InMemoryWorkflowStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryWorkflowStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteWorkflowStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = await SqliteWorkflowStore.in_memory()
    yield store
    await store.close()


@pytest.fixture
async def redis_store() -> AsyncGenerator[RedisWorkflowStore, None]:
    """Redis store backed by fakeredis."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    store = RedisWorkflowStore(client=client)
    await store.connect()
    yield store
    await store.reset()
    await store.close()


@pytest.fixture(params=["memory", "sqlite", "redis"])
async def store(request) -> AsyncGenerator:
    """Every storage backend, one after the other."""
    if request.param == "memory":
        backend = InMemoryWorkflowStore()
        yield backend
        await backend.reset()
    elif request.param == "sqlite":
        backend = await SqliteWorkflowStore.in_memory()
        yield backend
        await backend.close()
    else:
        backend = RedisWorkflowStore(client=fakeredis.FakeAsyncRedis(decode_responses=True))
        await backend.connect()
        yield backend
        await backend.reset()
        await backend.close()


@pytest.fixture
def invoker() -> LocalFunctionInvoker:
    """Invoker with a few general-purpose functions registered."""
    invoker = LocalFunctionInvoker()

    @invoker.function("fn-echo")
    async def echo(payload):
        return payload

    @invoker.function("fn-double")
    def double(payload):
        return {"value": payload["value"] * 2}

    @invoker.function("fn-sleep")
    async def sleep(payload):
        await asyncio.sleep(payload.get("seconds", 10))
        return {"slept": True}

    return invoker


@pytest.fixture
async def service(in_memory_store, invoker) -> AsyncGenerator[WorkflowService, None]:
    """Service over the in-memory store with short grace periods."""
    service = WorkflowService(in_memory_store, invoker).with_cancellation_grace(0.5)
    yield service
    await service.shutdown()


async def run_to_end(service: WorkflowService, workflow_id: str, input=None, timeout: float = 10):
    """Start an execution and wait until its background run ends."""
    execution = await service.start_execution(workflow_id, input)
    return await service.wait_for_execution(execution.id, timeout=timeout)


async def seed_execution(
    store,
    definition: dict,
    *,
    status: ExecutionStatus = ExecutionStatus.PENDING,
    input=None,
    timeout_sec: float = 60,
    **fields,
) -> WorkflowExecution:
    """Store a workflow and one execution of it without starting anything."""
    parsed = WorkflowDefinition.from_dict(definition)
    workflow = Workflow(id=new_id(), name=f"wf-{new_id()}", definition=parsed)
    await store.create_workflow(workflow)
    now = utcnow()
    execution = WorkflowExecution(
        id=new_id(),
        workflow_id=workflow.id,
        workflow_name=workflow.name,
        workflow_definition=parsed,
        status=status,
        input=input,
        timeout_at=now + timedelta(seconds=timeout_sec),
        created_at=now,
        updated_at=now,
        **fields,
    )
    await store.create_execution(execution)
    return execution


# Sample definitions reused across tests

LINEAR_DEFINITION = {
    "start_at": "Double",
    "states": {
        "Double": {"type": "Task", "function_id": "fn-double", "next": "Done"},
        "Done": {"type": "Succeed"},
    },
}

CHECK_DEFINITION = {
    "start_at": "Check",
    "states": {
        "Check": {
            "type": "Choice",
            "choices": [{"variable": "$.n", "numeric_greater_than": 0, "next": "Pos"}],
            "default": "Neg",
        },
        "Pos": {"type": "Pass", "result": "positive", "result_path": "$.sign", "end": True},
        "Neg": {"type": "Pass", "result": "negative", "result_path": "$.sign", "end": True},
    },
}


# Hypothesis strategies for property-based testing

state_names = st.text(
    min_size=1, max_size=12, alphabet=st.characters(whitelist_categories=("Lu", "Ll"))
)

json_scalars = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-(2**31), max_value=2**31),
    st.text(max_size=20),
)

json_values = st.recursive(
    json_scalars,
    lambda children: st.one_of(
        st.lists(children, max_size=4),
        st.dictionaries(st.text(min_size=1, max_size=8), children, max_size=4),
    ),
    max_leaves=12,
)
