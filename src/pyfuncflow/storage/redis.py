"""Redis-based workflow store implementation.

Provides a Redis backend so several engine processes can share workflows,
executions and history.

Data Structures:
- pyfuncflow:workflow:{id} (STRING): Workflow JSON
- pyfuncflow:workflows (ZSET): Workflow index (score = created_at ms)
- pyfuncflow:workflow_names (HASH): name -> workflow id (uniqueness)
- pyfuncflow:execution:{id} (STRING): Execution JSON
- pyfuncflow:executions (ZSET): Execution index (score = created_at ms)
- pyfuncflow:workflow_executions:{workflow_id} (ZSET): Per-workflow index
- pyfuncflow:history:{execution_id} (LIST): StateExecution ids in append order
- pyfuncflow:state:{record_id} (STRING): StateExecution JSON
- pyfuncflow:breakpoints:{execution_id} (HASH): before_state -> Breakpoint JSON

Key Features:
- Atomic operations: Uses MULTI/EXEC pipelines for consistency
- Compare-and-set: WATCH on the execution key guards status transitions
- Connection pooling: redis-py connection pool for concurrent access

Design: Adapter Pattern
Implements WorkflowStore for Redis, adapting the Redis key-value store to
the WorkflowStore interface.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime

try:
    import redis.asyncio as redis
    from redis.exceptions import WatchError
except ImportError:
    raise ImportError("redis-py is required for RedisWorkflowStore. Install with: pip install redis")

from pyfuncflow.models import (
    Breakpoint,
    ExecutionStatus,
    StateExecution,
    StateExecutionStatus,
    Workflow,
    WorkflowExecution,
)
from pyfuncflow.storage.base import StorageError, WorkflowStore

_PREFIX = "pyfuncflow"


class RedisWorkflowStore(WorkflowStore):
    """Redis workflow store using connection pooling.

    All dependencies (Redis connection) passed explicitly. An existing
    client can be injected, which is how tests run against fakeredis.

    Usage:
        store = RedisWorkflowStore("redis://localhost:6379")
        await store.connect()

        await store.create_workflow(workflow)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        client: redis.Redis | None = None,
    ):
        """Initialize Redis workflow store.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
            client: Pre-built client (must use decode_responses=True)
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = client

    def __repr__(self) -> str:
        return f"RedisWorkflowStore({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        """Ensure connection established.

        Raises immediately if not connected.
        """
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _workflow_key(workflow_id: str) -> str:
        return f"{_PREFIX}:workflow:{workflow_id}"

    @staticmethod
    def _execution_key(execution_id: str) -> str:
        return f"{_PREFIX}:execution:{execution_id}"

    @staticmethod
    def _workflow_executions_key(workflow_id: str) -> str:
        return f"{_PREFIX}:workflow_executions:{workflow_id}"

    @staticmethod
    def _history_key(execution_id: str) -> str:
        return f"{_PREFIX}:history:{execution_id}"

    @staticmethod
    def _state_key(record_id: str) -> str:
        return f"{_PREFIX}:state:{record_id}"

    @staticmethod
    def _breakpoints_key(execution_id: str) -> str:
        return f"{_PREFIX}:breakpoints:{execution_id}"

    _WORKFLOWS = f"{_PREFIX}:workflows"
    _WORKFLOW_NAMES = f"{_PREFIX}:workflow_names"
    _EXECUTIONS = f"{_PREFIX}:executions"

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def create_workflow(self, workflow: Workflow) -> None:
        self._check_connected()
        key = self._workflow_key(workflow.id)
        if await self._redis.exists(key):
            raise StorageError(f"workflow {workflow.id} already exists")
        # HSETNX reserves the name atomically
        reserved = await self._redis.hsetnx(self._WORKFLOW_NAMES, workflow.name, workflow.id)
        if not reserved:
            raise StorageError(f"workflow name {workflow.name!r} is already taken")

        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.set(key, _dump(workflow))
            await pipe.zadd(self._WORKFLOWS, {workflow.id: _millis(workflow.created_at)})
            await pipe.execute()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        self._check_connected()
        raw = await self._redis.get(self._workflow_key(workflow_id))
        return Workflow.from_dict(json.loads(raw)) if raw is not None else None

    async def get_workflow_by_name(self, name: str) -> Workflow | None:
        self._check_connected()
        workflow_id = await self._redis.hget(self._WORKFLOW_NAMES, name)
        if workflow_id is None:
            return None
        return await self.get_workflow(workflow_id)

    async def list_workflows(self, offset: int = 0, limit: int = 50) -> tuple[list[Workflow], int]:
        self._check_connected()
        total = await self._redis.zcard(self._WORKFLOWS)
        if limit <= 0:
            return [], total
        ids = await self._redis.zrevrange(self._WORKFLOWS, offset, offset + limit - 1)
        raws = await self._redis.mget([self._workflow_key(i) for i in ids]) if ids else []
        return [Workflow.from_dict(json.loads(raw)) for raw in raws if raw is not None], total

    async def update_workflow(self, workflow: Workflow) -> None:
        self._check_connected()
        current = await self.get_workflow(workflow.id)
        if current is None:
            raise StorageError(f"workflow {workflow.id} not found")

        if current.name != workflow.name:
            reserved = await self._redis.hsetnx(self._WORKFLOW_NAMES, workflow.name, workflow.id)
            if not reserved:
                raise StorageError(f"workflow name {workflow.name!r} is already taken")

        async with self._redis.pipeline(transaction=True) as pipe:
            if current.name != workflow.name:
                await pipe.hdel(self._WORKFLOW_NAMES, current.name)
            await pipe.set(self._workflow_key(workflow.id), _dump(workflow))
            await pipe.execute()

    async def delete_workflow(self, workflow_id: str) -> bool:
        self._check_connected()
        current = await self.get_workflow(workflow_id)
        if current is None:
            return False

        index_key = self._workflow_executions_key(workflow_id)
        execution_ids = await self._redis.zrange(index_key, 0, -1)
        doomed: list[str] = [self._workflow_key(workflow_id), index_key]
        for execution_id in execution_ids:
            record_ids = await self._redis.lrange(self._history_key(execution_id), 0, -1)
            doomed.extend(self._state_key(r) for r in record_ids)
            doomed.extend(
                [
                    self._execution_key(execution_id),
                    self._history_key(execution_id),
                    self._breakpoints_key(execution_id),
                ]
            )

        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.delete(*doomed)
            await pipe.zrem(self._WORKFLOWS, workflow_id)
            await pipe.hdel(self._WORKFLOW_NAMES, current.name)
            if execution_ids:
                await pipe.zrem(self._EXECUTIONS, *execution_ids)
            await pipe.execute()
        return True

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def create_execution(self, execution: WorkflowExecution) -> None:
        self._check_connected()
        key = self._execution_key(execution.id)
        created = await self._redis.set(key, _dump(execution), nx=True)
        if not created:
            raise StorageError(f"execution {execution.id} already exists")

        score = _millis(execution.created_at)
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.zadd(self._EXECUTIONS, {execution.id: score})
            await pipe.zadd(self._workflow_executions_key(execution.workflow_id), {execution.id: score})
            await pipe.execute()

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        self._check_connected()
        raw = await self._redis.get(self._execution_key(execution_id))
        return WorkflowExecution.from_dict(json.loads(raw)) if raw is not None else None

    async def update_execution(
        self,
        execution: WorkflowExecution,
        expected: Iterable[ExecutionStatus] | None = None,
    ) -> bool:
        """Compare-and-set guarded by WATCH on the execution key."""
        self._check_connected()
        key = self._execution_key(execution.id)
        wanted = set(expected) if expected is not None else None

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise StorageError(f"execution {execution.id} not found")
                    stored = ExecutionStatus(json.loads(raw)["status"])
                    if stored.is_terminal or (wanted is not None and stored not in wanted):
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(key, _dump(execution))
                    await pipe.execute()
                    return True
                except WatchError:
                    # Another writer touched the execution; re-read and retry
                    continue

    async def list_executions(
        self, workflow_id: str | None = None, offset: int = 0, limit: int = 50
    ) -> tuple[list[WorkflowExecution], int]:
        self._check_connected()
        index_key = (
            self._workflow_executions_key(workflow_id) if workflow_id else self._EXECUTIONS
        )
        total = await self._redis.zcard(index_key)
        if limit <= 0:
            return [], total
        ids = await self._redis.zrevrange(index_key, offset, offset + limit - 1)
        return await self._load_executions(ids), total

    async def list_incomplete_executions(self) -> list[WorkflowExecution]:
        self._check_connected()
        ids = await self._redis.zrange(self._EXECUTIONS, 0, -1)
        executions = await self._load_executions(ids)
        return [
            e
            for e in executions
            if e.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
        ]

    async def count_active_executions(self, workflow_id: str) -> int:
        self._check_connected()
        ids = await self._redis.zrange(self._workflow_executions_key(workflow_id), 0, -1)
        executions = await self._load_executions(ids)
        return sum(1 for e in executions if not e.status.is_terminal)

    async def _load_executions(self, ids: list[str]) -> list[WorkflowExecution]:
        if not ids:
            return []
        raws = await self._redis.mget([self._execution_key(i) for i in ids])
        return [WorkflowExecution.from_dict(json.loads(raw)) for raw in raws if raw is not None]

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def append_state_execution(self, record: StateExecution) -> None:
        self._check_connected()
        created = await self._redis.set(self._state_key(record.id), _dump(record), nx=True)
        if not created:
            raise StorageError(f"state execution {record.id} already exists")
        await self._redis.rpush(self._history_key(record.execution_id), record.id)

    async def update_state_execution(self, record: StateExecution) -> None:
        self._check_connected()
        key = self._state_key(record.id)
        raw = await self._redis.get(key)
        if raw is None:
            raise StorageError(f"state execution {record.id} not found")
        stored = StateExecutionStatus(json.loads(raw)["status"])
        if stored.is_concluded:
            raise StorageError(f"state execution {record.id} already concluded as {stored}")
        await self._redis.set(key, _dump(record))

    async def list_state_executions(self, execution_id: str) -> list[StateExecution]:
        self._check_connected()
        record_ids = await self._redis.lrange(self._history_key(execution_id), 0, -1)
        if not record_ids:
            return []
        raws = await self._redis.mget([self._state_key(r) for r in record_ids])
        return [StateExecution.from_dict(json.loads(raw)) for raw in raws if raw is not None]

    # ------------------------------------------------------------------
    # Breakpoints
    # ------------------------------------------------------------------

    async def set_breakpoint(self, breakpoint: Breakpoint) -> Breakpoint:
        self._check_connected()
        key = self._breakpoints_key(breakpoint.execution_id)
        created = await self._redis.hsetnx(key, breakpoint.before_state, _dump(breakpoint))
        if created:
            return breakpoint

        raw = await self._redis.hget(key, breakpoint.before_state)
        stored = Breakpoint.from_dict(json.loads(raw))
        stored.enabled = breakpoint.enabled
        await self._redis.hset(key, breakpoint.before_state, _dump(stored))
        return stored

    async def list_breakpoints(self, execution_id: str) -> list[Breakpoint]:
        self._check_connected()
        raws = await self._redis.hvals(self._breakpoints_key(execution_id))
        found = [Breakpoint.from_dict(json.loads(raw)) for raw in raws]
        found.sort(key=lambda b: (b.created_at, b.id))
        return found

    async def delete_breakpoint(self, execution_id: str, before_state: str) -> bool:
        self._check_connected()
        removed = await self._redis.hdel(self._breakpoints_key(execution_id), before_state)
        return removed > 0

    async def reset(self) -> None:
        """Reset all pyfuncflow data.

        Only deletes pyfuncflow:* keys, doesn't affect other Redis data.
        """
        self._check_connected()

        keys = []
        async for key in self._redis.scan_iter(match=f"{_PREFIX}:*"):
            keys.append(key)

        if keys:
            await self._redis.delete(*keys)


def _dump(record) -> str:
    return json.dumps(record.to_dict())


def _millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)
