"""SQLite-backed storage implementation for pyfuncflow.

Design Pattern: Adapter Pattern
SqliteWorkflowStore adapts a SQLite database to the WorkflowStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Each row keeps the record's to_dict() form as JSON in a ``data`` column;
  the columns next to it exist only for filtering and ordering
- INTEGER timestamps (milliseconds) for ordering columns
- Compare-and-set on execution status is a single conditional UPDATE
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

import aiosqlite

from pyfuncflow.models import (
    Breakpoint,
    ExecutionStatus,
    StateExecution,
    StateExecutionStatus,
    Workflow,
    WorkflowExecution,
)
from pyfuncflow.storage.base import StorageError, WorkflowStore

_TERMINAL = tuple(s.value for s in ExecutionStatus if s.is_terminal)
_CONCLUDED = tuple(s.value for s in StateExecutionStatus if s.is_concluded)


class SqliteWorkflowStore(WorkflowStore):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteWorkflowStore("workflows.db")
        await store.connect()
        try:
            await store.create_workflow(workflow)
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    @classmethod
    async def in_memory(cls) -> SqliteWorkflowStore:
        """
        Create an in-memory SQLite store for testing.

        Example:
            store = await SqliteWorkflowStore.in_memory()
            # Ready to use immediately
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        if self.db_path == ":memory:":
            return "SqliteWorkflowStore(in-memory)"
        return f"SqliteWorkflowStore({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Pattern: Template Method
        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit mode
        )

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._connection.execute("PRAGMA foreign_keys=ON")

        await self._create_schema()

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Schema design:
        - workflows: one row per named workflow (name is unique)
        - executions: one row per run, status column for CAS and recovery
        - state_executions: append-only history, seq keeps append order
        - breakpoints: unique per (execution_id, before_state)
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                created_at INTEGER NOT NULL,
                data TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                status TEXT CHECK( status IN (
                    'pending','running','succeeded','failed','timeout','cancelled','paused'
                ) ) NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                data TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_workflow
            ON executions(workflow_id, created_at)
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_status
            ON executions(status, created_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS state_executions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL REFERENCES executions(id) ON DELETE CASCADE,
                status TEXT CHECK( status IN (
                    'pending','running','succeeded','failed','skipped'
                ) ) NOT NULL,
                data TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_state_executions_execution
            ON state_executions(execution_id, seq)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS breakpoints (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL REFERENCES executions(id) ON DELETE CASCADE,
                before_state TEXT NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (execution_id, before_state)
            )
        """)

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _check_connected(self) -> None:
        """Ensure connection established.

        Raises immediately if not connected.
        """
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def create_workflow(self, workflow: Workflow) -> None:
        self._check_connected()
        async with self._lock:
            try:
                await self._connection.execute(
                    "INSERT INTO workflows (id, name, created_at, data) VALUES (?, ?, ?, ?)",
                    (workflow.id, workflow.name, _millis(workflow.created_at), _dump(workflow)),
                )
            except aiosqlite.IntegrityError as e:
                raise StorageError(f"cannot create workflow {workflow.name!r}: {e}") from e

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        return await self._fetch_workflow("SELECT data FROM workflows WHERE id = ?", workflow_id)

    async def get_workflow_by_name(self, name: str) -> Workflow | None:
        return await self._fetch_workflow("SELECT data FROM workflows WHERE name = ?", name)

    async def _fetch_workflow(self, query: str, key: str) -> Workflow | None:
        self._check_connected()
        cursor = await self._connection.execute(query, (key,))
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return Workflow.from_dict(json.loads(row[0]))

    async def list_workflows(self, offset: int = 0, limit: int = 50) -> tuple[list[Workflow], int]:
        self._check_connected()
        cursor = await self._connection.execute(
            "SELECT data FROM workflows ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        total = await self._scalar("SELECT COUNT(*) FROM workflows")
        return [Workflow.from_dict(json.loads(row[0])) for row in rows], total

    async def update_workflow(self, workflow: Workflow) -> None:
        self._check_connected()
        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    "UPDATE workflows SET name = ?, data = ? WHERE id = ?",
                    (workflow.name, _dump(workflow), workflow.id),
                )
            except aiosqlite.IntegrityError as e:
                raise StorageError(f"cannot rename workflow to {workflow.name!r}: {e}") from e
            if cursor.rowcount == 0:
                raise StorageError(f"workflow {workflow.id} not found")

    async def delete_workflow(self, workflow_id: str) -> bool:
        self._check_connected()
        async with self._lock:
            # Cascades to executions, state_executions and breakpoints
            cursor = await self._connection.execute(
                "DELETE FROM workflows WHERE id = ?", (workflow_id,)
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def create_execution(self, execution: WorkflowExecution) -> None:
        self._check_connected()
        async with self._lock:
            try:
                await self._connection.execute(
                    """
                    INSERT INTO executions (id, workflow_id, status, created_at, updated_at, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                """,
                    (
                        execution.id,
                        execution.workflow_id,
                        execution.status.value,
                        _millis(execution.created_at),
                        _millis(execution.updated_at),
                        _dump(execution),
                    ),
                )
            except aiosqlite.IntegrityError as e:
                raise StorageError(f"cannot create execution {execution.id}: {e}") from e

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        self._check_connected()
        cursor = await self._connection.execute(
            "SELECT data FROM executions WHERE id = ?", (execution_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return WorkflowExecution.from_dict(json.loads(row[0]))

    async def update_execution(
        self,
        execution: WorkflowExecution,
        expected: Iterable[ExecutionStatus] | None = None,
    ) -> bool:
        """Conditional UPDATE: never touches terminal rows, optionally
        requires the stored status to be one of ``expected``."""
        self._check_connected()
        query = f"""
            UPDATE executions
            SET status = ?, updated_at = ?, data = ?
            WHERE id = ? AND status NOT IN ({_marks(_TERMINAL)})
        """
        params: list = [
            execution.status.value,
            _millis(execution.updated_at),
            _dump(execution),
            execution.id,
            *_TERMINAL,
        ]
        if expected is not None:
            wanted = [status.value for status in expected]
            if not wanted:
                return False
            query += f" AND status IN ({_marks(wanted)})"
            params.extend(wanted)

        async with self._lock:
            cursor = await self._connection.execute(query, params)
            if cursor.rowcount > 0:
                return True
            exists = await self._scalar(
                "SELECT COUNT(*) FROM executions WHERE id = ?", execution.id
            )
        if not exists:
            raise StorageError(f"execution {execution.id} not found")
        return False

    async def list_executions(
        self, workflow_id: str | None = None, offset: int = 0, limit: int = 50
    ) -> tuple[list[WorkflowExecution], int]:
        self._check_connected()
        where, params = ("WHERE workflow_id = ?", [workflow_id]) if workflow_id else ("", [])
        cursor = await self._connection.execute(
            f"""
            SELECT data FROM executions {where}
            ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?
        """,
            (*params, limit, offset),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        total = await self._scalar(f"SELECT COUNT(*) FROM executions {where}", *params)
        return [WorkflowExecution.from_dict(json.loads(row[0])) for row in rows], total

    async def list_incomplete_executions(self) -> list[WorkflowExecution]:
        self._check_connected()
        cursor = await self._connection.execute(
            """
            SELECT data FROM executions
            WHERE status IN ('pending', 'running')
            ORDER BY created_at ASC, id ASC
        """
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [WorkflowExecution.from_dict(json.loads(row[0])) for row in rows]

    async def count_active_executions(self, workflow_id: str) -> int:
        self._check_connected()
        return await self._scalar(
            f"""
            SELECT COUNT(*) FROM executions
            WHERE workflow_id = ? AND status NOT IN ({_marks(_TERMINAL)})
        """,
            workflow_id,
            *_TERMINAL,
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def append_state_execution(self, record: StateExecution) -> None:
        self._check_connected()
        async with self._lock:
            try:
                await self._connection.execute(
                    """
                    INSERT INTO state_executions (id, execution_id, status, data)
                    VALUES (?, ?, ?, ?)
                """,
                    (record.id, record.execution_id, record.status.value, _dump(record)),
                )
            except aiosqlite.IntegrityError as e:
                raise StorageError(f"cannot append state execution {record.id}: {e}") from e

    async def update_state_execution(self, record: StateExecution) -> None:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                UPDATE state_executions SET status = ?, data = ?
                WHERE id = ? AND status NOT IN ({_marks(_CONCLUDED)})
            """,
                (record.status.value, _dump(record), record.id, *_CONCLUDED),
            )
            if cursor.rowcount > 0:
                return
            exists = await self._scalar(
                "SELECT COUNT(*) FROM state_executions WHERE id = ?", record.id
            )
        if exists:
            raise StorageError(f"state execution {record.id} already concluded")
        raise StorageError(f"state execution {record.id} not found")

    async def list_state_executions(self, execution_id: str) -> list[StateExecution]:
        self._check_connected()
        cursor = await self._connection.execute(
            "SELECT data FROM state_executions WHERE execution_id = ? ORDER BY seq ASC",
            (execution_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [StateExecution.from_dict(json.loads(row[0])) for row in rows]

    # ------------------------------------------------------------------
    # Breakpoints
    # ------------------------------------------------------------------

    async def set_breakpoint(self, breakpoint: Breakpoint) -> Breakpoint:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT data FROM breakpoints WHERE execution_id = ? AND before_state = ?",
                (breakpoint.execution_id, breakpoint.before_state),
            )
            row = await cursor.fetchone()
            await cursor.close()

            if row is not None:
                stored = Breakpoint.from_dict(json.loads(row[0]))
                stored.enabled = breakpoint.enabled
                await self._connection.execute(
                    "UPDATE breakpoints SET data = ? WHERE id = ?", (_dump(stored), stored.id)
                )
                return stored

            try:
                await self._connection.execute(
                    """
                    INSERT INTO breakpoints (id, execution_id, before_state, data)
                    VALUES (?, ?, ?, ?)
                """,
                    (
                        breakpoint.id,
                        breakpoint.execution_id,
                        breakpoint.before_state,
                        _dump(breakpoint),
                    ),
                )
            except aiosqlite.IntegrityError as e:
                raise StorageError(f"cannot set breakpoint: {e}") from e
            return breakpoint

    async def list_breakpoints(self, execution_id: str) -> list[Breakpoint]:
        self._check_connected()
        cursor = await self._connection.execute(
            "SELECT data FROM breakpoints WHERE execution_id = ? ORDER BY seq ASC",
            (execution_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [Breakpoint.from_dict(json.loads(row[0])) for row in rows]

    async def delete_breakpoint(self, execution_id: str, before_state: str) -> bool:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "DELETE FROM breakpoints WHERE execution_id = ? AND before_state = ?",
                (execution_id, before_state),
            )
            return cursor.rowcount > 0

    async def reset(self) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute("DELETE FROM breakpoints")
            await self._connection.execute("DELETE FROM state_executions")
            await self._connection.execute("DELETE FROM executions")
            await self._connection.execute("DELETE FROM workflows")

    async def _scalar(self, query: str, *params) -> int:
        cursor = await self._connection.execute(query, params)
        row = await cursor.fetchone()
        await cursor.close()
        return row[0] if row else 0


def _dump(record) -> str:
    return json.dumps(record.to_dict())


def _millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _marks(values) -> str:
    return ", ".join("?" for _ in values)
