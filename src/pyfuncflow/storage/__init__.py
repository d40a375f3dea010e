"""Storage backends for workflows, executions and their history.

Provides multiple storage implementations behind a common interface:
    - WorkflowStore: Abstract interface
    - SqliteWorkflowStore: SQLite-backed storage
    - RedisWorkflowStore: Redis-backed shared storage
    - InMemoryWorkflowStore: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the WorkflowStore interface.
    Clients depend on abstraction, not concrete implementations,
    enabling easy swapping between storage backends.
"""

from pyfuncflow.storage.base import StorageError, WorkflowStore

# Lazy imports: backends pull in optional drivers (aiosqlite, redis)
# that callers of the in-memory store should not need to load.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryWorkflowStore":
        from pyfuncflow.storage.memory import InMemoryWorkflowStore

        return InMemoryWorkflowStore
    elif name == "RedisWorkflowStore":
        from pyfuncflow.storage.redis import RedisWorkflowStore

        return RedisWorkflowStore
    elif name == "SqliteWorkflowStore":
        from pyfuncflow.storage.sqlite import SqliteWorkflowStore

        return SqliteWorkflowStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "WorkflowStore",
    "StorageError",
    "SqliteWorkflowStore",
    "RedisWorkflowStore",
    "InMemoryWorkflowStore",
]
