"""
Runtime records: stored workflows, executions, state attempts, breakpoints.

Design principles:
- Value objects: storage adapters return fresh copies, callers update with
  dataclasses.replace() and write back
- Serialization-friendly: to_dict()/from_dict() produce JSON-compatible
  dictionaries (datetimes as ISO-8601 strings)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import xxhash
from uuid_extensions import uuid7

from pyfuncflow.models.definition import StateType, WorkflowDefinition
from pyfuncflow.models.status import ExecutionStatus, StateExecutionStatus, WorkflowStatus

DEFAULT_EXECUTION_TIMEOUT_SEC = 3600


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    """Time-ordered unique identifier (UUIDv7)."""
    return str(uuid7())


def definition_fingerprint(definition: WorkflowDefinition) -> int:
    """Stable hash of a definition's canonical JSON form.

    Used to decide whether an update actually changed the definition
    (and therefore bumps the workflow version).
    """
    canonical = json.dumps(definition.to_dict(), sort_keys=True, separators=(",", ":"))
    return xxhash.xxh64(canonical.encode("utf-8")).intdigest() & 0x7FFFFFFFFFFFFFFF


@dataclass
class Workflow:
    """A named, versioned workflow definition."""

    id: str
    name: str
    definition: WorkflowDefinition
    description: str = ""
    version: int = 1
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    timeout_sec: int = DEFAULT_EXECUTION_TIMEOUT_SEC
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def fingerprint(self) -> int:
        return definition_fingerprint(self.definition)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "status": self.status.value,
            "definition": self.definition.to_dict(),
            "timeout_sec": self.timeout_sec,
            "created_at": _encode_dt(self.created_at),
            "updated_at": _encode_dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Workflow:
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description") or "",
            version=data.get("version", 1),
            status=WorkflowStatus(data.get("status", WorkflowStatus.ACTIVE.value)),
            definition=WorkflowDefinition.from_dict(data["definition"]),
            timeout_sec=data.get("timeout_sec", DEFAULT_EXECUTION_TIMEOUT_SEC),
            created_at=_decode_dt(data.get("created_at")) or utcnow(),
            updated_at=_decode_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class WorkflowExecution:
    """
    One run of a workflow definition.

    Owned by exactly one execution controller while active; immutable
    once its status is terminal.

    The checkpoint (current_state + checkpoint_input) is the input about
    to be delivered to current_state. It is enough to restart the top-level
    state machine after a process restart.
    """

    id: str
    workflow_id: str
    workflow_name: str = ""
    workflow_version: int = 1
    workflow_definition: WorkflowDefinition | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: Any = None
    output: Any = None
    error: str | None = None
    error_code: str | None = None
    current_state: str | None = None
    checkpoint_input: Any = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    timeout_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # Pause fields (set while status is PAUSED)
    paused_at_state: str | None = None
    paused_input: Any = None
    paused_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "workflow_version": self.workflow_version,
            "workflow_definition": (
                self.workflow_definition.to_dict() if self.workflow_definition else None
            ),
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "error_code": self.error_code,
            "current_state": self.current_state,
            "checkpoint_input": self.checkpoint_input,
            "started_at": _encode_dt(self.started_at),
            "completed_at": _encode_dt(self.completed_at),
            "timeout_at": _encode_dt(self.timeout_at),
            "created_at": _encode_dt(self.created_at),
            "updated_at": _encode_dt(self.updated_at),
            "paused_at_state": self.paused_at_state,
            "paused_input": self.paused_input,
            "paused_at": _encode_dt(self.paused_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowExecution:
        raw_definition = data.get("workflow_definition")
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            workflow_name=data.get("workflow_name") or "",
            workflow_version=data.get("workflow_version", 1),
            workflow_definition=(
                WorkflowDefinition.from_dict(raw_definition) if raw_definition else None
            ),
            status=ExecutionStatus(data.get("status", ExecutionStatus.PENDING.value)),
            input=data.get("input"),
            output=data.get("output"),
            error=data.get("error"),
            error_code=data.get("error_code"),
            current_state=data.get("current_state"),
            checkpoint_input=data.get("checkpoint_input"),
            started_at=_decode_dt(data.get("started_at")),
            completed_at=_decode_dt(data.get("completed_at")),
            timeout_at=_decode_dt(data.get("timeout_at")),
            created_at=_decode_dt(data.get("created_at")) or utcnow(),
            updated_at=_decode_dt(data.get("updated_at")) or utcnow(),
            paused_at_state=data.get("paused_at_state"),
            paused_input=data.get("paused_input"),
            paused_at=_decode_dt(data.get("paused_at")),
        )


@dataclass
class StateExecution:
    """
    One state attempt in an execution's history.

    Append-only: once status is SUCCEEDED/FAILED the record never changes.
    Retries of the same attempt update retry_count on this record instead
    of appending new ones.

    Records produced inside a Parallel branch name the owning Parallel
    state and the branch position.
    """

    id: str
    execution_id: str
    state_name: str
    state_type: StateType
    status: StateExecutionStatus = StateExecutionStatus.PENDING
    input: Any = None
    output: Any = None
    error: str | None = None
    error_code: str | None = None
    retry_count: int = 0
    invocation_id: str | None = None
    parent_state: str | None = None
    branch_index: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "state_name": self.state_name,
            "state_type": self.state_type.value,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "error_code": self.error_code,
            "retry_count": self.retry_count,
            "invocation_id": self.invocation_id,
            "parent_state": self.parent_state,
            "branch_index": self.branch_index,
            "started_at": _encode_dt(self.started_at),
            "completed_at": _encode_dt(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateExecution:
        return cls(
            id=data["id"],
            execution_id=data["execution_id"],
            state_name=data["state_name"],
            state_type=StateType(data["state_type"]),
            status=StateExecutionStatus(data.get("status", StateExecutionStatus.PENDING.value)),
            input=data.get("input"),
            output=data.get("output"),
            error=data.get("error"),
            error_code=data.get("error_code"),
            retry_count=data.get("retry_count", 0),
            invocation_id=data.get("invocation_id"),
            parent_state=data.get("parent_state"),
            branch_index=data.get("branch_index"),
            started_at=_decode_dt(data.get("started_at")),
            completed_at=_decode_dt(data.get("completed_at")),
        )


@dataclass
class Breakpoint:
    """Pause the owning execution just before it enters ``before_state``."""

    id: str
    execution_id: str
    before_state: str
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "before_state": self.before_state,
            "enabled": self.enabled,
            "created_at": _encode_dt(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Breakpoint:
        return cls(
            id=data["id"],
            execution_id=data["execution_id"],
            before_state=data["before_state"],
            enabled=bool(data.get("enabled", True)),
            created_at=_decode_dt(data.get("created_at")) or utcnow(),
        )


def _encode_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _decode_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


__all__ = [
    "Workflow",
    "WorkflowExecution",
    "StateExecution",
    "Breakpoint",
    "definition_fingerprint",
    "new_id",
    "utcnow",
    "DEFAULT_EXECUTION_TIMEOUT_SEC",
]
