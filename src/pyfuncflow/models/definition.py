"""Workflow definition model.

A definition is a named graph of states. Each state is one variant of a
tagged union keyed by ``type``; the dataclasses here are a lossless
in-memory form of the JSON wire format:

    {
        "start_at": "Charge",
        "states": {
            "Charge": {"type": "Task", "function_id": "fn-charge", "next": "Done",
                       "retry": [{"error_equals": ["States.Timeout"], "max_attempts": 2}]},
            "Done": {"type": "Succeed"}
        }
    }

Parsing collects every structural problem it finds instead of stopping
at the first one. Graph-level checks (dangling references, next/end
rules) are the job of pyfuncflow.executor.validator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from pyfuncflow.core.errors import ValidationError, ValidationIssue
from pyfuncflow.models.choice import ChoiceRule
from pyfuncflow.models.retry import CatchConfig, RetryPolicy


class _Unset:
    """Marker for "no value given" where JSON null is a meaningful value."""

    _instance: _Unset | None = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


class StateType(Enum):
    TASK = "Task"
    CHOICE = "Choice"
    WAIT = "Wait"
    PARALLEL = "Parallel"
    PASS = "Pass"
    FAIL = "Fail"
    SUCCEED = "Succeed"

    @property
    def requires_transition(self) -> bool:
        """Types that must set exactly one of ``next`` or ``end``."""
        return self in (StateType.TASK, StateType.WAIT, StateType.PARALLEL, StateType.PASS)

    @property
    def is_terminal(self) -> bool:
        return self in (StateType.FAIL, StateType.SUCCEED)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, kw_only=True)
class State:
    """Fields shared by every state type.

    ``next`` and ``end`` are stored as given so the validator can report
    states that set both, neither, or set them where not allowed.
    """

    state_type: ClassVar[StateType]
    allowed_fields: ClassVar[frozenset[str]] = frozenset()

    comment: str | None = None
    next: str | None = None
    end: bool = False
    input_path: str | None = None
    output_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.state_type.value}
        for name in self.allowed_fields:
            value = getattr(self, name)
            if value is None or value is UNSET or value is False or value == ():
                continue
            data[name] = _encode(value)
        return data

    @property
    def transitions(self) -> list[str]:
        """Every state name this state can move to."""
        return [self.next] if self.next else []


_COMMON = frozenset({"comment", "next", "end", "input_path", "output_path"})


@dataclass(frozen=True, kw_only=True)
class TaskState(State):
    state_type: ClassVar[StateType] = StateType.TASK
    allowed_fields: ClassVar[frozenset[str]] = _COMMON | {
        "function_id",
        "timeout_sec",
        "heartbeat_sec",
        "retry",
        "catch",
        "parameters",
        "result_selector",
        "result_path",
    }

    function_id: str = ""
    timeout_sec: float | None = None
    heartbeat_sec: float | None = None
    retry: tuple[RetryPolicy, ...] = ()
    catch: tuple[CatchConfig, ...] = ()
    parameters: Any = None
    result_selector: Any = None
    result_path: str | None = None

    @property
    def transitions(self) -> list[str]:
        return super().transitions + [c.next for c in self.catch if c.next]


@dataclass(frozen=True, kw_only=True)
class ChoiceState(State):
    state_type: ClassVar[StateType] = StateType.CHOICE
    allowed_fields: ClassVar[frozenset[str]] = _COMMON | {"choices", "default"}

    choices: tuple[ChoiceRule, ...] = ()
    default: str | None = None

    @property
    def transitions(self) -> list[str]:
        targets = [rule.next for rule in self.choices]
        if self.default:
            targets.append(self.default)
        return targets


@dataclass(frozen=True, kw_only=True)
class WaitState(State):
    state_type: ClassVar[StateType] = StateType.WAIT
    allowed_fields: ClassVar[frozenset[str]] = _COMMON | {
        "seconds",
        "timestamp",
        "seconds_path",
        "timestamp_path",
    }

    seconds: float | None = None
    timestamp: str | None = None
    seconds_path: str | None = None
    timestamp_path: str | None = None


@dataclass(frozen=True, kw_only=True)
class Branch:
    """One independently executed sub-graph of a Parallel state."""

    start_at: str
    states: dict[str, State] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_at": self.start_at,
            "states": {name: state.to_dict() for name, state in self.states.items()},
        }

    @classmethod
    def from_dict(
        cls, data: Any, issues: list[ValidationIssue], path: str = ""
    ) -> Branch | None:
        if not isinstance(data, dict):
            issues.append(ValidationIssue(path or "$", "graph must be an object"))
            return None
        start_at = data.get("start_at")
        if not isinstance(start_at, str) or not start_at:
            issues.append(ValidationIssue(_join(path, "start_at"), "start_at is required"))
            start_at = ""
        raw_states = data.get("states")
        states: dict[str, State] = {}
        if not isinstance(raw_states, dict) or not raw_states:
            issues.append(ValidationIssue(_join(path, "states"), "states must be a non-empty object"))
        else:
            for name, raw in raw_states.items():
                state = state_from_dict(raw, issues, _join(path, f"states.{name}"))
                if state is not None:
                    states[name] = state
        for key in data:
            if key not in ("start_at", "states", "comment"):
                issues.append(ValidationIssue(_join(path, key), f"unknown field {key!r}"))
        return cls(start_at=start_at, states=states)


@dataclass(frozen=True, kw_only=True)
class ParallelState(State):
    state_type: ClassVar[StateType] = StateType.PARALLEL
    allowed_fields: ClassVar[frozenset[str]] = _COMMON | {
        "branches",
        "retry",
        "catch",
        "parameters",
        "result_selector",
        "result_path",
    }

    branches: tuple[Branch, ...] = ()
    retry: tuple[RetryPolicy, ...] = ()
    catch: tuple[CatchConfig, ...] = ()
    parameters: Any = None
    result_selector: Any = None
    result_path: str | None = None

    @property
    def transitions(self) -> list[str]:
        return super().transitions + [c.next for c in self.catch if c.next]


@dataclass(frozen=True, kw_only=True)
class PassState(State):
    state_type: ClassVar[StateType] = StateType.PASS
    allowed_fields: ClassVar[frozenset[str]] = _COMMON | {"result", "parameters", "result_path"}

    result: Any = UNSET
    parameters: Any = None
    result_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.result is not UNSET:
            data["result"] = self.result
        return data


@dataclass(frozen=True, kw_only=True)
class FailState(State):
    state_type: ClassVar[StateType] = StateType.FAIL
    allowed_fields: ClassVar[frozenset[str]] = _COMMON | {"error", "cause"}

    error: str | None = None
    cause: str | None = None


@dataclass(frozen=True, kw_only=True)
class SucceedState(State):
    state_type: ClassVar[StateType] = StateType.SUCCEED
    allowed_fields: ClassVar[frozenset[str]] = _COMMON


STATE_CLASSES: dict[str, type[State]] = {
    cls.state_type.value: cls
    for cls in (TaskState, ChoiceState, WaitState, ParallelState, PassState, FailState, SucceedState)
}


@dataclass(frozen=True, kw_only=True)
class WorkflowDefinition(Branch):
    """The top-level graph of a workflow.

    Example:
        definition = WorkflowDefinition.from_dict(json.loads(raw))
        assert WorkflowDefinition.from_dict(definition.to_dict()) == definition
    """

    @classmethod
    def from_dict(  # type: ignore[override]
        cls, data: Any, issues: list[ValidationIssue] | None = None, path: str = ""
    ) -> WorkflowDefinition:
        """Parse a definition.

        Args:
            data: JSON-compatible dictionary
            issues: When given, problems are appended here and parsing
                carries on; otherwise ValidationError is raised listing
                all of them.

        Raises:
            ValidationError: If ``issues`` is None and the input is malformed
        """
        sink: list[ValidationIssue] = issues if issues is not None else []
        branch = Branch.from_dict(data, sink, path)
        if issues is None and sink:
            raise ValidationError(sink)
        if branch is None:
            return cls(start_at="", states={})
        return cls(start_at=branch.start_at, states=branch.states)


def state_from_dict(data: Any, issues: list[ValidationIssue], path: str) -> State | None:
    """Parse one state of any type."""
    if not isinstance(data, dict):
        issues.append(ValidationIssue(path, "state must be an object"))
        return None
    type_name = data.get("type")
    cls = STATE_CLASSES.get(type_name) if isinstance(type_name, str) else None
    if cls is None:
        issues.append(ValidationIssue(_join(path, "type"), f"unknown state type {type_name!r}"))
        return None

    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key == "type":
            continue
        if key not in cls.allowed_fields:
            issues.append(
                ValidationIssue(_join(path, key), f"field {key!r} is not allowed on {type_name} states")
            )
            continue
        decoded = _decode_field(key, value, issues, _join(path, key))
        if decoded is not UNSET:
            kwargs[key] = decoded
    return cls(**kwargs)


_STRING_FIELDS = frozenset(
    {
        "comment",
        "next",
        "input_path",
        "output_path",
        "result_path",
        "function_id",
        "default",
        "timestamp",
        "seconds_path",
        "timestamp_path",
        "error",
        "cause",
    }
)
_NUMBER_FIELDS = frozenset({"timeout_sec", "heartbeat_sec", "seconds"})


def _decode_field(key: str, value: Any, issues: list[ValidationIssue], path: str) -> Any:
    if key in _STRING_FIELDS:
        if not isinstance(value, str):
            issues.append(ValidationIssue(path, "expects a string"))
            return UNSET
        return value
    if key in _NUMBER_FIELDS:
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            issues.append(ValidationIssue(path, "expects a number"))
            return UNSET
        return value
    if key == "end":
        if not isinstance(value, bool):
            issues.append(ValidationIssue(path, "expects true or false"))
            return UNSET
        return value
    if key == "retry":
        return tuple(
            RetryPolicy.from_dict(item, issues, item_path)
            for item_path, item in _object_list(value, issues, path)
        )
    if key == "catch":
        return tuple(
            CatchConfig.from_dict(item, issues, item_path)
            for item_path, item in _object_list(value, issues, path)
        )
    if key == "choices":
        if not isinstance(value, list):
            issues.append(ValidationIssue(path, "expects a list of rules"))
            return UNSET
        rules = [
            ChoiceRule.from_dict(item, issues, f"{path}[{index}]")
            for index, item in enumerate(value)
        ]
        return tuple(rule for rule in rules if rule is not None)
    if key == "branches":
        if not isinstance(value, list):
            issues.append(ValidationIssue(path, "expects a list of branches"))
            return UNSET
        branches = [
            Branch.from_dict(item, issues, f"{path}[{index}]") for index, item in enumerate(value)
        ]
        return tuple(branch for branch in branches if branch is not None)
    # parameters, result_selector, result: arbitrary JSON
    return value


def _object_list(
    value: Any, issues: list[ValidationIssue], path: str
) -> list[tuple[str, dict[str, Any]]]:
    if not isinstance(value, list):
        issues.append(ValidationIssue(path, "expects a list of objects"))
        return []
    items = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            issues.append(ValidationIssue(f"{path}[{index}]", "expects an object"))
            continue
        items.append((f"{path}[{index}]", item))
    return items


def _encode(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_encode(item) for item in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = [
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
    "state_from_dict",
    "STATE_CLASSES",
]
