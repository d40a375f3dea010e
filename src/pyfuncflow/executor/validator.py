"""
Definition Validator.

Turns a submitted definition into a validated WorkflowDefinition or a
ValidationError listing every violation found. Validation is a pure
function of its input; nothing is stored and no execution exists yet.

Two kinds of findings:
- errors: the definition is rejected
- warnings: the definition is accepted but carries a runtime risk
  (a Choice state with no rules and no default can only fail with
  ChoiceNoMatchError; unreachable states never run)
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from pyfuncflow.core.errors import CATCH_ALL, ValidationError, ValidationIssue
from pyfuncflow.core.paths import is_valid_path
from pyfuncflow.executor.timer import parse_timestamp
from pyfuncflow.models.choice import iter_variables
from pyfuncflow.models.definition import (
    Branch,
    ChoiceState,
    FailState,
    ParallelState,
    State,
    SucceedState,
    TaskState,
    WaitState,
    WorkflowDefinition,
)
from pyfuncflow.models.retry import CatchConfig, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    """Outcome of validating one definition.

    Attributes:
        definition: Parsed definition (partial when errors were found)
        errors: Violations that reject the definition
        warnings: Accepted runtime risks
    """

    definition: WorkflowDefinition
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_if_invalid(self) -> WorkflowDefinition:
        """Return the definition, or raise ValidationError listing all errors."""
        if self.errors:
            raise ValidationError(self.errors)
        return self.definition


def validate(data: dict[str, Any] | WorkflowDefinition) -> ValidationReport:
    """Validate a definition given as a dictionary or an already parsed model.

    Example:
        report = validate({"start_at": "X", "states": {"Y": {"type": "Succeed"}}})
        report.ok        # False
        report.errors[0] # start_at: start_at references unknown state 'X'
    """
    issues: list[ValidationIssue] = []
    if isinstance(data, WorkflowDefinition):
        definition = data
    else:
        definition = WorkflowDefinition.from_dict(data, issues)

    report = ValidationReport(definition=definition, errors=issues)
    _GraphChecker(report).check_graph(definition, "")
    for warning in report.warnings:
        logger.warning(f"Workflow definition warning: {warning}")
    return report


def parse_definition(data: dict[str, Any] | WorkflowDefinition) -> WorkflowDefinition:
    """Validate and return the definition.

    Raises:
        ValidationError: If the definition has any error-class issue
    """
    return validate(data).raise_if_invalid()


class _GraphChecker:
    """Graph-level checks over a parsed definition, recursing into branches."""

    def __init__(self, report: ValidationReport):
        self.report = report

    def error(self, path: str, message: str) -> None:
        self.report.errors.append(ValidationIssue(path, message))

    def warn(self, path: str, message: str) -> None:
        self.report.warnings.append(ValidationIssue(path, message))

    def check_graph(self, graph: Branch, prefix: str) -> None:
        states = graph.states
        if graph.start_at and graph.start_at not in states:
            self.error(
                _join(prefix, "start_at"),
                f"start_at references unknown state {graph.start_at!r}",
            )

        for name, state in states.items():
            path = _join(prefix, f"states.{name}")
            self.check_transition_fields(state, path)
            self.check_targets(state, states, path)
            self.check_paths(state, path)
            match state:
                case TaskState():
                    self.check_task(state, path)
                case WaitState():
                    self.check_wait(state, path)
                case ChoiceState():
                    self.check_choice(state, path)
                case ParallelState():
                    if not state.branches:
                        self.error(_join(path, "branches"), "Parallel state needs at least one branch")
                    for index, branch in enumerate(state.branches):
                        self.check_graph(branch, f"{path}.branches[{index}]")
            if isinstance(state, (TaskState, ParallelState)):
                self.check_policies(state, states, path)

        self.check_reachability(graph, prefix)

    def check_transition_fields(self, state: State, path: str) -> None:
        kind = state.state_type
        if kind.requires_transition:
            if state.next and state.end:
                self.error(path, f"{kind} state must not set both 'next' and 'end'")
            elif not state.next and not state.end:
                self.error(path, f"{kind} state must set 'next' or 'end: true'")
        elif isinstance(state, ChoiceState):
            if state.next or state.end:
                self.error(
                    path, "Choice state resolves successors through choices/default, not next/end"
                )
        elif isinstance(state, (FailState, SucceedState)) and state.next:
            self.error(_join(path, "next"), f"{kind} state is terminal and must not set 'next'")

    def check_targets(self, state: State, states: dict[str, State], path: str) -> None:
        if state.next and state.next not in states and state.state_type.requires_transition:
            self.error(_join(path, "next"), f"next references unknown state {state.next!r}")
        if isinstance(state, ChoiceState):
            for index, rule in enumerate(state.choices):
                if rule.next not in states:
                    self.error(
                        f"{path}.choices[{index}].next",
                        f"choice rule references unknown state {rule.next!r}",
                    )
            if state.default and state.default not in states:
                self.error(
                    _join(path, "default"), f"default references unknown state {state.default!r}"
                )

    def check_paths(self, state: State, path: str) -> None:
        for name in ("input_path", "output_path", "result_path", "seconds_path", "timestamp_path"):
            value = getattr(state, name, None)
            if value is not None and not is_valid_path(value):
                self.error(_join(path, name), f"invalid reference path {value!r}")
        for name in ("parameters", "result_selector"):
            template = getattr(state, name, None)
            if template is not None:
                self.check_template(template, _join(path, name))

    def check_template(self, template: Any, path: str) -> None:
        if isinstance(template, dict):
            for key, value in template.items():
                if key.endswith(".$"):
                    if not isinstance(value, str) or not is_valid_path(value):
                        self.error(f"{path}.{key}", f"invalid reference path {value!r}")
                else:
                    self.check_template(value, f"{path}.{key}")
        elif isinstance(template, list):
            for index, item in enumerate(template):
                self.check_template(item, f"{path}[{index}]")

    def check_task(self, state: TaskState, path: str) -> None:
        if not state.function_id:
            self.error(_join(path, "function_id"), "Task state requires function_id")
        if state.timeout_sec is not None and state.timeout_sec <= 0:
            self.error(_join(path, "timeout_sec"), "timeout_sec must be positive")
        if state.heartbeat_sec is not None:
            if state.heartbeat_sec <= 0:
                self.error(_join(path, "heartbeat_sec"), "heartbeat_sec must be positive")
            elif state.timeout_sec is not None and state.heartbeat_sec > state.timeout_sec:
                self.error(
                    _join(path, "heartbeat_sec"), "heartbeat_sec must not exceed timeout_sec"
                )

    def check_wait(self, state: WaitState, path: str) -> None:
        given = [
            name
            for name in ("seconds", "timestamp", "seconds_path", "timestamp_path")
            if getattr(state, name) is not None
        ]
        if len(given) != 1:
            self.error(
                path,
                "Wait state must set exactly one of seconds, timestamp, "
                f"seconds_path or timestamp_path (found {len(given)})",
            )
        if state.seconds is not None and state.seconds < 0:
            self.error(_join(path, "seconds"), "seconds must not be negative")
        if state.timestamp is not None and parse_timestamp(state.timestamp) is None:
            self.error(_join(path, "timestamp"), f"invalid timestamp {state.timestamp!r}")

    def check_choice(self, state: ChoiceState, path: str) -> None:
        if not state.choices and not state.default:
            self.warn(
                path,
                "Choice state has no rules and no default; it will fail with "
                "States.NoChoiceMatched at runtime",
            )
        for index, rule in enumerate(state.choices):
            for variable in iter_variables(rule.predicate):
                if not is_valid_path(variable):
                    self.error(
                        f"{path}.choices[{index}]", f"invalid reference path {variable!r}"
                    )

    def check_policies(self, state: TaskState | ParallelState, states: dict[str, State], path: str):
        for index, policy in enumerate(state.retry):
            self.check_retry(policy, f"{path}.retry[{index}]", last=index == len(state.retry) - 1)
        for index, catcher in enumerate(state.catch):
            self.check_catch(catcher, states, f"{path}.catch[{index}]", last=index == len(state.catch) - 1)

    def check_retry(self, policy: RetryPolicy, path: str, last: bool) -> None:
        self.check_error_equals(policy.error_equals, path, last)
        if not _is_number(policy.interval_seconds) or policy.interval_seconds < 0:
            self.error(f"{path}.interval_seconds", "interval_seconds must be a non-negative number")
        if (
            not isinstance(policy.max_attempts, int)
            or isinstance(policy.max_attempts, bool)
            or policy.max_attempts <= 0
        ):
            self.error(f"{path}.max_attempts", "max_attempts must be a positive integer")
        if not _is_number(policy.backoff_rate) or policy.backoff_rate <= 0:
            self.error(f"{path}.backoff_rate", "backoff_rate must be a positive number")

    def check_catch(
        self, catcher: CatchConfig, states: dict[str, State], path: str, last: bool
    ) -> None:
        self.check_error_equals(catcher.error_equals, path, last)
        if not isinstance(catcher.next, str) or not catcher.next:
            self.error(f"{path}.next", "catch requires 'next'")
        elif catcher.next not in states:
            self.error(f"{path}.next", f"catch references unknown state {catcher.next!r}")
        if catcher.result_path is not None and not is_valid_path(catcher.result_path):
            self.error(f"{path}.result_path", f"invalid reference path {catcher.result_path!r}")

    def check_error_equals(self, error_equals: tuple, path: str, last: bool) -> None:
        if not error_equals:
            self.error(f"{path}.error_equals", "error_equals must list at least one error kind")
            return
        if not all(isinstance(kind, str) and kind for kind in error_equals):
            self.error(f"{path}.error_equals", "error kinds must be non-empty strings")
            return
        if CATCH_ALL in error_equals and (len(error_equals) > 1 or not last):
            self.error(
                f"{path}.error_equals", f"{CATCH_ALL} must appear alone in the last policy"
            )

    def check_reachability(self, graph: Branch, prefix: str) -> None:
        if graph.start_at not in graph.states:
            return
        seen = {graph.start_at}
        queue = deque([graph.start_at])
        while queue:
            for target in graph.states[queue.popleft()].transitions:
                if target in graph.states and target not in seen:
                    seen.add(target)
                    queue.append(target)
        for name in graph.states:
            if name not in seen:
                self.warn(_join(prefix, f"states.{name}"), "state is unreachable from start_at")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = ["ValidationReport", "validate", "parse_definition"]
