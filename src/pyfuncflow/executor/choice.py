"""
Choice Evaluator.

Selects the successor of a Choice state by testing its rules in declared
order against the data context. The first rule whose predicate is true
wins; the order is never changed.

Evaluation is total and side-effect free:
- a missing variable makes every predicate false except ``is_present``
  (which reports the absence) and ``not`` wrappers around it
- a value of the wrong type for its comparison family is a non-match,
  never an error (booleans are not numbers)
- an unparseable timestamp is a non-match
"""

from __future__ import annotations

import operator
import re
from collections.abc import Sequence
from functools import lru_cache
from typing import Any

from pyfuncflow.core.errors import ChoiceNoMatchError
from pyfuncflow.core.paths import lookup
from pyfuncflow.executor.timer import parse_timestamp
from pyfuncflow.models.choice import And, ChoiceRule, Comparison, Not, Or, Predicate, TypeTest

_RELATIONS = {
    "equals": operator.eq,
    "less_than": operator.lt,
    "greater_than": operator.gt,
    "less_than_equals": operator.le,
    "greater_than_equals": operator.ge,
}


def evaluate(
    rules: Sequence[ChoiceRule],
    default: str | None,
    context: Any,
    state_name: str = "",
) -> tuple[str, int | None]:
    """Pick the next state.

    Returns:
        (target state, index of the matching rule); the index is None
        when the default was taken

    Raises:
        ChoiceNoMatchError: If no rule matches and there is no default
    """
    for index, rule in enumerate(rules):
        if matches(rule.predicate, context):
            return rule.next, index
    if default:
        return default, None
    raise ChoiceNoMatchError(state_name)


def matches(predicate: Predicate, context: Any) -> bool:
    """Evaluate one predicate tree against the data context."""
    match predicate:
        case And(rules=rules):
            return all(matches(rule, context) for rule in rules)
        case Or(rules=rules):
            return any(matches(rule, context) for rule in rules)
        case Not(rule=rule):
            return not matches(rule, context)
        case TypeTest():
            return _type_test(predicate, context)
        case Comparison():
            return _compare(predicate, context)
    raise TypeError(f"not a choice predicate: {predicate!r}")


def _type_test(test: TypeTest, context: Any) -> bool:
    found, value = lookup(context, test.variable)
    if test.test == "is_present":
        return found == test.expected
    if not found:
        return False

    match test.test:
        case "is_null":
            outcome = value is None
        case "is_numeric":
            outcome = _is_number(value)
        case "is_string":
            outcome = isinstance(value, str)
        case "is_boolean":
            outcome = isinstance(value, bool)
        case "is_timestamp":
            outcome = parse_timestamp(value) is not None
        case _:
            return False
    return outcome == test.expected


def _compare(comparison: Comparison, context: Any) -> bool:
    found, value = lookup(context, comparison.variable)
    if not found:
        return False

    if comparison.value_path is not None:
        found, operand = lookup(context, comparison.value_path)
        if not found:
            return False
    else:
        operand = comparison.value

    family = comparison.family
    relation = comparison.relation

    if family == "string":
        if not isinstance(value, str) or not isinstance(operand, str):
            return False
        if relation == "matches":
            return _pattern(operand).fullmatch(value) is not None
        return _RELATIONS[relation](value, operand)

    if family == "numeric":
        if not _is_number(value) or not _is_number(operand):
            return False
        return _RELATIONS[relation](value, operand)

    if family == "boolean":
        if not isinstance(value, bool) or not isinstance(operand, bool):
            return False
        return value == operand

    if family == "timestamp":
        left, right = parse_timestamp(value), parse_timestamp(operand)
        if left is None or right is None:
            return False
        return _RELATIONS[relation](left, right)

    return False


@lru_cache(maxsize=256)
def _pattern(pattern: str) -> re.Pattern:
    """Compile a ``string_matches`` pattern.

    ``*`` matches any run of characters; ``\\*`` is a literal asterisk and
    ``\\\\`` a literal backslash.
    """
    parts = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "\\" and index + 1 < len(pattern) and pattern[index + 1] in "*\\":
            parts.append(re.escape(pattern[index + 1]))
            index += 2
            continue
        parts.append(".*" if char == "*" else re.escape(char))
        index += 1
    return re.compile("".join(parts), re.DOTALL)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


__all__ = ["evaluate", "matches"]
