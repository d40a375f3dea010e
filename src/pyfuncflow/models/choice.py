"""Choice rule model: a recursive predicate tree.

Design: Tagged union, not polymorphic objects
    Predicates are plain frozen dataclasses. Evaluation lives in
    pyfuncflow.executor.choice as one recursive function that matches on
    the variant, which keeps evaluation total and side-effect free.

Wire format (one JSON object per node):

    {"variable": "$.n", "numeric_greater_than": 0, "next": "Pos"}
    {"and": [{...}, {...}], "next": "Both"}
    {"not": {"variable": "$.flag", "is_present": true}, "next": "NoFlag"}

Only the top-level entries of a Choice state's ``choices`` list carry
``next``; nested nodes are pure predicates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pyfuncflow.core.errors import ValidationIssue

STRING_OPERATORS = (
    "string_equals",
    "string_less_than",
    "string_greater_than",
    "string_less_than_equals",
    "string_greater_than_equals",
)
NUMERIC_OPERATORS = (
    "numeric_equals",
    "numeric_less_than",
    "numeric_greater_than",
    "numeric_less_than_equals",
    "numeric_greater_than_equals",
)
BOOLEAN_OPERATORS = ("boolean_equals",)
TIMESTAMP_OPERATORS = (
    "timestamp_equals",
    "timestamp_less_than",
    "timestamp_greater_than",
    "timestamp_less_than_equals",
    "timestamp_greater_than_equals",
)
PATTERN_OPERATORS = ("string_matches",)

COMPARISON_OPERATORS = (
    STRING_OPERATORS + NUMERIC_OPERATORS + BOOLEAN_OPERATORS + TIMESTAMP_OPERATORS
)
"""Operators that also accept a ``<operator>_path`` form."""

TYPE_TESTS = ("is_null", "is_present", "is_numeric", "is_string", "is_boolean", "is_timestamp")

_PATH_OPERATORS = tuple(f"{op}_path" for op in COMPARISON_OPERATORS)
_LEAF_KEYS = frozenset(COMPARISON_OPERATORS + PATTERN_OPERATORS + _PATH_OPERATORS + TYPE_TESTS)
_COMPOSITE_KEYS = ("and", "or", "not")


@dataclass(frozen=True)
class Comparison:
    """Compare the value at ``variable`` with a literal or another path.

    Attributes:
        variable: Reference path of the tested value
        operator: Base operator name, e.g. ``numeric_greater_than``
        value: Literal operand (unused when value_path is set)
        value_path: Reference path of the operand (``*_path`` operators)
    """

    variable: str
    operator: str
    value: Any = None
    value_path: str | None = None

    @property
    def family(self) -> str:
        """``string``, ``numeric``, ``boolean`` or ``timestamp``."""
        return self.operator.split("_", 1)[0]

    @property
    def relation(self) -> str:
        """``equals``, ``less_than``, ..., or ``matches``."""
        return self.operator.split("_", 1)[1]


@dataclass(frozen=True)
class TypeTest:
    """Presence/type predicate: ``is_present``, ``is_null``, ``is_numeric``..."""

    variable: str
    test: str
    expected: bool = True


@dataclass(frozen=True)
class And:
    rules: tuple[Predicate, ...]


@dataclass(frozen=True)
class Or:
    rules: tuple[Predicate, ...]


@dataclass(frozen=True)
class Not:
    rule: Predicate


Predicate = Comparison | TypeTest | And | Or | Not


@dataclass(frozen=True)
class ChoiceRule:
    """One top-level entry of a Choice state: a predicate plus its target."""

    predicate: Predicate
    next: str
    comment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = predicate_to_dict(self.predicate)
        data["next"] = self.next
        if self.comment is not None:
            data["comment"] = self.comment
        return data

    @classmethod
    def from_dict(
        cls, data: Any, issues: list[ValidationIssue] | None = None, path: str = "choices"
    ) -> ChoiceRule | None:
        """Parse a top-level rule, appending problems to ``issues``.

        Returns None when the rule is too malformed to represent.
        """
        sink: list[ValidationIssue] = issues if issues is not None else []
        if not isinstance(data, dict):
            sink.append(ValidationIssue(path, "choice rule must be an object"))
            return None
        target = data.get("next")
        if not isinstance(target, str) or not target:
            sink.append(ValidationIssue(path, "top-level choice rule must set 'next'"))
        comment = data.get("comment")
        if comment is not None and not isinstance(comment, str):
            sink.append(ValidationIssue(f"{path}.comment", "expects a string"))
            comment = None
        predicate = predicate_from_dict(data, sink, path, top_level=True)
        if predicate is None or not isinstance(target, str) or not target:
            return None
        return cls(predicate=predicate, next=target, comment=comment)


def predicate_from_dict(
    data: Any, issues: list[ValidationIssue], path: str, *, top_level: bool = False
) -> Predicate | None:
    """Parse one predicate node recursively."""
    if not isinstance(data, dict):
        issues.append(ValidationIssue(path, "choice rule must be an object"))
        return None
    if not top_level and "next" in data:
        issues.append(ValidationIssue(path, "nested choice rules must not set 'next'"))

    composite = [key for key in _COMPOSITE_KEYS if key in data]
    leaf = [key for key in data if key in _LEAF_KEYS]
    extra = ("variable", "next", "comment") if top_level else ("variable", "next")
    unknown = [
        key
        for key in data
        if key not in _LEAF_KEYS and key not in _COMPOSITE_KEYS and key not in extra
    ]
    for key in unknown:
        issues.append(ValidationIssue(path, f"unknown choice rule field {key!r}"))

    if composite:
        if len(composite) > 1 or leaf or "variable" in data:
            issues.append(
                ValidationIssue(path, "a rule must be exactly one of and/or/not or a comparison")
            )
            return None
        return _composite_from_dict(composite[0], data[composite[0]], issues, path)

    variable = data.get("variable")
    if not isinstance(variable, str) or not variable:
        issues.append(ValidationIssue(path, "comparison rule must set 'variable'"))
        return None
    if len(leaf) != 1:
        issues.append(
            ValidationIssue(path, f"comparison rule needs exactly one operator, found {len(leaf)}")
        )
        return None

    key = leaf[0]
    operand = data[key]
    if key in TYPE_TESTS:
        if not isinstance(operand, bool):
            issues.append(ValidationIssue(f"{path}.{key}", "type test expects true or false"))
            return None
        return TypeTest(variable=variable, test=key, expected=operand)
    if key.endswith("_path") and key in _PATH_OPERATORS:
        if not isinstance(operand, str):
            issues.append(ValidationIssue(f"{path}.{key}", "expects a reference path"))
            return None
        return Comparison(variable=variable, operator=key[: -len("_path")], value_path=operand)
    if not _literal_fits(key, operand):
        issues.append(ValidationIssue(f"{path}.{key}", f"literal {operand!r} has the wrong type"))
        return None
    return Comparison(variable=variable, operator=key, value=operand)


def _composite_from_dict(
    key: str, operand: Any, issues: list[ValidationIssue], path: str
) -> Predicate | None:
    if key == "not":
        inner = predicate_from_dict(operand, issues, f"{path}.not")
        return Not(rule=inner) if inner is not None else None

    if not isinstance(operand, list) or not operand:
        issues.append(ValidationIssue(f"{path}.{key}", "expects a non-empty list of rules"))
        return None
    children = [
        predicate_from_dict(child, issues, f"{path}.{key}[{index}]")
        for index, child in enumerate(operand)
    ]
    if any(child is None for child in children):
        return None
    return And(rules=tuple(children)) if key == "and" else Or(rules=tuple(children))


def _literal_fits(operator: str, operand: Any) -> bool:
    if operator in NUMERIC_OPERATORS:
        return isinstance(operand, (int, float)) and not isinstance(operand, bool)
    if operator in BOOLEAN_OPERATORS:
        return isinstance(operand, bool)
    return isinstance(operand, str)


def predicate_to_dict(predicate: Predicate) -> dict[str, Any]:
    """Serialize a predicate node (without ``next``)."""
    match predicate:
        case Comparison(variable=variable, operator=operator, value_path=str() as value_path):
            return {"variable": variable, f"{operator}_path": value_path}
        case Comparison(variable=variable, operator=operator, value=value):
            return {"variable": variable, operator: value}
        case TypeTest(variable=variable, test=test, expected=expected):
            return {"variable": variable, test: expected}
        case And(rules=rules):
            return {"and": [predicate_to_dict(rule) for rule in rules]}
        case Or(rules=rules):
            return {"or": [predicate_to_dict(rule) for rule in rules]}
        case Not(rule=rule):
            return {"not": predicate_to_dict(rule)}
    raise TypeError(f"not a choice predicate: {predicate!r}")


def iter_variables(predicate: Predicate):
    """Yield every reference path a predicate reads."""
    match predicate:
        case Comparison(variable=variable, value_path=value_path):
            yield variable
            if value_path is not None:
                yield value_path
        case TypeTest(variable=variable):
            yield variable
        case And(rules=rules) | Or(rules=rules):
            for rule in rules:
                yield from iter_variables(rule)
        case Not(rule=rule):
            yield from iter_variables(rule)


__all__ = [
    "Comparison",
    "TypeTest",
    "And",
    "Or",
    "Not",
    "Predicate",
    "ChoiceRule",
    "predicate_from_dict",
    "predicate_to_dict",
    "iter_variables",
    "COMPARISON_OPERATORS",
    "PATTERN_OPERATORS",
    "TYPE_TESTS",
]
