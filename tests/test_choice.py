"""Tests for Choice rule evaluation."""

import pytest

from pyfuncflow.core import ChoiceNoMatchError
from pyfuncflow.executor import evaluate, matches
from pyfuncflow.models import And, ChoiceRule, Comparison, Not, Or, TypeTest
from pyfuncflow.models.choice import predicate_from_dict


def rule(data: dict):
    issues = []
    predicate = predicate_from_dict(data, issues, "rule")
    assert not issues, issues
    return predicate


def test_first_matching_rule_wins():
    rules = [
        ChoiceRule(Comparison("$.n", "numeric_greater_than", 10), "Big"),
        ChoiceRule(Comparison("$.n", "numeric_greater_than", 0), "Pos"),
    ]
    assert evaluate(rules, "Neg", {"n": 50}) == ("Big", 0)
    assert evaluate(rules, "Neg", {"n": 5}) == ("Pos", 1)
    assert evaluate(rules, "Neg", {"n": -1}) == ("Neg", None)


def test_no_match_without_default_raises():
    rules = [ChoiceRule(Comparison("$.n", "numeric_equals", 1), "One")]
    with pytest.raises(ChoiceNoMatchError) as exc_info:
        evaluate(rules, None, {"n": 2}, "Check")
    assert exc_info.value.error_kind == "States.NoChoiceMatched"
    assert exc_info.value.state_name == "Check"


@pytest.mark.parametrize(
    "predicate,context,expected",
    [
        ({"variable": "$.s", "string_equals": "a"}, {"s": "a"}, True),
        ({"variable": "$.s", "string_less_than": "b"}, {"s": "a"}, True),
        ({"variable": "$.s", "string_greater_than_equals": "b"}, {"s": "a"}, False),
        ({"variable": "$.n", "numeric_equals": 3}, {"n": 3.0}, True),
        ({"variable": "$.n", "numeric_less_than_equals": 3}, {"n": 4}, False),
        ({"variable": "$.b", "boolean_equals": True}, {"b": True}, True),
        ({"variable": "$.b", "boolean_equals": False}, {"b": 0}, False),
        (
            {"variable": "$.t", "timestamp_less_than": "2024-01-02T00:00:00Z"},
            {"t": "2024-01-01T12:00:00Z"},
            True,
        ),
        (
            {"variable": "$.t", "timestamp_equals": "2024-01-01T00:00:00+00:00"},
            {"t": "2024-01-01T00:00:00Z"},
            True,
        ),
        ({"variable": "$.t", "timestamp_greater_than": "2024-01-01T00:00:00Z"}, {"t": "soon"}, False),
    ],
)
def test_comparison_families(predicate, context, expected):
    assert matches(rule(predicate), context) is expected


def test_wrong_type_is_a_non_match():
    # Booleans are not numbers, numbers are not strings
    assert not matches(Comparison("$.v", "numeric_equals", 1), {"v": True})
    assert not matches(Comparison("$.v", "string_equals", "1"), {"v": 1})


def test_path_operand():
    predicate = rule({"variable": "$.spent", "numeric_less_than_path": "$.limit"})
    assert matches(predicate, {"spent": 5, "limit": 10})
    assert not matches(predicate, {"spent": 15, "limit": 10})
    assert not matches(predicate, {"spent": 5})


@pytest.mark.parametrize(
    "pattern,value,expected",
    [
        ("*.log", "app.log", True),
        ("*.log", "app.txt", False),
        ("a*b*c", "a-x-b-y-c", True),
        (r"literal\*", "literal*", True),
        (r"literal\*", "literalX", False),
        ("exact", "exact", True),
        ("exact", "exactly", False),
    ],
)
def test_string_matches(pattern, value, expected):
    assert matches(Comparison("$.s", "string_matches", pattern), {"s": value}) is expected


def test_type_tests():
    context = {"none": None, "n": 1.5, "s": "x", "b": False, "t": "2024-05-01T10:00:00Z"}
    assert matches(TypeTest("$.none", "is_null"), context)
    assert matches(TypeTest("$.n", "is_numeric"), context)
    assert not matches(TypeTest("$.b", "is_numeric"), context)
    assert matches(TypeTest("$.s", "is_string"), context)
    assert matches(TypeTest("$.b", "is_boolean"), context)
    assert matches(TypeTest("$.t", "is_timestamp"), context)
    assert matches(TypeTest("$.s", "is_timestamp", expected=False), context)


@pytest.mark.parametrize("value", ["2024-01-01", "20240101", "20240101T000000", "2024-01-01 10:00"])
def test_timestamps_need_date_and_time(value):
    assert not matches(TypeTest("$.t", "is_timestamp"), {"t": value})
    assert not matches(
        Comparison("$.t", "timestamp_less_than", "2030-01-01T00:00:00Z"), {"t": value}
    )


def test_missing_variable():
    context = {"a": 1}
    assert matches(TypeTest("$.missing", "is_present", expected=False), context)
    assert not matches(TypeTest("$.missing", "is_present"), context)
    assert not matches(TypeTest("$.missing", "is_null"), context)
    assert not matches(Comparison("$.missing", "numeric_equals", 1), context)
    assert matches(Not(Comparison("$.missing", "numeric_equals", 1)), context)


def test_composites():
    positive = Comparison("$.n", "numeric_greater_than", 0)
    even_flag = Comparison("$.even", "boolean_equals", True)

    assert matches(And((positive, even_flag)), {"n": 2, "even": True})
    assert not matches(And((positive, even_flag)), {"n": 2, "even": False})
    assert matches(Or((positive, even_flag)), {"n": -2, "even": True})
    assert not matches(Or((positive, even_flag)), {"n": -2, "even": False})
    assert matches(Not(And((positive, even_flag))), {"n": -2, "even": True})


def test_nested_rule_from_dict():
    predicate = rule(
        {
            "and": [
                {"variable": "$.age", "numeric_greater_than_equals": 18},
                {"or": [{"variable": "$.country", "string_equals": "NZ"}, {"not": {"variable": "$.banned", "is_present": True}}]},
            ]
        }
    )
    assert matches(predicate, {"age": 20, "country": "AU"})
    assert not matches(predicate, {"age": 20, "country": "AU", "banned": True})
    assert not matches(predicate, {"age": 12})
