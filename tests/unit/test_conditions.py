"""Structured predicate evaluation."""

import pytest
from pydantic import TypeAdapter, ValidationError

from contentflow.conditions import Condition, evaluate, resolve_field

adapter = TypeAdapter(Condition)


def parse(raw):
    return adapter.validate_python(raw)


@pytest.mark.parametrize(
    "operator,value,expected",
    [
        ("eq", 20, True),
        ("neq", 20, False),
        ("gt", 18, True),
        ("gte", 20, True),
        ("lt", 20, False),
        ("lte", 20, True),
    ],
)
def test_comparison_operators(operator, value, expected):
    condition = parse({"field": "age", "operator": operator, "value": value})
    assert evaluate(condition, {"age": 20}) is expected


def test_gte_adult_check():
    condition = parse({"field": "age", "operator": "gte", "value": 18})
    assert evaluate(condition, {"age": 20})
    assert not evaluate(condition, {"age": 17})


def test_string_operators():
    data = {"title": "Draft: launch plan", "tags": ["news", "tech"]}
    assert evaluate(parse({"field": "title", "operator": "startsWith", "value": "Draft"}), data)
    assert evaluate(parse({"field": "title", "operator": "endsWith", "value": "plan"}), data)
    assert evaluate(parse({"field": "title", "operator": "contains", "value": "launch"}), data)
    assert evaluate(parse({"field": "tags", "operator": "contains", "value": "tech"}), data)
    assert not evaluate(parse({"field": "tags", "operator": "contains", "value": "sports"}), data)


def test_missing_field_and_mismatched_types_do_not_match():
    assert not evaluate(parse({"field": "age", "operator": "gt", "value": 1}), {})
    assert not evaluate(parse({"field": "age", "operator": "gt", "value": 1}), {"age": "old"})
    assert not evaluate(parse({"field": "title", "operator": "contains", "value": "x"}), {})


def test_dotted_paths():
    data = {"author": {"profile": {"role": "editor"}}}
    assert resolve_field(data, "author.profile.role") == "editor"
    assert resolve_field(data, "author.missing.role") is None
    condition = parse({"field": "author.profile.role", "operator": "eq", "value": "editor"})
    assert evaluate(condition, data)


def test_composites():
    condition = parse(
        {
            "and": [
                {"field": "status", "operator": "eq", "value": "draft"},
                {
                    "or": [
                        {"field": "words", "operator": "gte", "value": 500},
                        {"not": {"field": "title", "operator": "startsWith", "value": "WIP"}},
                    ]
                },
            ]
        }
    )
    assert evaluate(condition, {"status": "draft", "words": 100, "title": "Final"})
    assert evaluate(condition, {"status": "draft", "words": 900, "title": "WIP intro"})
    assert not evaluate(condition, {"status": "draft", "words": 100, "title": "WIP intro"})
    assert not evaluate(condition, {"status": "published", "words": 900, "title": "Final"})


def test_composite_round_trips_through_json():
    raw = {"or": [{"and": [{"field": "a", "operator": "eq", "value": 1}]}]}
    condition = parse(raw)
    dumped = adapter.dump_python(condition, mode="json", by_alias=True)
    assert dumped == {"or": [{"and": [{"field": "a", "operator": "eq", "value": 1}]}]}


def test_unknown_operator_is_rejected():
    with pytest.raises(ValidationError):
        parse({"field": "age", "operator": "matches", "value": ".*"})
