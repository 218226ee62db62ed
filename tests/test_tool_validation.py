"""Tests for JSON Schema validation of tool arguments."""

from __future__ import annotations

from diffscout.ai.orchestration.tools.validation import MAX_SCHEMA_ERRORS, validate_arguments

SCHEMA = {
    "type": "object",
    "properties": {
        "task": {"type": "string", "minLength": 10},
        "limit": {"type": "integer", "minimum": 1},
        "paths": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["task"],
    "additionalProperties": False,
}


class TestValidateArguments:
    """Problems must name the offending field."""

    def test_valid_arguments_produce_no_problems(self):
        assert validate_arguments(SCHEMA, {"task": "look at the parser", "limit": 3}) == []

    def test_missing_schema_accepts_anything(self):
        assert validate_arguments(None, {"anything": 1}) == []
        assert validate_arguments({}, {"anything": 1}) == []

    def test_missing_required_field_is_named(self):
        problems = validate_arguments(SCHEMA, {})

        assert problems == ["task: required property is missing"]

    def test_type_and_length_errors_name_fields(self):
        problems = validate_arguments(SCHEMA, {"task": "short", "limit": "many"})

        assert any(problem.startswith("limit:") for problem in problems)
        assert any(problem.startswith("task:") and "too short" in problem for problem in problems)

    def test_array_items_use_index_paths(self):
        problems = validate_arguments(SCHEMA, {"task": "a long enough task", "paths": ["ok", 5]})

        assert len(problems) == 1
        assert problems[0].startswith("paths[1]:")

    def test_unexpected_property_reported_at_root(self):
        problems = validate_arguments(SCHEMA, {"task": "a long enough task", "extra": True})

        assert len(problems) == 1
        assert problems[0].startswith("(root):")
        assert "extra" in problems[0]

    def test_invalid_schema_is_reported_not_raised(self):
        problems = validate_arguments({"type": "not-a-type"}, {})

        assert len(problems) == 1
        assert problems[0].startswith("tool schema is invalid")

    def test_error_count_is_capped(self):
        schema = {
            "type": "object",
            "properties": {f"f{i}": {"type": "integer"} for i in range(20)},
        }
        arguments = {f"f{i}": "x" for i in range(20)}

        problems = validate_arguments(schema, arguments)

        assert len(problems) == MAX_SCHEMA_ERRORS + 1
        assert problems[-1] == "too many validation errors; stopping early"
