"""JSON Schema validation of tool arguments."""

from __future__ import annotations

from functools import lru_cache
import json
from typing import Any, Mapping, Sequence

import jsonschema
from jsonschema import Draft202012Validator

__all__ = ["validate_arguments", "MAX_SCHEMA_ERRORS"]

MAX_SCHEMA_ERRORS = 10


def validate_arguments(schema: Mapping[str, Any] | None, arguments: Mapping[str, Any]) -> list[str]:
    """Return human-readable problems with *arguments*; empty when valid.

    Each problem names the offending field, e.g. ``task: 'short' is too short``
    or ``review_content: required property is missing``.
    """

    if not schema:
        return []
    try:
        validator = _validator_for(json.dumps(schema, sort_keys=True, default=str))
    except jsonschema.exceptions.SchemaError as exc:
        return [f"tool schema is invalid: {exc.message}"]

    problems: list[str] = []
    for issue in sorted(validator.iter_errors(dict(arguments)), key=lambda item: [str(part) for part in item.absolute_path]):
        problems.append(_format_issue(issue))
        if len(problems) >= MAX_SCHEMA_ERRORS:
            problems.append("too many validation errors; stopping early")
            break
    return problems


@lru_cache(maxsize=128)
def _validator_for(schema_json: str) -> Draft202012Validator:
    schema = json.loads(schema_json)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _format_issue(issue: jsonschema.ValidationError) -> str:
    path = _format_schema_path(issue.absolute_path)
    if issue.validator == "required" and isinstance(issue.validator_value, Sequence):
        missing = _missing_property(issue)
        if missing:
            prefix = f"{path}.{missing}" if path else missing
            return f"{prefix}: required property is missing"
    if issue.validator == "additionalProperties" and not path:
        return f"(root): {issue.message}"
    if path:
        return f"{path}: {issue.message}"
    return issue.message


def _missing_property(issue: jsonschema.ValidationError) -> str | None:
    instance = issue.instance if isinstance(issue.instance, Mapping) else {}
    missing = [str(name) for name in issue.validator_value if name not in instance]
    for name in missing:
        if repr(name) in issue.message:
            return name
    return missing[0] if missing else None


def _format_schema_path(path: Sequence[Any]) -> str:
    if not path:
        return ""
    components: list[str] = []
    for segment in path:
        if isinstance(segment, int):
            if components:
                components[-1] = f"{components[-1]}[{segment}]"
            else:
                components.append(f"[{segment}]")
        else:
            components.append(str(segment))
    return ".".join(filter(None, components))
