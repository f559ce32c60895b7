"""JSON extraction from free-form backend output and JSON Schema checks."""

from __future__ import annotations

import json
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

from .errors import OutputExtractionError, SchemaValidationError

DISPLAY_VALUE_LIMIT = 100


def _fenced_region(text: str) -> str:
    marker = text.find("```json")
    if marker != -1:
        start = marker + len("```json")
        end = text.find("```", start)
        if end != -1:
            return text[start:end]
    marker = text.find("```")
    if marker != -1:
        start = marker + 3
        newline = text.find("\n", start)
        if newline != -1:
            start = newline + 1
        end = text.find("```", start)
        if end != -1:
            return text[start:end]
    return text


def _matching_brace(region: str, start: int) -> int:
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(region)):
        ch = region[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return idx
    return -1


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first balanced JSON object found in ``text``.

    A ```json fence wins over a generic fence, which wins over the raw text.
    Braces inside JSON strings do not count towards nesting.
    """
    region = _fenced_region(text or "")
    start = region.find("{")
    if start == -1:
        raise OutputExtractionError("no JSON object found in output")
    end = _matching_brace(region, start)
    if end == -1:
        raise OutputExtractionError("no matching closing brace found")
    try:
        parsed = json.loads(region[start : end + 1])
    except json.JSONDecodeError as exc:
        raise OutputExtractionError(f"failed to parse JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise OutputExtractionError("extracted JSON is not an object")
    return parsed


def _error_path(err: Any) -> str:
    parts = [str(part) for part in err.absolute_path]
    return "/".join(parts) if parts else "(root)"


def schema_errors(data: Any, schema: dict[str, Any] | None) -> list[str]:
    if not schema:
        return []
    validator_cls = validator_for(schema, default=Draft202012Validator)
    try:
        validator_cls.check_schema(schema)
    except SchemaError as exc:
        return [f"invalid schema: {exc.message}"]
    validator = validator_cls(schema)
    errors = sorted(validator.iter_errors(data), key=lambda err: (_error_path(err), err.message))
    return [f"{_error_path(err)}: {err.message}" for err in errors]


def validate_against_schema(data: Any, schema: dict[str, Any] | None, kind: str) -> None:
    errors = schema_errors(data, schema)
    if errors:
        raise SchemaValidationError(f"{kind} validation failed: {'; '.join(errors)}")


def validate_inputs(inputs: dict[str, Any], schema: dict[str, Any] | None) -> None:
    validate_against_schema(inputs, schema, "input")


def validate_outputs(outputs: dict[str, Any], schema: dict[str, Any] | None) -> None:
    validate_against_schema(outputs, schema, "output")


def input_labels(inputs: dict[str, Any]) -> list[str]:
    return sorted(inputs)


def format_inputs_for_display(inputs: dict[str, Any]) -> str:
    if not inputs:
        return "(no inputs)"
    lines = []
    for label in input_labels(inputs):
        rendered = json.dumps(inputs[label], sort_keys=True)
        if len(rendered) > DISPLAY_VALUE_LIMIT:
            rendered = rendered[:DISPLAY_VALUE_LIMIT] + "..."
        lines.append(f"  {label}: {rendered}")
    return "\n".join(lines)
