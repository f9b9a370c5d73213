"""
Structured-output schemas for the reviewer and reviewee roles.

One copy of each schema serves both sides: it is handed to the agent CLI
(inline text for claude, a file path for codex) and checked again here
against whatever comes back.
"""

import json
from pathlib import Path

import jsonschema
from jsonschema.exceptions import best_match

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"

_schemas: dict[str, dict] = {}
_validators: dict[str, jsonschema.Draft7Validator] = {}


class ValidationError(Exception):
    """Agent output does not match its role's schema."""

    def __init__(self, schema_name: str, message: str, path: str | None = None):
        self.schema_name = schema_name
        self.path = path
        where = f" at {path}" if path else ""
        super().__init__(f"{schema_name} output invalid{where}: {message}")


def load_schema(schema_name: str) -> dict:
    """Parsed schema for a role. Each file is read once per process."""
    schema = _schemas.get(schema_name)
    if schema is None:
        schema_file = SCHEMAS_DIR / f"{schema_name}.schema.json"
        try:
            schema = json.loads(schema_file.read_text())
        except FileNotFoundError:
            raise ValidationError(schema_name, f"no schema file at {schema_file}") from None
        _schemas[schema_name] = schema
    return schema


def schema_text(schema_name: str) -> str:
    """Compact JSON text of a schema, for CLIs that take the schema inline."""
    return json.dumps(load_schema(schema_name), separators=(",", ":"))


def validate(data: dict, schema_name: str) -> None:
    """
    Check agent output against the role's schema.

    Only the most relevant violation is reported; its location is a dotted
    path such as ``comments.0.line``, or ``(root)`` for the top level.

    Raises:
        ValidationError: If the data doesn't conform
    """
    validator = _validators.get(schema_name)
    if validator is None:
        validator = jsonschema.Draft7Validator(load_schema(schema_name))
        _validators[schema_name] = validator

    error = best_match(validator.iter_errors(data))
    if error is not None:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        raise ValidationError(schema_name, error.message, path)
