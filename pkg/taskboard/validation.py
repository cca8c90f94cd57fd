"""
Input validation for API request bodies and query strings.

Each endpoint declares a schema: a dict of wire field name → rules.
The validator coerces values, normalises sentinels and collects every
field error before raising InvalidInput, so nothing reaches the store
unless the whole request is valid.

Rule keys:
    type        string | integer | enum | datetime | labels
    attr        Python attribute name in the result (defaults to the field name)
    required    must be present and non-empty (on partial updates: non-empty if present)
    nullable    explicit null is accepted and kept as None
    default     value used when absent (full validation only)
    sentinels   {raw: replacement} applied before type checks
    empty_null  "", 0 and false become None
    enum        Enum class for type=enum
    max_length  / pattern / min / max
"""
import re
from typing import Any, Dict, List

from .errors import InvalidInput
from .schema import TaskPriority, TaskStatus, parse_timestamp

# Server-owned fields that clients may echo back; silently dropped.
READ_ONLY_FIELDS = {"id", "creatorId", "ownerId", "authorId", "createdAt", "updatedAt"}

UNASSIGNED = "unassigned"

# Largest value a SQLite INTEGER column holds
MAX_INT = 2 ** 63 - 1

TASK_CREATE_SCHEMA = {
    "title": {"type": "string", "required": True, "max_length": 255},
    "description": {"type": "string", "nullable": True},
    "status": {"type": "enum", "enum": TaskStatus, "default": TaskStatus.BACKLOG},
    "priority": {"type": "enum", "enum": TaskPriority, "default": TaskPriority.MEDIUM},
    "dueDate": {"type": "datetime", "attr": "due_date", "nullable": True},
    "projectId": {"type": "integer", "attr": "project_id", "nullable": True, "empty_null": True,
                  "min": 1, "max": MAX_INT},
    "assigneeId": {"type": "string", "attr": "assignee_id", "nullable": True,
                   "empty_null": True, "sentinels": {UNASSIGNED: None}},
    "labels": {"type": "labels", "default": []},
    # Accepted for symmetry with updates; the store assigns the real position
    "position": {"type": "integer", "min": 0, "max": MAX_INT},
}

TASK_UPDATE_SCHEMA = dict(TASK_CREATE_SCHEMA)
TASK_UPDATE_SCHEMA["status"] = {"type": "enum", "enum": TaskStatus}
TASK_UPDATE_SCHEMA["priority"] = {"type": "enum", "enum": TaskPriority}
TASK_UPDATE_SCHEMA["labels"] = {"type": "labels"}

TASK_QUERY_SCHEMA = {
    "projectId": {"type": "integer", "attr": "project_id", "min": 1, "max": MAX_INT},
    "assigneeId": {"type": "string", "attr": "assignee_id"},
    "status": {"type": "enum", "enum": TaskStatus},
}

COMMENT_SCHEMA = {
    "content": {"type": "string", "required": True},
}

PROJECT_SCHEMA = {
    "name": {"type": "string", "required": True, "max_length": 255},
    "description": {"type": "string", "nullable": True},
    "color": {"type": "string", "pattern": r"#[0-9a-fA-F]{6}"},
}


class _FieldError(Exception):
    pass


class Validator:
    """Validates and coerces request data against a field schema."""

    def validate(self, data: Any, schema: dict, partial: bool = False) -> Dict[str, Any]:
        """
        Validate data against schema.

        Args:
            data: decoded JSON object or query-string mapping
            schema: field rules (see module docstring)
            partial: only fields present in data are returned (PATCH semantics)

        Returns:
            dict keyed by attribute name with coerced values.

        Raises:
            InvalidInput carrying one error per offending field.
        """
        if not isinstance(data, dict):
            raise InvalidInput(
                "Invalid data",
                errors=[{"field": "", "message": "Expected a JSON object"}],
            )

        result: Dict[str, Any] = {}
        errors: List[Dict[str, str]] = []

        for name, rules in schema.items():
            attr = rules.get("attr", name)
            present = name in data
            try:
                if not present:
                    if partial:
                        continue
                    if rules.get("required"):
                        raise _FieldError("Required")
                    if "default" in rules:
                        default = rules["default"]
                        result[attr] = list(default) if isinstance(default, list) else default
                    elif rules.get("nullable"):
                        result[attr] = None
                    continue

                value = self._normalise(data[name], rules)
                if value is None:
                    if rules.get("required"):
                        raise _FieldError("Required")
                    if rules.get("nullable"):
                        result[attr] = None
                    elif not partial and "default" in rules:
                        default = rules["default"]
                        result[attr] = list(default) if isinstance(default, list) else default
                    elif partial:
                        raise _FieldError("May not be null")
                    continue

                result[attr] = self._coerce(value, rules)
            except _FieldError as e:
                errors.append({"field": name, "message": str(e)})

        unknown = set(data) - set(schema) - READ_ONLY_FIELDS
        for name in sorted(unknown):
            errors.append({"field": name, "message": "Unknown field"})

        if errors:
            raise InvalidInput("Invalid data", errors=errors)
        return result

    @staticmethod
    def _normalise(value: Any, rules: dict) -> Any:
        sentinels = rules.get("sentinels") or {}
        if isinstance(value, str) and value in sentinels:
            return sentinels[value]
        if rules.get("empty_null") and (value == "" or value is False or value == 0):
            return None
        if isinstance(value, str) and value.strip() == "" and rules["type"] != "string":
            return None
        return value

    def _coerce(self, value: Any, rules: dict) -> Any:
        kind = rules["type"]

        if kind == "string":
            if not isinstance(value, str):
                raise _FieldError("Expected string")
            if rules.get("required") and not value.strip():
                raise _FieldError("Required")
            max_length = rules.get("max_length")
            if max_length and len(value) > max_length:
                raise _FieldError(f"Must be at most {max_length} characters")
            pattern = rules.get("pattern")
            if pattern and not re.fullmatch(pattern, value):
                raise _FieldError(f"Does not match pattern {pattern}")
            return value

        if kind == "integer":
            if isinstance(value, bool):
                raise _FieldError("Expected integer")
            if isinstance(value, float) and not value.is_integer():
                raise _FieldError(f"Expected integer, got: '{value}'")
            try:
                value = int(value)
            except (ValueError, TypeError, OverflowError):
                raise _FieldError(f"Expected integer, got: '{value}'")
            min_val = rules.get("min")
            if min_val is not None and value < min_val:
                raise _FieldError(f"Must be >= {min_val}")
            max_val = rules.get("max")
            if max_val is not None and value > max_val:
                raise _FieldError(f"Must be <= {max_val}")
            return value

        if kind == "enum":
            enum_cls = rules["enum"]
            if isinstance(value, enum_cls):
                return value
            try:
                return enum_cls(value)
            except ValueError:
                allowed = ", ".join(m.value for m in enum_cls)
                raise _FieldError(f"Invalid value '{value}'. Allowed: {allowed}")

        if kind == "datetime":
            try:
                return parse_timestamp(value)
            except (ValueError, TypeError):
                raise _FieldError(f"Invalid date: '{value}'")

        if kind == "labels":
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise _FieldError("Expected a list of strings")
            return list(value)

        raise _FieldError(f"Unknown type in schema: {kind}")
