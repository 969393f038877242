"""
Field validation for contact and task forms.

Runs before any store call. Each schema maps a field name to its rules:

    type      "string" (default) | "list" | "datetime"
    required  must be present and non-blank (on create)
    max       maximum string length
    pattern   regex the value must fully match (blank skips)
    allowed   closed set of values
    label     human name used in messages

All failing fields are reported together in one ValidationFailed.
"""
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from .errors import ValidationFailed
from .schema import TaskPriority, TaskStatus, parse_dt

EMAIL_PATTERN = r"[^@\s]+@[^@\s]+\.[^@\s]+"
UUID_PATTERN = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"

CONTACT_SCHEMA = {
    "first_name": {"required": True, "max": 100, "label": "First name"},
    "last_name": {"required": True, "max": 100, "label": "Last name"},
    "email": {"required": True, "max": 255, "label": "Email",
              "pattern": EMAIL_PATTERN, "pattern_message": "Invalid email address"},
    "phone": {"max": 20, "label": "Phone number"},
    "company": {"max": 200, "label": "Company name"},
    "job_title": {"max": 100, "label": "Job title"},
    "address": {},
    "city": {"max": 100, "label": "City"},
    "state": {"max": 50, "label": "State"},
    "postal_code": {"max": 20, "label": "Postal code"},
    "country": {"max": 100, "label": "Country"},
    "notes": {},
    "tags": {"type": "list"},
    "attachments": {"type": "list"},
}

TASK_SCHEMA = {
    "title": {"required": True, "max": 500, "label": "Title"},
    "description": {},
    "status": {"allowed": [s.value for s in TaskStatus]},
    "priority": {"allowed": [p.value for p in TaskPriority]},
    "due_date": {"type": "datetime", "label": "Due date"},
    "assigned_to": {"pattern": UUID_PATTERN, "pattern_message": "Invalid assignee id"},
    "contact_id": {"pattern": UUID_PATTERN, "pattern_message": "Invalid contact id"},
    "tags": {"type": "list"},
}


class FormValidator:
    """Validates form data against a field schema."""

    def __init__(self, schema: Dict[str, Dict[str, Any]]):
        self.schema = schema

    def validate(self, data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        """
        Validate ``data`` and return it unchanged apart from enum unwrapping.

        With ``partial=True`` (updates) only the supplied fields are checked,
        but a supplied required field still may not be blank.

        Raises:
            ValidationFailed with one message per failing field.
        """
        errors: Dict[str, str] = {}
        result: Dict[str, Any] = {}

        unknown = set(data) - set(self.schema)
        for name in sorted(unknown):
            errors[name] = "Unknown field"

        for name, rules in self.schema.items():
            if name not in data:
                if rules.get("required") and not partial:
                    errors[name] = f"{rules.get('label', name)} is required"
                continue

            value = data[name]
            if isinstance(value, Enum):
                value = value.value
            result[name] = value
            message = self._check(name, value, rules)
            if message:
                errors[name] = message

        if errors:
            raise ValidationFailed(errors)
        return result

    def _check(self, name: str, value: Any, rules: Dict[str, Any]):
        label = rules.get("label", name)
        field_type = rules.get("type", "string")

        if value is None or (isinstance(value, str) and value.strip() == ""):
            if rules.get("required"):
                return f"{label} is required"
            return None

        if field_type == "list":
            if not isinstance(value, (list, tuple)):
                return f"{label} must be a list"
            return None

        if field_type == "datetime":
            if isinstance(value, datetime):
                return None
            try:
                parse_dt(value)
            except (TypeError, ValueError):
                return f"{label} must be an ISO-8601 date"
            return None

        if not isinstance(value, str):
            return f"{label} must be text"

        max_len = rules.get("max")
        if max_len is not None and len(value) > max_len:
            return f"{label} must be less than {max_len} characters"

        allowed = rules.get("allowed")
        if allowed and value not in allowed:
            return f"Invalid value '{value}'. Allowed: {', '.join(allowed)}"

        pattern = rules.get("pattern")
        if pattern and not re.fullmatch(pattern, value.strip()):
            return rules.get("pattern_message", f"Invalid format for {label}")
        return None


contact_validator = FormValidator(CONTACT_SCHEMA)
task_validator = FormValidator(TASK_SCHEMA)
