"""Utility functions for conversation graph operations."""

import uuid
from datetime import datetime, timezone

from .constants import NODE_TYPES
from .exceptions import ValidationError


def new_id() -> str:
    """Generate a row id."""
    return str(uuid.uuid4())


def now_iso() -> str:
    """UTC timestamp in ISO-8601 form; sorts lexically in creation order."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def clean_ids(values) -> list[str]:
    """Trim ids, drop empty ones and duplicates, keep first-seen order."""
    if not values:
        return []
    seen = set()
    result = []
    for value in values:
        if not isinstance(value, str):
            continue
        value = value.strip()
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def require_text(value: str | None, field: str) -> str:
    """Return stripped text or raise ValidationError if it is empty."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


def validate_node_type(node_type: str):
    """Validate node type. Raises ValidationError if invalid."""
    if node_type not in NODE_TYPES:
        raise ValidationError(f"Invalid node type '{node_type}', must be one of {NODE_TYPES}")
