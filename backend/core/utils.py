"""
Utility functions for the workflow execution engine.

Includes:
- UTC datetime helpers
- JSON-safe serialization for step outputs
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return utc_now().isoformat()


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string, treating naive values as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def safe_serialize(obj: Any, depth: int = 0) -> Any:
    """Recursively ensure all values are JSON-serializable."""
    if depth > 10:
        return str(obj)
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, dict):
        return {str(k): safe_serialize(v, depth + 1) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [safe_serialize(v, depth + 1) for v in obj]
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)
