"""Value coercion between log rows and SQLite columns."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
import json
from pathlib import Path
from typing import Any

from usagelog.capture.exceptions import warn_usage_log

SqliteValue = str | int | float | bytes | None


def safe_json_dumps(value: Any) -> str | None:
    """Serialize to JSON text; fall back to ``str(value)`` with a warning."""
    if value is None:
        return None
    try:
        return json.dumps(to_jsonable(value), ensure_ascii=False)
    except (TypeError, ValueError, RecursionError) as error:
        warn_usage_log(
            f"usage logger could not encode value as JSON ({error.__class__.__name__}: {error}); "
            "falling back to its string form",
        )
        return str(value)


def to_jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return [to_jsonable(item) for item in sorted(value, key=str)]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return to_jsonable(value.value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, BaseException):
        return {"type": value.__class__.__name__, "message": str(value)}
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if hasattr(value, "model_dump") and callable(value.model_dump):
        return to_jsonable(value.model_dump())
    if hasattr(value, "__dict__"):
        return to_jsonable({key: val for key, val in vars(value).items() if not key.startswith("_")})
    raise TypeError(f"Object of type {value.__class__.__name__} is not JSON serializable")


def ensure_sqlite_compatible(value: Any) -> SqliteValue:
    """Coerce any value to a type SQLite accepts, never raising."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (str, int, float, bytes)):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    return str(value)


def safe_parse_json(value: Any) -> Any:
    """Decode a ``_json`` column; undecodable text is returned unchanged."""
    if value is None:
        return None
    if not isinstance(value, (str, bytes, bytearray)):
        return value
    try:
        return json.loads(value)
    except (ValueError, TypeError):
        return value
