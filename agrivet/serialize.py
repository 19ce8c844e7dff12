"""Row normalization shared by the services.

psycopg hands back Decimal, datetime and date objects. Everything a service
returns (and everything it caches) goes through ``to_jsonable`` first so a
cached read and an uncached read produce the same structure.
"""
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Iterable, Optional


def to_jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def pick(row: dict, fields: Iterable[str]) -> dict:
    """Project ``row`` onto ``fields`` (missing columns become None)."""
    return {f: to_jsonable(row.get(f)) for f in fields}


def as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def as_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
