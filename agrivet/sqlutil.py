"""Small helpers for building parameterized statements."""
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_update(table: str, data: Mapping[str, Any], allowed: Iterable[str], row_id: Any) -> tuple[str, list]:
    """Build ``UPDATE <table> SET ... WHERE id = %s RETURNING *``.

    Only keys in ``allowed`` are written. Raises ValueError when nothing is
    left to update.
    """
    allowed = set(allowed)
    fields: list[str] = []
    values: list[Any] = []
    for key, value in data.items():
        if key not in allowed:
            continue
        fields.append(f"{key} = %s")
        values.append(value)
    if not fields:
        raise ValueError("No fields to update")
    fields.append("updated_at = %s")
    values.append(utcnow())
    values.append(row_id)
    sql = f"UPDATE {table} SET {', '.join(fields)} WHERE id = %s RETURNING *"
    return sql, values


def soft_delete_sql(table: str) -> str:
    return f"UPDATE {table} SET is_active = false, updated_at = %s WHERE id = %s RETURNING *"
