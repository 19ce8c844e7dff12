import json
import logging
from datetime import datetime
from typing import Any, Optional

from . import db
from .cache import cache_delete, cache_delete_pattern, cache_memo
from .config import get_config
from .serialize import pick, to_jsonable
from .sqlutil import build_update, soft_delete_sql, utcnow

logger = logging.getLogger(__name__)

BRANCH_FIELDS = (
    "id", "name", "code", "address", "city", "province", "postal_code", "phone",
    "email", "manager_id", "manager_name", "is_active", "operating_hours",
    "branch_type", "created_at", "updated_at",
)
UPDATABLE_FIELDS = (
    "name", "code", "address", "city", "province", "postal_code", "phone",
    "email", "manager_id", "operating_hours", "branch_type", "is_active",
)

_BRANCH_SELECT = """
    SELECT
        b.*,
        s.first_name || ' ' || s.last_name AS manager_name
    FROM branches b
    LEFT JOIN staff s ON b.manager_id = s.id
"""


def branch_key(branch_id: Any) -> str:
    return f"branch:{branch_id}"


ALL_BRANCHES_KEY = "branches:all"


def _to_branch(row: dict) -> dict:
    branch = pick(row, BRANCH_FIELDS)
    hours = branch.get("operating_hours")
    if isinstance(hours, str):
        try:
            branch["operating_hours"] = json.loads(hours)
        except ValueError:
            pass
    return branch


def _hhmm(value: Any) -> str:
    return str(value)[:5] if value is not None else ""


class BranchService:
    """Branches with a read-through cache on the list and per-id lookups."""

    def __init__(self, store=None) -> None:
        self.store = store or db
        self.ttl = get_config().CACHE_TTL_BRANCHES

    def get_all(self) -> list[dict]:
        def load():
            rows = self.store.query(_BRANCH_SELECT + " WHERE b.is_active = true ORDER BY b.name")
            return [_to_branch(r) for r in rows]

        return cache_memo(ALL_BRANCHES_KEY, self.ttl, load)

    def get_by_id(self, branch_id: int) -> Optional[dict]:
        def load():
            rows = self.store.query(_BRANCH_SELECT + " WHERE b.id = %s AND b.is_active = true", (branch_id,))
            return _to_branch(rows[0]) if rows else None

        return cache_memo(branch_key(branch_id), self.ttl, load)

    def get_by_code(self, code: str) -> Optional[dict]:
        rows = self.store.query(
            "SELECT * FROM branches WHERE code = %s AND is_active = true",
            (code,),
        )
        return _to_branch(rows[0]) if rows else None

    def get_operating_hours(self, branch_id: int) -> list[dict]:
        rows = self.store.query(
            """
            SELECT day_of_week, is_open, open_time, close_time
            FROM branch_operating_hours
            WHERE branch_id = %s
            ORDER BY day_of_week
            """,
            (branch_id,),
        )
        return [to_jsonable(r) for r in rows]

    def is_branch_open(self, branch_id: int, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        # day_of_week: 0 = Sunday .. 6 = Saturday
        day = (now.weekday() + 1) % 7
        rows = self.store.query(
            """
            SELECT is_open, open_time, close_time
            FROM branch_operating_hours
            WHERE branch_id = %s AND day_of_week = %s
            """,
            (branch_id, day),
        )
        if not rows or not rows[0]["is_open"]:
            return False
        current = now.strftime("%H:%M")
        return _hhmm(rows[0]["open_time"]) <= current <= _hhmm(rows[0]["close_time"])

    def get_branch_availability(self, now: Optional[datetime] = None) -> list[dict]:
        now = now or datetime.now()
        availability = []
        for branch in self.get_all():
            hours = self.get_operating_hours(branch["id"])
            availability.append({
                "branch_id": branch["id"],
                "is_open": self.is_branch_open(branch["id"], now),
                "operating_hours": {
                    str(h["day_of_week"]): {
                        "is_open": h["is_open"],
                        "open_time": h["open_time"],
                        "close_time": h["close_time"],
                    }
                    for h in hours
                },
                "last_updated": now.isoformat(),
            })
        return availability

    def clear_cache(self) -> None:
        cache_delete_pattern("branch:*")
        cache_delete(ALL_BRANCHES_KEY)
        logger.info("Branch cache cleared")

    def create(self, data: dict) -> dict:
        now = utcnow()
        rows = self.store.query(
            """
            INSERT INTO branches (
                name, code, address, city, province, postal_code,
                phone, email, manager_id, operating_hours, branch_type,
                is_active, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, true, %s, %s)
            RETURNING *
            """,
            (
                data.get("name"),
                data.get("code"),
                data.get("address"),
                data.get("city"),
                data.get("province"),
                data.get("postal_code"),
                data.get("phone"),
                data.get("email"),
                data.get("manager_id"),
                json.dumps(data.get("operating_hours")),
                data.get("branch_type") or "satellite",
                now,
                now,
            ),
        )
        branch = _to_branch(rows[0])
        self.clear_cache()
        return branch

    def update(self, branch_id: int, data: dict) -> Optional[dict]:
        data = dict(data)
        if "operating_hours" in data:
            data["operating_hours"] = json.dumps(data["operating_hours"])
        sql, params = build_update("branches", data, UPDATABLE_FIELDS, branch_id)
        rows = self.store.query(sql, params)
        if not rows:
            return None
        branch = _to_branch(rows[0])
        self.clear_cache()
        return branch

    def delete(self, branch_id: int) -> Optional[dict]:
        rows = self.store.query(soft_delete_sql("branches"), (utcnow(), branch_id))
        if not rows:
            return None
        self.clear_cache()
        return _to_branch(rows[0])
