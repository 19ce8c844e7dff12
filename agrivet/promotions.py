import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from . import db
from .cache import cache_delete_pattern, cache_memo
from .config import get_config
from .serialize import as_float, pick, to_jsonable
from .sqlutil import build_update, soft_delete_sql, utcnow

logger = logging.getLogger(__name__)

PROMOTION_FIELDS = (
    "id", "campaign_id", "name", "code", "type", "discount_value", "minimum_amount",
    "maximum_discount", "usage_limit", "usage_count", "start_date", "end_date",
    "is_active", "applies_to", "branch_id", "created_at",
)
UPDATABLE_FIELDS = (
    "campaign_id", "name", "code", "type", "discount_value", "minimum_amount",
    "maximum_discount", "usage_limit", "start_date", "end_date", "is_active",
    "applies_to",
)
PROMOTION_TYPES = ("percentage", "fixed", "bogo")


def active_promotions_key(branch_id: Any = None) -> str:
    return f"promotions:active:{branch_id or 'all'}"


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0))


class PromotionService:
    def __init__(self, store=None) -> None:
        self.store = store or db
        self.ttl = get_config().CACHE_TTL_PROMOTIONS

    def get_active_promotions(self, branch_id: Optional[int] = None) -> list[dict]:
        return cache_memo(active_promotions_key(branch_id), self.ttl, lambda: self._load_active(branch_id))

    def _load_active(self, branch_id: Optional[int]) -> list[dict]:
        now = utcnow()
        where = "WHERE p.is_active = true AND p.start_date <= %s AND p.end_date >= %s"
        params: list[Any] = [now, now]
        if branch_id:
            where += " AND (pb.branch_id = %s OR pb.branch_id IS NULL)"
            params.append(branch_id)
        rows = self.store.query(
            f"""
            SELECT DISTINCT p.*, pb.branch_id
            FROM promotions p
            LEFT JOIN promotion_branches pb ON p.id = pb.promotion_id
            {where}
            ORDER BY p.created_at DESC
            """,
            tuple(params),
        )
        return [pick(r, PROMOTION_FIELDS) for r in rows]

    def get_banner_promotions(self, branch_id: Optional[int] = None) -> list[dict]:
        return [p for p in self.get_active_promotions(branch_id) if p["type"] in ("percentage", "fixed")]

    def get_modal_promotions(self, branch_id: Optional[int] = None) -> list[dict]:
        return [
            p for p in self.get_active_promotions(branch_id)
            if p["type"] == "bogo" or (as_float(p["discount_value"]) or 0) >= 20
        ]

    def get_by_id(self, promotion_id: int) -> Optional[dict]:
        rows = self.store.query(
            "SELECT * FROM promotions WHERE id = %s AND is_active = true",
            (promotion_id,),
        )
        return pick(rows[0], PROMOTION_FIELDS) if rows else None

    def get_by_code(self, code: str) -> Optional[dict]:
        now = utcnow()
        rows = self.store.query(
            """
            SELECT * FROM promotions
            WHERE code = %s AND is_active = true
              AND start_date <= %s AND end_date >= %s
            """,
            (code, now, now),
        )
        return pick(rows[0], PROMOTION_FIELDS) if rows else None

    def validate_promotion(self, promotion_id: int, order: dict) -> dict:
        promotion = self.get_by_id(promotion_id)
        if not promotion:
            return {"valid": False, "message": "Promotion not found"}

        now = utcnow()
        start, end = _as_datetime(promotion["start_date"]), _as_datetime(promotion["end_date"])
        if (start and now < start) or (end and now > end):
            return {"valid": False, "message": "Promotion has expired"}

        limit = promotion.get("usage_limit")
        if limit and (promotion.get("usage_count") or 0) >= limit:
            return {"valid": False, "message": "Promotion usage limit reached"}

        minimum = promotion.get("minimum_amount")
        if minimum and _money(order.get("subtotal")) < _money(minimum):
            return {"valid": False, "message": f"Minimum order amount of {minimum} required"}

        customer_id = order.get("customer_id")
        if customer_id:
            rows = self.store.query(
                "SELECT COUNT(*) AS usage_count FROM promotion_usage WHERE promotion_id = %s AND customer_id = %s",
                (promotion_id, customer_id),
            )
            if rows and int(rows[0]["usage_count"]) > 0:
                return {"valid": False, "message": "Promotion already used by this customer"}

        return {"valid": True, "promotion": promotion}

    def apply_promotion(self, promotion_id: int, order: dict) -> dict:
        validation = self.validate_promotion(promotion_id, order)
        if not validation["valid"]:
            return validation

        promotion = validation["promotion"]
        subtotal = _money(order.get("subtotal"))
        value = _money(promotion["discount_value"])
        kind = promotion["type"]
        if kind == "percentage":
            discount = subtotal * value / 100
            cap = promotion.get("maximum_discount")
            if cap is not None and discount > _money(cap):
                discount = _money(cap)
        elif kind == "fixed":
            discount = value
        elif kind == "bogo":
            # Buy-one-get-one approximated as half off the subtotal
            discount = subtotal * Decimal("0.5")
        else:
            return {"valid": False, "message": "Invalid promotion type"}

        discount = min(discount, subtotal).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return {"valid": True, "promotion": promotion, "discount_amount": float(discount)}

    def record_usage(self, promotion_id: int, customer_id: Optional[int], order_id: Optional[int]) -> Optional[dict]:
        """Log one use of a promotion and bump its counter.

        Returns None when the promotion does not exist. Raises ValueError when
        the usage limit is already reached; nothing is written in that case.
        """
        def _work(client):
            locked = client.query(
                "SELECT usage_limit, usage_count FROM promotions WHERE id = %s FOR UPDATE",
                (promotion_id,),
            )
            if not locked:
                return None
            limit = locked[0]["usage_limit"]
            if limit is not None and int(locked[0]["usage_count"] or 0) >= int(limit):
                raise ValueError("Promotion has reached maximum usage limit")
            rows = client.query(
                """
                INSERT INTO promotion_usage (promotion_id, customer_id, order_id, created_at)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (promotion_id, customer_id, order_id, utcnow()),
            )
            client.query(
                "UPDATE promotions SET usage_count = usage_count + 1, updated_at = %s WHERE id = %s",
                (utcnow(), promotion_id),
            )
            return to_jsonable(rows[0])

        usage = self.store.transaction(_work)
        if usage is not None:
            # Cached active lists carry usage_count
            self.clear_cache()
        return usage

    def get_promotion_targets(self, promotion_id: int) -> list[dict]:
        rows = self.store.query(
            """
            SELECT pp.product_id, pp.category_id, p.name AS product_name, c.name AS category_name
            FROM promotion_products pp
            LEFT JOIN products p ON pp.product_id = p.id
            LEFT JOIN categories c ON pp.category_id = c.id
            WHERE pp.promotion_id = %s
            """,
            (promotion_id,),
        )
        return [to_jsonable(r) for r in rows]

    def get_promotion_branches(self, promotion_id: int) -> list[dict]:
        rows = self.store.query(
            """
            SELECT pb.branch_id, b.name AS branch_name
            FROM promotion_branches pb
            JOIN branches b ON pb.branch_id = b.id
            WHERE pb.promotion_id = %s
            """,
            (promotion_id,),
        )
        return [to_jsonable(r) for r in rows]

    def create(self, data: dict) -> dict:
        if data.get("type") not in PROMOTION_TYPES:
            raise ValueError(f"type must be one of {', '.join(PROMOTION_TYPES)}")
        now = utcnow()
        rows = self.store.query(
            """
            INSERT INTO promotions (
                campaign_id, name, code, type, discount_value, minimum_amount,
                maximum_discount, usage_limit, usage_count, start_date, end_date,
                applies_to, is_active, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 0, %s, %s, %s, true, %s, %s)
            RETURNING *
            """,
            (
                data.get("campaign_id"),
                data.get("name"),
                data.get("code"),
                data.get("type"),
                data.get("discount_value"),
                data.get("minimum_amount"),
                data.get("maximum_discount"),
                data.get("usage_limit"),
                data.get("start_date"),
                data.get("end_date"),
                data.get("applies_to") or "all",
                now,
                now,
            ),
        )
        promotion = pick(rows[0], PROMOTION_FIELDS)
        self.clear_cache()
        return promotion

    def update(self, promotion_id: int, data: dict) -> Optional[dict]:
        if "type" in data and data["type"] not in PROMOTION_TYPES:
            raise ValueError(f"type must be one of {', '.join(PROMOTION_TYPES)}")
        sql, params = build_update("promotions", data, UPDATABLE_FIELDS, promotion_id)
        rows = self.store.query(sql, params)
        if not rows:
            return None
        promotion = pick(rows[0], PROMOTION_FIELDS)
        self.clear_cache()
        return promotion

    def delete(self, promotion_id: int) -> Optional[dict]:
        rows = self.store.query(soft_delete_sql("promotions"), (utcnow(), promotion_id))
        if not rows:
            return None
        self.clear_cache()
        return pick(rows[0], PROMOTION_FIELDS)

    def clear_cache(self) -> None:
        cache_delete_pattern("promotions:*")
        logger.info("Promotion cache cleared")
