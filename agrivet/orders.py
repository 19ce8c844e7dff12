"""Order creation and cancellation.

``create_order`` and ``cancel_order`` are the only multi-table writes in the
service. Each runs inside one relational transaction: the order row, its line
items, the inventory reservations and the customer's loyalty aggregates are
committed together or not at all. The cache is never touched while the
transaction is open; product listings (which embed inventory quantities) are
invalidated only after commit.

Order numbers are ``ORD`` followed by eight digits, taken as one more than the
highest existing number. The lookup runs outside the transaction, so two
concurrent creators can compute the same number; the unique constraint on
``orders.order_number`` makes the later one fail and roll back.
"""
import logging
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

from . import db
from .loyalty import TIER_THRESHOLDS, points_for, tier_case_sql
from .products import invalidate_catalog
from .serialize import as_int, pick, to_jsonable
from .sqlutil import utcnow

logger = logging.getLogger(__name__)

ORDER_PREFIX = "ORD"
ORDER_NUMBER_DIGITS = 8
READY_TIME_MINUTES = 30

# Cancelling an order releases its inventory reservations but keeps the loyalty
# points and spend the order earned. Pass retain_loyalty_on_cancel=False to
# OrderService to claw them back instead.
RETAIN_LOYALTY_ON_CANCEL = True

ORDER_STATUSES = ("pending", "confirmed", "ready", "completed", "cancelled")

ORDER_FIELDS = (
    "id", "order_number", "customer_id", "branch_id", "status", "subtotal",
    "tax_amount", "total_amount", "payment_method", "payment_reference",
    "payment_notes", "estimated_ready_time", "is_guest_order", "created_at",
    "updated_at",
)
ORDER_DETAIL_FIELDS = ORDER_FIELDS + (
    "customer_name", "customer_phone", "customer_email",
    "branch_name", "branch_address", "branch_phone",
)
ITEM_FIELDS = (
    "id", "order_id", "product_variant_id", "quantity", "unit_price", "line_total",
    "weight", "expiry_date", "batch_number", "notes", "created_at",
)
ITEM_DETAIL_FIELDS = ITEM_FIELDS + ("product_name", "product_sku", "base_product_name")

_ORDER_DETAIL_SELECT = """
    SELECT
        o.*,
        c.first_name || ' ' || c.last_name AS customer_name,
        c.phone AS customer_phone,
        c.email AS customer_email,
        b.name AS branch_name,
        b.address AS branch_address,
        b.phone AS branch_phone
    FROM orders o
    LEFT JOIN customers c ON o.customer_id = c.id
    JOIN branches b ON o.branch_id = b.id
"""

_ORDER_ITEMS_SELECT = """
    SELECT
        oi.*,
        pv.name AS product_name,
        pv.sku AS product_sku,
        p.name AS base_product_name
    FROM order_items oi
    JOIN product_variants pv ON oi.product_variant_id = pv.id
    JOIN products p ON pv.product_id = p.id
    WHERE oi.order_id = %s
    ORDER BY oi.id
"""


class OrderStateError(ValueError):
    """The order exists but is in a status that forbids the requested change."""


class InventoryNotFoundError(LookupError):
    def __init__(self, variant_id: Any, branch_id: Any) -> None:
        super().__init__(f"No inventory row for product variant {variant_id} at branch {branch_id}")
        self.variant_id = variant_id
        self.branch_id = branch_id


def _money(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value or 0))


def _order(row: dict) -> dict:
    order = pick(row, ORDER_FIELDS)
    order["is_guest_order"] = bool(order["is_guest_order"])
    return order


class OrderService:
    def __init__(self, store=None, retain_loyalty_on_cancel: bool = RETAIN_LOYALTY_ON_CANCEL) -> None:
        self.store = store or db
        self.retain_loyalty_on_cancel = retain_loyalty_on_cancel

    def generate_order_number(self) -> str:
        try:
            rows = self.store.query(
                f"""
                SELECT COALESCE(MAX(CAST(SUBSTR(order_number, {len(ORDER_PREFIX) + 1}) AS INTEGER)), 0) + 1 AS next_number
                FROM orders
                WHERE order_number LIKE %s
                """,
                (f"{ORDER_PREFIX}%",),
            )
            next_number = int(rows[0]["next_number"])
        except Exception:
            # Timestamp fallback is not guaranteed unique
            logger.exception("Error generating order number, using timestamp fallback")
            return f"{ORDER_PREFIX}{str(int(time.time() * 1000))[-ORDER_NUMBER_DIGITS:]}"
        return f"{ORDER_PREFIX}{next_number:0{ORDER_NUMBER_DIGITS}d}"

    def create_order(self, order_data: dict) -> dict:
        """Create an order, its items, the inventory reservations and loyalty updates atomically.

        Returns ``{"order": {...}, "items": [...]}``. Any failure rolls back
        every write and re-raises.
        """
        items = order_data.get("items") or []
        if not items:
            raise ValueError("Order must contain at least one item")

        branch_id = order_data.get("branch_id")
        customer_id = order_data.get("customer_id")
        is_guest = bool(order_data.get("is_guest_order", False))
        total_amount = _money(order_data.get("total_amount"))
        order_number = self.generate_order_number()
        now = utcnow()
        estimated_ready_time = now + timedelta(minutes=READY_TIME_MINUTES)

        def _work(client):
            order_rows = client.query(
                """
                INSERT INTO orders (
                    order_number, customer_id, branch_id, status, subtotal, tax_amount,
                    total_amount, payment_method, payment_reference, payment_notes,
                    estimated_ready_time, is_guest_order, created_at, updated_at
                ) VALUES (%s, %s, %s, 'pending', %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    order_number,
                    customer_id,
                    branch_id,
                    _money(order_data.get("subtotal")),
                    _money(order_data.get("tax_amount")),
                    total_amount,
                    order_data.get("payment_method"),
                    order_data.get("payment_reference"),
                    order_data.get("payment_notes"),
                    estimated_ready_time,
                    is_guest,
                    now,
                    now,
                ),
            )
            order = _order(order_rows[0])

            order_items = []
            for item in items:
                item_rows = client.query(
                    """
                    INSERT INTO order_items (
                        order_id, product_variant_id, quantity, unit_price, line_total,
                        weight, expiry_date, batch_number, notes, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        order["id"],
                        item["product_variant_id"],
                        item["quantity"],
                        _money(item.get("unit_price")),
                        _money(item.get("line_total")),
                        item.get("weight"),
                        item.get("expiry_date"),
                        item.get("batch_number"),
                        item.get("notes"),
                        now,
                    ),
                )
                order_items.append(pick(item_rows[0], ITEM_FIELDS))

                # Single-statement increment: the row lock taken by UPDATE
                # serializes concurrent reservations on the same variant/branch.
                reserved = client.query(
                    """
                    UPDATE inventory
                    SET quantity_reserved = quantity_reserved + %s, updated_at = %s
                    WHERE product_variant_id = %s AND branch_id = %s
                    RETURNING quantity_reserved
                    """,
                    (item["quantity"], now, item["product_variant_id"], branch_id),
                )
                if not reserved:
                    raise InventoryNotFoundError(item["product_variant_id"], branch_id)

            if customer_id and not is_guest:
                self._apply_loyalty(client, customer_id, points_for(total_amount), total_amount, now, purchase_date=now)

            return {"order": order, "items": order_items}

        try:
            result = self.store.transaction(_work)
        except Exception:
            logger.exception("Error creating order %s", order_number)
            raise
        invalidate_catalog()
        logger.info(
            "Order %s created branch=%s items=%s guest=%s",
            order_number, branch_id, len(items), is_guest,
        )
        return result

    def _apply_loyalty(self, client, customer_id: Any, points: int, amount: Decimal, now, purchase_date=None) -> None:
        """Add (or, with negative values, remove) points and spend, recomputing the tier.

        ``last_purchase_date`` only moves when ``purchase_date`` is given.
        The tier is derived from ``total_lifetime_spent`` plus the delta inside
        the same UPDATE, so no separate read is needed.
        """
        client.query(
            f"""
            UPDATE customers
            SET
                loyalty_points = loyalty_points + %s,
                total_spent = total_spent + %s,
                total_lifetime_spent = total_lifetime_spent + %s,
                last_purchase_date = COALESCE(%s, last_purchase_date),
                loyalty_tier = {tier_case_sql("total_lifetime_spent + %s")},
                updated_at = %s
            WHERE id = %s
            """,
            (points, amount, amount, purchase_date) + (amount,) * len(TIER_THRESHOLDS) + (now, customer_id),
        )

    def cancel_order(self, order_id: int) -> Optional[dict]:
        """Cancel an order and release its inventory reservations.

        Returns None if the order does not exist. Raises OrderStateError if it
        is already cancelled.
        """
        now = utcnow()

        def _work(client):
            rows = client.query(
                """
                SELECT id, branch_id, customer_id, is_guest_order, total_amount, status
                FROM orders
                WHERE id = %s
                FOR UPDATE
                """,
                (order_id,),
            )
            if not rows:
                return None
            current = rows[0]
            if current["status"] == "cancelled":
                raise OrderStateError(f"Order {order_id} is already cancelled")

            items = client.query(
                "SELECT product_variant_id, quantity FROM order_items WHERE order_id = %s",
                (order_id,),
            )
            for item in items:
                client.query(
                    """
                    UPDATE inventory
                    SET quantity_reserved = quantity_reserved - %s, updated_at = %s
                    WHERE product_variant_id = %s AND branch_id = %s
                    """,
                    (item["quantity"], now, item["product_variant_id"], current["branch_id"]),
                )

            if not self.retain_loyalty_on_cancel and current["customer_id"] and not current["is_guest_order"]:
                amount = _money(current["total_amount"])
                self._apply_loyalty(client, current["customer_id"], -points_for(amount), -amount, now)

            updated = client.query(
                "UPDATE orders SET status = 'cancelled', updated_at = %s WHERE id = %s RETURNING *",
                (now, order_id),
            )
            return _order(updated[0])

        try:
            order = self.store.transaction(_work)
        except Exception:
            logger.exception("Error cancelling order %s", order_id)
            raise
        if order is not None:
            invalidate_catalog()
            logger.info("Order %s cancelled", order["order_number"])
        return order

    def _with_items(self, row: dict) -> dict:
        order = pick(row, ORDER_DETAIL_FIELDS)
        order["is_guest_order"] = bool(order["is_guest_order"])
        items = self.store.query(_ORDER_ITEMS_SELECT, (row["id"],))
        order["items"] = [pick(i, ITEM_DETAIL_FIELDS) for i in items]
        return order

    def get_by_id(self, order_id: int) -> Optional[dict]:
        rows = self.store.query(_ORDER_DETAIL_SELECT + " WHERE o.id = %s", (order_id,))
        return self._with_items(rows[0]) if rows else None

    def get_by_order_number(self, order_number: str) -> Optional[dict]:
        rows = self.store.query(_ORDER_DETAIL_SELECT + " WHERE o.order_number = %s", (order_number,))
        return self._with_items(rows[0]) if rows else None

    def update_status(self, order_id: int, status: str) -> Optional[dict]:
        if status not in ORDER_STATUSES:
            raise ValueError(f"status must be one of {', '.join(ORDER_STATUSES)}")
        if status == "cancelled":
            # Cancelling has to release reservations
            return self.cancel_order(order_id)
        rows = self.store.query(
            """
            UPDATE orders SET status = %s, updated_at = %s
            WHERE id = %s AND status <> 'cancelled'
            RETURNING *
            """,
            (status, utcnow(), order_id),
        )
        if rows:
            return _order(rows[0])
        if self.store.query("SELECT id FROM orders WHERE id = %s", (order_id,)):
            raise OrderStateError(f"Order {order_id} is cancelled")
        return None

    def get_by_customer(self, customer_id: int, page: int = 1, limit: int = 10) -> list[dict]:
        rows = self.store.query(
            """
            SELECT o.*, b.name AS branch_name
            FROM orders o
            JOIN branches b ON o.branch_id = b.id
            WHERE o.customer_id = %s
            ORDER BY o.created_at DESC, o.id DESC
            LIMIT %s OFFSET %s
            """,
            (customer_id, limit, (page - 1) * limit),
        )
        return [dict(_order(r), branch_name=r.get("branch_name")) for r in rows]

    def get_by_branch(self, branch_id: int, status: Optional[str] = None, page: int = 1, limit: int = 20) -> list[dict]:
        where = "WHERE o.branch_id = %s"
        params: list[Any] = [branch_id]
        if status:
            where += " AND o.status = %s"
            params.append(status)
        rows = self.store.query(
            f"""
            SELECT
                o.*,
                c.first_name || ' ' || c.last_name AS customer_name,
                c.phone AS customer_phone
            FROM orders o
            LEFT JOIN customers c ON o.customer_id = c.id
            {where}
            ORDER BY o.created_at DESC, o.id DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params + [limit, (page - 1) * limit]),
        )
        return [
            dict(_order(r), customer_name=r.get("customer_name"), customer_phone=r.get("customer_phone"))
            for r in rows
        ]

    def get_order_stats(self, branch_id: Optional[int] = None, start_date: Any = None, end_date: Any = None) -> dict:
        where = "WHERE 1=1"
        params: list[Any] = []
        if branch_id:
            where += " AND branch_id = %s"
            params.append(branch_id)
        if start_date:
            where += " AND created_at >= %s"
            params.append(start_date)
        if end_date:
            where += " AND created_at <= %s"
            params.append(end_date)
        rows = self.store.query(
            f"""
            SELECT
                COUNT(*) AS total_orders,
                COALESCE(SUM(total_amount), 0) AS total_revenue,
                COALESCE(AVG(total_amount), 0) AS average_order_value,
                COUNT(CASE WHEN status = 'pending' THEN 1 END) AS pending_orders,
                COUNT(CASE WHEN status = 'confirmed' THEN 1 END) AS confirmed_orders,
                COUNT(CASE WHEN status = 'ready' THEN 1 END) AS ready_orders,
                COUNT(CASE WHEN status = 'completed' THEN 1 END) AS completed_orders,
                COUNT(CASE WHEN status = 'cancelled' THEN 1 END) AS cancelled_orders
            FROM orders
            {where}
            """,
            tuple(params),
        )
        stats = to_jsonable(rows[0])
        for key in ("total_orders", "pending_orders", "confirmed_orders", "ready_orders", "completed_orders", "cancelled_orders"):
            stats[key] = as_int(stats.get(key))
        return stats
