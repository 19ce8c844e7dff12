import json
import logging
import math
from typing import Any, Optional

from . import db
from .cache import cache_delete, cache_delete_pattern, cache_memo
from .config import get_config
from .serialize import as_float, as_int, pick
from .sqlutil import build_update, soft_delete_sql, utcnow

logger = logging.getLogger(__name__)

CATEGORIES_KEY = "categories:all"

PRODUCT_FIELDS = (
    "id", "sku", "name", "description", "category_id", "brand", "unit_of_measure",
    "weight", "is_prescription_required", "is_active", "barcode", "supplier_id",
    "created_at", "updated_at",
)
VARIANT_FIELDS = (
    "id", "product_id", "sku", "name", "variant_type", "variant_value", "price",
    "cost", "is_active", "minimum_stock", "maximum_stock", "weight_per_unit",
    "requires_expiry_date", "requires_batch_tracking", "barcode", "image_url",
    "created_at", "updated_at",
)
CATEGORY_FIELDS = ("id", "name", "description", "parent_id", "sort_order", "is_active", "created_at")

PRODUCT_UPDATABLE = tuple(f for f in PRODUCT_FIELDS if f not in ("id", "created_at", "updated_at"))
VARIANT_UPDATABLE = tuple(f for f in VARIANT_FIELDS if f not in ("id", "created_at", "updated_at"))
CATEGORY_UPDATABLE = ("name", "description", "parent_id", "sort_order", "is_active")

# Filters recognised by get_products, in the order their clauses are emitted
FILTER_KEYS = ("category", "price_min", "price_max", "search_query", "in_stock")

_CATALOG_SELECT = """
    SELECT
        pv.*,
        p.name AS product_name,
        p.description AS product_description,
        p.brand,
        p.unit_of_measure AS product_unit,
        p.category_id,
        c.name AS category_name,
        c.description AS category_description,
        i.quantity_available,
        i.quantity_on_hand,
        i.quantity_reserved
    FROM product_variants pv
    JOIN products p ON pv.product_id = p.id
    JOIN categories c ON p.category_id = c.id
    JOIN inventory i ON pv.id = i.product_variant_id
"""


def invalidate_catalog() -> None:
    """Drop every cached product listing, product lookup and the category list."""
    cache_delete_pattern("products:*")
    cache_delete_pattern("product:*")
    cache_delete(CATEGORIES_KEY)
    logger.info("Product cache cleared")


def product_key(variant_id: Any, branch_id: Any) -> str:
    return f"product:{variant_id}:{branch_id}"


def products_key(branch_id: Any, filters: dict, page: int, limit: int) -> str:
    filters_json = json.dumps(filters, sort_keys=True, separators=(",", ":"))
    return f"products:{branch_id}:{filters_json}:{page}:{limit}"


def normalize_filters(filters: Optional[dict]) -> dict:
    """Drop unknown keys and unset values so equivalent requests share a key."""
    filters = filters or {}
    return {k: filters[k] for k in FILTER_KEYS if filters.get(k) is not None and filters.get(k) != ""}


def _catalog_item(row: dict) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "sku": row["sku"],
        "price": as_float(row.get("price")),
        "cost": as_float(row.get("cost")),
        "weight_kg": as_float(row.get("weight_per_unit")),
        "unit_of_measure": row.get("variant_value"),
        "is_active": bool(row.get("is_active")),
        "image_url": row.get("image_url"),
        "products": {
            "id": row["product_id"],
            "name": row.get("product_name"),
            "description": row.get("product_description"),
            "brand": row.get("brand"),
            "unit_of_measure": row.get("product_unit"),
            "categories": {
                "id": row.get("category_id"),
                "name": row.get("category_name"),
                "description": row.get("category_description"),
            },
        },
        "inventory": {
            "quantity_available": as_int(row.get("quantity_available")),
            "quantity_on_hand": as_int(row.get("quantity_on_hand")),
            "quantity_reserved": as_int(row.get("quantity_reserved")),
        },
    }


class ProductService:
    """Product catalog reads (cached per branch/filter/page) and catalog writes.

    Every write ends with ``clear_cache`` which drops all product listings,
    single product lookups and the category list.
    """

    def __init__(self, store=None) -> None:
        self.store = store or db
        cfg = get_config()
        self.ttl = cfg.CACHE_TTL_PRODUCTS
        self.categories_ttl = cfg.CACHE_TTL_CATEGORIES

    # -- reads -------------------------------------------------------------

    def get_products(self, branch_id: int, filters: Optional[dict] = None, page: int = 1, limit: int = 20) -> dict:
        filters = normalize_filters(filters)
        return cache_memo(
            products_key(branch_id, filters, page, limit),
            self.ttl,
            lambda: self._load_products(branch_id, filters, page, limit),
        )

    def _load_products(self, branch_id: int, filters: dict, page: int, limit: int) -> dict:
        conditions = [
            "pv.is_active = true",
            "p.is_active = true",
            "c.is_active = true",
            "i.branch_id = %s",
        ]
        params: list[Any] = [branch_id]
        if "category" in filters:
            conditions.append("p.category_id = %s")
            params.append(filters["category"])
        if "price_min" in filters:
            conditions.append("pv.price >= %s")
            params.append(filters["price_min"])
        if "price_max" in filters:
            conditions.append("pv.price <= %s")
            params.append(filters["price_max"])
        if "search_query" in filters:
            like = f"%{filters['search_query']}%"
            conditions.append("(pv.name ILIKE %s OR p.name ILIKE %s OR pv.sku ILIKE %s)")
            params.extend([like, like, like])
        # Listings show in-stock variants unless in_stock=False asks for the opposite
        if filters.get("in_stock", True):
            conditions.append("i.quantity_available > 0")
        else:
            conditions.append("i.quantity_available <= 0")
        where_sql = " AND ".join(conditions)

        count_rows = self.store.query(
            f"""
            SELECT COUNT(*) AS total
            FROM product_variants pv
            JOIN products p ON pv.product_id = p.id
            JOIN categories c ON p.category_id = c.id
            JOIN inventory i ON pv.id = i.product_variant_id
            WHERE {where_sql}
            """,
            tuple(params),
        )
        total = as_int(count_rows[0]["total"]) if count_rows else 0

        offset = (page - 1) * limit
        rows = self.store.query(
            _CATALOG_SELECT + f" WHERE {where_sql} ORDER BY pv.name LIMIT %s OFFSET %s",
            tuple(params + [limit, offset]),
        )
        return {
            "data": [_catalog_item(r) for r in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if limit > 0 else 0,
            },
        }

    def get_product_by_id(self, variant_id: int, branch_id: int) -> Optional[dict]:
        def load():
            rows = self.store.query(
                _CATALOG_SELECT + " WHERE pv.id = %s AND i.branch_id = %s AND pv.is_active = true",
                (variant_id, branch_id),
            )
            return _catalog_item(rows[0]) if rows else None

        return cache_memo(product_key(variant_id, branch_id), self.ttl, load)

    def get_categories(self) -> list[dict]:
        def load():
            rows = self.store.query("SELECT * FROM categories WHERE is_active = true ORDER BY sort_order, name")
            return [pick(r, CATEGORY_FIELDS) for r in rows]

        return cache_memo(CATEGORIES_KEY, self.categories_ttl, load)

    def search_products(self, term: str, branch_id: int, limit: int = 10) -> list[dict]:
        like = f"%{term}%"
        rows = self.store.query(
            """
            SELECT
                pv.id, pv.name, pv.sku, pv.price, pv.image_url,
                p.name AS product_name,
                c.name AS category_name,
                i.quantity_available
            FROM product_variants pv
            JOIN products p ON pv.product_id = p.id
            JOIN categories c ON p.category_id = c.id
            JOIN inventory i ON pv.id = i.product_variant_id
            WHERE i.branch_id = %s
              AND pv.is_active = true
              AND p.is_active = true
              AND (pv.name ILIKE %s OR p.name ILIKE %s OR pv.sku ILIKE %s)
              AND i.quantity_available > 0
            ORDER BY pv.name
            LIMIT %s
            """,
            (branch_id, like, like, like, limit),
        )
        return [
            {
                "id": r["id"],
                "name": r["name"],
                "sku": r["sku"],
                "price": as_float(r["price"]),
                "image_url": r["image_url"],
                "product_name": r["product_name"],
                "category_name": r["category_name"],
                "quantity_available": as_int(r["quantity_available"]),
            }
            for r in rows
        ]

    def check_availability(self, variant_id: int, branch_id: int, quantity: int = 1) -> bool:
        rows = self.store.query(
            "SELECT quantity_available FROM inventory WHERE product_variant_id = %s AND branch_id = %s",
            (variant_id, branch_id),
        )
        if not rows:
            return False
        return as_int(rows[0]["quantity_available"]) >= quantity

    # -- writes ------------------------------------------------------------

    def _insert(self, table: str, fields: tuple, data: dict) -> dict:
        columns = [f for f in fields if f in data]
        now = utcnow()
        values = [data[f] for f in columns] + [now, now]
        placeholders = ", ".join(["%s"] * len(values))
        rows = self.store.query(
            f"INSERT INTO {table} ({', '.join(columns + ['created_at', 'updated_at'])}) "
            f"VALUES ({placeholders}) RETURNING *",
            tuple(values),
        )
        self.clear_cache()
        return rows[0]

    def _update(self, table: str, fields: tuple, row_id: int, data: dict) -> Optional[dict]:
        sql, params = build_update(table, data, fields, row_id)
        rows = self.store.query(sql, params)
        if not rows:
            return None
        self.clear_cache()
        return rows[0]

    def _soft_delete(self, table: str, row_id: int) -> Optional[dict]:
        rows = self.store.query(soft_delete_sql(table), (utcnow(), row_id))
        if not rows:
            return None
        self.clear_cache()
        return rows[0]

    def create_product(self, data: dict) -> dict:
        return pick(self._insert("products", PRODUCT_UPDATABLE, data), PRODUCT_FIELDS)

    def update_product(self, product_id: int, data: dict) -> Optional[dict]:
        row = self._update("products", PRODUCT_UPDATABLE, product_id, data)
        return pick(row, PRODUCT_FIELDS) if row else None

    def delete_product(self, product_id: int) -> Optional[dict]:
        row = self._soft_delete("products", product_id)
        return pick(row, PRODUCT_FIELDS) if row else None

    def create_variant(self, data: dict) -> dict:
        return pick(self._insert("product_variants", VARIANT_UPDATABLE, data), VARIANT_FIELDS)

    def update_variant(self, variant_id: int, data: dict) -> Optional[dict]:
        row = self._update("product_variants", VARIANT_UPDATABLE, variant_id, data)
        return pick(row, VARIANT_FIELDS) if row else None

    def delete_variant(self, variant_id: int) -> Optional[dict]:
        row = self._soft_delete("product_variants", variant_id)
        return pick(row, VARIANT_FIELDS) if row else None

    def create_category(self, data: dict) -> dict:
        return pick(self._insert("categories", CATEGORY_UPDATABLE, data), CATEGORY_FIELDS)

    def update_category(self, category_id: int, data: dict) -> Optional[dict]:
        row = self._update("categories", CATEGORY_UPDATABLE, category_id, data)
        return pick(row, CATEGORY_FIELDS) if row else None

    def delete_category(self, category_id: int) -> Optional[dict]:
        row = self._soft_delete("categories", category_id)
        return pick(row, CATEGORY_FIELDS) if row else None

    def set_stock(self, variant_id: int, branch_id: int, quantity_on_hand: int) -> dict:
        """Set on-hand stock for a variant at a branch, creating the row if needed."""
        if quantity_on_hand < 0:
            raise ValueError("quantity_on_hand must be >= 0")
        rows = self.store.query(
            """
            INSERT INTO inventory (product_variant_id, branch_id, quantity_on_hand, quantity_reserved, updated_at)
            VALUES (%s, %s, %s, 0, %s)
            ON CONFLICT (product_variant_id, branch_id)
            DO UPDATE SET quantity_on_hand = EXCLUDED.quantity_on_hand, updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            (variant_id, branch_id, quantity_on_hand, utcnow()),
        )
        self.clear_cache()
        row = rows[0]
        return {
            "product_variant_id": row["product_variant_id"],
            "branch_id": row["branch_id"],
            "quantity_on_hand": as_int(row["quantity_on_hand"]),
            "quantity_reserved": as_int(row["quantity_reserved"]),
            "quantity_available": as_int(row["quantity_available"]),
        }

    def clear_cache(self) -> None:
        invalidate_catalog()
