import re
import sqlite3
import threading
from datetime import date, datetime, time
from decimal import Decimal

import pytest

from agrivet import cache
from agrivet.auth import make_access_token

# SQLite rendition of db/schema.sql. Types are looser but the constraints the
# services depend on (unique order numbers, unique inventory pairs, the derived
# quantity_available column) are the same.
SQLITE_SCHEMA = """
CREATE TABLE staff (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    email TEXT UNIQUE,
    role TEXT NOT NULL DEFAULT 'staff',
    is_active BOOLEAN NOT NULL DEFAULT 1,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE branches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    code TEXT NOT NULL UNIQUE,
    address TEXT, city TEXT, province TEXT, postal_code TEXT, phone TEXT, email TEXT,
    manager_id INTEGER REFERENCES staff(id),
    operating_hours TEXT,
    branch_type TEXT NOT NULL DEFAULT 'satellite',
    is_active BOOLEAN NOT NULL DEFAULT 1,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE branch_operating_hours (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    branch_id INTEGER NOT NULL REFERENCES branches(id),
    day_of_week INTEGER NOT NULL,
    is_open BOOLEAN NOT NULL DEFAULT 1,
    open_time TEXT,
    close_time TEXT,
    UNIQUE (branch_id, day_of_week)
);
CREATE TABLE categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    parent_id INTEGER,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_active BOOLEAN NOT NULL DEFAULT 1,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sku TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    description TEXT,
    category_id INTEGER NOT NULL REFERENCES categories(id),
    brand TEXT, unit_of_measure TEXT, weight REAL,
    is_prescription_required BOOLEAN NOT NULL DEFAULT 0,
    is_active BOOLEAN NOT NULL DEFAULT 1,
    barcode TEXT, supplier_id INTEGER,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE product_variants (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id INTEGER NOT NULL REFERENCES products(id),
    sku TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    variant_type TEXT, variant_value TEXT,
    price REAL NOT NULL,
    cost REAL,
    is_active BOOLEAN NOT NULL DEFAULT 1,
    minimum_stock INTEGER NOT NULL DEFAULT 0,
    maximum_stock INTEGER,
    weight_per_unit REAL,
    requires_expiry_date BOOLEAN NOT NULL DEFAULT 0,
    requires_batch_tracking BOOLEAN NOT NULL DEFAULT 0,
    barcode TEXT, image_url TEXT,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE inventory (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_variant_id INTEGER NOT NULL REFERENCES product_variants(id),
    branch_id INTEGER NOT NULL REFERENCES branches(id),
    quantity_on_hand INTEGER NOT NULL DEFAULT 0,
    quantity_reserved INTEGER NOT NULL DEFAULT 0,
    quantity_available INTEGER GENERATED ALWAYS AS (quantity_on_hand - quantity_reserved) STORED,
    updated_at TEXT,
    UNIQUE (product_variant_id, branch_id)
);
CREATE TABLE customers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    email TEXT UNIQUE,
    phone TEXT,
    loyalty_points INTEGER NOT NULL DEFAULT 0,
    loyalty_tier TEXT NOT NULL DEFAULT 'bronze',
    total_spent REAL NOT NULL DEFAULT 0,
    total_lifetime_spent REAL NOT NULL DEFAULT 0,
    last_purchase_date TEXT,
    is_active BOOLEAN NOT NULL DEFAULT 1,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_number TEXT NOT NULL UNIQUE,
    customer_id INTEGER REFERENCES customers(id),
    branch_id INTEGER NOT NULL REFERENCES branches(id),
    status TEXT NOT NULL DEFAULT 'pending',
    subtotal REAL NOT NULL DEFAULT 0,
    tax_amount REAL NOT NULL DEFAULT 0,
    total_amount REAL NOT NULL DEFAULT 0,
    payment_method TEXT, payment_reference TEXT, payment_notes TEXT,
    estimated_ready_time TEXT,
    is_guest_order BOOLEAN NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE order_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER NOT NULL REFERENCES orders(id),
    product_variant_id INTEGER NOT NULL REFERENCES product_variants(id),
    quantity INTEGER NOT NULL CHECK (quantity >= 1),
    unit_price REAL NOT NULL DEFAULT 0,
    line_total REAL NOT NULL DEFAULT 0,
    weight REAL, expiry_date TEXT, batch_number TEXT, notes TEXT,
    created_at TEXT
);
CREATE TABLE promotions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    campaign_id INTEGER,
    name TEXT NOT NULL,
    code TEXT UNIQUE,
    type TEXT NOT NULL,
    discount_value REAL NOT NULL DEFAULT 0,
    minimum_amount REAL,
    maximum_discount REAL,
    usage_limit INTEGER,
    usage_count INTEGER NOT NULL DEFAULT 0,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    applies_to TEXT NOT NULL DEFAULT 'all',
    is_active BOOLEAN NOT NULL DEFAULT 1,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE promotion_branches (
    promotion_id INTEGER NOT NULL REFERENCES promotions(id),
    branch_id INTEGER NOT NULL REFERENCES branches(id),
    PRIMARY KEY (promotion_id, branch_id)
);
CREATE TABLE promotion_products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    promotion_id INTEGER NOT NULL REFERENCES promotions(id),
    product_id INTEGER REFERENCES products(id),
    category_id INTEGER REFERENCES categories(id)
);
CREATE TABLE promotion_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    promotion_id INTEGER NOT NULL REFERENCES promotions(id),
    customer_id INTEGER REFERENCES customers(id),
    order_id INTEGER REFERENCES orders(id),
    created_at TEXT
);
"""

TEST_SECRET = "test-secret"


class InjectedFault(Exception):
    pass


def _adapt(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return value


def _translate(sql: str) -> str:
    sql = re.sub(r"\s+FOR UPDATE\b", "", sql)
    sql = re.sub(r"\bILIKE\b", "LIKE", sql)
    return sql.replace("%s", "?")


class SQLiteStore:
    """In-memory stand-in for agrivet.db exposing ``query`` and ``transaction``.

    Every executed statement is appended to ``statements`` so tests can assert
    how many relational round trips a call made. ``fail_on(fragment, nth)``
    raises InjectedFault when the nth statement containing ``fragment`` runs.
    """

    def __init__(self) -> None:
        self.conn = sqlite3.connect(":memory:", isolation_level=None, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(SQLITE_SCHEMA)
        self._lock = threading.RLock()
        self.statements: list[str] = []
        self._fault = None

    def fail_on(self, fragment: str, nth: int = 1) -> None:
        self._fault = {"fragment": fragment, "nth": nth, "seen": 0}

    def reset_counts(self) -> None:
        self.statements.clear()

    def count(self, fragment: str = "") -> int:
        return sum(1 for s in self.statements if fragment in s)

    def _execute(self, sql: str, params=None) -> list[dict]:
        flat = " ".join(sql.split())
        if self._fault and self._fault["fragment"] in flat:
            self._fault["seen"] += 1
            if self._fault["seen"] == self._fault["nth"]:
                self._fault = None
                raise InjectedFault(f"injected failure on: {flat[:60]}")
        self.statements.append(flat)
        cur = self.conn.execute(_translate(sql), tuple(_adapt(p) for p in (params or ())))
        if cur.description is None:
            return []
        return [dict(r) for r in cur.fetchall()]

    def query(self, sql: str, params=None) -> list[dict]:
        with self._lock:
            return self._execute(sql, params)

    def transaction(self, fn):
        with self._lock:
            self.conn.execute("BEGIN")
            try:
                result = fn(_Client(self))
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")
            return result

    # -- fixtures helpers ----------------------------------------------------

    def insert(self, table: str, **values) -> dict:
        columns = ", ".join(values)
        placeholders = ", ".join(["?"] * len(values))
        cur = self.conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *",
            tuple(_adapt(v) for v in values.values()),
        )
        return dict(cur.fetchone())

    def one(self, sql: str, params=()) -> dict:
        row = self.conn.execute(_translate(sql), tuple(_adapt(p) for p in params)).fetchone()
        return dict(row) if row else None


class _Client:
    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    def query(self, sql: str, params=None) -> list[dict]:
        return self._store._execute(sql, params)


@pytest.fixture(autouse=True)
def memory_cache():
    backend = cache._MemoryBackend()
    previous = cache.use_backend(backend)
    yield backend
    cache.use_backend(previous)


@pytest.fixture
def store():
    s = SQLiteStore()
    yield s
    s.conn.close()


@pytest.fixture
def catalog(store):
    """Two branches, one category, two products with variants and stock at branch 1."""
    manager = store.insert("staff", first_name="Ana", last_name="Reyes", email="ana@example.com", role="manager")
    main = store.insert(
        "branches", name="Main Branch", code="MAIN", city="Lipa", branch_type="main",
        manager_id=manager["id"], operating_hours='{"1": {"open": "08:00", "close": "17:00"}}',
    )
    north = store.insert("branches", name="North Branch", code="NORTH", city="Tanauan")
    feeds = store.insert("categories", name="Animal Feeds", sort_order=1)
    meds = store.insert("categories", name="Veterinary Medicines", sort_order=2)
    feed = store.insert("products", sku="FEED-001", name="Hog Grower", category_id=feeds["id"], brand="B-Meg")
    med = store.insert("products", sku="MED-001", name="Dewormer", category_id=meds["id"], brand="Vetmed")
    feed_25 = store.insert(
        "product_variants", product_id=feed["id"], sku="FEED-001-25", name="Hog Grower 25kg",
        variant_value="25kg", price=1450.0, cost=1200.0,
    )
    feed_50 = store.insert(
        "product_variants", product_id=feed["id"], sku="FEED-001-50", name="Hog Grower 50kg",
        variant_value="50kg", price=2800.0, cost=2300.0,
    )
    dewormer = store.insert(
        "product_variants", product_id=med["id"], sku="MED-001-100", name="Dewormer 100ml",
        variant_value="100ml", price=350.0, cost=220.0,
    )
    for variant, qty in ((feed_25, 10), (feed_50, 0), (dewormer, 40)):
        store.insert("inventory", product_variant_id=variant["id"], branch_id=main["id"], quantity_on_hand=qty)
    store.insert("inventory", product_variant_id=dewormer["id"], branch_id=north["id"], quantity_on_hand=5)
    customer = store.insert("customers", first_name="Juan", last_name="Dela Cruz", email="juan@example.com", phone="0917")
    store.reset_counts()
    return {
        "manager": manager,
        "main": main,
        "north": north,
        "feeds": feeds,
        "meds": meds,
        "feed": feed,
        "feed_25": feed_25,
        "feed_50": feed_50,
        "dewormer": dewormer,
        "customer": customer,
    }


@pytest.fixture
def app(store):
    from agrivet.app import create_app

    flask_app = create_app(store=store)
    flask_app.config["TESTING"] = True
    flask_app.config["SECRET_KEY"] = TEST_SECRET
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    token = make_access_token({"sub": "1", "role": "admin"}, TEST_SECRET)
    return {"Authorization": f"Bearer {token}"}
