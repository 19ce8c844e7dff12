import pytest

from agrivet import cache
from agrivet.loyalty import points_for, tier_case_sql, tier_for
from agrivet.orders import InventoryNotFoundError, OrderService, OrderStateError
from agrivet.products import ProductService

from conftest import InjectedFault


@pytest.fixture
def service(store, catalog):
    return OrderService(store)


def _inventory(store, variant_id, branch_id):
    return store.one(
        "SELECT quantity_on_hand, quantity_reserved, quantity_available FROM inventory "
        "WHERE product_variant_id = ? AND branch_id = ?",
        (variant_id, branch_id),
    )


def _customer(store, customer_id):
    return store.one("SELECT * FROM customers WHERE id = ?", (customer_id,))


def _order_payload(catalog, items, total, customer=True, guest=False):
    payload = {
        "branch_id": catalog["main"]["id"],
        "items": items,
        "subtotal": total,
        "tax_amount": 0,
        "total_amount": total,
        "payment_method": "cash",
        "is_guest_order": guest,
    }
    if customer:
        payload["customer_id"] = catalog["customer"]["id"]
    return payload


def _item(variant, quantity, unit_price=100):
    return {
        "product_variant_id": variant["id"],
        "quantity": quantity,
        "unit_price": unit_price,
        "line_total": unit_price * quantity,
    }


# -- loyalty helpers ---------------------------------------------------------

@pytest.mark.parametrize(
    "spent,tier",
    [(0, "bronze"), (9999, "bronze"), (10000, "silver"), (24999.99, "silver"),
     (25000, "gold"), (49999, "gold"), (50000, "platinum")],
)
def test_tier_for_boundaries(spent, tier):
    assert tier_for(spent) == tier


def test_points_are_floored():
    assert points_for(1450) == 14
    assert points_for(99.99) == 0
    assert points_for("250.50") == 2


def test_tier_case_sql_repeats_placeholder_per_threshold():
    sql = tier_case_sql("x + %s")
    assert sql.count("%s") == 3
    assert sql.startswith("CASE WHEN x + %s >= 50000 THEN 'platinum'")
    assert sql.endswith("ELSE 'bronze' END")


# -- order numbers -----------------------------------------------------------

def test_order_numbers_are_sequential(service, catalog):
    numbers = [
        service.create_order(_order_payload(catalog, [_item(catalog["dewormer"], 1)], 350, customer=False, guest=True))["order"]["order_number"]
        for _ in range(3)
    ]
    assert numbers == ["ORD00000001", "ORD00000002", "ORD00000003"]


def test_order_number_continues_from_highest(service, store, catalog):
    store.insert("orders", order_number="ORD00000041", branch_id=catalog["main"]["id"])
    assert service.generate_order_number() == "ORD00000042"


def test_order_number_falls_back_to_timestamp(service, store):
    store.fail_on("MAX(CAST(SUBSTR(order_number")
    number = service.generate_order_number()
    assert number.startswith("ORD")
    assert len(number) == 11 and number[3:].isdigit()


# -- create ------------------------------------------------------------------

def test_create_order_reserves_stock_and_awards_loyalty(service, store, catalog):
    result = service.create_order(_order_payload(
        catalog, [_item(catalog["feed_25"], 2, 1450), _item(catalog["dewormer"], 3, 350)], 3950,
    ))
    order = result["order"]
    assert order["status"] == "pending"
    assert order["is_guest_order"] is False
    assert order["total_amount"] == 3950.0
    assert order["estimated_ready_time"]
    assert [i["quantity"] for i in result["items"]] == [2, 3]
    assert all(i["order_id"] == order["id"] for i in result["items"])

    assert _inventory(store, catalog["feed_25"]["id"], catalog["main"]["id"])["quantity_reserved"] == 2
    assert _inventory(store, catalog["dewormer"]["id"], catalog["main"]["id"])["quantity_available"] == 37

    customer = _customer(store, catalog["customer"]["id"])
    assert customer["loyalty_points"] == 39
    assert customer["total_spent"] == 3950
    assert customer["total_lifetime_spent"] == 3950
    assert customer["loyalty_tier"] == "bronze"
    assert customer["last_purchase_date"] is not None


def test_reservation_may_exceed_stock(service, store, catalog):
    service.create_order(_order_payload(catalog, [_item(catalog["feed_25"], 15)], 1500))
    row = _inventory(store, catalog["feed_25"]["id"], catalog["main"]["id"])
    assert row["quantity_reserved"] == 15
    assert row["quantity_available"] == -5


@pytest.mark.parametrize(
    "previous,amount,tier",
    [(9000, 999, "bronze"), (9000, 1000, "silver"), (20000, 5000, "gold"), (49000, 1000, "platinum")],
)
def test_tier_recomputed_on_lifetime_spend(service, store, catalog, previous, amount, tier):
    store.conn.execute(
        "UPDATE customers SET total_lifetime_spent = ? WHERE id = ?",
        (previous, catalog["customer"]["id"]),
    )
    service.create_order(_order_payload(catalog, [_item(catalog["dewormer"], 1)], amount))
    assert _customer(store, catalog["customer"]["id"])["loyalty_tier"] == tier


def test_guest_order_skips_loyalty(service, store, catalog):
    service.create_order(_order_payload(catalog, [_item(catalog["dewormer"], 1)], 20000, guest=True))
    customer = _customer(store, catalog["customer"]["id"])
    assert customer["loyalty_points"] == 0
    assert customer["total_spent"] == 0


def test_failure_on_second_reservation_rolls_everything_back(service, store, catalog):
    store.fail_on("UPDATE inventory", nth=2)
    payload = _order_payload(catalog, [
        _item(catalog["feed_25"], 1), _item(catalog["dewormer"], 1), _item(catalog["feed_50"], 1),
    ], 3000)

    with pytest.raises(InjectedFault):
        service.create_order(payload)

    assert store.one("SELECT COUNT(*) AS n FROM orders")["n"] == 0
    assert store.one("SELECT COUNT(*) AS n FROM order_items")["n"] == 0
    assert _inventory(store, catalog["feed_25"]["id"], catalog["main"]["id"])["quantity_reserved"] == 0
    assert _inventory(store, catalog["dewormer"]["id"], catalog["main"]["id"])["quantity_reserved"] == 0
    assert _customer(store, catalog["customer"]["id"])["loyalty_points"] == 0


def test_missing_inventory_row_aborts_order(service, store, catalog):
    payload = _order_payload(catalog, [_item(catalog["feed_25"], 1)], 100)
    payload["branch_id"] = catalog["north"]["id"]
    with pytest.raises(InventoryNotFoundError):
        service.create_order(payload)
    assert store.one("SELECT COUNT(*) AS n FROM orders")["n"] == 0


def test_empty_order_rejected(service):
    with pytest.raises(ValueError):
        service.create_order({"branch_id": 1, "items": []})


def test_create_invalidates_product_listings(service, store, catalog):
    products = ProductService(store)
    before = products.get_product_by_id(catalog["feed_25"]["id"], catalog["main"]["id"])
    assert before["inventory"]["quantity_available"] == 10

    service.create_order(_order_payload(catalog, [_item(catalog["feed_25"], 4)], 400))

    assert not cache.cache_exists(f"product:{catalog['feed_25']['id']}:{catalog['main']['id']}")
    after = products.get_product_by_id(catalog["feed_25"]["id"], catalog["main"]["id"])
    assert after["inventory"]["quantity_available"] == 6


# -- cancel ------------------------------------------------------------------

def test_cancel_releases_reservations_but_keeps_loyalty(service, store, catalog):
    created = service.create_order(_order_payload(catalog, [_item(catalog["feed_25"], 2), _item(catalog["dewormer"], 1)], 12000))
    cancelled = service.cancel_order(created["order"]["id"])

    assert cancelled["status"] == "cancelled"
    assert _inventory(store, catalog["feed_25"]["id"], catalog["main"]["id"])["quantity_reserved"] == 0
    assert _inventory(store, catalog["dewormer"]["id"], catalog["main"]["id"])["quantity_reserved"] == 0
    customer = _customer(store, catalog["customer"]["id"])
    assert customer["loyalty_points"] == 120
    assert customer["loyalty_tier"] == "silver"


def test_cancel_can_reverse_loyalty(store, catalog):
    service = OrderService(store, retain_loyalty_on_cancel=False)
    created = service.create_order(_order_payload(catalog, [_item(catalog["dewormer"], 1)], 12000))
    purchased_at = _customer(store, catalog["customer"]["id"])["last_purchase_date"]

    service.cancel_order(created["order"]["id"])

    customer = _customer(store, catalog["customer"]["id"])
    assert customer["loyalty_points"] == 0
    assert customer["total_spent"] == 0
    assert customer["total_lifetime_spent"] == 0
    assert customer["loyalty_tier"] == "bronze"
    assert customer["last_purchase_date"] == purchased_at


def test_cancel_twice_is_rejected(service, store, catalog):
    created = service.create_order(_order_payload(catalog, [_item(catalog["dewormer"], 2)], 700))
    service.cancel_order(created["order"]["id"])
    with pytest.raises(OrderStateError):
        service.cancel_order(created["order"]["id"])
    assert _inventory(store, catalog["dewormer"]["id"], catalog["main"]["id"])["quantity_reserved"] == 0


def test_cancel_missing_order(service):
    assert service.cancel_order(999) is None


def test_cancel_failure_rolls_back(service, store, catalog):
    created = service.create_order(_order_payload(catalog, [_item(catalog["feed_25"], 1), _item(catalog["dewormer"], 1)], 100))
    store.fail_on("UPDATE orders SET status = 'cancelled'")
    with pytest.raises(InjectedFault):
        service.cancel_order(created["order"]["id"])
    assert _inventory(store, catalog["feed_25"]["id"], catalog["main"]["id"])["quantity_reserved"] == 1
    assert service.get_by_id(created["order"]["id"])["status"] == "pending"


def test_guest_order_end_to_end(service, store, catalog):
    variant, branch = catalog["feed_25"], catalog["main"]
    assert _inventory(store, variant["id"], branch["id"])["quantity_on_hand"] == 10

    payload = _order_payload(catalog, [_item(variant, 3)], 300, customer=False, guest=True)
    created = service.create_order(payload)
    assert created["order"]["customer_id"] is None
    assert _inventory(store, variant["id"], branch["id"])["quantity_reserved"] == 3

    cancelled = service.cancel_order(created["order"]["id"])
    assert cancelled["status"] == "cancelled"
    row = _inventory(store, variant["id"], branch["id"])
    assert row["quantity_reserved"] == 0
    assert row["quantity_on_hand"] == 10


# -- reads and status --------------------------------------------------------

def test_get_by_id_and_number_include_items(service, catalog):
    created = service.create_order(_order_payload(catalog, [_item(catalog["dewormer"], 2, 350)], 700))
    order = service.get_by_id(created["order"]["id"])
    assert order["customer_name"] == "Juan Dela Cruz"
    assert order["branch_name"] == "Main Branch"
    assert order["items"][0]["product_name"] == "Dewormer 100ml"
    assert order["items"][0]["base_product_name"] == "Dewormer"
    assert service.get_by_order_number(created["order"]["order_number"])["id"] == order["id"]
    assert service.get_by_id(999) is None
    assert service.get_by_order_number("ORD99999999") is None


def test_update_status(service, store, catalog):
    created = service.create_order(_order_payload(catalog, [_item(catalog["dewormer"], 2)], 700))
    order_id = created["order"]["id"]
    assert service.update_status(order_id, "confirmed")["status"] == "confirmed"
    with pytest.raises(ValueError):
        service.update_status(order_id, "shipped")

    assert service.update_status(order_id, "cancelled")["status"] == "cancelled"
    assert _inventory(store, catalog["dewormer"]["id"], catalog["main"]["id"])["quantity_reserved"] == 0
    with pytest.raises(OrderStateError):
        service.update_status(order_id, "ready")
    assert service.update_status(999, "ready") is None


def test_listing_and_stats(service, catalog):
    first = service.create_order(_order_payload(catalog, [_item(catalog["dewormer"], 1)], 100))
    service.create_order(_order_payload(catalog, [_item(catalog["dewormer"], 1)], 300))
    service.cancel_order(first["order"]["id"])

    by_customer = service.get_by_customer(catalog["customer"]["id"])
    assert [o["order_number"] for o in by_customer] == ["ORD00000002", "ORD00000001"]
    assert by_customer[0]["branch_name"] == "Main Branch"

    pending = service.get_by_branch(catalog["main"]["id"], status="pending")
    assert [o["order_number"] for o in pending] == ["ORD00000002"]
    assert pending[0]["customer_name"] == "Juan Dela Cruz"

    stats = service.get_order_stats(catalog["main"]["id"])
    assert stats["total_orders"] == 2
    assert stats["total_revenue"] == 400
    assert stats["pending_orders"] == 1
    assert stats["cancelled_orders"] == 1
