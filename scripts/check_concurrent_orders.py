"""Fire concurrent orders at one variant/branch and check the reservation total.

Every successful order must add exactly its quantity to
inventory.quantity_reserved; failed orders (for example a duplicate order
number under contention) must add nothing.

Usage:
  python scripts/check_concurrent_orders.py   (server running, DATABASE_URL set)
"""
import os
import threading
from dataclasses import dataclass

import psycopg
import requests
from dotenv import load_dotenv

API_BASE = os.getenv("API_BASE", "http://localhost:5000")
NUM_THREADS = int(os.getenv("CONCURRENCY_THREADS", 10))
ORDER_QTY = int(os.getenv("CONCURRENCY_ORDER_QTY", 2))
REQUEST_TIMEOUT = float(os.getenv("CONCURRENCY_TIMEOUT", 15))


@dataclass
class Target:
    variant_id: int
    branch_id: int
    reserved_before: int


def find_target(conn) -> Target:
    """Pick the first inventory row; orders are placed against it as guest orders."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT product_variant_id, branch_id, quantity_reserved
            FROM inventory
            ORDER BY branch_id, product_variant_id
            LIMIT 1
            """
        )
        row = cur.fetchone()
        if not row:
            raise RuntimeError("No inventory rows found; seed data first.")
        return Target(variant_id=int(row[0]), branch_id=int(row[1]), reserved_before=int(row[2]))


def reserved_now(conn, target: Target) -> int:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT quantity_reserved FROM inventory WHERE product_variant_id = %s AND branch_id = %s",
            (target.variant_id, target.branch_id),
        )
        return int(cur.fetchone()[0])


def place_order(target: Target, results: list, index: int, start_barrier: threading.Barrier):
    start_barrier.wait()
    try:
        resp = requests.post(
            f"{API_BASE}/api/orders",
            json={
                "branch_id": target.branch_id,
                "is_guest_order": True,
                "items": [{"product_variant_id": target.variant_id, "quantity": ORDER_QTY}],
                "subtotal": 0,
                "tax_amount": 0,
                "total_amount": 0,
            },
            timeout=REQUEST_TIMEOUT,
        )
        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text}
        results[index] = {"status": resp.status_code, "data": data}
    except requests.RequestException as e:
        results[index] = {"status": None, "error": str(e)}


def main():
    load_dotenv()
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL not set in environment")

    with psycopg.connect(database_url) as conn:
        target = find_target(conn)
    print(
        f"Using variant={target.variant_id} branch={target.branch_id} "
        f"reserved={target.reserved_before}; each thread orders {ORDER_QTY}."
    )

    results = [None] * NUM_THREADS
    start_barrier = threading.Barrier(NUM_THREADS)
    threads = [
        threading.Thread(target=place_order, args=(target, results, i, start_barrier))
        for i in range(NUM_THREADS)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    success = sum(1 for r in results if r and r.get("status") == 201)
    failed = [r for r in results if not r or r.get("status") != 201]

    print("\nResults per thread:")
    for i, r in enumerate(results):
        status = r.get("status") if r else None
        number = (((r or {}).get("data") or {}).get("data") or {}).get("order", {}).get("order_number")
        print(f"Thread {i+1:02d}: status={status} order_number={number}")

    with psycopg.connect(database_url) as conn:
        after = reserved_now(conn, target)
    expected = target.reserved_before + success * ORDER_QTY

    print(f"\nSummary: success={success}, failed={len(failed)}, reserved {target.reserved_before} -> {after}")
    if after == expected:
        print("Check PASS: reservations match committed orders.")
    else:
        print(f"Check FAIL: expected reserved={expected}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
