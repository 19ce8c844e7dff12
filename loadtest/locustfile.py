"""Locust load test for the agri-vet storefront API

Simulates concurrent shoppers performing:
1. Branch list / availability (cached)
2. Product browsing, first page and search (cached per filter set)
3. Product detail (cached per variant/branch)
4. Guest order placement (transactional write, invalidates product caches)

Environment variables:
- BASE_URL (default http://localhost:5000)
- BRANCH_ID (default 1)
- PRODUCT_SEARCH_TERM (default 'feed')
- ORDER_VARIANT_ID (must have an inventory row at BRANCH_ID; default 1)

Run:
  locust -f loadtest/locustfile.py --users 50 --spawn-rate 5

Prereq: seed data via db/generate_scale_data.py.
"""
import os
import random

from locust import HttpUser, between, task

BASE_URL = os.getenv("BASE_URL", "http://localhost:5000")
BRANCH_ID = int(os.getenv("BRANCH_ID", "1"))
PRODUCT_SEARCH_TERM = os.getenv("PRODUCT_SEARCH_TERM", "feed")
ORDER_VARIANT_ID = int(os.getenv("ORDER_VARIANT_ID", "1"))


class Shopper(HttpUser):
    wait_time = between(1, 3)

    @task(2)
    def list_branches(self):
        self.client.get(f"{BASE_URL}/api/branches")

    @task(1)
    def branch_availability(self):
        self.client.get(f"{BASE_URL}/api/branches/availability")

    @task(4)
    def list_products(self):
        page = random.randint(1, 3)
        self.client.get(
            f"{BASE_URL}/api/products?branch_id={BRANCH_ID}&page={page}&limit=20",
            name="/api/products?page=[n]",
        )

    @task(2)
    def search_products(self):
        self.client.get(
            f"{BASE_URL}/api/products?branch_id={BRANCH_ID}&page=1&limit=20&search={PRODUCT_SEARCH_TERM}",
            name="/api/products?search=[term]",
        )

    @task(2)
    def product_detail(self):
        self.client.get(
            f"{BASE_URL}/api/products/{ORDER_VARIANT_ID}?branch_id={BRANCH_ID}",
            name="/api/products/[id]",
        )

    @task(1)
    def place_guest_order(self):
        qty = random.randint(1, 3)
        with self.client.post(
            f"{BASE_URL}/api/orders",
            json={
                "branch_id": BRANCH_ID,
                "is_guest_order": True,
                "items": [{"product_variant_id": ORDER_VARIANT_ID, "quantity": qty, "unit_price": 100, "line_total": 100 * qty}],
                "subtotal": 100 * qty,
                "tax_amount": 0,
                "total_amount": 100 * qty,
                "payment_method": "cash",
            },
            catch_response=True,
        ) as resp:
            # Duplicate order numbers under contention surface as 500s; count them
            if resp.status_code != 201:
                resp.failure(f"order failed {resp.status_code}")
