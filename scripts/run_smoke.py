"""Smoke test runner for the agri-vet API.
Verifies basic endpoints when the server is already running on localhost:5000.
Usage:
  source .venv/bin/activate && python scripts/run_smoke.py
Set SMOKE_BRANCH_ID / SMOKE_VARIANT_ID to ids present in the seeded DB.
SECRET_KEY must match the server's so the admin token validates.
"""
import json
import os

import requests
from dotenv import load_dotenv

from agrivet.auth import make_access_token

load_dotenv()
API_BASE = os.getenv("API_BASE", "http://localhost:5000")
BRANCH_ID = int(os.getenv("SMOKE_BRANCH_ID", "1"))
VARIANT_ID = int(os.getenv("SMOKE_VARIANT_ID", "1"))


def get(path: str, token: str | None = None):
    h = {"Accept": "application/json"}
    if token:
        h["Authorization"] = f"Bearer {token}"
    r = requests.get(f"{API_BASE}{path}", headers=h, timeout=15)
    try:
        data = r.json()
    except ValueError:
        data = {"raw": r.text}
    return r.status_code, data


def post(path: str, payload: dict, token: str | None = None):
    h = {"Content-Type": "application/json"}
    if token:
        h["Authorization"] = f"Bearer {token}"
    r = requests.post(f"{API_BASE}{path}", json=payload, headers=h, timeout=20)
    try:
        data = r.json()
    except ValueError:
        data = {"raw": r.text}
    return r.status_code, data


def main():
    results = []

    # 1. Health endpoint
    status, data = get("/health")
    results.append(("health", status, data))

    # 2. Branch list, twice; second call should be served from cache
    status, data = get("/api/branches")
    results.append(("branches", status, {"count": len(data.get("data") or [])}))
    status, _ = get("/api/branches")
    results.append(("branches_cached", status, {}))

    # 3. Product list page=1
    status, data = get(f"/api/products?branch_id={BRANCH_ID}&page=1&limit=5")
    pagination = (data.get("data") or {}).get("pagination") if isinstance(data, dict) else None
    results.append(("products", status, {"pagination": pagination}))

    # 4. Categories
    status, data = get("/api/products/categories")
    results.append(("categories", status, {"count": len(data.get("data") or [])}))

    # 5. Guest order then cancel
    status, data = post("/api/orders", {
        "branch_id": BRANCH_ID,
        "is_guest_order": True,
        "items": [{"product_variant_id": VARIANT_ID, "quantity": 1, "unit_price": 10, "line_total": 10}],
        "subtotal": 10,
        "tax_amount": 0,
        "total_amount": 10,
        "payment_method": "cash",
    })
    order = (data.get("data") or {}).get("order") or {}
    results.append(("create_order", status, {"order_number": order.get("order_number")}))
    if order.get("id"):
        status, data = post(f"/api/orders/{order['id']}/cancel", {})
        results.append(("cancel_order", status, {"status": (data.get("data") or {}).get("status")}))

    # 6. Admin-only write is rejected without a token, accepted with one
    status, _ = post("/api/products/categories", {"name": "Smoke"})
    results.append(("admin_write_unauth", 200 if status == 401 else status, {"status": status}))
    admin_token = make_access_token({"sub": "smoke", "role": "admin"}, os.getenv("SECRET_KEY", "dev-secret"))
    status, data = post("/api/products/categories", {"name": "Smoke", "sort_order": 999}, admin_token)
    category = data.get("data") or {}
    results.append(("admin_write", status, {"id": category.get("id")}))
    if category.get("id"):
        h = {"Authorization": f"Bearer {admin_token}"}
        r = requests.delete(f"{API_BASE}/api/products/categories/{category['id']}", headers=h, timeout=15)
        results.append(("admin_delete", r.status_code, {}))

    # 7. Cache counters
    status, data = get("/metrics")
    results.append(("metrics", status, data))

    # Summarize
    failures = []
    for name, status, info in results:
        ok = 200 <= status < 300
        print(f"\n{name}: status={status} info={json.dumps(info)}")
        if not ok:
            failures.append(name)

    print("\nSmoke Summary: PASS" if not failures else f"Smoke Summary: FAIL -> {failures}")
    if failures:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
