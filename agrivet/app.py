import logging
import os
import time
import traceback
from typing import Any

from flask import Flask, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from . import db
from .auth import requires_auth
from .branches import BranchService
from .cache import cache_metrics
from .config import get_config
from .orders import ORDER_STATUSES, OrderService, OrderStateError
from .products import ProductService
from .promotions import PromotionService

# SQLSTATE codes from constraint violations mapped to client errors
_SQLSTATE_STATUS = {
    "23505": (409, "Duplicate entry"),
    "23503": (400, "Referenced record does not exist"),
    "23502": (400, "Missing required field"),
}


def _ok(data: Any, message: str, status: int = 200):
    return jsonify({"success": True, "data": data, "message": message}), status


def _fail(message: str, status: int, error: str | None = None, **extra):
    body: dict[str, Any] = {"success": False, "message": message}
    if error is not None:
        body["error"] = error
    body.update(extra)
    return jsonify(body), status


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _bool_arg(name: str):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return raw.lower() in ("1", "true", "yes")


def _page_args(default_limit: int) -> tuple[int, int]:
    page = request.args.get("page", default=1, type=int) or 1
    limit = request.args.get("limit", default=default_limit, type=int) or default_limit
    if page <= 0:
        page = 1
    if limit <= 0 or limit > 200:
        limit = default_limit
    return page, limit


def validate_order_payload(data: dict) -> list[dict]:
    errors = []
    if not data.get("branch_id"):
        errors.append({"field": "branch_id", "message": "branch_id is required"})
    items = data.get("items")
    if not isinstance(items, list) or not items:
        errors.append({"field": "items", "message": "items must be a non-empty list"})
        return errors
    for idx, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("product_variant_id"):
            errors.append({"field": f"items.{idx}.product_variant_id", "message": "product_variant_id is required"})
            continue
        qty = item.get("quantity")
        if not isinstance(qty, int) or isinstance(qty, bool) or qty < 1:
            errors.append({"field": f"items.{idx}.quantity", "message": "quantity must be an integer >= 1"})
    if data.get("customer_id") is None and data.get("is_guest_order") is False:
        errors.append({"field": "customer_id", "message": "customer_id is required for non-guest orders"})
    return errors


def create_app(store=None) -> Flask:
    cfg = get_config()
    logging.basicConfig(
        level=getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.config["SECRET_KEY"] = cfg.SECRET_KEY
    app.config["ENV_NAME"] = cfg.ENV
    CORS(app, resources={r"/*": {"origins": cfg.CORS_ORIGINS}})

    if store is None:
        # In dev without DB, health still works
        try:
            db.init_pool()
        except Exception:
            app.logger.warning("Database pool initialization failed; continuing without DB", exc_info=True)
        store = db

    branches = BranchService(store)
    products = ProductService(store)
    promotions = PromotionService(store)
    orders = OrderService(store)
    app.extensions["agrivet"] = {
        "store": store,
        "branches": branches,
        "products": products,
        "promotions": promotions,
        "orders": orders,
    }

    # Observability: optional timing middleware controlled by LOG_TIMING=1
    if os.getenv("LOG_TIMING") == "1":
        slow_request_ms = int(os.getenv("SLOW_REQUEST_MS", "500"))
        slow_db_ms = int(os.getenv("SLOW_DB_MS", "400"))

        @app.before_request
        def _timing_start():
            g._req_start = time.perf_counter()
            g.db_time_ms = 0.0

        @app.after_request
        def _timing_end(resp):
            start = getattr(g, "_req_start", None)
            if start is None:
                return resp
            dur_ms = (time.perf_counter() - start) * 1000.0
            db_ms = float(getattr(g, "db_time_ms", 0.0) or 0.0)
            resp.headers["X-Request-Duration"] = f"{dur_ms:.2f}ms"
            resp.headers["X-DB-Time"] = f"{db_ms:.2f}ms"
            resp.headers["Server-Timing"] = f"app;dur={dur_ms:.2f}, db;dur={db_ms:.2f}"
            if dur_ms >= slow_request_ms:
                app.logger.warning(
                    "SLOW_REQUEST method=%s path=%s status=%s dur_ms=%.2f db_ms=%.2f",
                    request.method, request.path, resp.status_code, dur_ms, db_ms,
                )
            if db_ms >= slow_db_ms:
                app.logger.warning(
                    "SLOW_DB method=%s path=%s status=%s db_ms=%.2f total_ms=%.2f",
                    request.method, request.path, resp.status_code, db_ms, dur_ms,
                )
            return resp

    def _debug_stack() -> dict:
        # Only meaningful while an exception is being handled
        return {} if cfg.is_production else {"stack": traceback.format_exc()}

    @app.errorhandler(Exception)
    def handle_error(e):
        if isinstance(e, HTTPException):
            return _fail(e.description or e.name, e.code or 500)
        extra = _debug_stack()
        sqlstate = getattr(e, "sqlstate", None)
        if sqlstate in _SQLSTATE_STATUS:
            status, message = _SQLSTATE_STATUS[sqlstate]
            app.logger.warning("constraint violation sqlstate=%s path=%s: %s", sqlstate, request.path, e)
            return _fail(message, status, str(e))
        if isinstance(e, OrderStateError):
            return _fail("Invalid order state", 409, str(e))
        if isinstance(e, (ValueError, LookupError)):
            return _fail(str(e), 400, str(e))
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return _fail("Internal server error", 500, str(e), **extra)

    @app.get("/health")
    def health():
        try:
            store.query("SELECT 1 AS ok")
            db_ok = True
        except Exception:
            db_ok = False
        resp = jsonify({"status": "ok", "db": db_ok})
        resp.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return resp

    @app.get("/metrics")
    def metrics():
        m = {"cache": cache_metrics()}
        if os.getenv("METRICS_PROMETHEUS") == "1":
            lines = [f"app_cache_{name}_total {value}" for name, value in m["cache"].items()]
            return ("\n".join(lines) + "\n", 200, {"Content-Type": "text/plain; version=0.0.4"})
        return jsonify(m)

    # -- branches ------------------------------------------------------------

    @app.get("/api/branches")
    def list_branches():
        return _ok(branches.get_all(), "Branches retrieved successfully")

    @app.get("/api/branches/availability")
    def branch_availability():
        return _ok(branches.get_branch_availability(), "Branch availability retrieved successfully")

    @app.get("/api/branches/<int:branch_id>")
    def get_branch(branch_id: int):
        branch = branches.get_by_id(branch_id)
        if not branch:
            return _fail("Branch not found", 404)
        return _ok(branch, "Branch retrieved successfully")

    @app.get("/api/branches/code/<code>")
    def get_branch_by_code(code: str):
        branch = branches.get_by_code(code)
        if not branch:
            return _fail("Branch not found", 404)
        return _ok(branch, "Branch retrieved successfully")

    @app.get("/api/branches/<int:branch_id>/hours")
    def branch_hours(branch_id: int):
        return _ok(branches.get_operating_hours(branch_id), "Branch operating hours retrieved successfully")

    @app.get("/api/branches/<int:branch_id>/open")
    def branch_open(branch_id: int):
        return _ok({"is_open": branches.is_branch_open(branch_id)}, "Branch status retrieved successfully")

    @app.post("/api/branches")
    @requires_auth(role="admin")
    def create_branch():
        return _ok(branches.create(_json_body()), "Branch created successfully", 201)

    @app.put("/api/branches/<int:branch_id>")
    @requires_auth(role="admin")
    def update_branch(branch_id: int):
        branch = branches.update(branch_id, _json_body())
        if not branch:
            return _fail("Branch not found", 404)
        return _ok(branch, "Branch updated successfully")

    @app.delete("/api/branches/<int:branch_id>")
    @requires_auth(role="admin")
    def delete_branch(branch_id: int):
        branch = branches.delete(branch_id)
        if not branch:
            return _fail("Branch not found", 404)
        return _ok(branch, "Branch deleted successfully")

    # -- products ------------------------------------------------------------

    @app.get("/api/products")
    def list_products():
        branch_id = request.args.get("branch_id", type=int)
        if not branch_id:
            return _fail("branch_id is required", 400)
        page, limit = _page_args(20)
        filters = {
            "category": request.args.get("category", type=int),
            "price_min": request.args.get("price_min", type=float),
            "price_max": request.args.get("price_max", type=float),
            "search_query": (request.args.get("search") or "").strip() or None,
            "in_stock": _bool_arg("in_stock"),
        }
        return _ok(products.get_products(branch_id, filters, page, limit), "Products retrieved successfully")

    @app.get("/api/products/search")
    def search_products():
        term = (request.args.get("q") or "").strip()
        branch_id = request.args.get("branch_id", type=int)
        if not term or not branch_id:
            return _fail("q and branch_id are required", 400)
        limit = request.args.get("limit", default=10, type=int)
        return _ok(products.search_products(term, branch_id, limit), "Search completed successfully")

    @app.get("/api/products/categories")
    def list_categories():
        return _ok(products.get_categories(), "Categories retrieved successfully")

    @app.get("/api/products/<int:variant_id>")
    def get_product(variant_id: int):
        branch_id = request.args.get("branch_id", type=int)
        if not branch_id:
            return _fail("branch_id is required", 400)
        product = products.get_product_by_id(variant_id, branch_id)
        if not product:
            return _fail("Product not found", 404)
        return _ok(product, "Product retrieved successfully")

    @app.get("/api/products/<int:variant_id>/availability")
    def product_availability(variant_id: int):
        branch_id = request.args.get("branch_id", type=int)
        quantity = request.args.get("quantity", default=1, type=int)
        if not branch_id:
            return _fail("branch_id is required", 400)
        available = products.check_availability(variant_id, branch_id, quantity)
        return _ok({"available": available}, "Availability checked successfully")

    @app.post("/api/products")
    @requires_auth(role="admin")
    def create_product():
        return _ok(products.create_product(_json_body()), "Product created successfully", 201)

    @app.put("/api/products/<int:product_id>")
    @requires_auth(role="admin")
    def update_product(product_id: int):
        product = products.update_product(product_id, _json_body())
        if not product:
            return _fail("Product not found", 404)
        return _ok(product, "Product updated successfully")

    @app.delete("/api/products/<int:product_id>")
    @requires_auth(role="admin")
    def delete_product(product_id: int):
        product = products.delete_product(product_id)
        if not product:
            return _fail("Product not found", 404)
        return _ok(product, "Product deleted successfully")

    @app.post("/api/products/variants")
    @requires_auth(role="admin")
    def create_variant():
        return _ok(products.create_variant(_json_body()), "Variant created successfully", 201)

    @app.put("/api/products/variants/<int:variant_id>")
    @requires_auth(role="admin")
    def update_variant(variant_id: int):
        variant = products.update_variant(variant_id, _json_body())
        if not variant:
            return _fail("Variant not found", 404)
        return _ok(variant, "Variant updated successfully")

    @app.delete("/api/products/variants/<int:variant_id>")
    @requires_auth(role="admin")
    def delete_variant(variant_id: int):
        variant = products.delete_variant(variant_id)
        if not variant:
            return _fail("Variant not found", 404)
        return _ok(variant, "Variant deleted successfully")

    @app.post("/api/products/categories")
    @requires_auth(role="admin")
    def create_category():
        return _ok(products.create_category(_json_body()), "Category created successfully", 201)

    @app.put("/api/products/categories/<int:category_id>")
    @requires_auth(role="admin")
    def update_category(category_id: int):
        category = products.update_category(category_id, _json_body())
        if not category:
            return _fail("Category not found", 404)
        return _ok(category, "Category updated successfully")

    @app.delete("/api/products/categories/<int:category_id>")
    @requires_auth(role="admin")
    def delete_category(category_id: int):
        category = products.delete_category(category_id)
        if not category:
            return _fail("Category not found", 404)
        return _ok(category, "Category deleted successfully")

    @app.put("/api/products/inventory")
    @requires_auth(role="admin")
    def set_stock():
        data = _json_body()
        try:
            variant_id = int(data["product_variant_id"])
            branch_id = int(data["branch_id"])
            quantity = int(data["quantity_on_hand"])
        except (KeyError, TypeError, ValueError):
            return _fail("product_variant_id, branch_id and quantity_on_hand are required", 400)
        return _ok(products.set_stock(variant_id, branch_id, quantity), "Inventory updated successfully")

    # -- promotions ----------------------------------------------------------

    @app.get("/api/promotions/active")
    def active_promotions():
        branch_id = request.args.get("branch_id", type=int)
        return _ok(promotions.get_active_promotions(branch_id), "Active promotions retrieved successfully")

    @app.get("/api/promotions/banners")
    def banner_promotions():
        branch_id = request.args.get("branch_id", type=int)
        return _ok(promotions.get_banner_promotions(branch_id), "Banner promotions retrieved successfully")

    @app.get("/api/promotions/modals")
    def modal_promotions():
        branch_id = request.args.get("branch_id", type=int)
        return _ok(promotions.get_modal_promotions(branch_id), "Modal promotions retrieved successfully")

    @app.get("/api/promotions/<int:promotion_id>")
    def get_promotion(promotion_id: int):
        promotion = promotions.get_by_id(promotion_id)
        if not promotion:
            return _fail("Promotion not found", 404)
        return _ok(promotion, "Promotion retrieved successfully")

    @app.get("/api/promotions/code/<code>")
    def get_promotion_by_code(code: str):
        promotion = promotions.get_by_code(code)
        if not promotion:
            return _fail("Promotion not found", 404)
        return _ok(promotion, "Promotion retrieved successfully")

    @app.post("/api/promotions/<int:promotion_id>/apply")
    def apply_promotion(promotion_id: int):
        result = promotions.apply_promotion(promotion_id, _json_body())
        if not result["valid"]:
            return _fail(result["message"], 400)
        return _ok(result, "Promotion applied successfully")

    @app.post("/api/promotions/<int:promotion_id>/use")
    def use_promotion(promotion_id: int):
        data = _json_body()
        usage = promotions.record_usage(promotion_id, data.get("customer_id"), data.get("order_id"))
        if not usage:
            return _fail("Promotion not found", 404)
        return _ok(usage, "Promotion usage recorded successfully")

    @app.get("/api/promotions/<int:promotion_id>/targets")
    def promotion_targets(promotion_id: int):
        return _ok(promotions.get_promotion_targets(promotion_id), "Promotion targets retrieved successfully")

    @app.get("/api/promotions/<int:promotion_id>/branches")
    def promotion_branches(promotion_id: int):
        return _ok(promotions.get_promotion_branches(promotion_id), "Promotion branches retrieved successfully")

    @app.post("/api/promotions")
    @requires_auth(role="admin")
    def create_promotion():
        return _ok(promotions.create(_json_body()), "Promotion created successfully", 201)

    @app.put("/api/promotions/<int:promotion_id>")
    @requires_auth(role="admin")
    def update_promotion(promotion_id: int):
        promotion = promotions.update(promotion_id, _json_body())
        if not promotion:
            return _fail("Promotion not found", 404)
        return _ok(promotion, "Promotion updated successfully")

    @app.delete("/api/promotions/<int:promotion_id>")
    @requires_auth(role="admin")
    def delete_promotion(promotion_id: int):
        promotion = promotions.delete(promotion_id)
        if not promotion:
            return _fail("Promotion not found", 404)
        return _ok(promotion, "Promotion deleted successfully")

    # -- orders --------------------------------------------------------------

    @app.post("/api/orders")
    def create_order():
        data = _json_body()
        errors = validate_order_payload(data)
        if errors:
            return _fail("Validation error", 400, errors=errors)
        try:
            result = orders.create_order(data)
        except Exception as e:
            app.logger.exception("Order creation failed")
            return _fail("Failed to create order", 500, str(e), **_debug_stack())
        return _ok(result, "Order created successfully", 201)

    @app.get("/api/orders/<int:order_id>")
    def get_order(order_id: int):
        order = orders.get_by_id(order_id)
        if not order:
            return _fail("Order not found", 404)
        return _ok(order, "Order retrieved successfully")

    @app.get("/api/orders/number/<order_number>")
    def get_order_by_number(order_number: str):
        order = orders.get_by_order_number(order_number)
        if not order:
            return _fail("Order not found", 404)
        return _ok(order, "Order retrieved successfully")

    @app.put("/api/orders/<int:order_id>/status")
    def update_order_status(order_id: int):
        status = _json_body().get("status")
        if status not in ORDER_STATUSES:
            return _fail(f"status must be one of {', '.join(ORDER_STATUSES)}", 400)
        order = orders.update_status(order_id, status)
        if not order:
            return _fail("Order not found", 404)
        return _ok(order, "Order status updated successfully")

    @app.post("/api/orders/<int:order_id>/cancel")
    def cancel_order(order_id: int):
        try:
            order = orders.cancel_order(order_id)
        except OrderStateError as e:
            return _fail("Order cannot be cancelled", 409, str(e))
        except Exception as e:
            app.logger.exception("Order cancellation failed for order %s", order_id)
            return _fail("Failed to cancel order", 500, str(e), **_debug_stack())
        if not order:
            return _fail("Order not found", 404)
        return _ok(order, "Order cancelled successfully")

    @app.get("/api/orders/customer/<int:customer_id>")
    def orders_by_customer(customer_id: int):
        page, limit = _page_args(10)
        return _ok(orders.get_by_customer(customer_id, page, limit), "Customer orders retrieved successfully")

    @app.get("/api/orders/branch/<int:branch_id>")
    def orders_by_branch(branch_id: int):
        page, limit = _page_args(20)
        status = request.args.get("status")
        return _ok(orders.get_by_branch(branch_id, status, page, limit), "Branch orders retrieved successfully")

    @app.get("/api/orders/stats")
    def order_stats():
        stats = orders.get_order_stats(
            request.args.get("branch_id", type=int),
            request.args.get("start_date"),
            request.args.get("end_date"),
        )
        return _ok(stats, "Order statistics retrieved successfully")

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=not get_config().is_production)
