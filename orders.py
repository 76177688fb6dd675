"""
Order workflow

Checkout, status changes (admin and webhook driven) and the read side used
by the admin dashboard. Email notifications are best effort: a failed send is
logged and never undoes the order change that triggered it.
"""
import hmac
import logging
import secrets
from collections import defaultdict
from datetime import timedelta
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from config import Settings
from database import serialize, to_object_id, utcnow
from errors import AuthenticationError, InsufficientStockError, NotFoundError, NotificationError, ValidationError
from inventory import InventoryManager
from notifications import Mailer
from schemas import ORDER_STATUSES

logger = logging.getLogger(__name__)

ORDERS = "order"

PERIODS = {
    "7days": timedelta(days=7),
    "30days": timedelta(days=30),
    "90days": timedelta(days=90),
    "12months": timedelta(days=365),
}


def generate_order_number() -> str:
    return f"ORD-{100000 + secrets.randbelow(900000)}"


def order_total(items: List[dict]) -> float:
    return round(sum((item.get("price") or 0) * (item.get("quantity") or 1) for item in items), 2)


def _has_email(address: Optional[dict]) -> bool:
    return bool(address and "@" in (address.get("email") or ""))


class OrderWorkflow:
    def __init__(self, db, settings: Settings, inventory: InventoryManager, mailer: Mailer):
        self.orders = db[ORDERS]
        self.products = db["product"]
        self.settings = settings
        self.inventory = inventory
        self.mailer = mailer

    # --- creation ---

    def create_order(self, items: List[dict], shipping_address: Optional[dict], payment_info: Optional[dict],
                     user: Optional[dict] = None, order_number: Optional[str] = None) -> dict:
        items = list(items or [])
        if self.settings.strict_stock_reservation:
            reservation = self.inventory.reserve(items)
            if not reservation["success"]:
                raise InsufficientStockError(reservation["errors"])
            warnings = reservation["warnings"]
        else:
            check = self.inventory.check_availability(items)
            if not check["success"]:
                raise InsufficientStockError(check["errors"], check["stock_info"])
            warnings = check["warnings"]
        if warnings:
            logger.warning("Low stock warnings: %s", warnings)

        now = utcnow()
        doc = {
            "user_id": user["_id"] if user else None,
            "order_number": order_number or generate_order_number(),
            "items": items,
            "total": order_total(items),
            "status": "pending",
            "tracking_number": None,
            "shipping_address": shipping_address,
            "payment_info": payment_info or {},
            "email_sent": False,
            "created_at": now,
            "updated_at": now,
        }
        try:
            order_id = self.orders.insert_one(doc).inserted_id
        except PyMongoError:
            if self.settings.strict_stock_reservation:
                self.inventory.restore(items)
            raise
        doc["_id"] = order_id
        logger.info("Order %s saved (%s, total %.2f)", doc["order_number"], order_id, doc["total"])

        if not self.settings.strict_stock_reservation:
            result = self.inventory.deduct(items)
            if result["failed"]:
                logger.warning("Some products failed to update stock: %s", result["failed"])
            low = [u for u in result["updated"] if u["is_low_stock"]]
            if low:
                logger.warning("Low stock after order: %s", low)

        self._send_confirmation(doc)
        return serialize(doc)

    def create_confirmed_order(self, items: List[dict], shipping_address: dict, payment_info: dict,
                               total: float, user_id=None) -> dict:
        """Record an order that the payment provider has already charged for."""
        now = utcnow()
        doc = {
            "user_id": to_object_id(user_id) if user_id else None,
            "order_number": generate_order_number(),
            "items": items,
            "total": total,
            "status": "confirmed",
            "tracking_number": None,
            "shipping_address": shipping_address,
            "payment_info": payment_info,
            "email_sent": False,
            "created_at": now,
            "updated_at": now,
        }
        doc["_id"] = self.orders.insert_one(doc).inserted_id
        logger.info("Order created from payment: %s (ID: %s)", doc["order_number"], doc["_id"])

        # already paid for, so stock is taken even if that drives it negative
        result = self.inventory.deduct(items)
        if result["failed"]:
            logger.warning("Some products failed to update stock: %s", result["failed"])

        self._send_confirmation(doc)
        return serialize(doc)

    def _send_confirmation(self, doc: dict) -> None:
        address = doc.get("shipping_address")
        if not _has_email(address):
            logger.warning("No valid customer email for order %s", doc["order_number"])
            return
        try:
            self.mailer.send_order_confirmation(doc, address["email"])
        except NotificationError:
            logger.exception("Order confirmation email failed for %s", doc["order_number"])
            return
        self.orders.update_one({"_id": doc["_id"]}, {"$set": {"email_sent": True}})
        doc["email_sent"] = True

    # --- status changes ---

    def update_status(self, order_id: str, status: str) -> dict:
        oid = to_object_id(order_id)
        current = self.orders.find_one({"_id": oid}) if oid else None
        if not current:
            raise NotFoundError("Order")
        order, _, _ = self._apply_status(current, status)
        return serialize(order)

    def webhook_status_update(self, order_number: Optional[str], status: Optional[str],
                              tracking_number: Optional[str] = None, secret: Optional[str] = None) -> dict:
        expected = self.settings.order_webhook_secret
        if expected and not hmac.compare_digest(expected, secret or ""):
            raise AuthenticationError("Invalid webhook secret")
        if not order_number or not status:
            raise ValidationError("order_number and status are required")

        current = self.orders.find_one({"order_number": order_number})
        if not current:
            raise NotFoundError("Order")
        order, old_status, email_sent = self._apply_status(current, status, tracking_number)
        return {
            "success": True,
            "order": {
                "order_number": order["order_number"],
                "old_status": old_status,
                "new_status": status,
                "email_sent": email_sent,
            },
        }

    def _apply_status(self, current: dict, status: str, tracking_number: Optional[str] = None):
        """Move an order to `status`; returns (order, old_status, email_sent)."""
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid status '{status}'. Expected one of: {', '.join(ORDER_STATUSES)}")

        changes = {"status": status, "updated_at": utcnow()}
        if tracking_number:
            changes["tracking_number"] = tracking_number
        query = {"_id": current["_id"]}
        if status == "canceled":
            # only the request that actually moves the order into canceled restores its stock
            query["status"] = {"$ne": "canceled"}
        previous = self.orders.find_one_and_update(query, {"$set": changes}, return_document=ReturnDocument.BEFORE)
        if previous is None:
            order = self.orders.find_one_and_update(
                {"_id": current["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
            if order is None:
                raise NotFoundError("Order")
            return order, status, False

        old_status = previous.get("status")
        if status == "canceled" and previous.get("items"):
            logger.info("Restoring stock for canceled order %s", previous.get("order_number"))
            result = self.inventory.restore(previous["items"])
            if result["success"]:
                logger.info("Stock restored for %d products", len(result["restored"]))
            else:
                logger.warning("Some products failed to restore: %s", result["failed"])
        order = dict(previous, **changes)

        email_sent = False
        address = previous.get("shipping_address")
        if old_status != status and address and address.get("email"):
            try:
                self.mailer.send_status_update(order, address["email"], old_status, status)
                email_sent = True
                logger.info("Status update email sent for order %s: %s -> %s",
                            order.get("order_number"), old_status, status)
            except NotificationError:
                logger.exception("Failed to send status update email for %s", order.get("order_number"))
        return order, old_status, email_sent

    # --- reads ---

    def get(self, order_id: str) -> dict:
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid else None
        if not order:
            raise NotFoundError("Order")
        return serialize(order)

    def list_for_user(self, user: dict) -> List[dict]:
        cursor = self.orders.find({"user_id": user["_id"]}).sort("created_at", -1)
        return [serialize(o) for o in cursor]

    def list_all(self, limit: int = 500) -> List[dict]:
        cursor = self.orders.find().sort("created_at", -1).limit(limit)
        return [serialize(o) for o in cursor]

    def find_by_session(self, session_id: str) -> Optional[dict]:
        return self.orders.find_one({"payment_info.session_id": session_id})

    def health(self) -> dict:
        return {
            "success": True,
            "message": "Orders service is healthy",
            "database": "connected",
            "total_orders": self.orders.count_documents({}),
            "timestamp": utcnow().isoformat(),
        }

    def analytics(self, period: str = "30days") -> dict:
        now = utcnow()
        if period == "all":
            start = None
        else:
            start = now - PERIODS.get(period, PERIODS["30days"])
        orders = list(self.orders.find({"created_at": {"$gte": start}} if start else {}))

        product_ids = {
            to_object_id(item.get("product_id"))
            for order in orders for item in order.get("items") or [] if item.get("product_id")
        }
        product_ids.discard(None)
        categories = {
            str(p["_id"]): p.get("category")
            for p in self.products.find({"_id": {"$in": list(product_ids)}})
        } if product_ids else {}

        total_revenue = sum(o.get("total") or 0 for o in orders)
        status_counts = defaultdict(int)
        category_data = defaultdict(int)
        sales_by_date = {}
        product_sales = {}

        for order in orders:
            status_counts[order.get("status") or "pending"] += 1
            day = order["created_at"].date().isoformat()
            bucket = sales_by_date.setdefault(day, {"revenue": 0.0, "orders": 0})
            bucket["revenue"] += order.get("total") or 0
            bucket["orders"] += 1

            for item in order.get("items") or []:
                pid = item.get("product_id")
                if not pid:
                    continue
                qty = item.get("quantity") or 0
                if categories.get(pid):
                    category_data[categories[pid]] += qty
                entry = product_sales.setdefault(pid, {"name": item.get("name") or "Unknown", "quantity": 0, "revenue": 0.0})
                entry["quantity"] += qty
                entry["revenue"] += (item.get("price") or 0) * qty

        top_products = sorted(product_sales.values(), key=lambda p: p["revenue"], reverse=True)[:10]
        return {
            "success": True,
            "period": period,
            "start_date": start.isoformat() if start else None,
            "end_date": now.isoformat(),
            "analytics": {
                "total_orders": len(orders),
                "total_revenue": round(total_revenue, 2),
                "avg_order_value": round(total_revenue / len(orders), 2) if orders else 0,
                "status_counts": dict(status_counts),
                "category_data": dict(category_data),
                "sales_by_date": sales_by_date,
                "top_products": top_products,
            },
        }
