"""
Inventory management

Stock lives in Product.qty. Every change is a single-document $inc so
concurrent updates to one product never lose a write. `reserve` folds the
availability check into the decrement itself; `check_availability` followed
by `deduct` does not, and can oversell under concurrent orders.
"""
import logging
from typing import Iterable, List

from pymongo import ReturnDocument

from database import to_object_id, utcnow

logger = logging.getLogger(__name__)

PRODUCTS = "product"
LOW_STOCK_LEVEL = 5


def _quantity(item: dict) -> int:
    return int(item.get("quantity") or 1)


def severity(qty: int, critical_below: int = LOW_STOCK_LEVEL) -> str:
    if qty <= 0:
        return "out-of-stock"
    if qty < critical_below:
        return "critical"
    return "low"


def _summary(product: dict) -> dict:
    return {
        "id": str(product["_id"]),
        "name": product.get("name"),
        "sku": product.get("sku"),
        "current_stock": product.get("qty", 0),
        "price": product.get("price"),
    }


class InventoryManager:
    def __init__(self, db, low_stock_level: int = LOW_STOCK_LEVEL):
        self.products = db[PRODUCTS]
        self.low_stock_level = low_stock_level

    def _adjust(self, oid, delta: int, condition: dict = None):
        query = {"_id": oid}
        if condition:
            query.update(condition)
        return self.products.find_one_and_update(
            query,
            {"$inc": {"qty": delta}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    def check_availability(self, items: Iterable[dict]) -> dict:
        errors, warnings, stock_info = [], [], []

        for item in items:
            product_id = item.get("product_id")
            # guest line items without a catalog reference can't be checked
            if not product_id:
                continue

            oid = to_object_id(product_id)
            product = self.products.find_one({"_id": oid}) if oid else None
            if not product:
                errors.append({"product_id": product_id, "message": "Product not found in database"})
                continue

            requested = _quantity(item)
            available = product.get("qty") or 0
            stock_info.append({
                "product_id": str(product["_id"]),
                "product_name": product.get("name"),
                "requested": requested,
                "available": available,
                "sufficient": available >= requested,
            })

            if available < requested:
                errors.append({
                    "product_id": str(product["_id"]),
                    "product_name": product.get("name"),
                    "message": f"Insufficient stock: Only {available} available, requested {requested}",
                    "available": available,
                    "requested": requested,
                })
            elif available - requested < self.low_stock_level:
                warnings.append({
                    "product_id": str(product["_id"]),
                    "product_name": product.get("name"),
                    "message": f"Low stock warning: Only {available - requested} will remain after order",
                    "remaining_after": available - requested,
                })

        return {"success": not errors, "errors": errors, "warnings": warnings, "stock_info": stock_info}

    def deduct(self, items: Iterable[dict]) -> dict:
        updated, failed = [], []

        for item in items:
            product_id = item.get("product_id")
            if not product_id:
                continue
            quantity = _quantity(item)
            oid = to_object_id(product_id)
            product = self._adjust(oid, -quantity) if oid else None
            if not product:
                failed.append({"product_id": product_id, "message": "Product not found"})
                continue

            remaining = product.get("qty", 0)
            updated.append({
                "product_id": str(product["_id"]),
                "product_name": product.get("name"),
                "deducted": quantity,
                "remaining": remaining,
                "is_low_stock": remaining < self.low_stock_level,
            })
            logger.info("Stock updated: %s -%d (remaining: %d)", product.get("name"), quantity, remaining)

        return {"success": not failed, "updated": updated, "failed": failed}

    def restore(self, items: Iterable[dict]) -> dict:
        restored, failed = [], []

        for item in items:
            product_id = item.get("product_id")
            if not product_id:
                continue
            quantity = _quantity(item)
            oid = to_object_id(product_id)
            product = self._adjust(oid, quantity) if oid else None
            if not product:
                failed.append({"product_id": product_id, "message": "Product not found"})
                continue

            restored.append({
                "product_id": str(product["_id"]),
                "product_name": product.get("name"),
                "restored": quantity,
                "new_total": product.get("qty", 0),
            })
            logger.info("Stock restored: %s +%d (new total: %d)", product.get("name"), quantity, product.get("qty", 0))

        return {"success": not failed, "restored": restored, "failed": failed}

    def reserve(self, items: Iterable[dict]) -> dict:
        """Decrement stock only where enough is on hand; all or nothing across the items."""
        reserved, errors, warnings = [], [], []

        for item in items:
            product_id = item.get("product_id")
            if not product_id:
                continue
            quantity = _quantity(item)
            oid = to_object_id(product_id)
            product = self._adjust(oid, -quantity, {"qty": {"$gte": quantity}}) if oid else None
            if product:
                reserved.append({"product_id": str(product["_id"]), "quantity": quantity})
                remaining = product.get("qty", 0)
                if remaining < self.low_stock_level:
                    warnings.append({
                        "product_id": str(product["_id"]),
                        "product_name": product.get("name"),
                        "message": f"Low stock warning: Only {remaining} remain after order",
                        "remaining_after": remaining,
                    })
                continue

            current = self.products.find_one({"_id": oid}) if oid else None
            if current is None:
                errors.append({"product_id": product_id, "message": "Product not found in database"})
            else:
                available = current.get("qty") or 0
                errors.append({
                    "product_id": str(current["_id"]),
                    "product_name": current.get("name"),
                    "message": f"Insufficient stock: Only {available} available, requested {quantity}",
                    "available": available,
                    "requested": quantity,
                })

        if errors and reserved:
            logger.info("Releasing %d partial reservation(s)", len(reserved))
            self.restore(reserved)
            reserved = []

        return {"success": not errors, "reserved": reserved, "errors": errors, "warnings": warnings}

    def low_stock(self, threshold: int = 10) -> List[dict]:
        cursor = self.products.find({"qty": {"$lt": threshold}}).sort("qty", 1)
        return [dict(_summary(p), severity=severity(p.get("qty", 0), self.low_stock_level)) for p in cursor]

    def out_of_stock(self) -> List[dict]:
        return [_summary(p) for p in self.products.find({"qty": {"$lte": 0}})]

    def status_report(self, limit: int = 20) -> dict:
        products = []
        for p in self.products.find().limit(limit):
            qty = p.get("qty", 0)
            if qty <= 0:
                status = "OUT_OF_STOCK"
            elif qty < self.low_stock_level:
                status = "LOW_STOCK"
            else:
                status = "IN_STOCK"
            products.append(dict(_summary(p), status=status))
        low = self.low_stock()
        out = self.out_of_stock()
        return {
            "success": True,
            "total_products": len(products),
            "products": products,
            "low_stock_count": len(low),
            "low_stock_products": low,
            "out_of_stock_count": len(out),
            "out_of_stock_products": out,
        }
