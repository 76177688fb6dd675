"""
Stripe Checkout integration

The storefront sends the cart to create a hosted checkout session; Stripe
calls back with `checkout.session.completed` once the customer has paid and
the order is created from the session at that point.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import stripe
from pymongo.errors import DuplicateKeyError

from config import Settings
from errors import NotFoundError, PaymentProviderError, ValidationError
from orders import OrderWorkflow

logger = logging.getLogger(__name__)

# Stripe rejects metadata values longer than this
METADATA_VALUE_LIMIT = 500


class StripeGateway:
    """Thin wrapper over the Stripe SDK returning plain dicts."""

    def __init__(self, settings: Settings):
        self.settings = settings
        if settings.stripe_secret_key:
            stripe.api_key = settings.stripe_secret_key

    def create_session(self, **params) -> Dict[str, Any]:
        session = stripe.checkout.Session.create(**params)
        return {"id": session.id, "url": session.url}

    def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        session = stripe.checkout.Session.retrieve(session_id, expand=["line_items", "line_items.data.price.product"])
        return json.loads(str(session))

    def list_line_items(self, session_id: str) -> List[Dict[str, Any]]:
        line_items = stripe.checkout.Session.list_line_items(session_id)
        return [json.loads(str(item)) for item in line_items.data]

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        secret = self.settings.stripe_webhook_secret
        if secret:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature or "", secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        return json.loads(payload)


def _compact_items(items: List[dict]) -> str:
    return json.dumps([
        {
            "product_id": item.get("product_id"),
            "name": item.get("name"),
            "price": item.get("price"),
            "quantity": item.get("quantity"),
            "size": item.get("size"),
            "color": item.get("color"),
        }
        for item in items
    ], separators=(",", ":"))


class PaymentWorkflow:
    def __init__(self, gateway: StripeGateway, orders: OrderWorkflow, settings: Settings):
        self.gateway = gateway
        self.orders = orders
        self.settings = settings

    def create_checkout_session(self, items: List[dict], shipping_address: Optional[dict],
                                user: Optional[dict] = None, origin: Optional[str] = None) -> dict:
        if not items:
            raise ValidationError("No items provided")
        shipping_address = shipping_address or {}

        line_items = [
            {
                "price_data": {
                    "currency": self.settings.currency,
                    "product_data": {
                        "name": item.get("name") or "Product",
                        "description": f"Size: {item.get('size') or 'N/A'}, Color: {item.get('color') or 'N/A'}",
                    },
                    "unit_amount": round((item.get("price") or 0) * 100),
                },
                "quantity": item.get("quantity") or 1,
            }
            for item in items
        ]

        metadata = {
            "shipping_address": json.dumps(shipping_address, separators=(",", ":")),
            "user_id": str(user["_id"]) if user else "guest",
        }
        compact = _compact_items(items)
        if len(compact) <= METADATA_VALUE_LIMIT:
            metadata["items"] = compact
        else:
            logger.warning("Item list too long for session metadata (%d chars); webhook will use line items", len(compact))

        origin = (origin or self.settings.frontend_url).rstrip("/")
        params = {
            "payment_method_types": ["card"],
            "line_items": line_items,
            "mode": "payment",
            "success_url": f"{origin}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{origin}/checkout",
            "metadata": metadata,
        }
        if shipping_address.get("email"):
            params["customer_email"] = shipping_address["email"]

        try:
            session = self.gateway.create_session(**params)
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session creation failed: %s", exc)
            raise PaymentProviderError(
                getattr(exc, "user_message", None) or str(exc),
                error_type=type(exc).__name__,
                code=getattr(exc, "code", None),
            ) from exc
        logger.info("Checkout session %s created for %d item(s)", session["id"], len(items))
        return {"url": session["url"], "session_id": session["id"]}

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        try:
            event = self.gateway.parse_event(payload, signature)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            logger.error("Webhook signature verification failed: %s", exc)
            raise ValidationError(f"Webhook Error: {exc}") from exc

        event_type = event.get("type")
        logger.info("Stripe webhook received: %s (%s)", event_type, event.get("id"))
        if event_type == "checkout.session.completed":
            self._complete_checkout(event["data"]["object"])
        else:
            logger.info("Unhandled event type %s", event_type)
        return {"received": True}

    def _session_items(self, session: dict) -> List[dict]:
        metadata = session.get("metadata") or {}
        try:
            items = json.loads(metadata.get("items") or "[]")
        except ValueError:
            logger.warning("Failed to parse items from session metadata")
            items = []
        if items:
            return items

        logger.info("Using provider line items for session %s (no product ids)", session["id"])
        return [
            {
                "product_id": None,
                "name": line.get("description") or "Product",
                "price": ((line.get("price") or {}).get("unit_amount") or 0) / 100,
                "quantity": line.get("quantity") or 1,
            }
            for line in self.gateway.list_line_items(session["id"])
        ]

    def _complete_checkout(self, session: dict) -> Optional[dict]:
        session_id = session["id"]
        existing = self.orders.find_by_session(session_id)
        if existing:
            logger.info("Session %s already has order %s", session_id, existing.get("order_number"))
            return None

        metadata = session.get("metadata") or {}
        try:
            shipping = json.loads(metadata.get("shipping_address") or "{}")
        except ValueError:
            shipping = {}
        user_id = metadata.get("user_id")
        details = session.get("customer_details") or {}
        email = details.get("email") or shipping.get("email") or session.get("customer_email")

        shipping_address = {
            "full_name": shipping.get("full_name") or details.get("name") or "Customer",
            "email": email,
            "phone": shipping.get("phone") or details.get("phone") or "",
            "address": shipping.get("address") or "Address not provided",
            "city": shipping.get("city") or "",
            "postal": shipping.get("postal") or "",
            "country": shipping.get("country") or "",
        }
        payment_info = {
            "method": "stripe",
            "session_id": session_id,
            "payment_status": session.get("payment_status"),
            "payment_intent_id": session.get("payment_intent"),
        }
        try:
            return self.orders.create_confirmed_order(
                items=self._session_items(session),
                shipping_address=shipping_address,
                payment_info=payment_info,
                total=(session.get("amount_total") or 0) / 100,
                user_id=user_id if user_id and user_id != "guest" else None,
            )
        except DuplicateKeyError:
            # a concurrent delivery of the same event won the insert
            logger.info("Session %s already has an order", session_id)
            return None

    def get_session(self, session_id: str) -> dict:
        try:
            return self.gateway.retrieve_session(session_id)
        except stripe.StripeError as exc:
            logger.error("Failed to retrieve session %s: %s", session_id, exc)
            raise NotFoundError("Session") from exc

    def order_for_session(self, session_id: str) -> dict:
        order = self.orders.find_by_session(session_id)
        if not order:
            raise NotFoundError("Order")
        return self.orders.get(str(order["_id"]))
