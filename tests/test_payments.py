"""Tests for Stripe checkout sessions and the payment webhook."""
import hashlib
import hmac
import json
import time

import pytest
import stripe
from bson import ObjectId

from config import Settings
from errors import ValidationError
from inventory import InventoryManager
from orders import OrderWorkflow
from payments import PaymentWorkflow, StripeGateway

from conftest import TEST_SECRET

WEBHOOK_SECRET = "whsec_test_secret"


def completed_event(session):
    return {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": session}}


def paid_session(session_id, items, shipping, amount_total, user_id="guest"):
    return {
        "id": session_id,
        "payment_status": "paid",
        "payment_intent": "pi_123",
        "amount_total": amount_total,
        "customer_details": {"email": shipping.get("email"), "name": shipping.get("full_name")},
        "metadata": {
            "items": json.dumps(items),
            "shipping_address": json.dumps(shipping),
            "user_id": user_id,
        },
    }


def sign(payload: str, secret: str, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class TestCreateCheckoutSession:
    def test_session_parameters(self, client, gateway, shipping):
        items = [{"product_id": "p1", "name": "Shirt", "price": 25.5, "quantity": 2, "size": 42, "color": "blue"}]
        response = client.post(
            "/api/payments/create-checkout-session",
            json={"items": items, "shipping_address": shipping},
            headers={"Origin": "http://localhost:5173"},
        )

        assert response.status_code == 200
        assert response.json() == {"url": "https://checkout.stripe.com/c/pay/cs_test_1", "session_id": "cs_test_1"}
        params = gateway.created[0]
        line = params["line_items"][0]
        assert line["price_data"]["unit_amount"] == 2550
        assert line["price_data"]["currency"] == "pkr"
        assert line["price_data"]["product_data"]["description"] == "Size: 42, Color: blue"
        assert line["quantity"] == 2
        assert params["success_url"] == "http://localhost:5173/checkout/success?session_id={CHECKOUT_SESSION_ID}"
        assert params["cancel_url"] == "http://localhost:5173/checkout"
        assert params["customer_email"] == "jane@example.com"
        assert params["metadata"]["user_id"] == "guest"
        assert json.loads(params["metadata"]["items"])[0]["product_id"] == "p1"
        assert json.loads(params["metadata"]["shipping_address"])["city"] == "Lahore"

    def test_falls_back_to_frontend_url(self, client, gateway):
        client.post("/api/payments/create-checkout-session", json={"items": [{"name": "Hat", "price": 5}]})
        assert gateway.created[0]["cancel_url"] == "http://shop.example.com/checkout"

    def test_signed_in_user_is_recorded(self, client, gateway, make_user):
        user, headers = make_user()
        client.post("/api/payments/create-checkout-session", json={"items": [{"name": "Hat", "price": 5}]},
                    headers=headers)
        assert gateway.created[0]["metadata"]["user_id"] == str(user["_id"])

    def test_oversized_item_list_is_left_out_of_metadata(self, client, gateway):
        items = [{"product_id": f"{i:024d}", "name": "Long product name " * 3, "price": 1} for i in range(10)]
        response = client.post("/api/payments/create-checkout-session", json={"items": items})
        assert response.status_code == 200
        assert "items" not in gateway.created[0]["metadata"]

    def test_no_items(self, client):
        response = client.post("/api/payments/create-checkout-session", json={"items": []})
        assert response.status_code == 400
        assert response.json()["detail"] == "No items provided"

    def test_provider_error(self, client, gateway):
        gateway.error = stripe.InvalidRequestError("No such price", "line_items", code="resource_missing")
        response = client.post("/api/payments/create-checkout-session", json={"items": [{"name": "Hat", "price": 5}]})

        assert response.status_code == 500
        body = response.json()
        assert body["detail"] == "Failed to create checkout session"
        assert "No such price" in body["details"]
        assert body["type"] == "InvalidRequestError"
        assert body["code"] == "resource_missing"


class TestWebhook:
    def test_completed_checkout_creates_confirmed_order(self, client, db, make_product, mailer, shipping):
        pid = make_product(qty=10)
        items = [{"product_id": pid, "name": "Shirt", "price": 25.0, "quantity": 2}]
        event = completed_event(paid_session("cs_test_9", items, shipping, 5000))

        response = client.post("/api/payments/webhook", content=json.dumps(event))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        order = db["order"].find_one({"payment_info.session_id": "cs_test_9"})
        assert order["status"] == "confirmed"
        assert order["total"] == 50.0
        assert order["user_id"] is None
        assert order["payment_info"]["payment_intent_id"] == "pi_123"
        assert order["email_sent"] is True
        assert db["product"].find_one({"_id": ObjectId(pid)})["qty"] == 8
        assert mailer.sent[0]["to"] == "jane@example.com"

    def test_duplicate_delivery_is_ignored(self, client, db, make_product, shipping):
        pid = make_product(qty=10)
        items = [{"product_id": pid, "name": "Shirt", "price": 25.0, "quantity": 1}]
        payload = json.dumps(completed_event(paid_session("cs_test_9", items, shipping, 2500)))

        client.post("/api/payments/webhook", content=payload)
        client.post("/api/payments/webhook", content=payload)

        assert db["order"].count_documents({}) == 1
        assert db["product"].find_one({"_id": ObjectId(pid)})["qty"] == 9

    def test_concurrent_deliveries_create_one_order(self, db, settings, mailer, gateway, make_product, shipping):
        orders = OrderWorkflow(db, settings, InventoryManager(db), mailer)
        workflow = PaymentWorkflow(gateway, orders, settings)
        # both deliveries pass the lookup before either one has inserted
        orders.find_by_session = lambda session_id: None
        pid = make_product(qty=10)
        items = [{"product_id": pid, "name": "Shirt", "price": 25.0, "quantity": 2}]
        payload = json.dumps(completed_event(paid_session("cs_test_9", items, shipping, 5000))).encode()

        assert workflow.handle_webhook(payload, None) == {"received": True}
        assert workflow.handle_webhook(payload, None) == {"received": True}

        assert db["order"].count_documents({"payment_info.session_id": "cs_test_9"}) == 1
        assert db["product"].find_one({"_id": ObjectId(pid)})["qty"] == 8

    def test_orders_without_session_are_not_constrained(self, db, settings, mailer):
        orders = OrderWorkflow(db, settings, InventoryManager(db), mailer)
        orders.create_order([], None, {})
        orders.create_order([], None, {})
        assert db["order"].count_documents({}) == 2

    def test_paid_order_is_recorded_even_when_oversold(self, client, db, make_product, shipping):
        pid = make_product(qty=1)
        items = [{"product_id": pid, "name": "Shirt", "price": 25.0, "quantity": 3}]
        client.post("/api/payments/webhook", content=json.dumps(completed_event(
            paid_session("cs_test_9", items, shipping, 7500))))

        assert db["order"].count_documents({}) == 1
        assert db["product"].find_one({"_id": ObjectId(pid)})["qty"] == -2

    def test_user_is_linked(self, client, db, make_user, shipping):
        user, _ = make_user()
        session = paid_session("cs_test_9", [], shipping, 0, user_id=str(user["_id"]))
        client.post("/api/payments/webhook", content=json.dumps(completed_event(session)))
        assert db["order"].find_one()["user_id"] == user["_id"]

    def test_line_items_used_without_metadata_items(self, client, db, gateway, shipping):
        session = paid_session("cs_test_9", [], shipping, 5000)
        del session["metadata"]["items"]
        gateway.line_items["cs_test_9"] = [{"description": "Shirt", "price": {"unit_amount": 2500}, "quantity": 2}]

        client.post("/api/payments/webhook", content=json.dumps(completed_event(session)))

        order = db["order"].find_one()
        assert order["items"] == [{"product_id": None, "name": "Shirt", "price": 25.0, "quantity": 2}]

    def test_missing_shipping_details_get_defaults(self, client, db):
        session = {"id": "cs_test_9", "amount_total": 100, "customer_details": {"email": "sam@example.com"},
                   "metadata": {}}
        client.post("/api/payments/webhook", content=json.dumps(completed_event(session)))

        shipping = db["order"].find_one()["shipping_address"]
        assert shipping["full_name"] == "Customer"
        assert shipping["address"] == "Address not provided"
        assert shipping["email"] == "sam@example.com"

    def test_other_events_are_acknowledged(self, client, db):
        event = {"id": "evt_2", "type": "payment_intent.created", "data": {"object": {}}}
        response = client.post("/api/payments/webhook", content=json.dumps(event))
        assert response.json() == {"received": True}
        assert db["order"].count_documents({}) == 0

    def test_malformed_payload(self, client):
        response = client.post("/api/payments/webhook", content="not json")
        assert response.status_code == 400
        assert response.json()["detail"].startswith("Webhook Error")


class TestSignatureVerification:
    @pytest.fixture
    def gateway(self):
        return StripeGateway(Settings(jwt_secret=TEST_SECRET, stripe_webhook_secret=WEBHOOK_SECRET))

    def test_valid_signature(self, gateway):
        payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed"})
        event = gateway.parse_event(payload.encode(), sign(payload, WEBHOOK_SECRET))
        assert event["id"] == "evt_1"

    def test_wrong_secret(self, gateway):
        payload = json.dumps({"id": "evt_1"})
        with pytest.raises(stripe.SignatureVerificationError):
            gateway.parse_event(payload.encode(), sign(payload, "whsec_other"))

    def test_stale_timestamp(self, gateway):
        payload = json.dumps({"id": "evt_1"})
        with pytest.raises(stripe.SignatureVerificationError):
            gateway.parse_event(payload.encode(), sign(payload, WEBHOOK_SECRET, timestamp=int(time.time()) - 3600))

    def test_missing_header_is_rejected_by_the_webhook(self, gateway, db, mailer):
        signed = Settings(jwt_secret=TEST_SECRET, stripe_webhook_secret=WEBHOOK_SECRET)
        workflow = PaymentWorkflow(gateway, OrderWorkflow(db, signed, InventoryManager(db), mailer), signed)
        with pytest.raises(ValidationError, match="Webhook Error") as excinfo:
            workflow.handle_webhook(b'{"id": "evt_1"}', None)
        assert isinstance(excinfo.value.__cause__, stripe.SignatureVerificationError)


class TestSessionLookups:
    def test_get_session(self, client):
        assert client.get("/api/payments/session/cs_test_1").json() == {"id": "cs_test_1", "payment_status": "paid"}

    def test_get_session_provider_error(self, client, gateway):
        gateway.error = stripe.InvalidRequestError("No such checkout.session", "id")
        assert client.get("/api/payments/session/cs_missing").status_code == 404

    def test_order_for_session(self, client, shipping):
        client.post("/api/payments/webhook", content=json.dumps(completed_event(
            paid_session("cs_test_9", [], shipping, 0))))

        response = client.get("/api/payments/order/cs_test_9")
        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"
        assert client.get("/api/payments/order/cs_unknown").status_code == 404
