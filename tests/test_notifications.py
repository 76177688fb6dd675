"""Tests for email rendering and the Resend mailer."""
import pytest
import resend

from config import Settings
from errors import NotificationError
from notifications import Mailer, render_order_confirmation, render_otp, render_password_reset, render_status_update

from conftest import TEST_SECRET

ORDER = {
    "order_number": "ORD-123456",
    "items": [{"name": "<b>Shirt</b>", "price": 12.5, "quantity": 2}],
    "total": 25.0,
    "shipping_address": {"full_name": "Jane <Doe>", "address": "1 Main St", "city": "Lahore", "email": "jane@example.com"},
}


@pytest.fixture
def sent(monkeypatch):
    calls = []

    def fake_send(params):
        calls.append(params)
        return {"id": "email_1"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    return calls


def live_settings(**overrides):
    values = dict(jwt_secret=TEST_SECRET, send_emails=True, resend_api_key="re_test", mail_from="Shop <shop@example.com>")
    values.update(overrides)
    return Settings(**values)


class TestMailer:
    def test_delivers_through_resend(self, sent):
        result = Mailer(live_settings()).send("jane@example.com", "Hello", "<p>Hi</p>")
        assert result == {"id": "email_1"}
        assert sent == [{"from": "Shop <shop@example.com>", "to": ["jane@example.com"], "subject": "Hello",
                         "html": "<p>Hi</p>"}]

    def test_skipped_when_emails_disabled(self, sent):
        result = Mailer(Settings(jwt_secret=TEST_SECRET)).send("jane@example.com", "Hello", "<p>Hi</p>")
        assert result == {"accepted": ["jane@example.com"], "info": "dev-sent"}
        assert sent == []

    def test_missing_api_key(self, sent):
        with pytest.raises(NotificationError, match="RESEND_API_KEY"):
            Mailer(live_settings(resend_api_key=None)).send("jane@example.com", "Hello", "<p>Hi</p>")

    def test_provider_failure(self, monkeypatch):
        def boom(params):
            raise RuntimeError("rate limited")

        monkeypatch.setattr(resend.Emails, "send", boom)
        with pytest.raises(NotificationError) as excinfo:
            Mailer(live_settings()).send("jane@example.com", "Hello", "<p>Hi</p>")
        assert excinfo.value.to == "jane@example.com"
        assert "rate limited" in str(excinfo.value)

    def test_status_update_subject(self, sent):
        Mailer(live_settings(store_name="Shoe Co")).send_status_update(ORDER, "jane@example.com", "pending", "shipped")
        assert sent[0]["subject"] == "Order Shipped #ORD-123456 - Shoe Co"


class TestRendering:
    def test_confirmation_escapes_customer_values(self):
        html = render_order_confirmation(ORDER, "Shop", "pkr")
        assert "&lt;b&gt;Shirt&lt;/b&gt;" in html
        assert "Jane &lt;Doe&gt;" in html
        assert "<b>Shirt</b>" not in html
        assert "Total: PKR 25.00" in html

    def test_reset_link_and_name_are_escaped(self):
        url = "http://shop.example.com/reset-password?email=a%40b.com&token=123456"
        html = render_password_reset("<script>", "123456", url, 30)
        assert "&lt;script&gt;" in html
        assert "<script>" not in html
        assert "email=a%40b.com&amp;token=123456" in html
        assert "30 minutes" in html

    def test_otp_code(self):
        html = render_otp(None, "654321", 10)
        assert "Hi there," in html
        assert "654321" in html

    def test_confirmation_lists_shipping_address(self):
        html = render_order_confirmation(ORDER, "Shop", "pkr")
        assert "Lahore" in html
        assert "jane@example.com" in html

    def test_status_progress(self):
        html = render_status_update(ORDER, "pending", "shipped", "Shop", "pkr")
        assert "&#10003; Confirmed" in html
        assert "&#10003; Shipped" in html
        assert "&#10003; Delivered" not in html

    def test_cancellation_mentions_refund(self):
        html = render_status_update(ORDER, "confirmed", "canceled", "Shop", "pkr")
        assert "Order Cancelled" in html
        assert "refunded" in html

    def test_cancellation_of_free_order(self):
        html = render_status_update(dict(ORDER, total=0), "pending", "canceled", "Shop", "pkr")
        assert "No charges were applied" in html
