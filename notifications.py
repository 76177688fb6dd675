"""
Transactional email

Jinja2 templates (templates/email) for verification codes, password resets
and order updates, sent through Resend. When SEND_EMAILS is off nothing
leaves the process; the send is logged and reported as a dev delivery instead.
"""
import logging
import os
from typing import Any, Dict, Optional

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import Settings
from errors import NotificationError

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    "pending": ("Order Received", "We've received your order and it's being processed."),
    "confirmed": ("Order Confirmed", "Great news! Your order has been confirmed and will be prepared for shipment soon."),
    "shipped": ("Order Shipped", "Your order is on its way to you. You'll receive it soon!"),
    "delivered": ("Order Delivered", "Your order has been successfully delivered! We hope you enjoy your purchase."),
    "canceled": (
        "Order Cancelled",
        "Your order has been cancelled. If this was a mistake or you have any questions, please contact our support team.",
    ),
}
PROGRESS = ("pending", "confirmed", "shipped", "delivered")

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
templates = Environment(loader=FileSystemLoader(TEMPLATE_DIR), autoescape=select_autoescape(["html"]))


def render_otp(name: Optional[str], code: str, ttl_minutes: int) -> str:
    return templates.get_template("email/otp.html").render(name=name, code=code, ttl_minutes=ttl_minutes)


def render_password_reset(name: Optional[str], token: str, reset_url: str, ttl_minutes: int) -> str:
    return templates.get_template("email/password_reset.html").render(
        name=name, token=token, reset_url=reset_url, ttl_minutes=ttl_minutes
    )


def render_order_confirmation(order: dict, store_name: str, currency: str) -> str:
    return templates.get_template("email/order_confirmation.html").render(
        order=order, store_name=store_name, currency=currency.upper()
    )


def render_status_update(order: dict, old_status: Optional[str], new_status: str, store_name: str, currency: str) -> str:
    title, message = STATUS_MESSAGES.get(new_status, STATUS_MESSAGES["pending"])
    return templates.get_template("email/status_update.html").render(
        order=order,
        old_status=old_status,
        new_status=new_status,
        title=title,
        message=message,
        progress=PROGRESS,
        current=PROGRESS.index(new_status) if new_status in PROGRESS else 0,
        store_name=store_name,
        currency=currency.upper(),
    )


class Mailer:
    def __init__(self, settings: Settings):
        self.settings = settings
        if settings.resend_api_key:
            resend.api_key = settings.resend_api_key

    def send(self, to: str, subject: str, html: str) -> Dict[str, Any]:
        if not self.settings.send_emails:
            logger.info("SEND_EMAILS is false; skipping email to %s (%s)", to, subject)
            return {"accepted": [to], "info": "dev-sent"}
        if not self.settings.resend_api_key:
            raise NotificationError(to, "RESEND_API_KEY is not configured")
        return self._deliver({"from": self.settings.mail_from, "to": [to], "subject": subject, "html": html})

    def _deliver(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        to = payload["to"][0]
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            raise NotificationError(to, str(exc)) from exc
        logger.info("Email '%s' sent to %s", payload["subject"], to)
        return dict(response) if response else {}

    def send_otp(self, to: str, name: Optional[str], code: str) -> Dict[str, Any]:
        html = render_otp(name, code, self.settings.otp_ttl_minutes)
        return self.send(to, "Your verification code", html)

    def send_password_reset(self, to: str, name: Optional[str], token: str, reset_url: str) -> Dict[str, Any]:
        html = render_password_reset(name, token, reset_url, self.settings.reset_ttl_minutes)
        return self.send(to, f"Reset your password - {self.settings.store_name}", html)

    def send_order_confirmation(self, order: dict, to: str) -> Dict[str, Any]:
        html = render_order_confirmation(order, self.settings.store_name, self.settings.currency)
        return self.send(to, f"Order Confirmation #{order.get('order_number')} - {self.settings.store_name}", html)

    def send_status_update(self, order: dict, to: str, old_status: Optional[str], new_status: str) -> Dict[str, Any]:
        html = render_status_update(order, old_status, new_status, self.settings.store_name, self.settings.currency)
        title, _ = STATUS_MESSAGES.get(new_status, STATUS_MESSAGES["pending"])
        return self.send(to, f"{title} #{order.get('order_number')} - {self.settings.store_name}", html)
