"""Merchant notification on a confirmed payment.

Email goes out through Resend, SMS and WhatsApp through Twilio. Each
channel is sent independently: one failing channel is logged and the
others still go out.
"""

from typing import Callable, Optional

import resend
import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session
from twilio.rest import Client as TwilioClient

from models import Order
from observability import SideEffect, attempt
from settings import Settings

logger = structlog.get_logger(__name__)

EmailSender = Callable[[str, str, str, str], None]   # (to, subject, html, text)
MessageSender = Callable[[str, str, str], None]      # (from, to, body)


def format_amount(minor: int, currency: str) -> str:
    return f"{(minor or 0) / 100:,.2f} {currency.upper()}"


def resend_sender(api_key: str, from_address: str) -> EmailSender:
    resend.api_key = api_key

    def send(to: str, subject: str, html: str, text: str) -> None:
        resend.Emails.send({"from": from_address, "to": [to], "subject": subject, "html": html, "text": text})

    return send


def twilio_sender(account_sid: str, auth_token: str) -> MessageSender:
    client = TwilioClient(account_sid, auth_token)

    def send(from_: str, to: str, body: str) -> None:
        client.messages.create(from_=from_, to=to, body=body)

    return send


def render(order: Order) -> tuple[str, str, str]:
    """Return (subject, text body, html body) for a paid order."""
    currency = order.currency
    total = format_amount(order.amount_total, currency)
    created = order.created_at.strftime("%Y-%m-%d %H:%M") if order.created_at else ""
    lines = [(item.quantity, item.name, format_amount(item.unit_amount * item.quantity, currency)) for item in order.items]

    subject = f"New order #{order.id[:8]} - {total}"
    text = "\n".join(
        [
            "Payment confirmed",
            "",
            f"Order: {order.id}",
            f"Total: {total}",
            "",
            "Items:",
            *(f"- {qty} x {name} - {amount}" for qty, name, amount in lines),
            "",
            f"Status: {order.status}",
            f"Date: {created}",
        ]
    )
    html = (
        "<h2>Payment confirmed</h2>"
        f"<p><b>Order:</b> {order.id}<br/><b>Total:</b> {total}<br/>"
        f"<b>Status:</b> {order.status}<br/><b>Date:</b> {created}</p><hr/>"
        "<ul>" + "".join(f"<li>{qty} x {name} - {amount}</li>" for qty, name, amount in lines) + "</ul>"
    )
    return subject, text, html


class NotificationDispatcher:
    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        email_sender: Optional[EmailSender] = None,
        message_sender: Optional[MessageSender] = None,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self.email_sender = email_sender
        self.message_sender = message_sender
        if email_sender is None and settings.resend_api_key:
            self.email_sender = resend_sender(settings.resend_api_key, settings.notify_email_from)
        if message_sender is None and settings.twilio_account_sid and settings.twilio_auth_token:
            self.message_sender = twilio_sender(settings.twilio_account_sid, settings.twilio_auth_token)

    def notify_merchant(self, order_id: str) -> list[SideEffect]:
        with Session(self.engine) as session:
            order = session.get(Order, order_id)
            if order is None or order.merchant is None:
                logger.warning("notify_order_missing", order_id=order_id)
                return []
            merchant = order.merchant
            subject, text, html = render(order)

        outcomes = []
        tags = {"handler": "notify", "order_id": order_id}
        if merchant.notify_email_enabled and merchant.notify_email and self.email_sender:
            outcomes.append(
                attempt("notify_email", lambda: self.email_sender(merchant.notify_email, subject, html, text), tags=tags)
            )
        if merchant.notify_sms_enabled and merchant.notify_phone and self.message_sender and self.settings.twilio_from:
            outcomes.append(
                attempt(
                    "notify_sms",
                    lambda: self.message_sender(self.settings.twilio_from, merchant.notify_phone, text),
                    tags=tags,
                )
            )
        if (
            merchant.notify_whatsapp_enabled
            and merchant.notify_phone
            and self.message_sender
            and self.settings.twilio_whatsapp_from
        ):
            outcomes.append(
                attempt(
                    "notify_whatsapp",
                    lambda: self.message_sender(
                        f"whatsapp:{self.settings.twilio_whatsapp_from}", f"whatsapp:{merchant.notify_phone}", text
                    ),
                    tags=tags,
                )
            )
        logger.info("merchant_notified", order_id=order_id, channels=[o.name for o in outcomes if o.ok])
        return outcomes
