"""
Status-change notifications for order owners. Uses SMTP when configured.
"""
import asyncio
import enum
import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional

from sqlalchemy.orm import Session

from parceltrack.config import settings
from parceltrack.models import Order, OrderStatus
from parceltrack.services.events import OrderStatusChanged

logger = logging.getLogger(__name__)


class EmailType(str, enum.Enum):
    ORDER_DISPATCHED = "ORDER_DISPATCHED"
    ORDER_IN_TRANSIT = "ORDER_IN_TRANSIT"
    ORDER_DELIVERED = "ORDER_DELIVERED"
    ORDER_EXCEPTION = "ORDER_EXCEPTION"


EMAIL_TYPE_BY_STATUS = {
    OrderStatus.DISPATCHED: EmailType.ORDER_DISPATCHED,
    OrderStatus.TRANSIT: EmailType.ORDER_IN_TRANSIT,
    OrderStatus.DELIVERED: EmailType.ORDER_DELIVERED,
    OrderStatus.EXCEPTION: EmailType.ORDER_EXCEPTION,
    OrderStatus.UNDELIVERED: EmailType.ORDER_EXCEPTION,
}

SUBJECTS = {
    EmailType.ORDER_DISPATCHED: "Your order has been dispatched",
    EmailType.ORDER_IN_TRANSIT: "Your order is on its way",
    EmailType.ORDER_DELIVERED: "Your order has been delivered",
    EmailType.ORDER_EXCEPTION: "There is a problem with your delivery",
}

STATUS_DESCRIPTIONS = {
    OrderStatus.PENDING: "Your order is being prepared",
    OrderStatus.PROCESSING: "Your shipping label has been printed",
    OrderStatus.DISPATCHED: "Shipping information received",
    OrderStatus.TRANSIT: "Your order is in transit",
    OrderStatus.PICKUP: "Ready for pickup",
    OrderStatus.UNDELIVERED: "Delivery attempt unsuccessful",
    OrderStatus.DELIVERED: "Your order has been delivered",
    OrderStatus.EXCEPTION: "An exception occurred during delivery",
    OrderStatus.EXPIRED: "Tracking information has expired",
    OrderStatus.NOTFOUND: "Tracking information not found",
}


def email_type_for(status: str) -> Optional[EmailType]:
    try:
        return EMAIL_TYPE_BY_STATUS.get(OrderStatus(status))
    except ValueError:
        return None


def status_description(status: str) -> str:
    try:
        return STATUS_DESCRIPTIONS.get(OrderStatus(status), "Status update")
    except ValueError:
        return "Status update"


def build_status_email(event: OrderStatusChanged, email_type: EmailType, customer_name: Optional[str]) -> tuple[str, str]:
    """Return (subject, plain-text body) for a status change."""
    greeting = f"Hi {customer_name}," if customer_name else "Hi,"
    tracking_line = f"Tracking number: {event.tracking_number}\n" if event.tracking_number else ""
    body = f"""{greeting}

{status_description(event.new_status)}.

Order: {event.order_id}
Previous status: {event.old_status}
New status: {event.new_status}
{tracking_line}
Thank you for your order.
"""
    return SUBJECTS[email_type], body


class Notifier(ABC):
    """Consumer of order status-changed events."""

    @abstractmethod
    async def notify_status_changed(self, event: OrderStatusChanged) -> None:
        ...


class EmailNotifier(Notifier):
    """Emails the order owner for statuses that have an email type; others are skipped."""

    def __init__(self, session_factory: Callable[[], Session], sender: Optional[Callable[[str, str, str], bool]] = None):
        self.session_factory = session_factory
        self.sender = sender or send_email

    async def notify_status_changed(self, event: OrderStatusChanged) -> None:
        email_type = email_type_for(event.new_status)
        if email_type is None:
            logger.debug("No email for status %s (order %s)", event.new_status, event.order_id)
            return

        db = self.session_factory()
        try:
            order = db.get(Order, event.order_id)
            to_email = order.customer_email if order else None
            customer_name = order.customer_name if order else None
        finally:
            db.close()

        if not to_email:
            logger.warning("Order %s has no customer email; skipping %s", event.order_id, email_type.value)
            return

        subject, body = build_status_email(event, email_type, customer_name)
        sent = await asyncio.get_running_loop().run_in_executor(None, self.sender, to_email, subject, body)
        if sent:
            logger.info("%s email sent to %s for order %s", email_type.value, to_email, event.order_id)


def send_email(to_email: str, subject: str, body: str) -> bool:
    """
    Send a plain-text email. Returns True if sent, False if skipped or failed.
    Requires SMTP_HOST (and SMTP_USER/SMTP_PASSWORD if auth needed).
    """
    host = (settings.SMTP_HOST or "").strip()
    if not host:
        logger.debug("SMTP not configured; skipping email to %s", to_email)
        return False
    port = settings.SMTP_PORT or 587
    user = (settings.SMTP_USER or "").strip()
    password = (settings.SMTP_PASSWORD or "").strip()
    from_addr = (settings.EMAIL_FROM or "").strip()

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_email
    msg.attach(MIMEText(body, "plain"))

    try:
        with smtplib.SMTP(host, port) as server:
            if settings.SMTP_USE_TLS:
                server.starttls()
            if user and password:
                server.login(user, password)
            server.sendmail(from_addr, [to_email], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Failed to send email to %s: %s", to_email, e)
        return False
