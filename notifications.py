"""
Notification dispatch

Best-effort side channel for order events: in-app notification records plus
email. Jobs are handed to a scheduler (FastAPI's BackgroundTasks in the API)
and every job is guarded, so a failure here is logged and never reaches the
workflow that triggered it.
"""

import logging
import smtplib
from email.message import EmailMessage
from typing import Callable, Optional

import config
from database import create_document, object_id, paginate, utcnow
from errors import NotFoundError
from schemas import Notification, NotificationType, Role

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, body: str) -> None:
    if not config.SMTP_HOST:
        logger.info("Email not configured, would send to %s: %s", to, subject)
        return

    msg = EmailMessage()
    msg["From"] = f"Fola Store <{config.EMAIL_FROM}>"
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body)

    if config.SMTP_PORT == 465:
        smtp = smtplib.SMTP_SSL(config.SMTP_HOST, config.SMTP_PORT, timeout=10)
    else:
        smtp = smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=10)
    with smtp:
        if config.SMTP_PORT != 465:
            smtp.starttls()
        if config.SMTP_USER and config.SMTP_PASSWORD:
            smtp.login(config.SMTP_USER, config.SMTP_PASSWORD)
        smtp.send_message(msg)
    logger.info("Email sent to %s: %s", to, subject)


def create_notification(db, recipient_id: str, type: NotificationType, title: str,
                        message: str, data: Optional[dict] = None) -> str:
    notification = Notification(
        recipient_id=recipient_id, type=type, title=title, message=message, data=data or {},
    )
    return create_document(db, "notification", notification)


def notify_admins(db, type: NotificationType, title: str, message: str, data: dict) -> int:
    admins = list(db["user"].find(
        {"role": {"$in": [Role.ADMIN.value, Role.STAFF.value]}, "is_active": True}
    ))
    for admin in admins:
        create_notification(db, str(admin["_id"]), type, title, message, data)
        send_email(admin["email"], title, f"Hi {admin.get('first_name', '')},\n\n{message}")
    return len(admins)


def notify_customer(db, order: dict, type: NotificationType, title: str, message: str) -> None:
    create_notification(db, order["customer_id"], type, title, message, {
        "orderId": order["id"],
        "orderNumber": order["order_number"],
        "status": order["status"],
    })
    send_email(order["shipping_address"]["email"], title, message)


def _money(order: dict) -> str:
    return f"{order['currency']} {order['total']:,.2f}"


def notify_new_order(db, order: dict) -> None:
    address = order["shipping_address"]
    notify_admins(db, NotificationType.NEW_ORDER, "New Order Received",
                  f"Order #{order['order_number']} has been placed. Total: {_money(order)}",
                  {
                      "orderId": order["id"],
                      "orderNumber": order["order_number"],
                      "total": order["total"],
                      "customerName": f"{address['first_name']} {address['last_name']}",
                  })
    send_email(address["email"], f"Order Confirmation - {order['order_number']}",
               f"Thank you for your order! Order {order['order_number']} "
               f"({_money(order)}) has been received and is awaiting payment.")


def notify_low_stock(db, product: dict) -> None:
    notify_admins(db, NotificationType.LOW_STOCK, "Low Stock Alert",
                  f"{product['name']} is running low on stock. "
                  f"Current stock: {product.get('total_stock', 0)} units.",
                  {
                      "productId": str(product["_id"]),
                      "productName": product["name"],
                      "currentStock": product.get("total_stock", 0),
                      "threshold": product.get("low_stock_threshold"),
                  })


def notify_payment_received(db, order: dict) -> None:
    notify_admins(db, NotificationType.ORDER_STATUS, "Payment Received",
                  f"Payment for order #{order['order_number']} confirmed. Total: {_money(order)}",
                  {"orderId": order["id"], "orderNumber": order["order_number"]})
    notify_customer(db, order, NotificationType.ORDER_STATUS, "Payment Confirmed",
                    f"We have received your payment for order {order['order_number']}.")


STATUS_MESSAGES = {
    "processing": "Your order {number} is being processed.",
    "shipped": "Your order {number} has been shipped!",
    "delivered": "Great news! Your order {number} has been delivered. Thank you for shopping with us!",
    "cancelled": "Your order {number} has been cancelled.",
    "refunded": "Your payment for order {number} has been refunded.",
}


def notify_status_changed(db, order: dict) -> None:
    message = STATUS_MESSAGES.get(order["status"], "Your order {number} was updated.")
    message = message.format(number=order["order_number"])
    if order["status"] == "shipped" and order.get("tracking_number"):
        message += f" Tracking number: {order['tracking_number']}"
        if order.get("carrier"):
            message += f" ({order['carrier']})"
    if order["status"] == "delivered":
        title = f"Delivery Confirmation - {order['order_number']}"
    else:
        title = f"Order {order['order_number']} {order['status']}"
    notify_customer(db, order, NotificationType.ORDER_STATUS, title, message)


def _run_now(job, *args):
    job(*args)


def _guarded(job, *args):
    try:
        job(*args)
    except Exception:
        logger.exception("Notification job %s failed", job.__name__)


class NotificationDispatcher:
    """Schedules notification jobs without letting them fail the caller."""

    def __init__(self, db, schedule: Optional[Callable] = None):
        self.db = db
        self._schedule = schedule or _run_now

    def _submit(self, job, *args):
        self._schedule(_guarded, job, self.db, *args)

    def new_order(self, order: dict):
        self._submit(notify_new_order, order)

    def low_stock(self, product: dict):
        self._submit(notify_low_stock, product)

    def payment_received(self, order: dict):
        self._submit(notify_payment_received, order)

    def status_changed(self, order: dict):
        self._submit(notify_status_changed, order)


# Recipient API

def list_notifications(db, user_id: str, page: int, limit: int, unread_only: bool = False):
    query = {"recipient_id": user_id}
    if unread_only:
        query["is_read"] = False
    items, pagination = paginate(db, "notification", query, page, limit)
    pagination["unreadCount"] = db["notification"].count_documents(
        {"recipient_id": user_id, "is_read": False}
    )
    return items, pagination


def _owned(db, notification_id: str, user_id: str) -> dict:
    doc = db["notification"].find_one(
        {"_id": object_id(notification_id, "Notification"), "recipient_id": user_id}
    )
    if not doc:
        raise NotFoundError("Notification not found")
    return doc


def mark_read(db, notification_id: str, user_id: str) -> None:
    doc = _owned(db, notification_id, user_id)
    db["notification"].update_one(
        {"_id": doc["_id"]}, {"$set": {"is_read": True, "read_at": utcnow(), "updated_at": utcnow()}}
    )


def mark_all_read(db, user_id: str) -> int:
    result = db["notification"].update_many(
        {"recipient_id": user_id, "is_read": False},
        {"$set": {"is_read": True, "read_at": utcnow(), "updated_at": utcnow()}},
    )
    return result.modified_count


def delete_notification(db, notification_id: str, user_id: str) -> None:
    doc = _owned(db, notification_id, user_id)
    db["notification"].delete_one({"_id": doc["_id"]})
