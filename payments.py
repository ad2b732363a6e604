"""
Payments

Paystack sessions and reconciliation of their outcome with stored orders.
Reconciliation only moves payment and order status; stock was committed when
the order was placed.
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Optional

import requests

import config
from auth import ensure_owner
from database import to_dict, utcnow
from errors import ConflictError, InvalidInputError, PaymentProviderError, UnauthorizedError
from notifications import NotificationDispatcher
from orders import find_order, find_order_by_reference, reference_query, save_order
from schemas import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


def to_minor_units(amount: float) -> int:
    """Naira to kobo."""
    return int(round(amount * 100))


@dataclass
class PaymentVerification:
    reference: str
    status: str
    transaction_id: Optional[str] = None
    amount: Optional[int] = None  # minor units
    paid_at: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @classmethod
    def from_provider(cls, data: dict) -> "PaymentVerification":
        transaction_id = data.get("id")
        return cls(
            reference=data.get("reference", ""),
            status=data.get("status", ""),
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            amount=data.get("amount"),
            paid_at=data.get("paid_at"),
        )


class PaystackClient:
    """Thin client for the two Paystack calls the store needs."""

    def __init__(self, secret_key: str, base_url: str = "https://api.paystack.co",
                 callback_url: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            logger.error("Paystack %s %s failed: %s", method, path, exc)
            raise PaymentProviderError("Payment service error") from exc

        try:
            body = response.json()
        except ValueError:
            raise PaymentProviderError("Payment service returned an invalid response")

        if not response.ok or not body.get("status"):
            raise InvalidInputError(body.get("message") or "Payment request failed")
        return body.get("data") or {}

    def initialize(self, email: str, amount: float, reference: str, metadata: Optional[dict] = None) -> dict:
        payload = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
            "metadata": metadata or {},
        }
        if self.callback_url:
            payload["callback_url"] = f"{self.callback_url}?reference={reference}"
        return self._request("POST", "/transaction/initialize", json=payload)

    def verify(self, reference: str) -> PaymentVerification:
        data = self._request("GET", f"/transaction/verify/{reference}")
        verification = PaymentVerification.from_provider(data)
        if not verification.reference:
            verification.reference = reference
        return verification


def get_payment_provider() -> PaystackClient:
    return PaystackClient(
        config.PAYSTACK_SECRET_KEY,
        base_url=config.PAYSTACK_BASE_URL,
        callback_url=f"{config.CLIENT_URL}/orders/verify",
        timeout=config.PAYMENT_TIMEOUT,
    )


def initialize_payment(db, provider, order_id: str, user: dict) -> dict:
    order = find_order(db, order_id)
    ensure_owner(order, user, allow_staff=False)
    if order["payment"]["status"] == PaymentStatus.COMPLETED.value:
        raise InvalidInputError("Order has already been paid")
    if order["status"] != OrderStatus.PENDING.value:
        raise InvalidInputError(f"Cannot pay for order with status: {order['status']}")

    reference = f"ORD-{order_id}-{int(time.time() * 1000)}"
    data = provider.initialize(
        email=user["email"],
        amount=order["total"],
        reference=reference,
        metadata={
            "orderId": order_id,
            "orderNumber": order["order_number"],
            "customerName": f"{user.get('first_name', '')} {user.get('last_name', '')}".strip(),
        },
    )
    reference = data.get("reference") or reference
    # any earlier checkout session can still be paid
    references = list(order["payment"].get("references") or [order["payment"]["reference"]])
    if reference not in references:
        references.append(reference)
    save_order(db, order, {
        "payment.reference": reference,
        "payment.references": references,
        "payment.status": PaymentStatus.PROCESSING.value,
    }, expect={"payment.status": {"$ne": PaymentStatus.COMPLETED.value}})
    return {
        "authorizationUrl": data.get("authorization_url"),
        "accessCode": data.get("access_code"),
        "reference": reference,
    }


def reconcile_payment(db, order: dict, verification: PaymentVerification,
                      dispatcher: Optional[NotificationDispatcher] = None) -> dict:
    """Record the provider's verdict on the order. A completed payment is final."""
    if order["payment"]["status"] == PaymentStatus.COMPLETED.value:
        return to_dict(order)
    dispatcher = dispatcher or NotificationDispatcher(db)

    succeeded = verification.succeeded
    expected = to_minor_units(order["total"])
    if succeeded and verification.amount is not None and verification.amount != expected:
        logger.warning("Payment %s amount mismatch: paid %s, expected %s",
                       verification.reference, verification.amount, expected)
        succeeded = False

    if succeeded:
        updates = {
            "payment.status": PaymentStatus.COMPLETED.value,
            "payment.transaction_id": verification.transaction_id,
            "payment.paid_at": utcnow(),
        }
        if order["status"] == OrderStatus.PENDING.value:
            updates["status"] = OrderStatus.PROCESSING.value
    else:
        updates = {"payment.status": PaymentStatus.FAILED.value}

    try:
        saved = save_order(db, order, updates,
                           expect={"payment.status": {"$ne": PaymentStatus.COMPLETED.value}})
    except ConflictError:
        # another reconciliation completed the payment first
        return to_dict(find_order(db, str(order["_id"])))

    result = to_dict(saved)
    if succeeded:
        logger.info("Payment for order %s completed", result["order_number"])
        dispatcher.payment_received(result)
    else:
        logger.info("Payment for order %s failed (%s)", result["order_number"], verification.status)
    return result


def verify_payment(db, provider, reference: str, user: dict,
                   dispatcher: Optional[NotificationDispatcher] = None) -> dict:
    order = find_order_by_reference(db, reference)
    ensure_owner(order, user)
    if order["payment"]["status"] == PaymentStatus.COMPLETED.value:
        return to_dict(order)
    verification = provider.verify(reference)
    return reconcile_payment(db, order, verification, dispatcher)


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> None:
    secret = config.PAYSTACK_SECRET_KEY if secret is None else secret
    if not secret or not signature:
        raise UnauthorizedError("Invalid webhook signature")
    expected = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise UnauthorizedError("Invalid webhook signature")


def handle_webhook(db, event: dict, dispatcher: Optional[NotificationDispatcher] = None) -> bool:
    """Apply a verified provider event. Returns whether it changed anything we track."""
    if event.get("event") != "charge.success":
        return False
    data = event.get("data") or {}
    reference = data.get("reference")
    order = db["order"].find_one(reference_query(reference)) if reference else None
    if order is None:
        logger.warning("Webhook for unknown payment reference %s", reference)
        return False
    reconcile_payment(db, order, PaymentVerification.from_provider(data), dispatcher)
    return True
