"""
Orders

Placement validates the whole cart against one batched read of the products
before any stock is written, then writes each touched product with a
compare-and-set. A write that loses to a concurrent order undoes the writes
that did land and the cart is validated again from fresh stock, so a failed
placement never leaves a net stock change and stock never goes negative.

Status changes go through a single transition table; cancellation always
restores stock, whoever triggers it.
"""

import logging
import re
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, time
from typing import Dict, List, Optional

import config
from auth import ensure_owner
from catalog import (
    PURCHASABLE,
    adjust_variant_stock,
    apply_stock_changes,
    effective_price,
    find_variant,
    is_low_stock,
    load_products,
)
from database import create_document, generate_order_number, object_id, paginate, to_dict, utcnow
from errors import ConflictError, InsufficientStockError, InvalidInputError, NotFoundError
from notifications import NotificationDispatcher
from schemas import (
    CartItem,
    CreateOrderRequest,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    UpdateOrderStatusRequest,
)

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

CUSTOMER_CANCELLABLE = {OrderStatus.PENDING, OrderStatus.PROCESSING}

# Fields a paid order may no longer change
FROZEN_WHEN_PAID = {"items", "subtotal", "shipping_cost", "tax", "discount", "total", "currency"}


# Ledger

def find_order(db, order_id: str) -> dict:
    order = db["order"].find_one({"_id": object_id(order_id, "Order")})
    if not order:
        raise NotFoundError("Order not found")
    return order


def reference_query(reference: str) -> dict:
    """Match an order by its current or any earlier payment reference."""
    return {"$or": [{"payment.reference": reference}, {"payment.references": reference}]}


def find_order_by_reference(db, reference: str) -> dict:
    order = db["order"].find_one(reference_query(reference))
    if not order:
        raise NotFoundError("Order not found")
    return order


def save_order(db, order: dict, updates: dict, expect: Optional[dict] = None) -> dict:
    """Apply ``updates`` to a stored order.

    ``expect`` adds conditions on the stored document; when they no longer
    hold the write is refused with ConflictError.
    """
    paid = order.get("payment", {}).get("status") == PaymentStatus.COMPLETED.value
    touched = {key.split(".")[0] for key in updates}
    if paid and touched & FROZEN_WHEN_PAID:
        raise InvalidInputError("Items and totals of a paid order cannot change")

    updates = dict(updates, updated_at=utcnow())
    query = {"_id": order["_id"]}
    query.update(expect or {})
    result = db["order"].update_one(query, {"$set": updates})
    if result.matched_count == 0:
        raise ConflictError("Order was changed by another request, reload and try again")
    return db["order"].find_one({"_id": order["_id"]})


def get_order(db, order_id: str, user: dict) -> dict:
    order = find_order(db, order_id)
    ensure_owner(order, user)
    return to_dict(order)


def list_my_orders(db, user: dict, page: int, limit: int):
    return paginate(db, "order", {"customer_id": user["id"]}, page, limit)


def list_orders(db, page: int, limit: int, status: Optional[str] = None,
                payment_status: Optional[str] = None, search: Optional[str] = None,
                start_date: Optional[datetime] = None, end_date: Optional[datetime] = None):
    query = {}
    if status:
        query["status"] = status
    if payment_status:
        query["payment.status"] = payment_status
    if search:
        query["order_number"] = {"$regex": re.escape(search), "$options": "i"}
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = start_date
        if end_date:
            if end_date.time() == time(0, 0):
                end_date = datetime.combine(end_date.date(), time.max, tzinfo=end_date.tzinfo)
            query["created_at"]["$lte"] = end_date
    return paginate(db, "order", query, page, limit)


# Placement

def _check_quantity(product: dict, quantity: int) -> None:
    minimum = product.get("minimum_order") or 1
    maximum = product.get("maximum_order")
    if quantity < minimum:
        raise InvalidInputError(
            f"Minimum order for {product['name']} is {minimum} {product.get('unit_of_measure', 'unit')}(s)",
            errors=[{"field": "quantity", "message": f"Must be at least {minimum}"}],
        )
    if maximum is not None and quantity > maximum:
        raise InvalidInputError(
            f"Maximum order for {product['name']} is {maximum} {product.get('unit_of_measure', 'unit')}(s)",
            errors=[{"field": "quantity", "message": f"Must be at most {maximum}"}],
        )


def build_order_lines(products: Dict[str, dict], items: List[CartItem]):
    """Validate and price every line against the loaded products.

    Returns (order items, per-product SKU deltas, subtotal). Nothing is written.
    """
    lines = []
    demand = defaultdict(int)
    deltas = defaultdict(dict)
    subtotal = 0.0

    for item in items:
        product = products.get(item.product)
        if product is None:
            raise NotFoundError(f"Product {item.product} not found")
        if product.get("status") not in PURCHASABLE:
            raise InvalidInputError(f"{product['name']} is not available for purchase")

        variant = find_variant(product, color=item.variant.color, sku=item.variant.sku)
        if variant is None:
            raise NotFoundError("Product variant not found")
        if not variant.get("is_available", True):
            raise InvalidInputError(f"{product['name']} in {variant['color']} is not available")

        _check_quantity(product, item.quantity)

        key = (item.product, variant["sku"])
        demand[key] += item.quantity
        if variant.get("stock", 0) < demand[key]:
            raise InsufficientStockError(product["name"], variant["color"], variant.get("stock", 0), demand[key])
        deltas[item.product][variant["sku"]] = -demand[key]

        unit_price = effective_price(product)
        total_price = round(unit_price * item.quantity, 2)
        subtotal += total_price
        lines.append(OrderItem(
            product_id=item.product,
            product_name=product["name"],
            product_image=product.get("featured_image", ""),
            variant={"sku": variant["sku"], "color": variant["color"], "color_hex": variant.get("color_hex", "")},
            quantity=item.quantity,
            unit_price=unit_price,
            total_price=total_price,
            unit_of_measure=product.get("unit_of_measure", "yard"),
        ))

    return lines, dict(deltas), round(subtotal, 2)


def price_order(subtotal: float, discount: float = 0.0) -> dict:
    if discount < 0 or discount > subtotal:
        raise InvalidInputError("Discount must be between zero and the order subtotal")
    shipping_cost = config.SHIPPING_FLAT_RATE
    if config.FREE_SHIPPING_THRESHOLD is not None and subtotal >= config.FREE_SHIPPING_THRESHOLD:
        shipping_cost = 0.0
    tax = round(subtotal * config.TAX_RATE / 100.0, 2)
    return {
        "subtotal": round(subtotal, 2),
        "shipping_cost": round(shipping_cost, 2),
        "tax": tax,
        "discount": round(discount, 2),
        "total": round(subtotal + shipping_cost + tax - discount, 2),
    }


def _undo_stock(db, written: Dict[str, dict], deltas: Dict[str, Dict[str, int]]) -> None:
    for product_id in written:
        for sku, delta in deltas[product_id].items():
            adjust_variant_stock(db, product_id, sku, -delta)


def _write_stock(db, products: Dict[str, dict], deltas: Dict[str, Dict[str, int]]) -> Optional[Dict[str, dict]]:
    """Write every product's stock. None means a concurrent write won; nothing is left applied."""
    with ThreadPoolExecutor(max_workers=min(8, len(deltas))) as pool:
        futures = {
            product_id: pool.submit(apply_stock_changes, db, products[product_id], product_deltas)
            for product_id, product_deltas in deltas.items()
        }

    written = {}
    lost = False
    error = None
    for product_id, future in futures.items():
        try:
            updated = future.result()
        except Exception as exc:
            error = error or exc
            continue
        if updated is None:
            lost = True
        else:
            written[product_id] = updated

    if lost or error is not None:
        _undo_stock(db, written, deltas)
        if error is not None:
            raise error
        return None
    return written


def place_order(db, user: dict, payload: CreateOrderRequest,
                dispatcher: Optional[NotificationDispatcher] = None, discount: float = 0.0) -> dict:
    dispatcher = dispatcher or NotificationDispatcher(db)

    if payload.payment_reference and db["order"].find_one(reference_query(payload.payment_reference)):
        raise ConflictError("Payment reference already used")

    product_ids = [item.product for item in payload.items]
    for attempt in range(1, config.STOCK_UPDATE_ATTEMPTS + 1):
        products = load_products(db, product_ids)
        lines, deltas, subtotal = build_order_lines(products, payload.items)
        written = _write_stock(db, products, deltas)
        if written is not None:
            break
        logger.warning("Stock changed during order placement, retrying (attempt %d)", attempt)
    else:
        raise ConflictError("Stock is changing too quickly, please try again")

    try:
        pricing = price_order(subtotal, discount)
        order_number = generate_order_number(db)
        reference = payload.payment_reference or f"{order_number}-{uuid.uuid4().hex[:8]}"
        order = Order(
            order_number=order_number,
            customer_id=user["id"],
            items=lines,
            currency=config.CURRENCY,
            shipping_address=payload.shipping_address,
            billing_address=payload.billing_address or payload.shipping_address,
            payment=Payment(
                method=payload.payment_method,
                reference=reference,
                references=[reference],
                amount=pricing["total"],
                currency=config.CURRENCY,
            ),
            customer_note=payload.customer_note,
            **pricing,
        )
        order_id = create_document(db, "order", order)
    except Exception:
        _undo_stock(db, written, deltas)
        raise

    created = to_dict(find_order(db, order_id))
    logger.info("Order %s placed by %s, total %s %.2f",
                created["order_number"], user["id"], created["currency"], created["total"])

    dispatcher.new_order(created)
    for product in written.values():
        if is_low_stock(product):
            dispatcher.low_stock(product)
    return created


# Cancellation and status transitions

def restore_order_stock(db, order: dict) -> int:
    restored = 0
    for item in order.get("items", []):
        if adjust_variant_stock(db, item["product_id"], item["variant"]["sku"], item["quantity"]):
            restored += 1
    return restored


def _transition(db, order: dict, target: OrderStatus, dispatcher: NotificationDispatcher,
                tracking_number: Optional[str] = None, carrier: Optional[str] = None) -> dict:
    now = utcnow()
    updates = {"status": target.value}
    if target == OrderStatus.SHIPPED:
        updates["shipped_at"] = now
        if tracking_number:
            updates["tracking_number"] = tracking_number
        if carrier:
            updates["carrier"] = carrier
    elif target == OrderStatus.DELIVERED:
        updates["delivered_at"] = now
        updates["fulfillment_status"] = "fulfilled"
    elif target == OrderStatus.CANCELLED:
        updates["cancelled_at"] = now
    elif target == OrderStatus.REFUNDED:
        if order["payment"]["status"] != PaymentStatus.COMPLETED.value:
            raise InvalidInputError("Only orders with a completed payment can be refunded")
        updates["payment.status"] = PaymentStatus.REFUNDED.value

    saved = save_order(db, order, updates, expect={"status": order["status"]})
    if target == OrderStatus.CANCELLED:
        restore_order_stock(db, saved)

    result = to_dict(saved)
    logger.info("Order %s: %s -> %s", result["order_number"], order["status"], target.value)
    dispatcher.status_changed(result)
    return result


def cancel_order(db, order_id: str, user: dict,
                 dispatcher: Optional[NotificationDispatcher] = None) -> dict:
    order = find_order(db, order_id)
    ensure_owner(order, user, allow_staff=False)
    status = OrderStatus(order["status"])
    if status not in CUSTOMER_CANCELLABLE:
        raise InvalidInputError(f"Cannot cancel order with status: {status.value}")
    return _transition(db, order, OrderStatus.CANCELLED, dispatcher or NotificationDispatcher(db))


def update_order_status(db, order_id: str, payload: UpdateOrderStatusRequest,
                        dispatcher: Optional[NotificationDispatcher] = None) -> dict:
    order = find_order(db, order_id)
    current = OrderStatus(order["status"])
    if payload.status not in TRANSITIONS[current]:
        raise InvalidInputError(f"Cannot change order status from {current.value} to {payload.status.value}")
    return _transition(db, order, payload.status, dispatcher or NotificationDispatcher(db),
                       tracking_number=payload.tracking_number, carrier=payload.carrier)
