"""
Order creation and payment workflows.

Checkout turns the caller's cart into an Order with frozen prices and opens a
hosted payment session for it. Payment is applied either from client-initiated
verification or from the gateway webhook; both go through ``apply_payment``,
which flips ``is_paid`` with a single conditional update so stock is only
decremented by the request that wins it.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database

import settings
from database import create_document, get_documents, now, to_object_id
from errors import AuthorizationError, NotFoundError, PaymentPendingError, UpstreamError, ValidationError
from gateway import CustomerDetails, PaymentGateway, PaymentSession
from pricing import calculate_prices, gateway_amount
from schemas import Order, OrderItem, PaymentResult

logger = structlog.get_logger(__name__)

SUCCESS_STATUSES = ("SUCCESS", "COMPLETED")

DEFAULT_EMAIL = "customer@example.com"
DEFAULT_PHONE = "9999999999"
DEFAULT_NAME = "Customer"


# ----------------------------------------------------------------------------
# Lookups
# ----------------------------------------------------------------------------

def find_order(db: Database, order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order")})
    if not order:
        raise NotFoundError("Order not found")
    return order


def get_order(db: Database, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    """Fetch an order for its owner or an admin."""
    order = find_order(db, order_id)
    if order["user_id"] != str(user["_id"]) and not user.get("is_admin"):
        raise AuthorizationError("Not authorized")
    return order


def list_user_orders(db: Database, user_id: str) -> List[Dict[str, Any]]:
    return get_documents(db, "order", {"user_id": user_id}, newest_first=True)


def list_orders(db: Database) -> List[Dict[str, Any]]:
    return get_documents(db, "order", newest_first=True)


def mark_delivered(db: Database, order_id: str) -> Dict[str, Any]:
    stamp = now()
    order = db["order"].find_one_and_update(
        {"_id": to_object_id(order_id, "Order")},
        {"$set": {"is_delivered": True, "delivered_at": stamp, "updated_at": stamp}},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise NotFoundError("Order not found")
    logger.info("order_delivered", order_id=order_id)
    return order


# ----------------------------------------------------------------------------
# Order creation
# ----------------------------------------------------------------------------

def _resolve_items(db: Database, cart_items: List[Dict[str, Any]]) -> List[OrderItem]:
    """Snapshot the current product data for every cart line."""
    items = []
    for line in cart_items:
        product = db["product"].find_one({"_id": to_object_id(line["product_id"], "Product")})
        if not product:
            raise ValidationError("Product in cart no longer exists")
        quantity = int(line["quantity"])
        if quantity > int(product.get("stock", 0)):
            raise ValidationError(f"Insufficient stock for {product.get('name', 'product')}")
        items.append(
            OrderItem(
                product_id=str(product["_id"]),
                name=product.get("name", ""),
                quantity=quantity,
                price=float(product.get("price", 0)),
                image=(product.get("images") or [""])[0],
            )
        )
    return items


def _customer_details(user: Dict[str, Any], shipping_address: Dict[str, Any]) -> CustomerDetails:
    return CustomerDetails(
        customer_id=str(user["_id"]),
        customer_email=user.get("email") or DEFAULT_EMAIL,
        customer_phone=str(shipping_address.get("phone") or DEFAULT_PHONE),
        customer_name=shipping_address.get("name") or user.get("name") or DEFAULT_NAME,
    )


def create_order(
    db: Database,
    gateway: PaymentGateway,
    user: Dict[str, Any],
    shipping_address: Dict[str, Any],
    frontend_origin: str,
    backend_origin: str,
) -> Tuple[Dict[str, Any], PaymentSession]:
    """Turn the user's cart into an unpaid order and open a payment session for it.

    Returns the stored order and the gateway session the browser is redirected to.
    On a gateway failure the new order is removed again and the cart is left as is.
    """
    user_id = str(user["_id"])
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart or not cart.get("items"):
        raise ValidationError("Cart is empty")

    gateway.ensure_configured()

    items = _resolve_items(db, cart["items"])
    prices = calculate_prices((item.price, item.quantity) for item in items)

    order = Order(
        user_id=user_id,
        items=items,
        shipping_address=shipping_address,
        payment_method=gateway.provider,
        items_price=prices.items_price,
        shipping_price=prices.shipping_price,
        tax_price=prices.tax_price,
        total_price=prices.total_price,
    )
    order_id = create_document(db, "order", order)
    log = logger.bind(order_id=order_id, user_id=user_id)
    log.info("order_created", total_price=prices.total_price, items=len(items))

    try:
        session = gateway.create_order(
            order_id=order_id,
            amount=gateway_amount(prices.total_price),
            currency=settings.ORDER_CURRENCY,
            customer=_customer_details(user, shipping_address),
            return_url=f"{frontend_origin.rstrip('/')}/orders/{order_id}",
            notify_url=f"{backend_origin.rstrip('/')}/api/orders/{order_id}/webhook",
            note=f"Order {order_id}",
        )
    except UpstreamError as e:
        db["order"].delete_one({"_id": to_object_id(order_id, "Order")})
        log.warning("payment_session_failed", error=e.message)
        raise

    payment_result = PaymentResult(
        provider=gateway.provider,
        order_id=session.order_id,
        token=session.order_token,
        payment_session_id=session.payment_session_id,
    )
    stored = db["order"].find_one_and_update(
        {"_id": to_object_id(order_id, "Order")},
        {"$set": {"payment_result": payment_result.model_dump(), "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )

    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": [], "updated_at": now()}})
    log.info("payment_session_created", gateway_order_id=session.order_id)
    return stored, session


# ----------------------------------------------------------------------------
# Payment
# ----------------------------------------------------------------------------

def _payment_time(payment: Dict[str, Any]) -> datetime:
    value = payment.get("payment_time")
    if value:
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("unparseable_payment_time", payment_time=value)
    return now()


def _decrement_stock(db: Database, order: Dict[str, Any]) -> List[str]:
    """Take every line item out of stock; return the products that could not cover it."""
    shortfalls = []
    for item in order.get("items", []):
        result = db["product"].update_one(
            {"_id": to_object_id(item["product_id"], "Product"), "stock": {"$gte": item["quantity"]}},
            {"$inc": {"stock": -item["quantity"]}, "$set": {"updated_at": now()}},
        )
        if result.modified_count == 0:
            shortfalls.append(item["product_id"])
    return shortfalls


def apply_payment(db: Database, order: Dict[str, Any], payment: Dict[str, Any]) -> Dict[str, Any]:
    """Mark an order paid from a successful gateway payment and take its items out of stock.

    Safe to call any number of times: only the call that flips ``is_paid`` touches stock.
    """
    previous = order.get("payment_result") or {}
    payment_id = payment.get("cf_payment_id") or payment.get("payment_id")
    payment_result = PaymentResult(
        provider=previous.get("provider", "cashfree"),
        order_id=previous.get("order_id"),
        token=previous.get("token"),
        payment_session_id=previous.get("payment_session_id"),
        payment_id=str(payment_id) if payment_id is not None else None,
        signature=payment.get("payment_signature"),
    )
    log = logger.bind(order_id=str(order["_id"]), payment_id=payment_result.payment_id)

    paid = db["order"].find_one_and_update(
        {"_id": order["_id"], "is_paid": False},
        {
            "$set": {
                "is_paid": True,
                "paid_at": _payment_time(payment),
                "payment_result": payment_result.model_dump(),
                "updated_at": now(),
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if paid is None:
        log.info("payment_already_applied")
        return db["order"].find_one({"_id": order["_id"]})

    shortfalls = _decrement_stock(db, paid)
    if shortfalls:
        log.error("stock_shortfall", products=shortfalls)
        paid = db["order"].find_one_and_update(
            {"_id": paid["_id"]},
            {"$set": {"stock_shortfalls": shortfalls, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
    log.info("payment_applied")
    return paid


def verify_payment(db: Database, gateway: PaymentGateway, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    """Reconcile an order with the gateway after the customer returns from checkout."""
    order = find_order(db, order_id)
    if order["user_id"] != str(user["_id"]):
        raise AuthorizationError("Not authorized")
    session_order_id = (order.get("payment_result") or {}).get("order_id")
    if not session_order_id:
        raise ValidationError("Payment session is missing for this order")
    if order.get("is_paid"):
        return order

    gateway.ensure_configured()
    payments = gateway.get_payments(session_order_id)
    successful = next((p for p in payments if p.get("payment_status") in SUCCESS_STATUSES), None)
    if successful is None:
        logger.info("payment_pending", order_id=order_id, attempts=len(payments))
        raise PaymentPendingError("Payment not successful yet. Please try again.")

    return apply_payment(db, order, successful)


def handle_payment_webhook(db: Database, order_id: str, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Apply a gateway notification whose signature the caller has already checked.

    Returns the order when the notification carried a successful payment.
    """
    data = event.get("data") or {}
    payment = data.get("payment") or {}
    notified_order_id = (data.get("order") or {}).get("order_id")

    order = find_order(db, order_id)
    session_order_id = (order.get("payment_result") or {}).get("order_id")
    if not session_order_id or str(notified_order_id) != session_order_id:
        raise ValidationError("Webhook does not match this order")

    status = payment.get("payment_status")
    if status not in SUCCESS_STATUSES:
        logger.info("webhook_ignored", order_id=order_id, event_type=event.get("type"), payment_status=status)
        return None
    return apply_payment(db, order, payment)
