"""Per-user cart operations.

A cart is created lazily the first time it is read or written, holds at most one
line item per product, and is emptied (never deleted) after checkout.
"""

from typing import Any, Dict, List

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from pymongo.database import Database

from database import doc_to_public, now, to_object_id
from errors import NotFoundError, ValidationError
from schemas import CartItem

logger = structlog.get_logger(__name__)


def _check_quantity(quantity: int) -> None:
    if not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Valid quantity required")


def _find_cart(db: Database, user_id: str) -> Dict[str, Any]:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFoundError("Cart not found")
    return cart


def _find_item(cart: Dict[str, Any], item_id: str) -> Dict[str, Any]:
    for item in cart.get("items", []):
        if item.get("id") == item_id:
            return item
    raise NotFoundError("Item not found in cart")


def _save_items(db: Database, cart: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": now()}})
    return {**cart, "items": items}


def get_or_create_cart(db: Database, user_id: str) -> Dict[str, Any]:
    try:
        return db["cart"].find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": {"items": [], "created_at": now(), "updated_at": now()}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # lost a first-access race to another request; its cart is the one
        return db["cart"].find_one({"user_id": user_id})


def add_item(db: Database, user_id: str, product_id: str, quantity: int) -> Dict[str, Any]:
    """Add a product, merging into the existing line item for it if there is one."""
    _check_quantity(quantity)
    product = db["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not product:
        raise NotFoundError("Product not found")
    stock = int(product.get("stock", 0))
    if quantity > stock:
        raise ValidationError("Insufficient stock")

    cart = get_or_create_cart(db, user_id)
    items = [dict(i) for i in cart.get("items", [])]
    pid = str(product["_id"])
    existing = next((i for i in items if i.get("product_id") == pid), None)
    if existing:
        merged = existing["quantity"] + quantity
        if merged > stock:
            raise ValidationError("Insufficient stock")
        existing["quantity"] = merged
    else:
        items.append(CartItem(id=str(ObjectId()), product_id=pid, quantity=quantity).model_dump())

    logger.info("cart_item_added", user_id=user_id, product_id=pid, quantity=quantity)
    return _save_items(db, cart, items)


def update_item(db: Database, user_id: str, item_id: str, quantity: int) -> Dict[str, Any]:
    _check_quantity(quantity)
    cart = _find_cart(db, user_id)
    item = _find_item(cart, item_id)
    product = db["product"].find_one({"_id": to_object_id(item["product_id"], "Product")})
    if not product or int(product.get("stock", 0)) < quantity:
        raise ValidationError("Insufficient stock")

    items = [dict(i, quantity=quantity) if i.get("id") == item_id else dict(i) for i in cart["items"]]
    return _save_items(db, cart, items)


def remove_item(db: Database, user_id: str, item_id: str) -> Dict[str, Any]:
    cart = _find_cart(db, user_id)
    _find_item(cart, item_id)
    items = [dict(i) for i in cart["items"] if i.get("id") != item_id]
    return _save_items(db, cart, items)


def clear_cart(db: Database, user_id: str) -> Dict[str, Any]:
    cart = _find_cart(db, user_id)
    logger.info("cart_cleared", user_id=user_id, items=len(cart.get("items", [])))
    return _save_items(db, cart, [])


def cart_to_public(db: Database, cart: Dict[str, Any]) -> Dict[str, Any]:
    """Render a cart with a product summary on every line item (None if the product is gone)."""
    items = cart.get("items", [])
    ids = []
    for item in items:
        try:
            ids.append(ObjectId(item["product_id"]))
        except (InvalidId, TypeError):
            continue
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})}

    public = doc_to_public(cart)
    public["items"] = []
    for item in items:
        product = products.get(item["product_id"])
        summary = None
        if product:
            summary = {
                "id": str(product["_id"]),
                "name": product.get("name"),
                "price": product.get("price", 0),
                "stock": product.get("stock", 0),
                "image": (product.get("images") or [""])[0],
            }
        public["items"].append({**item, "product": summary})
    return public
