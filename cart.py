"""
Cart operations.

A cart holds product references and quantities only. Prices, names, images
and stock are read live from the product collection every time the cart is
shown, and lines whose product has since been deleted are dropped from the
view and pruned from storage.
"""
from typing import List, Tuple

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
import structlog

from database import utcnow
from errors import Conflict, NotFound
from schemas import CartLine

logger = structlog.get_logger(__name__)

PLACEHOLDER_IMAGE = "https://via.placeholder.com/150"


def _ensure_cart(db: Database, user_id: ObjectId) -> None:
    try:
        db["cart"].update_one(
            {"user_id": user_id},
            {"$setOnInsert": {"items": [], "created_at": utcnow()}},
            upsert=True,
        )
    except DuplicateKeyError:
        # a concurrent request created it first
        pass


def add_item(db: Database, user_id: ObjectId, product_id: ObjectId, quantity: int,
             retries: int = 5) -> Tuple[List[dict], List[ObjectId]]:
    if db["product"].find_one({"_id": product_id}, {"_id": 1}) is None:
        raise NotFound("Product not found")

    _ensure_cart(db, user_id)
    carts = db["cart"]

    for _ in range(retries):
        res = carts.update_one(
            {"user_id": user_id, "items.product_id": product_id},
            {"$inc": {"items.$.quantity": quantity}, "$set": {"updated_at": utcnow()}},
        )
        if res.matched_count:
            logger.info("cart_line_merged", user_id=str(user_id), product_id=str(product_id), quantity=quantity)
            break
        line = CartLine(product_id=product_id, quantity=quantity)
        res = carts.update_one(
            {"user_id": user_id, "items.product_id": {"$ne": product_id}},
            {"$push": {"items": line.to_mongo()}, "$set": {"updated_at": utcnow()}},
        )
        if res.matched_count:
            logger.info("cart_line_added", user_id=str(user_id), product_id=str(product_id), quantity=quantity)
            break
    else:
        logger.warning("cart_add_contended", user_id=str(user_id), product_id=str(product_id))
        raise Conflict("Cart is being updated, please retry")

    return get_cart(db, user_id)


def hydrate(db: Database, cart: dict) -> Tuple[List[dict], List[ObjectId]]:
    """Join cart lines to live products; return (lines, unresolved product ids)."""
    items = cart.get("items") or []
    ids = [i.get("product_id") for i in items if i.get("product_id") is not None]
    products = {
        p["_id"]: p
        for p in db["product"].find({"_id": {"$in": ids}}, {"name": 1, "price": 1, "image_url": 1, "stock": 1})
    }

    lines = []
    stale = []
    for item in items:
        product = products.get(item.get("product_id"))
        if product is None:
            stale.append(item.get("product_id"))
            continue
        lines.append({
            "id": str(item["_id"]),
            "product_id": str(product["_id"]),
            "name": product.get("name") or "Unknown Product",
            "price": float(product.get("price") or 0),
            "image_url": product.get("image_url") or PLACEHOLDER_IMAGE,
            "quantity": item.get("quantity", 1),
            "stock": product.get("stock") or 0,
        })
    return lines, stale


def get_cart(db: Database, user_id: ObjectId) -> Tuple[List[dict], List[ObjectId]]:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        return [], []
    return hydrate(db, cart)


def totals(lines: List[dict]) -> dict:
    return {
        "totalItems": len(lines),
        "totalPrice": round(sum(line["price"] * line["quantity"] for line in lines), 2),
    }


def prune_stale_lines(db: Database, user_id: ObjectId, product_ids: List[ObjectId]) -> int:
    if not product_ids:
        return 0
    res = db["cart"].update_one(
        {"user_id": user_id},
        {"$pull": {"items": {"product_id": {"$in": product_ids}}}},
    )
    logger.info("cart_stale_lines_pruned", user_id=str(user_id), count=len(product_ids))
    return res.modified_count


def update_quantity(db: Database, user_id: ObjectId, line_id: ObjectId, quantity: int) -> None:
    """Set a line's quantity exactly; anything below 1 removes the line."""
    if quantity < 1:
        remove_item(db, user_id, line_id)
        return
    db["cart"].update_one(
        {"user_id": user_id, "items._id": line_id},
        {"$set": {"items.$.quantity": quantity, "updated_at": utcnow()}},
    )
    logger.info("cart_line_updated", user_id=str(user_id), line_id=str(line_id), quantity=quantity)


def remove_item(db: Database, user_id: ObjectId, line_id: ObjectId) -> None:
    db["cart"].update_one({"user_id": user_id}, {"$pull": {"items": {"_id": line_id}}})
    logger.info("cart_line_removed", user_id=str(user_id), line_id=str(line_id))


def clear_cart(db: Database, user_id: ObjectId) -> None:
    # $set rather than delete: the cart document stays, repeat calls are harmless
    db["cart"].update_one({"user_id": user_id}, {"$set": {"items": [], "updated_at": utcnow()}})
