"""
Checkout and order lifecycle.

An order is a frozen snapshot: line name, price and image are copied from the
product at checkout and the customer block is copied from the user record.
Later product edits or deletions never change order history.

Checkout is a small saga over independent writes: reserve stock per line,
insert the order, clear the cart. A failure after any reservation releases
the stock taken so far, and a failed cart clear also removes the order, so a
client retry cannot produce a duplicate order.
"""
from typing import Iterable, List, Set, Tuple

from bson import ObjectId
from fastapi import HTTPException
from pymongo.database import Database
from pymongo.errors import PyMongoError
import structlog

from auth import Identity
from cart import clear_cart
from database import create_document, serialize_doc, utcnow
from errors import Conflict, InvalidTransition, NotFound, ValidationFailed
from schemas import CustomerSnapshot, Order, OrderLine, OrderStatus, can_transition

logger = structlog.get_logger(__name__)


# ----------------------- Checkout -----------------------

def _reserve_stock(db: Database, product: dict, quantity: int) -> bool:
    if product.get("stock") is None:
        # untracked stock
        return True
    res = db["product"].update_one(
        {"_id": product["_id"], "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}},
    )
    return res.matched_count == 1


def _release_stock(db: Database, reserved: Iterable[Tuple[ObjectId, int]]) -> None:
    for product_id, quantity in reserved:
        db["product"].update_one({"_id": product_id}, {"$inc": {"stock": quantity}})
        logger.info("stock_released", product_id=str(product_id), quantity=quantity)


def place_order(db: Database, user_id: ObjectId, items: List[Tuple[ObjectId, int]]) -> str:
    """Snapshot the submitted lines into a Pending order and empty the cart.

    ``items`` are (product_id, quantity) pairs. Name, price and image come
    from the product record, not the client, and the total is recomputed.
    """
    if not items:
        raise ValidationFailed("Cart is empty")

    user = db["user"].find_one({"_id": user_id})
    if not user:
        raise NotFound("User not found")

    ids = list({pid for pid, _ in items})
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}})}
    for pid, _ in items:
        if pid not in products:
            raise NotFound(f"Product not found: {pid}")

    reserved = []
    try:
        for pid, quantity in items:
            product = products[pid]
            if not _reserve_stock(db, product, quantity):
                raise Conflict(f"Insufficient stock for {product.get('name') or pid}")
            if product.get("stock") is not None:
                reserved.append((pid, quantity))
                logger.info("stock_reserved", product_id=str(pid), quantity=quantity)

        lines = [
            OrderLine(
                product_id=pid,
                product_name=products[pid].get("name") or "",
                price=float(products[pid].get("price") or 0),
                quantity=quantity,
                image_url=products[pid].get("image_url") or "",
            )
            for pid, quantity in items
        ]
        order = Order(
            user_id=user_id,
            total_amount=round(sum(line.price * line.quantity for line in lines), 2),
            items=lines,
            customer=CustomerSnapshot(
                name=user.get("name") or "",
                email=user.get("email") or "",
                phone=user.get("phone") or "",
                address=user.get("address") or "",
            ),
            order_date=utcnow(),
        )
        order_id = create_document(db, "order", order.to_mongo())

        try:
            clear_cart(db, user_id)
        except PyMongoError:
            logger.error("cart_clear_failed", user_id=str(user_id), order_id=order_id)
            db["order"].delete_one({"_id": ObjectId(order_id)})
            raise
    except (HTTPException, PyMongoError):
        _release_stock(db, reserved)
        raise

    logger.info("order_placed", order_id=order_id, user_id=str(user_id),
                lines=len(lines), total_amount=order.total_amount)
    return order_id


# ----------------------- Access -----------------------

def _seller_product_ids(db: Database, lines: List[dict], seller_id: ObjectId) -> Set[ObjectId]:
    ids = [line.get("product_id") for line in lines if line.get("product_id") is not None]
    if not ids:
        return set()
    return {p["_id"] for p in db["product"].find({"_id": {"$in": ids}, "seller_id": seller_id}, {"_id": 1})}


def _is_customer(order: dict, caller: Identity) -> bool:
    return order.get("user_id") == caller.oid


def _is_line_seller(db: Database, order: dict, caller: Identity) -> bool:
    return caller.is_seller and bool(_seller_product_ids(db, order.get("items") or [], caller.oid))


def _find_order(db: Database, order_id: ObjectId) -> dict:
    order = db["order"].find_one({"_id": order_id})
    if not order:
        raise NotFound("Order not found")
    return order


# ----------------------- Queries -----------------------

def get_order_detail(db: Database, order_id: ObjectId, caller: Identity) -> dict:
    order = _find_order(db, order_id)
    if not (_is_customer(order, caller) or _is_line_seller(db, order, caller)):
        raise NotFound("Order not found")

    lines = order.get("items") or []
    # live product only backs legacy lines that were stored without a snapshot
    missing = [
        line.get("product_id") for line in lines
        if line.get("product_id") is not None and not (line.get("product_name") and line.get("image_url"))
    ]
    live = {}
    if missing:
        live = {p["_id"]: p for p in db["product"].find({"_id": {"$in": missing}}, {"name": 1, "image_url": 1})}

    items = []
    for line in lines:
        product = live.get(line.get("product_id")) or {}
        price = line.get("price") or 0
        quantity = line.get("quantity") or 1
        items.append({
            "id": str(line["_id"]),
            "product_id": line.get("product_id"),
            "product_name": line.get("product_name") or product.get("name") or "Unnamed Product",
            "product_image": line.get("image_url") or product.get("image_url") or "",
            "price": price,
            "quantity": quantity,
            "subtotal": price * quantity,
        })

    customer = order.get("customer") or {}
    return serialize_doc({
        "id": order["_id"],
        "customer_name": customer.get("name") or "N/A",
        "email": customer.get("email") or "No email",
        "phone": customer.get("phone") or "No phone",
        "address": customer.get("address") or "Not provided",
        "total_amount": order.get("total_amount") or 0,
        "status": order.get("status") or OrderStatus.pending.value,
        "order_date": order.get("order_date") or order.get("created_at"),
        "items": items,
    })


def list_seller_orders(db: Database, seller_id: ObjectId) -> List[dict]:
    """One row per order holding at least one of the seller's lines.

    Ownership is only known per line, so orders are unwound to lines, joined
    to products, filtered on seller_id and folded back per order. Each row's
    items are this seller's lines only; total_amount is the whole order's.
    """
    pipeline = [
        {"$unwind": "$items"},
        {
            "$lookup": {
                "from": "product",
                "localField": "items.product_id",
                "foreignField": "_id",
                "as": "product",
            }
        },
        {"$unwind": "$product"},
        {"$match": {"product.seller_id": seller_id}},
        {
            "$group": {
                "_id": "$_id",
                "customer_name": {"$first": "$customer.name"},
                "customer_phone": {"$first": "$customer.phone"},
                "customer_address": {"$first": "$customer.address"},
                "total_amount": {"$first": "$total_amount"},
                "status": {"$first": "$status"},
                "order_date": {"$first": "$order_date"},
                "items": {
                    "$push": {
                        "item_id": "$items._id",
                        "product_id": "$items.product_id",
                        "snapshot_name": "$items.product_name",
                        "snapshot_image": "$items.image_url",
                        "live_name": "$product.name",
                        "live_image": "$product.image_url",
                        "price": "$items.price",
                        "quantity": "$items.quantity",
                    }
                },
            }
        },
        {"$sort": {"order_date": -1}},
    ]

    rows = []
    for row in db["order"].aggregate(pipeline):
        items = []
        for it in row.get("items") or []:
            price = it.get("price") or 0
            quantity = it.get("quantity") or 1
            items.append({
                "id": it.get("item_id"),
                "product_id": it.get("product_id"),
                "product_name": it.get("snapshot_name") or it.get("live_name") or "Unnamed Product",
                "product_image": it.get("snapshot_image") or it.get("live_image") or "",
                "price": price,
                "quantity": quantity,
                "subtotal": price * quantity,
            })
        rows.append(serialize_doc({
            "order_id": row["_id"],
            "customer_name": row.get("customer_name"),
            "customer_phone": row.get("customer_phone"),
            "customer_address": row.get("customer_address"),
            "total_amount": row.get("total_amount"),
            "status": row.get("status"),
            "order_date": row.get("order_date"),
            "items": items,
        }))
    return rows


# ----------------------- Mutations -----------------------

def update_status(db: Database, order_id: ObjectId, new_status: OrderStatus, caller: Identity) -> OrderStatus:
    order = _find_order(db, order_id)
    if not _is_line_seller(db, order, caller):
        raise NotFound("Order not found")

    stored = order.get("status")
    try:
        current = OrderStatus(stored)
    except ValueError:
        # free-text status from older records
        current = OrderStatus.pending

    if not can_transition(current, new_status):
        raise InvalidTransition(current.value, new_status.value)
    if stored == new_status.value:
        return new_status

    res = db["order"].update_one(
        {"_id": order_id, "status": stored},
        {"$set": {"status": new_status.value, "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise Conflict("Order status changed concurrently, please retry")
    logger.info("order_status_changed", order_id=str(order_id), old=stored,
                new=new_status.value, seller_id=caller.user_id)
    return new_status


def delete_order(db: Database, order_id: ObjectId, caller: Identity) -> None:
    order = _find_order(db, order_id)
    if not (_is_customer(order, caller) or _is_line_seller(db, order, caller)):
        raise NotFound("Order not found")
    res = db["order"].delete_one({"_id": order_id})
    if res.deleted_count == 0:
        raise NotFound("Order not found")
    logger.info("order_deleted", order_id=str(order_id), by=caller.user_id)


def delete_order_item(db: Database, line_id: ObjectId, caller: Identity) -> None:
    order = db["order"].find_one({"items._id": line_id})
    if not order:
        raise NotFound("Order item not found")
    line = next(line for line in order["items"] if line.get("_id") == line_id)

    allowed = _is_customer(order, caller) or (
        caller.is_seller and bool(_seller_product_ids(db, [line], caller.oid))
    )
    if not allowed:
        raise NotFound("Order item not found")

    res = db["order"].update_one({"_id": order["_id"]}, {"$pull": {"items": {"_id": line_id}}})
    if res.modified_count == 0:
        raise NotFound("Order item not found")
    logger.info("order_item_deleted", order_id=str(order["_id"]), line_id=str(line_id), by=caller.user_id)
