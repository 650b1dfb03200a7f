"""
Order workflow.

An order carries one tagged `state`; the buyer-facing `status` and the
seller's `seller_action` are projections of it and are stored next to it only
so they can be filtered and displayed. Every move goes through TRANSITIONS,
which says which target states are reachable from each state and which actors
may make the move, and is written as a compare-and-set on the current state.

    awaiting_seller -> accepted -> processing -> shipped -> delivered
    awaiting_seller -> rejected
    awaiting_seller | accepted | processing -> cancelled

Placing an order takes the ordered units out of each item's stock; ending in
rejected or cancelled puts them back.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from fastapi import HTTPException
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, get_collection, get_documents, serialize_doc, to_object_id
from items import is_tradeable, load_item, release_stock, reserve_stock
from notifications import notify
from schemas import ORDER_STATUSES, ItemSnapshot, Order, OrderItem, ShippingAddress

logger = logging.getLogger(__name__)


class OrderState(str, Enum):
    AWAITING_SELLER = "awaiting_seller"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


BUYER = "buyer"
SELLER = "seller"
ADMIN = "admin"

# state -> (status, seller_action); None keeps whatever seller_action the order had
PROJECTION = {
    OrderState.AWAITING_SELLER: ("Pending", "pending"),
    OrderState.ACCEPTED: ("Pending", "accepted"),
    OrderState.REJECTED: ("Cancelled", "rejected"),
    OrderState.PROCESSING: ("Processing", "accepted"),
    OrderState.SHIPPED: ("Shipped", "accepted"),
    OrderState.DELIVERED: ("Delivered", "accepted"),
    OrderState.CANCELLED: ("Cancelled", None),
}

TRANSITIONS = {
    OrderState.AWAITING_SELLER: {
        OrderState.ACCEPTED: {SELLER},
        OrderState.REJECTED: {SELLER},
        OrderState.CANCELLED: {BUYER, ADMIN},
    },
    OrderState.ACCEPTED: {
        OrderState.PROCESSING: {SELLER, ADMIN},
        OrderState.CANCELLED: {BUYER, SELLER, ADMIN},
    },
    OrderState.PROCESSING: {
        OrderState.SHIPPED: {SELLER, ADMIN},
        OrderState.CANCELLED: {BUYER, SELLER, ADMIN},
    },
    OrderState.SHIPPED: {
        OrderState.DELIVERED: {SELLER, ADMIN},
    },
}

# ending in one of these hands the ordered units back to their items
RESTOCKING_STATES = {OrderState.CANCELLED, OrderState.REJECTED}

# public status names accepted by the status endpoint
STATUS_TARGETS = {
    "Processing": OrderState.PROCESSING,
    "Shipped": OrderState.SHIPPED,
    "Delivered": OrderState.DELIVERED,
    "Cancelled": OrderState.CANCELLED,
}


def roles_for(order: dict, user: dict) -> set:
    roles = set()
    if order["user_id"] == user["id"]:
        roles.add(BUYER)
    if user["id"] in order.get("seller_ids", []):
        roles.add(SELLER)
    if user.get("role") == "admin":
        roles.add(ADMIN)
    return roles


def check_transition(current: OrderState, target: OrderState, roles: set):
    if not roles:
        raise HTTPException(status_code=403, detail="Not a participant in this order")
    allowed = TRANSITIONS.get(current, {})
    if target not in allowed:
        raise HTTPException(
            status_code=409,
            detail=f"Order cannot move from {describe(current)} to {describe(target)}",
        )
    if not roles & allowed[target]:
        raise HTTPException(status_code=403, detail="You are not allowed to perform this action on the order")


def describe(state: OrderState) -> str:
    status, seller_action = PROJECTION[state]
    if state in (OrderState.AWAITING_SELLER, OrderState.ACCEPTED, OrderState.REJECTED):
        return f"{status} (seller {seller_action})"
    return status


def serialize_order(doc: dict) -> dict:
    out = serialize_doc(doc)
    out.pop("idempotency_key", None)
    return out


def _load_order(order_id: str) -> dict:
    order = get_collection("order").find_one({"_id": to_object_id(order_id)})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _transition(order: dict, target: OrderState, user: dict, extra: Optional[dict] = None) -> dict:
    current = OrderState(order["state"])
    check_transition(current, target, roles_for(order, user))
    status, seller_action = PROJECTION[target]
    update = {"state": target.value, "status": status, "updated_at": datetime.now(timezone.utc)}
    if seller_action:
        update["seller_action"] = seller_action
    if extra:
        update.update(extra)
    doc = get_collection("order").find_one_and_update(
        {"_id": order["_id"], "state": current.value},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=409, detail="Order was modified by someone else; reload and try again")
    logger.info("Order %s: %s -> %s by %s", doc["_id"], current.value, target.value, user["id"])
    if target in RESTOCKING_STATES:
        _restock(doc["items"])
    return doc


def _restock(lines: List[dict]):
    for line in lines:
        release_stock(line["item_id"], line["quantity"])


# ----------------------- Creation -----------------------
def _merge_lines(cart_items: List[dict]) -> List[dict]:
    merged = {}
    for line in cart_items:
        item_id = line["item_id"]
        merged[item_id] = merged.get(item_id, 0) + int(line.get("quantity", 1))
    return [{"item_id": k, "quantity": v} for k, v in merged.items()]


def create_order(
    buyer: dict,
    cart_items: List[dict],
    shipping_address,
    payment_method: str = "Cash on Delivery",
    idempotency_key: Optional[str] = None,
) -> dict:
    if not cart_items:
        raise HTTPException(status_code=400, detail="Cart is empty")
    orders = get_collection("order")
    scoped_key = f"{buyer['id']}:{idempotency_key}" if idempotency_key else None
    if scoped_key:
        existing = orders.find_one({"idempotency_key": scoped_key})
        if existing:
            return serialize_order(existing)

    lines = []
    seller_ids = []
    for line in _merge_lines(cart_items):
        item = load_item(line["item_id"])
        if item["owner_id"] == buyer["id"]:
            raise HTTPException(status_code=400, detail="You cannot order your own item")
        if not is_tradeable(item):
            raise HTTPException(status_code=400, detail=f"\"{item['title']}\" is no longer available")
        if item.get("quantity", 0) < line["quantity"]:
            raise HTTPException(
                status_code=400,
                detail=f"Only {item.get('quantity', 0)} of \"{item['title']}\" left in stock",
            )
        snapshot = ItemSnapshot(
            title=item["title"],
            price=item["price"],
            image_url=item.get("image_url"),
            category=item.get("category"),
            seller_id=item["owner_id"],
        )
        lines.append(OrderItem(item_id=line["item_id"], item_snapshot=snapshot, quantity=line["quantity"], price=item["price"]))
        if item["owner_id"] not in seller_ids:
            seller_ids.append(item["owner_id"])

    total = round(sum(l.price * l.quantity for l in lines), 2)
    status, seller_action = PROJECTION[OrderState.AWAITING_SELLER]
    order = Order(
        user_id=buyer["id"],
        items=lines,
        seller_ids=seller_ids,
        total_amount=total,
        state=OrderState.AWAITING_SELLER.value,
        status=status,
        seller_action=seller_action,
        shipping_address=shipping_address if isinstance(shipping_address, ShippingAddress) else ShippingAddress(**shipping_address),
        payment_method=payment_method,
        idempotency_key=scoped_key,
    )
    doc = order.model_dump()
    if not scoped_key:
        # the sparse unique index only skips documents without the field
        doc.pop("idempotency_key")
    reserved = []
    try:
        for line in doc["items"]:
            if not reserve_stock(line["item_id"], line["quantity"]):
                title = line["item_snapshot"]["title"]
                raise HTTPException(status_code=400, detail=f"\"{title}\" sold out while you were checking out")
            reserved.append(line)
        order_id = create_document("order", doc)
    except DuplicateKeyError:
        _restock(reserved)
        existing = orders.find_one({"idempotency_key": scoped_key}) if scoped_key else None
        if existing:
            return serialize_order(existing)
        raise
    except (HTTPException, PyMongoError):
        _restock(reserved)
        raise
    logger.info("Order %s created by %s for %s item(s), total %.2f", order_id, buyer["id"], len(lines), total)

    for seller_id in seller_ids:
        notify(seller_id, f"New order received from {buyer.get('name', 'a buyer')}", "new_order",
               related_order_id=order_id, related_user_id=buyer["id"])
    return serialize_order(_load_order(order_id))


def check_availability(cart_items: List[dict]) -> dict:
    results = []
    for line in _merge_lines(cart_items):
        entry = {"item_id": line["item_id"], "quantity": line["quantity"], "available": False}
        try:
            item = load_item(line["item_id"])
        except HTTPException as e:
            entry["reason"] = e.detail
            results.append(entry)
            continue
        in_stock = item.get("quantity", 0)
        entry.update({"title": item["title"], "price": item["price"], "in_stock": in_stock})
        if not is_tradeable(item):
            entry["reason"] = "Item is no longer available"
        elif in_stock < line["quantity"]:
            entry["reason"] = f"Only {in_stock} left in stock"
        else:
            entry["available"] = True
        results.append(entry)
    return {"items": results, "all_available": bool(results) and all(r["available"] for r in results)}


# ----------------------- Seller decisions -----------------------
def accept_order_by_seller(order_id: str, user: dict) -> dict:
    order = _load_order(order_id)
    if SELLER not in roles_for(order, user):
        raise HTTPException(status_code=403, detail="Only a seller on this order can accept it")
    doc = _transition(order, OrderState.ACCEPTED, user)
    notify(doc["user_id"], "Your order was accepted by the seller", "order_accepted", related_order_id=order_id)
    return serialize_order(doc)


def reject_order_by_seller(order_id: str, user: dict, reason: str) -> dict:
    if not reason or not reason.strip():
        raise HTTPException(status_code=400, detail="A rejection reason is required")
    order = _load_order(order_id)
    if SELLER not in roles_for(order, user):
        raise HTTPException(status_code=403, detail="Only a seller on this order can reject it")
    doc = _transition(order, OrderState.REJECTED, user, {"rejection_reason": reason.strip()})
    notify(doc["user_id"], f"Your order was rejected by the seller: {reason.strip()}", "order_rejected",
           related_order_id=order_id)
    return serialize_order(doc)


# ----------------------- Status progression -----------------------
def cancel_order(order_id: str, user: dict, reason: Optional[str] = None) -> dict:
    order = _load_order(order_id)
    roles = roles_for(order, user)
    if BUYER in roles:
        cancelled_by = BUYER
    elif SELLER in roles:
        cancelled_by = SELLER
    else:
        cancelled_by = ADMIN
    extra = {"cancelled_by": cancelled_by, "cancel_reason": (reason or "").strip() or None}
    doc = _transition(order, OrderState.CANCELLED, user, extra)
    if cancelled_by == BUYER:
        for seller_id in doc.get("seller_ids", []):
            notify(seller_id, "An order for your item was cancelled by the buyer", "order_cancelled",
                   related_order_id=order_id)
    else:
        notify(doc["user_id"], "Your order was cancelled", "order_cancelled", related_order_id=order_id)
    return serialize_order(doc)


def update_order_status(order_id: str, user: dict, status: str) -> dict:
    target = STATUS_TARGETS.get(status)
    if target is None:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(STATUS_TARGETS)}")
    if target is OrderState.CANCELLED:
        return cancel_order(order_id, user)
    doc = _transition(_load_order(order_id), target, user)
    notify(doc["user_id"], f"Your order is now {doc['status']}", "order_status", related_order_id=order_id)
    return serialize_order(doc)


# ----------------------- Queries -----------------------
def get_order(order_id: str, user: dict) -> dict:
    order = _load_order(order_id)
    if not roles_for(order, user):
        raise HTTPException(status_code=403, detail="Not a participant in this order")
    return serialize_order(order)


def _status_filter(filt: dict, status: Optional[str]) -> dict:
    if status:
        if status not in ORDER_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid order status")
        filt["status"] = status
    return filt


def buyer_orders(user: dict, status: Optional[str] = None):
    filt = _status_filter({"user_id": user["id"]}, status)
    docs = get_documents("order", filt, sort=[("created_at", DESCENDING)])
    return [serialize_order(d) for d in docs]


def seller_orders(user: dict, status: Optional[str] = None):
    filt = {"seller_ids": user["id"]}
    if status == "pending_action":
        filt["state"] = OrderState.AWAITING_SELLER.value
    else:
        _status_filter(filt, status)
    docs = get_documents("order", filt, sort=[("created_at", DESCENDING)])
    return [serialize_order(d) for d in docs]


def seller_order_stats(user: dict) -> dict:
    stats = {s.lower(): 0 for s in ORDER_STATUSES}
    stats.update({"total": 0, "pending_action": 0, "revenue": 0.0})
    for order in get_documents("order", {"seller_ids": user["id"]}):
        stats["total"] += 1
        stats[order["status"].lower()] += 1
        if order["state"] == OrderState.AWAITING_SELLER.value:
            stats["pending_action"] += 1
        if order["state"] == OrderState.DELIVERED.value:
            stats["revenue"] += sum(
                line["price"] * line["quantity"]
                for line in order["items"]
                if line["item_snapshot"]["seller_id"] == user["id"]
            )
    stats["revenue"] = round(stats["revenue"], 2)
    return stats


def admin_list_orders(status: Optional[str] = None, limit: int = 100):
    filt = _status_filter({}, status)
    docs = get_documents("order", filt, limit=limit, sort=[("created_at", DESCENDING)])
    return [serialize_order(d) for d in docs]
