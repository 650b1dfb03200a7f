import logging
import re
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException
from pymongo import DESCENDING, ReturnDocument

from database import create_document, get_collection, get_documents, serialize_doc, to_object_id
from notifications import notify, notify_admins
from schemas import Item

logger = logging.getLogger(__name__)


def load_item(item_id: str) -> dict:
    item = get_collection("item").find_one({"_id": to_object_id(item_id)})
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    return item


def is_listed(item: dict) -> bool:
    return bool(item.get("is_approved")) and not item.get("is_flagged")


def is_tradeable(item: dict) -> bool:
    return is_listed(item) and item.get("status") == "Available"


def can_view(item: dict, user: Optional[dict]) -> bool:
    if is_listed(item):
        return True
    return bool(user) and (item["owner_id"] == user["id"] or user.get("role") == "admin")


# ----------------------- Stock -----------------------
def reserve_stock(item_id: str, quantity: int) -> bool:
    """Take `quantity` units off a tradeable item. False when it no longer has them."""
    coll = get_collection("item")
    doc = coll.find_one_and_update(
        {
            "_id": to_object_id(item_id),
            "status": "Available",
            "is_approved": True,
            "is_flagged": False,
            "quantity": {"$gte": quantity},
        },
        {"$inc": {"quantity": -quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        return False
    if doc["quantity"] == 0:
        coll.update_one({"_id": doc["_id"], "quantity": 0}, {"$set": {"status": "Sold"}})
        logger.info("Item %s sold out", item_id)
    return True


def release_stock(item_id: str, quantity: int):
    """Put units back, reopening an item that had sold out."""
    coll = get_collection("item")
    doc = coll.find_one_and_update(
        {"_id": to_object_id(item_id)},
        {"$inc": {"quantity": quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    # deleted since the order was placed
    if not doc:
        return
    if doc.get("status") == "Sold" and doc["quantity"] > 0:
        coll.update_one({"_id": doc["_id"], "status": "Sold"}, {"$set": {"status": "Available"}})


def create_item(owner: dict, fields: dict) -> dict:
    item = Item(owner_id=owner["id"], **fields)
    item_id = create_document("item", item)
    notify_admins(
        f"New item \"{item.title}\" is waiting for approval",
        "item_pending",
        related_item_id=item_id,
        related_user_id=owner["id"],
    )
    return serialize_doc(load_item(item_id))


def list_items(
    q: Optional[str] = None,
    category: Optional[str] = None,
    condition: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    limit: int = 50,
):
    filt = {"is_approved": True, "is_flagged": False, "status": "Available"}
    if q:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        filt["$or"] = [{"title": pattern}, {"description": pattern}]
    if category:
        filt["category"] = category
    if condition:
        filt["condition"] = condition
    price = {}
    if min_price is not None:
        price["$gte"] = min_price
    if max_price is not None:
        price["$lte"] = max_price
    if price:
        filt["price"] = price
    docs = get_documents("item", filt, limit=limit, sort=[("created_at", DESCENDING)])
    return [serialize_doc(d) for d in docs]


def get_item(item_id: str, user: Optional[dict] = None) -> dict:
    """Fetch an item for its detail page, counting the view.

    Items that are unapproved or flagged look missing to everyone except
    their owner and admins.
    """
    item = load_item(item_id)
    if not can_view(item, user):
        raise HTTPException(status_code=404, detail="Item not found")
    item = get_collection("item").find_one_and_update(
        {"_id": item["_id"]},
        {"$inc": {"views": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    return serialize_doc(item)


def my_items(owner: dict):
    docs = get_documents("item", {"owner_id": owner["id"]}, sort=[("created_at", DESCENDING)])
    return [serialize_doc(d) for d in docs]


def update_item(item_id: str, fields: dict, user: dict) -> dict:
    item = load_item(item_id)
    if item["owner_id"] != user["id"]:
        raise HTTPException(status_code=403, detail="Only the owner can edit this item")
    if not fields:
        return serialize_doc(item)
    update = dict(fields)
    update["updated_at"] = datetime.now(timezone.utc)
    doc = get_collection("item").find_one_and_update(
        {"_id": item["_id"]},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Item not found")
    return serialize_doc(doc)


def delete_item(item_id: str, user: dict):
    item = load_item(item_id)
    is_admin = user.get("role") == "admin"
    if item["owner_id"] != user["id"] and not is_admin:
        raise HTTPException(status_code=403, detail="Only the owner can delete this item")
    get_collection("item").delete_one({"_id": item["_id"]})
    if is_admin and item["owner_id"] != user["id"]:
        logger.info("Admin %s deleted item %s", user["id"], item_id)
        notify(item["owner_id"], f"Your item \"{item['title']}\" was removed by an admin", "item_removed")


# ----------------------- Moderation -----------------------
def _moderate(item_id: str, update: dict) -> dict:
    update["updated_at"] = datetime.now(timezone.utc)
    doc = get_collection("item").find_one_and_update(
        {"_id": to_object_id(item_id)},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Item not found")
    return doc


def approve_item(item_id: str, admin: dict) -> dict:
    doc = _moderate(item_id, {"is_approved": True, "is_flagged": False, "flag_reason": None, "rejection_reason": None})
    logger.info("Admin %s approved item %s", admin["id"], item_id)
    notify(doc["owner_id"], f"Your item \"{doc['title']}\" was approved", "item_approved", related_item_id=item_id)
    return serialize_doc(doc)


def reject_item(item_id: str, admin: dict, reason: str) -> dict:
    if not reason or not reason.strip():
        raise HTTPException(status_code=400, detail="A rejection reason is required")
    doc = _moderate(item_id, {"is_approved": False, "rejection_reason": reason.strip()})
    logger.info("Admin %s rejected item %s", admin["id"], item_id)
    notify(
        doc["owner_id"],
        f"Your item \"{doc['title']}\" was rejected: {reason.strip()}",
        "item_rejected",
        related_item_id=item_id,
    )
    return serialize_doc(doc)


def flag_item(item_id: str, admin: dict, reason: str) -> dict:
    if not reason or not reason.strip():
        raise HTTPException(status_code=400, detail="A flag reason is required")
    doc = _moderate(item_id, {"is_flagged": True, "flag_reason": reason.strip()})
    logger.info("Admin %s flagged item %s", admin["id"], item_id)
    notify(
        doc["owner_id"],
        f"Your item \"{doc['title']}\" was flagged: {reason.strip()}",
        "item_flagged",
        related_item_id=item_id,
    )
    return serialize_doc(doc)


def admin_list_items(status: Optional[str] = None, q: Optional[str] = None, limit: int = 100):
    filt = {}
    if status == "pending":
        filt = {"is_approved": False, "is_flagged": False}
    elif status == "approved":
        filt = {"is_approved": True, "is_flagged": False}
    elif status == "flagged":
        filt = {"is_flagged": True}
    elif status:
        raise HTTPException(status_code=400, detail="status must be one of pending, approved, flagged")
    if q:
        filt["title"] = {"$regex": re.escape(q), "$options": "i"}
    docs = get_documents("item", filt, limit=limit, sort=[("created_at", DESCENDING)])
    return [serialize_doc(d) for d in docs]
