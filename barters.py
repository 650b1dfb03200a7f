"""
Barter requests: one user offers one of their own items in exchange for
another user's item.

Status moves pending -> accepted or pending -> rejected and never back. The
owner accepts or rejects; the requester can only withdraw, which is stored as
rejected with withdrawn=True. Accepting does not change the item's status.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException
from pymongo import DESCENDING, ReturnDocument

from database import create_document, get_collection, get_documents, serialize_doc, to_object_id
from items import is_tradeable, load_item
from notifications import notify
from schemas import BARTER_STATUSES, Barter

logger = logging.getLogger(__name__)


def _load_barter(barter_id: str) -> dict:
    barter = get_collection("barter").find_one({"_id": to_object_id(barter_id)})
    if not barter:
        raise HTTPException(status_code=404, detail="Barter request not found")
    return barter


def _load_offer(offer_item_id: str, requester: dict) -> dict:
    offer = get_collection("item").find_one({"_id": to_object_id(offer_item_id)})
    if not offer:
        raise HTTPException(status_code=404, detail="Offered item not found")
    if offer["owner_id"] != requester["id"]:
        raise HTTPException(status_code=403, detail="You can only offer your own items for barter")
    if not is_tradeable(offer):
        raise HTTPException(status_code=400, detail="Your offered item is not available for barter")
    return offer


def create_barter(item_id: str, requester: dict, offer_item_id: str, message: Optional[str] = None) -> dict:
    item = load_item(item_id)
    if item["owner_id"] == requester["id"]:
        raise HTTPException(status_code=400, detail="You cannot barter your own item")
    if not is_tradeable(item):
        raise HTTPException(status_code=400, detail="Item is not available for barter")
    offer = _load_offer(offer_item_id, requester)
    existing = get_collection("barter").find_one(
        {"item_id": item_id, "requester_id": requester["id"], "status": "pending"}
    )
    if existing:
        raise HTTPException(status_code=409, detail="You already have a pending barter request for this item")

    barter = Barter(
        item_id=item_id,
        offer_item_id=offer_item_id,
        requester_id=requester["id"],
        owner_id=item["owner_id"],
        message=(message or "").strip() or f"I'd like to exchange my \"{offer['title']}\" for your \"{item['title']}\"",
    )
    barter_id = create_document("barter", barter)
    logger.info("Barter %s requested by %s for item %s, offering %s", barter_id, requester["id"], item_id, offer_item_id)
    notify(
        item["owner_id"],
        f"{requester.get('name', 'Someone')} wants to trade \"{offer['title']}\" for your \"{item['title']}\"",
        "barter_request",
        related_item_id=item_id,
        related_barter_id=barter_id,
        related_user_id=requester["id"],
    )
    return serialize_doc(_load_barter(barter_id))


def update_barter_status(barter_id: str, new_status: str, user: dict) -> dict:
    if new_status not in ("accepted", "rejected"):
        raise HTTPException(status_code=400, detail="status must be accepted or rejected")
    barter = _load_barter(barter_id)

    is_owner = barter["owner_id"] == user["id"]
    is_requester = barter["requester_id"] == user["id"]
    if not (is_owner or is_requester):
        raise HTTPException(status_code=403, detail="Not a participant in this barter")
    if is_requester and not is_owner and new_status != "rejected":
        raise HTTPException(status_code=403, detail="Only the item owner can accept a barter request")
    if barter["status"] != "pending":
        raise HTTPException(status_code=409, detail=f"Barter request is already {barter['status']}")

    update = {"status": new_status, "updated_at": datetime.now(timezone.utc)}
    if is_requester and not is_owner:
        update["withdrawn"] = True
    doc = get_collection("barter").find_one_and_update(
        {"_id": barter["_id"], "status": "pending"},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=409, detail="Barter request was already resolved")
    logger.info("Barter %s %s by %s", barter_id, "withdrawn" if doc.get("withdrawn") else new_status, user["id"])

    if doc.get("withdrawn"):
        notify(doc["owner_id"], "A barter request for your item was withdrawn", "barter_withdrawn",
               related_item_id=doc["item_id"], related_barter_id=barter_id)
    else:
        notify(doc["requester_id"], f"Your barter request was {new_status}", f"barter_{new_status}",
               related_item_id=doc["item_id"], related_barter_id=barter_id)
    return serialize_doc(doc)


def _item_summary(item_id: Optional[str]) -> Optional[dict]:
    # either item may have been deleted since the request was made
    item = get_collection("item").find_one({"_id": to_object_id(item_id)}) if item_id else None
    if not item:
        return None
    return {
        "title": item["title"],
        "image_url": item.get("image_url"),
        "category": item.get("category"),
        "condition": item.get("condition"),
        "price": item.get("price"),
        "status": item.get("status"),
    }


def _with_item(barter: dict) -> dict:
    out = serialize_doc(barter)
    out["item"] = _item_summary(barter["item_id"])
    out["offer_item"] = _item_summary(barter.get("offer_item_id"))
    return out


def list_my_barters(user: dict, role: str = "all", status: Optional[str] = None):
    if role == "sent":
        filt = {"requester_id": user["id"]}
    elif role == "received":
        filt = {"owner_id": user["id"]}
    elif role == "all":
        filt = {"$or": [{"requester_id": user["id"]}, {"owner_id": user["id"]}]}
    else:
        raise HTTPException(status_code=400, detail="role must be all, sent or received")
    if status:
        if status not in BARTER_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid barter status")
        filt["status"] = status
    docs = get_documents("barter", filt, sort=[("created_at", DESCENDING)])
    return [_with_item(d) for d in docs]


def get_barter(barter_id: str, user: dict) -> dict:
    barter = _load_barter(barter_id)
    if user["id"] not in (barter["owner_id"], barter["requester_id"]) and user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Not a participant in this barter")
    return _with_item(barter)


def admin_list_barters(status: Optional[str] = None, limit: int = 100):
    filt = {}
    if status:
        filt["status"] = status
    docs = get_documents("barter", filt, limit=limit, sort=[("created_at", DESCENDING)])
    return [serialize_doc(d) for d in docs]
