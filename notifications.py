"""
In-app notifications surfaced in the bell icon.

Delivery is fire-and-forget: the action that triggered a notification has
already succeeded, so a failed insert is logged and dropped.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from database import create_document, get_collection, get_documents, serialize_doc, to_object_id
from schemas import Notification

logger = logging.getLogger(__name__)


def notify(user_id: str, message: str, type: str = "info", **related) -> Optional[str]:
    try:
        return create_document("notification", Notification(user_id=user_id, message=message, type=type, **related))
    except (PyMongoError, HTTPException) as e:
        logger.warning("Failed to deliver %s notification to %s: %s", type, user_id, e)
        return None


def notify_admins(message: str, type: str = "info", **related) -> int:
    try:
        admins = get_documents("user", {"role": "admin"})
    except (PyMongoError, HTTPException) as e:
        logger.warning("Failed to look up admins for %s notification: %s", type, e)
        return 0
    sent = 0
    for admin in admins:
        if notify(str(admin["_id"]), message, type, **related):
            sent += 1
    return sent


def list_notifications(user: dict, unread_only: bool = False, limit: int = 100):
    filt = {"user_id": user["id"]}
    if unread_only:
        filt["is_read"] = False
    docs = get_documents("notification", filt, limit=limit, sort=[("created_at", DESCENDING)])
    return [serialize_doc(d) for d in docs]


def unread_count(user: dict) -> int:
    return get_collection("notification").count_documents({"user_id": user["id"], "is_read": False})


def mark_read(notification_id: str, user: dict):
    doc = get_collection("notification").find_one_and_update(
        {"_id": to_object_id(notification_id), "user_id": user["id"]},
        {"$set": {"is_read": True, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Notification not found")
    return serialize_doc(doc)


def mark_all_read(user: dict) -> int:
    res = get_collection("notification").update_many(
        {"user_id": user["id"], "is_read": False},
        {"$set": {"is_read": True, "updated_at": datetime.now(timezone.utc)}},
    )
    return res.modified_count


def send_notification(admin: dict, message: str, user_id: Optional[str] = None, type: str = "admin_message") -> int:
    """Send an admin message to one user, or to every non-admin user when user_id is None."""
    if not message or not message.strip():
        raise HTTPException(status_code=400, detail="Message is required")
    if user_id:
        if not get_collection("user").find_one({"_id": to_object_id(user_id)}):
            raise HTTPException(status_code=404, detail="User not found")
        recipients = [user_id]
    else:
        recipients = [str(u["_id"]) for u in get_documents("user", {"role": {"$ne": "admin"}})]
    sent = 0
    for rid in recipients:
        if notify(rid, message.strip(), type, related_user_id=admin["id"]):
            sent += 1
    logger.info("Admin %s sent %s notification(s)", admin["id"], sent)
    return sent
