import logging

from fastapi import HTTPException
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from database import create_document, get_collection, get_documents, serialize_doc, to_object_id
from items import load_item
from notifications import notify
from schemas import Review

logger = logging.getLogger(__name__)

MIN_COMMENT_LENGTH = 10


def submit_review(item_id: str, reviewer: dict, rating: int, comment: str) -> dict:
    item = load_item(item_id)
    if item["owner_id"] == reviewer["id"]:
        raise HTTPException(status_code=400, detail="You cannot review your own item")
    comment = (comment or "").strip()
    if len(comment) < MIN_COMMENT_LENGTH:
        raise HTTPException(status_code=400, detail=f"Comment must be at least {MIN_COMMENT_LENGTH} characters")
    if not 1 <= rating <= 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")

    reviews = get_collection("review")
    if reviews.find_one({"item_id": item_id, "reviewer_id": reviewer["id"]}):
        raise HTTPException(status_code=409, detail="You have already reviewed this item")
    try:
        review_id = create_document("review", Review(item_id=item_id, reviewer_id=reviewer["id"], rating=rating, comment=comment))
    except DuplicateKeyError:
        # a concurrent submission won the unique (item_id, reviewer_id) index
        raise HTTPException(status_code=409, detail="You have already reviewed this item")

    notify(item["owner_id"], f"{reviewer.get('name', 'Someone')} rated \"{item['title']}\" {rating}/5",
           "new_review", related_item_id=item_id, related_user_id=reviewer["id"])
    return serialize_doc(reviews.find_one({"_id": to_object_id(review_id)}))


def item_reviews(item_id: str) -> dict:
    load_item(item_id)
    docs = get_documents("review", {"item_id": item_id}, sort=[("created_at", DESCENDING)])
    reviewer_ids = list({to_object_id(d["reviewer_id"]) for d in docs})
    names = {}
    if reviewer_ids:
        names = {str(u["_id"]): u["name"] for u in get_documents("user", {"_id": {"$in": reviewer_ids}})}
    out = []
    for d in docs:
        review = serialize_doc(d)
        review["reviewer_name"] = names.get(d["reviewer_id"])
        out.append(review)
    average = round(sum(r["rating"] for r in out) / len(out), 2) if out else 0
    return {"reviews": out, "average_rating": average, "count": len(out)}


def delete_review(review_id: str, user: dict):
    reviews = get_collection("review")
    review = reviews.find_one({"_id": to_object_id(review_id)})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    if review["reviewer_id"] != user["id"] and user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Only the reviewer can delete this review")
    reviews.delete_one({"_id": review["_id"]})
    logger.info("Review %s deleted by %s", review_id, user["id"])


def admin_list_reviews(limit: int = 100):
    docs = get_documents("review", {}, limit=limit, sort=[("created_at", DESCENDING)])
    return [serialize_doc(d) for d in docs]
