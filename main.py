import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import analytics
import barters
import database
import items
import notifications
import orders
import reviews
from config import ADMIN_REGISTRATION_KEY, CORS_ORIGINS
from database import create_document, get_collection, get_documents, to_object_id
from schemas import Item as ItemSchema, ShippingAddress, User as UserSchema
from security import get_current_user, get_optional_user, hash_password, issue_session, public_user, require_admin

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.ensure_indexes()
    yield


app = FastAPI(title="StudyReuse Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Errors -----------------------
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{loc}: {first.get('msg')}" if loc else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})


# ----------------------- Models -----------------------
class SignupBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    college: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class AdminSignupBody(SignupBody):
    admin_key: str


class ProfileUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    college: Optional[str] = None
    avatar_url: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)


class ItemCreateBody(BaseModel):
    title: str = Field(..., min_length=1, max_length=140)
    description: str = Field("", max_length=5000)
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    category: str = Field(..., min_length=1)
    condition: Literal["New", "Like New", "Good", "Fair", "Poor"] = "Good"
    image_url: Optional[str] = None


class ItemUpdateBody(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=140)
    description: Optional[str] = Field(None, max_length=5000)
    price: Optional[float] = Field(None, ge=0)
    quantity: Optional[int] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1)
    condition: Optional[Literal["New", "Like New", "Good", "Fair", "Poor"]] = None
    image_url: Optional[str] = None
    status: Optional[Literal["Available", "Reserved", "Sold", "Unavailable"]] = None


class ReasonBody(BaseModel):
    reason: str = ""


class OptionalReasonBody(BaseModel):
    reason: Optional[str] = None


class BarterRequestBody(BaseModel):
    offer_item_id: str
    message: Optional[str] = Field(None, max_length=1000)


class BarterStatusBody(BaseModel):
    status: str


class CartLine(BaseModel):
    item_id: str
    quantity: int = Field(1, ge=1)


class OrderCreateBody(BaseModel):
    items: List[CartLine]
    shipping_address: ShippingAddress
    payment_method: Literal["Cash on Delivery"] = "Cash on Delivery"


class AvailabilityBody(BaseModel):
    items: List[CartLine]


class OrderStatusBody(BaseModel):
    status: str


class ReviewCreateBody(BaseModel):
    item_id: str
    rating: int
    comment: str


class SendNotificationBody(BaseModel):
    message: str
    user_id: Optional[str] = None
    type: str = "admin_message"


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "StudyReuse API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
def _register(body: SignupBody, role: str) -> dict:
    users = get_collection("user")
    if users.find_one({"email": body.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
        role=role,
        phone=body.phone,
        college=body.college,
    )
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        # lost a race with a concurrent signup for the same email
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("Registered %s %s", role, user_id)
    if role == "user":
        notifications.notify_admins(f"New user registered: {body.name}", "new_user", related_user_id=user_id)
    return issue_session(users.find_one({"_id": to_object_id(user_id)}))


def _login(body: LoginBody) -> dict:
    user = get_collection("user").find_one({"email": body.email})
    if not user or user.get("password_hash") != hash_password(body.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.get("is_blocked"):
        raise HTTPException(status_code=403, detail="Account blocked")
    return user


@app.post("/api/users/register")
def register(body: SignupBody):
    return _register(body, "user")


@app.post("/api/users/login")
def login(body: LoginBody):
    return issue_session(_login(body))


@app.get("/api/users/profile")
def get_profile(user=Depends(get_current_user)):
    return user


@app.put("/api/users/profile")
def update_profile(body: ProfileUpdateBody, user=Depends(get_current_user)):
    update = body.model_dump(exclude_none=True)
    password = update.pop("password", None)
    if password:
        update["password_hash"] = hash_password(password)
    if not update:
        return user
    update["updated_at"] = datetime.now(timezone.utc)
    doc = get_collection("user").find_one_and_update(
        {"_id": to_object_id(user["id"])},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    return public_user(doc)


@app.post("/api/admin/register")
def admin_register(body: AdminSignupBody):
    if not ADMIN_REGISTRATION_KEY:
        raise HTTPException(status_code=403, detail="Admin registration is disabled")
    if body.admin_key != ADMIN_REGISTRATION_KEY:
        raise HTTPException(status_code=403, detail="Invalid admin key")
    return _register(body, "admin")


@app.post("/api/admin/login")
def admin_login(body: LoginBody):
    user = _login(body)
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return issue_session(user)


# ----------------------- Items -----------------------
@app.get("/api/items")
def list_items(
    q: Optional[str] = None,
    category: Optional[str] = None,
    condition: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    return items.list_items(q, category, condition, min_price, max_price, limit)


@app.get("/api/items/search")
def search_items(
    q: Optional[str] = None,
    category: Optional[str] = None,
    condition: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    return items.list_items(q, category, condition, min_price, max_price, limit)


@app.get("/api/items/my")
def my_items(user=Depends(get_current_user)):
    return items.my_items(user)


@app.get("/api/items/{item_id}")
def get_item(item_id: str, user=Depends(get_optional_user)):
    return items.get_item(item_id, user)


@app.post("/api/items", status_code=201)
def create_item(body: ItemCreateBody, user=Depends(get_current_user)):
    return items.create_item(user, body.model_dump())


@app.put("/api/items/{item_id}")
def update_item(item_id: str, body: ItemUpdateBody, user=Depends(get_current_user)):
    return items.update_item(item_id, body.model_dump(exclude_none=True), user)


@app.delete("/api/items/{item_id}")
def delete_item(item_id: str, user=Depends(get_current_user)):
    items.delete_item(item_id, user)
    return {"ok": True}


# ----------------------- Barter -----------------------
@app.post("/api/barter/request/{item_id}", status_code=201)
def request_barter(item_id: str, body: BarterRequestBody, user=Depends(get_current_user)):
    return barters.create_barter(item_id, user, body.offer_item_id, body.message)


@app.get("/api/barter/my")
def my_barters(
    role: str = Query("all"),
    status: Optional[str] = None,
    user=Depends(get_current_user),
):
    return barters.list_my_barters(user, role, status)


@app.get("/api/barter/{barter_id}")
def get_barter(barter_id: str, user=Depends(get_current_user)):
    return barters.get_barter(barter_id, user)


@app.put("/api/barter/{barter_id}")
def update_barter(barter_id: str, body: BarterStatusBody, user=Depends(get_current_user)):
    return barters.update_barter_status(barter_id, body.status, user)


# ----------------------- Orders -----------------------
@app.post("/api/orders", status_code=201)
def create_order(
    body: OrderCreateBody,
    idempotency_key: Optional[str] = Header(None),
    user=Depends(get_current_user),
):
    return orders.create_order(
        user,
        [line.model_dump() for line in body.items],
        body.shipping_address,
        body.payment_method,
        idempotency_key,
    )


@app.post("/api/orders/check-availability")
def check_availability(body: AvailabilityBody):
    return orders.check_availability([line.model_dump() for line in body.items])


@app.get("/api/orders/my")
def my_orders(status: Optional[str] = None, user=Depends(get_current_user)):
    return orders.buyer_orders(user, status)


@app.get("/api/orders/seller")
def seller_orders(status: Optional[str] = None, user=Depends(get_current_user)):
    return orders.seller_orders(user, status)


@app.get("/api/orders/seller/stats")
def seller_order_stats(user=Depends(get_current_user)):
    return orders.seller_order_stats(user)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    return orders.get_order(order_id, user)


@app.put("/api/orders/{order_id}/accept")
def accept_order(order_id: str, user=Depends(get_current_user)):
    return orders.accept_order_by_seller(order_id, user)


@app.put("/api/orders/{order_id}/reject")
def reject_order(order_id: str, body: ReasonBody, user=Depends(get_current_user)):
    return orders.reject_order_by_seller(order_id, user, body.reason)


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: Optional[OptionalReasonBody] = None, user=Depends(get_current_user)):
    return orders.cancel_order(order_id, user, body.reason if body else None)


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusBody, user=Depends(get_current_user)):
    return orders.update_order_status(order_id, user, body.status)


# ----------------------- Reviews -----------------------
@app.post("/api/reviews", status_code=201)
def submit_review(body: ReviewCreateBody, user=Depends(get_current_user)):
    return reviews.submit_review(body.item_id, user, body.rating, body.comment)


@app.get("/api/reviews/item/{item_id}")
def item_reviews(item_id: str):
    return reviews.item_reviews(item_id)


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, user=Depends(get_current_user)):
    reviews.delete_review(review_id, user)
    return {"ok": True}


# ----------------------- Notifications -----------------------
@app.get("/api/notifications")
def list_notifications(unread: bool = False, user=Depends(get_current_user)):
    return notifications.list_notifications(user, unread_only=unread)


@app.get("/api/notifications/unread-count")
def unread_notifications(user=Depends(get_current_user)):
    return {"count": notifications.unread_count(user)}


@app.put("/api/notifications/read-all")
def read_all_notifications(user=Depends(get_current_user)):
    return {"updated": notifications.mark_all_read(user)}


@app.put("/api/notifications/{notification_id}")
def read_notification(notification_id: str, user=Depends(get_current_user)):
    return notifications.mark_read(notification_id, user)


# ----------------------- Admin -----------------------
@app.get("/api/admin/dashboard/stats")
def admin_dashboard_stats(admin=Depends(require_admin)):
    return analytics.dashboard_stats(get_documents("user"), get_documents("item"), get_documents("order"))


@app.get("/api/admin/analytics")
def admin_analytics(time_range: str = Query("month", alias="timeRange"), admin=Depends(require_admin)):
    return analytics.analytics_report(
        get_documents("user"), get_documents("item"), get_documents("review"), time_range
    )


@app.get("/api/admin/users")
def admin_list_users(
    status: Optional[Literal["active", "blocked"]] = None,
    q: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    admin=Depends(require_admin),
):
    filt = {}
    if status == "blocked":
        filt["is_blocked"] = True
    elif status == "active":
        filt["is_blocked"] = False
    if q:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"email": pattern}]
    docs = get_documents("user", filt, limit=limit, sort=[("created_at", DESCENDING)])
    return [public_user(d) for d in docs]


@app.put("/api/admin/users/{user_id}/block")
def admin_block_user(user_id: str, body: ReasonBody, admin=Depends(require_admin)):
    if not body.reason.strip():
        raise HTTPException(status_code=400, detail="A block reason is required")
    users = get_collection("user")
    target = users.find_one({"_id": to_object_id(user_id)})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if target.get("role") == "admin":
        raise HTTPException(status_code=400, detail="Admins cannot be blocked")
    doc = users.find_one_and_update(
        {"_id": target["_id"]},
        {"$set": {"is_blocked": True, "block_reason": body.reason.strip(), "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Admin %s blocked user %s", admin["id"], user_id)
    return public_user(doc)


@app.put("/api/admin/users/{user_id}/unblock")
def admin_unblock_user(user_id: str, admin=Depends(require_admin)):
    doc = get_collection("user").find_one_and_update(
        {"_id": to_object_id(user_id)},
        {"$set": {"is_blocked": False, "block_reason": None, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Admin %s unblocked user %s", admin["id"], user_id)
    notifications.notify(user_id, "Your account has been unblocked", "account_unblocked")
    return public_user(doc)


@app.get("/api/admin/items")
def admin_list_items(
    status: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    admin=Depends(require_admin),
):
    return items.admin_list_items(status, q, limit)


@app.put("/api/admin/items/{item_id}/approve")
def admin_approve_item(item_id: str, admin=Depends(require_admin)):
    return items.approve_item(item_id, admin)


@app.put("/api/admin/items/{item_id}/reject")
def admin_reject_item(item_id: str, body: ReasonBody, admin=Depends(require_admin)):
    return items.reject_item(item_id, admin, body.reason)


@app.put("/api/admin/items/{item_id}/flag")
def admin_flag_item(item_id: str, body: ReasonBody, admin=Depends(require_admin)):
    return items.flag_item(item_id, admin, body.reason)


@app.delete("/api/admin/items/{item_id}")
def admin_delete_item(item_id: str, admin=Depends(require_admin)):
    items.delete_item(item_id, admin)
    return {"ok": True}


@app.get("/api/admin/orders")
def admin_list_orders(
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    admin=Depends(require_admin),
):
    return orders.admin_list_orders(status, limit)


@app.put("/api/admin/orders/{order_id}/status")
def admin_update_order_status(order_id: str, body: OrderStatusBody, admin=Depends(require_admin)):
    return orders.update_order_status(order_id, admin, body.status)


@app.get("/api/admin/barters")
def admin_list_barters(status: Optional[str] = None, admin=Depends(require_admin)):
    return barters.admin_list_barters(status)


@app.get("/api/admin/reviews")
def admin_list_reviews(admin=Depends(require_admin)):
    return reviews.admin_list_reviews()


@app.post("/api/admin/notifications/send")
def admin_send_notification(body: SendNotificationBody, admin=Depends(require_admin)):
    sent = notifications.send_notification(admin, body.message, body.user_id, body.type)
    return {"sent": sent}


@app.get("/api/admin/notifications")
def admin_notifications(admin=Depends(require_admin)):
    return notifications.list_notifications(admin)


# ----------------------- Seed Demo Data -----------------------
DEMO_ITEMS = [
    {
        "title": "Engineering Mathematics - B.S. Grewal",
        "description": "44th edition, a few highlighted pages, no torn sheets.",
        "price": 350,
        "category": "Books",
        "condition": "Good",
        "image_url": "https://images.unsplash.com/photo-1544716278-ca5e3f4abd8c",
    },
    {
        "title": "Organic Chemistry Handwritten Notes",
        "description": "Complete semester notes with reaction mechanisms and past exam answers.",
        "price": 150,
        "category": "Notes",
        "condition": "Like New",
        "image_url": "https://images.unsplash.com/photo-1517842645767-c639042777db",
    },
    {
        "title": "Casio fx-991ES Plus Scientific Calculator",
        "description": "Works perfectly, battery replaced last month.",
        "price": 900,
        "category": "Electronics",
        "condition": "Good",
        "image_url": "https://images.unsplash.com/photo-1564466809058-bf4114d55352",
    },
    {
        "title": "Lab Coat (Medium)",
        "description": "Used for one semester of chemistry lab, washed and ironed.",
        "price": 250,
        "category": "Lab Equipment",
        "condition": "Fair",
        "image_url": "https://images.unsplash.com/photo-1581093588401-fbb62a02f120",
    },
    {
        "title": "Engineering Drawing Kit",
        "description": "Mini drafter, compass set and set squares.",
        "price": 600,
        "category": "Stationery",
        "condition": "Like New",
        "image_url": "https://images.unsplash.com/photo-1503676260728-1c00da094a0b",
    },
    {
        "title": "Data Structures Using C - Reema Thareja",
        "description": "Second edition, clean copy.",
        "price": 300,
        "category": "Books",
        "condition": "New",
        "image_url": "https://images.unsplash.com/photo-1532012197267-da84d127e765",
    },
]


@app.post("/seed")
def seed():
    if get_collection("item").count_documents({}) > 0:
        return {"seeded": False, "message": "Items already exist"}
    users = get_collection("user")
    seller = users.find_one({"email": "seller@studyreuse.edu"})
    if seller:
        seller_id = str(seller["_id"])
    else:
        seller_id = create_document(
            "user", UserSchema(name="Demo Seller", email="seller@studyreuse.edu", password_hash=hash_password("demo123"))
        )
    for p in DEMO_ITEMS:
        create_document("item", ItemSchema(owner_id=seller_id, is_approved=True, **p))
    # create admin user if none
    if users.count_documents({"role": "admin"}) == 0:
        admin = UserSchema(name="Admin", email="admin@studyreuse.edu", password_hash=hash_password("admin123"), role="admin")
        create_document("user", admin)
    logger.info("Seeded %s demo items", len(DEMO_ITEMS))
    return {"seeded": True, "items": get_collection("item").count_documents({})}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
