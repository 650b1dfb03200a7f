"""
Admin dashboard aggregation.

Everything here is a plain function over lists of documents that were already
fetched from MongoDB; the dashboard recomputes it in full on every load.
Admin accounts are not counted as users.
"""
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import HTTPException

from database import as_utc

TIME_RANGES = {"week": timedelta(days=7), "month": timedelta(days=30), "year": timedelta(days=365)}
TOP_ITEMS = 5


def percent(part: int, whole: int) -> float:
    return round(part * 100.0 / whole, 1) if whole else 0.0


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def growth(docs: List[dict], now: datetime) -> float:
    """Percent change of this calendar month's creations over last month's."""
    this_month = month_start(now)
    last_month = month_start(this_month - timedelta(days=1))
    current = previous = 0
    for d in docs:
        created = d.get("created_at")
        if not created:
            continue
        created = as_utc(created)
        if created >= this_month:
            current += 1
        elif created >= last_month:
            previous += 1
    if previous == 0:
        return 100.0 if current else 0.0
    return round((current - previous) * 100.0 / previous, 1)


def _members(users: List[dict]) -> List[dict]:
    return [u for u in users if u.get("role", "user") != "admin"]


def _is_pending(item: dict) -> bool:
    return not item.get("is_approved") and not item.get("is_flagged")


def dashboard_stats(users: List[dict], items: List[dict], orders: List[dict], now: Optional[datetime] = None) -> dict:
    now = as_utc(now or datetime.now(timezone.utc))
    members = _members(users)
    blocked = sum(1 for u in members if u.get("is_blocked"))
    return {
        "total_users": len(members),
        "active_users": len(members) - blocked,
        "blocked_users": blocked,
        "total_items": len(items),
        "pending_items": sum(1 for i in items if _is_pending(i)),
        "verified_items": sum(1 for i in items if i.get("is_approved")),
        "total_orders": len(orders),
        "pending_orders": sum(1 for o in orders if o.get("status") == "Pending"),
        "delivered_orders": sum(1 for o in orders if o.get("status") == "Delivered"),
        "total_revenue": round(sum(o.get("total_amount", 0) for o in orders if o.get("status") == "Delivered"), 2),
        "user_growth": growth(members, now),
        "item_growth": growth(items, now),
    }


def category_distribution(items: List[dict]) -> List[dict]:
    counts = Counter(i.get("category") or "Other" for i in items)
    return [{"category": c, "count": n} for c, n in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))]


def status_distribution(items: List[dict]) -> List[dict]:
    counts = Counter(i.get("status", "Available") for i in items)
    return [{"status": s, "count": n} for s, n in sorted(counts.items())]


def monthly_trend(items: List[dict], since: datetime) -> List[dict]:
    counts = Counter()
    for i in items:
        created = i.get("created_at")
        if created and as_utc(created) >= since:
            counts[as_utc(created).strftime("%Y-%m")] += 1
    return [{"month": m, "count": counts[m]} for m in sorted(counts)]


def top_items(items: List[dict], limit: int = TOP_ITEMS) -> List[dict]:
    ranked = sorted(items, key=lambda i: i.get("views", 0), reverse=True)[:limit]
    return [
        {
            "id": str(i.get("_id", i.get("id"))),
            "title": i.get("title"),
            "category": i.get("category"),
            "price": i.get("price"),
            "views": i.get("views", 0),
        }
        for i in ranked
    ]


def average_rating(reviews: List[dict]) -> dict:
    ratings = [r["rating"] for r in reviews]
    if not ratings:
        return {"average": 0, "items_with_rating": 0, "min_rating": 0, "max_rating": 0}
    return {
        "average": round(sum(ratings) / len(ratings), 2),
        "items_with_rating": len({r["item_id"] for r in reviews}),
        "min_rating": min(ratings),
        "max_rating": max(ratings),
    }


def analytics_report(
    users: List[dict],
    items: List[dict],
    reviews: List[dict],
    time_range: str = "month",
    now: Optional[datetime] = None,
) -> dict:
    if time_range not in TIME_RANGES:
        raise HTTPException(status_code=400, detail="timeRange must be one of week, month, year")
    now = as_utc(now or datetime.now(timezone.utc))
    members = _members(users)
    blocked = sum(1 for u in members if u.get("is_blocked"))
    available = sum(1 for i in items if i.get("status") == "Available")
    flagged = sum(1 for i in items if i.get("is_flagged"))
    return {
        "overall_stats": {
            "total_users": len(members),
            "total_items": len(items),
            "available_items": available,
            "total_reviews": len(reviews),
        },
        "category_distribution": category_distribution(items),
        "status_distribution": status_distribution(items),
        "monthly_trend": monthly_trend(items, now - TIME_RANGES[time_range]),
        "top_items": top_items(items),
        "average_rating": average_rating(reviews),
        "user_stats": {
            "active": len(members) - blocked,
            "blocked": blocked,
            "active_percentage": percent(len(members) - blocked, len(members)),
            "blocked_percentage": percent(blocked, len(members)),
        },
        "item_stats": {
            "pending": sum(1 for i in items if _is_pending(i)),
            "approval_percentage": percent(sum(1 for i in items if i.get("is_approved")), len(items)),
            "available_percentage": percent(available, len(items)),
        },
        "items_needing_attention": {
            "flagged": flagged,
            "not_approved": sum(1 for i in items if not i.get("is_approved")),
        },
        "time_range_used": time_range,
        "generated_at": now.isoformat(),
    }
