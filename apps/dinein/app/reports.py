"""
Read-side sales aggregations over the orders table.

Grouping happens in Python so the same code runs on SQLite and Postgres;
windows are bounded by date so the row counts stay small.
"""

from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_session, utcnow
from .errors import ValidationError
from .models import MenuItem, Order

router = APIRouter(prefix="/orders/reports", tags=["reports"])

# index 0 is day 1 (Sunday), matching the day numbering in weekly_sales
DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
GROUP_BY = ("hour", "day", "week", "month")


def _days_back(now: datetime, days: int) -> datetime:
    return datetime.combine((now - timedelta(days=days)).date(), time.min)


def _window(s: Session, branch_id: Optional[str], start: datetime, end: datetime):
    stmt = select(Order).where(Order.created_at >= start, Order.created_at <= end)
    if branch_id:
        stmt = stmt.where(Order.branch_id == branch_id)
    return s.execute(stmt.order_by(Order.created_at.asc())).scalars().all()


def _day_of_week(ts: datetime) -> int:
    # 1 = Sunday ... 7 = Saturday
    return ts.isoweekday() % 7 + 1


def weekly_sales(
    s: Session,
    branch_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    now = utcnow()
    start = start or _days_back(now, 7)
    end = end or now
    totals: Dict[int, float] = defaultdict(float)
    counts: Dict[int, int] = defaultdict(int)
    for od in _window(s, branch_id, start, end):
        day = _day_of_week(od.created_at)
        totals[day] += od.total_amount or 0.0
        counts[day] += 1
    return [
        {"day": day, "day_name": DAY_NAMES[day - 1], "total_sales": totals[day], "count": counts[day]}
        for day in sorted(counts)
    ]


def popular_menu_items(
    s: Session,
    branch_id: Optional[str] = None,
    limit: int = 10,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    now = utcnow()
    start = start or _days_back(now, 30)
    end = end or now
    orders = _window(s, branch_id, start, end)
    item_ids = {ln.menu_item_id for od in orders for ln in od.lines}
    items = {}
    if item_ids:
        items = {m.id: m for m in s.execute(select(MenuItem).where(MenuItem.id.in_(item_ids))).scalars()}
    stats: Dict[str, Dict[str, Any]] = {}
    for od in orders:
        for ln in od.lines:
            mi = items.get(ln.menu_item_id)
            if mi is None:
                # deleted menu items drop out of the ranking
                continue
            row = stats.setdefault(
                mi.id, {"menu_item_id": mi.id, "name": mi.name, "price": mi.price, "total_count": 0, "orders": 0}
            )
            row["total_count"] += ln.qty
            row["orders"] += 1
    ranked = sorted(stats.values(), key=lambda r: r["total_count"], reverse=True)[: max(1, limit)]
    counted = sum(r["total_count"] for r in ranked)
    for r in ranked:
        r["percentage"] = round(r["total_count"] / counted * 100, 2) if counted else 0.0
    return ranked


def hourly_sales(s: Session, branch_id: Optional[str] = None, day: Optional[date] = None) -> List[Dict[str, Any]]:
    day = day or utcnow().date()
    start = datetime.combine(day, time.min)
    end = datetime.combine(day, time.max)
    totals: Dict[int, float] = defaultdict(float)
    counts: Dict[int, int] = defaultdict(int)
    for od in _window(s, branch_id, start, end):
        totals[od.created_at.hour] += od.total_amount or 0.0
        counts[od.created_at.hour] += 1
    return [
        {
            "hour": hour,
            "time_range": f"{hour:02d}:00-{hour + 1:02d}:00",
            "total_sales": totals.get(hour, 0.0),
            "count": counts.get(hour, 0),
        }
        for hour in range(24)
    ]


def _period_key(ts: datetime, group_by: str) -> str:
    if group_by == "hour":
        return ts.strftime("%Y-%m-%d %H:00")
    if group_by == "day":
        return ts.strftime("%Y-%m-%d")
    if group_by == "week":
        # Sunday-based week number, 00-53
        return ts.strftime("%Y-W%U")
    return ts.strftime("%Y-%m")


def sales_by_period(
    s: Session,
    branch_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    group_by: str = "day",
) -> List[Dict[str, Any]]:
    if group_by not in GROUP_BY:
        raise ValidationError(f"group_by must be one of {', '.join(GROUP_BY)}")
    now = utcnow()
    start = start or _days_back(now, 30)
    end = end or now
    buckets: Dict[str, Dict[str, Any]] = {}
    for od in _window(s, branch_id, start, end):
        key = _period_key(od.created_at, group_by)
        b = buckets.setdefault(key, {"total_sales": 0.0, "order_count": 0, "customers": set()})
        b["total_sales"] += od.total_amount or 0.0
        b["order_count"] += 1
        if od.client_id:
            b["customers"].add(od.client_id)
    return [
        {
            "period": key,
            "total_sales": b["total_sales"],
            "order_count": b["order_count"],
            "customer_count": len(b["customers"]),
            "average_order_value": round(b["total_sales"] / b["order_count"], 2),
        }
        for key, b in sorted(buckets.items())
    ]


@router.get("/weekly-sales")
def weekly_sales_report(
    branch_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    s: Session = Depends(get_session),
):
    return weekly_sales(s, branch_id=branch_id, start=start_date, end=end_date)


@router.get("/popular-items")
def popular_items_report(
    branch_id: Optional[str] = None,
    limit: int = 10,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    s: Session = Depends(get_session),
):
    return popular_menu_items(s, branch_id=branch_id, limit=min(limit, 100), start=start_date, end=end_date)


@router.get("/hourly-sales")
def hourly_sales_report(branch_id: Optional[str] = None, day: Optional[date] = None, s: Session = Depends(get_session)):
    return hourly_sales(s, branch_id=branch_id, day=day)


@router.get("/sales-by-period")
def sales_by_period_report(
    branch_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    group_by: str = "day",
    s: Session = Depends(get_session),
):
    return sales_by_period(s, branch_id=branch_id, start=start_date, end=end_date, group_by=group_by)
