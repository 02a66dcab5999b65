"""Owner dashboard and analytics aggregates.

Aggregates are cached per tenant+branch under the ``dashboard`` and
``analytics`` prefixes; every order, table or payment mutation invalidates
both prefixes, and the TTL bounds staleness otherwise.
"""

from collections import Counter, defaultdict
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy import func
from sqlalchemy.orm import Session

from api.deps import get_cache
from core.cache import ResponseCache
from core.database import get_db, utcnow
from core.permissions import Operation, require_role
from core.security import RequestContext, get_context
from models.order import ACTIVE_ORDER_STATUSES, ItemStatus, Order, OrderItem, OrderStatus, PaymentStatus
from models.table import RestaurantTable

router = APIRouter()

DASHBOARD_TTL = 15
SUMMARY_TTL = 60
POPULAR_TTL = 30
KITCHEN_TTL = 30


def _cached(request: Request, response: Response, cache: ResponseCache, ctx: RequestContext,
            prefix: str, ttl: int, compute: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    key = ResponseCache.build_key(prefix, ctx.tenant_id, ctx.branch_id, request.url.path,
                                  dict(request.query_params))
    data = cache.get(key)
    if data is not None:
        response.headers["X-Cache"] = "HIT"
        return data
    data = compute()
    cache.set(key, data, ttl)
    response.headers["X-Cache"] = "MISS"
    return data


def _day_start(day) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _scoped_orders(db: Session, ctx: RequestContext):
    return db.query(Order).filter(Order.tenant_id == ctx.tenant_id, Order.branch_id == ctx.branch_id)


def _paid_between(db: Session, ctx: RequestContext, start: datetime, end: datetime):
    return _scoped_orders(db, ctx).filter(
        Order.payment_status == PaymentStatus.PAID,
        Order.payment_at >= start,
        Order.payment_at < end,
    )


def _revenue(query) -> float:
    total = query.with_entities(func.coalesce(func.sum(Order.final_amount), 0)).scalar()
    return round(float(total or 0), 2)


def _dashboard_stats(db: Session, ctx: RequestContext) -> Dict[str, Any]:
    today = utcnow().date()
    start, end = _day_start(today), _day_start(today + timedelta(days=1))
    yesterday = _day_start(today - timedelta(days=1))

    revenue_today = _revenue(_paid_between(db, ctx, start, end))
    revenue_yesterday = _revenue(_paid_between(db, ctx, yesterday, start))
    revenue_change = ((revenue_today - revenue_yesterday) / revenue_yesterday * 100) if revenue_yesterday else 100

    orders_today = _scoped_orders(db, ctx).filter(Order.created_at >= start, Order.created_at < end)
    total_orders = orders_today.count()
    paid_orders = orders_today.filter(Order.payment_status == PaymentStatus.PAID).count()

    table_counts = dict(
        db.query(RestaurantTable.status, func.count(RestaurantTable.id))
        .filter(RestaurantTable.tenant_id == ctx.tenant_id, RestaurantTable.branch_id == ctx.branch_id)
        .group_by(RestaurantTable.status)
        .all()
    )

    return {
        "revenue_today": revenue_today,
        "revenue_yesterday": revenue_yesterday,
        "revenue_change_pct": round(revenue_change, 1),
        "total_orders": total_orders,
        "active_orders": _scoped_orders(db, ctx).filter(Order.order_status.in_(ACTIVE_ORDER_STATUSES)).count(),
        "pending_payments": _scoped_orders(db, ctx).filter(
            Order.payment_status == PaymentStatus.PAYMENT_PENDING).count(),
        "avg_order_value": round(revenue_today / paid_orders, 2) if paid_orders else 0,
        "tables": {status.value: count for status, count in table_counts.items()},
        "date": today.isoformat(),
    }


def _dashboard_growth(db: Session, ctx: RequestContext, days: int) -> Dict[str, Any]:
    today = utcnow().date()
    first = today - timedelta(days=days - 1)
    rows = _paid_between(db, ctx, _day_start(first), _day_start(today + timedelta(days=1))) \
        .with_entities(Order.payment_at, Order.final_amount).all()

    revenue = defaultdict(float)
    orders = Counter()
    for paid_at, amount in rows:
        revenue[paid_at.date()] += float(amount)
        orders[paid_at.date()] += 1

    series = []
    for offset in range(days):
        day = first + timedelta(days=offset)
        series.append({"date": day.isoformat(), "revenue": round(revenue[day], 2), "orders": orders[day]})
    return {"days": days, "series": series}


def _analytics_summary(db: Session, ctx: RequestContext, days: int) -> Dict[str, Any]:
    since = _day_start(utcnow().date() - timedelta(days=days - 1))
    window = _scoped_orders(db, ctx).filter(Order.created_at >= since)

    by_status = dict(window.with_entities(Order.order_status, func.count(Order.id))
                     .group_by(Order.order_status).all())
    paid = window.filter(Order.payment_status == PaymentStatus.PAID)
    paid_count = paid.count()
    revenue = _revenue(paid)
    by_method = dict(paid.with_entities(Order.payment_method, func.count(Order.id))
                     .group_by(Order.payment_method).all())

    return {
        "days": days,
        "total_orders": sum(by_status.values()),
        "orders_by_status": {status.value: count for status, count in by_status.items()},
        "completed_orders": by_status.get(OrderStatus.COMPLETED, 0),
        "cancelled_orders": by_status.get(OrderStatus.CANCELLED, 0),
        "revenue": revenue,
        "avg_order_value": round(revenue / paid_count, 2) if paid_count else 0,
        "payment_methods": {method or "unknown": count for method, count in by_method.items()},
    }


def _popular_items(db: Session, ctx: RequestContext, limit: int) -> Dict[str, Any]:
    rows = (
        db.query(OrderItem.name, func.sum(OrderItem.quantity).label("quantity"))
        .join(Order, OrderItem.order_id == Order.id)
        .filter(
            Order.tenant_id == ctx.tenant_id,
            Order.branch_id == ctx.branch_id,
            Order.order_status != OrderStatus.CANCELLED,
            OrderItem.status != ItemStatus.CANCELLED,
        )
        .group_by(OrderItem.name)
        .order_by(func.sum(OrderItem.quantity).desc(), OrderItem.name)
        .limit(limit)
        .all()
    )
    return {"items": [{"item_name": name, "order_count": int(quantity)} for name, quantity in rows]}


def _kitchen_metrics(db: Session, ctx: RequestContext) -> Dict[str, Any]:
    active = _scoped_orders(db, ctx).filter(Order.order_status.in_(ACTIVE_ORDER_STATUSES)).all()
    orders_by_status = Counter(order.order_status.value for order in active)
    items_by_status = Counter(
        item.status.value for order in active for item in order.items if item.status != ItemStatus.CANCELLED)

    since = _day_start(utcnow().date())
    timed = _scoped_orders(db, ctx).filter(
        Order.ready_at >= since,
        Order.prep_started_at.isnot(None),
    ).with_entities(Order.prep_started_at, Order.ready_at).all()
    prep_minutes = [(ready - started).total_seconds() / 60 for started, ready in timed if ready >= started]

    return {
        "active_orders": len(active),
        "orders_by_status": dict(orders_by_status),
        "items_by_status": dict(items_by_status),
        "avg_prep_minutes_today": round(sum(prep_minutes) / len(prep_minutes), 1) if prep_minutes else None,
    }


@router.get("/dashboard/stats")
def dashboard_stats(request: Request, response: Response, ctx: RequestContext = Depends(get_context),
                    db: Session = Depends(get_db), cache: ResponseCache = Depends(get_cache)):
    """Owner Dashboard - Daily Revenue + Metrics"""
    require_role(ctx.role, Operation.VIEW_DASHBOARD)
    data = _cached(request, response, cache, ctx, "dashboard", DASHBOARD_TTL, lambda: _dashboard_stats(db, ctx))
    return {"success": True, "stats": data}


@router.get("/dashboard/growth")
def dashboard_growth(request: Request, response: Response, days: int = Query(7, ge=1, le=90),
                     ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db),
                     cache: ResponseCache = Depends(get_cache)):
    require_role(ctx.role, Operation.VIEW_DASHBOARD)
    data = _cached(request, response, cache, ctx, "dashboard", DASHBOARD_TTL,
                   lambda: _dashboard_growth(db, ctx, days))
    return {"success": True, "growth": data}


@router.get("/analytics/summary")
def analytics_summary(request: Request, response: Response, days: int = Query(30, ge=1, le=365),
                      ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db),
                      cache: ResponseCache = Depends(get_cache)):
    require_role(ctx.role, Operation.VIEW_ANALYTICS)
    data = _cached(request, response, cache, ctx, "analytics", SUMMARY_TTL,
                   lambda: _analytics_summary(db, ctx, days))
    return {"success": True, "summary": data}


@router.get("/analytics/popular-items")
def popular_items(request: Request, response: Response, limit: int = Query(5, ge=1, le=50),
                  ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db),
                  cache: ResponseCache = Depends(get_cache)):
    require_role(ctx.role, Operation.VIEW_ANALYTICS)
    data = _cached(request, response, cache, ctx, "analytics", POPULAR_TTL, lambda: _popular_items(db, ctx, limit))
    return {"success": True, **data}


@router.get("/analytics/kitchen")
def kitchen_metrics(request: Request, response: Response, ctx: RequestContext = Depends(get_context),
                    db: Session = Depends(get_db), cache: ResponseCache = Depends(get_cache)):
    require_role(ctx.role, Operation.VIEW_ANALYTICS)
    data = _cached(request, response, cache, ctx, "analytics", KITCHEN_TTL, lambda: _kitchen_metrics(db, ctx))
    return {"success": True, "kitchen": data}
