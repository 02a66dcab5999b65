from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from api.deps import get_effects, get_sequence
from core.database import get_db
from core.permissions import Operation, require_role
from core.security import RequestContext, get_context
from models.order import OrderStatus
from models.schemas import CancelRequest, ItemStatusUpdate, OrderCreate, OrderStatusUpdate
from services import orders as order_service
from services.effects import EffectRunner
from services.orders import serialize_order
from services.sequence import SequenceGenerator

router = APIRouter()


@router.post("/orders", status_code=201)
async def create_order(
    payload: OrderCreate,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    sequence: SequenceGenerator = Depends(get_sequence),
    runner: EffectRunner = Depends(get_effects),
):
    """Waiter/cashier order entry; dine-in orders occupy their table."""
    order, effects = await run_in_threadpool(order_service.create_order, db, ctx, payload, sequence)
    body = {"success": True, "message": "Order created", "order": serialize_order(order)}
    await runner.run(effects)
    return body


@router.get("/orders")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    kot_status: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    """Kitchen display and order board; kitchen sees active orders by default"""
    orders, total = order_service.list_orders(db, ctx, page, limit, kot_status, status)
    return {
        "success": True,
        "orders": [serialize_order(order) for order in orders],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.get("/orders/search")
def search_orders(
    q: Optional[str] = None,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    orders = order_service.search_orders(db, ctx, q)
    return {"success": True, "orders": [serialize_order(order) for order in orders]}


@router.get("/orders/{order_id}")
def get_order(order_id: int, ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db)):
    require_role(ctx.role, Operation.LIST_ORDERS)
    order = order_service.get_order(db, ctx.scope, order_id)
    return {"success": True, "order": serialize_order(order)}


@router.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: int,
    status_update: OrderStatusUpdate,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    """Kitchen status updates"""
    order, effects = await run_in_threadpool(order_service.update_order_status, db, ctx, order_id,
                                             status_update.status)
    body = {"success": True, "order": serialize_order(order)}
    await runner.run(effects)
    return body


@router.put("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    cancel: Optional[CancelRequest] = None,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    reason = cancel.reason if cancel else None
    order, effects = await run_in_threadpool(order_service.cancel_order, db, ctx, order_id, reason)
    body = {"success": True, "message": "Order cancelled", "order": serialize_order(order)}
    await runner.run(effects)
    return body


@router.put("/orders/{order_id}/items/{item_id}/status")
async def update_item_status(
    order_id: int,
    item_id: int,
    status_update: ItemStatusUpdate,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    order, effects = await run_in_threadpool(order_service.update_item_status, db, ctx, order_id, item_id,
                                             status_update.status)
    body = {"success": True, "order": serialize_order(order)}
    await runner.run(effects)
    return body


@router.put("/orders/{order_id}/items/{item_id}/cancel")
async def cancel_item(
    order_id: int,
    item_id: int,
    cancel: Optional[CancelRequest] = None,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    reason = cancel.reason if cancel else None
    order, effects = await run_in_threadpool(order_service.cancel_item, db, ctx, order_id, item_id, reason)
    body = {"success": True, "message": "Item cancelled", "order": serialize_order(order)}
    await runner.run(effects)
    return body
